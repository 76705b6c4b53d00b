# src/router_history/sources/solana_rpc.py
"""Solana JSON-RPC chain source.

Reads confirmed blocks and transactions over HTTP with httpx and normalizes
the RPC documents into RawTransaction. Transport problems surface as
SourceUnavailableError; the caller owns retry policy.
"""

from __future__ import annotations

import itertools
from typing import Any

import httpx
import structlog

from router_history.contracts import (
    Commitment,
    Instruction,
    Position,
    RawTransaction,
    Resolution,
    ResolutionStatus,
    SourceUnavailableError,
)

logger = structlog.get_logger(__name__)

# JSON-RPC error codes meaning "no block at this slot" rather than failure
_SKIPPED_SLOT_CODES = frozenset({-32007, -32009})

# JSON-RPC error codes that will not succeed on retry
_PERMANENT_CODES = frozenset({-32600, -32601, -32602})

# HTTP statuses worth retrying
_RETRYABLE_STATUS = frozenset({408, 425, 429, 500, 502, 503, 504})


class _SkippedSlot(Exception):
    """Internal signal: the node reports the slot has no block."""


def _account_keys(tx: dict[str, Any], meta: dict[str, Any]) -> list[str]:
    """Static account keys followed by addresses loaded from lookup tables."""
    keys = list(tx["message"]["accountKeys"])
    loaded = meta.get("loadedAddresses") or {}
    keys.extend(loaded.get("writable", []))
    keys.extend(loaded.get("readonly", []))
    return keys


def _instruction(raw: dict[str, Any], keys: list[str], *, inner: bool) -> Instruction:
    index = raw["programIdIndex"]
    if not 0 <= index < len(keys):
        raise ValueError(f"programIdIndex {index} out of range ({len(keys)} account keys)")
    return Instruction(program_id=keys[index], data=raw.get("data", ""), inner=inner)


def normalize_transaction(document: dict[str, Any], *, slot: Position, block_time: int | None) -> RawTransaction:
    """Convert a `json`-encoded RPC transaction into a RawTransaction.

    Args:
        document: Entry of getBlock().transactions, or a getTransaction() result
        slot: Slot the transaction was included in
        block_time: Block time (unix seconds) if the node reported one

    Raises:
        ValueError: If the document lacks a signature or message
    """
    tx = document["transaction"]
    # meta is null when the node kept no status for the transaction
    status = document.get("meta")
    meta = status or {}
    signatures = tx.get("signatures") or []
    if not signatures:
        raise ValueError(f"transaction without signature in slot {slot}")

    keys = _account_keys(tx, meta)
    top_level = [_instruction(ix, keys, inner=False) for ix in tx["message"].get("instructions", [])]
    inner = [
        _instruction(ix, keys, inner=True)
        for group in (meta.get("innerInstructions") or [])
        for ix in group.get("instructions", [])
    ]

    return RawTransaction(
        signature=signatures[0],
        slot=slot,
        block_time=block_time,
        error=meta.get("err"),
        status_known=isinstance(status, dict) and "err" in status,
        account_keys=tuple(keys),
        instructions=tuple(top_level + inner),
        log_messages=tuple(meta.get("logMessages") or ()),
        payload=document,
    )


class SolanaRpcSource:
    """ChainSource backed by a Solana JSON-RPC endpoint.

    Example:
        source = SolanaRpcSource("https://api.mainnet-beta.solana.com")
        head = source.head()
        for slot in source.list_slots(head - 10, head):
            txs = source.block_transactions(slot)
    """

    def __init__(
        self,
        rpc_url: str,
        *,
        commitment: Commitment = Commitment.CONFIRMED,
        timeout: float = 30.0,
        headers: dict[str, str] | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize the RPC source.

        Args:
            rpc_url: JSON-RPC endpoint
            commitment: Confirmation level for every read
            timeout: Request timeout in seconds
            headers: Extra HTTP headers for every request
            client: Pre-built httpx.Client (tests inject a MockTransport)
        """
        self._rpc_url = rpc_url
        self._commitment = commitment
        self._client = client or httpx.Client(timeout=timeout, headers=headers or {})
        self._ids = itertools.count(1)

    def _call(self, method: str, params: list[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        try:
            response = self._client.post(self._rpc_url, json=payload)
        except httpx.HTTPError as e:
            raise SourceUnavailableError(f"{method} transport error: {e}", method=method) from e

        if response.status_code != 200:
            raise SourceUnavailableError(
                f"{method} returned HTTP {response.status_code}",
                method=method,
                retryable=response.status_code in _RETRYABLE_STATUS,
            )

        try:
            body = response.json()
        except ValueError as e:
            raise SourceUnavailableError(f"{method} returned invalid JSON: {e}", method=method) from e

        error = body.get("error")
        if error is not None:
            code = error.get("code")
            if code in _SKIPPED_SLOT_CODES:
                raise _SkippedSlot(error.get("message", ""))
            raise SourceUnavailableError(
                f"{method} RPC error {code}: {error.get('message')}",
                method=method,
                retryable=code not in _PERMANENT_CODES,
            )
        return body.get("result")

    def head(self) -> Position:
        return int(self._call("getSlot", [{"commitment": self._commitment.value}]))

    def list_slots(self, start: Position, end: Position) -> list[Position]:
        if end < start:
            return []
        slots = self._call("getBlocks", [start, end, {"commitment": self._commitment.value}])
        return sorted(int(s) for s in slots)

    def block_transactions(self, slot: Position) -> list[RawTransaction]:
        config = {
            "encoding": "json",
            "transactionDetails": "full",
            "maxSupportedTransactionVersion": 0,
            "rewards": False,
            "commitment": self._commitment.value,
        }
        try:
            block = self._call("getBlock", [slot, config])
        except _SkippedSlot:
            logger.debug("slot_skipped", slot=slot)
            return []
        if block is None:
            return []

        block_time = block.get("blockTime")
        transactions = []
        for document in block.get("transactions", []):
            try:
                transactions.append(normalize_transaction(document, slot=slot, block_time=block_time))
            except (KeyError, ValueError) as e:
                # A malformed document from the node is a source fault, not data quality
                raise SourceUnavailableError(f"getBlock({slot}) returned a malformed transaction: {e}", method="getBlock", retryable=False) from e
        return transactions

    def resolve(self, signature: str) -> Resolution:
        config = {
            "encoding": "json",
            "maxSupportedTransactionVersion": 0,
            "commitment": self._commitment.value,
        }
        result = self._call("getTransaction", [signature, config])
        if result is None:
            return Resolution(signature=signature, status=ResolutionStatus.ABSENT)
        try:
            raw = normalize_transaction(result, slot=int(result["slot"]), block_time=result.get("blockTime"))
        except (KeyError, ValueError) as e:
            raise SourceUnavailableError(f"getTransaction({signature}) returned a malformed document: {e}", method="getTransaction", retryable=False) from e
        return Resolution(signature=signature, status=ResolutionStatus.CANONICAL, transaction=raw)

    def close(self) -> None:
        self._client.close()
