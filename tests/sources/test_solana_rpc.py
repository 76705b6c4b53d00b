"""Tests for the Solana JSON-RPC chain source, against httpx.MockTransport."""

from __future__ import annotations

import json
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from router_history.contracts import Commitment, MalformedTransactionError, ResolutionStatus, SourceUnavailableError
from router_history.engine.classifier import Classifier
from router_history.sources.protocols import ChainSource
from router_history.sources.solana_rpc import SolanaRpcSource, normalize_transaction
from tests.fixtures.chain import OTHER_PROGRAM, ROUTER_V3

RPC_URL = "https://rpc.example.com"
PAYER = "Payer" + "1" * 38
LOOKUP_ACCOUNT = "Lookup" + "1" * 37


def tx_document(signature: str = "S1", *, err: Any = None, with_inner: bool = False) -> dict[str, Any]:
    meta: dict[str, Any] = {
        "err": err,
        "logMessages": [f"Program {ROUTER_V3} invoke [1]", "Program log: router version 3"],
        "innerInstructions": [],
        "loadedAddresses": {"writable": [LOOKUP_ACCOUNT], "readonly": []},
    }
    instructions = [{"programIdIndex": 1, "accounts": [0], "data": "3Bxs4"}]
    if with_inner:
        instructions = [{"programIdIndex": 2, "accounts": [0], "data": ""}]
        meta["innerInstructions"] = [
            {"index": 0, "instructions": [{"programIdIndex": 1, "accounts": [0], "data": "9z"}]}
        ]
    return {
        "transaction": {
            "signatures": [signature],
            "message": {"accountKeys": [PAYER, ROUTER_V3, OTHER_PROGRAM], "instructions": instructions},
        },
        "meta": meta,
    }


def rpc_result(result: Any) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "result": result}


def rpc_error(code: int, message: str) -> dict[str, Any]:
    return {"jsonrpc": "2.0", "id": 1, "error": {"code": code, "message": message}}


def make_source(handler: Callable[[dict[str, Any]], httpx.Response], **kwargs: Any) -> tuple[SolanaRpcSource, list[dict[str, Any]]]:
    """Source whose requests are answered by handler(parsed JSON body)."""
    requests: list[dict[str, Any]] = []

    def transport(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        requests.append(body)
        return handler(body)

    client = httpx.Client(transport=httpx.MockTransport(transport))
    return SolanaRpcSource(RPC_URL, client=client, **kwargs), requests


class TestNormalizeTransaction:
    def test_fields(self) -> None:
        raw = normalize_transaction(tx_document(), slot=100, block_time=1_700_000_000)

        assert raw.signature == "S1"
        assert raw.slot == 100
        assert raw.block_time == 1_700_000_000
        assert raw.error is None
        assert [ix.program_id for ix in raw.instructions] == [ROUTER_V3]
        assert raw.account_keys == (PAYER, ROUTER_V3, OTHER_PROGRAM, LOOKUP_ACCOUNT)
        assert raw.log_messages[-1] == "Program log: router version 3"

    def test_failed_transaction_keeps_error(self) -> None:
        raw = normalize_transaction(tx_document(err={"InstructionError": [0, "Custom"]}), slot=1, block_time=1)

        assert raw.error == {"InstructionError": [0, "Custom"]}
        assert raw.status_known is True

    def test_null_meta_leaves_status_unknown(self) -> None:
        document = {**tx_document(), "meta": None}

        raw = normalize_transaction(document, slot=5, block_time=1_700_000_000)

        assert raw.status_known is False
        assert raw.error is None
        assert [ix.program_id for ix in raw.instructions] == [ROUTER_V3]

    def test_null_meta_rejected_by_classifier(self) -> None:
        raw = normalize_transaction({**tx_document(), "meta": None}, slot=5, block_time=1_700_000_000)

        with pytest.raises(MalformedTransactionError):
            Classifier({ROUTER_V3: 3}).classify(raw)

    def test_inner_instructions_follow_top_level(self) -> None:
        raw = normalize_transaction(tx_document(with_inner=True), slot=1, block_time=1)

        assert [(ix.program_id, ix.inner) for ix in raw.instructions] == [(OTHER_PROGRAM, False), (ROUTER_V3, True)]

    def test_missing_signature(self) -> None:
        document = tx_document()
        document["transaction"]["signatures"] = []

        with pytest.raises(ValueError, match="signature"):
            normalize_transaction(document, slot=1, block_time=1)

    def test_program_index_out_of_range(self) -> None:
        document = tx_document()
        document["transaction"]["message"]["instructions"][0]["programIdIndex"] = 99

        with pytest.raises(ValueError, match="out of range"):
            normalize_transaction(document, slot=1, block_time=1)


class TestSolanaRpcSource:
    def test_implements_protocol(self) -> None:
        source, _ = make_source(lambda body: httpx.Response(200, json=rpc_result(0)))

        assert isinstance(source, ChainSource)

    def test_head_uses_commitment(self) -> None:
        source, requests = make_source(
            lambda body: httpx.Response(200, json=rpc_result(250_000_123)),
            commitment=Commitment.FINALIZED,
        )

        assert source.head() == 250_000_123
        assert requests[0]["method"] == "getSlot"
        assert requests[0]["params"] == [{"commitment": "finalized"}]

    def test_list_slots(self) -> None:
        source, requests = make_source(lambda body: httpx.Response(200, json=rpc_result([12, 10, 11])))

        assert source.list_slots(10, 14) == [10, 11, 12]
        assert requests[0]["method"] == "getBlocks"
        assert requests[0]["params"][:2] == [10, 14]

    def test_list_slots_empty_range(self) -> None:
        source, requests = make_source(lambda body: httpx.Response(200, json=rpc_result([])))

        assert source.list_slots(10, 9) == []
        assert requests == []

    def test_block_transactions(self) -> None:
        block = {"blockTime": 1_700_000_000, "transactions": [tx_document("S1"), tx_document("S2")]}
        source, requests = make_source(lambda body: httpx.Response(200, json=rpc_result(block)))

        txs = source.block_transactions(100)

        assert [t.signature for t in txs] == ["S1", "S2"]
        assert all(t.slot == 100 and t.block_time == 1_700_000_000 for t in txs)
        config = requests[0]["params"][1]
        assert config["encoding"] == "json"
        assert config["maxSupportedTransactionVersion"] == 0

    def test_skipped_slot_is_empty(self) -> None:
        source, _ = make_source(lambda body: httpx.Response(200, json=rpc_error(-32007, "Slot 100 was skipped")))

        assert source.block_transactions(100) == []

    def test_malformed_block_not_retryable(self) -> None:
        broken = tx_document()
        del broken["transaction"]["message"]
        block = {"blockTime": 1, "transactions": [broken]}
        source, _ = make_source(lambda body: httpx.Response(200, json=rpc_result(block)))

        with pytest.raises(SourceUnavailableError) as exc_info:
            source.block_transactions(100)

        assert exc_info.value.retryable is False

    def test_resolve_canonical(self) -> None:
        document = {**tx_document("S1"), "slot": 105, "blockTime": 1_700_000_005}
        source, requests = make_source(lambda body: httpx.Response(200, json=rpc_result(document)))

        resolution = source.resolve("S1")

        assert resolution.status == ResolutionStatus.CANONICAL
        assert resolution.transaction is not None
        assert resolution.transaction.slot == 105
        assert requests[0]["method"] == "getTransaction"

    def test_resolve_absent(self) -> None:
        source, _ = make_source(lambda body: httpx.Response(200, json=rpc_result(None)))

        resolution = source.resolve("S2")

        assert resolution.status == ResolutionStatus.ABSENT
        assert resolution.transaction is None


class TestTransportErrors:
    @pytest.mark.parametrize(("status", "retryable"), [(429, True), (503, True), (401, False), (404, False)])
    def test_http_status(self, status: int, retryable: bool) -> None:
        source, _ = make_source(lambda body: httpx.Response(status, text="nope"))

        with pytest.raises(SourceUnavailableError) as exc_info:
            source.head()

        assert exc_info.value.retryable is retryable
        assert exc_info.value.method == "getSlot"

    def test_connection_error_is_retryable(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        source = SolanaRpcSource(RPC_URL, client=httpx.Client(transport=httpx.MockTransport(refuse)))

        with pytest.raises(SourceUnavailableError) as exc_info:
            source.head()

        assert exc_info.value.retryable is True

    def test_invalid_json(self) -> None:
        source, _ = make_source(lambda body: httpx.Response(200, text="<html>"))

        with pytest.raises(SourceUnavailableError, match="invalid JSON"):
            source.head()

    @pytest.mark.parametrize(("code", "retryable"), [(-32005, True), (-32602, False)])
    def test_rpc_error(self, code: int, retryable: bool) -> None:
        source, _ = make_source(lambda body: httpx.Response(200, json=rpc_error(code, "boom")))

        with pytest.raises(SourceUnavailableError) as exc_info:
            source.head()

        assert exc_info.value.retryable is retryable

