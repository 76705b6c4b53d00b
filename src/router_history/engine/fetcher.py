# src/router_history/engine/fetcher.py
"""Fetcher: slot-ordered batches of router transactions from a chain source."""

from __future__ import annotations

import structlog

from router_history.contracts import FetchBatch, Position, RawTransaction
from router_history.sources.protocols import ChainSource

logger = structlog.get_logger(__name__)


class Fetcher:
    """Retrieves batches of raw transactions that reference the router.

    A batch covers a contiguous slot range (from_position, next_position].
    Every slot in that range is either the slot of a returned transaction or
    listed in FetchBatch.empty_slots (no router activity, or skipped by the
    chain), so nothing is silently skipped. Batches end on a slot boundary.

    Fetching is restartable: calling again with next_position continues,
    calling with an earlier position re-delivers already-seen data.
    """

    def __init__(self, source: ChainSource, program_ids: frozenset[str], *, max_slots: int = 100) -> None:
        """Initialize the fetcher.

        Args:
            source: Chain source to read from
            program_ids: Router program ids to keep
            max_slots: Upper bound on slots scanned per batch
        """
        if not program_ids:
            raise ValueError("program_ids must not be empty")
        if max_slots < 1:
            raise ValueError("max_slots must be >= 1")
        self._source = source
        self._program_ids = program_ids
        self._max_slots = max_slots

    def fetch_batch(self, from_position: Position, max_batch_size: int) -> FetchBatch:
        """Fetch the next batch after from_position.

        Args:
            from_position: Last slot already processed
            max_batch_size: Stop once this many transactions are collected
                (a slot is never split, so a batch may exceed it by one slot)

        Returns:
            FetchBatch; empty with next_position == from_position when caught up

        Raises:
            SourceUnavailableError: On transport failure (no partial batch)
        """
        if max_batch_size < 1:
            raise ValueError("max_batch_size must be >= 1")

        head = self._source.head()
        if head <= from_position:
            return FetchBatch(transactions=(), next_position=from_position)

        end = min(head, from_position + self._max_slots)
        produced = set(self._source.list_slots(from_position + 1, end))

        transactions: list[RawTransaction] = []
        seen: set[str] = set()
        empty: list[Position] = []
        next_position = from_position

        for slot in range(from_position + 1, end + 1):
            if slot not in produced:
                empty.append(slot)
                next_position = slot
                continue

            kept = 0
            for raw in self._source.block_transactions(slot):
                if raw.signature in seen or not raw.references(self._program_ids):
                    continue
                seen.add(raw.signature)
                transactions.append(raw)
                kept += 1
            if kept == 0:
                empty.append(slot)
            next_position = slot

            if len(transactions) >= max_batch_size:
                break

        logger.debug(
            "batch_fetched",
            from_position=from_position,
            next_position=next_position,
            head=head,
            transactions=len(transactions),
            empty_slots=len(empty),
        )
        return FetchBatch(transactions=tuple(transactions), next_position=next_position, empty_slots=tuple(empty))
