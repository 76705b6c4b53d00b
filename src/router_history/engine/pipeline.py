# src/router_history/engine/pipeline.py
"""IngestPipeline: checkpoint -> fetch -> classify -> write -> checkpoint.

Commit ordering is the correctness core. The batch upsert, its quarantine
entries and the checkpoint advance share one database transaction, so the
checkpoint can never move past records that were not committed. A crash
before commit re-delivers the batch on restart, which the idempotent writer
absorbs.
"""

from __future__ import annotations

import threading
from typing import Any

import structlog
from sqlalchemy.exc import OperationalError

from router_history.contracts import (
    ClassificationError,
    CycleResult,
    FetchBatch,
    Position,
    ReconcileAction,
    RunSummary,
    SlottedRecord,
    SourceUnavailableError,
    SourceUnhealthyError,
    StaleCheckpointError,
    StoreUnavailableError,
    UpsertResult,
)
from router_history.core.store.checkpoint import CheckpointStore
from router_history.core.store.database import HistoryDB
from router_history.core.store.writer import HistoryWriter
from router_history.engine.classifier import Classifier
from router_history.engine.fetcher import Fetcher
from router_history.engine.reconciler import Reconciler
from router_history.engine.retry import MaxRetriesExceeded, RetryManager

logger = structlog.get_logger(__name__)


def _source_retryable(error: BaseException) -> bool:
    return isinstance(error, SourceUnavailableError) and error.retryable


def _store_retryable(error: BaseException) -> bool:
    return isinstance(error, OperationalError)


class IngestPipeline:
    """Single-writer ingest loop.

    Exactly one instance may advance a given checkpoint at a time. A second
    instance gets StaleCheckpointError on its first commit, reloads the
    authoritative position and continues from there.

    Example:
        pipeline = IngestPipeline(db, checkpoint, fetcher, classifier, writer, retry=RetryManager(RetryConfig()))
        summary = pipeline.run(until_caught_up=True)
    """

    def __init__(
        self,
        db: HistoryDB,
        checkpoint: CheckpointStore,
        fetcher: Fetcher,
        classifier: Classifier,
        writer: HistoryWriter,
        *,
        retry: RetryManager,
        max_batch_size: int = 500,
        poll_interval: float = 2.0,
        reconciler: Reconciler | None = None,
        reconcile_every: int | None = None,
    ) -> None:
        """Wire the pipeline.

        Args:
            db: Store shared by writer and checkpoint (one transaction per batch)
            checkpoint: Durable cursor
            fetcher: Batch source
            classifier: Record derivation
            writer: Idempotent history writer
            retry: Bounded retry for fetches and commits
            max_batch_size: Transactions per batch (slot-aligned)
            poll_interval: Seconds to wait when caught up
            reconciler: Optional reconciler interleaved with ingestion
            reconcile_every: Run the reconciler every N cycles
        """
        self._db = db
        self._checkpoint = checkpoint
        self._fetcher = fetcher
        self._classifier = classifier
        self._writer = writer
        self._retry = retry
        self._max_batch_size = max_batch_size
        self._poll_interval = poll_interval
        self._reconciler = reconciler
        self._reconcile_every = reconcile_every
        self._stop = threading.Event()
        self._started = False

    def start(self) -> Position:
        """Load the checkpoint; the resume position."""
        position = self._checkpoint.load()
        self._started = True
        logger.info("pipeline_started", pipeline=self._checkpoint.pipeline_name, position=position)
        return position

    def stop(self) -> None:
        """Ask run() to return after the current cycle."""
        self._stop.set()

    # === One cycle ===

    def run_cycle(self) -> CycleResult:
        """Fetch, classify and commit one batch.

        Raises:
            SourceUnhealthyError: Chain source unavailable past the retry cap
            StoreUnavailableError: Store unreachable past the retry cap
            StaleCheckpointError: Another writer advanced the checkpoint; this
                instance has already reloaded the authoritative position
        """
        if not self._started:
            self.start()

        position = self._checkpoint.current()
        with structlog.contextvars.bound_contextvars(pipeline=self._checkpoint.pipeline_name, position=position):
            return self._cycle(position)

    def _cycle(self, position: Position) -> CycleResult:
        batch = self._fetch(position)
        if batch.next_position <= position:
            return CycleResult(position, position, UpsertResult(), quarantined=0, empty_slots=0)

        slotted: list[SlottedRecord] = []
        rejected: list[tuple[ClassificationError, dict[str, Any]]] = []
        for raw in batch.transactions:
            try:
                slotted.append(SlottedRecord(record=self._classifier.classify(raw), slot=raw.slot))
            except ClassificationError as e:
                logger.warning(
                    "transaction_quarantined",
                    signature=e.signature,
                    slot=e.slot,
                    error_type=type(e).__name__,
                    reason=str(e),
                    **e.details,
                )
                rejected.append((e, raw.payload))

        upserts = self._commit(batch, slotted, rejected)
        logger.info(
            "batch_committed",
            from_position=position,
            to_position=batch.next_position,
            inserted=upserts.inserted,
            unchanged=upserts.unchanged,
            overwritten=upserts.overwritten,
            quarantined=len(rejected),
            empty_slots=len(batch.empty_slots),
        )
        return CycleResult(
            from_position=position,
            to_position=batch.next_position,
            upserts=upserts,
            quarantined=len(rejected),
            empty_slots=len(batch.empty_slots),
        )

    def _fetch(self, position: Position) -> FetchBatch:
        attempts = 0

        def fetch() -> FetchBatch:
            nonlocal attempts
            attempts += 1
            return self._fetcher.fetch_batch(position, self._max_batch_size)

        try:
            return self._retry.execute_with_retry(
                fetch,
                is_retryable=_source_retryable,
                on_retry=lambda attempt, error: logger.warning("source_retry", attempt=attempt, error=str(error)),
            )
        except MaxRetriesExceeded as e:
            logger.error("source_unhealthy", attempts=e.attempts, error=str(e.last_error))
            raise SourceUnhealthyError(e.attempts, e.last_error) from e
        except SourceUnavailableError as e:
            # Non-retryable upstream answer: same health signal, no point retrying
            logger.error("source_unhealthy", attempts=attempts, error=str(e))
            raise SourceUnhealthyError(attempts, e) from e

    def _commit(
        self,
        batch: FetchBatch,
        slotted: list[SlottedRecord],
        rejected: list[tuple[ClassificationError, dict[str, Any]]],
    ) -> UpsertResult:
        expected = self._checkpoint.current()

        def write() -> UpsertResult:
            try:
                with self._db.connection() as conn:
                    result = self._writer.upsert_batch(slotted, conn=conn)
                    for error, payload in rejected:
                        self._writer.quarantine(error, payload, conn=conn)
                    self._checkpoint.advance(batch.next_position, conn=conn)
                return result
            except Exception:
                # Rolled back: nothing committed, checkpoint expectation unchanged
                self._checkpoint.expect(expected)
                raise

        try:
            return self._retry.execute_with_retry(
                write,
                is_retryable=_store_retryable,
                on_retry=lambda attempt, error: logger.warning("store_retry", attempt=attempt, error=str(error)),
            )
        except StaleCheckpointError:
            authoritative = self._checkpoint.load()
            logger.warning(
                "checkpoint_conflict",
                attempted=batch.next_position,
                expected=expected,
                resumed_from=authoritative,
            )
            raise
        except MaxRetriesExceeded as e:
            logger.error("store_unavailable", attempts=e.attempts, error=str(e.last_error))
            raise StoreUnavailableError(e.attempts, e.last_error) from e

    # === Loop ===

    def run(self, *, max_cycles: int | None = None, until_caught_up: bool = False) -> RunSummary:
        """Run cycles until stopped.

        Args:
            max_cycles: Stop after this many cycles
            until_caught_up: Stop at the first cycle that finds nothing new

        Returns:
            Totals for the run

        Raises:
            SourceUnhealthyError, StoreUnavailableError: Operator intervention needed
        """
        summary = RunSummary(position=self.start() if not self._started else self._checkpoint.current())

        while not self._stop.is_set():
            if max_cycles is not None and summary.cycles >= max_cycles:
                break

            try:
                result = self.run_cycle()
            except StaleCheckpointError:
                summary.checkpoint_conflicts += 1
                summary.cycles += 1
                summary.position = self._checkpoint.current()
                continue

            summary.add_cycle(result)

            if self._reconciler is not None and self._reconcile_due(summary.cycles):
                self._reconcile(self._reconciler, summary)

            if not result.advanced:
                if until_caught_up:
                    break
                self._stop.wait(self._poll_interval)

        logger.info(
            "pipeline_stopped",
            cycles=summary.cycles,
            position=summary.position,
            inserted=summary.upserts.inserted,
            quarantined=summary.quarantined,
            conflicts=summary.checkpoint_conflicts,
        )
        return summary

    def _reconcile_due(self, cycles: int) -> bool:
        return self._reconcile_every is not None and cycles % self._reconcile_every == 0

    def _reconcile(self, reconciler: Reconciler, summary: RunSummary) -> None:
        try:
            report = reconciler.run_cycle()
        except SourceUnavailableError as e:
            logger.warning("reconcile_skipped", error=str(e))
            return
        summary.reconcile_passes += 1
        summary.orphaned += report.count(ReconcileAction.ORPHANED)
