# src/router_history/engine/reconciler.py
"""Reconciler: repair history rows affected by chain reorganizations.

Only records inside the finality window are ever touched. The window is
(head - finality_depth, checkpoint]: below it records are final and
immutable, above the checkpoint nothing has been committed yet.
"""

from __future__ import annotations

import structlog

from router_history.contracts import (
    ClassificationError,
    Position,
    RawTransaction,
    ReconcileAction,
    ReconcileReport,
    SlottedRecord,
    SourceUnavailableError,
    TrackedSignature,
)
from router_history.core.store.checkpoint import CheckpointStore
from router_history.core.store.writer import HistoryWriter
from router_history.engine.classifier import Classifier
from router_history.sources.protocols import ChainSource

logger = structlog.get_logger(__name__)


class Reconciler:
    """Re-resolves provisional records and corrects those the chain changed.

    For each provisional record in the window:
    - still canonical, same slot and values: no change
    - absent from the canonical chain: history row removed, signature
      flagged orphaned
    - re-included with different slot or metadata: overwritten via upsert

    In the other direction, the window's canonical blocks are re-scanned for
    router transactions that were never recorded (a reorg put them into a
    slot the fetcher had already passed). They are classified and written,
    or quarantined.

    The reconciler reads the checkpoint but never advances it, and source
    failures for a single signature leave that record as it was until the
    next cycle.
    """

    def __init__(
        self,
        source: ChainSource,
        writer: HistoryWriter,
        checkpoint: CheckpointStore,
        classifier: Classifier,
        *,
        finality_depth: int,
    ) -> None:
        if finality_depth < 1:
            raise ValueError("finality_depth must be >= 1")
        self._source = source
        self._writer = writer
        self._checkpoint = checkpoint
        self._classifier = classifier
        self._finality_depth = finality_depth

    def run_cycle(self) -> ReconcileReport:
        """Run one reconciliation pass.

        Raises:
            SourceUnavailableError: If the chain head cannot be read (the
                pass is skipped; nothing was changed)
        """
        with structlog.contextvars.bound_contextvars(pipeline=self._checkpoint.pipeline_name):
            head = self._source.head()
            boundary = max(head - self._finality_depth, 0)
            report = ReconcileReport(head=head, boundary=boundary)

            report.promoted = self._writer.promote_final(boundary)

            committed = self._checkpoint.peek()
            if committed is None or committed <= boundary:
                logger.debug("reconcile_window_empty", head=head, boundary=boundary, checkpoint=committed)
                return report

            for tracked in self._writer.provisional_since(boundary, committed):
                report.actions[tracked.signature] = self._reconcile_one(tracked)

            self._record_missing(boundary, committed, report)

            logger.info(
                "reconcile_completed",
                head=head,
                boundary=boundary,
                promoted=report.promoted,
                checked=report.checked,
                orphaned=report.count(ReconcileAction.ORPHANED),
                overwritten=report.count(ReconcileAction.OVERWRITTEN),
                added=report.count(ReconcileAction.ADDED),
                unresolved=report.count(ReconcileAction.UNRESOLVED),
                quarantined=report.quarantined,
            )
            return report

    def _reconcile_one(self, tracked: TrackedSignature) -> ReconcileAction:
        signature = tracked.signature
        try:
            resolution = self._source.resolve(signature)
        except SourceUnavailableError as e:
            logger.warning("reconcile_unresolved", signature=signature, slot=tracked.slot, error=str(e))
            return ReconcileAction.UNRESOLVED

        raw = resolution.transaction
        if raw is None:
            self._writer.mark_orphaned(signature)
            logger.warning("reconcile_orphaned", signature=signature, slot=tracked.slot)
            return ReconcileAction.ORPHANED

        try:
            record = self._classifier.classify(raw)
        except ClassificationError as e:
            # Keep the last known row; the next cycle sees the same answer
            logger.warning("reconcile_unclassifiable", signature=signature, slot=raw.slot, error=str(e))
            return ReconcileAction.UNRESOLVED

        if raw.slot == tracked.slot and self._writer.get(signature) == record:
            return ReconcileAction.UNCHANGED

        self._writer.upsert(SlottedRecord(record=record, slot=raw.slot))
        logger.info("reconcile_overwritten", signature=signature, old_slot=tracked.slot, new_slot=raw.slot)
        return ReconcileAction.OVERWRITTEN

    def _record_missing(self, boundary: Position, committed: Position, report: ReconcileReport) -> None:
        try:
            found = self._scan(boundary + 1, committed)
        except SourceUnavailableError as e:
            # Retried on the next cycle; the window is re-scanned from scratch
            logger.warning("reconcile_scan_incomplete", boundary=boundary, checkpoint=committed, error=str(e))
            return

        missing = set(self._writer.unrecorded([raw.signature for raw in found]))
        for raw in found:
            if raw.signature not in missing or raw.signature in report.actions:
                continue
            try:
                record = self._classifier.classify(raw)
            except ClassificationError as e:
                self._writer.quarantine(e, raw.payload)
                report.quarantined += 1
                logger.warning(
                    "reconcile_quarantined",
                    signature=raw.signature,
                    slot=raw.slot,
                    error_type=type(e).__name__,
                    reason=str(e),
                )
                continue
            self._writer.upsert(SlottedRecord(record=record, slot=raw.slot))
            report.actions[raw.signature] = ReconcileAction.ADDED
            logger.info("reconcile_added", signature=raw.signature, slot=raw.slot)

    def _scan(self, first: Position, last: Position) -> list[RawTransaction]:
        """Router transactions in the canonical blocks of [first, last], in slot order."""
        program_ids = self._classifier.program_ids
        found: list[RawTransaction] = []
        seen: set[str] = set()
        for slot in self._source.list_slots(first, last):
            for raw in self._source.block_transactions(slot):
                if raw.signature in seen or not raw.references(program_ids):
                    continue
                seen.add(raw.signature)
                found.append(raw)
        return found
