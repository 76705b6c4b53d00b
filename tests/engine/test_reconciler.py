"""Tests for Reconciler reorg handling inside the finality window."""

from __future__ import annotations

from dataclasses import replace

import pytest

from router_history.contracts import ReconcileAction, RecordState, SourceUnavailableError
from router_history.core.store.database import HistoryDB
from router_history.engine.reconciler import Reconciler
from tests.fixtures.chain import OTHER_PROGRAM, ROUTER_V3, FakeChainSource, make_raw
from tests.fixtures.pipeline import PipelineHarness, make_pipeline


@pytest.fixture
def harness(source: FakeChainSource, history_db: HistoryDB) -> PipelineHarness:
    """S1 committed at slot 10, S2 at slot 11, checkpoint at 11."""
    source.add_block(10, make_raw("S1", 10))
    source.add_block(11, make_raw("S2", 11, success=False))
    h = make_pipeline(source, history_db, finality_depth=32)
    h.pipeline.run(until_caught_up=True)
    assert h.checkpoint.peek() == 11
    return h


class TestReconcileCycle:
    def test_canonical_records_unchanged(self, harness: PipelineHarness) -> None:
        report = harness.reconciler.run_cycle()

        assert report.actions == {"S1": ReconcileAction.UNCHANGED, "S2": ReconcileAction.UNCHANGED}
        assert harness.writer.count() == 2

    def test_orphaned_record_removed(self, harness: PipelineHarness) -> None:
        before = harness.writer.get("S1")
        harness.source.drop_block(11)

        report = harness.reconciler.run_cycle()

        assert report.actions["S2"] == ReconcileAction.ORPHANED
        assert harness.writer.get("S2") is None
        assert harness.writer.get("S1") == before
        tracked = harness.writer.tracking("S2")
        assert tracked is not None
        assert tracked.state == RecordState.ORPHANED

    def test_checkpoint_never_written(self, harness: PipelineHarness) -> None:
        harness.source.drop_block(11)
        harness.source.drop_block(10)

        harness.reconciler.run_cycle()

        assert harness.checkpoint.peek() == 11

    def test_reincluded_record_overwritten(self, harness: PipelineHarness) -> None:
        harness.source.move("S1", 12, success=False)

        report = harness.reconciler.run_cycle()

        assert report.actions["S1"] == ReconcileAction.OVERWRITTEN
        stored = harness.writer.get("S1")
        assert stored is not None
        assert stored.is_success is False
        tracked = harness.writer.tracking("S1")
        assert tracked is not None
        assert tracked.slot == 12
        assert harness.writer.count() == 2

    def test_unresolvable_signature_left_alone(self, harness: PipelineHarness) -> None:
        harness.source.make_unresolvable("S2")

        report = harness.reconciler.run_cycle()

        assert report.actions["S2"] == ReconcileAction.UNRESOLVED
        assert harness.writer.get("S2") is not None

    def test_head_failure_skips_pass(self, harness: PipelineHarness) -> None:
        harness.source.drop_block(11)
        harness.source.fail(1)

        with pytest.raises(SourceUnavailableError):
            harness.reconciler.run_cycle()

        assert harness.writer.get("S2") is not None

    def test_orphaned_twice_is_stable(self, harness: PipelineHarness) -> None:
        harness.source.drop_block(11)
        harness.reconciler.run_cycle()

        report = harness.reconciler.run_cycle()

        assert "S2" not in report.actions
        assert harness.writer.count() == 1

    def test_orphan_stays_gone_when_range_is_replayed(self, harness: PipelineHarness) -> None:
        harness.source.drop_block(11)
        harness.reconciler.run_cycle()

        # Re-ingest the orphan's old slot range from genesis under a second checkpoint
        replay = make_pipeline(harness.source, harness.db, pipeline_name="replay")
        replay.pipeline.run(until_caught_up=True)
        report = harness.reconciler.run_cycle()

        assert harness.writer.get("S2") is None
        assert "S2" not in report.actions
        tracked = harness.writer.tracking("S2")
        assert tracked is not None
        assert tracked.state == RecordState.ORPHANED
        assert [r.signature for r in harness.writer.all_records()] == ["S1"]


class TestReorgAdditions:
    """Router transactions a reorg put into slots the fetcher already passed."""

    def test_added_transaction_recorded(self, harness: PipelineHarness) -> None:
        harness.source.add_block(11, make_raw("S2", 11, success=False), make_raw("S3", 11))

        report = harness.reconciler.run_cycle()

        assert report.actions["S3"] == ReconcileAction.ADDED
        assert report.actions["S2"] == ReconcileAction.UNCHANGED
        assert harness.writer.get("S3") is not None
        tracked = harness.writer.tracking("S3")
        assert tracked is not None
        assert (tracked.slot, tracked.state) == (11, RecordState.PROVISIONAL)
        assert harness.checkpoint.peek() == 11

    def test_replaced_block(self, harness: PipelineHarness) -> None:
        # The block at 11 is replaced by one carrying a different router transaction
        harness.source.add_block(11, make_raw("S3", 11))

        report = harness.reconciler.run_cycle()
        harness.pipeline.run(until_caught_up=True)
        harness.reconciler.run_cycle()

        assert report.actions == {
            "S1": ReconcileAction.UNCHANGED,
            "S2": ReconcileAction.ORPHANED,
            "S3": ReconcileAction.ADDED,
        }
        assert [r.signature for r in harness.writer.all_records()] == ["S1", "S3"]

    def test_unclassifiable_addition_quarantined_once(self, harness: PipelineHarness) -> None:
        raw = make_raw("BAD", 10, program=OTHER_PROGRAM)
        harness.source.add_block(10, make_raw("S1", 10), replace(raw, account_keys=(*raw.account_keys, ROUTER_V3)))

        first = harness.reconciler.run_cycle()
        second = harness.reconciler.run_cycle()

        assert first.quarantined == 1
        assert second.quarantined == 0
        assert "BAD" not in first.actions
        [entry] = harness.writer.quarantined()
        assert entry.signature == "BAD"
        assert harness.writer.get("BAD") is None

    def test_slots_above_checkpoint_left_to_fetcher(self, harness: PipelineHarness) -> None:
        harness.source.add_block(12, make_raw("S4", 12))

        report = harness.reconciler.run_cycle()

        assert "S4" not in report.actions
        assert harness.writer.get("S4") is None

    def test_final_slots_not_scanned(self, harness: PipelineHarness) -> None:
        harness.source.set_head(11 + 32)
        harness.source.add_block(11, make_raw("S2", 11, success=False), make_raw("S3", 11))

        report = harness.reconciler.run_cycle()

        assert report.actions == {}
        assert harness.writer.get("S3") is None

    def test_scan_failure_keeps_resolutions(self, harness: PipelineHarness, monkeypatch: pytest.MonkeyPatch) -> None:
        harness.source.drop_block(11)

        def unavailable(start: int, end: int) -> list[int]:
            raise SourceUnavailableError("getBlocks timed out", method="getBlocks")

        monkeypatch.setattr(harness.source, "list_slots", unavailable)

        report = harness.reconciler.run_cycle()

        assert report.actions == {"S1": ReconcileAction.UNCHANGED, "S2": ReconcileAction.ORPHANED}
        assert harness.writer.get("S2") is None


class TestFinalityWindow:
    def test_records_past_finality_are_final(self, harness: PipelineHarness) -> None:
        harness.source.set_head(11 + 32)

        report = harness.reconciler.run_cycle()

        assert report.boundary == 11
        assert report.promoted == 2
        assert report.checked == 0
        assert harness.writer.state_counts()[RecordState.FINAL] == 2

    def test_final_records_never_touched(self, harness: PipelineHarness) -> None:
        harness.source.set_head(100)
        harness.source.drop_block(11)

        harness.reconciler.run_cycle()

        assert harness.writer.get("S2") is not None

    def test_partial_window(self, harness: PipelineHarness) -> None:
        # boundary 10: S1 final, S2 still provisional
        harness.source.set_head(10 + 32)
        harness.source.drop_block(10)
        harness.source.drop_block(11)

        report = harness.reconciler.run_cycle()

        assert report.promoted == 1
        assert report.actions == {"S2": ReconcileAction.ORPHANED}
        assert harness.writer.get("S1") is not None

    def test_depth_must_be_positive(self, source: FakeChainSource, harness: PipelineHarness) -> None:
        with pytest.raises(ValueError):
            Reconciler(source, harness.writer, harness.checkpoint, harness.classifier, finality_depth=0)
