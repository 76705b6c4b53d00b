"""Tests for Classifier."""

from __future__ import annotations

from dataclasses import replace
from datetime import UTC, datetime

import pytest

from router_history.contracts import Instruction, MalformedTransactionError, UnknownVersionError
from router_history.engine.classifier import Classifier
from tests.fixtures.chain import OTHER_PROGRAM, ROUTER_V2, ROUTER_V3, make_raw
from tests.fixtures.pipeline import make_classifier


@pytest.fixture
def classifier() -> Classifier:
    return make_classifier()


class TestClassify:
    def test_success_record(self, classifier: Classifier) -> None:
        raw = make_raw("S1", 100, block_time=1_700_000_000)

        record = classifier.classify(raw)

        assert record.signature == "S1"
        assert record.timestamp == datetime.fromtimestamp(1_700_000_000, tz=UTC)
        assert record.is_success is True
        assert record.router_version == 3

    def test_failed_transaction_recorded_as_failure(self, classifier: Classifier) -> None:
        record = classifier.classify(make_raw("S2", 100, success=False))

        assert record.is_success is False
        assert record.router_version == 3

    def test_version_from_program_id(self, classifier: Classifier) -> None:
        assert classifier.classify(make_raw("S1", 1, program=ROUTER_V2)).router_version == 2

    def test_router_invoked_through_cpi(self, classifier: Classifier) -> None:
        raw = make_raw("S1", 1, inner=True)

        assert classifier.classify(raw).router_version == 3

    def test_first_router_instruction_wins(self, classifier: Classifier) -> None:
        raw = replace(
            make_raw("S1", 1),
            instructions=(
                Instruction(program_id=OTHER_PROGRAM),
                Instruction(program_id=ROUTER_V2),
                Instruction(program_id=ROUTER_V3, inner=True),
            ),
        )

        assert classifier.classify(raw).router_version == 2

    def test_version_from_log_marker(self, classifier: Classifier) -> None:
        raw = make_raw("S1", 1, program=OTHER_PROGRAM, log_messages=["Program log: router version 3"])

        assert classifier.classify(raw).router_version == 3

    def test_unknown_log_version_rejected(self, classifier: Classifier) -> None:
        raw = make_raw("S1", 1, program=OTHER_PROGRAM, log_messages=["Program log: router version 9"])

        with pytest.raises(UnknownVersionError) as exc_info:
            classifier.classify(raw)

        assert exc_info.value.details["log_markers"] == ["9"]

    def test_no_marker_raises_unknown_version(self, classifier: Classifier) -> None:
        raw = make_raw("S1", 77, program=OTHER_PROGRAM)

        with pytest.raises(UnknownVersionError) as exc_info:
            classifier.classify(raw)

        assert exc_info.value.signature == "S1"
        assert exc_info.value.slot == 77
        assert exc_info.value.details["invoked_programs"] == [OTHER_PROGRAM]

    def test_missing_block_time_is_malformed(self, classifier: Classifier) -> None:
        raw = replace(make_raw("S1", 5), block_time=None)

        with pytest.raises(MalformedTransactionError):
            classifier.classify(raw)

    def test_unknown_execution_status_is_malformed(self, classifier: Classifier) -> None:
        # No error reported, but the node had no status: success is not assumed
        raw = replace(make_raw("S1", 5), status_known=False)

        with pytest.raises(MalformedTransactionError, match="execution status") as exc_info:
            classifier.classify(raw)

        assert exc_info.value.signature == "S1"
        assert exc_info.value.slot == 5

    def test_deterministic(self, classifier: Classifier) -> None:
        raw = make_raw("S1", 5)

        assert classifier.classify(raw) == classifier.classify(raw)


class TestConstruction:
    def test_requires_programs(self) -> None:
        with pytest.raises(ValueError):
            Classifier({})

    def test_program_ids(self) -> None:
        assert make_classifier().program_ids == frozenset({ROUTER_V2, ROUTER_V3})

    def test_from_settings(self) -> None:
        from router_history.core.config import RouterSettings

        settings = RouterSettings(
            programs=[{"program_id": ROUTER_V3, "version": 3}],
            version_log_pattern=r"router v(\d+)",
            known_versions=[3, 4],
        )
        classifier = Classifier.from_settings(settings)

        raw = make_raw("S1", 1, program=OTHER_PROGRAM, log_messages=["Program log: router v4"])
        assert classifier.classify(raw).router_version == 4
