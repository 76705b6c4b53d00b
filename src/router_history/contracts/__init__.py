"""Shared contracts for cross-boundary data types.

This package is a LEAF MODULE with no outbound dependencies to core/engine.
Settings classes are NOT re-exported here - import them from
router_history.core.config.
"""

from router_history.contracts.enums import Commitment, ReconcileAction, RecordState, ResolutionStatus
from router_history.contracts.errors import (
    ClassificationError,
    ConfigurationError,
    MalformedTransactionError,
    RouterHistoryError,
    SourceUnavailableError,
    SourceUnhealthyError,
    StaleCheckpointError,
    StoreUnavailableError,
    UnknownVersionError,
)
from router_history.contracts.records import (
    CycleResult,
    FetchBatch,
    Instruction,
    Position,
    QuarantineEntry,
    RawTransaction,
    ReconcileReport,
    Resolution,
    RunSummary,
    SlottedRecord,
    TrackedSignature,
    TransactionRecord,
    UpsertResult,
)

__all__ = [
    "ClassificationError",
    "Commitment",
    "ConfigurationError",
    "CycleResult",
    "FetchBatch",
    "Instruction",
    "MalformedTransactionError",
    "Position",
    "QuarantineEntry",
    "RawTransaction",
    "ReconcileAction",
    "ReconcileReport",
    "RecordState",
    "Resolution",
    "ResolutionStatus",
    "RouterHistoryError",
    "RunSummary",
    "SlottedRecord",
    "SourceUnavailableError",
    "SourceUnhealthyError",
    "StaleCheckpointError",
    "StoreUnavailableError",
    "TrackedSignature",
    "TransactionRecord",
    "UnknownVersionError",
    "UpsertResult",
]
