"""Data records that cross the fetch/classify/write boundaries."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, TypeAlias

from router_history.contracts.enums import ReconcileAction, RecordState, ResolutionStatus

# Chain position: a slot number. Positions are compared, never interpreted.
Position: TypeAlias = int


@dataclass(frozen=True)
class Instruction:
    """A single invoked instruction: program id plus instruction data as delivered (base58)."""

    program_id: str
    data: str = ""
    inner: bool = False


@dataclass(frozen=True)
class RawTransaction:
    """A transaction as delivered by the chain source, before classification.

    `error` carries the chain's own execution verdict: None means the
    transaction succeeded. `status_known` is False when the node returned no
    status metadata, in which case `error` says nothing. `instructions` lists
    top-level instructions first, then inner (CPI) instructions. `payload`
    keeps the upstream document so a rejected transaction can be quarantined
    verbatim.
    """

    signature: str
    slot: Position
    block_time: int | None
    error: Any = None
    status_known: bool = True
    account_keys: tuple[str, ...] = ()
    instructions: tuple[Instruction, ...] = ()
    log_messages: tuple[str, ...] = ()
    payload: dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def program_ids(self) -> frozenset[str]:
        return frozenset(ix.program_id for ix in self.instructions)

    def references(self, program_ids: frozenset[str]) -> bool:
        """Whether any of program_ids is invoked or listed as an account."""
        return bool(program_ids & self.program_ids) or bool(program_ids.intersection(self.account_keys))


@dataclass(frozen=True)
class TransactionRecord:
    """One row of router.tx_history."""

    signature: str
    timestamp: datetime
    is_success: bool
    router_version: int

    def __post_init__(self) -> None:
        if self.timestamp.tzinfo is None:
            raise ValueError(f"timestamp must be timezone-aware for {self.signature}")

    def to_row(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "timestamp": self.timestamp,
            "is_success": self.is_success,
            "router_version": self.router_version,
        }


@dataclass(frozen=True)
class SlottedRecord:
    """A classified record together with the slot it was observed in."""

    record: TransactionRecord
    slot: Position

    @property
    def signature(self) -> str:
        return self.record.signature


@dataclass(frozen=True)
class FetchBatch:
    """Result of one fetch.

    Every slot in (from_position, next_position] is either the slot of a
    transaction in `transactions` or listed in `empty_slots`.
    """

    transactions: tuple[RawTransaction, ...]
    next_position: Position
    empty_slots: tuple[Position, ...] = ()


@dataclass(frozen=True)
class UpsertResult:
    """Counts from an upsert batch."""

    inserted: int = 0
    unchanged: int = 0
    overwritten: int = 0

    @property
    def total(self) -> int:
        return self.inserted + self.unchanged + self.overwritten

    def __add__(self, other: UpsertResult) -> UpsertResult:
        return UpsertResult(
            inserted=self.inserted + other.inserted,
            unchanged=self.unchanged + other.unchanged,
            overwritten=self.overwritten + other.overwritten,
        )


@dataclass(frozen=True)
class Resolution:
    """Canonical status of a signature at query time.

    `transaction` is set when status is CANONICAL.
    """

    signature: str
    status: ResolutionStatus
    transaction: RawTransaction | None = None

    def __post_init__(self) -> None:
        if self.status == ResolutionStatus.CANONICAL and self.transaction is None:
            raise ValueError("canonical resolution must carry the transaction")
        if self.status == ResolutionStatus.ABSENT and self.transaction is not None:
            raise ValueError("absent resolution must not carry a transaction")


@dataclass(frozen=True)
class TrackedSignature:
    """Row of router.tx_slots."""

    signature: str
    slot: Position
    state: RecordState
    updated_at: datetime


@dataclass(frozen=True)
class QuarantineEntry:
    """Row of router.tx_quarantine."""

    signature: str
    slot: Position
    error_type: str
    reason: str
    payload_json: str
    quarantined_at: datetime


@dataclass
class ReconcileReport:
    """Outcome of one reconciler cycle."""

    head: Position
    boundary: Position
    promoted: int = 0
    quarantined: int = 0
    actions: dict[str, ReconcileAction] = field(default_factory=dict)

    def count(self, action: ReconcileAction) -> int:
        return sum(1 for a in self.actions.values() if a == action)

    @property
    def checked(self) -> int:
        return len(self.actions)


@dataclass(frozen=True)
class CycleResult:
    """Outcome of one ingest cycle."""

    from_position: Position
    to_position: Position
    upserts: UpsertResult
    quarantined: int
    empty_slots: int

    @property
    def advanced(self) -> bool:
        return self.to_position > self.from_position


@dataclass
class RunSummary:
    """Totals over a pipeline run."""

    cycles: int = 0
    upserts: UpsertResult = field(default_factory=UpsertResult)
    quarantined: int = 0
    reconcile_passes: int = 0
    orphaned: int = 0
    checkpoint_conflicts: int = 0
    position: Position | None = None

    def add_cycle(self, result: CycleResult) -> None:
        self.cycles += 1
        self.upserts = self.upserts + result.upserts
        self.quarantined += result.quarantined
        self.position = result.to_position
