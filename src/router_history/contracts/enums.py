"""Status codes and kinds used across subsystem boundaries."""

from enum import StrEnum


class RecordState(StrEnum):
    """Lifecycle state of a recorded signature.

    Stored in the database (tx_slots.state). Unseen signatures have no row.
    """

    PROVISIONAL = "provisional"
    FINAL = "final"
    ORPHANED = "orphaned"


class ResolutionStatus(StrEnum):
    """Canonical status of a signature as reported by the chain source."""

    CANONICAL = "canonical"
    ABSENT = "absent"


class ReconcileAction(StrEnum):
    """What the reconciler did to a single signature in the window."""

    UNCHANGED = "unchanged"
    ORPHANED = "orphaned"
    OVERWRITTEN = "overwritten"
    UNRESOLVED = "unresolved"
    ADDED = "added"


class Commitment(StrEnum):
    """Confirmation level requested from the chain source."""

    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
