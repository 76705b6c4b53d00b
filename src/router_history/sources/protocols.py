"""Chain source protocol.

The pipeline depends only on this interface; the Solana JSON-RPC client
and the in-memory test source both implement it structurally.
"""

from typing import Protocol, runtime_checkable

from router_history.contracts import Position, RawTransaction, Resolution


@runtime_checkable
class ChainSource(Protocol):
    """Read access to a chain's confirmed history.

    Every method raises SourceUnavailableError on transport failure.
    """

    def head(self) -> Position:
        """Most recent slot at the configured commitment."""
        ...

    def list_slots(self, start: Position, end: Position) -> list[Position]:
        """Slots in [start, end] that produced a block, ascending.

        Slots in the range that are absent were skipped by the chain.
        """
        ...

    def block_transactions(self, slot: Position) -> list[RawTransaction]:
        """All transactions of the block at slot, in block order."""
        ...

    def resolve(self, signature: str) -> Resolution:
        """Canonical status of a signature at query time."""
        ...

    def close(self) -> None:
        ...
