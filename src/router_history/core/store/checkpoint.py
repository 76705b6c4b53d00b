# src/router_history/core/store/checkpoint.py
"""CheckpointStore: durable, compare-and-advance cursor over chain slots."""

from datetime import UTC, datetime

import structlog
from sqlalchemy import Connection, select, update
from sqlalchemy.exc import IntegrityError

from router_history.contracts import Position, StaleCheckpointError
from router_history.core.store.database import HistoryDB
from router_history.core.store.schema import checkpoints_table

logger = structlog.get_logger(__name__)


class CheckpointStore:
    """Manages the pipeline checkpoint.

    The checkpoint is the last slot whose records are durably committed.
    It is modeled as versioned state rather than an in-memory singleton:
    each instance remembers the position it last loaded, and advance()
    only succeeds while the stored position still equals it. A second
    pipeline instance therefore fails fast with StaleCheckpointError
    instead of double-processing slots.
    """

    def __init__(self, db: HistoryDB, *, pipeline_name: str, genesis: Position) -> None:
        """Initialize with history database.

        Args:
            db: HistoryDB instance for storage
            pipeline_name: Checkpoint key (one row per pipeline)
            genesis: Position reported when no checkpoint exists yet
        """
        if genesis < 0:
            raise ValueError(f"genesis must be >= 0, got {genesis}")
        self._db = db
        self._pipeline_name = pipeline_name
        self._genesis = genesis
        self._current: Position | None = None

    @property
    def pipeline_name(self) -> str:
        return self._pipeline_name

    def load(self) -> Position:
        """Return the last durably committed position.

        Creates the checkpoint row at the genesis position on first start.
        Resets this instance's expectation to the stored value, which is
        how callers recover from StaleCheckpointError.
        """
        stored = self.peek()
        if stored is None:
            try:
                with self._db.connection() as conn:
                    conn.execute(
                        checkpoints_table.insert().values(
                            pipeline_name=self._pipeline_name,
                            position=self._genesis,
                            version=0,
                            updated_at=datetime.now(UTC),
                        )
                    )
                stored = self._genesis
                logger.info("checkpoint_created", pipeline=self._pipeline_name, position=stored)
            except IntegrityError:
                # Another instance created it first; theirs is authoritative
                stored = self.peek()
                if stored is None:
                    raise
        self._current = stored
        return stored

    def peek(self, conn: Connection | None = None) -> Position | None:
        """Read the stored position without changing this instance's expectation."""
        with self._db.begin_or_join(conn) as c:
            row = c.execute(
                select(checkpoints_table.c.position).where(checkpoints_table.c.pipeline_name == self._pipeline_name)
            ).fetchone()
        return None if row is None else int(row.position)

    def current(self) -> Position:
        """Position this instance last loaded or advanced to.

        Raises:
            RuntimeError: If load() was never called
        """
        if self._current is None:
            raise RuntimeError("CheckpointStore.load() must be called before current()")
        return self._current

    def expect(self, position: Position) -> None:
        """Reset the position this instance expects to find stored.

        Used after a joined transaction rolls back: advance() has already
        moved the expectation forward, but nothing was committed.
        """
        self._current = position

    def advance(self, new_position: Position, conn: Connection | None = None) -> None:
        """Durably persist new_position.

        When conn is given the update joins the caller's transaction, so the
        checkpoint commits together with the batch it covers. If that
        transaction rolls back, the caller restores the previous expectation
        with expect().

        Args:
            new_position: Slot fully processed; must exceed the stored value
            conn: Optional open connection to join

        Raises:
            StaleCheckpointError: If new_position does not exceed the stored
                position, or the stored position moved since this instance
                last loaded it.
        """
        expected = self.current()
        if new_position <= expected:
            raise StaleCheckpointError(self._pipeline_name, new_position, stored=expected, expected=expected)

        with self._db.begin_or_join(conn) as c:
            result = c.execute(
                update(checkpoints_table)
                .where(checkpoints_table.c.pipeline_name == self._pipeline_name)
                .where(checkpoints_table.c.position == expected)
                .where(checkpoints_table.c.position < new_position)
                .values(
                    position=new_position,
                    version=checkpoints_table.c.version + 1,
                    updated_at=datetime.now(UTC),
                )
            )
            if result.rowcount != 1:
                stored = self.peek(c)
                logger.warning(
                    "checkpoint_stale",
                    pipeline=self._pipeline_name,
                    attempted=new_position,
                    expected=expected,
                    stored=stored,
                )
                raise StaleCheckpointError(self._pipeline_name, new_position, stored=stored, expected=expected)

        self._current = new_position
        logger.debug("checkpoint_advanced", pipeline=self._pipeline_name, position=new_position)
