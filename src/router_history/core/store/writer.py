# src/router_history/core/store/writer.py
"""HistoryWriter: idempotent, atomic writes to router.tx_history.

Uniqueness is enforced by the primary key on signature. Writes go through
the dialect's INSERT ... ON CONFLICT DO UPDATE so a concurrent writer
(the reconciler) can never create a second row for a signature.
"""

from __future__ import annotations

import json
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

import structlog
from sqlalchemy import Connection, and_, delete, func, select, update
from sqlalchemy.dialects import postgresql, sqlite

from router_history.contracts import (
    ClassificationError,
    Position,
    QuarantineEntry,
    RecordState,
    SlottedRecord,
    TrackedSignature,
    TransactionRecord,
    UpsertResult,
)
from router_history.core.store.database import HistoryDB
from router_history.core.store.schema import tx_history_table, tx_quarantine_table, tx_slots_table

logger = structlog.get_logger(__name__)


def _as_utc(value: datetime) -> datetime:
    """SQLite returns naive datetimes; everything stored is UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _row_to_record(row: Any) -> TransactionRecord:
    return TransactionRecord(
        signature=row.signature,
        timestamp=_as_utc(row.timestamp),
        is_success=bool(row.is_success),
        router_version=int(row.router_version),
    )


def _normalize(record: TransactionRecord) -> TransactionRecord:
    return TransactionRecord(
        signature=record.signature,
        timestamp=_as_utc(record.timestamp),
        is_success=record.is_success,
        router_version=record.router_version,
    )


class HistoryWriter:
    """Writes classified records and tracks their lifecycle state.

    Example:
        writer = HistoryWriter(db)
        with db.connection() as conn:
            result = writer.upsert_batch(records, conn=conn)
            checkpoints.advance(next_slot, conn=conn)
    """

    def __init__(self, db: HistoryDB) -> None:
        self._db = db

    def _insert(self, table: Any) -> Any:
        dialect = self._db.dialect_name
        if dialect == "postgresql":
            return postgresql.insert(table)
        if dialect == "sqlite":
            return sqlite.insert(table)
        raise NotImplementedError(f"Upsert not supported for dialect '{dialect}'")

    # === Writes ===

    def upsert(self, record: TransactionRecord | SlottedRecord, conn: Connection | None = None) -> UpsertResult:
        """Idempotently write one record.

        Same signature with identical values is a no-op; different values
        overwrite the existing row.
        """
        return self.upsert_batch([record], conn=conn)

    def upsert_batch(
        self,
        records: Iterable[TransactionRecord | SlottedRecord],
        conn: Connection | None = None,
    ) -> UpsertResult:
        """Atomically write a batch: all records become visible, or none do.

        Duplicate signatures inside the batch collapse to the last occurrence.
        SlottedRecord inputs also (re)mark the signature as provisional at its
        slot, which is how an orphaned signature returns once observed as
        canonical again. Final signatures are immutable: neither their row
        nor their tracking changes, and they count as unchanged. Every
        written signature leaves quarantine.

        Args:
            records: Records to write, optionally carrying their slot
            conn: Optional open connection to join (shares its transaction)

        Returns:
            Counts of inserted, unchanged and overwritten rows
        """
        by_signature: dict[str, TransactionRecord] = {}
        slots: dict[str, Position] = {}
        for item in records:
            if isinstance(item, SlottedRecord):
                by_signature[item.signature] = _normalize(item.record)
                slots[item.signature] = item.slot
            else:
                by_signature[item.signature] = _normalize(item)
                slots.pop(item.signature, None)

        if not by_signature:
            return UpsertResult()

        with self._db.begin_or_join(conn) as c:
            existing = self._fetch(c, list(by_signature))
            final = self._final(c, list(existing))
            changed: list[TransactionRecord] = []
            inserted = unchanged = overwritten = 0
            for signature, record in by_signature.items():
                current = existing.get(signature)
                if current is None:
                    inserted += 1
                    changed.append(record)
                elif current == record:
                    unchanged += 1
                elif signature in final:
                    # Past the finality boundary the row is immutable
                    unchanged += 1
                    logger.warning(
                        "final_record_not_overwritten",
                        signature=signature,
                        stored_success=current.is_success,
                        delivered_success=record.is_success,
                        stored_version=current.router_version,
                        delivered_version=record.router_version,
                    )
                else:
                    overwritten += 1
                    changed.append(record)
                    logger.info(
                        "history_overwrite",
                        signature=signature,
                        old_success=current.is_success,
                        new_success=record.is_success,
                        old_version=current.router_version,
                        new_version=record.router_version,
                    )

            if changed:
                stmt = self._insert(tx_history_table)
                stmt = stmt.on_conflict_do_update(
                    index_elements=[tx_history_table.c.signature],
                    set_={
                        "timestamp": stmt.excluded.timestamp,
                        "is_success": stmt.excluded.is_success,
                        "router_version": stmt.excluded.router_version,
                    },
                )
                c.execute(stmt, [r.to_row() for r in changed])

            tracked = {sig: slot for sig, slot in slots.items() if sig not in final}
            if tracked:
                self._track(c, tracked, RecordState.PROVISIONAL)

            cleared = c.execute(
                delete(tx_quarantine_table).where(tx_quarantine_table.c.signature.in_(list(by_signature)))
            ).rowcount
            if cleared:
                logger.info("quarantine_cleared", signatures=cleared)

        return UpsertResult(inserted=inserted, unchanged=unchanged, overwritten=overwritten)

    def _final(self, conn: Connection, signatures: Sequence[str]) -> set[str]:
        if not signatures:
            return set()
        rows = conn.execute(
            select(tx_slots_table.c.signature).where(
                and_(
                    tx_slots_table.c.signature.in_(signatures),
                    tx_slots_table.c.state == RecordState.FINAL.value,
                )
            )
        ).fetchall()
        return {row.signature for row in rows}

    def _track(self, conn: Connection, slots: dict[str, Position], state: RecordState) -> None:
        now = datetime.now(UTC)
        stmt = self._insert(tx_slots_table)
        stmt = stmt.on_conflict_do_update(
            index_elements=[tx_slots_table.c.signature],
            set_={"slot": stmt.excluded.slot, "state": stmt.excluded.state, "updated_at": stmt.excluded.updated_at},
            where=tx_slots_table.c.state != RecordState.FINAL.value,
        )
        conn.execute(
            stmt,
            [{"signature": sig, "slot": slot, "state": state.value, "updated_at": now} for sig, slot in slots.items()],
        )

    def mark_orphaned(self, signature: str, conn: Connection | None = None) -> bool:
        """Remove a record whose block left the canonical chain.

        The tx_history row is deleted and the signature is flagged orphaned
        in tx_slots, so it stays visible to operators.

        Returns:
            True if a history row was removed
        """
        with self._db.begin_or_join(conn) as c:
            removed = c.execute(delete(tx_history_table).where(tx_history_table.c.signature == signature)).rowcount
            c.execute(
                update(tx_slots_table)
                .where(tx_slots_table.c.signature == signature)
                .values(state=RecordState.ORPHANED.value, updated_at=datetime.now(UTC))
            )
        if removed:
            logger.warning("history_orphaned", signature=signature)
        return bool(removed)

    def promote_final(self, boundary: Position, conn: Connection | None = None) -> int:
        """Mark every provisional signature at or below boundary as final.

        Returns:
            Number of signatures promoted
        """
        with self._db.begin_or_join(conn) as c:
            result = c.execute(
                update(tx_slots_table)
                .where(
                    and_(
                        tx_slots_table.c.state == RecordState.PROVISIONAL.value,
                        tx_slots_table.c.slot <= boundary,
                    )
                )
                .values(state=RecordState.FINAL.value, updated_at=datetime.now(UTC))
            )
        return int(result.rowcount)

    def quarantine(
        self,
        error: ClassificationError,
        payload: dict[str, Any],
        conn: Connection | None = None,
    ) -> None:
        """Record a transaction the classifier rejected.

        Re-quarantining the same signature refreshes the entry.
        """
        now = datetime.now(UTC)
        stmt = self._insert(tx_quarantine_table)
        values = {
            "signature": error.signature,
            "slot": error.slot,
            "error_type": type(error).__name__,
            "reason": str(error),
            "payload_json": json.dumps(payload, sort_keys=True, default=str),
            "quarantined_at": now,
        }
        stmt = stmt.values(**values).on_conflict_do_update(
            index_elements=[tx_quarantine_table.c.signature],
            set_={k: v for k, v in values.items() if k != "signature"},
        )
        with self._db.begin_or_join(conn) as c:
            c.execute(stmt)

    # === Reads ===

    def _fetch(self, conn: Connection, signatures: Sequence[str]) -> dict[str, TransactionRecord]:
        rows = conn.execute(select(tx_history_table).where(tx_history_table.c.signature.in_(signatures))).fetchall()
        return {row.signature: _row_to_record(row) for row in rows}

    def unrecorded(self, signatures: Sequence[str]) -> list[str]:
        """Signatures with neither a history row nor a quarantine entry, in input order."""
        if not signatures:
            return []
        with self._db.connection() as conn:
            known = set(
                conn.execute(
                    select(tx_history_table.c.signature).where(tx_history_table.c.signature.in_(signatures))
                ).scalars()
            )
            known.update(
                conn.execute(
                    select(tx_quarantine_table.c.signature).where(tx_quarantine_table.c.signature.in_(signatures))
                ).scalars()
            )
        return [sig for sig in signatures if sig not in known]

    def get(self, signature: str) -> TransactionRecord | None:
        with self._db.connection() as conn:
            return self._fetch(conn, [signature]).get(signature)

    def all_records(self) -> list[TransactionRecord]:
        with self._db.connection() as conn:
            rows = conn.execute(select(tx_history_table).order_by(tx_history_table.c.signature)).fetchall()
        return [_row_to_record(row) for row in rows]

    def count(self) -> int:
        with self._db.connection() as conn:
            return int(conn.execute(select(func.count()).select_from(tx_history_table)).scalar_one())

    def tracking(self, signature: str) -> TrackedSignature | None:
        with self._db.connection() as conn:
            row = conn.execute(select(tx_slots_table).where(tx_slots_table.c.signature == signature)).fetchone()
        if row is None:
            return None
        return TrackedSignature(
            signature=row.signature,
            slot=int(row.slot),
            state=RecordState(row.state),
            updated_at=_as_utc(row.updated_at),
        )

    def provisional_since(self, boundary: Position, up_to: Position) -> list[TrackedSignature]:
        """Provisional signatures with boundary < slot <= up_to, oldest first."""
        with self._db.connection() as conn:
            rows = conn.execute(
                select(tx_slots_table)
                .where(
                    and_(
                        tx_slots_table.c.state == RecordState.PROVISIONAL.value,
                        tx_slots_table.c.slot > boundary,
                        tx_slots_table.c.slot <= up_to,
                    )
                )
                .order_by(tx_slots_table.c.slot, tx_slots_table.c.signature)
            ).fetchall()
        return [
            TrackedSignature(
                signature=row.signature,
                slot=int(row.slot),
                state=RecordState(row.state),
                updated_at=_as_utc(row.updated_at),
            )
            for row in rows
        ]

    def state_counts(self) -> dict[RecordState, int]:
        with self._db.connection() as conn:
            rows = conn.execute(
                select(tx_slots_table.c.state, func.count()).group_by(tx_slots_table.c.state)
            ).fetchall()
        counts = dict.fromkeys(RecordState, 0)
        for state, n in rows:
            counts[RecordState(state)] = int(n)
        return counts

    def quarantined(self) -> list[QuarantineEntry]:
        with self._db.connection() as conn:
            rows = conn.execute(select(tx_quarantine_table).order_by(tx_quarantine_table.c.slot)).fetchall()
        return [
            QuarantineEntry(
                signature=row.signature,
                slot=int(row.slot),
                error_type=row.error_type,
                reason=row.reason,
                payload_json=row.payload_json,
                quarantined_at=_as_utc(row.quarantined_at),
            )
            for row in rows
        ]
