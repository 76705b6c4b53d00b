# src/router_history/core/store/schema.py
"""SQLAlchemy table definitions for the history store.

Uses SQLAlchemy Core (not ORM) for explicit control over queries
and compatibility with SQLite and PostgreSQL. All tables live in the
`router` schema; on SQLite the schema is translated away at engine level.
"""

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
)

ROUTER_SCHEMA = "router"

# Shared metadata for all tables
metadata = MetaData(schema=ROUTER_SCHEMA)

# === Transaction history (read by downstream reporting) ===

tx_history_table = Table(
    "tx_history",
    metadata,
    # Base58 signatures are at most 88 characters
    Column("signature", String(88), primary_key=True),
    Column("timestamp", DateTime(timezone=True), nullable=False),
    Column("is_success", Boolean, nullable=False),
    Column("router_version", Integer, nullable=False),
)

# === Slot tracking for the reconciler ===

tx_slots_table = Table(
    "tx_slots",
    metadata,
    Column("signature", String(88), primary_key=True),
    Column("slot", BigInteger, nullable=False),
    Column("state", String(16), nullable=False),  # RecordState
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("state IN ('provisional', 'final', 'orphaned')", name="ck_tx_slots_state"),
    Index("ix_tx_slots_state_slot", "state", "slot"),
)

# === Checkpoint (one row per pipeline) ===

checkpoints_table = Table(
    "checkpoints",
    metadata,
    Column("pipeline_name", String(64), primary_key=True),
    Column("position", BigInteger, nullable=False),
    # Bumped on every advance; lets operators see how many batches committed
    Column("version", Integer, nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    CheckConstraint("position >= 0", name="ck_checkpoints_position"),
)

# === Data-quality quarantine ===

tx_quarantine_table = Table(
    "tx_quarantine",
    metadata,
    Column("signature", String(88), primary_key=True),
    Column("slot", BigInteger, nullable=False),
    Column("error_type", String(64), nullable=False),
    Column("reason", Text, nullable=False),
    Column("payload_json", Text, nullable=False),
    Column("quarantined_at", DateTime(timezone=True), nullable=False),
)
