"""History store: schema, engine wrapper, checkpoint and writer."""

from router_history.core.store.checkpoint import CheckpointStore
from router_history.core.store.database import HistoryDB
from router_history.core.store.schema import (
    checkpoints_table,
    metadata,
    tx_history_table,
    tx_quarantine_table,
    tx_slots_table,
)
from router_history.core.store.writer import HistoryWriter

__all__ = [
    "CheckpointStore",
    "HistoryDB",
    "HistoryWriter",
    "checkpoints_table",
    "metadata",
    "tx_history_table",
    "tx_quarantine_table",
    "tx_slots_table",
]
