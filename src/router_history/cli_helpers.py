"""CLI helper functions for wiring pipeline components from settings."""

from dataclasses import dataclass
from typing import TYPE_CHECKING

from router_history.core.store.checkpoint import CheckpointStore
from router_history.core.store.database import HistoryDB
from router_history.core.store.writer import HistoryWriter
from router_history.engine.classifier import Classifier
from router_history.engine.fetcher import Fetcher
from router_history.engine.pipeline import IngestPipeline
from router_history.engine.reconciler import Reconciler
from router_history.engine.retry import RetryConfig, RetryManager
from router_history.sources.protocols import ChainSource
from router_history.sources.solana_rpc import SolanaRpcSource

if TYPE_CHECKING:
    from router_history.core.config import RouterHistorySettings


@dataclass
class Components:
    """Everything a command needs, built from one settings object."""

    db: HistoryDB
    source: ChainSource
    checkpoint: CheckpointStore
    writer: HistoryWriter
    classifier: Classifier
    reconciler: Reconciler
    pipeline: IngestPipeline

    def close(self) -> None:
        self.source.close()
        self.db.close()


def build_components(
    config: "RouterHistorySettings",
    *,
    source: ChainSource | None = None,
    db: HistoryDB | None = None,
    reconcile_interleaved: bool = True,
) -> Components:
    """Build the pipeline from validated settings.

    Args:
        config: Validated RouterHistorySettings instance
        source: Chain source override (tests); defaults to Solana JSON-RPC
        db: Store override (tests); defaults to config.store.url
        reconcile_interleaved: Run the reconciler inside the ingest loop

    Returns:
        Wired Components
    """
    if db is None:
        db = HistoryDB.from_url(config.store.url, echo=config.store.echo)
    if source is None:
        source = SolanaRpcSource(
            config.source.rpc_url,
            commitment=config.source.commitment,
            timeout=config.source.timeout_seconds,
            headers=dict(config.source.headers),
        )

    checkpoint = CheckpointStore(db, pipeline_name=config.store.pipeline_name, genesis=config.store.genesis_slot)
    writer = HistoryWriter(db)
    classifier = Classifier.from_settings(config.router)
    fetcher = Fetcher(source, classifier.program_ids, max_slots=config.source.max_slots_per_batch)
    reconciler = Reconciler(
        source,
        writer,
        checkpoint,
        classifier,
        finality_depth=config.reconcile.finality_depth,
    )
    pipeline = IngestPipeline(
        db,
        checkpoint,
        fetcher,
        classifier,
        writer,
        retry=RetryManager(RetryConfig.from_settings(config.retry)),
        max_batch_size=config.ingest.max_batch_size,
        poll_interval=config.ingest.poll_interval_seconds,
        reconciler=reconciler if reconcile_interleaved else None,
        reconcile_every=config.reconcile.every_n_cycles,
    )
    return Components(
        db=db,
        source=source,
        checkpoint=checkpoint,
        writer=writer,
        classifier=classifier,
        reconciler=reconciler,
        pipeline=pipeline,
    )
