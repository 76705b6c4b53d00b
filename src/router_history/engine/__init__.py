"""Ingestion engine: classification, fetching, reconciliation and the pipeline loop."""

from router_history.engine.classifier import Classifier
from router_history.engine.fetcher import Fetcher
from router_history.engine.pipeline import IngestPipeline
from router_history.engine.reconciler import Reconciler
from router_history.engine.retry import MaxRetriesExceeded, RetryConfig, RetryManager

__all__ = [
    "Classifier",
    "Fetcher",
    "IngestPipeline",
    "MaxRetriesExceeded",
    "Reconciler",
    "RetryConfig",
    "RetryManager",
]
