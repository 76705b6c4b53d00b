"""Chain sources: the ChainSource protocol and its Solana JSON-RPC implementation."""

from router_history.sources.protocols import ChainSource
from router_history.sources.solana_rpc import SolanaRpcSource, normalize_transaction

__all__ = ["ChainSource", "SolanaRpcSource", "normalize_transaction"]
