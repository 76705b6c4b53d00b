"""
router-history: transaction-history audit pipeline for on-chain router activity.

Fetches router transactions from a chain source, classifies their outcome and
router version, and records each signature exactly once in router.tx_history,
resuming from a durable checkpoint and repairing reorgs inside the finality
window.
"""

__version__ = "0.1.0"
