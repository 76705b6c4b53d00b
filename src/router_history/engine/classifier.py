# src/router_history/engine/classifier.py
"""Classifier: derive a TransactionRecord from a RawTransaction.

Pure and deterministic. Success is the chain's own verdict (the execution
error field), never inferred from side effects. The router version comes
from the version marker, in order of precedence:

1. The invoked router program id (each build is deployed at its own address);
   the first router instruction in execution order wins.
2. A program log line matching the configured version pattern, accepted only
   if the version is known.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import TYPE_CHECKING

from router_history.contracts import (
    MalformedTransactionError,
    RawTransaction,
    TransactionRecord,
    UnknownVersionError,
)

if TYPE_CHECKING:
    from router_history.core.config import RouterSettings


class Classifier:
    """Maps raw transactions to history records.

    Example:
        classifier = Classifier({"Router111...": 3})
        record = classifier.classify(raw)
    """

    def __init__(
        self,
        program_versions: Mapping[str, int],
        *,
        version_log_pattern: str | None = None,
        known_versions: Iterable[int] | None = None,
    ) -> None:
        """Initialize the classifier.

        Args:
            program_versions: Router program id -> router version
            version_log_pattern: Regex with one group capturing the version
                from a log line
            known_versions: Versions accepted from log markers; defaults to
                the values of program_versions
        """
        if not program_versions:
            raise ValueError("at least one router program is required")
        self._program_versions = dict(program_versions)
        self._log_pattern = re.compile(version_log_pattern) if version_log_pattern else None
        self._known_versions = frozenset(known_versions) if known_versions else frozenset(self._program_versions.values())

    @classmethod
    def from_settings(cls, settings: RouterSettings) -> Classifier:
        return cls(
            settings.program_versions,
            version_log_pattern=settings.version_log_pattern,
            known_versions=settings.accepted_log_versions,
        )

    @property
    def program_ids(self) -> frozenset[str]:
        """Router program ids; the fetcher keeps transactions referencing any of them."""
        return frozenset(self._program_versions)

    def classify(self, raw: RawTransaction) -> TransactionRecord:
        """Classify one transaction.

        Raises:
            MalformedTransactionError: If the block time or the execution
                status is missing
            UnknownVersionError: If no recognized version marker is present
        """
        if raw.block_time is None:
            raise MalformedTransactionError(
                f"transaction {raw.signature} has no block time",
                signature=raw.signature,
                slot=raw.slot,
            )
        if not raw.status_known:
            raise MalformedTransactionError(
                f"transaction {raw.signature} has no execution status",
                signature=raw.signature,
                slot=raw.slot,
            )

        return TransactionRecord(
            signature=raw.signature,
            timestamp=datetime.fromtimestamp(raw.block_time, tz=UTC),
            is_success=raw.error is None,
            router_version=self._router_version(raw),
        )

    def _router_version(self, raw: RawTransaction) -> int:
        for ix in raw.instructions:
            version = self._program_versions.get(ix.program_id)
            if version is not None:
                return version

        seen: list[str] = []
        if self._log_pattern is not None:
            for line in raw.log_messages:
                match = self._log_pattern.search(line)
                if match is None:
                    continue
                seen.append(match.group(1))
                try:
                    version = int(match.group(1))
                except ValueError:
                    continue
                if version in self._known_versions:
                    return version

        raise UnknownVersionError(
            f"no recognized router version marker in {raw.signature}",
            signature=raw.signature,
            slot=raw.slot,
            details={"invoked_programs": sorted(raw.program_ids), "log_markers": seen},
        )
