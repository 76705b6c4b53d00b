# src/router_history/core/config.py
"""
Configuration schema and loading for the router-history pipeline.

Uses Pydantic for validation and Dynaconf for multi-source loading.
Settings are frozen (immutable) after construction.
"""

import re
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from router_history.contracts.enums import Commitment


class SourceSettings(BaseModel):
    """Chain source (JSON-RPC endpoint) configuration."""

    model_config = {"frozen": True}

    # NOTE: str, not HttpUrl - keeps the URL byte-identical to what the operator wrote
    rpc_url: str = Field(description="JSON-RPC endpoint of the chain source")
    commitment: Commitment = Field(
        default=Commitment.CONFIRMED,
        description="Confirmation level for every read (confirmed or finalized)",
    )
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")
    max_slots_per_batch: int = Field(default=100, gt=0, description="Upper bound on slots scanned per fetch")
    headers: dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers (e.g. API keys)")

    @field_validator("rpc_url")
    @classmethod
    def validate_rpc_url(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"rpc_url must be an http(s) URL, got '{v}'")
        return v


class RouterProgram(BaseModel):
    """A deployed router build: its program id and the version it reports."""

    model_config = {"frozen": True}

    program_id: str = Field(min_length=32, max_length=44, description="Base58 program address")
    version: int = Field(ge=0, description="Router version recorded for transactions invoking this program")


class RouterSettings(BaseModel):
    """How router transactions are recognized and versioned.

    Example YAML:
        router:
          programs:
            - program_id: AutobahnRouter1111111111111111111111111111
              version: 3
          version_log_pattern: "^Program log: router version (\\d+)$"
          known_versions: [2, 3]
    """

    model_config = {"frozen": True}

    programs: list[RouterProgram] = Field(min_length=1, description="Router program ids and their versions")
    version_log_pattern: str | None = Field(
        default=None,
        description="Regex with one capture group extracting the version from a log line",
    )
    known_versions: list[int] = Field(
        default_factory=list,
        description="Versions accepted from log markers (defaults to the program versions)",
    )

    @field_validator("version_log_pattern")
    @classmethod
    def validate_pattern(cls, v: str | None) -> str | None:
        if v is None:
            return v
        try:
            compiled = re.compile(v)
        except re.error as e:
            raise ValueError(f"Invalid version_log_pattern: {e}") from e
        if compiled.groups != 1:
            raise ValueError(f"version_log_pattern must have exactly one capture group, found {compiled.groups}")
        return v

    @model_validator(mode="after")
    def validate_unique_programs(self) -> "RouterSettings":
        ids = [p.program_id for p in self.programs]
        duplicates = {i for i in ids if ids.count(i) > 1}
        if duplicates:
            raise ValueError(f"Duplicate router program id(s): {sorted(duplicates)}")
        return self

    @property
    def program_versions(self) -> dict[str, int]:
        return {p.program_id: p.version for p in self.programs}

    @property
    def accepted_log_versions(self) -> frozenset[int]:
        if self.known_versions:
            return frozenset(self.known_versions)
        return frozenset(p.version for p in self.programs)


class StoreSettings(BaseModel):
    """History store configuration."""

    model_config = {"frozen": True}

    # NOTE: Using str instead of Path - Path mangles PostgreSQL DSNs
    url: str = Field(
        default="sqlite:///./state/router_history.db",
        description="Full SQLAlchemy database URL",
    )
    pipeline_name: str = Field(default="router", min_length=1, max_length=64, description="Checkpoint key")
    genesis_slot: int = Field(default=0, ge=0, description="Checkpoint position on first start")
    echo: bool = Field(default=False, description="Echo SQL statements")


class IngestSettings(BaseModel):
    """Ingest loop configuration."""

    model_config = {"frozen": True}

    max_batch_size: int = Field(default=500, gt=0, description="Transactions per committed batch (slot-aligned)")
    poll_interval_seconds: float = Field(default=2.0, ge=0, description="Sleep when caught up with the chain head")


class ReconcileSettings(BaseModel):
    """Reorg reconciliation configuration.

    finality_depth is the number of most recent slots in which a record is
    still provisional. Records older than head - finality_depth are final.
    """

    model_config = {"frozen": True}

    finality_depth: int = Field(default=32, gt=0, description="Slots behind the head before a record is final")
    every_n_cycles: int | None = Field(
        default=10,
        gt=0,
        description="Interleave a reconcile pass every N ingest cycles (None disables)",
    )


class RetrySettings(BaseModel):
    """Retry behavior configuration."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=5, gt=0, description="Maximum attempts before surfacing the failure")
    initial_delay_seconds: float = Field(default=1.0, gt=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=60.0, gt=0, description="Maximum backoff delay")
    exponential_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")


class LoggingSettings(BaseModel):
    """Log output configuration.

    The --verbose and --json-logs CLI flags override these.
    """

    model_config = {"frozen": True}

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", description="Root log level")
    format: Literal["console", "json"] = Field(default="console", description="console for operators, json for log shippers")

    @field_validator("level", mode="before")
    @classmethod
    def normalize_level(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class RouterHistorySettings(BaseModel):
    """Top-level configuration.

    All settings are validated and frozen after construction.
    """

    model_config = {"frozen": True}

    source: SourceSettings = Field(description="Chain source configuration")
    router: RouterSettings = Field(description="Router program recognition")
    store: StoreSettings = Field(default_factory=StoreSettings, description="History store configuration")
    ingest: IngestSettings = Field(default_factory=IngestSettings, description="Ingest loop configuration")
    reconcile: ReconcileSettings = Field(default_factory=ReconcileSettings, description="Reorg reconciliation")
    retry: RetrySettings = Field(default_factory=RetrySettings, description="Retry behavior configuration")
    logging: LoggingSettings = Field(default_factory=LoggingSettings, description="Log output configuration")


# Regex pattern for ${VAR} or ${VAR:-default} syntax
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z_][A-Z0-9_]*)(?::-([^}]*))?\}")


def _expand_env_vars(config: dict[str, Any]) -> dict[str, Any]:
    """Recursively expand ${VAR} and ${VAR:-default} patterns in config values.

    Args:
        config: Configuration dict (may contain nested structures)

    Returns:
        New dict with environment variables expanded
    """
    import os

    def _expand_string(value: str) -> str:
        def replacer(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default = match.group(2)
            env_value = os.environ.get(var_name)
            if env_value is not None:
                return env_value
            if default is not None:
                return default
            # No env var and no default - keep original (validation will flag it)
            return match.group(0)

        return _ENV_VAR_PATTERN.sub(replacer, value)

    def _expand_value(value: Any) -> Any:
        if isinstance(value, str):
            return _expand_string(value)
        elif isinstance(value, dict):
            return {k: _expand_value(v) for k, v in value.items()}
        elif isinstance(value, list):
            return [_expand_value(item) for item in value]
        else:
            return value

    return {k: _expand_value(v) for k, v in config.items()}


def load_settings(config_path: Path) -> RouterHistorySettings:
    """Load settings from YAML file with environment variable overrides.

    Uses Dynaconf for multi-source loading with precedence:
    1. Environment variables (ROUTER_HISTORY_*) - highest priority
    2. Config file (settings.yaml)
    3. Defaults from Pydantic schema - lowest priority

    Environment variable format: ROUTER_HISTORY_STORE__URL for nested keys.

    Args:
        config_path: Path to YAML configuration file

    Returns:
        Validated RouterHistorySettings instance

    Raises:
        ValidationError: If configuration fails Pydantic validation
        FileNotFoundError: If config file doesn't exist
    """
    from dynaconf import Dynaconf

    # Dynaconf silently accepts missing files
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    dynaconf_settings = Dynaconf(
        envvar_prefix="ROUTER_HISTORY",
        settings_files=[str(config_path)],
        environments=False,
        load_dotenv=False,
        merge_enabled=True,
    )

    # Dynaconf returns uppercase keys; convert to lowercase for Pydantic
    internal_keys = {"LOAD_DOTENV", "ENVIRONMENTS", "SETTINGS_FILES"}
    raw_config = {k.lower(): v for k, v in dynaconf_settings.as_dict().items() if k not in internal_keys}

    raw_config = _expand_env_vars(raw_config)

    return RouterHistorySettings(**raw_config)


def resolve_config(settings: RouterHistorySettings) -> dict[str, Any]:
    """Convert validated settings to a dict for display.

    Header values are redacted; they commonly carry API keys.
    """
    config_dict = settings.model_dump(mode="json")
    headers = config_dict["source"]["headers"]
    config_dict["source"]["headers"] = {name: "***" for name in headers}
    return config_dict
