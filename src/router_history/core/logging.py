# src/router_history/core/logging.py
"""Log output for router-history.

One stream on stdout for everything: the pipeline's structlog events and
stdlib records from httpx and SQLAlchemy are rendered by the same
ProcessorFormatter. Events logged inside an ingest cycle or reconcile pass
carry the bound `pipeline` (and `position` for ingest) through contextvars,
and each line names its emitting `component` (router_history.engine.fetcher
becomes engine.fetcher).
"""

from __future__ import annotations

import logging
import sys
from typing import IO, TYPE_CHECKING, Any, Literal

import structlog
from structlog.stdlib import ProcessorFormatter

if TYPE_CHECKING:
    from router_history.core.config import LoggingSettings

LogFormat = Literal["console", "json"]

# Chatty below WARNING: request lines, pool checkouts, statement echo
_LIBRARY_LOGGERS = ("httpx", "httpcore", "sqlalchemy.engine", "sqlalchemy.pool")

_PACKAGE_PREFIX = "router_history."


def _component(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    name = event_dict.pop("logger", None)
    if name:
        event_dict["component"] = name.removeprefix(_PACKAGE_PREFIX)
    return event_dict


def _renderer(log_format: LogFormat, stream: IO[str]) -> Any:
    if log_format == "json":
        return structlog.processors.JSONRenderer()
    return structlog.dev.ConsoleRenderer(colors=stream.isatty())


def configure_logging(*, level: str = "INFO", log_format: LogFormat = "console", stream: IO[str] | None = None) -> None:
    """Route structlog and stdlib logging to one handler.

    Args:
        level: Root level name (DEBUG, INFO, WARNING, ERROR)
        log_format: "console" for operators, "json" for log shippers
        stream: Output stream, stdout by default
    """
    out = stream if stream is not None else sys.stdout
    root_level = logging.getLevelName(level.upper())
    if not isinstance(root_level, int):
        raise ValueError(f"Unknown log level: {level}")

    pre_chain: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        _component,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    render_chain: list[Any] = [ProcessorFormatter.remove_processors_meta]
    if log_format == "json":
        render_chain.append(structlog.processors.format_exc_info)
    render_chain.append(_renderer(log_format, out))

    structlog.configure(
        processors=[*pre_chain, ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # The CLI reconfigures once settings are loaded
        cache_logger_on_first_use=False,
    )

    handler = logging.StreamHandler(out)
    handler.setFormatter(ProcessorFormatter(processors=render_chain, foreign_pre_chain=pre_chain))

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(root_level)

    for name in _LIBRARY_LOGGERS:
        logging.getLogger(name).setLevel(max(root_level, logging.WARNING))


def configure_from_settings(settings: LoggingSettings, *, verbose: bool = False, json_logs: bool = False) -> None:
    """Apply the settings file's logging section, with CLI flags taking precedence."""
    configure_logging(
        level="DEBUG" if verbose else settings.level,
        log_format="json" if json_logs else settings.format,
    )
