# tests/cli/conftest.py
"""Shared fixtures and helpers for CLI tests."""

import logging
import signal
from collections.abc import Iterator
from pathlib import Path

import pytest
import structlog

from router_history.core.store.database import HistoryDB
from router_history.core.store.writer import HistoryWriter
from tests.fixtures.chain import ROUTER_V3, FakeChainSource


@pytest.fixture(autouse=True)
def _restore_process_state() -> Iterator[None]:
    """The CLI reconfigures logging and installs a SIGTERM handler; undo both."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    sigterm = signal.getsignal(signal.SIGTERM)
    yield
    root.handlers, root.level = handlers, level
    signal.signal(signal.SIGTERM, sigterm)
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture
def chain(monkeypatch: pytest.MonkeyPatch) -> FakeChainSource:
    """Replace the JSON-RPC source the CLI builds with an in-memory chain."""
    source = FakeChainSource()
    monkeypatch.setattr("router_history.cli_helpers.SolanaRpcSource", lambda *args, **kwargs: source)
    return source


def write_settings(tmp_path: Path, extra: str = "") -> Path:
    """Minimal settings file with a file-backed store under tmp_path, plus any extra YAML."""
    settings = tmp_path / "settings.yaml"
    settings.write_text(
        f"""
source:
  rpc_url: "https://rpc.example.com"
  headers:
    x-api-key: "secret-key"
router:
  programs:
    - program_id: "{ROUTER_V3}"
      version: 3
store:
  url: "sqlite:///{tmp_path / 'history.db'}"
ingest:
  poll_interval_seconds: 0
retry:
  max_attempts: 2
  initial_delay_seconds: 0.01
  max_delay_seconds: 0.02
"""
        + extra
    )
    return settings


def stored_signatures(tmp_path: Path) -> list[str]:
    with HistoryDB(f"sqlite:///{tmp_path / 'history.db'}") as db:
        return [r.signature for r in HistoryWriter(db).all_records()]
