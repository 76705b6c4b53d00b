# src/router_history/cli.py
"""router-history Command Line Interface.

Entry point for the router-history CLI tool.
"""

from __future__ import annotations

import json
import signal
from pathlib import Path
from typing import TYPE_CHECKING, Any

import typer
from dynaconf.vendor.ruamel.yaml.parser import ParserError as YamlParserError
from dynaconf.vendor.ruamel.yaml.scanner import ScannerError as YamlScannerError
from pydantic import ValidationError

from router_history import __version__
from router_history.contracts import (
    ReconcileAction,
    RecordState,
    SourceUnavailableError,
    SourceUnhealthyError,
    StoreUnavailableError,
)
from router_history.core.config import RouterHistorySettings, load_settings, resolve_config

if TYPE_CHECKING:
    from router_history.cli_helpers import Components

__all__ = [
    "app",
    "load_settings",  # Re-exported from config for convenience
]

# Exit codes: 1 configuration/usage, 2 source health signal, 3 store unavailable
EXIT_CONFIG = 1
EXIT_SOURCE_UNHEALTHY = 2
EXIT_STORE_UNAVAILABLE = 3

app = typer.Typer(
    name="router-history",
    help="router-history: exactly-once transaction history for on-chain router activity.",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"router-history version {__version__}")
        raise typer.Exit()


def _load_dotenv(env_file: Path | None = None) -> bool:
    """Load environment variables from .env file.

    Args:
        env_file: Explicit path to .env file. If None, searches for .env
                 in current directory and parent directories.

    Returns:
        True if .env was found and loaded, False otherwise.

    Raises:
        typer.Exit: If explicit env_file path doesn't exist.
    """
    from dotenv import load_dotenv

    if env_file is not None:
        if not env_file.exists():
            typer.secho(
                f"Error: .env file not found: {env_file}",
                fg=typer.colors.RED,
                err=True,
            )
            raise typer.Exit(EXIT_CONFIG)
        return load_dotenv(env_file, override=False)

    return load_dotenv(override=False)  # Don't override existing env vars


@app.callback()
def main(
    ctx: typer.Context,
    version: bool | None = typer.Option(
        None,
        "--version",
        "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit.",
    ),
    no_dotenv: bool = typer.Option(
        False,
        "--no-dotenv",
        help="Skip loading .env file.",
    ),
    env_file: Path | None = typer.Option(
        None,
        "--env-file",
        help="Path to .env file (skips automatic search).",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable verbose/debug logging.",
    ),
    json_logs: bool = typer.Option(
        False,
        "--json-logs",
        help="Output structured JSON logs (for machine processing).",
    ),
) -> None:
    """router-history: exactly-once transaction history for on-chain router activity."""
    from router_history.core.logging import configure_logging

    # Until a settings file is loaded, flags alone decide the output
    configure_logging(level="DEBUG" if verbose else "INFO", log_format="json" if json_logs else "console")
    ctx.obj = {"verbose": verbose, "json_logs": json_logs}

    if not no_dotenv:
        _load_dotenv(env_file)


def _load_config(ctx: typer.Context, settings: str) -> RouterHistorySettings:
    """Load settings and apply their logging section, or exit with a readable message."""
    from router_history.core.logging import configure_from_settings

    settings_path = Path(settings).expanduser()
    try:
        config = load_settings(settings_path)
    except (YamlParserError, YamlScannerError) as e:
        typer.echo(f"YAML syntax error in {settings}: {e.problem}", err=True)
        raise typer.Exit(EXIT_CONFIG) from None
    except FileNotFoundError:
        typer.echo(f"Error: Settings file not found: {settings}", err=True)
        raise typer.Exit(EXIT_CONFIG) from None
    except ValidationError as e:
        typer.echo("Configuration errors:", err=True)
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            typer.echo(f"  - {loc}: {error['msg']}", err=True)
        raise typer.Exit(EXIT_CONFIG) from None

    flags = ctx.obj or {}
    configure_from_settings(config.logging, verbose=flags.get("verbose", False), json_logs=flags.get("json_logs", False))
    return config


def _build(config: RouterHistorySettings, *, reconcile_interleaved: bool = True) -> Components:
    from router_history.cli_helpers import build_components

    try:
        return build_components(config, reconcile_interleaved=reconcile_interleaved)
    except Exception as e:
        typer.echo(f"Error connecting to history store: {e}", err=True)
        raise typer.Exit(EXIT_STORE_UNAVAILABLE) from None


def _emit(payload: dict[str, Any], output_format: str) -> None:
    if output_format == "json":
        typer.echo(json.dumps(payload, default=str))
    else:
        for key, value in payload.items():
            typer.echo(f"{key}: {value}")


@app.command()
def run(
    ctx: typer.Context,
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    once: bool = typer.Option(False, "--once", help="Stop when caught up with the chain head."),
    max_cycles: int | None = typer.Option(None, "--max-cycles", min=1, help="Stop after N ingest cycles."),
    no_reconcile: bool = typer.Option(False, "--no-reconcile", help="Do not interleave reconciliation passes."),
    output_format: str = typer.Option("console", "--format", "-f", help="Output format: 'console' or 'json'."),
) -> None:
    """Ingest router transactions from the checkpoint onwards."""
    config = _load_config(ctx, settings)
    components = _build(config, reconcile_interleaved=not no_reconcile)

    # Finish the current batch, then return
    signal.signal(signal.SIGTERM, lambda *_: components.pipeline.stop())

    try:
        summary = components.pipeline.run(max_cycles=max_cycles, until_caught_up=once)
    except SourceUnhealthyError as e:
        typer.echo(f"Chain source unhealthy, operator intervention required: {e}", err=True)
        raise typer.Exit(EXIT_SOURCE_UNHEALTHY) from None
    except StoreUnavailableError as e:
        typer.echo(f"History store unavailable: {e}", err=True)
        raise typer.Exit(EXIT_STORE_UNAVAILABLE) from None
    except KeyboardInterrupt:
        typer.echo("Interrupted; resume restarts from the last committed checkpoint.", err=True)
        raise typer.Exit(130) from None
    finally:
        components.close()

    _emit(
        {
            "cycles": summary.cycles,
            "position": summary.position,
            "inserted": summary.upserts.inserted,
            "unchanged": summary.upserts.unchanged,
            "overwritten": summary.upserts.overwritten,
            "quarantined": summary.quarantined,
            "reconcile_passes": summary.reconcile_passes,
            "orphaned": summary.orphaned,
            "checkpoint_conflicts": summary.checkpoint_conflicts,
        },
        output_format,
    )


@app.command()
def reconcile(
    ctx: typer.Context,
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    output_format: str = typer.Option("console", "--format", "-f", help="Output format: 'console' or 'json'."),
) -> None:
    """Run one reconciliation pass over the finality window."""
    config = _load_config(ctx, settings)
    components = _build(config, reconcile_interleaved=False)
    try:
        report = components.reconciler.run_cycle()
    except SourceUnavailableError as e:
        typer.echo(f"Chain source unavailable, pass skipped: {e}", err=True)
        raise typer.Exit(EXIT_SOURCE_UNHEALTHY) from None
    finally:
        components.close()

    _emit(
        {
            "head": report.head,
            "boundary": report.boundary,
            "promoted": report.promoted,
            "checked": report.checked,
            **{action.value: report.count(action) for action in ReconcileAction},
            "quarantined": report.quarantined,
        },
        output_format,
    )


@app.command()
def status(
    ctx: typer.Context,
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
    output_format: str = typer.Option("console", "--format", "-f", help="Output format: 'console' or 'json'."),
) -> None:
    """Show checkpoint, row counts and quarantine size."""
    config = _load_config(ctx, settings)
    components = _build(config, reconcile_interleaved=False)
    try:
        position = components.checkpoint.peek()
        states = components.writer.state_counts()
        payload: dict[str, Any] = {
            "pipeline": config.store.pipeline_name,
            "checkpoint": position if position is not None else f"unset (genesis {config.store.genesis_slot})",
            "rows": components.writer.count(),
            **{f"{state.value}_signatures": states[state] for state in RecordState},
            "quarantined": len(components.writer.quarantined()),
        }
    finally:
        components.close()
    _emit(payload, output_format)


@app.command()
def validate(
    ctx: typer.Context,
    settings: str = typer.Option(..., "--settings", "-s", help="Path to settings YAML file."),
) -> None:
    """Validate a settings file and print the resolved configuration."""
    config = _load_config(ctx, settings)
    typer.echo(json.dumps(resolve_config(config), indent=2))


if __name__ == "__main__":
    app()
