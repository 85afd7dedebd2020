"""CLI for the telepool agent.

Usage:
    # Overview of configuration, buffer and backpressure
    telepool status

    # Detailed backpressure report, optionally clearing it
    telepool backpressure
    telepool bp --reset

    # Drain the buffer now
    telepool flush --force

    # Recent flush log entries
    telepool logs --lines 50

    # Resolved configuration (secrets masked)
    telepool config
"""

from __future__ import annotations

import logging
import math
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated

import typer

from telepool._config import ConfigEnvVarError, ConfigValidationError, TelepoolConfig
from telepool._pooler import TelemetryPooler
from telepool._utils import now_ms

LOG_FORMAT = "[%(asctime)s] [%(name)s] %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"

app = typer.Typer(
    name="telepool",
    help="telepool: buffered telemetry with adaptive backpressure.",
    no_args_is_help=True,
)


@dataclass(frozen=True)
class CliOptions:
    config_file: Path | None
    home: Path | None
    verbose: bool


class _FlushLogHandler(logging.FileHandler):
    """File handler attached by the CLI (replaced on every invocation)."""


class _VerboseHandler(logging.StreamHandler):
    """Stderr handler attached by --verbose."""


def _version_callback(value: bool) -> None:
    if value:
        from telepool import __version__

        typer.echo(f"telepool {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    config_file: Annotated[
        Path | None,
        typer.Option(
            "--config",
            "-c",
            help="Path to the JSON config file (default: <home>/config.json).",
            dir_okay=False,
        ),
    ] = None,
    home: Annotated[
        Path | None,
        typer.Option(
            "--home",
            help="Directory holding the buffer, state and log files.",
            file_okay=False,
        ),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", help="Also log to stderr."),
    ] = False,
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            "-V",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
) -> None:
    """Buffered telemetry agent with adaptive backpressure."""
    ctx.obj = CliOptions(config_file=config_file, home=home, verbose=verbose)


def _load_config(ctx: typer.Context, with_logging: bool = True) -> TelepoolConfig:
    options: CliOptions = ctx.obj
    buffer_overrides = {"home_dir": options.home} if options.home else None
    try:
        config = TelepoolConfig.load(options.config_file, buffer=buffer_overrides)
    except (ConfigEnvVarError, ConfigValidationError) as e:
        typer.secho(f"Configuration error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from e

    if with_logging:
        configure_logging(config, verbose=options.verbose)
    return config


def configure_logging(config: TelepoolConfig, verbose: bool = False) -> None:
    """
    Route the `telepool` loggers to the flush log (and stderr with --verbose).

    Handlers added by a previous call are replaced.
    """
    root = logging.getLogger("telepool")
    for handler in list(root.handlers):
        if isinstance(handler, (_FlushLogHandler, _VerboseHandler)):
            root.removeHandler(handler)
            handler.close()

    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT)

    log_file = config.buffer.log_file
    try:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = _FlushLogHandler(log_file, encoding="utf-8", delay=True)
    except OSError as e:
        typer.secho(f"Cannot write flush log {log_file}: {e}", fg=typer.colors.YELLOW, err=True)
    else:
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    if verbose:
        stream_handler = _VerboseHandler(sys.stderr)
        stream_handler.setFormatter(formatter)
        root.addHandler(stream_handler)


def _format_ago(seconds: int) -> str:
    if seconds < 60:
        return f"{seconds}s ago"
    if seconds < 3600:
        return f"{seconds // 60}m ago"
    return f"{seconds // 3600}h ago"


@app.command()
def status(ctx: typer.Context) -> None:
    """Show configuration, buffer and backpressure overview."""
    config = _load_config(ctx)
    pooler = TelemetryPooler(config)
    snapshot = pooler.status()
    state = snapshot.state

    typer.secho("\nTelepool Status\n", bold=True)
    typer.echo(f"Endpoint:      {config.api.resolved_base_url} (region {config.api.region})")
    if config.api.has_credentials():
        typer.secho("API key:       + Configured", fg=typer.colors.GREEN)
    else:
        typer.secho("API key:       o Missing (set TELEPOOL_API_KEY)", fg=typer.colors.YELLOW)
    typer.echo(f"Mode:          {'monitor-only' if config.buffer.monitor_only else 'sending'}")
    typer.echo(f"\nBuffer:        {snapshot.buffered} events pending")

    if state.consecutive_failures > 0 or state.backoff_level > 0:
        typer.secho("\nBackpressure:  o Active", fg=typer.colors.YELLOW)
        for line in snapshot.summary.splitlines():
            typer.echo(f"  {line}")
        typer.echo("  Run `telepool backpressure` for details")
    else:
        typer.secho("\nBackpressure:  + Healthy", fg=typer.colors.GREEN)
    typer.echo()


@app.command()
def backpressure(
    ctx: typer.Context,
    reset: Annotated[
        bool,
        typer.Option("--reset", help="Clear the backpressure state (backoff and failures)."),
    ] = False,
) -> None:
    """Show detailed backpressure status."""
    config = _load_config(ctx)
    pooler = TelemetryPooler(config)
    snapshot = pooler.status()
    state = snapshot.state
    max_level = pooler.policy.max_backoff_level
    now = now_ms()

    typer.secho("\nBackpressure Status\n", bold=True)
    health_color = {
        "Healthy": typer.colors.GREEN,
        "Backing Off": typer.colors.YELLOW,
    }.get(snapshot.health, typer.colors.RED)
    typer.secho(f"Status:           {snapshot.health}", fg=health_color)

    typer.echo(f"\nFailures:         {state.consecutive_failures} consecutive")
    typer.echo(f"Backoff level:    {state.backoff_level}/{max_level}")

    if state.next_attempt_after > now:
        typer.echo(f"Next attempt in:  {math.ceil((state.next_attempt_after - now) / 1000)}s")
    else:
        typer.secho("Next attempt:     Ready now", fg=typer.colors.GREEN)

    if state.last_success_time > 0:
        typer.echo(f"Last success:     {_format_ago(max(0, now - state.last_success_time) // 1000)}")
    else:
        typer.echo("Last success:     Never")

    typer.echo(f"\nPending events:   {state.pending_event_count}")

    capacity = state.last_capacity
    if capacity is not None:
        typer.echo("\nLast Server Response:")
        typer.echo(f"  Ready:          {'Yes' if capacity.ready else 'No'}")
        typer.echo(f"  Max batch:      {capacity.max_batch_size}")
        typer.echo(f"  Delay between:  {capacity.delay_between_batches}ms")
        if capacity.load_percent is not None:
            typer.echo(f"  Server load:    {capacity.load_percent}%")
        if capacity.message:
            typer.echo(f"  Message:        {capacity.message}")

    if reset:
        pooler.reset_backpressure()
        typer.secho("\n+ Backpressure state reset.", fg=typer.colors.GREEN)
    elif state.consecutive_failures > 0 or state.backoff_level > 0:
        typer.echo("\nTo reset: telepool backpressure --reset")
    typer.echo()


app.command("bp", help="Alias of `backpressure`.", hidden=True)(backpressure)


@app.command()
def flush(
    ctx: typer.Context,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Send even when fewer than batch-size events are buffered."),
    ] = False,
) -> None:
    """Drain buffered events to the ingestion API."""
    config = _load_config(ctx)
    pooler = TelemetryPooler(config)
    buffered = pooler.buffer.count()

    if config.buffer.monitor_only:
        pooler.flush(force=force)
        typer.echo(f"\n{buffered} events in buffer (monitor-only mode).")
        typer.secho(f"{buffered - pooler.buffer.count()} events cleared (not sent to API).\n", fg=typer.colors.GREEN)
        return

    if buffered == 0:
        typer.secho("\nNo events in buffer.\n", fg=typer.colors.YELLOW)
        return

    typer.echo(f"\n{buffered} events in buffer.")
    result = pooler.flush(force=force)

    if result.success:
        typer.secho(f"\n+ All events flushed ({result.sent} sent).\n", fg=typer.colors.GREEN)
    else:
        typer.secho(
            f"\n{result.sent} sent, {result.remaining} remaining: {result.reason}\n",
            fg=typer.colors.YELLOW,
        )


@app.command()
def logs(
    ctx: typer.Context,
    lines: Annotated[
        int,
        typer.Option("--lines", "-n", help="Number of entries to show.", min=1),
    ] = 30,
) -> None:
    """Show the most recent flush log entries."""
    config = _load_config(ctx, with_logging=False)
    log_file = config.buffer.log_file
    typer.secho(f"\nFlush Logs (last {lines} entries)\n", bold=True)
    try:
        content = log_file.read_text(encoding="utf-8").strip().splitlines()
    except FileNotFoundError:
        typer.secho("No flush log found.", fg=typer.colors.YELLOW)
        typer.echo("No events have been processed yet.\n")
        return

    for line in content[-lines:]:
        typer.echo(line)
    typer.echo(f"\nTotal entries: {len(content)}")
    typer.echo(f"Log file: {log_file}\n")


@app.command("config")
def show_config(ctx: typer.Context) -> None:
    """Show the resolved configuration and where each value came from."""
    config = _load_config(ctx)

    for section, entries in config.explain_data().items():
        typer.secho(f"\n[{section}]", bold=True)
        width = max(len(entry.name) for entry in entries)
        for entry in entries:
            typer.echo(f"  {entry.name.ljust(width)}  {entry.formatted_value}  ({entry.source})")
    typer.echo(f"\nEndpoint: {config.api.resolved_base_url}\n")


def main() -> None:
    """Entry point for the `telepool` console script."""
    app()


if __name__ == "__main__":
    main()
