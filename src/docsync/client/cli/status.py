"""Status command for the docsync CLI.

Commands:
- status: Show the upload state of tracked files
"""

from __future__ import annotations

import sys
from datetime import datetime
from pathlib import Path

import click

from docsync.client.cli.config import load_agent_config
from docsync.client.cli.watch import EXIT_CONFIG_ERROR, EXIT_CORRUPT_STATE
from docsync.client.state import StateStore, UploadState
from docsync.core.errors import ConfigError, CorruptState, IoFailure


def _format_time(timestamp: float | None) -> str:
    if timestamp is None:
        return "never"
    return datetime.fromtimestamp(timestamp).strftime("%Y-%m-%d %H:%M:%S")


@click.command()
@click.option(
    "--config",
    "config_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file (default: ~/.docsync/config.json).",
)
def status(config_file: Path | None) -> None:
    """Show the upload state of tracked files.

    Reads the saved state only; works whether or not the agent is running.
    """
    try:
        config = load_agent_config(config_file)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    store = StateStore(config.state_dir)
    for root in config.roots:
        try:
            snapshot = store.peek(root)
        except CorruptState as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(EXIT_CORRUPT_STATE)
        except IoFailure as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

        counts = {state: 0 for state in UploadState}
        for record in snapshot.values():
            counts[record.state] += 1

        click.echo(click.style(str(root.path), bold=True))
        click.echo("  " + ", ".join(f"{state.value}: {counts[state]}" for state in UploadState))

        failed = sorted(
            (r for r in snapshot.values() if r.state == UploadState.FAILED),
            key=lambda r: r.path,
        )
        for record in failed:
            retry = record.status.next_retry_at
            when = f"retry at {_format_time(retry)}" if retry is not None else "no retry"
            click.echo(
                f"  {click.style('✗', fg='red')} {record.path}: {record.status.reason} ({when})"
            )
