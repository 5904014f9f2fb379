"""Watch command for the docsync CLI.

Commands:
- watch: Watch the configured folders and upload new or changed files
"""

from __future__ import annotations

import logging
import signal
import sys
from pathlib import Path

import click

from docsync.client.cli.config import load_agent_config
from docsync.core.errors import AlreadyRunning, ConfigError, CorruptState, IoFailure

EXIT_CONFIG_ERROR = 2
EXIT_ALREADY_RUNNING = 3
EXIT_CORRUPT_STATE = 4

LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(verbose: int) -> None:
    """Send docsync logs to stderr (-v for info, -vv for debug)."""
    level = logging.WARNING
    if verbose == 1:
        level = logging.INFO
    elif verbose > 1:
        level = logging.DEBUG

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    docsync_logger = logging.getLogger("docsync")
    for existing in docsync_logger.handlers[:]:
        docsync_logger.removeHandler(existing)
    docsync_logger.addHandler(handler)
    docsync_logger.setLevel(level)
    docsync_logger.propagate = False


@click.command()
@click.option(
    "--config",
    "config_file",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Config file (default: ~/.docsync/config.json).",
)
@click.option("--once", is_flag=True, help="Upload the files already present, then exit.")
@click.option("--verbose", "-v", count=True, help="Increase log verbosity (-v, -vv).")
def watch(config_file: Path | None, once: bool, verbose: int) -> None:
    """Watch the configured folders and upload new or changed files.

    Files already present are reconciled with the saved state first, so
    content uploaded before is never sent again. Runs until interrupted.
    """
    from docsync.client.api import UploadClient
    from docsync.client.lock import InstanceLock
    from docsync.client.state import StateStore
    from docsync.client.sync import (
        ChangeEvent,
        ChangeKind,
        SyncOrchestrator,
        WatchSource,
        scan_root,
    )
    from docsync.client.sync.orchestrator import DEFAULT_SWEEP_INTERVAL

    configure_logging(verbose)

    try:
        config = load_agent_config(config_file)
    except ConfigError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_CONFIG_ERROR)

    try:
        lock = InstanceLock.acquire(config.lock_path)
    except AlreadyRunning as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(EXIT_ALREADY_RUNNING)
    except IoFailure as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    with lock, UploadClient(config.server, retry_policy=config.retry, meta=config.meta) as client:
        store = StateStore(config.state_dir)
        orchestrator = SyncOrchestrator(
            config.roots,
            store,
            client,
            max_workers=config.max_workers,
            retry_policy=config.retry,
            delete_after_upload=config.delete_after_upload,
            remote_dedup=config.remote_dedup,
            sweep_interval=None if once else DEFAULT_SWEEP_INTERVAL,
        )

        try:
            orchestrator.start()
        except CorruptState as e:
            click.echo(f"Error: {e}", err=True)
            click.echo("Repair or remove the state file, then start again.", err=True)
            sys.exit(EXIT_CORRUPT_STATE)

        for root in config.roots:
            click.echo(f"Watching {root.path}")

        if once:
            for root in config.roots:
                for rel_path in scan_root(root):
                    orchestrator.handle_event(ChangeEvent(root, rel_path, ChangeKind.CREATED))
            orchestrator.wait_idle()
            orchestrator.stop()
        else:
            source = WatchSource(config.roots, debounce_ms=config.debounce_ms)

            def handle_sigterm(signum: int, frame: object) -> None:
                source.stop()

            signal.signal(signal.SIGTERM, handle_sigterm)
            click.echo("Press Ctrl+C to stop.")
            try:
                orchestrator.run(source)
            except KeyboardInterrupt:
                click.echo("\nStopping...")
            finally:
                orchestrator.stop()

        stats = orchestrator.stats
        parts = [f"{stats.uploads_completed} uploaded"]
        if stats.duplicates_skipped:
            parts.append(f"{stats.duplicates_skipped} duplicates skipped")
        if stats.uploads_failed:
            parts.append(click.style(f"{stats.uploads_failed} failed", fg="red"))
        click.echo(", ".join(parts))
