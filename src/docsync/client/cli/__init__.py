"""Command-line interface for docsync.

This module provides the main CLI entry point and assembles all commands.

Commands:
- watch: Watch the configured folders and upload new or changed files
- status: Show the upload state of tracked files

Exit codes of the agent: 2 for an invalid configuration, 3 if another
instance holds the lock, 4 for an unreadable state file.
"""

from __future__ import annotations

import click

from docsync.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_state_dir,
    load_agent_config,
)
from docsync.client.cli.status import status
from docsync.client.cli.watch import watch


@click.group()
@click.version_option(package_name="docsync")
def cli() -> None:
    """docsync - Deliver watched files to a document server."""


cli.add_command(watch)
cli.add_command(status)


def main() -> None:
    """Entry point for the CLI."""
    cli()


__all__ = [
    # Main entry points
    "cli",
    "main",
    # Config utilities
    "get_config_dir",
    "get_config_file",
    "get_state_dir",
    "load_agent_config",
]
