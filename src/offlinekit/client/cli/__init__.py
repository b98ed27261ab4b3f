"""Command-line interface for offlinekit.

This module provides the main CLI entry point and assembles all commands.

Commands:
- info: Show local store schema version and table sizes
- migrate: Move legacy flat storage into the local store
- cleanup-legacy: Remove legacy flat storage keys
- journey: Print the stored journey state
- cache list / cache purge: Inspect and clear the response cache
"""

from __future__ import annotations

import click

from offlinekit.client.cli.cache import cache
from offlinekit.client.cli.config import (
    get_config_dir,
    get_config_file,
    get_data_dir,
    load_config,
    save_config,
    setup_logging,
)
from offlinekit.client.cli.store import cleanup_legacy, info, journey, migrate


@click.group()
@click.version_option(package_name="offlinekit")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs.")
def cli(verbose: bool) -> None:
    """offlinekit - Offline cache and local-first sync for the learning client."""
    setup_logging(verbose)


# Store commands
cli.add_command(info)
cli.add_command(migrate)
cli.add_command(cleanup_legacy)
cli.add_command(journey)

# Cache commands
cli.add_command(cache)


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
    "get_data_dir",
    "load_config",
    "save_config",
    "setup_logging",
]
