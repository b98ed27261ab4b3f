"""Cache commands for the offlinekit CLI.

Commands:
- cache list: List cache generations
- cache purge: Delete every cache generation
"""

from __future__ import annotations

import click

from offlinekit.client.cache import CacheStorage
from offlinekit.client.cli.config import get_data_dir
from offlinekit.client.context import CACHE_FILE
from offlinekit.core.config import CacheConfig


@click.group()
def cache() -> None:
    """Inspect and clear the offline response cache."""


@cache.command("list")
def list_cmd() -> None:
    """List cache generations and their entry counts."""
    storage = CacheStorage(get_data_dir() / CACHE_FILE)
    try:
        names = storage.keys()
        if not names:
            click.echo("No cache generations.")
            return
        active = CacheConfig().active_caches
        for name in names:
            marker = " (active)" if name in active else ""
            click.echo(f"{name}: {storage.count(name)} entries{marker}")
    finally:
        storage.close()


@cache.command()
@click.confirmation_option(prompt="Delete every cached response?")
def purge() -> None:
    """Delete every cache generation."""
    storage = CacheStorage(get_data_dir() / CACHE_FILE)
    try:
        names = storage.keys()
        for name in names:
            storage.delete(name)
    finally:
        storage.close()
    click.echo(f"Deleted {len(names)} cache generations.")
