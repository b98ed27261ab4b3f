"""Local store commands for the offlinekit CLI.

Commands:
- info: Show schema version, row counts and migration status
- migrate: Move legacy flat storage into the store
- cleanup-legacy: Remove legacy keys after migration
- journey: Print the journey singleton
"""

from __future__ import annotations

import json
import sys

import click

from offlinekit.client.cli.config import get_data_dir
from offlinekit.client.context import LEGACY_FILE, STORE_FILE
from offlinekit.client.migration import LegacyMigrator, LegacyStorage
from offlinekit.client.store import JOURNEY_ID, PersistentStore
from offlinekit.core.errors import OfflineKitError


def _open() -> tuple[PersistentStore, LegacyMigrator]:
    data_dir = get_data_dir()
    store = PersistentStore(data_dir / STORE_FILE)
    return store, LegacyMigrator(store, LegacyStorage(data_dir / LEGACY_FILE))


@click.command()
def info() -> None:
    """Show the local store schema version and table sizes."""
    store, migrator = _open()
    with store:
        click.echo(f"Store: {get_data_dir() / STORE_FILE}")
        click.echo(f"Schema version: {store.version}")
        for table in store.tables:
            click.echo(f"  {table}: {store.count(table)} rows")
        status = "done" if migrator.completed else "pending"
        click.echo(f"Legacy migration: {status}")


@click.command()
def migrate() -> None:
    """Move legacy flat storage into the local store (runs once)."""
    store, migrator = _open()
    with store:
        try:
            result = migrator.migrate()
        except OfflineKitError as e:
            click.echo(f"Error: {e}", err=True)
            sys.exit(1)

    if result.already_done:
        click.echo("Migration already completed.")
        return
    click.echo(f"Journey migrated: {'yes' if result.journey_migrated else 'no'}")
    click.echo(f"Bookmarks migrated: {result.bookmarks_migrated}")
    if result.skipped:
        click.echo(f"Skipped malformed keys: {', '.join(result.skipped)}")


@click.command("cleanup-legacy")
@click.option("--force", is_flag=True, help="Remove keys even if migration has not run.")
def cleanup_legacy(force: bool) -> None:
    """Remove legacy flat storage keys."""
    store, migrator = _open()
    with store:
        if not migrator.completed and not force:
            click.echo(
                "Error: Legacy migration has not run. Run 'offlinekit migrate' first "
                "or pass --force.",
                err=True,
            )
            sys.exit(1)
        removed = migrator.cleanup_legacy_storage()

    if removed:
        click.echo(f"Removed: {', '.join(removed)}")
    else:
        click.echo("No legacy keys found.")


@click.command()
def journey() -> None:
    """Print the stored journey state as JSON."""
    store, _ = _open()
    with store:
        row = store.get("journey", JOURNEY_ID)
    if row is None:
        click.echo("No journey state stored.")
        return
    click.echo(json.dumps(row, indent=2))
