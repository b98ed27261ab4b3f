"""One-time migration from legacy flat storage into the persistent store.

This module provides:
- LegacyStorage: The flat string key-value file older clients wrote to
- LegacyMigrator: Moves legacy keys into PersistentStore exactly once
- MigrationResult: What a migration run did

Protocol:
    The migration is gated by a completed-flag stored in the store's meta
    table. All writes of one run happen inside a single transaction over
    journey, bookmarks and progress. Each legacy key is parsed on its own:
    a malformed key is logged and skipped without aborting the others. The
    flag is set only after every key has been processed.

    Removing the legacy keys is a separate step (``cleanup_legacy_storage``)
    so both forms coexist until the caller decides the grace period is over.

    The flag is not a lock: two processes migrating at the same time may both
    run. Journey inserts are skipped when a row exists and bookmarks are
    upserted, so a double run does not duplicate records.
"""

from __future__ import annotations

import json
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from offlinekit.client.store import JOURNEY_ID, PersistentStore
from offlinekit.core.errors import ParseFailure

logger = logging.getLogger(__name__)

MIGRATION_FLAG = "db_migrated_v1"

# Legacy keys, without the application prefix
PATH_CONFIG_KEY = "ai_path_config"
ONBOARDING_KEY = "onboarding"
PREVIOUS_PATH_KEY = "previous_path"
BOOKMARKS_KEY = "bookmarks"

LEGACY_KEYS = (PATH_CONFIG_KEY, ONBOARDING_KEY, PREVIOUS_PATH_KEY, BOOKMARKS_KEY)


class LegacyStorage:
    """Flat key-value storage of string values, persisted as one JSON file.

    Keys are namespaced with a prefix (``prephub_`` by default), matching the
    layout older clients used.
    """

    def __init__(self, path: Path, prefix: str = "prephub_") -> None:
        """Initialize legacy storage.

        Args:
            path: JSON file holding the key-value pairs.
            prefix: Namespace prepended to every key.
        """
        self._path = Path(path)
        self._prefix = prefix
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        if not self._path.exists():
            return {}
        return dict(json.loads(self._path.read_text(encoding="utf-8")))

    def _save(self, items: dict[str, str]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(items, indent=2), encoding="utf-8")

    def get_item(self, key: str) -> str | None:
        """Get the raw string stored under a key."""
        with self._lock:
            return self._load().get(self._prefix + key)

    def set_item(self, key: str, value: str) -> None:
        """Store a raw string under a key."""
        with self._lock:
            items = self._load()
            items[self._prefix + key] = value
            self._save(items)

    def remove_item(self, key: str) -> None:
        """Remove a key (no-op if absent)."""
        with self._lock:
            items = self._load()
            if items.pop(self._prefix + key, None) is not None:
                self._save(items)

    def keys(self) -> list[str]:
        """List stored keys, without the prefix."""
        with self._lock:
            return [
                k[len(self._prefix):] for k in self._load() if k.startswith(self._prefix)
            ]


@dataclass
class MigrationResult:
    """Result of one migration run.

    Attributes:
        already_done: The completed-flag was set; nothing was read or written.
        journey_migrated: A journey row was created from legacy data.
        bookmarks_migrated: Number of bookmarks written.
        skipped: Legacy keys that failed to parse.
    """

    already_done: bool = False
    journey_migrated: bool = False
    bookmarks_migrated: int = 0
    skipped: list[str] = field(default_factory=list)


def _parse_json(storage: LegacyStorage, key: str) -> Any:
    """Parse one legacy key.

    Returns:
        The decoded value, or None if the key is absent.

    Raises:
        ParseFailure: If the value is not valid JSON.
    """
    raw = storage.get_item(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (json.JSONDecodeError, TypeError) as e:
        raise ParseFailure(key, str(e)) from e


class LegacyMigrator:
    """Moves legacy flat data into the persistent store exactly once."""

    def __init__(self, store: PersistentStore, legacy: LegacyStorage) -> None:
        self._store = store
        self._legacy = legacy

    @property
    def completed(self) -> bool:
        """Whether the migration already ran to completion."""
        return self._store.get_meta(MIGRATION_FLAG) is not None

    def migrate(self) -> MigrationResult:
        """Run the migration if it has not completed yet.

        Returns:
            What was migrated. ``already_done`` is True on every call after
            the first successful one.
        """
        if self.completed:
            return MigrationResult(already_done=True)

        logger.info("Starting legacy storage migration")
        result = MigrationResult()

        with self._store.transaction("journey", "bookmarks", "progress"):
            self._migrate_journey(result)
            self._migrate_bookmarks(result)
            # Progress is server-authoritative; legacy clients never stored it locally

        self._store.set_meta(MIGRATION_FLAG, datetime.now(UTC).isoformat())
        logger.info(
            f"Migration complete: journey={result.journey_migrated}, "
            f"bookmarks={result.bookmarks_migrated}, skipped={result.skipped}"
        )
        return result

    def _migrate_journey(self, result: MigrationResult) -> None:
        config: dict[str, Any] | None = None
        onboarding: dict[str, Any] | None = None

        try:
            value = _parse_json(self._legacy, PATH_CONFIG_KEY)
            if value is not None and not isinstance(value, dict):
                raise ParseFailure(PATH_CONFIG_KEY, "expected an object")
            config = value
        except ParseFailure as e:
            logger.warning(str(e))
            result.skipped.append(PATH_CONFIG_KEY)

        try:
            value = _parse_json(self._legacy, ONBOARDING_KEY)
            if value is not None and not isinstance(value, dict):
                raise ParseFailure(ONBOARDING_KEY, "expected an object")
            onboarding = value
        except ParseFailure as e:
            logger.warning(str(e))
            result.skipped.append(ONBOARDING_KEY)

        if not config:
            return

        if self._store.count("journey") > 0:
            logger.debug("Journey row exists, skipping legacy path config")
            return

        now = datetime.now(UTC).isoformat()
        experience_level = config.get("experienceLevelId") or config.get("experienceLevel")
        if not experience_level and onboarding:
            experience_level = onboarding.get("level")

        self._store.add(
            "journey",
            {
                "id": JOURNEY_ID,
                "pathId": config.get("pathId"),
                "experienceLevel": experience_level,
                "goals": list(config.get("goals") or []),
                "onboardingCompleted": bool(config.get("onboardingCompleted", False)),
                # Legacy data has no timestamps; migration time is the best guess
                "onboardingCompletedAt": now,
                "lastPathChange": now,
            },
        )
        result.journey_migrated = True

    def _migrate_bookmarks(self, result: MigrationResult) -> None:
        try:
            bookmarks = _parse_json(self._legacy, BOOKMARKS_KEY)
        except ParseFailure as e:
            logger.warning(str(e))
            result.skipped.append(BOOKMARKS_KEY)
            return

        if bookmarks is None:
            return
        if not isinstance(bookmarks, list):
            logger.warning(f"Legacy {BOOKMARKS_KEY} is not a list, skipping")
            result.skipped.append(BOOKMARKS_KEY)
            return

        valid = [b for b in bookmarks if isinstance(b, dict) and "id" in b]
        if len(valid) != len(bookmarks):
            logger.warning(f"Dropped {len(bookmarks) - len(valid)} malformed legacy bookmarks")
        result.bookmarks_migrated = self._store.bulk_put("bookmarks", valid)

    def cleanup_legacy_storage(self) -> list[str]:
        """Remove the legacy keys.

        Never called by ``migrate()``; run it once the grace period is over.

        Returns:
            Keys that were present and removed.
        """
        present = set(self._legacy.keys())
        removed = []
        for key in LEGACY_KEYS:
            if key in present:
                self._legacy.remove_item(key)
                removed.append(key)
        if removed:
            logger.info(f"Removed legacy keys: {', '.join(removed)}")
        return removed
