"""Optimistic local-first sync engine for journey state.

This module provides:
- SyncEngine: One mutable view of the journey, bookmarks and progress,
  mirrored to PersistentStore and reconciled with the remote API
- RetryPolicy: Backoff settings for failed local writes

Architecture:
    UI action ─► SyncEngine (memory, synchronous)
                     │
                     ├─► WriteQueue ─► PersistentStore   (background task)
                     └─► PreferencesClient ─► remote API (fire-and-forget)

Every mutation first appends the full new record to the write queue, then
updates memory and notifies subscribers, so callers see the change with no
latency. A background task drains the queue into the store. A failed local
write is logged, never rolled back in memory, and retried with exponential
backoff; it stays queued until a drain succeeds. Remote failures are logged
and dropped.

The engine runs on one asyncio loop and has exactly one logical writer.
Mutating methods must be called while that loop is running.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Coroutine, Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from offlinekit.client.api import RemotePreferences
from offlinekit.client.store import JOURNEY_ID
from offlinekit.client.sync.queue import WriteQueue
from offlinekit.client.sync.retry import retry_with_backoff
from offlinekit.client.sync.types import (
    JourneyState,
    PendingWrite,
    Recommendation,
    StateCallback,
    WriteOp,
)
from offlinekit.core.errors import OfflineKitError, PersistenceError

if TYPE_CHECKING:
    from offlinekit.client.api import PreferencesClient
    from offlinekit.client.migration import LegacyMigrator
    from offlinekit.client.store import PersistentStore

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(UTC).isoformat()


@dataclass
class RetryPolicy:
    """Backoff settings for failed local writes.

    Attributes:
        max_retries: Retries per failure episode; 0 disables automatic retry.
        initial_backoff: First delay in seconds.
        max_backoff: Largest delay in seconds.
        backoff_multiplier: Growth factor between delays.
    """

    max_retries: int = 5
    initial_backoff: float = 1.0
    max_backoff: float = 60.0
    backoff_multiplier: float = 2.0


class SyncEngine:
    """Process-wide journey state with optimistic persistence.

    Usage:
        engine = SyncEngine(store, migrator, client)
        await engine.init()

        engine.set_path("backend", "beginner")   # memory updated immediately
        await engine.drain()                      # wait for the store write

        await engine.sync_with_server()
    """

    def __init__(
        self,
        store: PersistentStore,
        migrator: LegacyMigrator,
        client: PreferencesClient | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        """Initialize the engine.

        Args:
            store: Local persistent store.
            migrator: Legacy migration, run once by ``init()``.
            client: Remote API client; None keeps the engine local-only.
            retry_policy: Backoff for failed local writes.
        """
        self._store = store
        self._migrator = migrator
        self._client = client
        self._retry = retry_policy or RetryPolicy()

        self._state = JourneyState()
        self._bookmarks: dict[str, dict[str, Any]] = {}
        self._progress: dict[tuple[str, str], dict[str, Any]] = {}
        self._recommendation = Recommendation()
        self._initialized = False
        # Slots written before hydration finished; their memory state wins
        self._dirty: set[tuple[Any, ...]] = set()

        self._queue = WriteQueue()
        self._init_lock = asyncio.Lock()
        self._write_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._retry_task: asyncio.Task[None] | None = None
        self._listeners: list[StateCallback] = []

    # === Read access ===

    @property
    def state(self) -> JourneyState:
        """Current journey state."""
        return self._state

    @property
    def initialized(self) -> bool:
        """Whether ``init()`` has completed."""
        return self._initialized

    @property
    def recommendation(self) -> Recommendation:
        """Current "next recommended action" slot."""
        return self._recommendation

    @property
    def bookmarks(self) -> dict[str, dict[str, Any]]:
        """Bookmarks by id."""
        return dict(self._bookmarks)

    @property
    def progress(self) -> dict[tuple[str, str], dict[str, Any]]:
        """Completed sections by (topicSlug, sectionSlug)."""
        return dict(self._progress)

    @property
    def pending_writes(self) -> int:
        """Local writes not yet in the store."""
        return len(self._queue)

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Subscribe to journey state changes.

        Returns:
            A function removing the subscription.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def _notify(self) -> None:
        for callback in list(self._listeners):
            try:
                callback(self._state)
            except Exception as e:
                logger.warning(f"Journey subscriber failed: {e}")

    # === Initialization ===

    async def init(self) -> None:
        """Migrate legacy data and hydrate memory from the store.

        Only the first call does anything. Failures are logged and the engine
        still becomes usable with empty state.
        """
        async with self._init_lock:
            if self._initialized:
                return
            try:
                await asyncio.to_thread(self._migrator.migrate)
                row = await asyncio.to_thread(self._store.get, "journey", JOURNEY_ID)
                bookmarks = await asyncio.to_thread(self._store.all, "bookmarks")
                progress = await asyncio.to_thread(self._store.all, "progress")
            except (OfflineKitError, sqlite3.Error) as e:
                logger.error(f"Failed to hydrate sync engine: {e}")
            else:
                self._hydrate(row, bookmarks, progress)
            self._initialized = True
            self._dirty.clear()
        self._notify()

    def _hydrate(
        self,
        row: dict[str, Any] | None,
        bookmarks: list[dict[str, Any]],
        progress: list[dict[str, Any]],
    ) -> None:
        """Load stored records, keeping anything mutated while they were read."""
        if ("journey",) in self._dirty:
            logger.info("Journey changed during init, keeping in-memory state")
        elif row is not None:
            self._state = JourneyState.from_record(row)
            logger.info("Hydrated journey state from store")
        else:
            logger.info("Initialized with empty journey state")

        stored_bookmarks = {str(b["id"]): b for b in bookmarks}
        self._bookmarks = self._merge("bookmarks", stored_bookmarks, self._bookmarks)
        stored_progress = {(p["topicSlug"], p["sectionSlug"]): p for p in progress}
        self._progress = self._merge("progress", stored_progress, self._progress)

    def _merge(self, table: str, stored: dict[Any, Any], memory: dict[Any, Any]) -> dict[Any, Any]:
        def slot(key: Any) -> tuple[Any, ...]:
            return (table, *key) if isinstance(key, tuple) else (table, key)

        merged = {k: v for k, v in stored.items() if slot(k) not in self._dirty}
        merged.update({k: v for k, v in memory.items() if slot(k) in self._dirty})
        return merged

    def _queue_write(
        self, table: str, op: WriteOp, key: Any = None, record: dict[str, Any] | None = None
    ) -> None:
        write = self._queue.put(table, op, key, record)
        if not self._initialized:
            self._dirty.add(write.slot)

    # === Journey mutations ===

    def _commit_journey(self, new_state: JourneyState) -> asyncio.Task[None]:
        self._queue_write("journey", WriteOp.PUT, JOURNEY_ID, new_state.to_record())
        self._state = new_state
        self._notify()
        return self._schedule_persist()

    def set_path(self, path_id: str, experience_level: str | None) -> asyncio.Task[None]:
        """Select a learning path.

        ``last_path_change`` moves only when the path actually changes.

        Returns:
            The background persistence task.
        """
        last_change = (
            _now() if path_id != self._state.path_id else self._state.last_path_change
        )
        return self._commit_journey(
            self._state.evolve(
                path_id=path_id,
                experience_level=experience_level,
                last_path_change=last_change,
            )
        )

    def set_goals(self, goals: Iterable[str]) -> asyncio.Task[None]:
        """Replace the journey goals.

        Persists the whole row as one upsert, whether or not a row exists.
        """
        return self._commit_journey(self._state.evolve(goals=tuple(goals)))

    def complete_onboarding(
        self,
        path_id: str,
        experience_level: str | None,
        goals: Iterable[str] = (),
    ) -> asyncio.Task[None]:
        """Finish onboarding with the chosen path, level and goals."""
        timestamp = _now()
        return self._commit_journey(
            self._state.evolve(
                path_id=path_id,
                experience_level=experience_level,
                goals=tuple(goals),
                onboarding_completed=True,
                onboarding_completed_at=timestamp,
                last_path_change=self._state.last_path_change or timestamp,
            )
        )

    def reset(self) -> asyncio.Task[None]:
        """Forget the journey (logout). Bookmarks and progress are kept."""
        self._queue_write("journey", WriteOp.CLEAR)
        self._state = JourneyState()
        self._recommendation = Recommendation()
        self._notify()
        return self._schedule_persist()

    # === Bookmarks and progress ===

    def bookmark(self, record: dict[str, Any]) -> asyncio.Task[None]:
        """Add or update a bookmark locally, then push it to the server.

        Returns:
            The background persistence task.
        """
        bookmark_id = str(record["id"])
        bookmark = {
            **record,
            "id": bookmark_id,
            "bookmarkedAt": record.get("bookmarkedAt") or _now(),
        }
        self._queue_write("bookmarks", WriteOp.PUT, bookmark_id, bookmark)
        self._bookmarks[bookmark_id] = bookmark
        task = self._schedule_persist()
        if self._client is not None:
            self._fire_and_forget(self._client.save_bookmark(bookmark), "save bookmark")
        return task

    def remove_bookmark(self, bookmark_id: str | int) -> asyncio.Task[None]:
        """Remove a bookmark locally, then on the server."""
        bookmark_id = str(bookmark_id)
        self._queue_write("bookmarks", WriteOp.DELETE, bookmark_id)
        self._bookmarks.pop(bookmark_id, None)
        task = self._schedule_persist()
        if self._client is not None:
            self._fire_and_forget(
                self._client.delete_bookmark(bookmark_id), "delete bookmark"
            )
        return task

    def mark_progress(
        self, topic_slug: str, section_slug: str, completed: bool = True
    ) -> asyncio.Task[None]:
        """Mark a section as completed (or not) locally, then on the server."""
        key = (topic_slug, section_slug)
        if completed:
            record = {
                "topicSlug": topic_slug,
                "sectionSlug": section_slug,
                "completedAt": _now(),
            }
            self._queue_write("progress", WriteOp.PUT, key, record)
            self._progress[key] = record
        else:
            self._queue_write("progress", WriteOp.DELETE, key)
            self._progress.pop(key, None)
        task = self._schedule_persist()
        if self._client is not None:
            self._fire_and_forget(
                self._client.toggle_progress(topic_slug, section_slug, completed),
                "toggle progress",
            )
        return task

    # === Persistence ===

    def _track(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _schedule_persist(self) -> asyncio.Task[None]:
        return self._track(self._persist())

    async def _persist(self) -> None:
        """Drain the write queue once; schedule a retry if anything failed."""
        try:
            await self._drain_queue()
        except PersistenceError as e:
            logger.error(f"Local write failed, keeping in-memory state: {e}")
            self._schedule_retry()

    async def _drain_queue(self) -> None:
        """Apply every queued write in order.

        Raises:
            PersistenceError: If at least one write failed (it stays queued).
        """
        async with self._write_lock:
            failures: list[PersistenceError] = []
            for write in self._queue.pending():
                try:
                    await asyncio.to_thread(self._apply, write)
                except PersistenceError as e:
                    self._queue.fail(write)
                    failures.append(e)
                    continue
                self._queue.ack(write)
            if failures:
                raise failures[0]

    def _apply(self, write: PendingWrite) -> None:
        try:
            if write.op is WriteOp.PUT:
                self._store.put(write.table, write.record or {})
            elif write.op is WriteOp.DELETE:
                self._store.delete(write.table, write.key)
            else:
                self._store.clear(write.table)
        except sqlite3.Error as e:
            raise PersistenceError(str(e)) from e

    def _schedule_retry(self) -> None:
        if self._retry.max_retries <= 0:
            return
        if self._retry_task is not None and not self._retry_task.done():
            return
        self._retry_task = self._track(self._retry_failed())

    async def _retry_failed(self) -> None:
        try:
            await retry_with_backoff(
                self._drain_queue,
                max_retries=self._retry.max_retries,
                initial_backoff=self._retry.initial_backoff,
                max_backoff=self._retry.max_backoff,
                backoff_multiplier=self._retry.backoff_multiplier,
                retryable_exceptions=(PersistenceError,),
            )
        except PersistenceError:
            logger.error(
                f"Giving up on {len(self._queue)} local writes until the next change"
            )

    async def flush(self) -> bool:
        """Try to write every queued change now.

        Returns:
            True if the queue is empty afterwards.
        """
        try:
            await self._drain_queue()
        except PersistenceError as e:
            logger.warning(f"Flush left {len(self._queue)} writes queued: {e}")
            return False
        return True

    async def drain(self) -> None:
        """Wait for every background task started so far, including retries."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    # === Remote ===

    def _fire_and_forget(self, coro: Coroutine[Any, Any, Any], action: str) -> None:
        async def run() -> None:
            try:
                await coro
            except OfflineKitError as e:
                logger.warning(f"Failed to {action}: {e}")

        self._track(run())

    async def sync_with_server(self) -> bool:
        """Push the current journey to the remote preferences endpoint.

        Skipped when no path is selected. Errors are logged, not retried.

        Returns:
            True if the server accepted the preferences.
        """
        if self._client is None or not self._state.path_id:
            return False
        try:
            await self._client.update_preferences(self._state.to_preferences())
        except OfflineKitError as e:
            logger.error(f"Failed to sync preferences: {e}")
            return False
        return True

    async def load_from_server(
        self, remote: RemotePreferences | dict[str, Any] | None
    ) -> bool:
        """Replace local journey state with the server's (login).

        Ignored when the server has no path selected.

        Returns:
            True if local state was replaced.
        """
        if isinstance(remote, dict):
            remote = RemotePreferences.from_dict(remote)
        if remote is None or not remote.path_id:
            return False

        task = self._commit_journey(
            JourneyState(
                path_id=remote.path_id,
                experience_level=remote.experience_level,
                goals=tuple(remote.goals),
                onboarding_completed=remote.onboarding_completed,
                onboarding_completed_at=remote.onboarding_completed_at,
                last_path_change=remote.last_path_change,
            )
        )
        await task
        return True

    async def fetch_next_action(self, **context: Any) -> dict[str, Any] | None:
        """Load the recommended next action into the recommendation slot.

        The slot has its own loading and error flags; the journey is untouched.
        """
        if self._client is None:
            return None

        self._recommendation = Recommendation(
            data=self._recommendation.data, loading=True
        )
        payload = {
            "pathId": self._state.path_id,
            "previousPathId": self._state.path_id if self._state.last_path_change else None,
            **context,
        }
        try:
            data = await self._client.get_next_action(payload)
        except OfflineKitError as e:
            logger.error(f"Failed to fetch next action: {e}")
            self._recommendation = Recommendation(
                data=self._recommendation.data, error=str(e)
            )
            return None
        self._recommendation = Recommendation(data=data)
        return data
