"""Request interception and offline caching.

This module provides:
- CacheStorage: Durable response cache partitioned into named generations
- CacheManager: Lifecycle state machine and per-request caching strategy
- CachingTransport: httpx transport routing every request through a CacheManager

Architecture:
    PreferencesClient ─► TrackingTransport ─► CachingTransport ─► network

Lifecycle (one handler per event):
    UNINSTALLED ─install()─► INSTALLING ─► WAITING ─activate()─► ACTIVE
                                                       terminate()─► TERMINATED

    install() precaches the shell resources into the static generation and
    signals skip-waiting. activate() deletes every generation that is not one
    of the active names and claims clients, after which intercept() applies
    caching. Before activation every request passes straight through.

Strategies:
    - Non-GET requests, and cross-origin requests outside the API prefix,
      pass through untouched.
    - API requests are network-first: successful responses on cacheable
      routes are stored in the dynamic generation; on network failure the
      cached copy is served with ``X-Served-From: cache``, or a 503 JSON
      offline payload when nothing is cached.
    - Everything else is cache-first with stale-while-revalidate: a hit is
      returned at once and refreshed in the background.

Network errors never escape intercept() except when a static miss also finds
no offline document, in which case the original transport error propagates.
Response bodies are read before they are returned, so a connection dropped
midway through a body takes the same fallback as a failed connect.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import sqlite3
import threading
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import httpx

from offlinekit.core.config import CacheConfig
from offlinekit.core.errors import CacheMiss, InstallError
from offlinekit.core.types import (
    CacheStrategy,
    ControlMessage,
    LifecycleEvent,
    WorkerState,
)

logger = logging.getLogger(__name__)

SERVED_FROM_HEADER = "X-Served-From"
OFFLINE_MESSAGE = "You appear to be offline. Please check your connection."

# Headers describing the wire encoding; cached bodies are stored decoded
_HOP_HEADERS = frozenset({"content-encoding", "content-length", "transfer-encoding"})


def cache_key(method: str, url: httpx.URL | str) -> str:
    """Normalize a (method, URL) pair into a cache key."""
    return f"{method.upper()} {str(url).split('#', 1)[0]}"


class CacheStorage:
    """SQLite-backed response cache with named generations.

    Each statement runs under a lock, so concurrent reads and writes of
    distinct entries from several tasks are safe without extra locking.
    """

    def __init__(self, db_path: Path | str) -> None:
        """Initialize the cache database.

        Args:
            db_path: Path to SQLite database file, or ":memory:".
        """
        target = str(db_path)
        if target != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._conn = sqlite3.connect(target, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        if target != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._create_tables()

    def _create_tables(self) -> None:
        """Create database tables if they don't exist."""
        self._conn.executescript("""
            CREATE TABLE IF NOT EXISTS generations (
                name TEXT PRIMARY KEY,
                created_at REAL NOT NULL
            );

            CREATE TABLE IF NOT EXISTS entries (
                generation TEXT NOT NULL REFERENCES generations(name) ON DELETE CASCADE,
                key TEXT NOT NULL,
                status INTEGER NOT NULL,
                headers TEXT NOT NULL,
                body BLOB NOT NULL,
                stored_at REAL NOT NULL,
                PRIMARY KEY (generation, key)
            );
        """)

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    # === Generations ===

    def open(self, name: str) -> None:
        """Create a generation if it does not exist."""
        with self._lock:
            self._conn.execute(
                "INSERT OR IGNORE INTO generations (name, created_at) VALUES (?, ?)",
                (name, time.time()),
            )

    def keys(self) -> list[str]:
        """List generation names, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                "SELECT name FROM generations ORDER BY created_at, name"
            ).fetchall()
        return [row["name"] for row in rows]

    def has(self, name: str) -> bool:
        """Check whether a generation exists."""
        with self._lock:
            row = self._conn.execute(
                "SELECT 1 FROM generations WHERE name = ?", (name,)
            ).fetchone()
        return row is not None

    def delete(self, name: str) -> bool:
        """Delete a generation and all of its entries.

        Returns:
            True if the generation existed.
        """
        with self._lock:
            cursor = self._conn.execute("DELETE FROM generations WHERE name = ?", (name,))
        return cursor.rowcount > 0

    # === Entries ===

    def put(self, generation: str, request: httpx.Request, response: httpx.Response) -> None:
        """Store a response whose body has already been read."""
        headers = [
            (k, v) for k, v in response.headers.multi_items() if k.lower() not in _HOP_HEADERS
        ]
        with self._lock:
            self.open(generation)
            self._conn.execute(
                """
                INSERT OR REPLACE INTO entries (
                    generation, key, status, headers, body, stored_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    generation,
                    cache_key(request.method, request.url),
                    response.status_code,
                    json.dumps(headers),
                    response.content,
                    time.time(),
                ),
            )

    def add_all(
        self, generation: str, pairs: Iterable[tuple[httpx.Request, httpx.Response]]
    ) -> None:
        """Store several responses atomically."""
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                for request, response in pairs:
                    self.put(generation, request, response)
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    def match(
        self,
        request: httpx.Request,
        generation: str | None = None,
    ) -> httpx.Response | None:
        """Find a cached response for a request.

        Args:
            request: Request to look up (method and URL).
            generation: Restrict the lookup to one generation. Without it the
                most recently stored entry of any generation wins.

        Returns:
            A fresh response object, or None on a miss.
        """
        key = cache_key(request.method, request.url)
        sql = "SELECT status, headers, body FROM entries WHERE key = ?"
        params: tuple[Any, ...] = (key,)
        if generation is not None:
            sql += " AND generation = ?"
            params += (generation,)
        sql += " ORDER BY stored_at DESC LIMIT 1"

        with self._lock:
            row = self._conn.execute(sql, params).fetchone()
        if row is None:
            return None
        return httpx.Response(
            row["status"],
            headers=[tuple(h) for h in json.loads(row["headers"])],
            content=bytes(row["body"]),
            request=request,
        )

    def lookup(self, request: httpx.Request, generation: str | None = None) -> httpx.Response:
        """Like ``match()`` but raise on a miss.

        Raises:
            CacheMiss: If no entry exists for the request.
        """
        response = self.match(request, generation)
        if response is None:
            raise CacheMiss(cache_key(request.method, request.url))
        return response

    def count(self, generation: str) -> int:
        """Count the entries of a generation."""
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM entries WHERE generation = ?", (generation,)
            ).fetchone()
        return int(row[0])


def _offline_response(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        503,
        json={"error": "offline", "message": OFFLINE_MESSAGE},
        request=request,
    )


class CacheManager:
    """Intercepts outgoing requests and answers them per caching strategy.

    Usage:
        manager = CacheManager(storage, network, CacheConfig(), origin)
        await manager.install()
        await manager.activate()
        response = await manager.intercept(request)
    """

    def __init__(
        self,
        storage: CacheStorage,
        network: httpx.AsyncBaseTransport,
        config: CacheConfig,
        origin: str,
    ) -> None:
        """Initialize the cache manager.

        Args:
            storage: Durable response cache.
            network: Transport performing real network requests.
            config: Generation names, shell resources and routes.
            origin: Scheme and host of the application.
        """
        self._storage = storage
        self._network = network
        self._config = config
        self._origin = httpx.URL(origin)
        self._state = WorkerState.UNINSTALLED
        self._skip_waiting = False
        self._controlling = False
        self._background: set[asyncio.Task[None]] = set()

    @property
    def state(self) -> WorkerState:
        """Current lifecycle state."""
        return self._state

    @property
    def controlling(self) -> bool:
        """Whether requests are being intercepted."""
        return self._controlling

    @property
    def storage(self) -> CacheStorage:
        """The underlying response cache."""
        return self._storage

    def _url(self, path: str) -> httpx.URL:
        return self._origin.join(path)

    # === Lifecycle ===

    async def install(self) -> None:
        """Precache the shell resources into the static generation.

        All resources must load; otherwise nothing is stored and the manager
        returns to UNINSTALLED.

        Raises:
            InstallError: If any shell resource fails to load.
        """
        if self._state is not WorkerState.UNINSTALLED:
            logger.debug(f"install() ignored in state {self._state.value}")
            return

        self._state = WorkerState.INSTALLING
        logger.info("Installing cache manager")

        pairs: list[tuple[httpx.Request, httpx.Response]] = []
        try:
            for path in self._config.shell_resources:
                request = httpx.Request("GET", self._url(path))
                response = await self._network.handle_async_request(request)
                await response.aread()
                if not response.is_success:
                    raise InstallError(f"Precache of {path} returned {response.status_code}")
                pairs.append((request, response))
        except httpx.TransportError as e:
            self._state = WorkerState.UNINSTALLED
            raise InstallError(f"Precache failed: {e}") from e
        except InstallError:
            self._state = WorkerState.UNINSTALLED
            raise

        self._storage.open(self._config.static_cache)
        self._storage.add_all(self._config.static_cache, pairs)
        logger.info(f"Precached {len(pairs)} shell resources")

        self._state = WorkerState.WAITING
        self.skip_waiting()

    def skip_waiting(self) -> None:
        """Supersede any previous instance without waiting for clients to close."""
        self._skip_waiting = True

    async def activate(self) -> list[str]:
        """Delete stale generations and take control of open clients.

        Returns:
            Names of the generations deleted.

        Raises:
            RuntimeError: If the manager was never installed or is terminated.
        """
        if self._state not in (WorkerState.WAITING, WorkerState.ACTIVE):
            raise RuntimeError(f"Cannot activate from state {self._state.value}")

        logger.info("Activating cache manager")
        active = self._config.active_caches
        deleted = []
        for name in self._storage.keys():
            if name not in active:
                logger.info(f"Deleting old cache: {name}")
                self._storage.delete(name)
                deleted.append(name)

        self._state = WorkerState.ACTIVE
        self.claim_clients()
        return deleted

    def claim_clients(self) -> None:
        """Start intercepting requests without requiring a reload."""
        self._controlling = True

    async def terminate(self) -> None:
        """Stop intercepting, cancel background refreshes and close the network."""
        self._controlling = False
        self._state = WorkerState.TERMINATED
        for task in list(self._background):
            task.cancel()
        for task in list(self._background):
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await self._network.aclose()

    async def drain(self) -> None:
        """Wait for all background refreshes to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # === Control channel ===

    async def handle_message(self, payload: dict[str, Any]) -> None:
        """Handle a command sent from the foreground.

        ``SKIP_WAITING`` activates a waiting manager right away;
        ``CLEAR_CACHE`` deletes every generation.
        """
        kind = payload.get("type") if isinstance(payload, dict) else None
        if kind == ControlMessage.SKIP_WAITING.value:
            self.skip_waiting()
            if self._state is WorkerState.WAITING:
                await self.activate()
        elif kind == ControlMessage.CLEAR_CACHE.value:
            await self.purge()
        else:
            logger.warning(f"Ignoring unknown control message: {payload!r}")

    async def purge(self) -> list[str]:
        """Delete every generation.

        Returns:
            Names of the deleted generations.
        """
        names = self._storage.keys()
        for name in names:
            self._storage.delete(name)
        logger.info(f"Purged {len(names)} cache generations")
        return names

    async def dispatch(
        self, event: LifecycleEvent | str, payload: Any = None
    ) -> httpx.Response | list[str] | None:
        """Route a lifecycle event to its handler.

        Args:
            event: One of install, activate, fetch, message.
            payload: The request for ``fetch``, the command dict for ``message``.
        """
        event = LifecycleEvent(event)
        if event is LifecycleEvent.INSTALL:
            await self.install()
            return None
        if event is LifecycleEvent.ACTIVATE:
            return await self.activate()
        if event is LifecycleEvent.FETCH:
            return await self.intercept(payload)
        await self.handle_message(payload)
        return None

    # === Interception ===

    def _is_api(self, url: httpx.URL) -> bool:
        prefix = self._config.api_prefix.rstrip("/")
        return url.path == prefix or url.path.startswith(prefix + "/")

    def classify(self, request: httpx.Request) -> CacheStrategy:
        """Pick the caching strategy for a request."""
        if request.method != "GET":
            return CacheStrategy.PASS_THROUGH
        url = request.url
        same_origin = url.scheme == self._origin.scheme and url.netloc == self._origin.netloc
        if self._is_api(url):
            return CacheStrategy.NETWORK_FIRST
        if not same_origin:
            return CacheStrategy.PASS_THROUGH
        return CacheStrategy.CACHE_FIRST

    async def intercept(self, request: httpx.Request) -> httpx.Response:
        """Answer a request according to its strategy."""
        if not self._controlling:
            return await self._network.handle_async_request(request)

        strategy = self.classify(request)
        logger.debug(f"{request.method} {request.url} -> {strategy.value}")
        if strategy is CacheStrategy.CACHE_FIRST:
            return await self._cache_first(request)
        if strategy is CacheStrategy.NETWORK_FIRST:
            return await self._network_first(request)
        return await self._network.handle_async_request(request)

    def _is_cacheable_route(self, url: httpx.URL) -> bool:
        return any(route in url.path for route in self._config.cacheable_routes)

    async def _cache_first(self, request: httpx.Request) -> httpx.Response:
        cached = self._storage.match(request)
        if cached is not None:
            self._schedule_refresh(request, self._config.static_cache)
            return cached

        try:
            response = await self._network.handle_async_request(request)
            await response.aread()
        except httpx.TransportError:
            offline = self._storage.match(
                httpx.Request("GET", self._url(self._config.offline_document))
            )
            if offline is None:
                logger.warning(f"No offline document cached, {request.url} fails")
                raise
            logger.info(f"Serving offline document for {request.url}")
            return offline

        if response.is_success:
            self._storage.put(self._config.static_cache, request, response)
        return response

    async def _network_first(self, request: httpx.Request) -> httpx.Response:
        try:
            response = await self._network.handle_async_request(request)
            await response.aread()
        except httpx.TransportError as e:
            logger.info(f"Network failed for {request.url}: {e}")
            try:
                cached = self._storage.lookup(request)
            except CacheMiss:
                return _offline_response(request)
            cached.headers[SERVED_FROM_HEADER] = "cache"
            return cached

        if response.is_success and self._is_cacheable_route(request.url):
            self._storage.put(self._config.dynamic_cache, request, response)
        return response

    def _schedule_refresh(self, request: httpx.Request, generation: str) -> None:
        task = asyncio.get_running_loop().create_task(self._refresh(request, generation))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _refresh(self, request: httpx.Request, generation: str) -> None:
        """Re-fetch a cached resource; failures keep the stale copy."""
        refresh = httpx.Request(request.method, request.url, headers=request.headers)
        try:
            response = await self._network.handle_async_request(refresh)
            await response.aread()
        except httpx.TransportError as e:
            logger.debug(f"Background refresh of {request.url} failed: {e}")
            return
        if response.is_success:
            self._storage.put(generation, refresh, response)


class CachingTransport(httpx.AsyncBaseTransport):
    """Transport answering every request through a CacheManager."""

    def __init__(self, manager: CacheManager) -> None:
        self._manager = manager

    @property
    def manager(self) -> CacheManager:
        """The cache manager behind this transport."""
        return self._manager

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self._manager.intercept(request)

    async def aclose(self) -> None:
        if self._manager.state is not WorkerState.TERMINATED:
            await self._manager.terminate()
