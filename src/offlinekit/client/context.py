"""Explicitly constructed runtime for the offline layer.

This module provides:
- OfflineContext: Owns one store, cache manager, tracker, API client and
  sync engine, with an open/close lifecycle

Several contexts can coexist (one per test, one per profile); nothing in
offlinekit keeps module-level state.

Data files inside ``data_dir``:
    store.db     PersistentStore
    cache.db     CacheStorage
    legacy.json  LegacyStorage
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import httpx

from offlinekit.client.api import PreferencesClient, RemotePreferences
from offlinekit.client.cache import CacheManager, CacheStorage, CachingTransport
from offlinekit.client.migration import LegacyMigrator, LegacyStorage
from offlinekit.client.store import PersistentStore
from offlinekit.client.sync.engine import RetryPolicy, SyncEngine
from offlinekit.client.tracker import ActivityTracker, TrackingTransport
from offlinekit.core.config import CacheConfig, ClientConfig, TrackerConfig
from offlinekit.core.errors import InstallError, OfflineKitError

logger = logging.getLogger(__name__)

STORE_FILE = "store.db"
CACHE_FILE = "cache.db"
LEGACY_FILE = "legacy.json"


class OfflineContext:
    """Wires the offline layer together.

    Usage:
        async with OfflineContext(ClientConfig("https://app.example.com"), data_dir) as ctx:
            ctx.engine.set_path("backend", "beginner")
            await ctx.engine.sync_with_server()
            ctx.tracker.progress()
    """

    def __init__(
        self,
        config: ClientConfig,
        data_dir: Path,
        *,
        cache_config: CacheConfig | None = None,
        tracker_config: TrackerConfig | None = None,
        retry_policy: RetryPolicy | None = None,
        network: httpx.AsyncBaseTransport | None = None,
        install_cache: bool = True,
    ) -> None:
        """Initialize the context. Nothing is opened until ``open()``.

        Args:
            config: Remote API configuration.
            data_dir: Directory of the local data files.
            cache_config: Cache generations and routes.
            tracker_config: Latency estimation settings.
            retry_policy: Backoff for failed local writes.
            network: Transport performing real requests (default: httpx network).
            install_cache: Install and activate the cache manager on open.
        """
        self.config = config
        self.data_dir = Path(data_dir)
        self.cache_config = cache_config or CacheConfig()
        self._tracker_config = tracker_config
        self._retry_policy = retry_policy
        self._network = network
        self._install_cache = install_cache
        self._opened = False

        self.store: PersistentStore | None = None
        self.legacy: LegacyStorage | None = None
        self.migrator: LegacyMigrator | None = None
        self.cache_storage: CacheStorage | None = None
        self.cache: CacheManager | None = None
        self.tracker: ActivityTracker | None = None
        self.client: PreferencesClient | None = None
        self.engine: SyncEngine | None = None

    @property
    def opened(self) -> bool:
        """Whether ``open()`` has run and ``close()`` has not."""
        return self._opened

    async def open(self) -> OfflineContext:
        """Open the data files, start the cache manager and hydrate the engine."""
        if self._opened:
            return self

        self.data_dir.mkdir(parents=True, exist_ok=True)
        self.store = PersistentStore(self.data_dir / STORE_FILE)
        self.legacy = LegacyStorage(self.data_dir / LEGACY_FILE)
        self.migrator = LegacyMigrator(self.store, self.legacy)

        network = self._network or httpx.AsyncHTTPTransport(verify=self.config.verify_ssl)
        self.cache_storage = CacheStorage(self.data_dir / CACHE_FILE)
        self.cache = CacheManager(
            self.cache_storage, network, self.cache_config, self.config.origin
        )
        self.tracker = ActivityTracker(self._tracker_config)

        transport = TrackingTransport(CachingTransport(self.cache), self.tracker)
        self.client = PreferencesClient(self.config, transport=transport)
        self.engine = SyncEngine(
            self.store, self.migrator, self.client, retry_policy=self._retry_policy
        )
        self._opened = True

        if self._install_cache:
            try:
                await self.cache.install()
                await self.cache.activate()
            except InstallError as e:
                logger.warning(f"Cache manager not installed, requests pass through: {e}")

        await self.engine.init()
        logger.info(f"Offline context opened at {self.data_dir}")
        return self

    async def close(self) -> None:
        """Flush background work and release every resource."""
        if not self._opened:
            return
        assert self.engine and self.client and self.store and self.cache_storage

        await self.engine.drain()
        await self.client.aclose()
        self.store.close()
        self.cache_storage.close()
        self._opened = False
        logger.info("Offline context closed")

    async def __aenter__(self) -> OfflineContext:
        """Async context manager entry."""
        return await self.open()

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.close()

    # === Authentication hooks ===

    async def login(
        self,
        token: str,
        preferences: RemotePreferences | dict[str, Any] | None = None,
    ) -> bool:
        """Adopt an authenticated session and reconcile with the account.

        Args:
            token: Bearer token issued by the authentication provider.
            preferences: Server preferences if the login response carried
                them; fetched from the API otherwise.

        Returns:
            True if local journey state was replaced by the server's.
        """
        assert self.client and self.engine
        self.client.set_token(token)
        if preferences is None:
            try:
                preferences = await self.client.get_preferences()
            except OfflineKitError as e:
                logger.warning(f"Could not load preferences after login: {e}")
                return False
        return await self.engine.load_from_server(preferences)

    async def logout(self) -> None:
        """Drop the session and clear the journey."""
        assert self.client and self.engine
        self.client.set_token(None)
        await self.engine.reset()
