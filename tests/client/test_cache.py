"""Tests for the cache manager and its storage."""

import asyncio
from pathlib import Path

import httpx
import pytest

from offlinekit.client.cache import (
    OFFLINE_MESSAGE,
    SERVED_FROM_HEADER,
    CacheManager,
    CacheStorage,
    CachingTransport,
    cache_key,
)
from offlinekit.core.config import CacheConfig
from offlinekit.core.errors import CacheMiss, InstallError
from offlinekit.core.types import CacheStrategy, LifecycleEvent, WorkerState

ORIGIN = "https://app.example.com"
STATIC = "prephub-static-v1"
DYNAMIC = "prephub-dynamic-v1"


class TruncatedStream(httpx.AsyncByteStream):
    """Body stream whose connection drops after the first chunk."""

    async def __aiter__(self):
        yield b'{"par'
        raise httpx.ReadError("connection reset mid-body")


class FakeNetwork:
    """Programmable network recording every request it sees."""

    def __init__(self) -> None:
        self.routes: dict[str, tuple[int, dict]] = {}
        self.offline = False
        self.calls: list[str] = []
        self.truncated: set[str] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(f"{request.method} {request.url.path}")
        if self.offline:
            raise httpx.ConnectError("network down", request=request)
        if request.url.path in self.truncated:
            return httpx.Response(
                200, headers={"content-type": "application/json"}, stream=TruncatedStream()
            )
        if request.url.path not in self.routes:
            return httpx.Response(404, text="not found")
        status, kwargs = self.routes[request.url.path]
        return httpx.Response(status, **kwargs)

    def serve(self, path: str, status: int = 200, **kwargs) -> None:
        self.routes[path] = (status, kwargs)

    def serve_shell(self) -> None:
        self.serve("/", text="<html>root</html>")
        self.serve("/index.html", text="<html>index</html>")
        self.serve("/manifest.json", json={"name": "app"})


@pytest.fixture
def network() -> FakeNetwork:
    net = FakeNetwork()
    net.serve_shell()
    return net


@pytest.fixture
def storage(tmp_path: Path) -> CacheStorage:
    s = CacheStorage(tmp_path / "cache.db")
    yield s
    s.close()


@pytest.fixture
def manager(storage: CacheStorage, network: FakeNetwork) -> CacheManager:
    return CacheManager(storage, httpx.MockTransport(network.handler), CacheConfig(), ORIGIN)


def get(path: str, base: str = ORIGIN) -> httpx.Request:
    return httpx.Request("GET", f"{base}{path}")


async def activated(manager: CacheManager) -> CacheManager:
    await manager.install()
    await manager.activate()
    return manager


class TestCacheKey:
    """Tests for cache_key."""

    def test_method_uppercased_fragment_dropped(self) -> None:
        """Keys normalize method case and ignore fragments."""
        assert cache_key("get", "https://a.example/x?q=1#top") == "GET https://a.example/x?q=1"


class TestCacheStorage:
    """Tests for CacheStorage."""

    def test_put_and_match(self, storage: CacheStorage) -> None:
        """A stored response is returned for the same request."""
        request = get("/app.js")
        storage.put(STATIC, request, httpx.Response(200, text="console.log(1)"))

        cached = storage.match(get("/app.js"))

        assert cached is not None
        assert cached.status_code == 200
        assert cached.text == "console.log(1)"
        assert storage.has(STATIC)

    def test_miss(self, storage: CacheStorage) -> None:
        """An unknown request is a miss."""
        assert storage.match(get("/nothing")) is None

    def test_lookup_raises_on_miss(self, storage: CacheStorage) -> None:
        """lookup() raises CacheMiss instead of returning None."""
        with pytest.raises(CacheMiss):
            storage.lookup(get("/nothing"))

    def test_match_restricted_to_generation(self, storage: CacheStorage) -> None:
        """A generation-scoped lookup ignores other generations."""
        storage.put(STATIC, get("/a"), httpx.Response(200, text="a"))

        assert storage.match(get("/a"), generation=DYNAMIC) is None
        assert storage.match(get("/a"), generation=STATIC) is not None

    def test_delete_cascades(self, storage: CacheStorage) -> None:
        """Deleting a generation removes its entries."""
        storage.put("old", get("/a"), httpx.Response(200, text="a"))

        assert storage.delete("old")
        assert not storage.delete("old")
        assert storage.count("old") == 0
        assert storage.match(get("/a")) is None

    def test_add_all(self, storage: CacheStorage) -> None:
        """add_all stores every pair."""
        storage.open(STATIC)
        storage.add_all(
            STATIC,
            [(get("/a"), httpx.Response(200, text="a")), (get("/b"), httpx.Response(200, text="b"))],
        )

        assert storage.count(STATIC) == 2
        assert storage.keys() == [STATIC]


class TestLifecycle:
    """Tests for install and activate."""

    @pytest.mark.asyncio
    async def test_install_precaches_shell(
        self, manager: CacheManager, storage: CacheStorage
    ) -> None:
        """install() stores every shell resource and waits for activation."""
        await manager.install()

        assert manager.state is WorkerState.WAITING
        assert storage.count(STATIC) == 3
        assert storage.match(get("/manifest.json")).json() == {"name": "app"}
        assert not manager.controlling

    @pytest.mark.asyncio
    async def test_install_failure_stores_nothing(
        self, manager: CacheManager, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """A failing shell resource aborts installation."""
        del network.routes["/manifest.json"]

        with pytest.raises(InstallError):
            await manager.install()

        assert manager.state is WorkerState.UNINSTALLED
        assert storage.count(STATIC) == 0

    @pytest.mark.asyncio
    async def test_install_offline(
        self, manager: CacheManager, network: FakeNetwork
    ) -> None:
        """A transport error during install raises InstallError."""
        network.offline = True

        with pytest.raises(InstallError):
            await manager.install()
        assert manager.state is WorkerState.UNINSTALLED

    @pytest.mark.asyncio
    async def test_activate_purges_stale_generations(
        self, manager: CacheManager, storage: CacheStorage
    ) -> None:
        """After activation only the active generation names remain."""
        storage.put("prephub-static-v0", get("/old.js"), httpx.Response(200, text="old"))
        storage.put("other-cache", get("/x"), httpx.Response(200, text="x"))
        storage.open(DYNAMIC)
        await manager.install()

        deleted = await manager.activate()

        assert set(deleted) == {"prephub-static-v0", "other-cache"}
        assert set(storage.keys()) <= {STATIC, DYNAMIC}
        assert manager.state is WorkerState.ACTIVE
        assert manager.controlling

    @pytest.mark.asyncio
    async def test_activate_requires_install(self, manager: CacheManager) -> None:
        """activate() before install() is an error."""
        with pytest.raises(RuntimeError):
            await manager.activate()

    @pytest.mark.asyncio
    async def test_dispatch(self, manager: CacheManager) -> None:
        """Lifecycle events route to their handlers."""
        await manager.dispatch(LifecycleEvent.INSTALL)
        await manager.dispatch("activate")
        response = await manager.dispatch("fetch", get("/"))
        await manager.drain()

        assert manager.state is WorkerState.ACTIVE
        assert response.text == "<html>root</html>"

    @pytest.mark.asyncio
    async def test_terminate(self, manager: CacheManager) -> None:
        """terminate() stops interception."""
        await activated(manager)

        await manager.terminate()

        assert manager.state is WorkerState.TERMINATED
        assert not manager.controlling


class TestClassify:
    """Tests for strategy selection."""

    @pytest.mark.parametrize(
        "method,url,expected",
        [
            ("POST", f"{ORIGIN}/api/bookmarks", CacheStrategy.PASS_THROUGH),
            ("DELETE", f"{ORIGIN}/static/app.js", CacheStrategy.PASS_THROUGH),
            ("GET", f"{ORIGIN}/api/progress/all", CacheStrategy.NETWORK_FIRST),
            ("GET", f"{ORIGIN}/api", CacheStrategy.NETWORK_FIRST),
            ("GET", f"{ORIGIN}/apidocs", CacheStrategy.CACHE_FIRST),
            ("GET", f"{ORIGIN}/static/app.js", CacheStrategy.CACHE_FIRST),
            ("GET", "https://cdn.example.net/font.woff", CacheStrategy.PASS_THROUGH),
            ("GET", "http://app.example.com/static/app.js", CacheStrategy.PASS_THROUGH),
        ],
    )
    def test_classify(
        self, manager: CacheManager, method: str, url: str, expected: CacheStrategy
    ) -> None:
        """Requests are classified by method, path prefix and origin."""
        assert manager.classify(httpx.Request(method, url)) is expected


class TestInterception:
    """Tests for the caching strategies."""

    @pytest.mark.asyncio
    async def test_pass_through_before_activation(
        self, manager: CacheManager, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """An uncontrolled manager forwards requests without caching."""
        network.serve("/static/app.js", text="js")

        response = await manager.intercept(get("/static/app.js"))

        assert response.text == "js"
        assert storage.match(get("/static/app.js")) is None

    @pytest.mark.asyncio
    async def test_cache_first_miss_stores(
        self, manager: CacheManager, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """A static miss goes to the network and caches a success."""
        await activated(manager)
        network.serve("/static/app.js", text="js")

        response = await manager.intercept(get("/static/app.js"))

        assert response.text == "js"
        assert storage.match(get("/static/app.js"), generation=STATIC).text == "js"

    @pytest.mark.asyncio
    async def test_cache_first_does_not_store_errors(
        self, manager: CacheManager, storage: CacheStorage
    ) -> None:
        """Non-success responses are returned but not cached."""
        await activated(manager)

        response = await manager.intercept(get("/missing.js"))

        assert response.status_code == 404
        assert storage.match(get("/missing.js")) is None

    @pytest.mark.asyncio
    async def test_cache_first_hit_returns_before_refresh(
        self, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """A hit is served immediately and refreshed exactly once in the background."""
        release = asyncio.Event()
        calls: list[str] = []

        async def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/static/app.js":
                calls.append(request.url.path)
                await release.wait()
                return httpx.Response(200, text="v2")
            return network.handler(request)

        manager = await activated(
            CacheManager(storage, httpx.MockTransport(handler), CacheConfig(), ORIGIN)
        )
        storage.put(STATIC, get("/static/app.js"), httpx.Response(200, text="v1"))

        response = await asyncio.wait_for(manager.intercept(get("/static/app.js")), 1)

        assert response.text == "v1"
        release.set()
        await manager.drain()
        assert calls == ["/static/app.js"]
        assert storage.match(get("/static/app.js")).text == "v2"

    @pytest.mark.asyncio
    async def test_failed_refresh_keeps_stale_copy(
        self, manager: CacheManager, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """A refresh that fails leaves the cached copy untouched."""
        await activated(manager)
        storage.put(STATIC, get("/static/app.js"), httpx.Response(200, text="v1"))
        network.offline = True

        response = await manager.intercept(get("/static/app.js"))
        await manager.drain()

        assert response.text == "v1"
        assert storage.match(get("/static/app.js")).text == "v1"

    @pytest.mark.asyncio
    async def test_cache_first_offline_document(
        self, manager: CacheManager, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """A static miss while offline serves the offline document."""
        await activated(manager)
        storage.put(STATIC, get("/offline.html"), httpx.Response(200, text="offline page"))
        network.offline = True

        response = await manager.intercept(get("/static/app.js"))

        assert response.text == "offline page"

    @pytest.mark.asyncio
    async def test_cache_first_raises_without_offline_document(
        self, manager: CacheManager, network: FakeNetwork
    ) -> None:
        """Without an offline document the transport error propagates."""
        await activated(manager)
        network.offline = True

        with pytest.raises(httpx.ConnectError):
            await manager.intercept(get("/static/app.js"))

    @pytest.mark.asyncio
    async def test_cache_first_body_failure_serves_offline_document(
        self, manager: CacheManager, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """A connection dropped mid-body on a static miss falls back to the offline document."""
        await activated(manager)
        storage.put(STATIC, get("/offline.html"), httpx.Response(200, text="offline page"))
        network.truncated.add("/app.js")

        response = await manager.intercept(get("/app.js"))

        assert response.text == "offline page"
        assert storage.match(get("/app.js")) is None

    @pytest.mark.asyncio
    async def test_cache_first_body_failure_without_offline_document(
        self, manager: CacheManager, network: FakeNetwork
    ) -> None:
        """Without an offline document the read error propagates."""
        await activated(manager)
        network.truncated.add("/app.js")

        with pytest.raises(httpx.ReadError):
            await manager.intercept(get("/app.js"))

    @pytest.mark.asyncio
    async def test_network_first_caches_cacheable_route(
        self, manager: CacheManager, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """Successful responses of cacheable routes land in the dynamic generation."""
        await activated(manager)
        network.serve("/api/curriculum/topics", json=[{"slug": "dsa"}])
        network.serve("/api/auth/preferences", json={"pathId": "x"})

        await manager.intercept(get("/api/curriculum/topics"))
        await manager.intercept(get("/api/auth/preferences"))

        assert storage.count(DYNAMIC) == 1
        assert storage.match(get("/api/curriculum/topics"), generation=DYNAMIC) is not None

    @pytest.mark.asyncio
    async def test_network_first_fallback_marks_cache(
        self, manager: CacheManager, network: FakeNetwork
    ) -> None:
        """Offline API requests get the cached copy with the served-from header."""
        await activated(manager)
        network.serve("/api/progress/all", json={"done": 3})
        await manager.intercept(get("/api/progress/all"))
        network.offline = True

        response = await manager.intercept(get("/api/progress/all"))

        assert response.status_code == 200
        assert response.json() == {"done": 3}
        assert response.headers[SERVED_FROM_HEADER] == "cache"

    @pytest.mark.asyncio
    async def test_network_first_body_failure_serves_cache(
        self, manager: CacheManager, network: FakeNetwork
    ) -> None:
        """A connection dropped mid-body returns the cached copy."""
        await activated(manager)
        network.serve("/api/curriculum/topics", json=[{"slug": "dsa"}])
        await manager.intercept(get("/api/curriculum/topics"))
        network.truncated.add("/api/curriculum/topics")

        response = await manager.intercept(get("/api/curriculum/topics"))

        assert response.json() == [{"slug": "dsa"}]
        assert response.headers[SERVED_FROM_HEADER] == "cache"

    @pytest.mark.asyncio
    async def test_network_first_body_failure_without_cache(
        self, manager: CacheManager, network: FakeNetwork
    ) -> None:
        """A connection dropped mid-body with nothing cached returns the offline payload."""
        await activated(manager)
        network.truncated.add("/api/progress/all")

        response = await manager.intercept(get("/api/progress/all"))

        assert response.status_code == 503
        assert response.json()["error"] == "offline"

    @pytest.mark.asyncio
    async def test_network_first_offline_payload(
        self, manager: CacheManager, network: FakeNetwork
    ) -> None:
        """Offline API requests without a cached copy get a 503 JSON payload."""
        await activated(manager)
        network.offline = True

        response = await manager.intercept(get("/api/progress/all"))

        assert response.status_code == 503
        assert response.json() == {"error": "offline", "message": OFFLINE_MESSAGE}

    @pytest.mark.asyncio
    async def test_non_get_never_cached(
        self, manager: CacheManager, storage: CacheStorage, network: FakeNetwork
    ) -> None:
        """Mutations pass straight to the network."""
        await activated(manager)
        network.serve("/api/bookmarks", status=201, json={"ok": True})

        response = await manager.intercept(
            httpx.Request("POST", f"{ORIGIN}/api/bookmarks", json={"id": "b1"})
        )

        assert response.status_code == 201
        assert storage.count(DYNAMIC) == 0
        assert network.calls[-1] == "POST /api/bookmarks"


class TestControlMessages:
    """Tests for the control channel."""

    @pytest.mark.asyncio
    async def test_clear_cache(self, manager: CacheManager, storage: CacheStorage) -> None:
        """CLEAR_CACHE deletes every generation."""
        await activated(manager)

        await manager.handle_message({"type": "CLEAR_CACHE"})

        assert storage.keys() == []

    @pytest.mark.asyncio
    async def test_skip_waiting_activates(self, manager: CacheManager) -> None:
        """SKIP_WAITING activates a waiting manager."""
        await manager.install()

        await manager.dispatch("message", {"type": "SKIP_WAITING"})

        assert manager.state is WorkerState.ACTIVE

    @pytest.mark.asyncio
    async def test_unknown_message_ignored(self, manager: CacheManager) -> None:
        """Unknown commands change nothing."""
        await manager.handle_message({"type": "REBOOT"})

        assert manager.state is WorkerState.UNINSTALLED


class TestCachingTransport:
    """Tests for the transport wrapper."""

    @pytest.mark.asyncio
    async def test_client_uses_cache(
        self, manager: CacheManager, network: FakeNetwork
    ) -> None:
        """An AsyncClient over the transport gets cached API fallbacks."""
        await activated(manager)
        network.serve("/api/curriculum/topics", json=["dsa"])
        transport = CachingTransport(manager)

        async with httpx.AsyncClient(transport=transport, base_url=ORIGIN) as client:
            await client.get("/api/curriculum/topics")
            network.offline = True
            response = await client.get("/api/curriculum/topics")

        assert response.json() == ["dsa"]
        assert manager.state is WorkerState.TERMINATED
