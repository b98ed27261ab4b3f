"""In-flight request registry with per-endpoint latency estimation.

This module provides:
- ActivityTracker: Tracks in-flight requests and smoothed durations
- TrackerSnapshot / InFlightRequest: Immutable views handed to subscribers
- TrackingTransport: httpx transport recording every request it forwards
- normalize_key: Maps a URL to its latency-estimate key

Estimates are an exponentially weighted moving average (EWMA) per key.
Numeric path segments are collapsed (``/items/42`` and ``/items/99`` both
become ``/items/:id``) so instance-specific requests share one estimate.
All durations are in milliseconds.
"""

from __future__ import annotations

import itertools
import logging
import re
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urlsplit

import httpx

from offlinekit.core.config import TrackerConfig

logger = logging.getLogger(__name__)

_DIGITS = re.compile(r"/\d+")


def normalize_key(url: str) -> str:
    """Return the latency-estimate key of a URL.

    The key is the URL path with every ``/<digits>`` run replaced by ``/:id``.
    Query string and fragment are dropped.
    """
    try:
        path = urlsplit(url).path
    except ValueError:
        return url
    return _DIGITS.sub("/:id", path or "/")


def _monotonic_ms() -> float:
    return time.monotonic() * 1000.0


@dataclass(frozen=True)
class InFlightRequest:
    """A request between its start and end call."""

    id: str
    url: str
    method: str
    start_time: float
    key: str


@dataclass(frozen=True)
class TrackerSnapshot:
    """State handed to change subscribers.

    Attributes:
        inflight: Requests currently in flight, oldest first.
        estimates: Current EWMA per normalized key.
    """

    inflight: tuple[InFlightRequest, ...]
    estimates: dict[str, float]


# Type alias for change subscribers
ChangeCallback = Callable[[TrackerSnapshot], None]


class ActivityTracker:
    """Registry of in-flight network operations.

    Usage:
        tracker = ActivityTracker()
        unsubscribe = tracker.on_change(render)

        request_id = tracker.start_request("/api/curriculum/topics/12")
        ...
        tracker.end_request(request_id)

        tracker.eta(), tracker.progress()
    """

    def __init__(
        self,
        config: TrackerConfig | None = None,
        clock: Callable[[], float] = _monotonic_ms,
    ) -> None:
        """Initialize the tracker.

        Args:
            config: Smoothing and progress settings.
            clock: Returns the current time in milliseconds.
        """
        self._config = config or TrackerConfig()
        self._clock = clock
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self._inflight: dict[str, InFlightRequest] = {}
        self._estimates: dict[str, float] = {}
        self._listeners: list[ChangeCallback] = []

    # === Subscriptions ===

    def on_change(self, callback: ChangeCallback) -> Callable[[], None]:
        """Subscribe to registry changes.

        Returns:
            A function removing the subscription.
        """
        self._listeners.append(callback)

        def unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return unsubscribe

    def snapshot(self) -> TrackerSnapshot:
        """Get the current registry state."""
        with self._lock:
            return TrackerSnapshot(
                inflight=tuple(self._inflight.values()),
                estimates=dict(self._estimates),
            )

    def _emit(self) -> None:
        snapshot = self.snapshot()
        for callback in list(self._listeners):
            try:
                callback(snapshot)
            except Exception as e:
                logger.warning(f"Tracker subscriber failed: {e}")

    # === Registry ===

    def start_request(self, url: str = "", method: str = "GET") -> str:
        """Register a request that has just started.

        Returns:
            The id to pass to ``end_request``.
        """
        request = InFlightRequest(
            id=str(next(self._ids)),
            url=url,
            method=method.upper(),
            start_time=self._clock(),
            key=normalize_key(url),
        )
        with self._lock:
            self._inflight[request.id] = request
        self._emit()
        return request.id

    def end_request(self, request_id: str, success: bool = True) -> None:
        """Record the end of a request and fold its duration into the estimate.

        Unknown or already-ended ids are ignored.

        Args:
            request_id: Id returned by ``start_request``.
            success: Whether the request succeeded. Failed requests still
                count towards the estimate, since they occupied the UI as long.
        """
        now = self._clock()
        with self._lock:
            request = self._inflight.pop(request_id, None)
            if request is None:
                return
            duration = max(self._config.min_sample_ms, now - request.start_time)
            previous = self._estimates.get(request.key)
            if previous is None:
                self._estimates[request.key] = duration
            else:
                alpha = self._config.alpha_for(request.key)
                self._estimates[request.key] = alpha * duration + (1 - alpha) * previous

        if not success:
            logger.debug(f"Request {request_id} to {request.key} failed after {duration:.0f}ms")
        self._emit()

    def reap(self, max_age_ms: float) -> list[str]:
        """Drop in-flight entries older than ``max_age_ms`` without sampling them.

        Requests whose end is never reported would otherwise stay pending
        forever.

        Returns:
            Ids of the dropped requests.
        """
        now = self._clock()
        with self._lock:
            stale = [
                rid for rid, r in self._inflight.items() if now - r.start_time > max_age_ms
            ]
            for rid in stale:
                del self._inflight[rid]
        if stale:
            logger.warning(f"Reaped {len(stale)} requests that never ended")
            self._emit()
        return stale

    def get_estimate_for(self, url: str) -> float:
        """Get the expected duration of a request to ``url``."""
        with self._lock:
            return self._estimates.get(normalize_key(url), self._config.default_estimate_ms)

    # === Derived values ===

    @property
    def pending_count(self) -> int:
        """Number of requests in flight."""
        with self._lock:
            return len(self._inflight)

    def eta(self) -> float:
        """Longest expected remaining time across in-flight requests."""
        now = self._clock()
        with self._lock:
            remaining = [
                self._estimates.get(r.key, self._config.default_estimate_ms)
                - max(0.0, now - r.start_time)
                for r in self._inflight.values()
            ]
        return max([0.0, *remaining])

    def progress(self) -> int:
        """Heuristic progress percentage for a global loading indicator.

        100 when idle; otherwise ETA mapped against the configured ceiling and
        clamped so the indicator never sits at 0.
        """
        if not self.pending_count:
            return 100
        ceiling = self._config.progress_ceiling_ms
        percent = round(100 * (1 - min(1.0, self.eta() / ceiling)))
        return max(self._config.min_progress, percent)

    def hint(self) -> str | None:
        """Describe the most expensive in-flight request, if any."""
        with self._lock:
            inflight = list(self._inflight.values())
            if not inflight:
                return None
            top = max(
                inflight,
                key=lambda r: self._estimates.get(r.key, self._config.default_estimate_ms),
            )
            seconds = round(
                self._estimates.get(top.key, self._config.default_estimate_ms) / 1000
            )

        if "/ai" in top.key:
            return f"Thinking like an expert tutor, this usually takes ~{seconds}s."
        if "/compiler" in top.key or "/execute" in top.key:
            return f"Running code securely, estimated ~{seconds}s."
        if "/curriculum" in top.key:
            return f"Fetching course content, usually finishes in ~{seconds}s."
        name = top.key.rstrip("/").rsplit("/", 1)[-1] or "your request"
        return f"Working on {name}, expected ~{seconds}s."


class TrackingTransport(httpx.AsyncBaseTransport):
    """Transport wrapper reporting each request to an ActivityTracker."""

    def __init__(self, inner: httpx.AsyncBaseTransport, tracker: ActivityTracker) -> None:
        self._inner = inner
        self._tracker = tracker

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        request_id = self._tracker.start_request(str(request.url), request.method)
        success = False
        try:
            response = await self._inner.handle_async_request(request)
            success = response.status_code < 400
            return response
        finally:
            self._tracker.end_request(request_id, success=success)

    async def aclose(self) -> None:
        await self._inner.aclose()
