"""Shared configuration classes for offlinekit.

This module defines configuration classes used by the HTTP client, the cache
manager and the activity tracker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from urllib.parse import urlsplit

DEFAULT_SHELL_RESOURCES = ("/", "/index.html", "/manifest.json")
DEFAULT_CACHEABLE_ROUTES = ("/api/curriculum/topics", "/api/progress/all")


@dataclass
class ClientConfig:
    """Configuration for connecting to the remote API.

    Attributes:
        api_url: Base URL of the application (e.g., "https://app.example.com").
        token: Optional bearer token of the signed-in user.
        timeout: Request timeout in seconds.
        verify_ssl: Whether to verify SSL certificates (default True).
    """

    api_url: str
    token: str | None = None
    timeout: float = 30.0
    verify_ssl: bool = True

    def __post_init__(self) -> None:
        """Normalize API URL."""
        self.api_url = self.api_url.rstrip("/")

    @property
    def origin(self) -> str:
        """Scheme and host of the application, used for same-origin checks."""
        parts = urlsplit(self.api_url)
        return f"{parts.scheme}://{parts.netloc}"


@dataclass
class CacheConfig:
    """Configuration of the cache manager.

    Attributes:
        version: Version tag embedded in every generation name. Bumping it
            makes the next activation purge all older generations.
        prefix: Application prefix of generation names.
        shell_resources: Paths precached on install.
        cacheable_routes: API routes whose successful responses are cached.
        api_prefix: Path prefix classifying a request as an API call.
        offline_document: Path of the page served when a static fetch fails.
    """

    version: str = "v1"
    prefix: str = "prephub"
    shell_resources: tuple[str, ...] = DEFAULT_SHELL_RESOURCES
    cacheable_routes: tuple[str, ...] = DEFAULT_CACHEABLE_ROUTES
    api_prefix: str = "/api"
    offline_document: str = "/offline.html"

    @property
    def static_cache(self) -> str:
        """Name of the generation holding shell and static assets."""
        return f"{self.prefix}-static-{self.version}"

    @property
    def dynamic_cache(self) -> str:
        """Name of the generation holding cacheable API responses."""
        return f"{self.prefix}-dynamic-{self.version}"

    @property
    def active_caches(self) -> frozenset[str]:
        """Generations that survive activation."""
        return frozenset({self.static_cache, self.dynamic_cache})


@dataclass
class TrackerConfig:
    """Configuration of the activity tracker.

    Durations are in milliseconds.

    Attributes:
        alpha: EWMA smoothing factor (weight of the newest sample), in (0, 1).
        alpha_overrides: Per path-prefix smoothing factors, longest prefix wins.
        default_estimate_ms: Estimate returned for keys without history.
        min_sample_ms: Floor applied to every observed duration.
        progress_ceiling_ms: ETA at or above which progress shows the minimum.
        min_progress: Lowest progress percentage reported while busy.
    """

    alpha: float = 0.15
    alpha_overrides: dict[str, float] = field(default_factory=dict)
    default_estimate_ms: float = 3000.0
    min_sample_ms: float = 2.0
    progress_ceiling_ms: float = 10000.0
    min_progress: int = 10

    def __post_init__(self) -> None:
        """Validate smoothing factors."""
        for value in (self.alpha, *self.alpha_overrides.values()):
            if not 0.0 < value < 1.0:
                raise ValueError(f"Smoothing factor must be in (0, 1), got {value}")

    def alpha_for(self, key: str) -> float:
        """Return the smoothing factor for a normalized key."""
        best = ""
        for prefix in self.alpha_overrides:
            if key.startswith(prefix) and len(prefix) > len(best):
                best = prefix
        return self.alpha_overrides[best] if best else self.alpha
