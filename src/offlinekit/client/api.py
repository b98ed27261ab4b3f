"""HTTP client for the remote preferences and journey API.

This module provides:
- PreferencesClient: Async HTTP client for the remote authority
- RemotePreferences: Journey preferences as the server returns them
- APIError and subclasses: Errors raised on non-2xx responses

Every request goes through the transport passed at construction, so the
context object can stack the cache manager and the activity tracker in front
of the network.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from offlinekit.core.config import ClientConfig
from offlinekit.core.errors import NetworkFailure, SyncFailure

logger = logging.getLogger(__name__)


class APIError(SyncFailure):
    """Base exception for API errors."""


class AuthenticationError(APIError):
    """Authentication failed."""


class NotFoundError(APIError):
    """Resource not found."""


class OfflineError(APIError):
    """The cache layer answered with its offline payload."""


@dataclass
class RemotePreferences:
    """Journey preferences stored on the server."""

    path_id: str | None = None
    experience_level: str | None = None
    goals: list[str] = field(default_factory=list)
    onboarding_completed: bool = False
    onboarding_completed_at: str | None = None
    last_path_change: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RemotePreferences:
        """Create from API response dictionary."""
        return cls(
            path_id=data.get("pathId"),
            experience_level=data.get("experienceLevel"),
            goals=list(data.get("goals") or []),
            onboarding_completed=bool(data.get("onboardingCompleted", False)),
            onboarding_completed_at=data.get("onboardingCompletedAt"),
            last_path_change=data.get("lastPathChange"),
        )


class PreferencesClient:
    """Async HTTP client for the remote authority."""

    def __init__(
        self,
        config: ClientConfig,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            config: Client configuration with URL, token, and settings.
            transport: Transport to send requests through (default: network).
        """
        self._config = config
        headers = {"Content-Type": "application/json"}
        if config.token:
            headers["Authorization"] = f"Bearer {config.token}"
        self._client = httpx.AsyncClient(
            base_url=config.api_url,
            timeout=config.timeout,
            headers=headers,
            verify=config.verify_ssl,
            transport=transport,
        )

    @property
    def config(self) -> ClientConfig:
        """Get the client configuration."""
        return self._config

    def set_token(self, token: str | None) -> None:
        """Swap the bearer token after login or logout."""
        self._config.token = token
        if token:
            self._client.headers["Authorization"] = f"Bearer {token}"
        else:
            self._client.headers.pop("Authorization", None)

    async def aclose(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> PreferencesClient:
        """Async context manager entry."""
        return self

    async def __aexit__(self, *args: object) -> None:
        """Async context manager exit."""
        await self.aclose()

    def _handle_response(self, response: httpx.Response) -> httpx.Response:
        """Handle API response and raise appropriate exceptions."""
        if response.status_code == 401:
            raise AuthenticationError("Invalid or expired token", 401)
        if response.status_code == 404:
            raise NotFoundError("Resource not found", 404)
        if response.status_code >= 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if response.status_code == 503 and body.get("error") == "offline":
                raise OfflineError(body.get("message", "Offline"), 503)
            detail = body.get("detail") or body.get("message") or "Unknown error"
            raise APIError(detail, response.status_code)
        return response

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            raise NetworkFailure(f"{method} {url} failed: {e}") from e
        return self._handle_response(response)

    # === Health check ===

    async def health_check(self) -> bool:
        """Check if the server is reachable and healthy."""
        try:
            response = await self._client.get("/api/health")
            return response.status_code == 200
        except httpx.TransportError:
            return False

    # === Preferences ===

    async def get_preferences(self) -> RemotePreferences:
        """Fetch the signed-in user's journey preferences."""
        response = await self._request("GET", "/api/auth/preferences")
        return RemotePreferences.from_dict(response.json())

    async def update_preferences(self, preferences: dict[str, Any]) -> None:
        """Replace the signed-in user's journey preferences."""
        await self._request("PUT", "/api/auth/preferences", json=preferences)

    # === Journey ===

    async def get_next_action(self, context: dict[str, Any]) -> dict[str, Any]:
        """Ask the server for the recommended next step of the journey."""
        response = await self._request("POST", "/api/journey/next-action", json=context)
        return dict(response.json())

    # === Bookmarks and progress ===

    async def save_bookmark(self, bookmark: dict[str, Any]) -> None:
        """Create or update a bookmark on the server."""
        await self._request("POST", "/api/bookmarks", json=bookmark)

    async def delete_bookmark(self, bookmark_id: str) -> None:
        """Delete a bookmark on the server."""
        await self._request("DELETE", f"/api/bookmarks/{bookmark_id}")

    async def toggle_progress(
        self, topic_slug: str, section_slug: str, completed: bool
    ) -> None:
        """Mark a section as completed or not on the server."""
        await self._request(
            "POST",
            "/api/progress/toggle",
            json={
                "topicSlug": topic_slug,
                "sectionSlug": section_slug,
                "completed": completed,
            },
        )
