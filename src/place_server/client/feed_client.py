"""
HTTP client for the place server read API.

Used by the client replica to seed itself with recent activity before the
live stream takes over, and by tooling that wants the feed, counters or a
shard buffer without touching the ledger.

    async with FeedClient("http://localhost:8000") as feed:
        recent = await feed.get_feed()
        stats = await feed.get_stats()
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass, field
from typing import Any

import httpx

from place_server.canvas.shard import ShardPixels

# =============================================================================
# CUSTOM EXCEPTIONS
# =============================================================================


@dataclass
class APIError(Exception):
    """
    Raised when a read API request fails.

    Attributes:
        message: Human-readable error message.
        status_code: HTTP status code, or 0 when the server was unreachable.
        detail: Additional detail from the server response, if available.
    """

    message: str
    status_code: int = 0
    detail: str = ""

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message}: {self.detail}"
        return self.message


# =============================================================================
# API CLIENT
# =============================================================================


@dataclass
class FeedClient:
    """
    Async client for ``/api/*`` on a place server.

    Attributes:
        base_url: Server root, e.g. ``http://localhost:8000``.
        timeout: Per-request timeout in seconds.
    """

    base_url: str
    timeout: float = 10.0

    _http_client: httpx.AsyncClient | None = field(default=None, repr=False)

    async def __aenter__(self) -> FeedClient:
        self._http_client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        if self._http_client:
            await self._http_client.aclose()
            self._http_client = None

    @property
    def http_client(self) -> httpx.AsyncClient:
        """
        Get the HTTP client, ensuring it's been initialized.

        Raises:
            RuntimeError: If accessed outside of async context manager.
        """
        if self._http_client is None:
            raise RuntimeError(
                "FeedClient must be used as an async context manager. "
                "Use 'async with FeedClient(url) as feed:'"
            )
        return self._http_client

    async def _get(self, path: str, failure: str, params: dict[str, Any] | None = None) -> Any:
        try:
            response = await self.http_client.get(path, params=params)
        except httpx.HTTPError as e:
            raise APIError(
                message=failure,
                status_code=0,
                detail=f"Cannot connect to server at {self.base_url}: {e}",
            ) from e

        try:
            data = response.json()
        except ValueError as e:
            raise APIError(
                message=failure,
                status_code=response.status_code,
                detail=f"Server returned invalid response (status {response.status_code})",
            ) from e

        if response.status_code != 200:
            detail = data.get("detail", "Server error") if isinstance(data, dict) else ""
            raise APIError(message=failure, status_code=response.status_code, detail=str(detail))
        return data

    # -------------------------------------------------------------------------
    # Endpoints
    # -------------------------------------------------------------------------

    async def get_feed(self) -> dict[str, list[dict[str, Any]]]:
        """Recent ``pixels`` and ``shards``, newest first."""
        return dict(await self._get("/api/feed", "Feed request failed"))

    async def get_stats(self) -> dict[str, int]:
        return dict(await self._get("/api/stats", "Stats request failed"))

    async def get_user(self, address: str) -> dict[str, int]:
        """Counters for one main wallet (zeros when never seen)."""
        return dict(await self._get("/api/user", "User request failed", {"address": address}))

    async def get_pixels(self) -> list[dict[str, Any]]:
        data = await self._get("/api/pixels", "Pixels request failed")
        return list(data["pixels"])

    async def get_shards(self) -> list[dict[str, Any]]:
        data = await self._get("/api/shards", "Shards request failed")
        return list(data["shards"])

    async def get_shard(self, shard_x: int, shard_y: int) -> ShardPixels | None:
        """
        Fetch one shard's pixel buffer from the index.

        Returns:
            The buffer, or None when the index has never seen the shard.

        Raises:
            APIError: For any other failure, including an undecodable buffer.
        """
        try:
            data = await self._get(f"/api/shards/{shard_x}/{shard_y}", "Shard request failed")
        except APIError as e:
            if e.status_code == 404:
                return None
            raise
        try:
            pixels = bytearray(base64.b64decode(data["pixels"], validate=True))
            return ShardPixels(shard_x, shard_y, pixels=pixels, creator=data.get("creator"))
        except (KeyError, binascii.Error, ValueError) as e:
            raise APIError(message="Shard request failed", detail=f"bad pixel buffer: {e}") from e
