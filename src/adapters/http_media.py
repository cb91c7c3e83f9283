"""HTTP media fetcher adapter.

Downloads campaign media from the content host with a bounded timeout.
"""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from core.errors import MediaFetchError

LOGGER = logging.getLogger(__name__)


class HttpMediaFetcher:
    """MediaFetcher backed by a shared httpx.AsyncClient."""

    def __init__(
        self,
        timeout_seconds: float,
        max_bytes: Optional[int] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._timeout = timeout_seconds
        self._max_bytes = max_bytes
        self._http_client = http_client

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(timeout=self._timeout, follow_redirects=True)
        return self._http_client

    async def fetch(self, url: str) -> bytes:
        try:
            response = await self._client().get(url)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise MediaFetchError(f"Timed out after {self._timeout}s downloading {url}") from exc
        except httpx.HTTPStatusError as exc:
            raise MediaFetchError(f"HTTP {exc.response.status_code} downloading {url}") from exc
        except httpx.HTTPError as exc:
            raise MediaFetchError(f"Could not download {url}: {exc}") from exc

        content = response.content
        if self._max_bytes is not None and len(content) > self._max_bytes:
            raise MediaFetchError(f"Media at {url} is {len(content)} bytes (limit {self._max_bytes})")
        LOGGER.info("Downloaded %s bytes from %s", len(content), url)
        return content

    async def close(self) -> None:
        if self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None
