"""Cached fetcher for external script sources referenced by captured pages."""

import logging
from typing import Dict, Optional

import httpx


logger = logging.getLogger(__name__)


FETCH_FAILED_PLACEHOLDER = "/* Fetch failed */"


class ScriptFetcher:
    """Fetches script sources over HTTP, caching them by URL.

    The cache is unbounded for the lifetime of a session; call :meth:`clear`
    periodically to release it.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0
    ):
        self._client = client
        self._owns_client = client is None
        self.timeout_seconds = timeout_seconds
        self._cache: Dict[str, str] = {}

        self._stats = {
            "hits": 0,
            "fetched": 0,
            "failed": 0,
            "clears": 0,
        }

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout=self.timeout_seconds, connect=5.0),
                follow_redirects=True,
                limits=httpx.Limits(max_connections=10, max_keepalive_connections=5)
            )
        return self._client

    async def fetch(self, url: str) -> Optional[str]:
        """Get the source of one script.

        Args:
            url: Absolute script URL

        Returns:
            Script source, or None if it could not be fetched
        """
        if url in self._cache:
            self._stats["hits"] += 1
            return self._cache[url]

        client = self._ensure_client()
        try:
            response = await client.get(url)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            self._stats["failed"] += 1
            logger.warning(f"Failed to fetch script {url}: HTTP {e.response.status_code}")
            return None
        except httpx.HTTPError as e:
            self._stats["failed"] += 1
            logger.warning(f"Failed to fetch script {url}: {e}")
            return None

        content = response.text
        self._cache[url] = content
        self._stats["fetched"] += 1
        return content

    def clear(self) -> None:
        """Drop every cached script."""
        if self._cache:
            logger.debug(f"Clearing {len(self._cache)} cached scripts")
        self._cache.clear()
        self._stats["clears"] += 1

    @property
    def cached(self) -> int:
        return len(self._cache)

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def get_stats(self) -> Dict[str, int]:
        return {"cached": len(self._cache), **self._stats}
