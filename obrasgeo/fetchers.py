"""
Async resource fetchers.

A fetcher is any awaitable callable ``fetch(key) -> bytes``. The cache only
needs the raw document; parsing and validation happen in the cache.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Mapping, Optional

import httpx

from .errors import FetchError, FetchTimeout

__all__ = ["Fetcher", "HttpFetcher", "FileFetcher"]

logger = logging.getLogger(__name__)

Fetcher = Callable[[str], Awaitable[bytes]]


class HttpFetcher:
    """Fetch resource keys relative to a base URL with ``httpx``."""

    def __init__(
        self,
        base_url: str,
        *,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Mapping[str, str]] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self._client = client
        self._headers = {"User-Agent": "obrasgeo", **(headers or {})}

    def url_for(self, key: str) -> str:
        if "://" in key or not self.base_url:
            return key
        return f"{self.base_url}/{key.lstrip('/')}"

    async def __call__(self, key: str) -> bytes:
        url = self.url_for(key)
        try:
            if self._client is not None:
                resp = await self._client.get(url, headers=self._headers)
            else:
                # The cache enforces the deadline; no client-side timeout here.
                async with httpx.AsyncClient(timeout=None) as client:
                    resp = await client.get(url, headers=self._headers)
        except httpx.TimeoutException as e:
            raise FetchTimeout(f"Timed out fetching {url}", key=key) from e
        except httpx.HTTPError as e:
            raise FetchError(f"Request for {url} failed: {e}", key=key) from e

        if resp.status_code != 200:
            raise FetchError(
                f"HTTP {resp.status_code} fetching {url}: {resp.reason_phrase}", key=key
            )
        logger.debug("fetchers.http_ok url=%s bytes=%d", url, len(resp.content))
        return resp.content

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class FileFetcher:
    """Fetch resource keys as files below a local root directory."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, key: str) -> Path:
        return self.root / key.lstrip("/")

    async def __call__(self, key: str) -> bytes:
        path = self.path_for(key)
        try:
            return await asyncio.to_thread(path.read_bytes)
        except OSError as e:
            raise FetchError(f"Cannot read {path}: {e}", key=key) from e
