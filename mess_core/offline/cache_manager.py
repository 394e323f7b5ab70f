# =============================================================================
# mess_core/offline/cache_manager.py
# Three-tier response cache fronting the network
# =============================================================================
"""
Response cache for GET requests, split into three named partitions:

    mess-manager-v1          static assets and allow-listed pages (cache-first)
    mess-manager-data-v1     API reads (fresh-cache, then network, then stale cache)
    mess-manager-runtime-v1  everything else same-origin (cache, revalidate behind)

Only 2xx responses are stored. Stores run as background tasks so the caller
gets its response without waiting on the disk write.
"""

from __future__ import annotations
import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import urljoin
import logging

import httpx

from mess_core.config import OfflineSettings
from mess_core.errors import CacheInstallError, NetworkUnavailableError
from mess_core.offline.local_database import LocalDatabase
from mess_core.offline.network import Fetch, is_document_request

logger = logging.getLogger(__name__)

CACHE_TIME_HEADER = "x-cache-time"
CACHE_STATUS_HEADER = "x-cache"


def request_key(request: Union[httpx.Request, str]) -> str:
    """Cache identity: method + absolute URL (GET only)."""
    url = str(request.url) if isinstance(request, httpx.Request) else str(httpx.URL(request))
    return f"GET {url}"


@dataclass
class CacheEntry:
    """A stored response."""
    url: str
    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    cached_at: float = 0.0

    def age(self, now: float) -> float:
        """Seconds since the entry was stamped."""
        return now - self.cached_at

    def to_response(
        self,
        request: Optional[httpx.Request] = None,
        cache_status: str = "hit",
    ) -> httpx.Response:
        headers = [(k, v) for k, v in self.headers if k.lower() != CACHE_STATUS_HEADER]
        headers.append((CACHE_STATUS_HEADER, cache_status))
        return httpx.Response(
            status_code=self.status_code,
            headers=headers,
            content=self.body,
            request=request or httpx.Request("GET", self.url),
        )

    @classmethod
    def from_response(cls, response: httpx.Response, cached_at: float) -> CacheEntry:
        headers = [
            (k, v) for k, v in response.headers.multi_items()
            if k.lower() not in ("content-length", CACHE_TIME_HEADER, CACHE_STATUS_HEADER)
        ]
        headers.append((CACHE_TIME_HEADER, str(int(cached_at * 1000))))
        return cls(
            url=str(response.request.url),
            status_code=response.status_code,
            headers=headers,
            body=response.content,
            cached_at=cached_at,
        )

    def to_row(self) -> Dict:
        return {
            "request_key": request_key(self.url),
            "url": self.url,
            "status_code": self.status_code,
            "headers_json": json.dumps(self.headers),
            "body": self.body,
            "cached_at": self.cached_at,
        }

    @classmethod
    def from_row(cls, row: Dict) -> CacheEntry:
        return cls(
            url=row["url"],
            status_code=row["status_code"],
            headers=[tuple(h) for h in json.loads(row["headers_json"] or "[]")],
            body=row["body"] or b"",
            cached_at=row["cached_at"],
        )


class CachePartition:
    """One named, independently clearable cache."""

    def __init__(self, database: LocalDatabase, name: str, clock: Callable[[], float] = time.time):
        self._db = database
        self.name = name
        self._clock = clock

    async def match(self, request: Union[httpx.Request, str]) -> Optional[CacheEntry]:
        row = await asyncio.to_thread(self._db.cache_match, self.name, request_key(request))
        return CacheEntry.from_row(row) if row else None

    async def put(self, response: httpx.Response, cached_at: Optional[float] = None) -> CacheEntry:
        """Store a response under its request's identity."""
        entry = CacheEntry.from_response(response, self._clock() if cached_at is None else cached_at)
        row = entry.to_row()
        await asyncio.to_thread(
            self._db.cache_put,
            self.name,
            row["request_key"],
            row["url"],
            row["status_code"],
            row["headers_json"],
            row["body"],
            row["cached_at"],
        )
        return entry

    async def put_many(self, responses: Iterable[httpx.Response]) -> int:
        """Store several responses in one transaction."""
        now = self._clock()
        rows = [CacheEntry.from_response(r, now).to_row() for r in responses]
        await asyncio.to_thread(self._db.cache_put_many, self.name, rows)
        return len(rows)

    async def delete(self, request: Union[httpx.Request, str]) -> bool:
        return await asyncio.to_thread(self._db.cache_delete, self.name, request_key(request))

    async def keys(self) -> List[str]:
        return await asyncio.to_thread(self._db.cache_keys, self.name)

    async def clear(self) -> int:
        return await asyncio.to_thread(self._db.cache_clear, self.name)


class CacheStorage:
    """Name-addressed collection of cache partitions."""

    def __init__(self, database: LocalDatabase, clock: Callable[[], float] = time.time):
        self._db = database
        self._clock = clock

    async def open(self, name: str) -> CachePartition:
        await asyncio.to_thread(self._db.initialize)
        await asyncio.to_thread(self._db.cache_open, name)
        return CachePartition(self._db, name, self._clock)

    async def keys(self) -> List[str]:
        return await asyncio.to_thread(self._db.cache_names)

    async def delete(self, name: str) -> bool:
        return await asyncio.to_thread(self._db.cache_drop, name)

    async def match(self, request: Union[httpx.Request, str]) -> Optional[CacheEntry]:
        """Look a request up across every partition."""
        for name in await self.keys():
            entry = await CachePartition(self._db, name, self._clock).match(request)
            if entry is not None:
                return entry
        return None


class ResponseCache:
    """
    Cache policies over the three partitions.

    Usage:
        cache = ResponseCache(CacheStorage(db), fetch, settings)
        await cache.open()
        response = await cache.handle_data(request)
    """

    def __init__(
        self,
        storage: CacheStorage,
        fetch: Fetch,
        settings: Optional[OfflineSettings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.storage = storage
        self.settings = settings or OfflineSettings()
        self._fetch = fetch
        self._clock = clock
        self._background: Set[asyncio.Task] = set()
        self.static: Optional[CachePartition] = None
        self.runtime: Optional[CachePartition] = None
        self.data: Optional[CachePartition] = None

    async def open(self) -> ResponseCache:
        """Open (create) the three current partitions."""
        self.static = await self.storage.open(self.settings.static_cache_name)
        self.runtime = await self.storage.open(self.settings.runtime_cache_name)
        self.data = await self.storage.open(self.settings.data_cache_name)
        return self

    def absolute_url(self, url: str) -> str:
        return urljoin(self.settings.origin + "/", url)

    # =========================================================================
    # POLICIES
    # =========================================================================

    async def handle_static(self, request: httpx.Request) -> httpx.Response:
        """Cache-first; offline page or synthetic 503 when the network fails."""
        cached = await self.static.match(request)
        if cached is not None:
            return cached.to_response(request)

        try:
            response = await self._fetch(request)
        except httpx.RequestError as e:
            logger.debug(f"Static fetch failed for {request.url}: {e}")
            return await self._offline_fallback(request, cause=str(e))

        if response.is_success:
            self._store_in_background(self.static, response)
            return response

        if is_document_request(request):
            offline = await self._offline_page(request)
            return offline if offline is not None else response
        return self._unavailable(request)

    async def handle_data(self, request: httpx.Request) -> httpx.Response:
        """Fresh cache, else network (stamped on store), else stale cache."""
        cached = await self.data.match(request)
        if cached is not None and cached.age(self._clock()) < self.settings.data_freshness_seconds:
            return cached.to_response(request)

        try:
            response = await self._fetch(request)
        except httpx.RequestError as e:
            if cached is not None:
                logger.debug(f"Serving stale {request.url}: {e}")
                return cached.to_response(request, cache_status="stale")
            raise NetworkUnavailableError(
                "Network unavailable and no cached data",
                url=str(request.url),
                cause=str(e),
            ) from e

        if response.is_success:
            self._store_in_background(self.data, response, cached_at=self._clock())
            return response

        if cached is not None:
            return cached.to_response(request, cache_status="stale")
        return response

    async def handle_runtime(self, request: httpx.Request) -> httpx.Response:
        """Serve cached immediately and refresh behind; otherwise network."""
        cached = await self.runtime.match(request)
        if cached is not None:
            self._spawn(self._revalidate(request))
            return cached.to_response(request)

        try:
            response = await self._fetch(request)
        except httpx.RequestError as e:
            cached = await self.runtime.match(request)
            if cached is not None:
                return cached.to_response(request, cache_status="stale")
            raise NetworkUnavailableError(
                "Network unavailable and nothing cached",
                url=str(request.url),
                cause=str(e),
            ) from e

        if response.is_success:
            self._store_in_background(self.runtime, response)
        return response

    async def _revalidate(self, request: httpx.Request) -> None:
        fresh = httpx.Request("GET", request.url, headers=request.headers)
        try:
            response = await self._fetch(fresh)
        except httpx.RequestError as e:
            logger.debug(f"Background refresh failed for {request.url}: {e}")
            return
        if response.is_success:
            await self.runtime.put(response)

    async def _offline_fallback(self, request: httpx.Request, cause: str) -> httpx.Response:
        if not is_document_request(request):
            return self._unavailable(request)

        offline = await self._offline_page(request)
        if offline is None:
            raise NetworkUnavailableError(
                "Network unavailable and no offline page cached",
                url=str(request.url),
                cause=cause,
            )
        return offline

    async def _offline_page(self, request: httpx.Request) -> Optional[httpx.Response]:
        entry = await self.storage.match(self.absolute_url(self.settings.offline_page))
        return entry.to_response(request, cache_status="offline") if entry else None

    @staticmethod
    def _unavailable(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="Offline", request=request)

    # =========================================================================
    # BACKGROUND STORES
    # =========================================================================

    def _store_in_background(
        self,
        partition: CachePartition,
        response: httpx.Response,
        cached_at: Optional[float] = None,
    ) -> None:
        self._spawn(partition.put(response, cached_at))

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background cache write failed: {task.exception()}")

    async def drain(self) -> None:
        """Wait for outstanding background stores."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def install(self) -> int:
        """Precache the static allow-list (all or nothing)."""
        return await self.cache_urls(self.settings.static_urls)

    async def cache_urls(self, urls: List[str]) -> int:
        """
        Fetch and store a URL list in the static partition.

        Raises:
            CacheInstallError: any URL failed; nothing is stored.
        """
        requests = [httpx.Request("GET", self.absolute_url(url)) for url in urls]
        results = await asyncio.gather(
            *(self._fetch(r) for r in requests), return_exceptions=True
        )

        failed = []
        for url, result in zip(urls, results):
            if isinstance(result, httpx.RequestError):
                failed.append(url)
            elif isinstance(result, BaseException):
                raise result
            elif not result.is_success:
                failed.append(url)

        if failed:
            raise CacheInstallError(
                f"Failed to cache {len(failed)} of {len(urls)} URL(s)",
                cache_name=self.static.name,
                failed_urls=failed,
            )

        stored = await self.static.put_many(results)
        logger.info(f"Cached {stored} static URL(s) in {self.static.name}")
        return stored

    async def activate(self) -> List[str]:
        """Delete partitions from previous cache versions."""
        current = {
            self.settings.static_cache_name,
            self.settings.runtime_cache_name,
            self.settings.data_cache_name,
        }
        removed = []
        for name in await self.storage.keys():
            if name not in current:
                await self.storage.delete(name)
                removed.append(name)
                logger.info(f"Deleted old cache: {name}")
        return removed

    async def refresh_data(self, token: str = "") -> int:
        """
        Re-fetch every cached API read and stamp it fresh.

        Failures are logged and skipped.

        Returns:
            Number of entries refreshed
        """
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"

        async def refresh_one(url: str) -> bool:
            request = httpx.Request("GET", self.absolute_url(url), headers=headers)
            try:
                response = await self._fetch(request)
            except httpx.RequestError as e:
                logger.debug(f"Failed to refresh {url}: {e}")
                return False
            if not response.is_success:
                logger.debug(f"Failed to refresh {url}: HTTP {response.status_code}")
                return False
            await self.data.put(response, cached_at=self._clock())
            return True

        results = await asyncio.gather(*(refresh_one(url) for url in self.settings.api_cache_urls))
        return sum(results)
