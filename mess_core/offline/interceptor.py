# =============================================================================
# mess_core/offline/interceptor.py
# Request routing in front of the cache policies
# =============================================================================
"""
Every client request passes through RequestInterceptor.handle():

    non-GET or cross-origin  -> network, never cached
    API prefix               -> ResponseCache.handle_data
    static asset / page      -> ResponseCache.handle_static
    anything else            -> ResponseCache.handle_runtime

InterceptingTransport plugs the interceptor into an httpx.AsyncClient so
application code keeps using the client as usual.
"""

from __future__ import annotations
from enum import Enum
from typing import Optional
import logging

import httpx

from mess_core.config import OfflineSettings
from mess_core.offline.cache_manager import ResponseCache
from mess_core.offline.network import Fetch

logger = logging.getLogger(__name__)

STATIC_PATH_MARKERS = ("/css/", "/js/", "/icons/", "/images/")


class Route(Enum):
    """Cache policy selected for a request."""
    PASSTHROUGH = "passthrough"
    DATA = "data"
    STATIC = "static"
    RUNTIME = "runtime"


class RequestInterceptor:
    """Pure routing over the ResponseCache; holds no state of its own."""

    def __init__(self, cache: ResponseCache, fetch: Fetch, settings: Optional[OfflineSettings] = None):
        self.cache = cache
        self.settings = settings or cache.settings
        self._fetch = fetch

    def classify(self, request: httpx.Request) -> Route:
        if request.method.upper() != "GET":
            return Route.PASSTHROUGH
        if not self._same_origin(request.url):
            return Route.PASSTHROUGH

        path = request.url.path
        if any(path.startswith(prefix) for prefix in self.settings.api_cache_urls):
            return Route.DATA
        if path in self.settings.static_urls or any(m in path for m in STATIC_PATH_MARKERS):
            return Route.STATIC
        return Route.RUNTIME

    async def handle(self, request: httpx.Request) -> httpx.Response:
        route = self.classify(request)
        logger.debug(f"{request.method} {request.url} -> {route.value}")

        if route == Route.PASSTHROUGH:
            return await self._fetch(request)
        if route == Route.DATA:
            return await self.cache.handle_data(request)
        if route == Route.STATIC:
            return await self.cache.handle_static(request)
        return await self.cache.handle_runtime(request)

    def _same_origin(self, url: httpx.URL) -> bool:
        base = httpx.URL(self.settings.api_base_url)
        return (url.scheme, url.host, url.port) == (base.scheme, base.host, base.port)


class InterceptingTransport(httpx.AsyncBaseTransport):
    """httpx transport that routes every request through a RequestInterceptor."""

    def __init__(self, interceptor: RequestInterceptor, inner: Optional[httpx.AsyncBaseTransport] = None):
        self.interceptor = interceptor
        self._inner = inner

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        return await self.interceptor.handle(request)

    async def aclose(self) -> None:
        if self._inner is not None:
            await self._inner.aclose()
