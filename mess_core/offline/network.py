# =============================================================================
# mess_core/offline/network.py
# Network fetch primitive shared by the cache layer and the interceptor
# =============================================================================

from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, Optional
import logging

import httpx

logger = logging.getLogger(__name__)

Fetch = Callable[[httpx.Request], Awaitable[httpx.Response]]


def is_document_request(request: httpx.Request) -> bool:
    """True for page navigations (HTML documents)."""
    if request.headers.get("sec-fetch-dest", "").lower() == "document":
        return True
    return request.headers.get("accept", "").lower().startswith("text/html")


class NetworkFetcher:
    """
    Sends a request over the real transport with a bounded timeout.

    The response body is read fully so it can be both returned and cached.
    A timeout surfaces as httpx.TimeoutException, like any other network error.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None, timeout: float = 15.0):
        self._transport = transport or httpx.AsyncHTTPTransport()
        self.timeout = timeout

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        request.extensions.setdefault("timeout", httpx.Timeout(self.timeout).as_dict())
        try:
            response = await asyncio.wait_for(self._send(request), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise httpx.ReadTimeout(
                f"No response within {self.timeout}s", request=request
            ) from e
        return response

    async def _send(self, request: httpx.Request) -> httpx.Response:
        response = await self._transport.handle_async_request(request)
        try:
            body = await response.aread()
        finally:
            await response.aclose()

        # Body is decoded now; drop headers describing the wire encoding
        headers = [
            (name, value)
            for name, value in response.headers.multi_items()
            if name.lower() not in ("content-encoding", "content-length", "transfer-encoding")
        ]
        return httpx.Response(
            status_code=response.status_code,
            headers=headers,
            content=body,
            request=request,
        )

    async def aclose(self) -> None:
        await self._transport.aclose()
