# =============================================================================
# tests/conftest.py
# Pytest Configuration and Fixtures
# =============================================================================

import asyncio
import inspect
import json
import pytest
import httpx
from typing import Callable, Dict, List, Tuple, Union
from unittest.mock import MagicMock

from mess_core.config import OfflineSettings
from mess_core.offline.local_database import LocalDatabase
from mess_core.offline.local_queue import LocalQueue


# =============================================================================
# FAKE SERVER
# =============================================================================

Handler = Callable[[httpx.Request], httpx.Response]


class FakeServer:
    """
    In-process stand-in for the Mess Manager API, served via httpx.MockTransport.

    Routes are keyed by (method, path). A route is an int status, an
    httpx.Response, or a callable (plain or async) taking the request.
    Unrouted GETs answer 200 with a small HTML body; unrouted POSTs
    answer 201.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.routes: Dict[Tuple[str, str], Union[int, httpx.Response, Handler]] = {}
        self.offline = False
        self.delay = 0.0

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def route(self, method: str, path: str, response: Union[int, httpx.Response, Handler]) -> None:
        self.routes[(method.upper(), path)] = response

    async def handle(self, request: httpx.Request) -> httpx.Response:
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.offline:
            raise httpx.ConnectError("Network is unreachable", request=request)

        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))

        if callable(route):
            response = route(request)
            if inspect.isawaitable(response):
                response = await response
            return response
        if isinstance(route, httpx.Response):
            return route
        if isinstance(route, int):
            return httpx.Response(route, json={"success": 200 <= route < 300})
        if request.method == "GET":
            return httpx.Response(
                200,
                text=f"<html>{request.url.path}</html>",
                headers={"Content-Type": "text/html"},
            )
        return httpx.Response(201, json={"success": True})

    def received(self, method: str, path: str) -> List[httpx.Request]:
        return [
            r for r in self.requests
            if r.method == method.upper() and r.url.path == path
        ]

    def posted(self, path: str) -> List[dict]:
        """JSON bodies POSTed to a path."""
        return [json.loads(r.content) for r in self.received("POST", path)]


class FakeClock:
    """Settable time source for freshness checks."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


# =============================================================================
# CORE FIXTURES
# =============================================================================

@pytest.fixture
def settings(tmp_path):
    """Settings pointing at a throwaway database, no debounce"""
    return OfflineSettings(
        api_base_url="http://mess.test",
        db_path=tmp_path / "offline.db",
        auth_token="test-token",
        online_debounce=0.0,
        request_timeout=2.0,
    )


@pytest.fixture
def database(settings):
    """Initialized LocalDatabase, closed after the test"""
    db = LocalDatabase(settings.db_path)
    db.initialize()
    yield db
    db.close()


@pytest.fixture
def queue(database):
    return LocalQueue(database)


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
def clock():
    return FakeClock()


# =============================================================================
# MOCK FIXTURES
# =============================================================================

@pytest.fixture
def mock_streamlit(monkeypatch):
    """Mock Streamlit in the modules that render or report errors"""
    import mess_core.errors.handlers as handlers
    import mess_core.ui.offline_status as offline_status

    mock_st = MagicMock()
    mock_st.session_state = {}
    mock_st.cache_data = lambda f: f
    mock_st.cache_resource = lambda f: f

    monkeypatch.setattr(handlers, "st", mock_st)
    monkeypatch.setattr(offline_status, "st", mock_st)

    yield mock_st
