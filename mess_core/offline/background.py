# =============================================================================
# mess_core/offline/background.py
# Background sync context (service-worker equivalent)
# =============================================================================
"""
BackgroundSyncWorker - an independently scheduled sync context.

The worker shares nothing in memory with the foreground: it opens its own
LocalQueue, SyncEngine and ResponseCache over the same durable store and
talks to the foreground only through messages.

Inbox (foreground -> worker):
    {"type": "SYNC", "tag": "meal-sync"}
    {"type": "PERIODIC_SYNC", "tag": "data-refresh"}
    {"type": "CACHE_URLS", "urls": ["/meals", ...]}

Outbox (worker -> listener):
    {"type": "SYNC_COMPLETE", "data": <SyncSummary.to_dict()>}
    {"type": "OFFLINE_QUEUE_UPDATED", "data": {"total": n}}
    {"type": "CACHE_UPDATED", "data": {"cache": name, "count": n}}
"""

from __future__ import annotations
import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set
import logging

import httpx

from mess_core.config import OfflineSettings
from mess_core.errors import CacheInstallError
from mess_core.offline.cache_manager import CacheStorage, ResponseCache
from mess_core.offline.local_database import LocalDatabase, get_local_database
from mess_core.offline.local_queue import Category, LocalQueue
from mess_core.offline.network import NetworkFetcher
from mess_core.offline.sync_engine import SyncEngine

logger = logging.getLogger(__name__)

DATA_REFRESH_TAG = "data-refresh"

Listener = Callable[[Dict[str, Any]], Any]


class BackgroundSyncWorker:
    """
    Runs sync batches and cache jobs on request.

    Usage:
        worker = BackgroundSyncWorker(settings, listener=on_worker_message)
        await worker.start()
        worker.post_message({"type": "SYNC", "tag": "meal-sync"})
        await worker.join()
        await worker.stop()
    """

    def __init__(
        self,
        settings: Optional[OfflineSettings] = None,
        database: Optional[LocalDatabase] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        listener: Optional[Listener] = None,
        token_provider: Optional[Callable[[], Any]] = None,
    ):
        self.settings = settings or OfflineSettings()
        self._db = database or get_local_database(self.settings.db_path)
        self._listener = listener
        self._token_provider = token_provider

        self.queue = LocalQueue(self._db)
        self.engine = SyncEngine(
            self.queue,
            settings=self.settings,
            transport=transport,
            token_provider=token_provider,
        )
        self._fetcher = NetworkFetcher(transport, timeout=self.settings.request_timeout)
        self.cache = ResponseCache(CacheStorage(self._db), self._fetcher, self.settings)

        self._inbox: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def set_listener(self, listener: Optional[Listener]) -> None:
        self._listener = listener

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, install: bool = True) -> None:
        """Open caches, optionally precache, drop stale caches, start the loop."""
        if self.is_running:
            return

        await self.queue.load()
        await self.cache.open()

        if install:
            try:
                await self.cache.install()
            except CacheInstallError as e:
                logger.error(f"Precache failed: {e}")

        removed = await self.cache.activate()
        if removed:
            logger.info(f"Removed {len(removed)} old cache(s)")

        self._inbox = asyncio.Queue()
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info("Background sync worker started")

    async def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        await self.cache.drain()
        await self.engine.aclose()
        await self._fetcher.aclose()
        logger.info("Background sync worker stopped")

    def post_message(self, message: Dict[str, Any]) -> None:
        """Deliver a message to the worker (non-blocking)."""
        if self._inbox is None:
            raise RuntimeError("Background worker is not started")
        self._inbox.put_nowait(message)

    async def join(self) -> None:
        """Wait until every posted message has been handled."""
        if self._inbox is not None:
            await self._inbox.join()

    # =========================================================================
    # MESSAGE LOOP
    # =========================================================================

    async def _run(self) -> None:
        while True:
            message = await self._inbox.get()
            if message.get("type") == "SYNC":
                tags, deferred = self._coalesce_sync(message)
                await self._process(self._handle_sync(tags), "SYNC", count=len(tags))
            else:
                deferred = [message]
            for other in deferred:
                await self._process(self._dispatch(other), other.get("type"))

    async def _process(self, job, label: str, count: int = 1) -> None:
        try:
            await job
        except Exception as e:
            logger.error(f"Background worker failed on {label}: {e}", exc_info=True)
        finally:
            for _ in range(count):
                self._inbox.task_done()

    def _coalesce_sync(self, first: Dict[str, Any]):
        """Fold every SYNC message already waiting into one batch."""
        tags: List[str] = [first.get("tag", "")]
        deferred: List[Dict[str, Any]] = []
        while True:
            try:
                message = self._inbox.get_nowait()
            except asyncio.QueueEmpty:
                break
            if message.get("type") == "SYNC":
                tags.append(message.get("tag", ""))
            else:
                deferred.append(message)
        return tags, deferred

    async def _dispatch(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")

        if message_type == "SYNC":
            await self._handle_sync([message.get("tag", "")])
        elif message_type == "PERIODIC_SYNC":
            if message.get("tag") == DATA_REFRESH_TAG:
                await self._refresh_data()
            else:
                logger.warning(f"Unknown periodic sync tag: {message.get('tag')}")
        elif message_type == "CACHE_URLS":
            await self._cache_urls(message.get("urls", []))
        else:
            logger.warning(f"Unknown worker message: {message_type}")

    async def _handle_sync(self, tags: List[str]) -> None:
        categories: Set[Category] = set()
        for tag in tags:
            if tag == DATA_REFRESH_TAG:
                await self._refresh_data()
                continue
            category = Category.from_tag(tag)
            if category is None:
                logger.warning(f"Unknown sync tag: {tag}")
            else:
                categories.add(category)

        if not categories:
            return

        ordered = [c for c in Category if c in categories]
        summary = await self.engine.run_batch(ordered, reason="background")
        await self._emit("SYNC_COMPLETE", summary.to_dict())
        await self._emit("OFFLINE_QUEUE_UPDATED", {"total": await self._pending_total()})

    async def _refresh_data(self) -> None:
        token = await self._current_token()
        refreshed = await self.cache.refresh_data(token)
        if refreshed:
            await self._emit("CACHE_UPDATED", {"cache": self.cache.data.name, "count": refreshed})

    async def _cache_urls(self, urls: List[str]) -> None:
        try:
            count = await self.cache.cache_urls(urls)
        except CacheInstallError as e:
            logger.error(f"CACHE_URLS failed: {e}")
            return
        await self._emit("CACHE_UPDATED", {"cache": self.cache.static.name, "count": count})

    async def _current_token(self) -> str:
        if self._token_provider is None:
            return self.settings.auth_token
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return token or self.settings.auth_token

    async def _pending_total(self) -> int:
        counts = await asyncio.gather(
            *(asyncio.to_thread(self._db.count_queue_items, c.partition) for c in Category)
        )
        return sum(counts)

    async def _emit(self, message_type: str, data: Dict[str, Any]) -> None:
        if self._listener is None:
            return
        try:
            result = self._listener({"type": message_type, "data": data})
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in worker listener: {e}")
