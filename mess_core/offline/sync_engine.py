# =============================================================================
# mess_core/offline/sync_engine.py
# Drains the local queue against the server endpoints
# =============================================================================
"""
SyncEngine - reconciles the LocalQueue with the server.

Features:
- One POST per pending item, all items of a batch in flight concurrently
- Removes exactly the acknowledged item (by id) on 2xx
- Leaves failed items queued for the next trigger; no retry within a batch
- Never submits an item that is already in flight in a running batch
- One SyncSummary per batch, delivered to callbacks
- Optional hand-off to a background worker via named trigger tags
- Periodic trigger every `sync_interval` seconds while online
"""

from __future__ import annotations
import asyncio
import inspect
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set, Union
import logging

import httpx

from mess_core.config import OfflineSettings
from mess_core.errors import QueueStorageError
from mess_core.logging import LogContext
from mess_core.offline.local_queue import Category, LocalQueue, QueueItem

logger = logging.getLogger(__name__)

AUTH_FAILURE_STATUSES = (401, 419)

TokenProvider = Callable[[], Union[Optional[str], Awaitable[Optional[str]]]]
BackgroundChannel = Callable[[Dict[str, Any]], Any]


@dataclass
class ItemResult:
    """Outcome of submitting one queued item."""
    item_id: str
    category: Category
    success: bool
    status_code: Optional[int] = None
    error: Optional[str] = None

    @property
    def auth_failure(self) -> bool:
        return self.status_code in AUTH_FAILURE_STATUSES


@dataclass
class SyncSummary:
    """Aggregate result of one sync batch."""
    reason: str = "manual"
    succeeded: Dict[str, int] = field(default_factory=lambda: {c.partition: 0 for c in Category})
    failed: Dict[str, int] = field(default_factory=lambda: {c.partition: 0 for c in Category})
    failed_ids: Dict[str, List[str]] = field(default_factory=lambda: {c.partition: [] for c in Category})
    auth_failures: int = 0
    started_at: datetime = field(default_factory=datetime.now)
    finished_at: Optional[datetime] = None

    @property
    def success_count(self) -> int:
        return sum(self.succeeded.values())

    @property
    def failure_count(self) -> int:
        return sum(self.failed.values())

    @property
    def total(self) -> int:
        return self.success_count + self.failure_count

    def record(self, result: ItemResult) -> None:
        partition = result.category.partition
        if result.success:
            self.succeeded[partition] += 1
        else:
            self.failed[partition] += 1
            self.failed_ids[partition].append(result.item_id)
            if result.auth_failure:
                self.auth_failures += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reason": self.reason,
            "succeeded": dict(self.succeeded),
            "failed": dict(self.failed),
            "failed_ids": {k: list(v) for k, v in self.failed_ids.items()},
            "auth_failures": self.auth_failures,
            "success_count": self.success_count,
            "failure_count": self.failure_count,
            "total": self.total,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


class SyncEngine:
    """
    Submits queued mutations and removes them on acknowledgment.

    Usage:
        engine = SyncEngine(queue, connection_manager, settings=settings)
        connection_manager.set_sync_trigger(engine.trigger_sync)
        engine.register_callback(lambda summary: print(summary.total))
        await engine.trigger_sync("manual")
    """

    def __init__(
        self,
        queue: LocalQueue,
        connection_manager=None,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[OfflineSettings] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        token_provider: Optional[TokenProvider] = None,
        background_channel: Optional[BackgroundChannel] = None,
    ):
        """
        Args:
            queue: The LocalQueue to drain
            connection_manager: Source of online state; None means always online
            client: HTTP client; built from settings when omitted
            settings: OfflineSettings
            transport: Transport for the built client (tests use httpx.MockTransport)
            token_provider: Returns a fresh credential after a 401/419
            background_channel: Posts trigger messages to a background worker
                instead of syncing in this process
        """
        self.queue = queue
        self.connection_manager = connection_manager
        self.settings = settings or OfflineSettings()
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            transport=transport,
            timeout=self.settings.request_timeout,
        )
        self._token_provider = token_provider
        self._background_channel = background_channel

        self._in_flight: Set[str] = set()
        self._active_batches = 0
        self._callbacks: List[Callable[[SyncSummary], None]] = []
        self._periodic_task: Optional[asyncio.Task] = None
        self.last_summary: Optional[SyncSummary] = None
        self.last_sync: Optional[datetime] = None

    @property
    def is_syncing(self) -> bool:
        return self._active_batches > 0

    def _is_online(self) -> bool:
        return self.connection_manager is None or self.connection_manager.is_online

    # =========================================================================
    # TRIGGERS
    # =========================================================================

    async def trigger_sync(self, reason: str = "manual") -> Optional[SyncSummary]:
        """
        Start a sync batch. No-op while offline.

        With a background channel the batch is handed to the worker and
        this returns None; otherwise the batch runs here and its summary
        is returned.
        """
        if not self._is_online():
            logger.debug(f"Sync ({reason}) skipped: offline")
            return None

        if self._background_channel is not None:
            for category in Category:
                self._background_channel({"type": "SYNC", "tag": category.sync_tag})
            logger.debug(f"Sync ({reason}) handed to background worker")
            return None

        return await self.run_batch(reason=reason)

    async def run_batch(
        self,
        categories: Optional[Iterable[Union[str, Category]]] = None,
        reason: str = "manual",
    ) -> SyncSummary:
        """
        Drain the given categories (default: all) once.

        Never raises for item failures; they are counted in the summary.
        """
        selected = [Category.parse(c) for c in categories] if categories else list(Category)
        summary = SyncSummary(reason=reason)

        self._active_batches += 1
        try:
            async with LogContext(logger, f"Sync batch ({reason})"):
                per_category = await asyncio.gather(
                    *(self._sync_category(category) for category in selected)
                )
        finally:
            self._active_batches -= 1

        for results in per_category:
            for result in results:
                summary.record(result)

        summary.finished_at = datetime.now()
        self.last_summary = summary
        self.last_sync = summary.finished_at

        logger.info(
            f"Sync ({reason}): {summary.success_count} succeeded, "
            f"{summary.failure_count} failed"
        )
        self._notify_callbacks(summary)
        return summary

    async def _sync_category(self, category: Category) -> List[ItemResult]:
        try:
            items = await self.queue.list(category)
        except (QueueStorageError, sqlite3.Error) as e:
            logger.error(f"Could not read {category.partition} queue: {e}")
            return []

        batch = [item for item in items if item.id not in self._in_flight]
        if not batch:
            return []

        ids = {item.id for item in batch}
        self._in_flight.update(ids)
        try:
            return list(await asyncio.gather(*(self._submit(item) for item in batch)))
        finally:
            self._in_flight.difference_update(ids)

    # =========================================================================
    # SUBMISSION
    # =========================================================================

    def build_headers(self, item: QueueItem) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {item.auth_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Idempotency-Key": item.id,
        }

    async def _submit(self, item: QueueItem) -> ItemResult:
        category = item.category
        try:
            response = await asyncio.wait_for(
                self.client.post(
                    category.endpoint,
                    json=item.payload,
                    headers=self.build_headers(item),
                ),
                timeout=self.settings.request_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(
                f"Sync timed out for {category.partition} item {item.id} "
                f"after {self.settings.request_timeout}s"
            )
            return ItemResult(item.id, category, success=False, error="timeout")
        except httpx.RequestError as e:
            logger.warning(f"Sync failed for {category.partition} item {item.id}: {e}")
            return ItemResult(item.id, category, success=False, error=str(e))
        except Exception as e:
            logger.error(f"Unexpected error syncing {category.partition} item {item.id}: {e}")
            return ItemResult(item.id, category, success=False, error=str(e))

        if response.is_success:
            try:
                await self.queue.remove(category, item.id)
            except QueueStorageError as e:
                # Acknowledged but still stored; the next batch resubmits it
                logger.error(str(e))
                return ItemResult(item.id, category, False, response.status_code, str(e))
            return ItemResult(item.id, category, success=True, status_code=response.status_code)

        logger.warning(
            f"Sync rejected for {category.partition} item {item.id}: HTTP {response.status_code}"
        )
        result = ItemResult(
            item.id, category, success=False,
            status_code=response.status_code,
            error=f"HTTP {response.status_code}",
        )
        if result.auth_failure:
            await self._refresh_token(item)
        return result

    async def _refresh_token(self, item: QueueItem) -> None:
        """Store a fresh credential on an item whose token was refused."""
        if self._token_provider is None:
            return
        try:
            token = self._token_provider()
            if inspect.isawaitable(token):
                token = await token
        except Exception as e:
            logger.error(f"Token provider failed: {e}")
            return

        if token and token != item.auth_token:
            try:
                await self.queue.update_token(item.category, item.id, token)
                logger.info(f"Updated credential for {item.category.partition} item {item.id}")
            except (QueueStorageError, sqlite3.Error) as e:
                logger.error(f"Could not update credential for {item.id}: {e}")

    # =========================================================================
    # PERIODIC SYNC
    # =========================================================================

    def start(self) -> None:
        """Start the periodic trigger."""
        if self._periodic_task is not None and not self._periodic_task.done():
            return
        self._periodic_task = asyncio.get_running_loop().create_task(self._periodic_loop())
        logger.debug(f"Periodic sync every {self.settings.sync_interval}s")

    async def stop(self) -> None:
        if self._periodic_task is not None:
            self._periodic_task.cancel()
            try:
                await self._periodic_task
            except asyncio.CancelledError:
                pass
            self._periodic_task = None

    async def _periodic_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.sync_interval)
            try:
                await self.trigger_sync("periodic")
            except Exception as e:
                logger.error(f"Periodic sync failed: {e}")

    async def aclose(self) -> None:
        await self.stop()
        if self._owns_client:
            await self.client.aclose()

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[SyncSummary], None]) -> None:
        """Register a callback receiving each batch summary."""
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[SyncSummary], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def _notify_callbacks(self, summary: SyncSummary) -> None:
        for callback in self._callbacks:
            try:
                callback(summary)
            except Exception as e:
                logger.error(f"Error in sync callback: {e}")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "is_syncing": self.is_syncing,
            "in_flight": len(self._in_flight),
            "pending": self.queue.pending_counts(),
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
            "periodic": self._periodic_task is not None and not self._periodic_task.done(),
        }
