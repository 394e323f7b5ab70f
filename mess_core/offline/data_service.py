# =============================================================================
# mess_core/offline/data_service.py
# Offline-aware write API for the foreground app
# =============================================================================
"""
OfflineDataService - the one object the UI talks to.

Wires the local queue, connection manager, response cache, request
interceptor and sync engine together, and exposes:

- submit(category, payload): send now when online, queue otherwise
- record_attendance / record_meal / record_payment / record_bazar
- scan_attendance(qr_code): foreground only, never queued
- fetch(path): cached GET through the interceptor
- sync_now(): explicit sync request
- status(): snapshot for the UI

Usage:
    service = OfflineDataService(load_settings())
    await service.start()
    result = await service.record_meal(mess_id=1, meal_date="2024-05-01", lunch=1)
    if result.queued:
        st.info("Saved offline; it will sync when you are back online")
"""

from __future__ import annotations
import functools
import inspect
import locale
import platform
import sys
from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union
import logging

import httpx

from mess_core.config import OfflineSettings
from mess_core.offline.background import BackgroundSyncWorker
from mess_core.offline.cache_manager import CacheStorage, ResponseCache
from mess_core.offline.connection_manager import ConnectionManager
from mess_core.offline.interceptor import InterceptingTransport, RequestInterceptor
from mess_core.offline.local_database import LocalDatabase, get_local_database
from mess_core.offline.local_queue import Category, LocalQueue, QueueItem
from mess_core.offline.network import NetworkFetcher
from mess_core.offline.sync_engine import SyncEngine, SyncSummary

logger = logging.getLogger(__name__)

SCAN_ENDPOINT = "/api/attendance/scan"


class SubmitStatus(Enum):
    """What happened to a submitted write."""
    SENT = "sent"            # server accepted it (2xx)
    QUEUED = "queued"        # persisted locally for a later sync
    REJECTED = "rejected"    # server refused it (4xx); not queued


@dataclass
class SubmitResult:
    """Outcome of OfflineDataService.submit()."""
    status: SubmitStatus
    category: Category
    item_id: Optional[str] = None
    status_code: Optional[int] = None
    data: Optional[Any] = None
    message: str = ""

    @property
    def sent(self) -> bool:
        return self.status == SubmitStatus.SENT

    @property
    def queued(self) -> bool:
        return self.status == SubmitStatus.QUEUED

    @property
    def rejected(self) -> bool:
        return self.status == SubmitStatus.REJECTED


@dataclass
class ScanResult:
    """Outcome of a QR attendance scan."""
    success: bool
    attendance_id: Optional[Any] = None
    message: str = ""


def _json_body(response: httpx.Response) -> Optional[Any]:
    try:
        return response.json()
    except ValueError:
        return None


class OfflineDataService:
    """Offline-aware facade over the sync core."""

    def __init__(
        self,
        settings: Optional[OfflineSettings] = None,
        database: Optional[LocalDatabase] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connection_manager: Optional[ConnectionManager] = None,
        worker: Optional[BackgroundSyncWorker] = None,
        token_provider: Optional[Callable[[], Any]] = None,
    ):
        """
        Args:
            settings: OfflineSettings (defaults when omitted)
            database: Shared LocalDatabase (opened from settings.db_path when omitted)
            transport: Network transport; tests pass httpx.MockTransport
            connection_manager: Shared ConnectionManager
            worker: Background worker; when given, sync batches run there
            token_provider: Returns the current bearer token
        """
        self.settings = settings or OfflineSettings()
        self.database = database or get_local_database(self.settings.db_path)
        self._token_provider = token_provider

        self.queue = LocalQueue(self.database)
        self.connection = connection_manager or ConnectionManager(self.settings)

        self._fetcher = NetworkFetcher(transport, timeout=self.settings.request_timeout)
        self.cache = ResponseCache(CacheStorage(self.database), self._fetcher, self.settings)
        self.interceptor = RequestInterceptor(self.cache, self._fetcher, self.settings)
        self.client = httpx.AsyncClient(
            base_url=self.settings.api_base_url,
            transport=InterceptingTransport(self.interceptor),
            timeout=self.settings.request_timeout,
        )

        self.worker = worker
        self.engine = SyncEngine(
            self.queue,
            self.connection,
            client=self.client,
            settings=self.settings,
            token_provider=token_provider,
            background_channel=worker.post_message if worker is not None else None,
        )
        self.connection.set_sync_trigger(functools.partial(self.engine.trigger_sync, "connectivity"))
        self.engine.register_callback(self._on_summary)
        if worker is not None:
            worker.set_listener(self._on_worker_message)

        self.last_summary: Optional[Dict[str, Any]] = None
        self._summary_callbacks: List[Callable[[Dict[str, Any]], None]] = []

    # =========================================================================
    # LIFECYCLE
    # =========================================================================

    async def start(self, periodic: bool = False) -> int:
        """
        Load pending items and open caches.

        Returns:
            Number of items recovered from an earlier session
        """
        recovered = await self.queue.load()
        await self.cache.open()
        if periodic:
            self.engine.start()
        return recovered

    async def aclose(self) -> None:
        await self.engine.stop()
        await self.connection.stop_monitoring()
        await self.cache.drain()
        await self.client.aclose()
        await self._fetcher.aclose()

    async def _current_token(self) -> str:
        if self._token_provider is None:
            return self.settings.auth_token
        token = self._token_provider()
        if inspect.isawaitable(token):
            token = await token
        return token or self.settings.auth_token

    def _headers(self, token: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    # =========================================================================
    # WRITES
    # =========================================================================

    async def submit(self, category: Union[str, Category], payload: Dict[str, Any]) -> SubmitResult:
        """
        Send a write now if online; queue it otherwise.

        A network error or 5xx while online also queues the write. A 4xx is
        returned as rejected and never queued.

        Raises:
            QueueStorageError: the write had to be queued and could not be saved
        """
        category = Category.parse(category)
        token = await self._current_token()

        if not self.connection.is_online:
            return await self._enqueue(category, payload, token, "Saved offline")

        try:
            response = await self.client.post(
                category.endpoint, json=payload, headers=self._headers(token)
            )
        except httpx.RequestError as e:
            logger.warning(f"Direct {category.partition} submit failed, queueing: {e}")
            return await self._enqueue(category, payload, token, "Network error; saved offline")

        if response.is_success:
            return SubmitResult(
                SubmitStatus.SENT, category,
                status_code=response.status_code,
                data=_json_body(response),
                message="Saved",
            )

        if response.status_code >= 500:
            logger.warning(f"Server error {response.status_code} on {category.partition}, queueing")
            return await self._enqueue(
                category, payload, token, f"Server error {response.status_code}; saved offline"
            )

        body = _json_body(response)
        message = body.get("message") if isinstance(body, dict) else None
        return SubmitResult(
            SubmitStatus.REJECTED, category,
            status_code=response.status_code,
            data=body,
            message=message or f"Rejected by server (HTTP {response.status_code})",
        )

    async def _enqueue(
        self, category: Category, payload: Dict[str, Any], token: str, message: str
    ) -> SubmitResult:
        item = await self.queue.enqueue(category, payload, token)
        return SubmitResult(SubmitStatus.QUEUED, category, item_id=item.id, message=message)

    async def record_attendance(
        self,
        mess_id: int,
        user_id: int,
        meal_type: str,
        meal_date: Optional[str] = None,
        **extra: Any,
    ) -> SubmitResult:
        payload = {
            "mess_id": mess_id,
            "user_id": user_id,
            "meal_type": meal_type,
            "meal_date": meal_date or date.today().isoformat(),
            "device_info": self.device_info(),
            **extra,
        }
        return await self.submit(Category.ATTENDANCE, payload)

    async def record_meal(
        self,
        mess_id: int,
        meal_date: str,
        breakfast: int = 0,
        lunch: int = 0,
        dinner: int = 0,
        **extra: Any,
    ) -> SubmitResult:
        payload = {
            "mess_id": mess_id,
            "meal_date": meal_date,
            "breakfast": breakfast,
            "lunch": lunch,
            "dinner": dinner,
            **extra,
        }
        return await self.submit(Category.MEALS, payload)

    async def record_payment(
        self,
        mess_id: int,
        amount: float,
        payment_method: str = "cash",
        **extra: Any,
    ) -> SubmitResult:
        payload = {"mess_id": mess_id, "amount": amount, "payment_method": payment_method, **extra}
        return await self.submit(Category.PAYMENTS, payload)

    async def record_bazar(
        self,
        mess_id: int,
        bazar_person_id: int,
        bazar_date: str,
        item_list: List[Dict[str, Any]],
        total_cost: float,
        **extra: Any,
    ) -> SubmitResult:
        payload = {
            "mess_id": mess_id,
            "bazar_person_id": bazar_person_id,
            "bazar_date": bazar_date,
            "item_list": item_list,
            "total_cost": total_cost,
            **extra,
        }
        return await self.submit(Category.BAZAR, payload)

    async def scan_attendance(
        self,
        qr_code: str,
        device_info: Optional[Dict[str, Any]] = None,
    ) -> ScanResult:
        """POST a scanned QR code; never queued."""
        token = await self._current_token()
        body = {"qr_code": qr_code, "device_info": device_info or self.device_info()}

        try:
            response = await self.client.post(SCAN_ENDPOINT, json=body, headers=self._headers(token))
        except httpx.RequestError as e:
            logger.error(f"QR scan error: {e}")
            return ScanResult(success=False, message="Failed to process QR code")

        result = _json_body(response)
        if not isinstance(result, dict):
            return ScanResult(success=False, message="Failed to process QR code")

        if response.is_success and result.get("success"):
            attendance = (result.get("data") or {}).get("attendance") or {}
            return ScanResult(
                success=True,
                attendance_id=attendance.get("id"),
                message="Attendance recorded successfully",
            )
        return ScanResult(
            success=False,
            message=result.get("message") or "Failed to record attendance",
        )

    # =========================================================================
    # READS AND SYNC
    # =========================================================================

    async def fetch(self, path: str, **kwargs: Any) -> httpx.Response:
        """
        GET through the cache policies.

        Raises:
            NetworkUnavailableError: no network and nothing cached
        """
        token = await self._current_token()
        headers = {"Accept": "application/json", "Authorization": f"Bearer {token}"}
        headers.update(kwargs.pop("headers", {}))
        return await self.client.get(path, headers=headers, **kwargs)

    async def sync_now(self) -> Optional[SyncSummary]:
        """Explicit user request."""
        return await self.engine.trigger_sync("manual")

    async def list_pending(self, category: Optional[Union[str, Category]] = None) -> List[QueueItem]:
        """Pending items read from the store; every category when none is given."""
        if category is not None:
            return await self.queue.list(category)
        items: List[QueueItem] = []
        for each in Category:
            items.extend(await self.queue.list(each))
        return items

    # =========================================================================
    # STATUS
    # =========================================================================

    def device_info(self) -> Dict[str, Any]:
        language, _ = locale.getlocale()
        quality = self.connection.quality
        return {
            "user_agent": f"mess-offline-client/python-{platform.python_version()}",
            "platform": platform.platform(),
            "python_version": sys.version.split()[0],
            "language": language,
            "connection": quality.to_dict() if quality.effective_type else None,
        }

    def status(self) -> Dict[str, Any]:
        return {
            "is_online": self.connection.is_online,
            "connection": self.connection.status.value,
            "quality": self.connection.quality.to_dict(),
            "pending": self.queue.pending_counts(),
            "pending_total": self.queue.pending_count(),
            "is_syncing": self.engine.is_syncing,
            "last_summary": self.last_summary,
        }

    def register_summary_callback(self, callback: Callable[[Dict[str, Any]], None]) -> None:
        """Summaries arrive as dicts, whether the batch ran here or in the worker."""
        if callback not in self._summary_callbacks:
            self._summary_callbacks.append(callback)

    def _on_summary(self, summary: SyncSummary) -> None:
        self._publish_summary(summary.to_dict())

    def _publish_summary(self, summary: Dict[str, Any]) -> None:
        self.last_summary = summary
        for callback in self._summary_callbacks:
            try:
                callback(summary)
            except Exception as e:
                logger.error(f"Error in summary callback: {e}")

    async def _on_worker_message(self, message: Dict[str, Any]) -> None:
        message_type = message.get("type")
        data = message.get("data") or {}

        if message_type == "SYNC_COMPLETE":
            self._publish_summary(data)
        elif message_type == "OFFLINE_QUEUE_UPDATED":
            # The worker changed the shared store; re-read it
            await self.queue.load()
        elif message_type == "CACHE_UPDATED":
            logger.info(f"Cache updated: {data.get('cache')} ({data.get('count')} entries)")
