# =============================================================================
# mess_core/offline/connection_manager.py
# Connection Status Detection and Management
# =============================================================================
"""
ConnectionManager - single source of truth for online/offline state.

Features:
- Platform online/offline signals (set_online / handle_online / handle_offline)
- Optional active probing of the API host
- Advisory connection-quality updates (bandwidth class, RTT, data saver)
- Event callbacks for status and quality changes
- Debounced sync trigger, fired once per stable transition to online
"""

from __future__ import annotations
import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Set
from urllib.parse import urlparse
import logging

from mess_core.config import OfflineSettings

logger = logging.getLogger(__name__)

SLOW_CONNECTION_TYPES = ("slow-2g", "2g", "3g")


class ConnectionStatus(Enum):
    """Connection status states."""
    ONLINE = "online"
    OFFLINE = "offline"
    UNKNOWN = "unknown"


@dataclass
class ConnectionQuality:
    """Last-known connection quality descriptor."""
    effective_type: Optional[str] = None
    downlink: Optional[float] = None     # Mbit/s
    rtt: Optional[int] = None            # ms
    save_data: bool = False

    @property
    def is_slow(self) -> bool:
        return self.effective_type in SLOW_CONNECTION_TYPES

    @property
    def load_images(self) -> bool:
        """Whether heavy media should be fetched eagerly."""
        return not (self.is_slow or self.save_data)

    def to_dict(self) -> dict:
        return {
            "effective_type": self.effective_type,
            "downlink": self.downlink,
            "rtt": self.rtt,
            "save_data": self.save_data,
            "is_slow": self.is_slow,
        }


@dataclass
class ConnectionState:
    """Current connection state with metadata."""
    status: ConnectionStatus = ConnectionStatus.UNKNOWN
    quality: ConnectionQuality = field(default_factory=ConnectionQuality)
    last_check: Optional[datetime] = None
    last_online: Optional[datetime] = None
    last_change: Optional[datetime] = None
    consecutive_failures: int = 0
    error_message: Optional[str] = None

    @property
    def is_online(self) -> bool:
        return self.status == ConnectionStatus.ONLINE


SyncTrigger = Callable[[], Awaitable[Any]]
Probe = Callable[[], Awaitable[bool]]


class ConnectionManager:
    """
    Tracks online/offline transitions and notifies subscribers.

    Usage:
        manager = ConnectionManager(settings, sync_trigger=engine.trigger_sync)
        await manager.set_online(True)   # platform "online" signal
        if manager.is_online:
            ...
    """

    def __init__(
        self,
        settings: Optional[OfflineSettings] = None,
        sync_trigger: Optional[SyncTrigger] = None,
        probe: Optional[Probe] = None,
    ):
        self.settings = settings or OfflineSettings()
        self._state = ConnectionState()
        self._callbacks: List[Callable[[ConnectionState], None]] = []
        self._quality_callbacks: List[Callable[[ConnectionQuality], None]] = []
        self._sync_trigger = sync_trigger
        self._probe = probe or self._probe_api_host
        self._pending_trigger: Optional[asyncio.Task] = None
        self._running_triggers: Set[asyncio.Task] = set()
        self._monitor_task: Optional[asyncio.Task] = None
        self._forced_offline = False

    @property
    def state(self) -> ConnectionState:
        """Get current connection state."""
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return self._state.status

    @property
    def is_online(self) -> bool:
        return self._state.status == ConnectionStatus.ONLINE

    @property
    def is_offline(self) -> bool:
        return self._state.status == ConnectionStatus.OFFLINE

    @property
    def forced_offline(self) -> bool:
        """Member chose to work offline; signals and probes cannot end it."""
        return self._forced_offline

    @property
    def quality(self) -> ConnectionQuality:
        return self._state.quality

    def set_sync_trigger(self, trigger: Optional[SyncTrigger]) -> None:
        """Set the coroutine function invoked after a stable transition to online."""
        self._sync_trigger = trigger

    # =========================================================================
    # SIGNALS
    # =========================================================================

    async def set_online(self, online: bool) -> bool:
        """
        Apply an online/offline signal.

        Returns:
            True if the status changed
        """
        now = datetime.now()
        new_status = ConnectionStatus.ONLINE if online else ConnectionStatus.OFFLINE
        old_status = self._state.status
        self._state.last_check = now

        if online and self._forced_offline:
            logger.debug("Online signal ignored: working offline by choice")
            return False

        if new_status == old_status:
            return False

        self._state.status = new_status
        self._state.last_change = now

        if online:
            self._state.last_online = now
            self._state.consecutive_failures = 0
            self._state.error_message = None
            self._schedule_trigger()
        else:
            self._cancel_pending_trigger()

        logger.info(f"Connection status changed: {old_status.value} -> {new_status.value}")
        self._notify_callbacks()
        return True

    async def handle_online(self) -> bool:
        return await self.set_online(True)

    async def handle_offline(self) -> bool:
        return await self.set_online(False)

    async def force_offline(self) -> None:
        """Stay offline until release_offline(), whatever probes report."""
        self._forced_offline = True
        await self.set_online(False)
        logger.info("Forced offline mode")

    async def release_offline(self, online: Optional[bool] = None) -> ConnectionState:
        """
        End forced offline mode.

        Args:
            online: Known platform state; probes the API host when None
        """
        self._forced_offline = False
        logger.info("Forced offline mode released")
        if online is None:
            return await self.check_connection()
        await self.set_online(online)
        return self._state

    def update_quality(
        self,
        effective_type: Optional[str] = None,
        downlink: Optional[float] = None,
        rtt: Optional[int] = None,
        save_data: Optional[bool] = None,
    ) -> ConnectionQuality:
        """
        Record a connection-quality change.

        Advisory only: subscribers may adapt image loading or polling, but
        this never triggers a sync.
        """
        quality = self._state.quality
        if effective_type is not None:
            quality.effective_type = effective_type
        if downlink is not None:
            quality.downlink = downlink
        if rtt is not None:
            quality.rtt = rtt
        if save_data is not None:
            quality.save_data = save_data

        logger.debug(f"Connection quality: {quality.to_dict()}")
        for callback in self._quality_callbacks:
            try:
                callback(quality)
            except Exception as e:
                logger.error(f"Error in quality callback: {e}")
        return quality

    async def notify_visibility(self, visible: bool) -> None:
        """App returned to the foreground; sync if online."""
        if visible and self.is_online and self._sync_trigger is not None:
            self._start_trigger()

    # =========================================================================
    # SYNC TRIGGER
    # =========================================================================

    def _schedule_trigger(self) -> None:
        self._cancel_pending_trigger()
        if self._sync_trigger is None:
            return
        self._pending_trigger = asyncio.get_running_loop().create_task(
            self._debounced_trigger()
        )

    def _cancel_pending_trigger(self) -> None:
        # Only the debounce wait is cancelled; a sync already running finishes.
        if self._pending_trigger is not None and not self._pending_trigger.done():
            self._pending_trigger.cancel()
        self._pending_trigger = None

    async def _debounced_trigger(self) -> None:
        if self.settings.online_debounce > 0:
            await asyncio.sleep(self.settings.online_debounce)
        if self.is_online:
            self._start_trigger()

    def _start_trigger(self) -> None:
        task = asyncio.get_running_loop().create_task(self._run_trigger())
        self._running_triggers.add(task)
        task.add_done_callback(self._running_triggers.discard)

    async def _run_trigger(self) -> None:
        try:
            await self._sync_trigger()
        except Exception as e:
            logger.error(f"Sync trigger failed: {e}", exc_info=True)

    async def flush(self) -> None:
        """Wait for a pending debounce and any running trigger to finish."""
        if self._pending_trigger is not None:
            try:
                await self._pending_trigger
            except asyncio.CancelledError:
                pass
        if self._running_triggers:
            await asyncio.gather(*list(self._running_triggers), return_exceptions=True)

    # =========================================================================
    # ACTIVE PROBING
    # =========================================================================

    async def check_connection(self) -> ConnectionState:
        """
        Probe the API host and update state.

        Returns:
            Updated ConnectionState
        """
        try:
            reachable = await self._probe()
        except Exception as e:
            self._state.error_message = str(e)
            logger.debug(f"Connection probe failed: {e}")
            reachable = False

        if not reachable:
            self._state.consecutive_failures += 1
        await self.set_online(reachable)
        return self._state

    async def _probe_api_host(self) -> bool:
        """Open (and close) a TCP connection to the API host."""
        parsed = urlparse(self.settings.api_base_url)
        host = parsed.hostname
        if not host:
            return False
        port = parsed.port or (443 if parsed.scheme == "https" else 80)

        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(host, port),
                timeout=self.settings.connection_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            self._state.error_message = str(e)
            return False

        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True

    def start_monitoring(self) -> None:
        """Start background connection probing."""
        if self._monitor_task is not None and not self._monitor_task.done():
            return
        self._monitor_task = asyncio.get_running_loop().create_task(self._monitoring_loop())
        logger.debug("Connection monitoring started")

    async def stop_monitoring(self) -> None:
        """Stop background connection probing."""
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        self._cancel_pending_trigger()
        logger.debug("Connection monitoring stopped")

    async def _monitoring_loop(self) -> None:
        while True:
            try:
                await self.check_connection()
            except Exception as e:
                logger.error(f"Error in connection check: {e}")

            interval = (
                self.settings.check_interval_online
                if self.is_online
                else self.settings.check_interval_offline
            )
            await asyncio.sleep(interval)

    # =========================================================================
    # CALLBACKS
    # =========================================================================

    def register_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        """
        Register a callback for connection status changes.

        Args:
            callback: Function called with ConnectionState when status changes
        """
        if callback not in self._callbacks:
            self._callbacks.append(callback)

    def unregister_callback(self, callback: Callable[[ConnectionState], None]) -> None:
        if callback in self._callbacks:
            self._callbacks.remove(callback)

    def register_quality_callback(self, callback: Callable[[ConnectionQuality], None]) -> None:
        if callback not in self._quality_callbacks:
            self._quality_callbacks.append(callback)

    def _notify_callbacks(self) -> None:
        for callback in self._callbacks:
            try:
                callback(self._state)
            except Exception as e:
                logger.error(f"Error in connection callback: {e}")

    def get_status_display(self) -> dict:
        """Get status information for UI display."""
        return {
            "status": self._state.status.value,
            "is_online": self.is_online,
            "forced_offline": self._forced_offline,
            "quality": self._state.quality.to_dict(),
            "last_check": self._state.last_check.isoformat() if self._state.last_check else None,
            "last_online": self._state.last_online.isoformat() if self._state.last_online else None,
            "failures": self._state.consecutive_failures,
            "error": self._state.error_message,
        }
