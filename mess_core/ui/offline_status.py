# =============================================================================
# mess_core/ui/offline_status.py
# Connection indicator, pending-queue badge and sync toast
# =============================================================================
"""
Streamlit surface for the offline sync core.

StatusNotifier subscribes to the core's events and keeps the latest values
in a state mapping (session state by default, or one dict shared by every
session when the core is a process-wide resource). Which sync summary a
session has already toasted lives in that session's own state. The render
helpers only read state; nothing here queries the store or the network.
"""

from __future__ import annotations
from typing import Any, Dict, Iterable, List, MutableMapping, Optional
import logging

import pandas as pd
import streamlit as st

from mess_core.offline.connection_manager import ConnectionQuality, ConnectionState
from mess_core.offline.local_queue import Category, QueueItem

logger = logging.getLogger(__name__)

STATE_DEFAULTS = {
    "offline_status": "unknown",
    "offline_is_online": False,
    "offline_quality": None,
    "offline_pending": {},
    "offline_last_summary": None,
    "offline_summary_seq": 0,
    "offline_toast_seen": 0,
}


class StatusNotifier:
    """
    Event sink that records connection, queue and sync state for rendering.

    Usage:
        notifier = StatusNotifier()
        notifier.attach(service)
        render_connection_status(notifier)
    """

    def __init__(self, state: Optional[MutableMapping[str, Any]] = None):
        self._state = state if state is not None else st.session_state
        for key, value in STATE_DEFAULTS.items():
            if key not in self._state:
                self._state[key] = value.copy() if isinstance(value, dict) else value

    def attach(self, service) -> None:
        """Subscribe to an OfflineDataService."""
        service.connection.register_callback(self.on_connection_change)
        service.connection.register_quality_callback(self.on_quality_change)
        service.queue.register_callback(self.on_queue_change)
        service.register_summary_callback(self.on_summary)

        self.on_connection_change(service.connection.state)
        self.on_queue_change(service.queue.pending_counts())

    def on_connection_change(self, state: ConnectionState) -> None:
        self._state["offline_status"] = state.status.value
        self._state["offline_is_online"] = state.is_online

    def on_quality_change(self, quality: ConnectionQuality) -> None:
        self._state["offline_quality"] = quality.to_dict()

    def on_queue_change(self, counts: Dict[str, int]) -> None:
        self._state["offline_pending"] = dict(counts)

    def on_summary(self, summary: Dict[str, Any]) -> None:
        self._state["offline_last_summary"] = summary
        self._state["offline_summary_seq"] += 1

    @property
    def is_online(self) -> bool:
        return bool(self._state["offline_is_online"])

    @property
    def status(self) -> str:
        return self._state["offline_status"]

    @property
    def quality(self) -> Optional[Dict[str, Any]]:
        return self._state["offline_quality"]

    @property
    def pending(self) -> Dict[str, int]:
        return self._state["offline_pending"]

    @property
    def pending_total(self) -> int:
        return sum(self.pending.values())

    @property
    def last_summary(self) -> Optional[Dict[str, Any]]:
        return self._state["offline_last_summary"]

    def register_session(self, session: MutableMapping[str, Any]) -> None:
        """
        Track toasts for one browser session.

        A session that joins late starts from the current summary, so it
        never toasts a batch that finished before it connected.
        """
        session.setdefault("offline_toast_seen", self._state["offline_summary_seq"])

    def take_toast(self, session: Optional[MutableMapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """
        Return the latest summary once per session, or None.

        Without a session the notifier's own state tracks what was shown.
        """
        seen_state = self._state if session is None else session
        seq = self._state["offline_summary_seq"]
        if seq <= seen_state.get("offline_toast_seen", 0):
            return None
        seen_state["offline_toast_seen"] = seq
        return self.last_summary


# =============================================================================
# DESCRIPTIONS
# =============================================================================

def describe_item(item: QueueItem) -> str:
    """One-line human description of a pending item."""
    payload = item.payload
    if item.category == Category.ATTENDANCE:
        return f"Attendance for {payload.get('meal_type', 'meal')}"
    if item.category == Category.MEALS:
        count = payload.get("count")
        if count is None:
            count = sum(int(payload.get(k, 0) or 0) for k in ("breakfast", "lunch", "dinner"))
        return f"{count} meal(s) for {payload.get('meal_date', 'unknown date')}"
    if item.category == Category.PAYMENTS:
        return f"Payment of {payload.get('amount', 0)}"
    return f"Bazar: {payload.get('total_cost', 0)}"


def pending_items_frame(items: Iterable[QueueItem]) -> pd.DataFrame:
    rows = [
        {
            "Category": item.category.partition.title(),
            "Description": describe_item(item),
            "Queued at": item.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            "ID": item.id,
        }
        for item in items
    ]
    return pd.DataFrame(rows, columns=["Category", "Description", "Queued at", "ID"])


def summary_message(summary: Dict[str, Any]) -> str:
    succeeded = summary.get("success_count", 0)
    failed = summary.get("failure_count", 0)
    message = f"Synced {succeeded} item(s)"
    if failed:
        message += f", {failed} still pending"
    if summary.get("auth_failures"):
        message += ". Please sign in again"
    return message


# =============================================================================
# RENDERING
# =============================================================================

def render_connection_status(notifier: StatusNotifier) -> None:
    if notifier.status == "unknown":
        st.info("⚪ Checking connection...")
    elif notifier.is_online:
        st.success("🟢 Online")
    else:
        st.warning("🔴 Offline: changes are saved on this device and sync later")

    quality = notifier.quality
    if quality and quality.get("is_slow"):
        st.caption(f"Slow connection ({quality.get('effective_type')}); images are not preloaded")


def render_pending_badge(notifier: StatusNotifier) -> None:
    total = notifier.pending_total
    st.metric("Pending sync", total)
    if total:
        parts = [f"{name}: {count}" for name, count in notifier.pending.items() if count]
        st.caption(" · ".join(parts))


def render_pending_queue(items: List[QueueItem]) -> None:
    if not items:
        st.caption("Nothing waiting to sync")
        return
    st.dataframe(pending_items_frame(items), use_container_width=True, hide_index=True)


def show_sync_toast(notifier: StatusNotifier, session: Optional[MutableMapping[str, Any]] = None) -> bool:
    """
    Toast the latest batch summary once.

    Empty batches are consumed silently.

    Returns:
        True if a toast was shown
    """
    summary = notifier.take_toast(session)
    if not summary or not summary.get("total"):
        return False

    icon = "⚠️" if summary.get("failure_count") else "✅"
    st.toast(summary_message(summary), icon=icon)
    return True
