from __future__ import annotations
import asyncio
import threading
from datetime import date

import streamlit as st

from mess_core.config import OfflineSettings, load_settings
from mess_core.errors import ErrorContext, handle_error, safe_execute
from mess_core.logging import setup_logging
from mess_core.offline import OfflineDataService
from mess_core.ui import (
    StatusNotifier,
    render_connection_status,
    render_pending_badge,
    render_pending_queue,
    show_sync_toast,
)

# ============================================================================
# PAGE CONFIGURATION
# ============================================================================
st.set_page_config(
    page_title="Mess Manager - Offline",
    page_icon="🍽️",
    layout="wide",
)


# ============================================================================
# RUNTIME (one event loop thread shared by every rerun)
# ============================================================================
class OfflineRuntime:
    """Owns the asyncio loop the sync core lives on."""

    def __init__(self, settings: OfflineSettings):
        setup_logging()
        self.loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self.loop.run_forever,
            name="mess-offline-loop",
            daemon=True,
        )
        self._thread.start()

        self.service = OfflineDataService(settings)
        # Callbacks fire on the loop thread, so shared state lives in a plain dict;
        # per-session bits stay in st.session_state
        self.notifier = StatusNotifier(state={})
        self.notifier.attach(self.service)

        self.run(self.service.start(periodic=True))
        self.run(self._start_monitoring())

    async def _start_monitoring(self) -> None:
        await self.service.connection.check_connection()
        self.service.connection.start_monitoring()

    def run(self, coro):
        return asyncio.run_coroutine_threadsafe(coro, self.loop).result()


@st.cache_resource
def get_runtime(_settings: OfflineSettings) -> OfflineRuntime:
    return OfflineRuntime(_settings)


settings = safe_execute(load_settings, error_message="Could not read offline settings")
if settings is None:
    st.stop()

try:
    runtime = get_runtime(settings)
except Exception as e:
    handle_error(e, user_message="Could not start the offline client")
    st.stop()

service = runtime.service
notifier = runtime.notifier
notifier.register_session(st.session_state)

# ============================================================================
# STATUS HEADER
# ============================================================================
st.title("🍽️ Mess Manager")

col_status, col_badge, col_actions = st.columns([2, 1, 1])
with col_status:
    render_connection_status(notifier)
with col_badge:
    render_pending_badge(notifier)
with col_actions:
    if st.button("🔄 Sync now", use_container_width=True, disabled=not notifier.is_online):
        with ErrorContext("Sync", show_success=False):
            runtime.run(service.sync_now())
    forced = service.connection.forced_offline
    offline_mode = st.toggle("Work offline", value=forced)
    if offline_mode != forced:
        if offline_mode:
            runtime.run(service.connection.force_offline())
        else:
            runtime.run(service.connection.release_offline())
        st.rerun()

show_sync_toast(notifier, st.session_state)

# ============================================================================
# PENDING QUEUE
# ============================================================================
st.subheader("Waiting to sync")
render_pending_queue(runtime.run(service.list_pending()))

# ============================================================================
# MEAL ENTRY
# ============================================================================
st.subheader("Record meals")
with st.form("meal_entry", clear_on_submit=True):
    mess_id = st.number_input("Mess ID", min_value=1, step=1, value=1)
    meal_date = st.date_input("Date", value=date.today())
    c1, c2, c3 = st.columns(3)
    breakfast = c1.number_input("Breakfast", min_value=0, max_value=10, step=1)
    lunch = c2.number_input("Lunch", min_value=0, max_value=10, step=1)
    dinner = c3.number_input("Dinner", min_value=0, max_value=10, step=1)
    submitted = st.form_submit_button("Save")

if submitted:
    with ErrorContext("Saving meals", show_success=False):
        result = runtime.run(
            service.record_meal(
                mess_id=int(mess_id),
                meal_date=meal_date.isoformat(),
                breakfast=int(breakfast),
                lunch=int(lunch),
                dinner=int(dinner),
            )
        )
        if result.sent:
            st.success("Meals saved")
        elif result.queued:
            st.info("Saved on this device; it will sync when you are back online")
        else:
            st.error(result.message)

# ============================================================================
# QR ATTENDANCE
# ============================================================================
st.subheader("Scan attendance")
qr_code = st.text_input("QR code")
if st.button("Submit scan", disabled=not qr_code):
    scan = runtime.run(service.scan_attendance(qr_code))
    if scan.success:
        st.success(f"{scan.message} (#{scan.attendance_id})")
    else:
        st.error(scan.message)
