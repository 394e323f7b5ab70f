# =============================================================================
# tests/unit/test_offline_status.py
# Unit Tests for the offline status UI surface
# =============================================================================

from datetime import datetime

from mess_core.offline.connection_manager import ConnectionQuality, ConnectionState, ConnectionStatus
from mess_core.offline.local_queue import Category, QueueItem
from mess_core.ui.offline_status import (
    StatusNotifier,
    describe_item,
    pending_items_frame,
    render_connection_status,
    render_pending_badge,
    render_pending_queue,
    show_sync_toast,
)


def make_item(category, payload, item_id="1-abc"):
    return QueueItem(
        id=item_id,
        category=category,
        payload=payload,
        created_at=datetime(2024, 5, 1, 12, 30, 0),
    )


def summary(succeeded=0, failed=0, auth_failures=0):
    return {
        "success_count": succeeded,
        "failure_count": failed,
        "total": succeeded + failed,
        "auth_failures": auth_failures,
    }


class TestDescriptions:
    """Test human descriptions of pending items"""

    def test_attendance(self):
        """Attendance shows the meal type"""
        item = make_item(Category.ATTENDANCE, {"meal_type": "lunch"})
        assert describe_item(item) == "Attendance for lunch"

    def test_meals_with_count(self):
        """Meals with an explicit count use it"""
        item = make_item(Category.MEALS, {"meal_date": "2024-05-01", "count": 2})
        assert describe_item(item) == "2 meal(s) for 2024-05-01"

    def test_meals_from_breakdown(self):
        """Without a count, breakfast, lunch and dinner are summed"""
        item = make_item(Category.MEALS, {"meal_date": "2024-05-02", "breakfast": 1, "lunch": 1, "dinner": 1})
        assert describe_item(item) == "3 meal(s) for 2024-05-02"

    def test_payment(self):
        """Payments show the amount"""
        assert describe_item(make_item(Category.PAYMENTS, {"amount": 1500})) == "Payment of 1500"

    def test_bazar(self):
        """Bazar entries show the total cost"""
        assert describe_item(make_item(Category.BAZAR, {"total_cost": 820.5})) == "Bazar: 820.5"

    def test_frame_columns(self):
        """Queue table has one row per item in a fixed column order"""
        frame = pending_items_frame([
            make_item(Category.MEALS, {"meal_date": "2024-05-01", "count": 2}, "1"),
            make_item(Category.PAYMENTS, {"amount": 10}, "2"),
        ])

        assert list(frame.columns) == ["Category", "Description", "Queued at", "ID"]
        assert frame["Category"].tolist() == ["Meals", "Payments"]
        assert frame["Queued at"].iloc[0] == "2024-05-01 12:30:00"

    def test_empty_frame(self):
        """No items gives an empty frame"""
        assert pending_items_frame([]).empty


class TestStatusNotifier:
    """Test event recording"""

    def test_defaults(self):
        """A fresh notifier reports unknown status and nothing pending"""
        notifier = StatusNotifier(state={})
        assert notifier.status == "unknown"
        assert notifier.pending_total == 0
        assert notifier.last_summary is None

    def test_records_events(self):
        """Connection, quality and queue events land in state"""
        notifier = StatusNotifier(state={})

        notifier.on_connection_change(ConnectionState(status=ConnectionStatus.ONLINE))
        notifier.on_quality_change(ConnectionQuality(effective_type="2g"))
        notifier.on_queue_change({"attendance": 0, "meals": 2, "payments": 1, "bazar": 0})

        assert notifier.is_online
        assert notifier.quality["is_slow"] is True
        assert notifier.pending_total == 3

    def test_uses_session_state_by_default(self, mock_streamlit):
        """Without a mapping the notifier writes to st.session_state"""
        notifier = StatusNotifier()
        notifier.on_queue_change({"meals": 1})
        assert mock_streamlit.session_state["offline_pending"] == {"meals": 1}

    def test_toast_taken_once(self):
        """Each summary is handed out once"""
        notifier = StatusNotifier(state={})
        notifier.on_summary(summary(succeeded=1))

        assert notifier.take_toast()["total"] == 1
        assert notifier.take_toast() is None


class TestRendering:
    """Test Streamlit rendering"""

    def test_online_indicator(self, mock_streamlit):
        """Online shows a green success banner"""
        notifier = StatusNotifier(state={})
        notifier.on_connection_change(ConnectionState(status=ConnectionStatus.ONLINE))

        render_connection_status(notifier)

        mock_streamlit.success.assert_called_once_with("🟢 Online")

    def test_offline_indicator(self, mock_streamlit):
        """Offline shows a warning"""
        notifier = StatusNotifier(state={})
        notifier.on_connection_change(ConnectionState(status=ConnectionStatus.OFFLINE))

        render_connection_status(notifier)

        mock_streamlit.warning.assert_called_once()

    def test_badge(self, mock_streamlit):
        """Badge shows the total across categories"""
        notifier = StatusNotifier(state={})
        notifier.on_queue_change({"attendance": 0, "meals": 2, "payments": 0, "bazar": 1})

        render_pending_badge(notifier)

        mock_streamlit.metric.assert_called_once_with("Pending sync", 3)

    def test_empty_queue_caption(self, mock_streamlit):
        """An empty queue shows a caption, not a table"""
        render_pending_queue([])
        mock_streamlit.caption.assert_called_once_with("Nothing waiting to sync")
        mock_streamlit.dataframe.assert_not_called()

    def test_queue_table(self, mock_streamlit):
        """Pending items render as a dataframe"""
        render_pending_queue([make_item(Category.MEALS, {"meal_date": "2024-05-01", "count": 2})])
        mock_streamlit.dataframe.assert_called_once()

    def test_toast_after_batch_with_items(self, mock_streamlit):
        """A batch with items toasts once with its counts"""
        notifier = StatusNotifier(state={})
        notifier.on_summary(summary(succeeded=2, failed=1))

        assert show_sync_toast(notifier) is True
        message = mock_streamlit.toast.call_args[0][0]
        assert message == "Synced 2 item(s), 1 still pending"
        assert show_sync_toast(notifier) is False

    def test_no_toast_for_empty_batch(self, mock_streamlit):
        """An empty batch never toasts"""
        notifier = StatusNotifier(state={})
        notifier.on_summary(summary())

        assert show_sync_toast(notifier) is False
        mock_streamlit.toast.assert_not_called()


class TestSessionToasts:
    """Toasts are tracked per browser session over shared state"""

    def test_each_session_sees_the_toast(self):
        """Two sessions on one notifier each get the same summary once"""
        notifier = StatusNotifier(state={})
        first, second = {}, {}
        notifier.register_session(first)
        notifier.register_session(second)

        notifier.on_summary(summary(succeeded=2))

        assert notifier.take_toast(first)["success_count"] == 2
        assert notifier.take_toast(second)["success_count"] == 2
        assert notifier.take_toast(first) is None
        assert notifier.take_toast(second) is None

    def test_late_session_skips_old_summaries(self):
        """A session that joins after a batch does not toast it"""
        notifier = StatusNotifier(state={})
        notifier.on_summary(summary(succeeded=1))

        late = {}
        notifier.register_session(late)

        assert notifier.take_toast(late) is None
        notifier.on_summary(summary(succeeded=3))
        assert notifier.take_toast(late)["success_count"] == 3

    def test_registering_twice_keeps_progress(self):
        """Re-registering on every rerun does not reset what was shown"""
        notifier = StatusNotifier(state={})
        session = {}
        notifier.register_session(session)
        notifier.on_summary(summary(succeeded=1))

        notifier.register_session(session)

        assert notifier.take_toast(session) is not None

    def test_show_sync_toast_per_session(self, mock_streamlit):
        """show_sync_toast consumes only the given session's toast"""
        notifier = StatusNotifier(state={})
        first, second = {}, {}
        notifier.register_session(first)
        notifier.register_session(second)
        notifier.on_summary(summary(succeeded=1, failed=1))

        assert show_sync_toast(notifier, first) is True
        assert show_sync_toast(notifier, second) is True
        assert show_sync_toast(notifier, first) is False
        assert mock_streamlit.toast.call_count == 2
