# =============================================================================
# mess_core/ui/__init__.py
# =============================================================================

from .offline_status import (
    StatusNotifier,
    describe_item,
    pending_items_frame,
    render_connection_status,
    render_pending_badge,
    render_pending_queue,
    show_sync_toast,
)

__all__ = [
    "StatusNotifier",
    "describe_item",
    "pending_items_frame",
    "render_connection_status",
    "render_pending_badge",
    "render_pending_queue",
    "show_sync_toast",
]
