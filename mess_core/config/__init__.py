# =============================================================================
# mess_core/config/__init__.py
# =============================================================================

from .settings import (
    OfflineSettings,
    load_settings,
    DEFAULT_STATIC_URLS,
    DEFAULT_API_CACHE_URLS,
)

__all__ = [
    "OfflineSettings",
    "load_settings",
    "DEFAULT_STATIC_URLS",
    "DEFAULT_API_CACHE_URLS",
]
