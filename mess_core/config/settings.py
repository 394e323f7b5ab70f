# =============================================================================
# mess_core/config/settings.py
# Offline client settings from secrets.toml and environment
# =============================================================================
"""
Settings for the offline client.

Expected secrets.toml format:
    [offline]
    api_base_url = "https://mess.example.com"
    auth_token = "..."
    request_timeout = 15
    data_freshness_seconds = 300

Environment overrides (applied last):
    MESS_API_BASE_URL, MESS_OFFLINE_DB, MESS_AUTH_TOKEN, MESS_REQUEST_TIMEOUT
"""

from __future__ import annotations
import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
import logging

import toml

from mess_core.errors import ConfigurationError

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_SECRETS_PATH = PROJECT_ROOT / ".streamlit" / "secrets.toml"

# Pages and assets precached for offline use
DEFAULT_STATIC_URLS = [
    "/",
    "/dashboard",
    "/meals",
    "/attendance/scan",
    "/payments",
    "/bazar",
    "/inventory",
    "/announcements",
    "/settings",
    "/manifest.json",
    "/css/app.css",
    "/js/app.js",
    "/icons/icon-192x192.png",
    "/icons/icon-512x512.png",
    "/offline.html",
]

# API read endpoints served by the data cache (prefix match)
DEFAULT_API_CACHE_URLS = [
    "/api/user",
    "/api/dashboard/member",
    "/api/meals/today",
    "/api/attendance/today",
    "/api/announcements",
    "/api/settings",
]

ENV_OVERRIDES = {
    "MESS_API_BASE_URL": "api_base_url",
    "MESS_OFFLINE_DB": "db_path",
    "MESS_AUTH_TOKEN": "auth_token",
    "MESS_REQUEST_TIMEOUT": "request_timeout",
}


@dataclass
class OfflineSettings:
    """Configuration for the offline client."""
    api_base_url: str = "http://localhost:8000"
    db_path: Path = PROJECT_ROOT / "local_data" / "mess_offline.db"
    auth_token: str = ""

    # Network
    request_timeout: float = 15.0
    connection_timeout: float = 5.0
    check_interval_online: float = 30.0
    check_interval_offline: float = 10.0
    online_debounce: float = 1.0

    # Sync
    sync_interval: float = 30.0

    # Cache
    cache_prefix: str = "mess-manager"
    cache_version: str = "v1"
    data_freshness_seconds: float = 300.0
    offline_page: str = "/offline.html"
    static_urls: List[str] = field(default_factory=lambda: list(DEFAULT_STATIC_URLS))
    api_cache_urls: List[str] = field(default_factory=lambda: list(DEFAULT_API_CACHE_URLS))

    @property
    def origin(self) -> str:
        """scheme://host[:port] of the API server."""
        parsed = urlparse(self.api_base_url)
        return f"{parsed.scheme}://{parsed.netloc}"

    @property
    def static_cache_name(self) -> str:
        return f"{self.cache_prefix}-{self.cache_version}"

    @property
    def runtime_cache_name(self) -> str:
        return f"{self.cache_prefix}-runtime-{self.cache_version}"

    @property
    def data_cache_name(self) -> str:
        return f"{self.cache_prefix}-data-{self.cache_version}"

    @classmethod
    def from_dict(cls, values: Dict[str, Any]) -> OfflineSettings:
        """Build settings from a mapping, coercing to the declared field types."""
        known = {f.name: f for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}

        for key, value in values.items():
            if key not in known:
                raise ConfigurationError(f"Unknown offline setting: {key}", config_key=key)
            kwargs[key] = _coerce(key, value, known[key].default)

        return cls(**kwargs)


def _coerce(key: str, value: Any, default: Any) -> Any:
    """Coerce a raw config value to the type of the field default."""
    try:
        if key == "db_path":
            return Path(value)
        if isinstance(default, bool):
            return str(value).lower() in ("true", "1", "yes", "on")
        if isinstance(default, float):
            return float(value)
        if key in ("static_urls", "api_cache_urls"):
            if not isinstance(value, list):
                raise TypeError("expected a list")
            return [str(v) for v in value]
        return str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(
            f"Invalid value for {key}: {value!r} ({e})",
            config_key=key,
        ) from e


def load_settings(secrets_path: Optional[Path] = None) -> OfflineSettings:
    """
    Load offline settings.

    Reads the [offline] table of secrets.toml (if present) and then applies
    environment overrides.

    Args:
        secrets_path: Path to secrets.toml (default: .streamlit/secrets.toml)

    Returns:
        OfflineSettings
    """
    path = Path(secrets_path) if secrets_path else DEFAULT_SECRETS_PATH
    values: Dict[str, Any] = {}

    if path.exists():
        try:
            secrets = toml.load(path)
        except toml.TomlDecodeError as e:
            raise ConfigurationError(f"Could not parse {path}: {e}") from e
        values.update(secrets.get("offline", {}))
        logger.debug(f"Loaded offline settings from {path}")

    for env_var, key in ENV_OVERRIDES.items():
        env_value = os.getenv(env_var)
        if env_value:
            values[key] = env_value

    return OfflineSettings.from_dict(values)
