# =============================================================================
# tests/unit/test_config.py
# Unit Tests for offline settings loading
# =============================================================================

import pytest
from pathlib import Path

from mess_core.config import OfflineSettings, load_settings, DEFAULT_STATIC_URLS
from mess_core.errors import ConfigurationError


class TestDefaults:
    """Test built-in defaults"""

    def test_defaults(self):
        """Defaults match the documented configuration"""
        settings = OfflineSettings()

        assert settings.api_base_url == "http://localhost:8000"
        assert settings.data_freshness_seconds == 300.0
        assert settings.offline_page == "/offline.html"
        assert settings.static_urls == DEFAULT_STATIC_URLS

    def test_cache_names_are_versioned(self):
        """Partition names carry the cache version"""
        settings = OfflineSettings()

        assert settings.static_cache_name == "mess-manager-v1"
        assert settings.runtime_cache_name == "mess-manager-runtime-v1"
        assert settings.data_cache_name == "mess-manager-data-v1"

    def test_new_version_renames_caches(self):
        """Bumping the version renames every partition"""
        settings = OfflineSettings(cache_version="v2")
        assert settings.data_cache_name == "mess-manager-data-v2"

    def test_origin(self):
        """Origin drops the path from the base URL"""
        settings = OfflineSettings(api_base_url="https://mess.example.com/app/")
        assert settings.origin == "https://mess.example.com"

    def test_url_lists_not_shared(self):
        """URL list defaults are not shared between instances"""
        first = OfflineSettings()
        first.static_urls.append("/extra")
        assert "/extra" not in OfflineSettings().static_urls


class TestLoadSettings:
    """Test secrets.toml and environment loading"""

    @pytest.fixture(autouse=True)
    def clean_env(self, monkeypatch):
        for var in ("MESS_API_BASE_URL", "MESS_OFFLINE_DB", "MESS_AUTH_TOKEN", "MESS_REQUEST_TIMEOUT"):
            monkeypatch.delenv(var, raising=False)

    def test_missing_file_uses_defaults(self, tmp_path):
        """A missing secrets file gives the defaults"""
        settings = load_settings(tmp_path / "nope.toml")
        assert settings == OfflineSettings()

    def test_reads_offline_table(self, tmp_path):
        """Only the [offline] table is read"""
        secrets = tmp_path / "secrets.toml"
        secrets.write_text(
            '[offline]\n'
            'api_base_url = "https://mess.example.com"\n'
            'request_timeout = 20\n'
            'data_freshness_seconds = 60\n'
            'api_cache_urls = ["/api/user"]\n'
            '\n'
            '[auth]\n'
            'url = "ignored"\n'
        )

        settings = load_settings(secrets)

        assert settings.api_base_url == "https://mess.example.com"
        assert settings.request_timeout == 20.0
        assert settings.data_freshness_seconds == 60.0
        assert settings.api_cache_urls == ["/api/user"]

    def test_environment_overrides_file(self, tmp_path, monkeypatch):
        """MESS_* variables win over the file"""
        secrets = tmp_path / "secrets.toml"
        secrets.write_text('[offline]\nauth_token = "from-file"\n')
        monkeypatch.setenv("MESS_AUTH_TOKEN", "from-env")
        monkeypatch.setenv("MESS_OFFLINE_DB", str(tmp_path / "env.db"))
        monkeypatch.setenv("MESS_REQUEST_TIMEOUT", "7.5")

        settings = load_settings(secrets)

        assert settings.auth_token == "from-env"
        assert settings.db_path == Path(tmp_path / "env.db")
        assert settings.request_timeout == 7.5

    def test_unknown_key_raises(self, tmp_path):
        """Unknown keys raise ConfigurationError naming the key"""
        secrets = tmp_path / "secrets.toml"
        secrets.write_text('[offline]\ncache_size = 10\n')

        with pytest.raises(ConfigurationError) as exc_info:
            load_settings(secrets)
        assert exc_info.value.details["config_key"] == "cache_size"

    def test_bad_number_raises(self, tmp_path, monkeypatch):
        """Unparsable numbers raise ConfigurationError"""
        monkeypatch.setenv("MESS_REQUEST_TIMEOUT", "soon")

        with pytest.raises(ConfigurationError):
            load_settings(tmp_path / "nope.toml")

    def test_malformed_toml_raises(self, tmp_path):
        """Broken TOML raises ConfigurationError"""
        secrets = tmp_path / "secrets.toml"
        secrets.write_text("[offline\napi_base_url = ")

        with pytest.raises(ConfigurationError):
            load_settings(secrets)
