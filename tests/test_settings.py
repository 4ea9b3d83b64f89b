from __future__ import annotations

import pytest

from localloop.config.settings import get_logging_config, get_settings
from localloop.core.env import load_dotenv_if_present
from localloop.core.logging import build_logging_config


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch, tmp_path):
    # Point dotenv at an empty location so a developer's `.env` cannot leak into assertions.
    monkeypatch.setenv("LOCALLOOP_ENV_FILE", str(tmp_path / "missing.env"))
    for name in ("LOCALLOOP_CONFIG_PATH", "LOCALLOOP_LOG_LEVEL", "MAPBOX_TOKEN", "SUPABASE_URL", "SUPABASE_ANON_KEY"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    load_dotenv_if_present.cache_clear()
    yield
    get_settings.cache_clear()
    load_dotenv_if_present.cache_clear()


def test_packaged_defaults():
    settings = get_settings()

    assert settings.verification.tolerance_m == 100
    assert settings.verification.timeout_seconds == 15
    assert settings.geocoding.types == ["address", "poi"]
    assert settings.geocoding.min_query_length == 5
    assert settings.codes.length == 6
    assert settings.codes.vouch_window_minutes == 1440
    assert settings.geocoding.access_token is None


def test_credentials_come_from_environment(monkeypatch):
    monkeypatch.setenv("MAPBOX_TOKEN", "pk.test")
    monkeypatch.setenv("SUPABASE_URL", "https://example.supabase.co")
    monkeypatch.setenv("SUPABASE_ANON_KEY", "anon")
    monkeypatch.setenv("LOCALLOOP_LOG_LEVEL", "DEBUG")

    settings = get_settings()

    assert settings.geocoding.access_token == "pk.test"
    assert settings.authority.base_url == "https://example.supabase.co"
    assert settings.authority.anon_key == "anon"
    assert settings.app.log_level == "DEBUG"


def test_external_config_file_replaces_defaults(monkeypatch, tmp_path):
    config = tmp_path / "localloop.yaml"
    config.write_text("verification:\n  tolerance_m: 250\ncodes:\n  vouch_window_minutes: 60\n", encoding="utf-8")
    monkeypatch.setenv("LOCALLOOP_CONFIG_PATH", str(config))

    settings = get_settings()

    assert settings.verification.tolerance_m == 250
    assert settings.codes.vouch_window_minutes == 60
    # Sections missing from the file fall back to model defaults.
    assert settings.geocoding.debounce_seconds == 0.6


def test_invalid_values_are_rejected(monkeypatch, tmp_path):
    config = tmp_path / "bad.yaml"
    config.write_text("verification:\n  tolerance_m: 0\n", encoding="utf-8")
    monkeypatch.setenv("LOCALLOOP_CONFIG_PATH", str(config))

    with pytest.raises(ValueError):
        get_settings()


def test_non_mapping_yaml_root_is_rejected(monkeypatch, tmp_path):
    config = tmp_path / "list.yaml"
    config.write_text("- 1\n- 2\n", encoding="utf-8")
    monkeypatch.setenv("LOCALLOOP_CONFIG_PATH", str(config))

    with pytest.raises(ValueError, match="expected a mapping"):
        get_settings()


def test_logging_config_is_a_dict_config():
    config = get_logging_config()
    assert config["version"] == 1
    assert "console" in config["handlers"]


def test_logging_config_keeps_http_clients_quiet_at_debug():
    config = build_logging_config("debug")

    assert config["root"]["level"] == "DEBUG"
    assert config["handlers"]["console"]["level"] == "DEBUG"
    assert config["loggers"]["httpx"]["level"] == "WARNING"
    assert config["loggers"]["httpcore"]["level"] == "WARNING"
    # The cached packaged config is left as shipped.
    assert get_logging_config()["root"]["level"] == "INFO"
