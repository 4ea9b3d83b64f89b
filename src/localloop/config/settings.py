# src/localloop/config/settings.py
"""
Application settings (Pydantic).

Settings are loaded from `src/localloop/config/defaults.yaml`, then optionally overridden by:
- environment variables (e.g., `MAPBOX_TOKEN`, `SUPABASE_URL`, `SUPABASE_ANON_KEY`)
- an external YAML file via `LOCALLOOP_CONFIG_PATH`

Design rule:
- Tolerances, budgets and windows live in YAML, not hard-coded in the engine.
"""

from __future__ import annotations

import os
from functools import lru_cache
from importlib import resources
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field

from localloop.core.env import load_dotenv_if_present


def _read_package_yaml(filename: str) -> dict[str, Any]:
    """Read a YAML file packaged inside `localloop.config`."""
    text = resources.files("localloop.config").joinpath(filename).read_text(encoding="utf-8")
    data = yaml.safe_load(text) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {filename}; expected a mapping.")
    return data


def _read_yaml_file(path: str | Path) -> dict[str, Any]:
    """Read a YAML file from disk and return its mapping root."""
    data = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Invalid YAML root object for {path}; expected a mapping.")
    return data


class AppSettings(BaseModel):
    name: str = "LocalLoop"
    timezone: str = "UTC"
    http_timeout_seconds: float = 15
    log_level: str = "INFO"


class GeocodingSettings(BaseModel):
    base_url: str = "https://api.mapbox.com/geocoding/v5/mapbox.places"
    access_token: str | None = None
    types: list[str] = Field(default_factory=lambda: ["address", "poi"])
    limit: int = Field(1, ge=1)
    min_query_length: int = Field(5, ge=1)
    debounce_seconds: float = Field(0.6, ge=0)


class AuthoritySettings(BaseModel):
    base_url: str | None = None
    anon_key: str | None = None


class VerificationSettings(BaseModel):
    tolerance_m: float = Field(100.0, gt=0)
    timeout_seconds: float = Field(15.0, gt=0)
    high_accuracy: bool = True


class IdentitySettings(BaseModel):
    min_display_name_length: int = Field(2, ge=1)


class CodeSettings(BaseModel):
    length: int = Field(6, ge=1)
    countdown_refresh_seconds: float = Field(30.0, gt=0)
    vouch_window_minutes: int = Field(24 * 60, ge=1)
    urgent_threshold_minutes: int = Field(240, ge=0)
    new_badge_minutes: int = Field(120, ge=0)


class Settings(BaseModel):
    app: AppSettings = Field(default_factory=AppSettings)
    geocoding: GeocodingSettings = Field(default_factory=GeocodingSettings)
    authority: AuthoritySettings = Field(default_factory=AuthoritySettings)
    verification: VerificationSettings = Field(default_factory=VerificationSettings)
    identity: IdentitySettings = Field(default_factory=IdentitySettings)
    codes: CodeSettings = Field(default_factory=CodeSettings)


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Overlay selected environment variables onto raw settings payload.

    Note: We intentionally keep this whitelist small; credentials only ever come from the environment.
    """
    load_dotenv_if_present()
    data = dict(data)

    log_level = os.getenv("LOCALLOOP_LOG_LEVEL")
    if log_level:
        data.setdefault("app", {})["log_level"] = log_level

    mapbox_token = os.getenv("MAPBOX_TOKEN")
    if mapbox_token:
        data.setdefault("geocoding", {})["access_token"] = mapbox_token

    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_ANON_KEY")
    if supabase_url:
        data.setdefault("authority", {})["base_url"] = supabase_url
    if supabase_key:
        data.setdefault("authority", {})["anon_key"] = supabase_key

    return data


@lru_cache
def get_settings() -> Settings:
    """Load and validate settings (cached)."""
    load_dotenv_if_present()
    config_path = os.getenv("LOCALLOOP_CONFIG_PATH")
    raw = _read_yaml_file(config_path) if config_path else _read_package_yaml("defaults.yaml")
    raw = _apply_env_overrides(raw)
    return Settings.model_validate(raw)


@lru_cache
def get_logging_config() -> dict[str, Any]:
    """Load logging configuration (cached)."""
    return _read_package_yaml("logging.yaml")
