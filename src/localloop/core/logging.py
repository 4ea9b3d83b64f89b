"""
Logging setup for the engine and the CLI.

The packaged `logging.yaml` provides handlers and formatters; the level comes from
settings (`LOCALLOOP_LOG_LEVEL`).

HTTP client loggers are pinned to WARNING whatever the level: httpx logs full
request URLs, and the Mapbox access token travels in the query string.
"""

from __future__ import annotations

import copy
import logging.config
from typing import Any

from localloop.config.settings import get_logging_config, get_settings

HTTP_CLIENT_LOGGERS = ("httpx", "httpcore")


def build_logging_config(level: str) -> dict[str, Any]:
    """Return a `dictConfig` payload for `level` without touching the cached YAML."""
    config = copy.deepcopy(get_logging_config())
    level = level.upper()

    config.setdefault("root", {})["level"] = level
    for handler in config.get("handlers", {}).values():
        if isinstance(handler, dict) and "level" in handler:
            handler["level"] = level

    loggers = config.setdefault("loggers", {})
    for name in HTTP_CLIENT_LOGGERS:
        loggers.setdefault(name, {})["level"] = "WARNING"
    return config


def configure_logging(level: str | None = None) -> None:
    """Apply the packaged logging config at `level` (defaults to the settings value)."""
    logging.config.dictConfig(build_logging_config(level or get_settings().app.log_level))
