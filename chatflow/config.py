"""Shared chatflow configuration utilities.

Centralises reading of ~/.chatflow/configuration.json so the engine, the
CLI and embedding services share one implementation. Any engine setting can
be overridden with a ``CHATFLOW_<SETTING>`` environment variable, e.g.
``CHATFLOW_MAX_DEPTH=50``.
"""

import json
import os
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

CHATFLOW_CONFIG_FILE = Path.home() / ".chatflow" / "configuration.json"

DEFAULT_MAX_DEPTH = 100
DEFAULT_SWEEP_INTERVAL_SECONDS = 300.0
DEFAULT_SESSION_TIMEOUT = 30
DEFAULT_SESSION_TIMEOUT_UNIT = "minutes"
NON_PERSISTENT_SESSION_HOURS = 24


def get_config_path() -> Path:
    """Return the configuration file path, honouring CHATFLOW_CONFIG_FILE."""
    override = os.environ.get("CHATFLOW_CONFIG_FILE")
    return Path(override) if override else CHATFLOW_CONFIG_FILE


def get_chatflow_config() -> dict[str, Any]:
    """Load chatflow configuration; missing or malformed files yield {}."""
    config_path = get_config_path()
    if not config_path.exists():
        return {}
    try:
        with open(config_path, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_engine_setting(name: str, default: Any, cast: Callable[[Any], Any] = str) -> Any:
    """Return an engine setting: environment first, then the config file, then default."""
    env_value = os.environ.get(f"CHATFLOW_{name.upper()}")
    if env_value is not None:
        try:
            return cast(env_value)
        except ValueError:
            return default

    value = get_chatflow_config().get("engine", {}).get(name)
    if value is None:
        return default
    try:
        return cast(value)
    except (TypeError, ValueError):
        return default


def get_log_level() -> str:
    """Return the configured log level (default INFO)."""
    return get_chatflow_config().get("logging", {}).get("level", "INFO")


def get_log_format() -> str:
    """Return the configured log format ("json", "human" or "auto")."""
    return get_chatflow_config().get("logging", {}).get("format", "auto")


def _setting(name: str, default: Any, cast: Callable[[Any], Any]) -> Callable[[], Any]:
    return lambda: get_engine_setting(name, default, cast)


# ---------------------------------------------------------------------------
# EngineConfig – shared by FlowEngine and its components
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Flow engine configuration loaded from ~/.chatflow/configuration.json."""

    max_depth: int = field(default_factory=_setting("max_depth", DEFAULT_MAX_DEPTH, int))
    sweep_interval_seconds: float = field(
        default_factory=_setting("sweep_interval_seconds", DEFAULT_SWEEP_INTERVAL_SECONDS, float)
    )
    default_session_timeout: int = field(
        default_factory=_setting("default_session_timeout", DEFAULT_SESSION_TIMEOUT, int)
    )
    default_session_timeout_unit: str = field(
        default_factory=_setting(
            "default_session_timeout_unit", DEFAULT_SESSION_TIMEOUT_UNIT, str
        )
    )
    non_persistent_session_hours: int = field(
        default_factory=_setting(
            "non_persistent_session_hours", NON_PERSISTENT_SESSION_HOURS, int
        )
    )
    dedup_retention: int = field(default_factory=_setting("dedup_retention", 10000, int))
    event_history_size: int = field(default_factory=_setting("event_history_size", 1000, int))
    http_timeout_seconds: float = field(
        default_factory=_setting("http_timeout_seconds", 30.0, float)
    )
