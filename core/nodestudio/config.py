"""Shared NodeStudio configuration.

Reads ~/.nodestudio/configuration.json once per call so the CLI, the
runtime and the built-in generation nodes agree on polling and persistence
settings. Environment variables override the file.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

STUDIO_CONFIG_FILE = Path.home() / ".nodestudio" / "configuration.json"

DEFAULT_POLL_INTERVAL_MS = 1000
DEFAULT_MAX_POLL_INTERVAL_MS = 8000
DEFAULT_MAX_WAIT_MS = 300_000
DEFAULT_SAVE_DEBOUNCE_MS = 400
DEFAULT_MAX_RUNS = 100


def get_studio_config() -> dict[str, Any]:
    """Load configuration from ~/.nodestudio/configuration.json."""
    if not STUDIO_CONFIG_FILE.exists():
        return {}
    try:
        with open(STUDIO_CONFIG_FILE, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _section(name: str) -> dict[str, Any]:
    section = get_studio_config().get(name)
    return section if isinstance(section, dict) else {}


def _int_setting(section: str, key: str, env_var: str | None, default: int) -> int:
    if env_var:
        raw = os.environ.get(env_var)
        if raw is not None:
            try:
                return int(raw)
            except ValueError:
                pass
    value = _section(section).get(key)
    if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
        return value
    return default


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_log_level() -> str:
    """Return the configured log level name."""
    env_level = os.environ.get("NODESTUDIO_LOG_LEVEL")
    if env_level:
        return env_level.upper()
    return str(_section("logging").get("level", "INFO")).upper()


def get_save_debounce_ms() -> int:
    return _int_setting("persistence", "save_debounce_ms", "NODESTUDIO_SAVE_DEBOUNCE_MS", DEFAULT_SAVE_DEBOUNCE_MS)


def get_max_runs() -> int:
    return _int_setting("persistence", "max_runs", None, DEFAULT_MAX_RUNS)


def get_poll_interval_ms() -> int:
    return _int_setting("generation", "poll_interval_ms", None, DEFAULT_POLL_INTERVAL_MS)


def get_max_poll_interval_ms() -> int:
    return _int_setting("generation", "max_poll_interval_ms", None, DEFAULT_MAX_POLL_INTERVAL_MS)


def get_max_wait_ms() -> int:
    return _int_setting("generation", "max_wait_ms", None, DEFAULT_MAX_WAIT_MS)


# ---------------------------------------------------------------------------
# StudioSettings – shared across runtime, CLI and built-in nodes
# ---------------------------------------------------------------------------


@dataclass
class StudioSettings:
    """Runtime settings loaded from ~/.nodestudio/configuration.json."""

    poll_interval_ms: int = field(default_factory=get_poll_interval_ms)
    max_poll_interval_ms: int = field(default_factory=get_max_poll_interval_ms)
    max_wait_ms: int = field(default_factory=get_max_wait_ms)
    save_debounce_ms: int = field(default_factory=get_save_debounce_ms)
    max_runs: int = field(default_factory=get_max_runs)
    log_level: str = field(default_factory=get_log_level)
