"""
Configuration for the conversation store.

Values come from ``config.yaml`` at the project root (optional) and can be
overridden from the environment or a ``.env`` file:

    CHATTY_DB_PATH=/path/to/chatty.db
    CHATTY_BUSY_TIMEOUT=5
    CHATTY_LOG_LEVEL=DEBUG
"""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from dotenv import load_dotenv

load_dotenv()

_CONFIG_PATH = Path(__file__).resolve().parents[1] / "config.yaml"

DEFAULT_BUSY_TIMEOUT: float = 5.0


def load_config(config_path: Optional[Path] = None) -> dict:
    """Read the YAML config file, returning ``{}`` when it does not exist."""
    path = Path(config_path or _CONFIG_PATH)
    if path.exists():
        with open(path, "r") as f:
            return yaml.safe_load(f) or {}
    return {}


def _section(config: Optional[dict], name: str) -> dict:
    if config is None:
        config = load_config()
    return config.get(name) or {}


def get_storage_path(config: Optional[dict] = None) -> str:
    """
    Return the configured database location.

    ``CHATTY_DB_PATH`` wins over ``storage.path``.  An empty string means the
    store should fall back to its default location under the home directory.
    """
    env_path = os.environ.get("CHATTY_DB_PATH", "").strip()
    if env_path:
        return env_path
    return str(_section(config, "storage").get("path") or "").strip()


def get_busy_timeout(config: Optional[dict] = None) -> float:
    """Seconds SQLite waits on a locked database file before giving up."""
    raw = os.environ.get("CHATTY_BUSY_TIMEOUT", "").strip()
    if not raw:
        raw = _section(config, "storage").get("busy_timeout", DEFAULT_BUSY_TIMEOUT)
    try:
        return float(raw)
    except (TypeError, ValueError):
        raise ValueError(f"busy_timeout must be a number of seconds, got {raw!r}") from None


def get_log_level(config: Optional[dict] = None) -> int:
    """Resolve the log level name (``INFO``, ``DEBUG``...) to its numeric value."""
    name = os.environ.get("CHATTY_LOG_LEVEL", "").strip()
    if not name:
        name = str(_section(config, "logging").get("level") or "INFO")
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ValueError(f"unknown log level {name!r}")
    return level
