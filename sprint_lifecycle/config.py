"""Runtime settings for sprint-lifecycle.

Configuration (in order of precedence):
1. Environment variables (SPRINT_LIFECYCLE_DB, SPRINT_LIFECYCLE_URL,
   SPRINT_LIFECYCLE_WEBHOOK_URL, SPRINT_LIFECYCLE_WEBHOOK_TIMEOUT,
   SPRINT_LIFECYCLE_LOG_LEVEL)
2. YAML config file ($SPRINT_LIFECYCLE_CONFIG or
   ~/.config/sprint-lifecycle/config.yml)
3. Built-in defaults
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = "/data/sprint-lifecycle.db"
DEFAULT_WEBHOOK_TIMEOUT = 10.0

_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


class ConfigError(Exception):
    """Raised when configuration is missing or invalid."""


@dataclass(frozen=True)
class Settings:
    db_path: str = DEFAULT_DB_PATH
    webhook_url: str = ""
    server_url: str = ""
    webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT
    log_level: str = "INFO"


def get_config_path() -> Path:
    """Get the path to the YAML config file."""
    override = os.getenv("SPRINT_LIFECYCLE_CONFIG", "").strip()
    if override:
        return Path(override)
    return Path.home() / ".config" / "sprint-lifecycle" / "config.yml"


def load_config_file(path: Path | None = None) -> dict:
    """Load the YAML config file.

    Returns:
        Parsed config dict, or an empty dict if missing or unreadable.
    """
    path = path if path is not None else get_config_path()
    if not path.exists():
        return {}

    try:
        with path.open(encoding="utf-8") as f:
            result = yaml.safe_load(f)
    except (yaml.YAMLError, PermissionError, OSError) as e:
        logger.debug("Could not load config file %s: %s", path, e)
        return {}
    return result if isinstance(result, dict) else {}


def _parse_timeout(value: object) -> float:
    try:
        timeout = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        msg = f"Invalid webhook timeout: {value!r}"
        raise ConfigError(msg) from None
    if timeout <= 0:
        msg = f"Webhook timeout must be positive, got {timeout}"
        raise ConfigError(msg)
    return timeout


def _parse_log_level(value: object) -> str:
    level = str(value).strip().upper()
    if level not in _LOG_LEVELS:
        msg = f"Invalid log level: {value!r}"
        raise ConfigError(msg)
    return level


def load_settings(path: Path | None = None) -> Settings:
    """Build Settings from the config file with environment overrides.

    Raises:
        ConfigError: If a value cannot be parsed.
    """
    file_config = load_config_file(path)

    db_path = os.getenv("SPRINT_LIFECYCLE_DB") or file_config.get("db_path")
    webhook_url = os.getenv("SPRINT_LIFECYCLE_WEBHOOK_URL") or file_config.get(
        "webhook_url"
    )
    timeout = os.getenv("SPRINT_LIFECYCLE_WEBHOOK_TIMEOUT") or file_config.get(
        "webhook_timeout"
    )
    server_url = os.getenv("SPRINT_LIFECYCLE_URL") or file_config.get("server_url")
    log_level = os.getenv("SPRINT_LIFECYCLE_LOG_LEVEL") or file_config.get(
        "log_level"
    )

    return Settings(
        db_path=str(db_path) if db_path else DEFAULT_DB_PATH,
        webhook_url=str(webhook_url).strip() if webhook_url else "",
        server_url=str(server_url).strip() if server_url else "",
        webhook_timeout=(
            _parse_timeout(timeout) if timeout is not None else DEFAULT_WEBHOOK_TIMEOUT
        ),
        log_level=_parse_log_level(log_level) if log_level else "INFO",
    )
