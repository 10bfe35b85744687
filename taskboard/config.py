"""Configuration loading for the task service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path


class ConfigError(RuntimeError):
    """Raised when required configuration is missing or invalid."""


@dataclass(frozen=True)
class AppConfig:
    backend_url: str
    backend_key: str
    tasks_table: str
    service_token: str | None
    realtime_enabled: bool
    request_timeout: float
    log_level: int
    session_idle_timeout: float = 900.0


def _read_dotenv_value(dotenv_path: Path, key: str) -> str | None:
    """Read a single key from a .env file without mutating the environment."""
    if not dotenv_path.is_file():
        return None
    try:
        content = dotenv_path.read_text(encoding="utf-8")
    except OSError:
        return None

    for line in content.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        if stripped.startswith("export "):
            stripped = stripped[len("export ") :].strip()
        if "=" not in stripped:
            continue
        name, value = stripped.split("=", 1)
        if name.strip() != key:
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        return value or None
    return None


def _read_value(dotenv_path: Path, key: str) -> str | None:
    raw_value = os.environ.get(key)
    if raw_value is None:
        raw_value = _read_dotenv_value(dotenv_path, key)
    if raw_value is None:
        return None
    return raw_value.strip() or None


def _read_bool(raw_value: str | None, *, default: bool, key: str) -> bool:
    if raw_value is None:
        return default
    normalized = raw_value.strip().lower()
    if not normalized:
        return default
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ConfigError(f"{key} must be a boolean value.")


def _read_timeout(raw_value: str | None, *, default: float, key: str) -> float:
    if raw_value is None:
        return default
    try:
        timeout = float(raw_value)
    except ValueError:
        raise ConfigError(f"{key} must be a number of seconds.") from None
    if timeout <= 0:
        raise ConfigError(f"{key} must be greater than zero.")
    return timeout


def _read_log_level(raw_value: str | None, *, key: str) -> int:
    if raw_value is None:
        return logging.INFO
    level = logging.getLevelName(raw_value.upper())
    if not isinstance(level, int):
        raise ConfigError(f"{key} must be a logging level name.")
    return level


def load_config() -> AppConfig:
    """Load required configuration from the environment."""
    dotenv_path = Path.cwd() / ".env"

    url_key = "TASKBOARD_BACKEND_URL"
    backend_url = _read_value(dotenv_path, url_key)
    if not backend_url:
        raise ConfigError(
            "TASKBOARD_BACKEND_URL is required; set it to the hosted backend URL."
        )
    if not backend_url.startswith(("http://", "https://")):
        raise ConfigError(f"{url_key} must be an http(s) URL.")

    key_key = "TASKBOARD_BACKEND_KEY"
    backend_key = _read_value(dotenv_path, key_key)
    if not backend_key:
        raise ConfigError(
            "TASKBOARD_BACKEND_KEY is required; set it to the backend API key."
        )

    table_key = "TASKBOARD_TASKS_TABLE"
    tasks_table = _read_value(dotenv_path, table_key) or "tasks"

    service_token_key = "TASKBOARD_SERVICE_TOKEN"
    service_token = _read_value(dotenv_path, service_token_key)

    realtime_key = "TASKBOARD_REALTIME"
    realtime_enabled = _read_bool(
        _read_value(dotenv_path, realtime_key), default=True, key=realtime_key
    )

    timeout_key = "TASKBOARD_REQUEST_TIMEOUT"
    request_timeout = _read_timeout(
        _read_value(dotenv_path, timeout_key), default=10.0, key=timeout_key
    )

    level_key = "TASKBOARD_LOG_LEVEL"
    log_level = _read_log_level(_read_value(dotenv_path, level_key), key=level_key)

    idle_key = "TASKBOARD_SESSION_IDLE_TIMEOUT"
    session_idle_timeout = _read_timeout(
        _read_value(dotenv_path, idle_key), default=900.0, key=idle_key
    )

    return AppConfig(
        backend_url=backend_url.rstrip("/"),
        backend_key=backend_key,
        tasks_table=tasks_table,
        service_token=service_token,
        realtime_enabled=realtime_enabled,
        request_timeout=request_timeout,
        log_level=log_level,
        session_idle_timeout=session_idle_timeout,
    )
