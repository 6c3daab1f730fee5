# src/task_lifecycle/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
- Invalid values fall back to defaults instead of failing at startup.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .core.retry import RetryPolicy

ENV_PREFIX = "TASKLINE"

load_dotenv(override=False)


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_path(name: str, default: Path) -> Path:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return Path(raw).expanduser()


@dataclass(frozen=True, slots=True)
class Settings:
    # ---- App / logging ----
    app_name: str
    log_level: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path

    # ---- Store resilience ----
    store_retry_attempts: int
    store_retry_base_delay: float
    store_retry_max_delay: float
    sqlite_timeout: float

    # ---- Console ----
    console_user: str

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max(1, self.store_retry_attempts),
            base_delay=max(0.0, self.store_retry_base_delay),
            max_delay=max(0.0, self.store_retry_max_delay),
        )

    @staticmethod
    def from_env() -> "Settings":
        app_name = _env(_k("APP_NAME"), "taskline").strip() or "taskline"
        log_level = _env(_k("LOG_LEVEL"), "INFO").strip().upper() or "INFO"

        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskline"))
        db_path = _env_path(_k("DB_PATH"), data_dir / "tasks.sqlite3")

        return Settings(
            app_name=app_name,
            log_level=log_level,
            data_dir=data_dir,
            db_path=db_path,
            store_retry_attempts=_env_int(_k("STORE_RETRY_ATTEMPTS"), 3),
            store_retry_base_delay=_env_float(_k("STORE_RETRY_BASE_DELAY"), 0.05),
            store_retry_max_delay=_env_float(_k("STORE_RETRY_MAX_DELAY"), 1.0),
            sqlite_timeout=_env_float(_k("SQLITE_TIMEOUT"), 5.0),
            console_user=_env(_k("CONSOLE_USER"), "").strip(),
        )


SETTINGS = Settings.from_env()


def get_settings() -> Settings:
    return SETTINGS
