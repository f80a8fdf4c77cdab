# src/taskcore/config.py

"""Centralized settings loaded from environment variables (+ optional .env).

Design goals:
- One Settings object for the whole app (normal "settings layer").
- No secrets required at import time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import tzinfo
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

ENV_PREFIX = "TASKCORE"


def _k(suffix: str) -> str:
    """Build env var name with the project prefix."""
    return f"{ENV_PREFIX}_{suffix}"


load_dotenv(override=False)


def _env(name: str, default: str = "") -> str:
    v = os.getenv(name)
    return default if v is None else v


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


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

    # ---- Identity (from the auth layer; only seeds the default assignee) ----
    current_user: str

    # ---- Due dates ----
    timezone: str  # IANA name; empty => process-local timezone

    # ---- Overdue sweep ----
    sweep_enabled: bool
    sweep_interval_seconds: float
    sweep_max_load: float  # skip a period above this 1-min load average; <= 0 disables

    # ---- Connector flags ----
    console_enabled: bool
    matrix_enabled: bool

    # ---- Matrix (overdue notifications) ----
    matrix_homeserver: str
    matrix_user_id: str
    matrix_password: str
    matrix_room_id: str

    # ---- Local data paths (ignored by git) ----
    data_dir: Path
    db_path: Path
    files_dir: Path
    matrix_store_path: Path

    @staticmethod
    def from_env() -> "Settings":
        data_dir = _env_path(_k("DATA_DIR"), Path(".local/taskcore"))

        return Settings(
            app_name=_env(_k("APP_NAME"), "taskcore") or "taskcore",
            log_level=_env(_k("LOG_LEVEL"), "INFO"),
            current_user=_env(_k("CURRENT_USER"), os.getenv("USER", "")).strip(),
            timezone=_env(_k("TIMEZONE"), "").strip(),
            sweep_enabled=_env_bool(_k("SWEEP_ENABLED"), True),
            sweep_interval_seconds=max(1.0, _env_float(_k("SWEEP_INTERVAL_SECONDS"), 3600.0)),
            sweep_max_load=_env_float(_k("SWEEP_MAX_LOAD"), 0.0),
            console_enabled=_env_bool(_k("CONSOLE_ENABLED"), True),
            matrix_enabled=_env_bool(_k("MATRIX_ENABLED"), False),
            matrix_homeserver=_env(_k("MATRIX_HOMESERVER")).strip(),
            matrix_user_id=_env(_k("MATRIX_USER_ID")).strip(),
            matrix_password=_env(_k("MATRIX_PASSWORD")).strip(),
            matrix_room_id=_env(_k("MATRIX_ROOM_ID")).strip(),
            data_dir=data_dir,
            db_path=_env_path(_k("DB_PATH"), data_dir / "taskcore.sqlite3"),
            files_dir=_env_path(_k("FILES_DIR"), data_dir / "task_files"),
            matrix_store_path=_env_path(_k("MATRIX_STORE_PATH"), data_dir / "matrix_store"),
        )

    def due_timezone(self) -> tzinfo | None:
        """Timezone for due dates; None means the process-local timezone."""
        if not self.timezone:
            return None
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError):
            return None


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS
