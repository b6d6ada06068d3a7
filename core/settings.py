"""Centralized application configuration defaults."""
from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional
import os
import sys


def get_default_data_dir(
    app_name: str,
    *,
    platform: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    home: Optional[Path] = None,
) -> Path:
    """Return an OS-specific user data directory for ``app_name``."""

    platform_id = (platform or sys.platform).lower()
    environ = dict(env or os.environ)
    home_dir = Path(home or Path.home())
    sanitized = app_name.strip() or "app"
    sanitized = sanitized.replace("/", "-").replace("\\", "-")

    if platform_id.startswith("win"):
        base = Path(environ.get("APPDATA") or home_dir / "AppData" / "Roaming")
    elif platform_id == "darwin":
        base = Path(environ.get("APPDATA") or home_dir / "Library" / "Application Support")
    else:
        base = Path(environ.get("XDG_DATA_HOME") or home_dir / ".local" / "share")

    return (base.expanduser() / sanitized)


APP_NAME = "Tillbook"


DATA_DIR = Path(os.environ.get("TILLBOOK_DATA_DIR") or get_default_data_dir(APP_NAME))
LOG_DIR = DATA_DIR / "logs"
BACKUP_DIR = DATA_DIR / "backups"

DB_PATH = DATA_DIR / "tillbook.db"
CONFIG_PATH = DATA_DIR / "config.json"
SYNC_LOG_PATH = LOG_DIR / "sync.log"


@dataclass(frozen=True)
class SyncSettings:
    # gate on automatic (scheduled) sync only; manual sync_all always runs
    enabled: bool = True
    interval_minutes: int = 5
    batch_size: int = 50
    max_concurrency: int = 4
    request_timeout_sec: float = 15.0
    status_poll_interval_sec: float = 5.0
    stale_syncing_minutes: int = 5
    auto_retry_enabled: bool = True
    auto_retry_max_attempts: int = 5
    auto_retry_max_delay_sec: int = 300
    auto_retry_window_hours: int = 24


@dataclass(frozen=True)
class HealthThresholds:
    error_rate_warning_pct: float = 10.0
    error_rate_critical_pct: float = 20.0
    stuck_retry_threshold: int = 3
    pending_age_warning_minutes: int = 30
    no_sync_critical_minutes: int = 60
    error_rate_window_hours: int = 24
    recent_error_window_minutes: int = 60


@dataclass(frozen=True)
class ConnectionSettings:
    poll_interval_sec: float = 30.0
    timeout_sec: float = 5.0


@dataclass(frozen=True)
class RemoteSettings:
    url: str = ""
    api_key: str = ""
    table_prefix: str = ""


@dataclass(frozen=True)
class BackupSettings:
    enabled: bool = True
    directory: Path = BACKUP_DIR
    keep_days: int = 7


SYNC = SyncSettings()
HEALTH = HealthThresholds()
CONNECTION = ConnectionSettings()
REMOTE = RemoteSettings()
BACKUP = BackupSettings()


def ensure_dirs() -> None:
    for _dir in (DATA_DIR, LOG_DIR, BACKUP_DIR):
        _dir.mkdir(parents=True, exist_ok=True)


__all__ = [
    "APP_NAME",
    "DATA_DIR",
    "LOG_DIR",
    "BACKUP_DIR",
    "DB_PATH",
    "CONFIG_PATH",
    "SYNC_LOG_PATH",
    "SyncSettings",
    "HealthThresholds",
    "ConnectionSettings",
    "RemoteSettings",
    "BackupSettings",
    "SYNC",
    "HEALTH",
    "CONNECTION",
    "REMOTE",
    "BACKUP",
    "ensure_dirs",
    "get_default_data_dir",
]
