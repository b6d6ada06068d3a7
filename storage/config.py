"""JSON-backed configuration for the sync engine."""
from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from core.settings import (
    BACKUP,
    CONFIG_PATH,
    CONNECTION,
    HEALTH,
    REMOTE,
    SYNC,
    BackupSettings,
    ConnectionSettings,
    HealthThresholds,
    RemoteSettings,
    SyncSettings,
)


ENV_REMOTE_URL = "TILLBOOK_SYNC_URL"
ENV_REMOTE_API_KEY = "TILLBOOK_SYNC_API_KEY"


@dataclass
class AppConfig:
    """Settings persisted to ``config.json``, one section per dataclass."""

    sync: SyncSettings = field(default_factory=lambda: SYNC)
    health: HealthThresholds = field(default_factory=lambda: HEALTH)
    connection: ConnectionSettings = field(default_factory=lambda: CONNECTION)
    remote: RemoteSettings = field(default_factory=lambda: REMOTE)
    backup: BackupSettings = field(default_factory=lambda: BACKUP)


SECTIONS = tuple(f.name for f in fields(AppConfig))


def _ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _load_raw(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    return data if isinstance(data, dict) else {}


def _overlay(base, values: Any):
    """Return ``base`` with known keys from ``values`` applied; unknown keys are ignored."""

    if not isinstance(values, Mapping):
        return base
    known = {f.name: f for f in fields(base)}
    changes: Dict[str, Any] = {}
    for key, value in values.items():
        if key not in known or value is None:
            continue
        current = getattr(base, key)
        if isinstance(current, Path):
            value = Path(value)
        elif isinstance(current, bool):
            value = bool(value)
        elif isinstance(current, (int, float)) and not isinstance(value, (int, float)):
            try:
                value = type(current)(value)
            except (TypeError, ValueError):
                continue
        changes[key] = value
    return replace(base, **changes) if changes else base


def _apply_env(remote: RemoteSettings, env: Mapping[str, str]) -> RemoteSettings:
    changes = {}
    if env.get(ENV_REMOTE_URL):
        changes["url"] = env[ENV_REMOTE_URL]
    if env.get(ENV_REMOTE_API_KEY):
        changes["api_key"] = env[ENV_REMOTE_API_KEY]
    return replace(remote, **changes) if changes else remote


def load_config(path: Optional[Path] = None, *, env: Optional[Mapping[str, str]] = None) -> AppConfig:
    target = path or CONFIG_PATH
    data = _load_raw(target)
    cfg = AppConfig()
    for section in SECTIONS:
        setattr(cfg, section, _overlay(getattr(cfg, section), data.get(section)))
    cfg.remote = _apply_env(cfg.remote, os.environ if env is None else env)
    return cfg


def _to_json(cfg: AppConfig) -> str:
    payload = asdict(cfg)
    payload["backup"]["directory"] = str(cfg.backup.directory)
    return json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True)


def save_config(config: AppConfig, path: Optional[Path] = None) -> None:
    target = path or CONFIG_PATH
    _ensure_parent(target)
    payload = _to_json(config)
    tmp = target.with_suffix(".tmp")
    try:
        tmp.write_text(payload, encoding="utf-8")
        tmp.replace(target)
    finally:
        if tmp.exists():
            try:
                tmp.unlink()
            except OSError:
                pass


def update_config(section: str, path: Optional[Path] = None, **changes: Any) -> AppConfig:
    if section not in SECTIONS:
        raise ValueError(f"Unknown config section: {section}")
    target = path or CONFIG_PATH
    cfg = load_config(target, env={})
    setattr(cfg, section, _overlay(getattr(cfg, section), changes))
    save_config(cfg, target)
    return cfg


__all__ = ["AppConfig", "SECTIONS", "load_config", "save_config", "update_config"]
