from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Type, Union

from sqlmodel import Session, SQLModel

from core.sync_types import ChangeType, SyncStatus, parse_status
from datetime_utils import to_rfc3339_utc
from services.connection_monitor import ConnectionMonitor
from services.local_apply import LocalChangeApplier
from services.remote_store import RemoteStore, RestRemoteStore
from services.sync_engine import SyncEngine
from services.sync_health import HealthMonitor
from services.sync_log import get_sync_logger
from services.sync_queue import SyncQueue
from services.sync_scheduler import SyncScheduler
from storage.config import AppConfig, update_config
from storage.conflicts import ConflictStore
from storage.sync_state import SyncStateStore


logger = get_sync_logger()

StatusListener = Callable[[Dict[str, Any]], None]


class SyncService:
    """Control surface for the UI and the domain layer.

    Everything returned here is a plain dict with camelCase keys; enums and
    datetimes stay inside the engine.
    """

    def __init__(
        self,
        engine: SyncEngine,
        health: HealthMonitor,
        *,
        connection: Optional[ConnectionMonitor] = None,
        config: Optional[AppConfig] = None,
        config_path: Optional[Path] = None,
    ) -> None:
        self.engine = engine
        self.queue: SyncQueue = engine.queue
        self.state: SyncStateStore = engine.state
        self.conflicts: ConflictStore = engine.applier.conflicts
        self.health = health
        self.connection = connection
        self.config = config or AppConfig()
        self._config_path = config_path
        self.enabled = self.config.sync.enabled
        self._listeners: List[StatusListener] = []
        self._last_status: Optional[Dict[str, Any]] = None
        self.scheduler = SyncScheduler(
            engine,
            settings=self.config.sync,
            connection=connection,
            publish_status=self.publish_status,
            is_enabled=lambda: self.enabled,
        )

    # ----- queue -----
    def enqueue(
        self,
        table_name: str,
        record_id: Union[str, int],
        change_type: Union[str, ChangeType],
        data: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return self.queue.enqueue(table_name, record_id, change_type, data).to_dict()

    def get_queue(
        self, status: Optional[str] = None, limit: int = 100, offset: int = 0
    ) -> List[Dict[str, Any]]:
        return [item.to_dict() for item in self.queue.list_items(status, limit=limit, offset=offset)]

    def reset_failed(self, ids: Optional[List[int]] = None) -> Dict[str, int]:
        count = self.queue.reset_failed(ids)
        self.publish_status()
        return {"resetCount": count}

    def clear_queue(self, status: Optional[str] = None) -> Dict[str, int]:
        parsed = parse_status(status) if status else None
        if parsed in (None, SyncStatus.PENDING, SyncStatus.SYNCING):
            logger.warning(
                "Clearing %s queue items; unsynced changes will be lost",
                parsed.value if parsed else "all",
            )
        count = self.queue.clear(parsed)
        self.publish_status()
        return {"clearedCount": count}

    # ----- conflicts -----
    def get_conflicts(self, include_resolved: bool = False, limit: int = 100) -> List[Dict[str, Any]]:
        return [c.to_dict() for c in self.conflicts.list_conflicts(include_resolved=include_resolved, limit=limit)]

    async def resolve_conflict(self, conflict_id: int, keep: str) -> Dict[str, Any]:
        resolved = await self.engine.resolve_conflict(conflict_id, keep)
        self.publish_status()
        return resolved.to_dict()

    # ----- sync -----
    async def sync_all(self) -> Dict[str, Any]:
        result = await self.engine.sync_all()
        self.publish_status()
        return result.to_dict()

    async def pull_changes(self) -> Dict[str, Any]:
        result = await self.engine.pull_changes()
        self.publish_status()
        return result.to_dict()

    def set_enabled(self, enabled: bool) -> Dict[str, bool]:
        self.enabled = bool(enabled)
        if self._config_path is not None:
            self.config = update_config("sync", self._config_path, enabled=self.enabled)
        logger.info("Automatic sync %s", "enabled" if self.enabled else "disabled")
        self.publish_status()
        return {"enabled": self.enabled}

    # ----- status -----
    def get_status(self) -> Dict[str, Any]:
        counts = self.queue.counts()
        metrics = self.health.collect()
        return {
            "pending": counts[SyncStatus.PENDING],
            "syncing": counts[SyncStatus.SYNCING],
            "synced": counts[SyncStatus.SYNCED],
            "errors": counts[SyncStatus.ERROR],
            "stuck": metrics.stale_syncing,
            "conflicts": self.conflicts.count_open(),
            "lastSyncAt": to_rfc3339_utc(metrics.last_sync_at),
            "lastPullAt": to_rfc3339_utc(self.state.get_last_pull()),
            "enabled": self.enabled,
            "isConfigured": self.engine.remote.is_configured(),
            "isLocked": self.engine.is_locked,
            "connected": self.connection.connected if self.connection else None,
            "deviceId": self.state.get_device_id(),
        }

    def get_health(self) -> Dict[str, Any]:
        return self.health.check().to_dict()

    def get_connection(self) -> Dict[str, Any]:
        if self.connection is None:
            return {"connected": None, "lastCheckedAt": None}
        return {
            "connected": self.connection.connected,
            "lastCheckedAt": to_rfc3339_utc(self.connection.last_checked_at),
        }

    async def check_connection(self) -> Dict[str, Any]:
        if self.connection is not None:
            await self.connection.check_now()
        return self.get_connection()

    # ----- events -----
    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        self._listeners.append(listener)
        return lambda: self.unsubscribe(listener)

    def unsubscribe(self, listener: StatusListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def publish_status(self) -> Dict[str, Any]:
        """Recompute status and notify listeners only when it changed."""

        status = self.get_status()
        if status == self._last_status:
            return status
        self._last_status = status
        for listener in list(self._listeners):
            try:
                listener(dict(status))
            except Exception:
                logger.exception("Status listener %r failed", listener)
        return status

    # ----- lifecycle -----
    async def start(self) -> None:
        recovered = self.engine.recover_on_startup()
        if recovered:
            logger.warning("Reset %s unconfirmed items to pending on startup", recovered)
        if self.connection is not None:
            self.connection.start()
        self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        if self.connection is not None:
            await self.connection.stop()
        close = getattr(self.engine.remote, "aclose", None)
        if close is not None:
            await close()


def create_sync_service(
    session_factory: Callable[[], Session],
    config: Optional[AppConfig] = None,
    *,
    models: Optional[Mapping[str, Type[SQLModel]]] = None,
    remote: Optional[RemoteStore] = None,
    config_path: Optional[Path] = None,
) -> SyncService:
    """Wire one service instance; callers pass it around instead of importing a global."""

    config = config or AppConfig()
    queue = SyncQueue(session_factory)
    state = SyncStateStore(session_factory)
    if remote is None:
        remote = RestRemoteStore(
            config.remote.url,
            config.remote.api_key,
            table_prefix=config.remote.table_prefix,
            device_id=state.get_device_id(),
            timeout=config.sync.request_timeout_sec,
        )
    connection = ConnectionMonitor(
        remote,
        poll_interval=config.connection.poll_interval_sec,
        timeout=config.connection.timeout_sec,
    )
    engine = SyncEngine(
        session_factory,
        queue,
        state,
        remote,
        LocalChangeApplier(queue, state, ConflictStore(session_factory), models),
        connection=connection,
        settings=config.sync,
    )
    health = HealthMonitor(queue, state, thresholds=config.health, sync_settings=config.sync)
    return SyncService(engine, health, connection=connection, config=config, config_path=config_path)


__all__ = ["StatusListener", "SyncService", "create_sync_service"]
