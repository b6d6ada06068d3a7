from __future__ import annotations

import asyncio
from typing import Callable, List, Optional, Tuple

from core.settings import SYNC, SyncSettings
from services.connection_monitor import ConnectionMonitor
from services.sync_engine import PullResult, SyncEngine, SyncResult
from services.sync_errors import SyncConfigurationError
from services.sync_log import get_sync_logger


logger = get_sync_logger("scheduler")


class SyncScheduler:
    """Background loops: status refresh and timed auto-sync (push, then pull)."""

    def __init__(
        self,
        engine: SyncEngine,
        *,
        settings: SyncSettings = SYNC,
        connection: Optional[ConnectionMonitor] = None,
        publish_status: Optional[Callable[[], None]] = None,
        is_enabled: Optional[Callable[[], bool]] = None,
    ) -> None:
        self._engine = engine
        self.settings = settings
        self._connection = connection
        self._publish_status = publish_status or (lambda: None)
        self._is_enabled = is_enabled or (lambda: settings.enabled)
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    async def run_auto_sync_once(self) -> Optional[Tuple[SyncResult, PullResult]]:
        if not self._is_enabled():
            return None
        if self._connection is not None and self._connection.connected is False:
            logger.debug("Auto-sync skipped: remote store unreachable")
            return None
        pushed = await self._engine.sync_all()
        pulled = await self._engine.pull_changes()
        self._publish_status()
        return pushed, pulled

    async def _status_loop(self) -> None:
        while True:
            try:
                self._publish_status()
            except Exception:
                logger.exception("Status refresh failed")
            await asyncio.sleep(self.settings.status_poll_interval_sec)

    async def _sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.interval_minutes * 60)
            try:
                await self.run_auto_sync_once()
            except SyncConfigurationError as exc:
                logger.warning("Auto-sync skipped: %s", exc)
            except Exception:
                logger.exception("Auto-sync failed")

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(self._status_loop()),
            asyncio.create_task(self._sync_loop()),
        ]
        logger.info("Scheduler started (auto-sync every %s min)", self.settings.interval_minutes)

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass


__all__ = ["SyncScheduler"]
