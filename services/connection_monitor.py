from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

import httpx

from datetime_utils import utc_now
from services.remote_store import RemoteStore
from services.sync_errors import SyncError
from services.sync_log import get_sync_logger


logger = get_sync_logger("connection")


class ConnectionMonitor:
    """Cached reachability of the remote store.

    ``connected`` is ``None`` until the first probe finishes. Probes never
    raise; any failure just reads as disconnected.
    """

    def __init__(self, remote: RemoteStore, *, poll_interval: float = 30.0, timeout: float = 5.0):
        self._remote = remote
        self.poll_interval = poll_interval
        self.timeout = timeout
        self.connected: Optional[bool] = None
        self.last_checked_at: Optional[datetime] = None
        self._task: Optional[asyncio.Task] = None

    async def check_now(self) -> bool:
        previous = self.connected
        if not self._remote.is_configured():
            state = False
        else:
            try:
                state = bool(await asyncio.wait_for(self._remote.ping(), timeout=self.timeout))
            except (asyncio.TimeoutError, httpx.HTTPError, SyncError, OSError) as exc:
                logger.debug("Connectivity probe failed: %s", exc)
                state = False
            except Exception:
                logger.exception("Connectivity probe raised unexpectedly")
                state = False
        self.connected = state
        self.last_checked_at = utc_now()
        if previous is not state:
            logger.info("Remote store %s", "reachable" if state else "unreachable")
        return state

    async def _loop(self) -> None:
        while True:
            await self.check_now()
            await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass


__all__ = ["ConnectionMonitor"]
