"""Push/pull orchestration over the queue store and a remote store."""
from __future__ import annotations

import asyncio
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

import httpx
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from core.settings import SYNC, SyncSettings
from core.sync_types import ChangeType
from datetime_utils import to_rfc3339_utc, utc_now
from services.connection_monitor import ConnectionMonitor
from services.local_apply import ApplyOutcome, LocalChangeApplier
from services.remote_store import RemoteAck, RemoteChange, RemoteStore
from services.sync_errors import (
    PERMANENT_PREFIX,
    RemoteError,
    SyncConfigurationError,
    classify_error,
    describe_error,
    format_item_error,
)
from services.sync_log import get_sync_logger
from services.sync_queue import QueueItem, RecordKey, SyncQueue
from storage.conflicts import RESOLUTIONS, RESOLVE_REMOTE, ConflictRecord
from storage.sync_state import SyncStateStore


logger = get_sync_logger("engine")

SKIP_BUSY = "busy"
SKIP_OFFLINE = "offline"


@dataclass
class SyncResult:
    synced_count: int = 0
    error_count: int = 0
    blocked_count: int = 0
    requeued_count: int = 0
    recovered_count: int = 0
    skipped: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utc_now)
    finished_at: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return self.skipped is None and self.error_count == 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "syncedCount": self.synced_count,
            "errorCount": self.error_count,
            "blockedCount": self.blocked_count,
            "requeuedCount": self.requeued_count,
            "recoveredCount": self.recovered_count,
            "skipped": self.skipped,
            "errors": list(self.errors),
            "startedAt": to_rfc3339_utc(self.started_at),
            "finishedAt": to_rfc3339_utc(self.finished_at),
        }


@dataclass
class PullResult:
    applied_count: int = 0
    skipped_count: int = 0
    conflict_count: int = 0
    failed_count: int = 0
    watermark: Optional[str] = None
    error: Optional[str] = None
    skipped: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.skipped is None and self.error is None and self.failed_count == 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "success": self.success,
            "appliedCount": self.applied_count,
            "skippedCount": self.skipped_count,
            "conflictCount": self.conflict_count,
            "failedCount": self.failed_count,
            "watermark": self.watermark,
            "error": self.error,
            "skipped": self.skipped,
        }


class SyncEngine:
    """Single-flight push and pull.

    One ``asyncio.Lock`` serializes both directions; a call made while the
    lock is held returns at once with ``skipped="busy"``. Item failures are
    recorded on the queue; storage faults and a misconfigured remote raise.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        queue: SyncQueue,
        state: SyncStateStore,
        remote: RemoteStore,
        applier: LocalChangeApplier,
        *,
        connection: Optional[ConnectionMonitor] = None,
        settings: SyncSettings = SYNC,
    ) -> None:
        self._session_factory = session_factory
        self.queue = queue
        self.state = state
        self.remote = remote
        self.applier = applier
        self.connection = connection
        self.settings = settings
        self._lock = asyncio.Lock()

    @property
    def is_locked(self) -> bool:
        return self._lock.locked()

    def recover_on_startup(self) -> int:
        return self.queue.recover_syncing()

    async def _is_online(self) -> bool:
        if self.connection is None:
            return True
        state = self.connection.connected
        if state is False:
            # cached signal may be stale; probe once before giving up
            state = await self.connection.check_now()
        return state is not False

    def _ensure_configured(self) -> None:
        if not self.remote.is_configured():
            raise SyncConfigurationError("Remote store is not configured")

    # ------------------------------------------------------------------
    # Push
    async def sync_all(self) -> SyncResult:
        if self._lock.locked():
            logger.info("Sync already in progress; skipping")
            return SyncResult(skipped=SKIP_BUSY, finished_at=utc_now())

        async with self._lock:
            self._ensure_configured()
            result = SyncResult()
            if not await self._is_online():
                logger.info("Remote store unreachable; push skipped")
                result.skipped = SKIP_OFFLINE
                result.finished_at = utc_now()
                return result

            result.recovered_count = self.queue.recover_syncing()
            if self.settings.auto_retry_enabled:
                result.requeued_count = self.queue.requeue_retryable(
                    max_attempts=self.settings.auto_retry_max_attempts,
                    max_delay_sec=self.settings.auto_retry_max_delay_sec,
                    window_hours=self.settings.auto_retry_window_hours,
                )

            # items enqueued while this run is in flight wait for the next one
            ceiling = self.queue.max_id()
            blocked = self.queue.blocked_keys()
            after_id = 0
            while True:
                batch = self.queue.pending_batch(self.settings.batch_size, after_id=after_id, max_id=ceiling)
                if not batch:
                    break
                after_id = batch[-1].id
                await self._push_batch(batch, blocked, result)

            if result.synced_count:
                self.state.set_last_push()
            result.finished_at = utc_now()
            logger.info(
                "Push finished: %s synced, %s failed, %s blocked",
                result.synced_count,
                result.error_count,
                result.blocked_count,
            )
            return result

    async def _push_batch(self, batch: List[QueueItem], blocked: Set[RecordKey], result: SyncResult) -> None:
        chains: "OrderedDict[RecordKey, List[QueueItem]]" = OrderedDict()
        for item in batch:
            chains.setdefault(item.key, []).append(item)

        semaphore = asyncio.Semaphore(max(1, self.settings.max_concurrency))

        async def run_chain(key: RecordKey, items: List[QueueItem]) -> None:
            async with semaphore:
                for index, item in enumerate(items):
                    if key in blocked:
                        result.blocked_count += len(items) - index
                        return
                    if not await self._push_item(item, result):
                        blocked.add(key)

        tasks = [asyncio.create_task(run_chain(key, items)) for key, items in chains.items()]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            raise

    async def _send(self, item: QueueItem) -> RemoteAck:
        remote_id = self.state.remote_id_for(item.table_name, item.record_id) or item.record_id
        if item.change_type is ChangeType.DELETE:
            call = self.remote.delete(item.table_name, remote_id, item.data)
        else:
            call = self.remote.upsert(item.table_name, remote_id, item.data or {})
        return await asyncio.wait_for(call, timeout=self.settings.request_timeout_sec)

    async def _push_item(self, item: QueueItem, result: SyncResult) -> bool:
        if not self.queue.mark_syncing([item.id]):
            # cleared or already handled since the batch was read
            return True

        if item.parse_error:
            message = f"{PERMANENT_PREFIX} Stored payload is not valid JSON"
            self.queue.mark_error(item.id, message)
            result.error_count += 1
            result.errors.append(f"#{item.id} {item.table_name}:{item.record_id}: {message}")
            return False

        try:
            ack = await self._send(item)
        except (SyncConfigurationError, SQLAlchemyError):
            raise
        except Exception as exc:
            message = format_item_error(exc)
            self.queue.mark_error(item.id, message, retry_delay_sec=classify_error(exc).retry_delay_sec)
            result.error_count += 1
            result.errors.append(f"#{item.id} {item.table_name}:{item.record_id}: {message}")
            logger.warning("Push of #%s %s:%s failed: %s", item.id, item.table_name, item.record_id, message)
            return False

        self.queue.mark_synced(item.id, remote_id=ack.remote_id if ack else None)
        result.synced_count += 1
        logger.debug("Pushed #%s %s:%s", item.id, item.table_name, item.record_id)
        return True

    # ------------------------------------------------------------------
    # Pull
    async def pull_changes(self) -> PullResult:
        if self._lock.locked():
            logger.info("Sync already in progress; pull skipped")
            return PullResult(skipped=SKIP_BUSY)

        async with self._lock:
            self._ensure_configured()
            if not await self._is_online():
                logger.info("Remote store unreachable; pull skipped")
                return PullResult(skipped=SKIP_OFFLINE, error="Remote store unreachable")

            since = self.state.get_watermark()
            try:
                batch = await asyncio.wait_for(
                    self.remote.get_changes(since), timeout=self.settings.request_timeout_sec
                )
            except (asyncio.TimeoutError, httpx.HTTPError, RemoteError, OSError, ValueError) as exc:
                logger.warning("Fetching remote changes failed: %s", describe_error(exc))
                return PullResult(watermark=since, error=describe_error(exc))

            result = PullResult(watermark=since)
            with self._session_factory() as session:
                for change in batch.changes:
                    try:
                        with session.begin_nested():
                            outcome = self.applier.apply(session, change)
                    except (IntegrityError, ValueError, TypeError) as exc:
                        result.failed_count += 1
                        logger.warning(
                            "Applying remote change %s:%s failed: %s",
                            change.table_name,
                            change.record_id,
                            describe_error(exc),
                        )
                        continue
                    if outcome is ApplyOutcome.APPLIED:
                        result.applied_count += 1
                    elif outcome is ApplyOutcome.CONFLICT:
                        result.conflict_count += 1
                    else:
                        result.skipped_count += 1

                if not result.failed_count and batch.watermark:
                    self.state.set_watermark(batch.watermark, session=session)
                    result.watermark = batch.watermark
                self.state.set_last_pull(session=session)
                session.commit()

            logger.info(
                "Pull finished: %s applied, %s skipped, %s conflicts, %s failed",
                result.applied_count,
                result.skipped_count,
                result.conflict_count,
                result.failed_count,
            )
            return result

    # ------------------------------------------------------------------
    # Conflicts
    async def resolve_conflict(self, conflict_id: int, keep: str) -> ConflictRecord:
        """Settle a parked pull conflict.

        ``keep="local"`` requeues the flagged items so the local version is
        pushed. ``keep="remote"`` applies the stored remote change and drops
        the flagged items in one transaction.
        """

        if keep not in RESOLUTIONS:
            raise ValueError(f"keep must be one of {', '.join(RESOLUTIONS)}")
        conflicts = self.applier.conflicts
        async with self._lock:
            conflict = conflicts.get(conflict_id)
            if conflict is None:
                raise LookupError(f"Conflict {conflict_id} not found")
            if not conflict.is_open:
                raise ValueError(f"Conflict {conflict_id} was already resolved ({conflict.resolution})")

            with self._session_factory() as session:
                if keep == RESOLVE_REMOTE:
                    change = RemoteChange(
                        table_name=conflict.table_name,
                        record_id=conflict.remote_record_id,
                        change_type=conflict.change_type,
                        data=conflict.remote_data or {},
                        server_updated_at=conflict.server_updated_at,
                    )
                    self.applier.apply(session, change, force=True)
                    self.queue.discard(conflict.queue_item_ids, session=session)
                else:
                    self.queue.reset_failed(conflict.queue_item_ids, session=session)
                conflicts.mark_resolved(conflict_id, keep, session=session)
                session.commit()

            logger.info(
                "Conflict #%s on %s:%s resolved in favour of the %s version",
                conflict_id,
                conflict.table_name,
                conflict.record_id,
                keep,
            )
            return conflicts.get(conflict_id)


__all__ = ["PullResult", "SKIP_BUSY", "SKIP_OFFLINE", "SyncEngine", "SyncResult"]
