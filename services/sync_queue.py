from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Union

from sqlalchemy import func
from sqlmodel import Session, select

from core.sync_types import (
    ChangeType,
    SyncStatus,
    normalize_record_id,
    parse_change_type,
    parse_status,
    validate_table_name,
)
from datetime_utils import ensure_utc, to_rfc3339_utc, utc_now
from models.sync_meta import IdMapping
from models.sync_queue import SyncQueueRow
from services.sync_errors import MAX_ERROR_LENGTH, is_auto_retryable
from services.sync_log import get_sync_logger


logger = get_sync_logger("queue")

RecordKey = Tuple[str, str]


def _next_try(attempts: int, max_delay_sec: int) -> timedelta:
    return timedelta(seconds=min(max_delay_sec, 2 ** max(attempts, 0)))


@dataclass
class QueueItem:
    id: int
    table_name: str
    record_id: str
    change_type: ChangeType
    sync_status: SyncStatus
    data: Optional[Dict[str, Any]]
    error_message: Optional[str]
    retry_count: int
    created_at: datetime
    synced_at: Optional[datetime]
    updated_at: Optional[datetime] = None
    parse_error: bool = field(default=False, repr=False)

    @property
    def key(self) -> RecordKey:
        return (self.table_name, self.record_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "change_type": self.change_type.value,
            "sync_status": self.sync_status.value,
            "data": self.data,
            "error_message": self.error_message,
            "retry_count": self.retry_count,
            "created_at": to_rfc3339_utc(self.created_at),
            "synced_at": to_rfc3339_utc(self.synced_at),
        }


def _to_item(row: SyncQueueRow) -> QueueItem:
    payload: Optional[Dict[str, Any]] = None
    parse_error = False
    if row.data:
        try:
            payload = json.loads(row.data)
        except json.JSONDecodeError:
            logger.error("Invalid JSON in queue item %s", row.id)
            parse_error = True
    return QueueItem(
        id=row.id,
        table_name=row.table_name,
        record_id=row.record_id,
        change_type=parse_change_type(row.change_type),
        sync_status=parse_status(row.sync_status),
        data=payload,
        error_message=row.error_message,
        retry_count=row.retry_count or 0,
        created_at=ensure_utc(row.created_at),
        synced_at=ensure_utc(row.synced_at),
        updated_at=ensure_utc(row.updated_at),
        parse_error=parse_error,
    )


class SyncQueue:
    """Durable outbound queue; rows are deleted only by :meth:`clear` and :meth:`discard`.

    Every status transition is a single-row update committed on its own, so
    ``sync_status``, ``error_message`` and ``retry_count`` never drift apart.
    Storage faults propagate to the caller.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._now = now

    # ------------------------------------------------------------------
    # Enqueue
    def enqueue(
        self,
        table_name: str,
        record_id: Union[str, int],
        change_type: Union[str, ChangeType],
        data: Optional[Dict[str, Any]] = None,
        *,
        session: Optional[Session] = None,
    ) -> QueueItem:
        """Append a mutation; with ``session`` the row commits with the caller's write."""

        validate_table_name(table_name)
        record = normalize_record_id(record_id)
        kind = parse_change_type(change_type)
        moment = self._now()
        row = SyncQueueRow(
            table_name=table_name,
            record_id=record,
            change_type=kind.value,
            data=json.dumps(data, ensure_ascii=False, default=str) if data is not None else None,
            sync_status=SyncStatus.PENDING.value,
            created_at=moment,
            updated_at=moment,
        )
        if session is not None:
            session.add(row)
            session.flush()
            return _to_item(row)

        with self._session_factory() as own:
            own.add(row)
            own.commit()
            own.refresh(row)
            item = _to_item(row)
        logger.debug("Queued %s %s:%s as #%s", kind.value, table_name, record, item.id)
        return item

    # ------------------------------------------------------------------
    # Reads
    def get(self, item_id: int) -> Optional[QueueItem]:
        with self._session_factory() as session:
            row = session.get(SyncQueueRow, item_id)
            return _to_item(row) if row else None

    def list_items(
        self,
        status: Union[str, SyncStatus, None] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[QueueItem]:
        stmt = select(SyncQueueRow)
        if status is not None:
            stmt = stmt.where(SyncQueueRow.sync_status == parse_status(status).value)
        stmt = stmt.order_by(SyncQueueRow.id.asc()).offset(max(offset, 0)).limit(max(limit, 0))
        with self._session_factory() as session:
            return [_to_item(row) for row in session.exec(stmt)]

    def pending_batch(
        self,
        limit: int,
        *,
        after_id: int = 0,
        max_id: Optional[int] = None,
    ) -> List[QueueItem]:
        stmt = select(SyncQueueRow).where(
            SyncQueueRow.sync_status == SyncStatus.PENDING.value,
            SyncQueueRow.id > after_id,
        )
        if max_id is not None:
            stmt = stmt.where(SyncQueueRow.id <= max_id)
        stmt = stmt.order_by(SyncQueueRow.id.asc()).limit(limit)
        with self._session_factory() as session:
            return [_to_item(row) for row in session.exec(stmt)]

    def max_id(self) -> int:
        with self._session_factory() as session:
            value = session.exec(select(func.max(SyncQueueRow.id))).one()
            return int(value or 0)

    def blocked_keys(self) -> Set[RecordKey]:
        """Records with an errored item; their later mutations must wait."""

        stmt = (
            select(SyncQueueRow.table_name, SyncQueueRow.record_id)
            .where(SyncQueueRow.sync_status == SyncStatus.ERROR.value)
            .distinct()
        )
        with self._session_factory() as session:
            return {(table, record) for table, record in session.exec(stmt)}

    def unsynced_for(self, table_name: str, record_id: str, *, session: Session) -> List[QueueItem]:
        stmt = (
            select(SyncQueueRow)
            .where(
                SyncQueueRow.table_name == table_name,
                SyncQueueRow.record_id == record_id,
                SyncQueueRow.sync_status.in_([SyncStatus.PENDING.value, SyncStatus.ERROR.value]),
            )
            .order_by(SyncQueueRow.id.asc())
        )
        return [_to_item(row) for row in session.exec(stmt)]

    # ------------------------------------------------------------------
    # Transitions
    def mark_syncing(self, ids: Iterable[int]) -> int:
        wanted = list(ids)
        if not wanted:
            return 0
        moment = self._now()
        with self._session_factory() as session:
            rows = session.exec(
                select(SyncQueueRow).where(
                    SyncQueueRow.id.in_(wanted),
                    SyncQueueRow.sync_status == SyncStatus.PENDING.value,
                )
            ).all()
            for row in rows:
                row.sync_status = SyncStatus.SYNCING.value
                row.locked_at = moment
                row.updated_at = moment
                session.add(row)
            session.commit()
            return len(rows)

    def mark_synced(self, item_id: int, *, remote_id: Optional[str] = None) -> bool:
        """Confirm a remote ack; a differing ``remote_id`` is remembered in the same commit."""

        moment = self._now()
        with self._session_factory() as session:
            row = session.get(SyncQueueRow, item_id)
            if row is None:
                logger.warning("Queue item %s vanished before it could be marked synced", item_id)
                return False
            row.sync_status = SyncStatus.SYNCED.value
            row.synced_at = moment
            row.updated_at = moment
            row.error_message = None
            row.retry_delay_sec = None
            row.locked_at = None
            session.add(row)
            if remote_id and remote_id != row.record_id:
                mapping = session.get(IdMapping, (row.table_name, row.record_id))
                if mapping is None:
                    mapping = IdMapping(
                        table_name=row.table_name,
                        local_id=row.record_id,
                        remote_id=remote_id,
                    )
                else:
                    mapping.remote_id = remote_id
                    mapping.updated_at = moment
                session.add(mapping)
            session.commit()
            return True

    def mark_error(self, item_id: int, message: str, *, retry_delay_sec: Optional[int] = None) -> bool:
        """Record a failed attempt; ``retry_delay_sec`` is the least wait before an automatic retry."""

        moment = self._now()
        with self._session_factory() as session:
            row = session.get(SyncQueueRow, item_id)
            if row is None:
                return False
            row.sync_status = SyncStatus.ERROR.value
            row.error_message = (message or "Unknown error")[:MAX_ERROR_LENGTH]
            row.retry_count = (row.retry_count or 0) + 1
            row.retry_delay_sec = retry_delay_sec
            row.synced_at = None
            row.locked_at = None
            row.updated_at = moment
            session.add(row)
            session.commit()
            return True

    def flag_conflict(self, ids: Iterable[int], message: str, *, session: Optional[Session] = None) -> int:
        """Park unsynced items for manual review without counting a retry.

        Items already in ``error`` are re-labelled too, so automatic retry
        cannot push them past an open conflict.
        """

        wanted = list(ids)
        if not wanted:
            return 0
        if session is None:
            with self._session_factory() as own:
                count = self.flag_conflict(wanted, message, session=own)
                own.commit()
                return count
        moment = self._now()
        rows = session.exec(
            select(SyncQueueRow).where(
                SyncQueueRow.id.in_(wanted),
                SyncQueueRow.sync_status.in_([SyncStatus.PENDING.value, SyncStatus.ERROR.value]),
            )
        ).all()
        for row in rows:
            row.sync_status = SyncStatus.ERROR.value
            row.error_message = message[:MAX_ERROR_LENGTH]
            row.updated_at = moment
            session.add(row)
        return len(rows)

    def reset_failed(
        self,
        ids: Optional[Iterable[int]] = None,
        *,
        max_retries: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> int:
        if session is None:
            with self._session_factory() as own:
                count = self.reset_failed(ids, max_retries=max_retries, session=own)
                own.commit()
            if count:
                logger.info("Reset %s failed queue items", count)
            return count

        stmt = select(SyncQueueRow).where(SyncQueueRow.sync_status == SyncStatus.ERROR.value)
        if ids is not None:
            stmt = stmt.where(SyncQueueRow.id.in_(list(ids)))
        if max_retries is not None:
            stmt = stmt.where(SyncQueueRow.retry_count < max_retries)
        moment = self._now()
        rows = session.exec(stmt).all()
        for row in rows:
            row.sync_status = SyncStatus.PENDING.value
            row.error_message = None
            row.retry_count = 0
            row.retry_delay_sec = None
            row.locked_at = None
            row.updated_at = moment
            session.add(row)
        return len(rows)

    def discard(self, ids: Iterable[int], *, session: Session) -> int:
        """Drop unsynced items superseded by a remote version; synced history stays."""

        wanted = list(ids)
        if not wanted:
            return 0
        rows = session.exec(
            select(SyncQueueRow).where(
                SyncQueueRow.id.in_(wanted),
                SyncQueueRow.sync_status.in_([SyncStatus.PENDING.value, SyncStatus.ERROR.value]),
            )
        ).all()
        for row in rows:
            session.delete(row)
        return len(rows)

    def requeue_retryable(
        self,
        *,
        max_attempts: int,
        max_delay_sec: int,
        window_hours: int,
    ) -> int:
        """Move errored items whose backoff has elapsed back to ``pending``.

        The wait is the exponential backoff, but never shorter than the delay
        stored for the error class (rate limits wait longer than timeouts).
        ``retry_count`` is kept so items that keep failing surface as stuck.
        """

        moment = self._now()
        since = moment - timedelta(hours=window_hours)
        stmt = select(SyncQueueRow).where(
            SyncQueueRow.sync_status == SyncStatus.ERROR.value,
            SyncQueueRow.retry_count < max_attempts,
            SyncQueueRow.created_at >= since,
        )
        requeued = 0
        with self._session_factory() as session:
            for row in session.exec(stmt).all():
                if not is_auto_retryable(row.error_message):
                    continue
                last_attempt = ensure_utc(row.updated_at) or ensure_utc(row.created_at)
                wait = max(_next_try(row.retry_count, max_delay_sec), timedelta(seconds=row.retry_delay_sec or 0))
                if last_attempt + wait > ensure_utc(moment):
                    continue
                row.sync_status = SyncStatus.PENDING.value
                row.error_message = None
                row.updated_at = moment
                session.add(row)
                requeued += 1
            session.commit()
        if requeued:
            logger.info("Auto-retrying %s failed queue items", requeued)
        return requeued

    def recover_syncing(self) -> int:
        """Unconfirmed ``syncing`` rows (left by a crash) go back to ``pending``."""

        moment = self._now()
        with self._session_factory() as session:
            rows = session.exec(
                select(SyncQueueRow).where(SyncQueueRow.sync_status == SyncStatus.SYNCING.value)
            ).all()
            for row in rows:
                row.sync_status = SyncStatus.PENDING.value
                row.locked_at = None
                row.updated_at = moment
                session.add(row)
            session.commit()
        if rows:
            logger.warning("Recovered %s queue items stuck in syncing", len(rows))
        return len(rows)

    def clear(self, status: Union[str, SyncStatus, None] = None) -> int:
        stmt = select(SyncQueueRow)
        if status is not None:
            stmt = stmt.where(SyncQueueRow.sync_status == parse_status(status).value)
        with self._session_factory() as session:
            rows = session.exec(stmt).all()
            for row in rows:
                session.delete(row)
            session.commit()
        logger.info("Cleared %s queue items (status=%s)", len(rows), status or "all")
        return len(rows)

    # ------------------------------------------------------------------
    # Aggregates
    def counts(self) -> Dict[SyncStatus, int]:
        result = {status: 0 for status in SyncStatus}
        stmt = select(SyncQueueRow.sync_status, func.count()).group_by(SyncQueueRow.sync_status)
        with self._session_factory() as session:
            for status, count in session.exec(stmt):
                result[parse_status(status)] = int(count)
        return result

    def window_counts(self, since: datetime) -> Dict[SyncStatus, int]:
        result = {status: 0 for status in SyncStatus}
        stmt = (
            select(SyncQueueRow.sync_status, func.count())
            .where(SyncQueueRow.created_at >= since)
            .group_by(SyncQueueRow.sync_status)
        )
        with self._session_factory() as session:
            for status, count in session.exec(stmt):
                result[parse_status(status)] = int(count)
        return result

    def oldest_created_at(self, statuses: Iterable[Union[str, SyncStatus]]) -> Optional[datetime]:
        values = [parse_status(s).value for s in statuses]
        stmt = select(func.min(SyncQueueRow.created_at)).where(SyncQueueRow.sync_status.in_(values))
        with self._session_factory() as session:
            return ensure_utc(session.exec(stmt).one())

    def last_synced_at(self) -> Optional[datetime]:
        with self._session_factory() as session:
            return ensure_utc(session.exec(select(func.max(SyncQueueRow.synced_at))).one())

    def count_retry_above(self, threshold: int) -> int:
        stmt = select(func.count()).select_from(SyncQueueRow).where(
            SyncQueueRow.sync_status != SyncStatus.SYNCED.value,
            SyncQueueRow.retry_count > threshold,
        )
        with self._session_factory() as session:
            return int(session.exec(stmt).one())

    def count_errors_since(self, since: datetime) -> int:
        stmt = select(func.count()).select_from(SyncQueueRow).where(
            SyncQueueRow.sync_status == SyncStatus.ERROR.value,
            SyncQueueRow.updated_at >= since,
        )
        with self._session_factory() as session:
            return int(session.exec(stmt).one())

    def count_stale_syncing(self, before: datetime) -> int:
        stmt = select(func.count()).select_from(SyncQueueRow).where(
            SyncQueueRow.sync_status == SyncStatus.SYNCING.value,
            (SyncQueueRow.locked_at.is_(None)) | (SyncQueueRow.locked_at < before),
        )
        with self._session_factory() as session:
            return int(session.exec(stmt).one())


__all__ = ["QueueItem", "RecordKey", "SyncQueue"]
