"""Pull conflicts parked for manual review: the remote change next to the local one it collided with."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from core.sync_types import ChangeType, parse_change_type
from datetime_utils import ensure_utc, to_rfc3339_utc, utc_now
from models.sync_conflict import SyncConflict

RESOLVE_LOCAL = "local"
RESOLVE_REMOTE = "remote"
RESOLUTIONS = (RESOLVE_LOCAL, RESOLVE_REMOTE)


def _dumps(value: Any) -> Optional[str]:
    return json.dumps(value, ensure_ascii=False, default=str) if value is not None else None


def _loads(value: Optional[str]) -> Any:
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return None


@dataclass
class ConflictRecord:
    id: int
    table_name: str
    record_id: str
    remote_record_id: str
    change_type: ChangeType
    remote_data: Optional[Dict[str, Any]]
    local_data: Optional[Dict[str, Any]]
    server_updated_at: Optional[datetime]
    created_at: datetime
    queue_item_ids: List[int] = field(default_factory=list)
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.resolution is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "table_name": self.table_name,
            "record_id": self.record_id,
            "remote_record_id": self.remote_record_id,
            "change_type": self.change_type.value,
            "remote_data": self.remote_data,
            "local_data": self.local_data,
            "queue_item_ids": list(self.queue_item_ids),
            "server_updated_at": to_rfc3339_utc(self.server_updated_at),
            "created_at": to_rfc3339_utc(self.created_at),
            "resolution": self.resolution,
            "resolved_at": to_rfc3339_utc(self.resolved_at),
        }


def _to_record(row: SyncConflict) -> ConflictRecord:
    return ConflictRecord(
        id=row.id,
        table_name=row.table_name,
        record_id=row.record_id,
        remote_record_id=row.remote_record_id,
        change_type=parse_change_type(row.change_type),
        remote_data=_loads(row.remote_data),
        local_data=_loads(row.local_data),
        server_updated_at=ensure_utc(row.server_updated_at),
        created_at=ensure_utc(row.created_at),
        queue_item_ids=[int(i) for i in (_loads(row.queue_item_ids) or [])],
        resolution=row.resolution,
        resolved_at=ensure_utc(row.resolved_at),
    )


class ConflictStore:
    """Methods that take ``session`` join the caller's transaction and leave the commit to it."""

    def __init__(self, session_factory: Callable[[], Session], *, now: Callable[[], datetime] = utc_now):
        self._session_factory = session_factory
        self._now = now

    def record(
        self,
        *,
        table_name: str,
        record_id: str,
        remote_record_id: str,
        change_type: ChangeType,
        remote_data: Optional[Dict[str, Any]],
        local_data: Optional[Dict[str, Any]],
        queue_item_ids: Iterable[int],
        server_updated_at: Optional[datetime],
        session: Session,
    ) -> SyncConflict:
        row = SyncConflict(
            table_name=table_name,
            record_id=record_id,
            remote_record_id=remote_record_id,
            change_type=change_type.value,
            remote_data=_dumps(remote_data),
            local_data=_dumps(local_data),
            queue_item_ids=json.dumps(list(queue_item_ids)),
            server_updated_at=server_updated_at,
            created_at=self._now(),
        )
        session.add(row)
        session.flush()
        return row

    def get(self, conflict_id: int) -> Optional[ConflictRecord]:
        with self._session_factory() as session:
            row = session.get(SyncConflict, conflict_id)
            return _to_record(row) if row else None

    def list_conflicts(self, *, include_resolved: bool = False, limit: int = 100) -> List[ConflictRecord]:
        stmt = select(SyncConflict)
        if not include_resolved:
            stmt = stmt.where(SyncConflict.resolution.is_(None))
        stmt = stmt.order_by(SyncConflict.id.asc()).limit(max(limit, 0))
        with self._session_factory() as session:
            return [_to_record(row) for row in session.exec(stmt)]

    def count_open(self) -> int:
        stmt = select(func.count()).select_from(SyncConflict).where(SyncConflict.resolution.is_(None))
        with self._session_factory() as session:
            return int(session.exec(stmt).one())

    def mark_resolved(self, conflict_id: int, resolution: str, *, session: Session) -> None:
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Unknown conflict resolution: {resolution}")
        row = session.get(SyncConflict, conflict_id)
        if row is None:
            raise LookupError(f"Conflict {conflict_id} not found")
        row.resolution = resolution
        row.resolved_at = self._now()
        session.add(row)


__all__ = [
    "ConflictRecord",
    "ConflictStore",
    "RESOLUTIONS",
    "RESOLVE_LOCAL",
    "RESOLVE_REMOTE",
]
