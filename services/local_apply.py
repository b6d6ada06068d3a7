"""Apply remote-origin changes to local domain tables without touching the outbound queue."""
from __future__ import annotations

from datetime import date, datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Type

from sqlalchemy import inspect as sa_inspect
from sqlmodel import Session, SQLModel

from core.sync_types import ChangeType
from datetime_utils import ensure_utc, parse_rfc3339, utc_now
from services.remote_store import RemoteChange
from services.sync_errors import CONFLICT_PREFIX
from services.sync_log import get_sync_logger
from services.sync_queue import SyncQueue
from storage.conflicts import ConflictStore
from storage.sync_state import SyncStateStore


logger = get_sync_logger("pull")


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"
    CONFLICT = "conflict"


def _python_type(column) -> Optional[type]:
    try:
        return column.type.python_type
    except NotImplementedError:
        return None


def _coerce(column, value: Any) -> Any:
    if not isinstance(value, str):
        return value
    kind = _python_type(column)
    if kind is datetime:
        return parse_rfc3339(value)
    if kind is date:
        return date.fromisoformat(value[:10])
    if kind is int:
        return int(value)
    return value


class LocalChangeApplier:
    """Idempotent upsert/delete of remote changes into registered SQLModel tables.

    A record with unsynced local queue items is left alone: those items are
    flagged ``[CONFLICT]`` and the remote change is parked in the conflict
    store next to the local snapshot until an operator picks a side.
    """

    def __init__(
        self,
        queue: SyncQueue,
        state: SyncStateStore,
        conflicts: ConflictStore,
        models: Optional[Mapping[str, Type[SQLModel]]] = None,
        *,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._queue = queue
        self._state = state
        self.conflicts = conflicts
        self._models: Dict[str, Type[SQLModel]] = dict(models or {})
        self._now = now

    def register(self, table_name: str, model: Type[SQLModel]) -> None:
        self._models[table_name] = model

    @property
    def tables(self):
        return tuple(self._models)

    def apply(self, session: Session, change: RemoteChange, *, force: bool = False) -> ApplyOutcome:
        """With ``force`` the conflict check and the timestamp guard are skipped."""

        model = self._models.get(change.table_name)
        if model is None:
            logger.info("Skipping remote change for unregistered table %s", change.table_name)
            return ApplyOutcome.SKIPPED

        local_id = (
            self._state.local_id_for(change.table_name, change.record_id, session=session)
            or change.record_id
        )
        if not force:
            unsynced = self._queue.unsynced_for(change.table_name, local_id, session=session)
            if unsynced:
                self._park_conflict(session, change, local_id, unsynced)
                return ApplyOutcome.CONFLICT

        mapper = sa_inspect(model)
        pk_column = mapper.primary_key[0]
        pk_value = _coerce(pk_column, local_id)
        existing = session.get(model, pk_value)

        if change.change_type is ChangeType.DELETE:
            return self._delete(session, model, existing, change)
        return self._upsert(session, model, pk_column.key, pk_value, existing, change, force=force)

    # ------------------------------------------------------------------
    def _park_conflict(self, session: Session, change: RemoteChange, local_id: str, unsynced) -> None:
        latest = next((item.data for item in reversed(unsynced) if item.data is not None), None)
        conflict = self.conflicts.record(
            table_name=change.table_name,
            record_id=local_id,
            remote_record_id=change.record_id,
            change_type=change.change_type,
            remote_data=change.data,
            local_data=latest,
            queue_item_ids=[item.id for item in unsynced],
            server_updated_at=change.server_updated_at,
            session=session,
        )
        message = (
            f"{CONFLICT_PREFIX} Remote {change.change_type.value} of "
            f"{change.table_name}:{local_id} collides with unsynced local changes (conflict #{conflict.id})"
        )
        self._queue.flag_conflict([item.id for item in unsynced], message, session=session)
        logger.warning(message)

    def _delete(self, session: Session, model, existing, change: RemoteChange) -> ApplyOutcome:
        if existing is None:
            return ApplyOutcome.SKIPPED
        if "deleted_at" in model.__table__.columns:
            if existing.deleted_at is not None:
                return ApplyOutcome.SKIPPED
            existing.deleted_at = change.server_updated_at or self._now()
            session.add(existing)
        else:
            session.delete(existing)
        return ApplyOutcome.APPLIED

    def _upsert(
        self, session: Session, model, pk_name: str, pk_value, existing, change: RemoteChange, *, force: bool = False
    ) -> ApplyOutcome:
        columns = model.__table__.columns
        if not force and existing is not None and change.server_updated_at and "updated_at" in columns:
            local_stamp = ensure_utc(getattr(existing, "updated_at", None))
            if local_stamp is not None and local_stamp >= change.server_updated_at:
                return ApplyOutcome.SKIPPED

        values = {
            column.key: _coerce(column, change.data[column.key])
            for column in columns
            if column.key in change.data and column.key != pk_name
        }
        if change.server_updated_at and "updated_at" in columns and "updated_at" not in values:
            values["updated_at"] = change.server_updated_at

        if existing is None:
            values[pk_name] = pk_value
            session.add(model(**values))
        else:
            if all(getattr(existing, key) == value for key, value in values.items()):
                return ApplyOutcome.SKIPPED
            for key, value in values.items():
                setattr(existing, key, value)
            session.add(existing)
        return ApplyOutcome.APPLIED


__all__ = ["ApplyOutcome", "LocalChangeApplier"]
