from __future__ import annotations

from typing import Any, Callable, Dict, Generic, Optional, Type, TypeVar

from sqlalchemy import inspect as sa_inspect
from sqlmodel import Session, SQLModel

from core.sync_types import ChangeType, validate_table_name
from datetime_utils import utc_now
from services.sync_queue import SyncQueue


ModelT = TypeVar("ModelT", bound=SQLModel)


class SyncedRepository(Generic[ModelT]):
    """Write path for one domain table.

    The row change and its queue entry share a session, so either both are
    committed or neither is.
    """

    def __init__(
        self,
        model: Type[ModelT],
        table_name: str,
        session_factory: Callable[[], Session],
        queue: SyncQueue,
    ) -> None:
        self.model = model
        self.table_name = validate_table_name(table_name)
        self._session_factory = session_factory
        self._queue = queue
        self._pk = sa_inspect(model).primary_key[0].key
        self._columns = model.__table__.columns

    def _snapshot(self, obj: ModelT) -> Dict[str, Any]:
        return obj.model_dump(mode="json")

    def _touch(self, values: Dict[str, Any]) -> None:
        if "updated_at" in self._columns:
            values.setdefault("updated_at", utc_now())

    def get(self, pk: Any) -> Optional[ModelT]:
        with self._session_factory() as session:
            return session.get(self.model, pk)

    def create(self, **fields: Any) -> ModelT:
        self._touch(fields)
        with self._session_factory() as session:
            obj = self.model(**fields)
            session.add(obj)
            session.flush()
            self._queue.enqueue(
                self.table_name,
                getattr(obj, self._pk),
                ChangeType.CREATE,
                self._snapshot(obj),
                session=session,
            )
            session.commit()
            session.refresh(obj)
            return obj

    def update(self, pk: Any, **fields: Any) -> ModelT:
        self._touch(fields)
        with self._session_factory() as session:
            obj = session.get(self.model, pk)
            if obj is None:
                raise LookupError(f"{self.table_name}:{pk} not found")
            for key, value in fields.items():
                setattr(obj, key, value)
            session.add(obj)
            session.flush()
            self._queue.enqueue(
                self.table_name, pk, ChangeType.UPDATE, self._snapshot(obj), session=session
            )
            session.commit()
            session.refresh(obj)
            return obj

    def delete(self, pk: Any) -> bool:
        """Soft-deletes when the model has ``deleted_at``; returns ``False`` for unknown rows."""

        with self._session_factory() as session:
            obj = session.get(self.model, pk)
            if obj is None:
                return False
            if "deleted_at" in self._columns:
                obj.deleted_at = utc_now()
                session.add(obj)
                session.flush()
                snapshot = self._snapshot(obj)
            else:
                snapshot = self._snapshot(obj)
                session.delete(obj)
            self._queue.enqueue(self.table_name, pk, ChangeType.DELETE, snapshot, session=session)
            session.commit()
            return True


__all__ = ["SyncedRepository"]
