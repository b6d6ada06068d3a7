"""Persisted sync anchors: pull watermark, push/pull timestamps, id mappings."""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Callable, Optional

from sqlmodel import Session, select

from datetime_utils import ensure_utc, utc_now
from models.sync_meta import IdMapping, SyncMeta


class SyncStateStore:
    """High level helper around the ``sync_meta`` and ``id_mapping`` tables.

    Methods that take ``session`` join the caller's transaction and leave the
    commit to it; without one they open and commit their own.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    # ----- meta row -----
    @staticmethod
    def _meta(session: Session) -> SyncMeta:
        row = session.get(SyncMeta, 1)
        if row is None:
            row = SyncMeta(id=1)
            session.add(row)
        return row

    def _update_meta(self, session: Optional[Session], **values) -> None:
        if session is not None:
            row = self._meta(session)
            for key, value in values.items():
                setattr(row, key, value)
            row.updated_at = utc_now()
            session.add(row)
            return
        with self._session_factory() as own:
            self._update_meta(own, **values)
            own.commit()

    def get_watermark(self) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(SyncMeta, 1)
            return row.pull_watermark if row else None

    def set_watermark(self, value: Optional[str], *, session: Optional[Session] = None) -> None:
        self._update_meta(session, pull_watermark=value)

    def clear_watermark(self) -> None:
        self._update_meta(None, pull_watermark=None)

    def set_last_pull(self, moment: Optional[datetime] = None, *, session: Optional[Session] = None) -> None:
        self._update_meta(session, last_pull_at=ensure_utc(moment) if moment else utc_now())

    def get_last_pull(self) -> Optional[datetime]:
        with self._session_factory() as session:
            row = session.get(SyncMeta, 1)
            return ensure_utc(row.last_pull_at) if row else None

    def set_last_push(self, moment: Optional[datetime] = None) -> None:
        self._update_meta(None, last_push_at=ensure_utc(moment) if moment else utc_now())

    def get_last_push(self) -> Optional[datetime]:
        with self._session_factory() as session:
            row = session.get(SyncMeta, 1)
            return ensure_utc(row.last_push_at) if row else None

    def get_device_id(self) -> str:
        with self._session_factory() as session:
            row = self._meta(session)
            if not row.device_id:
                row.device_id = uuid.uuid4().hex.upper()
                session.add(row)
                session.commit()
            return row.device_id

    # ----- id mapping -----
    def remote_id_for(self, table_name: str, local_id: str) -> Optional[str]:
        with self._session_factory() as session:
            row = session.get(IdMapping, (table_name, local_id))
            return row.remote_id if row else None

    def local_id_for(
        self, table_name: str, remote_id: str, *, session: Optional[Session] = None
    ) -> Optional[str]:
        stmt = select(IdMapping).where(
            IdMapping.table_name == table_name, IdMapping.remote_id == remote_id
        )
        if session is not None:
            row = session.exec(stmt).first()
            return row.local_id if row else None
        with self._session_factory() as own:
            row = own.exec(stmt).first()
            return row.local_id if row else None


__all__ = ["SyncStateStore"]
