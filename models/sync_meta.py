"""SQLModel tables holding sync anchors and identifier mappings."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class SyncMeta(SQLModel, table=True):
    """Single-row table; ``pull_watermark`` is the last applied remote change marker."""

    __tablename__ = "sync_meta"

    id: int = Field(default=1, primary_key=True)
    pull_watermark: Optional[str] = None
    last_pull_at: Optional[datetime] = None
    last_push_at: Optional[datetime] = None
    device_id: Optional[str] = None
    updated_at: datetime = Field(default_factory=utc_now)


class IdMapping(SQLModel, table=True):
    """Local record id to the identifier the remote store assigned."""

    __tablename__ = "id_mapping"

    table_name: str = Field(primary_key=True)
    local_id: str = Field(primary_key=True)
    remote_id: str = Field(index=True)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


__all__ = ["IdMapping", "SyncMeta"]
