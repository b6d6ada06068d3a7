"""SQLModel table keeping both sides of a pull conflict until an operator decides."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class SyncConflict(SQLModel, table=True):
    __tablename__ = "sync_conflicts"

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    record_id: str = Field(index=True)
    remote_record_id: str
    change_type: str
    # JSON text, like sync_queue.data
    remote_data: Optional[str] = None
    local_data: Optional[str] = None
    queue_item_ids: str = "[]"
    server_updated_at: Optional[datetime] = None
    resolution: Optional[str] = Field(default=None, index=True)
    created_at: datetime = Field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None


__all__ = ["SyncConflict"]
