"""SQLModel table for captured local mutations awaiting remote confirmation."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel

from datetime_utils import utc_now


class SyncQueueRow(SQLModel, table=True):
    __tablename__ = "sync_queue"
    # AUTOINCREMENT keeps ids from being reused after clear_queue
    __table_args__ = {"sqlite_autoincrement": True}

    id: Optional[int] = Field(default=None, primary_key=True)
    table_name: str = Field(index=True)
    record_id: str = Field(index=True)
    change_type: str
    data: Optional[str] = None
    sync_status: str = Field(default="pending", index=True)
    error_message: Optional[str] = None
    retry_count: int = Field(default=0)
    retry_delay_sec: Optional[int] = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    synced_at: Optional[datetime] = None
    locked_at: Optional[datetime] = None


__all__ = ["SyncQueueRow"]
