"""ORM models owned by the sync engine."""
from .sync_conflict import SyncConflict
from .sync_meta import IdMapping, SyncMeta
from .sync_queue import SyncQueueRow

__all__ = ["IdMapping", "SyncConflict", "SyncMeta", "SyncQueueRow"]
