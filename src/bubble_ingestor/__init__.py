"""Incremental replication of Bubble data types into PostgreSQL."""

from .batch import BatchSyncResult, BatchSyncRunner
from .cursor_store import CursorStore
from .sync import SyncOrchestrator, SyncResult
from .upsert import SyncMode

__all__ = [
    "BatchSyncResult",
    "BatchSyncRunner",
    "CursorStore",
    "SyncMode",
    "SyncOrchestrator",
    "SyncResult",
]
