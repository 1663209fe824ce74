"""State management (progress record and local store)"""
from .record import (
    ProgressRecord, SyncMetadata, RemoteProgressRow, RemoteHistoryEntry,
    UserIdentity, default_record, validate_content, CONTENT_FIELDS,
)
from .local_store import LocalProgressStore

__all__ = [
    "ProgressRecord", "SyncMetadata", "RemoteProgressRow", "RemoteHistoryEntry",
    "UserIdentity", "default_record", "validate_content", "CONTENT_FIELDS",
    "LocalProgressStore",
]
