"""Core functionality"""
from .events import EventBus, AuthEvent, AuthEventKind, SyncEvent
from .auth import AuthSessionObserver, SupabaseAuth
from .remote import RemoteProgressService, SupabaseProgressService
from .migration import MigrationResolver, MigrationStrategy, merge_records
from .coordinator import SyncCoordinator, SyncPhase

__all__ = [
    "EventBus", "AuthEvent", "AuthEventKind", "SyncEvent",
    "AuthSessionObserver", "SupabaseAuth",
    "RemoteProgressService", "SupabaseProgressService",
    "MigrationResolver", "MigrationStrategy", "merge_records",
    "SyncCoordinator", "SyncPhase",
]
