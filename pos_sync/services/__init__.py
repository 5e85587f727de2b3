# pos_sync/services/__init__.py
"""
Sync engine services: local store, interceptor, runner and conflict handling.
"""

from pos_sync.services.event_bus import EventBus, EventType
from pos_sync.services.local_store import LocalStore
from pos_sync.services.coordinator import SyncCoordinator

__all__ = [
    "EventBus",
    "EventType",
    "LocalStore",
    "SyncCoordinator",
]
