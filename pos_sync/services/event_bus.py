"""
In-process event bus for sync notifications.
Lets the UI layer and background tasks react to sync progress without
coupling them to the runner.
"""
import asyncio
import logging
from typing import Callable, Dict, Any, Optional
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Events published by the sync engine."""
    # Sync pass events
    SYNC_STARTED = "sync.started"
    SYNC_PROGRESS = "sync.progress"
    SYNC_COMPLETED = "sync.completed"
    SYNC_FAILED = "sync.failed"

    # Per-operation events
    SYNC_ITEM_PROCESSED = "sync.item_processed"
    SYNC_ITEM_FAILED = "sync.item_failed"
    OPERATION_QUEUED = "operation.queued"

    # Conflict events
    SYNC_CONFLICT_DETECTED = "sync.conflict_detected"
    SYNC_CONFLICT_RESOLVED = "sync.conflict_resolved"

    # System events
    CONNECTIVITY_CHANGED = "connectivity.changed"


class EventBus:
    """
    Event bus for publishing and subscribing to sync events.
    Callbacks may be plain functions or coroutines.
    """

    def __init__(self):
        self.subscribers: Dict[EventType, list] = {}

    async def publish(self, event_type: EventType, data: Optional[Dict[str, Any]] = None):
        """
        Publish an event to all subscribers.

        A failing subscriber is logged and skipped; it never affects the
        publisher or the other subscribers.

        Args:
            event_type: Type of event being published
            data: Event payload data
        """
        event_payload = {
            "event_type": event_type.value,
            "data": data or {},
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

        for callback in list(self.subscribers.get(event_type, [])):
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(event_payload)
                else:
                    callback(event_payload)
            except Exception as e:
                logger.error(f"Error in event subscriber for {event_type.value}: {e}")

    def subscribe(self, event_type: EventType, callback: Callable) -> Callable[[], None]:
        """
        Subscribe to an event type with a callback function.

        Args:
            event_type: Event type to subscribe to
            callback: Function to call when event is published (sync or async)

        Returns:
            A function that removes the subscription when called
        """
        if event_type not in self.subscribers:
            self.subscribers[event_type] = []
        self.subscribers[event_type].append(callback)
        logger.debug(f"Subscribed to event {event_type.value}")

        def unsubscribe():
            self.unsubscribe(event_type, callback)

        return unsubscribe

    def unsubscribe(self, event_type: EventType, callback: Callable):
        """
        Unsubscribe a callback from an event type.

        Args:
            event_type: Event type to unsubscribe from
            callback: Callback function to remove
        """
        if event_type in self.subscribers and callback in self.subscribers[event_type]:
            self.subscribers[event_type].remove(callback)
            logger.debug(f"Unsubscribed from event {event_type.value}")
