"""
Observable sync status.

Keeps the status of the current (or last) sync pass, pushes every change to
subscribers, persists it in the local store and records one history entry
per finished pass.
"""
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional

from pos_sync.core.config import Settings
from pos_sync.schemas.sync import (
    OperationOutcome,
    QueuedOperation,
    SyncHistoryEntry,
    SyncResult,
    SyncState,
    SyncStatus,
    utc_now,
)
from pos_sync.services.event_bus import EventBus, EventType
from pos_sync.services.local_store import LocalStore

logger = logging.getLogger(__name__)

SYNC_STATUS_KEY = "syncStatus"
SYNC_HISTORY_KEY = "syncHistory"
LAST_SYNC_ERROR_KEY = "lastSyncError"
OPERATION_LOGS_KEY = "syncOperationLogs"


class SyncStatusTracker:
    """Holds the current SyncStatus and broadcasts every change."""

    def __init__(self, store: LocalStore, event_bus: EventBus, settings: Settings):
        self.store = store
        self.event_bus = event_bus
        self.settings = settings
        self._status = SyncStatus()
        self._subscribers: List[Callable[[SyncStatus], Any]] = []
        self._done = 0

    @property
    def status(self) -> SyncStatus:
        return self._status.model_copy(deep=True)

    def subscribe(self, callback: Callable[[SyncStatus], Any]) -> Callable[[], None]:
        """
        Register a status callback. It is called at once with the current
        status and again after every change.
        """
        self._subscribers.append(callback)
        self._deliver(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _deliver(self, callback: Callable[[SyncStatus], Any]):
        try:
            callback(self.status)
        except Exception as e:
            logger.error(f"Error in sync status subscriber: {e}")

    def _notify(self):
        for callback in list(self._subscribers):
            self._deliver(callback)

    async def _persist(self):
        await self.store.set_metadata(SYNC_STATUS_KEY, self._status.model_dump(mode="json"))

    async def load(self) -> SyncStatus:
        """Restore the persisted status. A pass interrupted by a crash is not resumed as running."""
        stored = await self.store.get_metadata(SYNC_STATUS_KEY)
        if stored:
            status = SyncStatus.model_validate(stored)
            if status.in_progress or status.state == SyncState.RUNNING:
                status.in_progress = False
                status.state = SyncState.IDLE
            self._status = status
        self._notify()
        return self.status

    async def update_queue_counts(self, pending: int, parked: int):
        self._status.pending_operations = pending
        self._status.parked_operations = parked
        self._notify()

    async def start(self, total: int) -> SyncStatus:
        self._done = 0
        self._status = SyncStatus(
            state=SyncState.RUNNING,
            in_progress=True,
            total=total,
            start_time=utc_now(),
            last_sync=self._status.last_sync,
            pending_operations=self._status.pending_operations,
            parked_operations=self._status.parked_operations,
        )
        await self._persist()
        self._notify()
        await self.event_bus.publish(EventType.SYNC_STARTED, {"total": total})
        return self.status

    async def record_operation(
        self,
        operation: QueuedOperation,
        outcome: OperationOutcome,
        error: Optional[Dict[str, Any]] = None,
    ):
        """Count one processed operation and publish its outcome."""
        status = self._status
        if outcome == OperationOutcome.COMPLETED:
            status.completed += 1
        elif outcome == OperationOutcome.FAILED:
            status.failed += 1
        elif outcome == OperationOutcome.RETRYING:
            status.retrying += 1
        elif outcome == OperationOutcome.CONFLICT:
            status.conflicts += 1

        self._done += 1
        status.progress = round(self._done / status.total * 100, 1) if status.total else 100

        log_entry = {
            "operationId": operation.operation_id,
            "type": operation.type,
            "outcome": outcome.value,
            "error": error,
            "timestamp": utc_now().isoformat(),
        }

        if error is not None:
            status.errors = ([{**error, "operationId": operation.operation_id}] + status.errors)[
                : self.settings.STATUS_ERROR_LIMIT
            ]
            await self.store.set_metadata(LAST_SYNC_ERROR_KEY, {
                **error,
                "operationId": operation.operation_id,
                "operationType": operation.type,
                "timestamp": log_entry["timestamp"],
            })

        await self.store.append_bounded(OPERATION_LOGS_KEY, log_entry, self.settings.OPERATION_LOG_LIMIT)
        await self._persist()
        self._notify()

        event = EventType.SYNC_ITEM_PROCESSED
        if outcome in (OperationOutcome.FAILED, OperationOutcome.RETRYING):
            event = EventType.SYNC_ITEM_FAILED
        await self.event_bus.publish(event, log_entry)
        await self.event_bus.publish(EventType.SYNC_PROGRESS, {
            "progress": status.progress,
            "completed": status.completed,
            "total": status.total,
        })

    async def complete(self, result: SyncResult) -> SyncHistoryEntry:
        """Close the pass, persist the status and append a history entry."""
        end_time = utc_now()
        status = self._status
        status.in_progress = False
        status.state = SyncState.SUCCEEDED if result.success else SyncState.PARTIALLY_FAILED
        status.progress = 100
        status.end_time = end_time
        status.duration_ms = int((end_time - status.start_time).total_seconds() * 1000) if status.start_time else 0
        status.last_sync = end_time

        entry = SyncHistoryEntry(
            id=uuid.uuid4().hex,
            total=status.total,
            completed=status.completed,
            failed=status.failed,
            retrying=status.retrying,
            conflicts=status.conflicts,
            deferred=result.deferred,
            start_time=status.start_time,
            end_time=end_time,
            duration_ms=status.duration_ms,
            success=result.success,
        )

        await self._persist()
        await self.store.append_bounded(
            SYNC_HISTORY_KEY, entry.model_dump(mode="json"), self.settings.SYNC_HISTORY_LIMIT
        )
        self._notify()

        payload = result.model_dump(mode="json")
        if result.success:
            await self.event_bus.publish(EventType.SYNC_COMPLETED, payload)
        else:
            await self.event_bus.publish(EventType.SYNC_FAILED, payload)
        logger.info(
            f"Sync pass finished: {status.completed} completed, {status.failed} failed, "
            f"{status.retrying} retrying, {status.conflicts} conflicts, {result.deferred} deferred "
            f"in {status.duration_ms}ms"
        )
        return entry

    async def abort(self, error: Exception):
        """
        Reset the running flag after a pass was aborted.

        Nothing is persisted: the pass is aborted because the store failed.
        """
        status = self._status
        status.in_progress = False
        status.state = SyncState.PARTIALLY_FAILED
        status.end_time = utc_now()
        status.errors = ([{"message": str(error), "fatal": True}] + status.errors)[: self.settings.STATUS_ERROR_LIMIT]
        self._notify()
        await self.event_bus.publish(EventType.SYNC_FAILED, {"error": str(error), "aborted": True})

    async def history(self) -> List[SyncHistoryEntry]:
        entries = await self.store.get_metadata(SYNC_HISTORY_KEY, [])
        return [SyncHistoryEntry.model_validate(entry) for entry in entries]

    async def operation_logs(self) -> List[Dict[str, Any]]:
        return list(await self.store.get_metadata(OPERATION_LOGS_KEY, []))
