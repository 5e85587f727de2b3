"""
Sync runner: drains the operation queue against the server.

One pass at a time. A pass takes a snapshot of the queue, replays it
oldest first, and classifies every operation as completed, retrying
(transient failure), failed (permanent failure, parked), conflict, or
deferred (waiting on an earlier operation for the same record).
"""
import asyncio
import logging
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple

from pos_sync.core.config import Settings
from pos_sync.core.exceptions import ApiError, NetworkError, OperationInFlightError, StorageUnavailableError
from pos_sync.schemas.sync import (
    CachedEntity,
    Conflict,
    EntityKind,
    FailedOperationRecord,
    OperationAction,
    OperationOutcome,
    QueuedOperation,
    SyncResult,
    utc_now,
)
from pos_sync.services.api_client import ApiClient
from pos_sync.services.conflicts import ConflictDetector, entity_id_of
from pos_sync.services.entity_registry import EntityRegistry, is_temp_id
from pos_sync.services.event_bus import EventBus, EventType
from pos_sync.services.interceptor import last_sync_key
from pos_sync.services.local_store import FAILED_OPERATIONS_KEY, LocalStore
from pos_sync.services.sync_tracker import SyncStatusTracker

logger = logging.getLogger(__name__)


class PermanentFailure(Exception):
    """An operation that cannot succeed by retrying as-is."""


class _Pass:
    """Bookkeeping of one sync pass."""

    def __init__(self, id_map: Dict[str, str], pending_creates: Set[str], blocked: Set[Tuple[EntityKind, str]]):
        self.id_map = id_map
        self.pending_creates = pending_creates
        self.blocked = blocked
        self.listings: Dict[EntityKind, List[Dict[str, Any]]] = {}
        self.conflicts: List[Conflict] = []


def _entity_key(operation: QueuedOperation) -> Optional[Tuple[EntityKind, str]]:
    entity_id = operation.temp_id or operation.target_id
    return (operation.kind, entity_id) if entity_id else None


class SyncRunner:
    def __init__(
        self,
        api_client: ApiClient,
        store: LocalStore,
        registry: EntityRegistry,
        detector: ConflictDetector,
        tracker: SyncStatusTracker,
        event_bus: EventBus,
        settings: Settings,
    ):
        self.api_client = api_client
        self.store = store
        self.registry = registry
        self.detector = detector
        self.tracker = tracker
        self.event_bus = event_bus
        self.settings = settings
        self._lock = asyncio.Lock()
        self.last_conflicts: List[Conflict] = []

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    async def start_sync(self) -> SyncResult:
        """
        Run one sync pass over the current queue.

        Starting while a pass is running does nothing and reports the
        in-progress status. StorageUnavailableError aborts the pass and
        propagates.
        """
        if self._lock.locked():
            status = self.tracker.status
            logger.info("Sync already in progress")
            return SyncResult(
                processed=status.completed,
                failed=status.failed,
                retrying=status.retrying,
                conflicts=status.conflicts,
                success=status.failed == 0,
                already_running=True,
            )

        async with self._lock:
            try:
                return await self._run_pass()
            except StorageUnavailableError as e:
                logger.error(f"Sync pass aborted: {e}")
                await self.tracker.abort(e)
                raise

    async def parked_operation_ids(self) -> Set[str]:
        """Ids of parked operations that are still queued."""
        records = await self.store.get_metadata(FAILED_OPERATIONS_KEY, [])
        queued = {operation.operation_id for operation in await self.store.list_pending_operations()}
        return {record["operation"]["operation_id"] for record in records} & queued

    async def _run_pass(self) -> SyncResult:
        operations = await self.store.list_pending_operations()
        parked = await self.parked_operation_ids()
        queue = [operation for operation in operations if operation.operation_id not in parked]
        parked_in_queue = [operation for operation in operations if operation.operation_id in parked]

        state = _Pass(
            id_map=await self.store.temp_id_map(),
            pending_creates={
                operation.temp_id for operation in operations
                if operation.action == OperationAction.CREATE and operation.temp_id
            },
            blocked={key for key in map(_entity_key, parked_in_queue) if key},
        )

        await self.tracker.update_queue_counts(len(operations), len(parked_in_queue))
        await self.tracker.start(len(queue))
        logger.info(f"Sync pass started with {len(queue)} operations ({len(parked_in_queue)} parked)")

        result = SyncResult()
        for operation in queue:
            outcome, error = await self._process(operation, state)

            if outcome == OperationOutcome.COMPLETED:
                result.processed += 1
            elif outcome == OperationOutcome.RETRYING:
                result.retrying += 1
            elif outcome == OperationOutcome.FAILED:
                result.failed += 1
                result.failed_operations.append({
                    "operationId": operation.operation_id,
                    "type": operation.type,
                    "error": error,
                })
            elif outcome == OperationOutcome.CONFLICT:
                result.conflicts += 1
            else:
                result.deferred += 1

            if outcome != OperationOutcome.COMPLETED:
                key = _entity_key(operation)
                if key:
                    state.blocked.add(key)

            await self.tracker.record_operation(operation, outcome, error)

        result.success = result.failed == 0
        self.last_conflicts = state.conflicts

        await self.tracker.update_queue_counts(
            await self.store.count_pending_operations(),
            len(await self.parked_operation_ids()),
        )
        await self.tracker.complete(result)
        return result

    # ===========================
    # Per-operation processing
    # ===========================

    async def _process(self, operation: QueuedOperation, state: _Pass) -> Tuple[OperationOutcome, Optional[Dict[str, Any]]]:
        key = _entity_key(operation)
        if key in state.blocked:
            logger.debug(f"Deferring {operation.type} {operation.operation_id}: earlier operation on the same record is pending")
            return OperationOutcome.DEFERRED, None

        resolved = self.registry.with_permanent_ids(operation, state.id_map)
        waiting_on = self.registry.unresolved_references(operation.kind, resolved.payload)
        if operation.action != OperationAction.CREATE and is_temp_id(resolved.target_id):
            waiting_on.append(resolved.target_id)

        try:
            for temp_id in waiting_on:
                if temp_id not in state.pending_creates:
                    raise PermanentFailure(f"References {temp_id}, which was never created on the server")
            if waiting_on:
                logger.debug(f"Deferring {operation.type} {operation.operation_id}: waiting on {waiting_on}")
                return OperationOutcome.DEFERRED, None

            if not await self._claim(operation):
                return OperationOutcome.DEFERRED, None
            try:
                if operation.action == OperationAction.CREATE:
                    outcome = await self._replay_create(operation, resolved, state)
                elif operation.action == OperationAction.UPDATE:
                    outcome = await self._replay_update(operation, resolved, state)
                else:
                    outcome = await self._replay_delete(operation, resolved, state)
            finally:
                await self.store.release_operation(operation.operation_id)
            return outcome, None

        except StorageUnavailableError:
            raise
        except NetworkError as e:
            return OperationOutcome.RETRYING, await self._record_failure(operation, e, retryable=True)
        except ApiError as e:
            retryable = e.status_code not in self.settings.NON_RETRYABLE_STATUS_CODES
            return (
                OperationOutcome.RETRYING if retryable else OperationOutcome.FAILED,
                await self._record_failure(operation, e, retryable=retryable),
            )
        except PermanentFailure as e:
            return OperationOutcome.FAILED, await self._record_failure(operation, e, retryable=False)

    async def _claim(self, operation: QueuedOperation) -> bool:
        try:
            claimed = await self.store.claim_operation(operation.operation_id)
        except OperationInFlightError:
            logger.info(f"Deferring {operation.type} {operation.operation_id}: a conflict resolution owns it")
            return False
        if claimed is None:
            logger.info(f"Skipping {operation.type} {operation.operation_id}: cleared before its replay")
            return False
        return True

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.REPLAY_TIMEOUT_SECONDS)
        except asyncio.TimeoutError as e:
            raise NetworkError("Replay timed out", timeout=True) from e

    async def _record_failure(self, operation: QueuedOperation, error: Exception, retryable: bool) -> Dict[str, Any]:
        details = {
            "message": str(error),
            "statusCode": getattr(error, "status_code", None),
            "retryable": retryable,
            "timestamp": utc_now().isoformat(),
        }
        updated = await self.store.record_attempt(operation.operation_id, details)
        if updated is None:
            logger.info(f"{operation.type} {operation.operation_id} was cleared during its replay: {error}")
        elif retryable:
            logger.warning(f"{operation.type} {operation.operation_id} will be retried (attempt {updated.attempts}): {error}")
        else:
            logger.error(f"{operation.type} {operation.operation_id} failed permanently: {error}")
            record = FailedOperationRecord(operation=updated, error=details)
            await self.store.append_bounded(
                FAILED_OPERATIONS_KEY, record.model_dump(mode="json"), self.settings.FAILED_OPERATIONS_LIMIT
            )
        return details

    async def _commit(self, operation: QueuedOperation, entity: Optional[CachedEntity] = None, remove_entity_id: Optional[str] = None) -> bool:
        committed = await self.store.commit_replay(operation, entity=entity, remove_entity_id=remove_entity_id)
        if not committed:
            logger.warning(f"Operation {operation.operation_id} was cleared during replay")
        return committed

    async def _conflict(self, conflict: Conflict, state: _Pass) -> OperationOutcome:
        state.conflicts.append(conflict)
        await self.event_bus.publish(EventType.SYNC_CONFLICT_DETECTED, conflict.model_dump(mode="json"))
        return OperationOutcome.CONFLICT

    async def _listing(self, kind: EntityKind, state: _Pass) -> List[Dict[str, Any]]:
        if kind not in state.listings:
            documents = await self._call(self.api_client.get(self.registry.spec_for(kind).endpoint))
            state.listings[kind] = [doc for doc in documents or [] if isinstance(doc, dict)]
        return state.listings[kind]

    async def _replay_create(self, operation: QueuedOperation, resolved: QueuedOperation, state: _Pass) -> OperationOutcome:
        kind = operation.kind
        listing = await self._listing(kind, state)
        match = self.detector.find_natural_match(kind, resolved.payload, listing)

        if match is not None:
            conflict = self.detector.check_operation(resolved, match)
            if conflict is not None:
                return await self._conflict(conflict, state)
            # Created by an earlier attempt whose response was lost
            logger.info(f"{operation.type} {operation.operation_id} already applied as {entity_id_of(match)}")
            document = match
        else:
            document = await self._call(self.api_client.post(resolved.endpoint, json=resolved.payload))
            listing.append(document)

        entity = CachedEntity.from_document(kind, document)
        if not await self._commit(operation, entity=entity):
            if match is None:
                await self._remove_orphan(operation, entity)
            return OperationOutcome.COMPLETED
        if operation.temp_id:
            state.id_map[operation.temp_id] = entity.id
            state.pending_creates.discard(operation.temp_id)
        return OperationOutcome.COMPLETED

    async def _remove_orphan(self, operation: QueuedOperation, entity: CachedEntity):
        """Delete a server record whose CREATE was dropped locally while it was posted."""
        endpoint = self.registry.item_endpoint(operation.kind, entity.id)
        try:
            await self._call(self.api_client.delete(endpoint))
        except (NetworkError, ApiError) as e:
            logger.error(f"Could not remove orphaned {operation.kind.value} {entity.id} from the server: {e}")
            return
        logger.warning(f"Removed orphaned {operation.kind.value} {entity.id} created by {operation.operation_id}")

    async def _replay_update(self, operation: QueuedOperation, resolved: QueuedOperation, state: _Pass) -> OperationOutcome:
        kind = operation.kind
        server = await self._call(self.api_client.get(self.registry.item_endpoint(kind, resolved.target_id)))
        if not isinstance(server, dict):
            raise PermanentFailure(f"{kind.value} {resolved.target_id} no longer exists on the server")

        if self.detector.is_applied(resolved, server):
            logger.info(f"{operation.type} {operation.operation_id} already applied on the server")
            await self._commit(operation, entity=CachedEntity.from_document(kind, server))
            return OperationOutcome.COMPLETED

        conflict = self.detector.check_operation(resolved, server)
        if conflict is not None:
            return await self._conflict(conflict, state)

        document = await self._call(self.api_client.send(resolved.method, resolved.endpoint, json=resolved.payload))
        if isinstance(document, dict) and entity_id_of(document):
            entity = CachedEntity.from_document(kind, document)
        else:
            data = self.registry.apply_mutation(kind, server, resolved.payload, resolved.subresource)
            entity = CachedEntity.from_document(kind, {**data, "_id": resolved.target_id})
        await self._commit(operation, entity=entity)
        return OperationOutcome.COMPLETED

    async def _replay_delete(self, operation: QueuedOperation, resolved: QueuedOperation, state: _Pass) -> OperationOutcome:
        kind = operation.kind
        try:
            server = await self._call(self.api_client.get(self.registry.item_endpoint(kind, resolved.target_id)))
        except ApiError as e:
            if e.status_code != 404:
                raise
            server = None

        if server is not None:
            conflict = self.detector.check_operation(resolved, server)
            if conflict is not None:
                return await self._conflict(conflict, state)
            try:
                await self._call(self.api_client.delete(resolved.endpoint))
            except ApiError as e:
                if e.status_code != 404:
                    raise
        else:
            logger.info(f"{operation.type} {operation.operation_id} already applied on the server")

        await self._commit(operation, remove_entity_id=resolved.target_id)
        return OperationOutcome.COMPLETED

    # ===========================
    # Maintenance
    # ===========================

    async def refresh_cache(self) -> Dict[str, int]:
        """Pull every registered collection from the server into the local store."""
        counts = {}
        for kind in self.registry.kinds:
            spec = self.registry.spec_for(kind)
            try:
                documents = await self._call(self.api_client.get(spec.endpoint))
            except (NetworkError, ApiError) as e:
                logger.warning(f"Could not refresh {kind.value} cache: {e}")
                continue
            entities = [
                CachedEntity.from_document(kind, doc)
                for doc in documents or [] if isinstance(doc, dict)
            ]
            counts[kind.value] = await self.store.replace_all(kind, entities)
            await self.store.set_metadata(last_sync_key(kind), utc_now().isoformat())
        logger.info(f"Cache refreshed: {counts}")
        return counts

    async def failed_operations(self) -> List[FailedOperationRecord]:
        records = await self.store.get_metadata(FAILED_OPERATIONS_KEY, [])
        return [FailedOperationRecord.model_validate(record) for record in records]

    async def retry_failed_operations(self) -> int:
        """Un-park permanently failed operations so the next pass retries them."""
        parked = await self.parked_operation_ids()
        count = await self.store.reset_attempts(sorted(parked))
        await self.store.set_metadata(FAILED_OPERATIONS_KEY, [])
        logger.info(f"Un-parked {count} failed operations")
        return count

    async def discard_operation(self, operation_id: str) -> bool:
        """
        Drop a queued operation for good.

        Discarding an unsynced CREATE also removes its temp record and every
        queued operation on it. Raises OperationInFlightError while the
        operation is being replayed or resolved.
        """
        operation = await self.store.get_operation(operation_id)
        if operation is None:
            return False

        if operation.action == OperationAction.CREATE and operation.temp_id:
            if await self.store.discard_temp_entity(operation.kind, operation.temp_id) is None:
                raise OperationInFlightError(operation_id)
        elif not await self.store.clear_operation(operation_id):
            return False

        self.last_conflicts = [conflict for conflict in self.last_conflicts if conflict.operation_id != operation_id]
        logger.info(f"Discarded {operation.type} {operation_id}")
        return True
