"""
Conflict detection and resolution.

A queued operation conflicts with the server when the server record no longer
matches what the operation assumed: an UPDATE or DELETE whose snapshot
diverged, or a CREATE whose natural key already exists with other values.
Conflicts are never replayed automatically; an operator picks a strategy and
the resolver replays the outcome as a fresh request.
"""
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional

from pos_sync.core.config import Settings
from pos_sync.core.exceptions import (
    ApiError,
    ConflictNotFoundError,
    InvalidResolutionError,
    OperationInFlightError,
    NetworkError,
    StorageUnavailableError,
)
from pos_sync.schemas.sync import (
    BulkResolutionResult,
    CachedEntity,
    Conflict,
    EntityKind,
    FieldSource,
    OperationAction,
    QueuedOperation,
    ResolutionStrategy,
    ResolvedEntity,
    utc_now,
)
from pos_sync.services.api_client import ApiClient
from pos_sync.services.entity_registry import (
    TECHNICAL_FIELDS,
    VERSION_FIELDS,
    EntityRegistry,
    rewrite_endpoint,
)
from pos_sync.services.event_bus import EventBus, EventType
from pos_sync.services.local_store import LocalStore

logger = logging.getLogger(__name__)

CONFLICT_RESOLUTIONS_KEY = "conflictResolutions"

_MISSING = object()


def entity_id_of(document: Optional[Mapping[str, Any]]) -> Optional[str]:
    if not document:
        return None
    value = document.get("_id") or document.get("id")
    return str(value) if value is not None else None


class ConflictDetector:
    def __init__(self, registry: EntityRegistry, store: LocalStore):
        self.registry = registry
        self.store = store

    def differing_fields(self, kind: EntityKind, server: Optional[Mapping[str, Any]], local: Optional[Mapping[str, Any]]) -> List[str]:
        """Registry fields whose values differ; a field missing on one side differs from a present one."""
        server_fields = self.registry.business_fields(kind, server)
        local_fields = self.registry.business_fields(kind, local)
        return sorted(
            key for key in set(server_fields) | set(local_fields)
            if server_fields.get(key, _MISSING) != local_fields.get(key, _MISSING)
        )

    def has_diverged(self, kind: EntityKind, snapshot: Optional[Mapping[str, Any]], server: Optional[Mapping[str, Any]]) -> bool:
        """
        Whether the server changed any field recorded in ``snapshot``.

        Records carrying the same version counter on both sides are
        unchanged without looking at the fields.
        """
        if not snapshot or server is None:
            return False
        for version_field in VERSION_FIELDS:
            if version_field in snapshot and snapshot[version_field] == server.get(version_field, _MISSING):
                return False
        recorded = self.registry.business_fields(kind, snapshot)
        return any(server.get(key, _MISSING) != value for key, value in recorded.items())

    def is_applied(self, operation: QueuedOperation, server: Optional[Mapping[str, Any]]) -> bool:
        """Whether the server already holds the result of ``operation``."""
        kind = operation.kind
        if operation.action == OperationAction.DELETE:
            return server is None
        if server is None:
            return False
        if operation.action == OperationAction.CREATE:
            payload = self.registry.business_fields(kind, operation.payload)
            return all(server.get(key, _MISSING) == value for key, value in payload.items())

        expected = self.registry.apply_mutation(
            kind,
            self.registry.business_fields(kind, server),
            operation.payload,
            operation.subresource,
            stamp=False,
        )
        touched = self.registry.touched_fields(kind, operation.payload, operation.subresource)
        return all(server.get(key, _MISSING) == expected.get(key, _MISSING) for key in touched)

    def local_view(self, operation: QueuedOperation) -> Dict[str, Any]:
        """What the operation wants the record to look like: snapshot overlaid with the payload."""
        local = {
            key: value for key, value in (operation.snapshot or {}).items()
            if key not in TECHNICAL_FIELDS
        }
        if operation.action == OperationAction.DELETE:
            return local
        return self.registry.apply_mutation(
            operation.kind, local, operation.payload, operation.subresource, stamp=False
        )

    def check_operation(self, operation: QueuedOperation, server: Optional[Mapping[str, Any]]) -> Optional[Conflict]:
        """
        Classify an operation against current server state.

        For CREATE, ``server`` is the server record with the same natural key
        (if any); otherwise it is the target record. Returns a Conflict, or
        None when the operation may be replayed or is already applied.
        """
        if server is None:
            return None
        kind = operation.kind
        if operation.action == OperationAction.CREATE:
            conflicting = not self.is_applied(operation, server)
        elif operation.action == OperationAction.UPDATE:
            conflicting = not self.is_applied(operation, server) and self.has_diverged(kind, operation.snapshot, server)
        else:
            conflicting = self.has_diverged(kind, operation.snapshot, server)

        if not conflicting:
            return None

        local = self.local_view(operation)
        conflict = Conflict(
            conflict_id=operation.operation_id,
            type=operation.type,
            kind=kind,
            action=operation.action,
            server_data=dict(server),
            local_data=local,
            fields=self.differing_fields(kind, server, local),
            operation_id=operation.operation_id,
            endpoint=operation.endpoint,
            temp_id=operation.temp_id,
            entity_id=entity_id_of(server),
        )
        logger.info(f"Conflict on {operation.type} {operation.operation_id}: fields {conflict.fields}")
        return conflict

    def find_natural_match(self, kind: EntityKind, payload: Mapping[str, Any], server_list: Iterable[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
        key = self.registry.natural_key_of(kind, payload)
        if key is None:
            return None
        for document in server_list:
            if self.registry.natural_key_of(kind, document) == key:
                return document
        return None

    async def detect_conflicts(self, kind: EntityKind, server_list: List[Mapping[str, Any]]) -> List[Conflict]:
        """Conflicts between the pending operations of ``kind`` and a server listing."""
        id_map = await self.store.temp_id_map()
        by_id = {entity_id_of(document): document for document in server_list}
        conflicts = []
        for operation in await self.store.list_pending_operations(kind):
            operation = self.registry.with_permanent_ids(operation, id_map)
            if operation.action == OperationAction.CREATE:
                server = self.find_natural_match(kind, operation.payload, server_list)
            else:
                server = by_id.get(operation.target_id)
            conflict = self.check_operation(operation, server)
            if conflict is not None:
                conflicts.append(conflict)
        return conflicts


class ConflictResolver:
    def __init__(
        self,
        api_client: ApiClient,
        store: LocalStore,
        registry: EntityRegistry,
        event_bus: EventBus,
        settings: Settings,
    ):
        self.api_client = api_client
        self.store = store
        self.registry = registry
        self.event_bus = event_bus
        self.settings = settings

    def _merged_payload(self, conflict: Conflict, field_sources: Optional[Dict[str, FieldSource]]) -> Dict[str, Any]:
        if not field_sources:
            raise InvalidResolutionError("Merge resolution needs a source for each field")
        spec = self.registry.spec_for(conflict.kind)
        unknown = sorted(set(field_sources) - spec.fields)
        if unknown:
            raise InvalidResolutionError(f"Unknown fields for {conflict.kind.value}: {', '.join(unknown)}")

        merged = self.registry.business_fields(conflict.kind, conflict.server_data)
        for key, source in field_sources.items():
            if FieldSource(source) == FieldSource.LOCAL and key in conflict.local_data:
                merged[key] = conflict.local_data[key]
        return merged

    def _custom_payload(self, conflict: Conflict, payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        if not payload:
            raise InvalidResolutionError("Custom resolution needs a payload")
        spec = self.registry.spec_for(conflict.kind)
        unknown = sorted(set(payload) - spec.fields - TECHNICAL_FIELDS)
        if unknown:
            raise InvalidResolutionError(f"Unknown fields for {conflict.kind.value}: {', '.join(unknown)}")
        cleaned = self.registry.clean_payload(conflict.kind, payload)
        if not cleaned:
            raise InvalidResolutionError("Custom payload has no business fields")
        return cleaned

    async def _fetch(self, kind: EntityKind, entity_id: str) -> Optional[CachedEntity]:
        try:
            document = await self.api_client.get(self.registry.item_endpoint(kind, entity_id))
        except ApiError as e:
            if e.status_code == 404:
                return None
            raise
        if not isinstance(document, dict):
            return None
        return CachedEntity.from_document(kind, document)

    async def resolve(
        self,
        conflict: Conflict,
        strategy: ResolutionStrategy,
        payload: Optional[Dict[str, Any]] = None,
        field_sources: Optional[Dict[str, FieldSource]] = None,
    ) -> ResolvedEntity:
        """
        Apply a resolution strategy and replay its outcome.

        The originating operation is claimed for the duration and cleared
        only after the server confirmed the replay. NetworkError and ApiError
        propagate with the operation still queued, so the conflict comes back
        on the next pass. OperationInFlightError is raised while a sync pass
        is replaying the same operation.
        """
        strategy = ResolutionStrategy(strategy)
        operation = await self.store.claim_operation(conflict.operation_id)
        if operation is None:
            raise ConflictNotFoundError(conflict.conflict_id)

        try:
            if operation.action == OperationAction.DELETE and strategy in (ResolutionStrategy.MERGE, ResolutionStrategy.CUSTOM):
                raise InvalidResolutionError(f"{strategy.value} resolution is not available for deletes")

            if strategy == ResolutionStrategy.SERVER:
                entity = await self._adopt_server(conflict, operation)
            else:
                if strategy == ResolutionStrategy.LOCAL:
                    replay_payload = dict(operation.payload)
                elif strategy == ResolutionStrategy.MERGE:
                    replay_payload = self._merged_payload(conflict, field_sources)
                else:
                    replay_payload = self._custom_payload(conflict, payload)
                entity = await self._replay(conflict, operation, strategy, replay_payload)
        finally:
            await self.store.release_operation(operation.operation_id)

        resolved = ResolvedEntity(conflict_id=conflict.conflict_id, strategy=strategy, entity=entity)
        await self.store.append_bounded(
            CONFLICT_RESOLUTIONS_KEY,
            {
                "conflictId": conflict.conflict_id,
                "type": conflict.type,
                "strategy": strategy.value,
                "entityId": entity.id if entity else conflict.entity_id,
                "resolvedAt": resolved.resolved_at.isoformat(),
            },
            self.settings.RESOLUTION_HISTORY_LIMIT,
        )
        await self.event_bus.publish(EventType.SYNC_CONFLICT_RESOLVED, resolved.model_dump(mode="json"))
        logger.info(f"Resolved conflict {conflict.conflict_id} with {strategy.value}")
        return resolved

    async def _adopt_server(self, conflict: Conflict, operation: QueuedOperation) -> Optional[CachedEntity]:
        entity_id = conflict.entity_id
        entity = await self._fetch(conflict.kind, entity_id) if entity_id else None
        if entity is None:
            # Gone on the server as well: drop the local record
            local_id = operation.temp_id or operation.target_id
            await self._commit(operation, remove_entity_id=local_id)
            return None
        await self._commit(operation, entity=entity)
        return entity

    async def _replay(
        self,
        conflict: Conflict,
        operation: QueuedOperation,
        strategy: ResolutionStrategy,
        payload: Dict[str, Any],
    ) -> Optional[CachedEntity]:
        kind = conflict.kind
        id_map = await self.store.temp_id_map()
        payload = self.registry.rewrite_references(kind, payload, id_map)
        if self.registry.unresolved_references(kind, payload):
            raise InvalidResolutionError("Payload references records that are not synced yet")

        if operation.action == OperationAction.CREATE:
            document = await self.api_client.post(self.registry.spec_for(kind).endpoint, json=payload)
            entity = CachedEntity.from_document(kind, document)
            await self._commit(operation, entity=entity)
            return entity

        target_id = id_map.get(operation.target_id, operation.target_id)
        if operation.action == OperationAction.DELETE:
            try:
                await self.api_client.delete(rewrite_endpoint(operation.endpoint, id_map))
            except ApiError as e:
                if e.status_code != 404:
                    raise
            await self._commit(operation, remove_entity_id=target_id)
            return None

        if strategy == ResolutionStrategy.LOCAL:
            endpoint = rewrite_endpoint(operation.endpoint, id_map)
        else:
            endpoint = self.registry.item_endpoint(kind, target_id)
        document = await self.api_client.put(endpoint, json=payload)
        if isinstance(document, dict) and entity_id_of(document):
            entity = CachedEntity.from_document(kind, document)
        else:
            data = {**self.registry.business_fields(kind, conflict.server_data), **payload}
            entity = CachedEntity(id=target_id, kind=kind, data=data)
        await self._commit(operation, entity=entity)
        return entity

    async def _commit(self, operation: QueuedOperation, entity: Optional[CachedEntity] = None, remove_entity_id: Optional[str] = None):
        if not await self.store.commit_replay(operation, entity=entity, remove_entity_id=remove_entity_id):
            logger.warning(f"Operation {operation.operation_id} was cleared while its conflict was being resolved")

    async def resolve_all_with_server(self, conflicts: List[Conflict]) -> BulkResolutionResult:
        """
        Apply server-wins to every conflict.

        Network and server errors are recorded and skipped; a storage failure
        stops the run.
        """
        result = BulkResolutionResult()
        for conflict in conflicts:
            try:
                result.resolved.append(await self.resolve(conflict, ResolutionStrategy.SERVER))
            except (NetworkError, ApiError, ConflictNotFoundError, OperationInFlightError) as e:
                logger.warning(f"Could not resolve conflict {conflict.conflict_id}: {e}")
                result.errors.append({
                    "conflictId": conflict.conflict_id,
                    "message": str(e),
                    "timestamp": utc_now().isoformat(),
                })
            except StorageUnavailableError as e:
                logger.error(f"Bulk resolution aborted: {e}")
                result.errors.append({
                    "conflictId": conflict.conflict_id,
                    "message": str(e),
                    "fatal": True,
                    "timestamp": utc_now().isoformat(),
                })
                result.aborted = True
                break
        return result
