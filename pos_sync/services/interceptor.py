"""
Network-aware request interceptor.

Feature code sends every server call through ``RequestInterceptor.request``.
Online calls pass through and refresh the local cache. When the server can't
be reached, mutations of registered entities are applied optimistically to
the local store and queued for replay, and reads fall back to cached data.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlsplit

from pos_sync.core.exceptions import NetworkError
from pos_sync.schemas.sync import (
    CachedEntity,
    EntityKind,
    InterceptedResponse,
    OperationAction,
    QueuedOperation,
    parse_timestamp,
    utc_now,
)
from pos_sync.services.api_client import ApiClient, unwrap
from pos_sync.services.connectivity import ConnectivityMonitor
from pos_sync.services.entity_registry import (
    TEMP_ID_PREFIX,
    EntityRegistry,
    OperationDescriptor,
    is_temp_id,
    rewrite_endpoint,
)
from pos_sync.services.event_bus import EventBus, EventType
from pos_sync.services.local_store import LocalStore

logger = logging.getLogger(__name__)


def last_sync_key(kind: EntityKind) -> str:
    return f"lastSync:{kind.value}"


def generate_temp_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4()}"


def _message(body: Any) -> Optional[str]:
    return body.get("message") if isinstance(body, dict) else None


class RequestInterceptor:
    def __init__(
        self,
        api_client: ApiClient,
        store: LocalStore,
        registry: EntityRegistry,
        connectivity: ConnectivityMonitor,
        event_bus: EventBus,
    ):
        self.api_client = api_client
        self.store = store
        self.registry = registry
        self.connectivity = connectivity
        self.event_bus = event_bus

    async def request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> InterceptedResponse:
        """
        Send a request, queueing it instead when the server is unreachable.

        ApiError from a reachable server always propagates unchanged.
        NetworkError propagates for requests that cannot be served offline.
        """
        method = method.upper()
        if method == "GET":
            return await self._read(url, params)

        descriptor = self.registry.classify(method, url)
        if descriptor is None:
            if not self.connectivity.is_online:
                raise NetworkError(f"Offline: {method} {url} cannot be queued")
            body = await self.api_client.request(method, url, json=payload, params=params)
            return InterceptedResponse(success=True, data=unwrap(body), message=_message(body))

        return await self._mutate(descriptor, self.registry.clean_payload(descriptor.kind, payload))

    # ===========================
    # Mutations
    # ===========================

    async def _mutate(self, descriptor: OperationDescriptor, payload: Dict[str, Any]) -> InterceptedResponse:
        id_map = await self.store.temp_id_map()

        target_id = descriptor.target_id
        if target_id and is_temp_id(target_id):
            if target_id not in id_map:
                # The server has never seen this id
                if descriptor.action == OperationAction.DELETE:
                    return await self._discard_temp(descriptor)
                return await self._queue(descriptor, payload)
            target_id = id_map[target_id]
            descriptor = OperationDescriptor(
                kind=descriptor.kind,
                action=descriptor.action,
                type=descriptor.type,
                method=descriptor.method,
                endpoint=rewrite_endpoint(descriptor.endpoint, id_map),
                target_id=target_id,
                subresource=descriptor.subresource,
            )

        payload = self.registry.rewrite_references(descriptor.kind, payload, id_map)
        if self.registry.unresolved_references(descriptor.kind, payload):
            return await self._queue(descriptor, payload)

        if not self.connectivity.is_online:
            return await self._queue(descriptor, payload)

        if target_id and await self._has_pending_for(descriptor.kind, target_id):
            # Keep per-entity order behind the already queued mutations
            return await self._queue(descriptor, payload)

        try:
            body = await self.api_client.request(
                descriptor.method,
                descriptor.endpoint,
                json=None if descriptor.action == OperationAction.DELETE else payload,
            )
        except NetworkError as e:
            logger.warning(f"{descriptor.type} could not reach the server, queueing: {e}")
            return await self._queue(descriptor, payload)

        data = unwrap(body)
        await self._cache_response(descriptor, data)
        return InterceptedResponse(success=True, data=data, message=_message(body))

    async def _has_pending_for(self, kind: EntityKind, entity_id: str) -> bool:
        for operation in await self.store.list_pending_operations(kind):
            if entity_id in (operation.target_id, operation.temp_id):
                return True
        return False

    async def _cache_response(self, descriptor: OperationDescriptor, data: Any):
        if descriptor.action == OperationAction.DELETE:
            await self.store.delete(descriptor.kind, descriptor.target_id)
            return
        if isinstance(data, dict) and (data.get("_id") or data.get("id")):
            await self.store.put(descriptor.kind, CachedEntity.from_document(descriptor.kind, data))

    async def _queue(self, descriptor: OperationDescriptor, payload: Dict[str, Any]) -> InterceptedResponse:
        """Apply the mutation optimistically and enqueue it for replay."""
        kind = descriptor.kind
        entity: Optional[CachedEntity] = None
        remove_entity_id: Optional[str] = None
        snapshot: Optional[Dict[str, Any]] = None
        temp_id: Optional[str] = None

        if descriptor.action == OperationAction.CREATE:
            temp_id = generate_temp_id()
            now = utc_now()
            entity = CachedEntity(id=temp_id, kind=kind, data=dict(payload), is_temp=True, created_at=now, updated_at=now)
            data = entity.to_document()
        else:
            existing = await self.store.get(kind, descriptor.target_id)
            if is_temp_id(descriptor.target_id):
                temp_id = descriptor.target_id
            if existing is not None:
                snapshot = self.registry.snapshot_of(kind, existing.data)

            if descriptor.action == OperationAction.DELETE:
                remove_entity_id = descriptor.target_id
                data = {"_id": descriptor.target_id}
            elif existing is not None:
                entity = existing.model_copy(update={
                    "data": self.registry.apply_mutation(kind, existing.data, payload, descriptor.subresource),
                })
                data = entity.to_document()
            else:
                data = {**payload, "_id": descriptor.target_id}

        operation = QueuedOperation(
            type=descriptor.type,
            kind=kind,
            action=descriptor.action,
            method=descriptor.method,
            endpoint=descriptor.endpoint,
            payload=payload,
            snapshot=snapshot,
            temp_id=temp_id,
            target_id=descriptor.target_id,
            subresource=descriptor.subresource,
        )
        operation = await self.store.enqueue_operation(operation, entity=entity, remove_entity_id=remove_entity_id)
        await self.event_bus.publish(EventType.OPERATION_QUEUED, operation.model_dump(mode="json"))

        return InterceptedResponse(
            success=True,
            data=data,
            message="Saved offline, will sync when online",
            is_offline_operation=True,
            operation_id=operation.operation_id,
        )

    async def _discard_temp(self, descriptor: OperationDescriptor) -> InterceptedResponse:
        cleared = await self.store.discard_temp_entity(descriptor.kind, descriptor.target_id)
        if cleared is None:
            if descriptor.target_id in await self.store.temp_id_map():
                # Confirmed since this request started
                return await self._mutate(descriptor, {})
            # Its CREATE is reaching the server right now; delete it there once confirmed
            logger.info(f"{descriptor.kind.value} {descriptor.target_id} is being synced, queueing its delete")
            return await self._queue(descriptor, {})
        logger.info(f"Deleted unsynced {descriptor.kind.value} {descriptor.target_id} locally, dropped {len(cleared)} queued operations")
        return InterceptedResponse(
            success=True,
            data={"_id": descriptor.target_id},
            message="Deleted locally",
            is_offline_operation=True,
        )

    # ===========================
    # Reads
    # ===========================

    async def _read(self, url: str, params: Optional[Dict[str, Any]]) -> InterceptedResponse:
        if not self.connectivity.is_online:
            cached = await self._cached_read(url, params)
            if cached is None:
                raise NetworkError(f"Offline and no cached data for {url}")
            return cached

        try:
            body = await self.api_client.request("GET", url, params=params)
        except NetworkError:
            cached = await self._cached_read(url, params)
            if cached is None:
                raise
            logger.info(f"Serving cached data for {url}")
            return cached

        data = unwrap(body)
        await self._refresh_cache(url, params, data)
        return InterceptedResponse(success=True, data=data, message=_message(body))

    async def _refresh_cache(self, url: str, params: Optional[Dict[str, Any]], data: Any):
        match = self.registry.match_endpoint(url)
        if match is None:
            return
        spec, segments = match
        if not segments and isinstance(data, list):
            entities = [CachedEntity.from_document(spec.kind, doc) for doc in data if isinstance(doc, dict)]
            if self._query(url, params):
                for entity in entities:
                    await self.store.put(spec.kind, entity)
            else:
                await self.store.replace_all(spec.kind, entities)
                await self.store.set_metadata(last_sync_key(spec.kind), utc_now().isoformat())
        elif len(segments) == 1 and isinstance(data, dict) and (data.get("_id") or data.get("id")):
            await self.store.put(spec.kind, CachedEntity.from_document(spec.kind, data))

    @staticmethod
    def _query(url: str, params: Optional[Dict[str, Any]]) -> Dict[str, str]:
        query = dict(parse_qsl(urlsplit(url).query))
        query.update({key: str(value) for key, value in (params or {}).items()})
        return query

    async def _cached_read(self, url: str, params: Optional[Dict[str, Any]]) -> Optional[InterceptedResponse]:
        match = self.registry.match_endpoint(url)
        if match is None:
            return None
        spec, segments = match
        last_sync_time = parse_timestamp(await self.store.get_metadata(last_sync_key(spec.kind)))

        if len(segments) == 1:
            entity = await self.store.get(spec.kind, segments[0])
            if entity is None:
                return None
            data: Any = entity.to_document()
        elif not segments:
            documents = await self.store.with_references(spec.kind) if spec.references else [
                entity.to_document() for entity in await self.store.list_all(spec.kind)
            ]
            if not documents and last_sync_time is None:
                return None
            data = self._filter(documents, spec.fields, self._query(url, params))
        else:
            return None

        return InterceptedResponse(
            success=True,
            data=data,
            is_offline_data=True,
            last_sync_time=last_sync_time,
        )

    @staticmethod
    def _filter(documents: List[Dict[str, Any]], fields, query: Dict[str, str]) -> List[Dict[str, Any]]:
        filters = {key: value for key, value in query.items() if key in fields}
        if not filters:
            return documents

        def value_of(document, key):
            value = document.get(key)
            if isinstance(value, dict):
                value = value.get("_id", value.get("id"))
            return None if value is None else str(value)

        return [
            document for document in documents
            if all(value_of(document, key) == value for key, value in filters.items())
        ]
