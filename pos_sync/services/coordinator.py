"""
Sync coordinator.

Wires the local store, API client, interceptor, conflict handling and the
sync runner together and is the single object the application (HTTP API,
CLI, background tasks) talks to.
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
from sqlalchemy.engine import Engine

from pos_sync.core.config import Settings, settings as default_settings
from pos_sync.core.exceptions import ConflictNotFoundError
from pos_sync.database.engine import create_db_and_tables, create_local_engine
from pos_sync.schemas.sync import (
    BulkResolutionResult,
    CachedEntity,
    Conflict,
    EntityKind,
    FailedOperationRecord,
    FieldSource,
    InterceptedResponse,
    QueuedOperation,
    ResolutionStrategy,
    ResolvedEntity,
    SyncHistoryEntry,
    SyncResult,
    SyncStatus,
    utc_now,
)
from pos_sync.services.api_client import ApiClient
from pos_sync.services.conflicts import ConflictDetector, ConflictResolver
from pos_sync.services.connectivity import ConnectivityMonitor
from pos_sync.services.entity_registry import EntityRegistry
from pos_sync.services.event_bus import EventBus, EventType
from pos_sync.services.interceptor import RequestInterceptor
from pos_sync.services.local_store import LocalStore
from pos_sync.services.sync_runner import SyncRunner
from pos_sync.services.sync_tracker import SyncStatusTracker

logger = logging.getLogger(__name__)

SEARCH_HISTORY_KEY = "searchHistory"


class SyncCoordinator:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        store: LocalStore,
        api_client: ApiClient,
        registry: EntityRegistry,
        event_bus: EventBus,
        tracker: SyncStatusTracker,
        connectivity: ConnectivityMonitor,
        interceptor: RequestInterceptor,
        detector: ConflictDetector,
        resolver: ConflictResolver,
        runner: SyncRunner,
    ):
        self.settings = settings
        self.engine = engine
        self.store = store
        self.api_client = api_client
        self.registry = registry
        self.event_bus = event_bus
        self.tracker = tracker
        self.connectivity = connectivity
        self.interceptor = interceptor
        self.detector = detector
        self.resolver = resolver
        self.runner = runner
        self._conflicts: Dict[str, Conflict] = {}
        self._sync_task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "SyncCoordinator":
        """Build a coordinator and everything it owns from configuration."""
        settings = settings or default_settings
        engine = engine or create_local_engine(settings.LOCAL_DATABASE_URL, settings.DATABASE_ECHO)
        create_db_and_tables(engine)

        registry = EntityRegistry()
        store = LocalStore(engine, registry, temp_id_map_limit=settings.TEMP_ID_MAP_LIMIT)
        api_client = ApiClient.from_settings(settings, transport=transport)
        event_bus = EventBus()
        tracker = SyncStatusTracker(store, event_bus, settings)
        connectivity = ConnectivityMonitor(api_client, event_bus, settings.HEALTHCHECK_PATH)
        interceptor = RequestInterceptor(api_client, store, registry, connectivity, event_bus)
        detector = ConflictDetector(registry, store)
        resolver = ConflictResolver(api_client, store, registry, event_bus, settings)
        runner = SyncRunner(api_client, store, registry, detector, tracker, event_bus, settings)

        return cls(
            settings=settings,
            engine=engine,
            store=store,
            api_client=api_client,
            registry=registry,
            event_bus=event_bus,
            tracker=tracker,
            connectivity=connectivity,
            interceptor=interceptor,
            detector=detector,
            resolver=resolver,
            runner=runner,
        )

    async def initialize(self, release_claims: bool = True) -> SyncStatus:
        """
        Restore persisted status and queue counts.

        The process that owns the queue releases claims a crash left behind;
        tools attached next to a running app pass ``release_claims=False``.
        """
        if release_claims:
            await self.store.release_claims()
        await self.tracker.load()
        return await self.status()

    # ===========================
    # Requests
    # ===========================

    async def request(
        self,
        method: str,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> InterceptedResponse:
        response = await self.interceptor.request(method, url, payload=payload, params=params)
        if response.is_offline_operation:
            await self._refresh_queue_counts()
        return response

    async def search(self, kind: EntityKind, query: str) -> List[CachedEntity]:
        """Search cached records by name and remember the query."""
        results = await self.store.search(kind, query)
        await self.store.append_bounded(
            SEARCH_HISTORY_KEY,
            {"kind": kind.value, "query": query, "results": len(results), "timestamp": utc_now().isoformat()},
            self.settings.SEARCH_HISTORY_LIMIT,
        )
        return results

    # ===========================
    # Sync
    # ===========================

    @property
    def is_syncing(self) -> bool:
        return self.runner.is_running

    async def start_sync(self) -> SyncResult:
        result = await self.runner.start_sync()
        if not result.already_running:
            self._conflicts = {conflict.conflict_id: conflict for conflict in self.runner.last_conflicts}
        return result

    def trigger_sync(self) -> bool:
        """Start a pass in the background. Returns False if one is already running."""
        if self.runner.is_running or (self._sync_task and not self._sync_task.done()):
            return False
        self._sync_task = asyncio.create_task(self.initialize_sync())
        self._sync_task.add_done_callback(self._log_sync_task)
        return True

    @staticmethod
    def _log_sync_task(task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Background sync failed: {error}")

    async def initialize_sync(self) -> SyncResult:
        """Drain the queue, then refresh the cache from the server."""
        result = await self.start_sync()
        if not result.already_running:
            await self.runner.refresh_cache()
        return result

    async def refresh_cache(self) -> Dict[str, int]:
        return await self.runner.refresh_cache()

    async def pending_operations(self, kind: Optional[EntityKind] = None) -> List[QueuedOperation]:
        return await self.store.list_pending_operations(kind)

    async def failed_operations(self) -> List[FailedOperationRecord]:
        return await self.runner.failed_operations()

    async def retry_failed_operations(self) -> int:
        count = await self.runner.retry_failed_operations()
        await self._refresh_queue_counts()
        return count

    async def discard_operation(self, operation_id: str) -> bool:
        discarded = await self.runner.discard_operation(operation_id)
        self._conflicts.pop(operation_id, None)
        await self._refresh_queue_counts()
        return discarded

    async def _refresh_queue_counts(self):
        await self.tracker.update_queue_counts(
            await self.store.count_pending_operations(),
            len(await self.runner.parked_operation_ids()),
        )

    async def status(self) -> SyncStatus:
        await self._refresh_queue_counts()
        return self.tracker.status

    async def history(self) -> List[SyncHistoryEntry]:
        return await self.tracker.history()

    def subscribe(self, callback: Callable[[SyncStatus], Any]) -> Callable[[], None]:
        return self.tracker.subscribe(callback)

    def on(self, event_type: EventType, callback: Callable) -> Callable[[], None]:
        return self.event_bus.subscribe(event_type, callback)

    # ===========================
    # Conflicts
    # ===========================

    def active_conflicts(self) -> List[Conflict]:
        return sorted(self._conflicts.values(), key=lambda conflict: conflict.detected_at)

    def get_conflict(self, conflict_id: str) -> Conflict:
        conflict = self._conflicts.get(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(conflict_id)
        return conflict

    async def detect_conflicts(self, kind: EntityKind, server_list: List[Mapping[str, Any]]) -> List[Conflict]:
        conflicts = await self.detector.detect_conflicts(kind, server_list)
        for conflict in conflicts:
            self._conflicts[conflict.conflict_id] = conflict
            await self.event_bus.publish(EventType.SYNC_CONFLICT_DETECTED, conflict.model_dump(mode="json"))
        return conflicts

    async def resolve(
        self,
        conflict_id: str,
        strategy: ResolutionStrategy,
        payload: Optional[Dict[str, Any]] = None,
        field_sources: Optional[Dict[str, FieldSource]] = None,
    ) -> ResolvedEntity:
        conflict = self.get_conflict(conflict_id)
        try:
            resolved = await self.resolver.resolve(conflict, strategy, payload=payload, field_sources=field_sources)
        except ConflictNotFoundError:
            # Its operation is gone; nothing left to resolve
            self._conflicts.pop(conflict_id, None)
            raise
        self._conflicts.pop(conflict_id, None)
        await self._refresh_queue_counts()
        return resolved

    async def resolve_all_with_server(self) -> BulkResolutionResult:
        result = await self.resolver.resolve_all_with_server(self.active_conflicts())
        for resolved in result.resolved:
            self._conflicts.pop(resolved.conflict_id, None)
        await self._refresh_queue_counts()
        return result

    # ===========================
    # Connectivity
    # ===========================

    @property
    def is_online(self) -> bool:
        return self.connectivity.is_online

    async def set_online(self, online: bool) -> bool:
        return await self.connectivity.set_online(online)

    async def probe(self) -> bool:
        return await self.connectivity.probe()

    async def close(self):
        if self._sync_task and not self._sync_task.done():
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
        await self.api_client.close()
        self.engine.dispose()
        logger.info("Sync coordinator closed")
