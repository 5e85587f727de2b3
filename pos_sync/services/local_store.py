"""
Durable local store for the offline sync engine.

Wraps the SQLite tables in ``pos_sync.models.local_store`` behind an async
API. Each public method runs in a worker thread as a single transaction and
is committed before it returns, so a queued operation survives a crash the
moment ``enqueue_operation`` completes.
"""
import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Set, TypeVar

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy import delete
from sqlmodel import Session, select

from pos_sync.core.exceptions import OperationInFlightError, StorageUnavailableError
from pos_sync.models.local_store import CachedEntityRecord, PendingOperationRecord, MetadataEntry
from pos_sync.schemas.sync import CachedEntity, EntityKind, QueuedOperation, utc_now
from pos_sync.services.entity_registry import EntityRegistry, is_temp_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

TEMP_ID_MAP_KEY = "tempIdMap"
FAILED_OPERATIONS_KEY = "failedOperations"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; everything is stored as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _entity_from_record(record: CachedEntityRecord) -> CachedEntity:
    return CachedEntity(
        id=record.entity_id,
        kind=EntityKind(record.kind),
        data=dict(record.data or {}),
        is_temp=record.is_temp,
        created_at=_as_utc(record.created_at),
        updated_at=_as_utc(record.updated_at),
    )


def _operation_from_record(record: PendingOperationRecord) -> QueuedOperation:
    return QueuedOperation(
        operation_id=record.operation_id,
        sequence=record.sequence,
        type=record.type,
        kind=EntityKind(record.kind),
        action=record.action,
        method=record.method,
        endpoint=record.endpoint,
        payload=dict(record.payload or {}),
        snapshot=dict(record.snapshot) if record.snapshot is not None else None,
        temp_id=record.temp_id,
        target_id=record.target_id,
        subresource=record.subresource,
        timestamp=_as_utc(record.timestamp),
        attempts=record.attempts,
        last_error=record.last_error,
        last_attempt_at=_as_utc(record.last_attempt_at),
        in_flight=record.in_flight,
    )


class LocalStore:
    """Cached entities, the operation queue and sync metadata on one engine."""

    def __init__(self, engine: Engine, registry: Optional[EntityRegistry] = None, temp_id_map_limit: int = 200):
        self.engine = engine
        self.registry = registry or EntityRegistry()
        self.temp_id_map_limit = temp_id_map_limit
        self._lock = threading.Lock()

    # ===========================
    # Transaction plumbing
    # ===========================

    def _execute(self, work: Callable[[Session], T]) -> T:
        with self._lock:
            try:
                with Session(self.engine) as session:
                    result = work(session)
                    session.commit()
                    return result
            except SQLAlchemyError as e:
                logger.error(f"Local store operation failed: {e}")
                raise StorageUnavailableError(f"Local store unavailable: {e}") from e

    async def _run(self, work: Callable[[Session], T]) -> T:
        return await asyncio.to_thread(self._execute, work)

    @staticmethod
    def _upsert_entity(session: Session, entity: CachedEntity) -> CachedEntity:
        now = utc_now()
        record = session.get(CachedEntityRecord, (entity.kind.value, entity.id))
        if record is None:
            record = CachedEntityRecord(kind=entity.kind.value, entity_id=entity.id)
        record.data = dict(entity.data)
        record.is_temp = entity.is_temp
        record.created_at = _as_utc(entity.created_at) or _as_utc(record.created_at) or now
        record.updated_at = now
        session.add(record)
        return entity.model_copy(update={"created_at": record.created_at, "updated_at": now})

    @staticmethod
    def _delete_entity(session: Session, kind: EntityKind, entity_id: str) -> bool:
        record = session.get(CachedEntityRecord, (kind.value, entity_id))
        if record is None:
            return False
        session.delete(record)
        return True

    @staticmethod
    def _read_metadata(session: Session, key: str, default: Any = None) -> Any:
        entry = session.get(MetadataEntry, key)
        return default if entry is None or entry.value is None else entry.value

    @staticmethod
    def _write_metadata(session: Session, key: str, value: Any):
        entry = session.get(MetadataEntry, key) or MetadataEntry(key=key)
        entry.value = value
        entry.updated_at = utc_now()
        session.add(entry)

    @staticmethod
    def _operation_row(session: Session, operation_id: str) -> Optional[PendingOperationRecord]:
        return session.exec(
            select(PendingOperationRecord).where(PendingOperationRecord.operation_id == operation_id)
        ).first()

    def _forget_failed(self, session: Session, operation_ids: Set[str]):
        """Drop parked records of operations that left the queue."""
        records = self._read_metadata(session, FAILED_OPERATIONS_KEY, [])
        remaining = [record for record in records if record["operation"]["operation_id"] not in operation_ids]
        if len(remaining) != len(records):
            self._write_metadata(session, FAILED_OPERATIONS_KEY, remaining)

    def _referenced_temp_ids(self, session: Session) -> Set[str]:
        referenced = set()
        for record in session.exec(select(PendingOperationRecord)).all():
            for value in (record.temp_id, record.target_id):
                if is_temp_id(value):
                    referenced.add(value)
            referenced.update(self.registry.unresolved_references(EntityKind(record.kind), record.payload or {}))
        return referenced

    def _prune_temp_id_map(self, session: Session, id_map: Dict[str, str]) -> Dict[str, str]:
        """Keep referenced entries and the newest ``temp_id_map_limit`` unreferenced ones."""
        referenced = self._referenced_temp_ids(session)
        unreferenced = [temp_id for temp_id in id_map if temp_id not in referenced]
        keep = max(self.temp_id_map_limit, 0)
        dropped = set(unreferenced[:len(unreferenced) - keep]) if len(unreferenced) > keep else set()
        return {temp_id: entity_id for temp_id, entity_id in id_map.items() if temp_id not in dropped}

    # ===========================
    # Cached entities
    # ===========================

    async def get(self, kind: EntityKind, entity_id: str) -> Optional[CachedEntity]:
        def work(session: Session):
            record = session.get(CachedEntityRecord, (kind.value, entity_id))
            return _entity_from_record(record) if record else None

        return await self._run(work)

    async def put(self, kind: EntityKind, entity: CachedEntity) -> CachedEntity:
        """Upsert an entity; ``updated_at`` is always overwritten."""
        entity = entity.model_copy(update={"kind": kind})
        return await self._run(lambda session: self._upsert_entity(session, entity))

    async def delete(self, kind: EntityKind, entity_id: str) -> bool:
        return await self._run(lambda session: self._delete_entity(session, kind, entity_id))

    async def list_all(self, kind: EntityKind) -> List[CachedEntity]:
        def work(session: Session):
            records = session.exec(
                select(CachedEntityRecord)
                .where(CachedEntityRecord.kind == kind.value)
                .order_by(CachedEntityRecord.created_at, CachedEntityRecord.entity_id)
            ).all()
            return [_entity_from_record(record) for record in records]

        return await self._run(work)

    async def supersede(self, kind: EntityKind, temp_id: str, entity: CachedEntity) -> CachedEntity:
        """Replace a temp record with its server-confirmed counterpart in one transaction."""
        entity = entity.model_copy(update={"kind": kind, "is_temp": False})

        def work(session: Session):
            self._delete_entity(session, kind, temp_id)
            session.flush()
            return self._upsert_entity(session, entity)

        return await self._run(work)

    async def replace_all(self, kind: EntityKind, entities: List[CachedEntity]) -> int:
        """
        Refresh the cache for ``kind`` from a server listing.

        Temp records are kept since their CREATE is still queued, and queued
        updates and deletes are laid over the server records so the cache
        keeps showing unsynced local changes.
        """
        def work(session: Session):
            refreshed = {entity.id: entity.model_copy(update={"kind": kind, "is_temp": False}) for entity in entities}
            id_map = self._read_metadata(session, TEMP_ID_MAP_KEY, {})
            pending = session.exec(
                select(PendingOperationRecord)
                .where(PendingOperationRecord.kind == kind.value)
                .order_by(PendingOperationRecord.timestamp, PendingOperationRecord.sequence)
            ).all()
            for record in pending:
                target_id = id_map.get(record.target_id, record.target_id)
                entity = refreshed.get(target_id)
                if entity is None:
                    continue
                if record.action == "DELETE":
                    del refreshed[target_id]
                elif record.action == "UPDATE":
                    data = self.registry.apply_mutation(kind, entity.data, record.payload or {}, record.subresource)
                    refreshed[target_id] = entity.model_copy(update={"data": data})

            session.execute(
                delete(CachedEntityRecord)
                .where(CachedEntityRecord.kind == kind.value)
                .where(CachedEntityRecord.is_temp == False)  # noqa: E712
            )
            session.flush()
            for entity in refreshed.values():
                self._upsert_entity(session, entity)
            return len(refreshed)

        count = await self._run(work)
        logger.debug(f"Replaced cached {kind.value} records with {count} server records")
        return count

    async def search(self, kind: EntityKind, query: str) -> List[CachedEntity]:
        """Case-insensitive substring match on the kind's natural key."""
        needle = (query or "").strip().lower()
        entities = await self.list_all(kind)
        if not needle:
            return entities
        return [
            entity for entity in entities
            if needle in (self.registry.natural_key_of(kind, entity.data) or "")
        ]

    async def with_references(self, kind: EntityKind) -> List[Dict[str, Any]]:
        """Documents of ``kind`` with reference ids replaced by the cached referenced documents."""
        spec = self.registry.spec_for(kind)
        entities = await self.list_all(kind)
        lookups: Dict[EntityKind, Dict[str, Dict[str, Any]]] = {}
        for ref_kind in set(spec.references.values()):
            lookups[ref_kind] = {entity.id: entity.to_document() for entity in await self.list_all(ref_kind)}

        documents = []
        for entity in entities:
            document = entity.to_document()
            for field_name, ref_kind in spec.references.items():
                ref_id = document.get(field_name)
                if isinstance(ref_id, str) and ref_id in lookups[ref_kind]:
                    document[field_name] = lookups[ref_kind][ref_id]
            documents.append(document)
        return documents

    # ===========================
    # Metadata
    # ===========================

    async def get_metadata(self, key: str, default: Any = None) -> Any:
        return await self._run(lambda session: self._read_metadata(session, key, default))

    async def set_metadata(self, key: str, value: Any):
        await self._run(lambda session: self._write_metadata(session, key, value))

    async def append_bounded(self, key: str, item: Any, limit: int) -> List[Any]:
        """Prepend ``item`` to a most-recent-first list and truncate it to ``limit``."""
        def work(session: Session):
            items = [item] + list(self._read_metadata(session, key, []))
            items = items[:limit]
            self._write_metadata(session, key, items)
            return items

        return await self._run(work)

    # ===========================
    # Operation queue
    # ===========================

    async def enqueue_operation(
        self,
        operation: QueuedOperation,
        entity: Optional[CachedEntity] = None,
        remove_entity_id: Optional[str] = None,
    ) -> QueuedOperation:
        """
        Persist a queued operation, optionally with its optimistic local write.

        Both land in the same transaction.
        """
        def work(session: Session):
            if entity is not None:
                self._upsert_entity(session, entity)
            if remove_entity_id is not None:
                self._delete_entity(session, operation.kind, remove_entity_id)
            record = PendingOperationRecord(
                operation_id=operation.operation_id,
                type=operation.type,
                kind=operation.kind.value,
                action=operation.action.value,
                method=operation.method,
                endpoint=operation.endpoint,
                payload=operation.payload,
                snapshot=operation.snapshot,
                temp_id=operation.temp_id,
                target_id=operation.target_id,
                subresource=operation.subresource,
                timestamp=_as_utc(operation.timestamp),
                attempts=operation.attempts,
                last_error=operation.last_error,
                last_attempt_at=_as_utc(operation.last_attempt_at),
            )
            session.add(record)
            session.flush()
            return operation.model_copy(update={"sequence": record.sequence})

        queued = await self._run(work)
        logger.info(f"Queued {queued.type} {queued.operation_id} ({queued.method} {queued.endpoint})")
        return queued

    async def list_pending_operations(self, kind: Optional[EntityKind] = None) -> List[QueuedOperation]:
        """Pending operations in replay order: timestamp, then enqueue sequence."""
        def work(session: Session):
            statement = select(PendingOperationRecord)
            if kind is not None:
                statement = statement.where(PendingOperationRecord.kind == kind.value)
            statement = statement.order_by(PendingOperationRecord.timestamp, PendingOperationRecord.sequence)
            return [_operation_from_record(record) for record in session.exec(statement).all()]

        return await self._run(work)

    async def get_operation(self, operation_id: str) -> Optional[QueuedOperation]:
        def work(session: Session):
            record = self._operation_row(session, operation_id)
            return _operation_from_record(record) if record else None

        return await self._run(work)

    async def clear_operation(self, operation_id: str) -> bool:
        """
        Remove an operation. Returns False if it was already cleared.

        Raises OperationInFlightError while the operation is claimed.
        """
        def work(session: Session):
            record = self._operation_row(session, operation_id)
            if record is None:
                return False
            if record.in_flight:
                raise OperationInFlightError(operation_id)
            session.delete(record)
            self._forget_failed(session, {operation_id})
            return True

        return await self._run(work)

    async def claim_operation(self, operation_id: str) -> Optional[QueuedOperation]:
        """
        Mark an operation in flight and return it, or None if it is gone.

        Raises OperationInFlightError when another caller already owns it.
        """
        def work(session: Session):
            record = self._operation_row(session, operation_id)
            if record is None:
                return None
            if record.in_flight:
                raise OperationInFlightError(operation_id)
            record.in_flight = True
            session.add(record)
            session.flush()
            return _operation_from_record(record)

        return await self._run(work)

    async def release_operation(self, operation_id: str) -> bool:
        def work(session: Session):
            record = self._operation_row(session, operation_id)
            if record is None or not record.in_flight:
                return False
            record.in_flight = False
            session.add(record)
            return True

        return await self._run(work)

    async def release_claims(self) -> int:
        """Release claims left behind by a process that died mid-replay."""
        def work(session: Session):
            records = session.exec(
                select(PendingOperationRecord).where(PendingOperationRecord.in_flight == True)  # noqa: E712
            ).all()
            for record in records:
                record.in_flight = False
                session.add(record)
            return len(records)

        count = await self._run(work)
        if count:
            logger.warning(f"Released {count} operations left in flight")
        return count

    async def discard_temp_entity(self, kind: EntityKind, temp_id: str) -> Optional[List[str]]:
        """
        Delete a never-synced entity together with every queued operation on it.

        Returns the cleared operation ids, or None without changing anything
        when the server has or may be creating the record: one of those
        operations is claimed, or the temp id already has a permanent id.
        """
        def work(session: Session):
            if temp_id in self._read_metadata(session, TEMP_ID_MAP_KEY, {}):
                return None
            records = session.exec(
                select(PendingOperationRecord)
                .where(PendingOperationRecord.kind == kind.value)
                .where(
                    (PendingOperationRecord.temp_id == temp_id)
                    | (PendingOperationRecord.target_id == temp_id)
                )
            ).all()
            if any(record.in_flight for record in records):
                return None

            self._delete_entity(session, kind, temp_id)
            for record in records:
                session.delete(record)
            cleared = [record.operation_id for record in records]
            self._forget_failed(session, set(cleared))
            return cleared

        return await self._run(work)

    async def record_attempt(self, operation_id: str, error: Dict[str, Any]) -> Optional[QueuedOperation]:
        """Count a failed replay attempt. Only the retry counters change."""
        def work(session: Session):
            record = self._operation_row(session, operation_id)
            if record is None:
                return None
            record.attempts += 1
            record.last_error = error
            record.last_attempt_at = utc_now()
            session.add(record)
            session.flush()
            return _operation_from_record(record)

        return await self._run(work)

    async def reset_attempts(self, operation_ids: List[str]) -> int:
        def work(session: Session):
            if not operation_ids:
                return 0
            records = session.exec(
                select(PendingOperationRecord).where(PendingOperationRecord.operation_id.in_(operation_ids))
            ).all()
            for record in records:
                record.attempts = 0
                record.last_error = None
                record.last_attempt_at = None
                session.add(record)
            return len(records)

        return await self._run(work)

    async def count_pending_operations(self) -> int:
        def work(session: Session):
            return len(session.exec(select(PendingOperationRecord.sequence)).all())

        return await self._run(work)

    async def commit_replay(
        self,
        operation: QueuedOperation,
        entity: Optional[CachedEntity] = None,
        remove_entity_id: Optional[str] = None,
    ) -> bool:
        """
        Reconcile a confirmed replay and clear its operation atomically.

        ``entity`` is written (superseding ``operation.temp_id`` when the
        server assigned a new id), ``remove_entity_id`` is deleted, the temp
        id map is updated and pruned, and the operation row removed along
        with any parked record of it. A temp record deleted while its CREATE
        was in flight stays out of the cache; the queued DELETE removes it
        from the server. Returns False and changes nothing when the
        operation was already cleared.
        """
        def work(session: Session):
            record = self._operation_row(session, operation.operation_id)
            if record is None:
                return False
            session.delete(record)
            session.flush()

            stored_map = dict(self._read_metadata(session, TEMP_ID_MAP_KEY, {}))
            id_map = dict(stored_map)
            if entity is not None:
                deleted_locally = False
                if operation.temp_id and operation.temp_id != entity.id:
                    self._delete_entity(session, operation.kind, operation.temp_id)
                    session.flush()
                    id_map[operation.temp_id] = entity.id
                    deleted_locally = self._has_queued_delete(session, operation.kind, operation.temp_id)
                if not deleted_locally:
                    self._upsert_entity(session, entity.model_copy(update={"is_temp": False}))
            if remove_entity_id is not None:
                self._delete_entity(session, operation.kind, remove_entity_id)

            id_map = self._prune_temp_id_map(session, id_map)
            if id_map != stored_map:
                self._write_metadata(session, TEMP_ID_MAP_KEY, id_map)
            self._forget_failed(session, {operation.operation_id})
            return True

        return await self._run(work)

    @staticmethod
    def _has_queued_delete(session: Session, kind: EntityKind, entity_id: str) -> bool:
        return session.exec(
            select(PendingOperationRecord.sequence)
            .where(PendingOperationRecord.kind == kind.value)
            .where(PendingOperationRecord.action == "DELETE")
            .where(PendingOperationRecord.target_id == entity_id)
        ).first() is not None

    async def temp_id_map(self) -> Dict[str, str]:
        return dict(await self.get_metadata(TEMP_ID_MAP_KEY, {}))
