"""
Sync schemas for the offline-first POS client.
Cached entities, queued operations, conflicts and sync pass reporting.
"""

import uuid
from pydantic import BaseModel, Field
from datetime import datetime, timezone
from typing import List, Optional, Dict, Any
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an ISO timestamp coming from the server (``Z`` suffix allowed)."""
    if value is None or isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return parsed
    return None


# Fields that identify a record rather than describe it. They are lifted out of
# server documents into CachedEntity attributes.
IDENTITY_FIELDS = frozenset({"_id", "id", "isTemp", "createdAt", "updatedAt"})


# ===========================
# Enums
# ===========================

class EntityKind(str, Enum):
    """Entity kinds cached locally and replayable while offline"""
    CATEGORY = "category"
    SUBCATEGORY = "subcategory"
    TABLE_TYPE = "table_type"
    TABLE = "table"
    MENU_PRICING = "menu_pricing"
    OUTLET = "outlet"
    OFFLINE_REASON = "offline_reason"


class OperationAction(str, Enum):
    """Mutations that can be queued"""
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class SyncState(str, Enum):
    """Sync pass state machine"""
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_FAILED = "partially_failed"


class OperationOutcome(str, Enum):
    """Result of processing one queued operation during a pass"""
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    CONFLICT = "conflict"
    DEFERRED = "deferred"


class ResolutionStrategy(str, Enum):
    """Conflict resolution strategies"""
    SERVER = "server"
    LOCAL = "local"
    MERGE = "merge"
    CUSTOM = "custom"


class FieldSource(str, Enum):
    """Which side a merged field is taken from"""
    SERVER = "server"
    LOCAL = "local"


# ===========================
# Cached Entities
# ===========================

class CachedEntity(BaseModel):
    """A domain record held in the local store"""
    id: str = Field(..., description="Permanent server id, or a temp_ id until the server confirms creation")
    kind: EntityKind
    data: Dict[str, Any] = Field(default_factory=dict, description="Business fields as returned by the server")
    is_temp: bool = Field(False, description="True until the server assigns a permanent id")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        json_schema_extra = {
            "example": {
                "id": "temp_4f6c2d0e9a8b4c1f",
                "kind": "category",
                "data": {"categoryName": "Starters", "parentCategory": "food"},
                "is_temp": True,
                "created_at": "2025-10-27T12:00:00Z",
                "updated_at": "2025-10-27T12:00:00Z"
            }
        }

    @classmethod
    def from_document(cls, kind: EntityKind, document: Dict[str, Any], is_temp: bool = False) -> "CachedEntity":
        """Build a cached entity from a server (or optimistic) JSON document."""
        entity_id = document.get("_id") or document.get("id")
        if entity_id is None:
            raise ValueError(f"{kind.value} document has no _id")
        return cls(
            id=str(entity_id),
            kind=kind,
            data={k: v for k, v in document.items() if k not in IDENTITY_FIELDS},
            is_temp=bool(document.get("isTemp", is_temp)),
            created_at=parse_timestamp(document.get("createdAt")),
            updated_at=parse_timestamp(document.get("updatedAt")),
        )

    def to_document(self) -> Dict[str, Any]:
        """Render the wire shape the UI and the server API use."""
        document = dict(self.data)
        document["_id"] = self.id
        if self.is_temp:
            document["isTemp"] = True
        if self.created_at:
            document["createdAt"] = self.created_at.isoformat()
        if self.updated_at:
            document["updatedAt"] = self.updated_at.isoformat()
        return document


# ===========================
# Operation Queue
# ===========================

class QueuedOperation(BaseModel):
    """A mutation captured while the server could not be reached"""
    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    sequence: Optional[int] = Field(None, description="Monotonic enqueue order, assigned by the store")
    type: str = Field(..., description="Operation type, e.g. CREATE_CATEGORY or UPDATE_CATEGORY_STOCK")
    kind: EntityKind
    action: OperationAction
    method: str
    endpoint: str
    payload: Dict[str, Any] = Field(default_factory=dict, description="Request body captured at enqueue time")
    snapshot: Optional[Dict[str, Any]] = Field(
        None,
        description="Business fields of the local record before the mutation (what the operation assumed)"
    )
    temp_id: Optional[str] = Field(None, description="Temp entity this operation created or targets")
    target_id: Optional[str] = Field(None, description="Entity id the operation applies to")
    subresource: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    attempts: int = 0
    last_error: Optional[Dict[str, Any]] = None
    last_attempt_at: Optional[datetime] = None
    in_flight: bool = Field(False, description="Being replayed or resolved right now")

    class Config:
        json_schema_extra = {
            "example": {
                "operation_id": "9b1f3c5a7d2e4f60a8c9e1b2d3f4a5b6",
                "sequence": 12,
                "type": "UPDATE_MENU_PRICING",
                "kind": "menu_pricing",
                "action": "UPDATE",
                "method": "PUT",
                "endpoint": "/api/menu/pricing/64f0c1",
                "payload": {"price": 10},
                "snapshot": {"price": 9},
                "target_id": "64f0c1",
                "timestamp": "2025-10-27T12:00:00Z",
                "attempts": 0
            }
        }


class FailedOperationRecord(BaseModel):
    """A permanently failed operation parked for inspection"""
    operation: QueuedOperation
    error: Dict[str, Any]
    timestamp: datetime = Field(default_factory=utc_now)


# ===========================
# Conflicts
# ===========================

class Conflict(BaseModel):
    """A divergence between what a queued operation assumed and current server state"""
    conflict_id: str
    type: str
    kind: EntityKind
    action: OperationAction
    server_data: Dict[str, Any] = Field(default_factory=dict)
    local_data: Dict[str, Any] = Field(default_factory=dict)
    fields: List[str] = Field(default_factory=list, description="Business fields whose values differ")
    operation_id: str
    endpoint: str
    temp_id: Optional[str] = None
    entity_id: Optional[str] = None
    detected_at: datetime = Field(default_factory=utc_now)


class ConflictResolutionRequest(BaseModel):
    """Request to resolve a conflict"""
    strategy: ResolutionStrategy = Field(..., description="How to resolve the conflict")
    field_sources: Optional[Dict[str, FieldSource]] = Field(None, description="Per-field source for merge")
    payload: Optional[Dict[str, Any]] = Field(None, description="Replacement payload for custom resolution")

    class Config:
        json_schema_extra = {
            "example": {
                "strategy": "merge",
                "field_sources": {"price": "local"},
                "payload": None
            }
        }


class ResolvedEntity(BaseModel):
    """Outcome of a confirmed conflict resolution"""
    conflict_id: str
    strategy: ResolutionStrategy
    entity: Optional[CachedEntity] = None
    resolved_at: datetime = Field(default_factory=utc_now)


class BulkResolutionResult(BaseModel):
    """Outcome of resolving every remaining conflict with server data"""
    resolved: List[ResolvedEntity] = Field(default_factory=list)
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    aborted: bool = False


class ConflictListResponse(BaseModel):
    """List of active conflicts"""
    conflicts: List[Conflict]
    total: int


# ===========================
# Sync Pass Reporting
# ===========================

class SyncResult(BaseModel):
    """Summary returned by a sync pass"""
    processed: int = 0
    failed: int = 0
    retrying: int = 0
    conflicts: int = 0
    deferred: int = 0
    success: bool = True
    already_running: bool = False
    failed_operations: List[Dict[str, Any]] = Field(default_factory=list)


class SyncStatus(BaseModel):
    """Observable sync status"""
    state: SyncState = SyncState.IDLE
    in_progress: bool = False
    progress: float = 0
    total: int = 0
    completed: int = 0
    failed: int = 0
    retrying: int = 0
    conflicts: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration_ms: Optional[int] = None
    last_sync: Optional[datetime] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    pending_operations: int = 0
    parked_operations: int = 0


class SyncHistoryEntry(BaseModel):
    """One completed sync pass"""
    id: str
    total: int
    completed: int
    failed: int
    retrying: int
    conflicts: int = 0
    deferred: int = 0
    start_time: Optional[datetime] = None
    end_time: datetime
    duration_ms: int
    success: bool


class OperationListResponse(BaseModel):
    """Pending operations in replay order"""
    operations: List[QueuedOperation]
    total: int


# ===========================
# Interceptor
# ===========================

class InterceptedResponse(BaseModel):
    """Response handed back to feature code by the request interceptor"""
    success: bool = True
    data: Optional[Any] = None
    message: Optional[str] = None
    is_offline_operation: bool = False
    operation_id: Optional[str] = None
    is_offline_data: bool = False
    last_sync_time: Optional[datetime] = None


class ConnectivityUpdate(BaseModel):
    """Manual connectivity override"""
    online: bool
