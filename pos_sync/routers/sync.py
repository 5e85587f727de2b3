"""
Sync router for the offline-first POS client.
Lets the dashboard read sync status, inspect the operation queue and
resolve conflicts.
"""

import logging
from fastapi import APIRouter, Depends, HTTPException, Query, status
from typing import List, Optional, Dict, Any

from pos_sync.core.deps import get_coordinator
from pos_sync.core.exceptions import (
    ApiError,
    ConflictNotFoundError,
    InvalidResolutionError,
    NetworkError,
    OperationInFlightError,
    StorageUnavailableError,
)
from pos_sync.schemas.sync import (
    BulkResolutionResult,
    ConflictListResponse,
    ConflictResolutionRequest,
    ConnectivityUpdate,
    EntityKind,
    FailedOperationRecord,
    OperationListResponse,
    ResolvedEntity,
    SyncHistoryEntry,
    SyncResult,
    SyncStatus,
)
from pos_sync.services.coordinator import SyncCoordinator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync & Offline"])


def storage_unavailable(e: StorageUnavailableError) -> HTTPException:
    logger.error(f"Local store unavailable: {e}")
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Local store unavailable"
    )


def in_flight(e: OperationInFlightError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail=f"Operation {e.operation_id} is being synced, try again shortly"
    )


# ===========================
# Status
# ===========================

@router.get("/status", response_model=SyncStatus)
async def get_sync_status(coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Current sync status, including queue and parked operation counts."""
    try:
        return await coordinator.status()
    except StorageUnavailableError as e:
        raise storage_unavailable(e)


@router.get("/history", response_model=List[SyncHistoryEntry])
async def get_sync_history(
    coordinator: SyncCoordinator = Depends(get_coordinator),
    limit: int = Query(default=20, ge=1, le=100)
):
    """Finished sync passes, most recent first."""
    try:
        history = await coordinator.history()
    except StorageUnavailableError as e:
        raise storage_unavailable(e)
    return history[:limit]


@router.post("/start", response_model=SyncResult)
async def start_sync(
    coordinator: SyncCoordinator = Depends(get_coordinator),
    background: bool = Query(default=False, description="Return immediately and sync in the background")
):
    """
    Start a sync pass.

    With ``background=true`` the pass runs as a task and the response only
    reports whether one was already running.
    """
    if background:
        started = coordinator.trigger_sync()
        return SyncResult(already_running=not started)

    try:
        return await coordinator.start_sync()
    except StorageUnavailableError as e:
        raise storage_unavailable(e)


# ===========================
# Operation Queue
# ===========================

@router.get("/operations", response_model=OperationListResponse)
async def list_pending_operations(
    coordinator: SyncCoordinator = Depends(get_coordinator),
    kind: Optional[EntityKind] = Query(default=None)
):
    """Pending operations in replay order."""
    try:
        operations = await coordinator.pending_operations(kind)
    except StorageUnavailableError as e:
        raise storage_unavailable(e)
    return OperationListResponse(operations=operations, total=len(operations))


@router.get("/operations/failed", response_model=List[FailedOperationRecord])
async def list_failed_operations(coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Operations parked after a permanent failure."""
    try:
        return await coordinator.failed_operations()
    except StorageUnavailableError as e:
        raise storage_unavailable(e)


@router.post("/operations/retry-failed")
async def retry_failed_operations(coordinator: SyncCoordinator = Depends(get_coordinator)) -> Dict[str, Any]:
    """Un-park failed operations so the next pass retries them."""
    try:
        count = await coordinator.retry_failed_operations()
    except StorageUnavailableError as e:
        raise storage_unavailable(e)
    return {"requeued": count}


@router.delete("/operations/{operation_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_operation(
    operation_id: str,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    """Discard a queued operation (and its temp record for unsynced creates)."""
    try:
        discarded = await coordinator.discard_operation(operation_id)
    except OperationInFlightError as e:
        raise in_flight(e)
    except StorageUnavailableError as e:
        raise storage_unavailable(e)

    if not discarded:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Operation not found"
        )


# ===========================
# Conflicts
# ===========================

@router.get("/conflicts", response_model=ConflictListResponse)
async def list_conflicts(coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Conflicts found by the last sync pass that are still unresolved."""
    conflicts = coordinator.active_conflicts()
    return ConflictListResponse(conflicts=conflicts, total=len(conflicts))


@router.post("/conflicts/{conflict_id}/resolve", response_model=ResolvedEntity)
async def resolve_conflict(
    conflict_id: str,
    resolution: ConflictResolutionRequest,
    coordinator: SyncCoordinator = Depends(get_coordinator)
):
    """
    Resolve a conflict with the chosen strategy.

    The conflict stays open if the server can't be reached or rejects the
    resolution.
    """
    try:
        return await coordinator.resolve(
            conflict_id,
            resolution.strategy,
            payload=resolution.payload,
            field_sources=resolution.field_sources
        )
    except ConflictNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Conflict not found"
        )
    except InvalidResolutionError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    except OperationInFlightError as e:
        raise in_flight(e)
    except NetworkError as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Server unreachable: {e}"
        )
    except ApiError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=f"Server rejected the resolution: {e.message}"
        )
    except StorageUnavailableError as e:
        raise storage_unavailable(e)


@router.post("/conflicts/resolve-all", response_model=BulkResolutionResult)
async def resolve_all_conflicts(coordinator: SyncCoordinator = Depends(get_coordinator)):
    """Resolve every remaining conflict in favour of the server."""
    try:
        return await coordinator.resolve_all_with_server()
    except StorageUnavailableError as e:
        raise storage_unavailable(e)


# ===========================
# Connectivity
# ===========================

@router.post("/connectivity")
async def set_connectivity(
    update: ConnectivityUpdate,
    coordinator: SyncCoordinator = Depends(get_coordinator)
) -> Dict[str, Any]:
    """Manually mark the client online or offline."""
    changed = await coordinator.set_online(update.online)
    return {"online": coordinator.is_online, "changed": changed}
