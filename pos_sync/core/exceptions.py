"""
Exception taxonomy for the offline sync engine.

Transient network failures, application failures from a reachable server,
and local storage failures are kept apart because each one is handled
differently by the interceptor and the sync runner.
"""

from typing import Any, Optional


class SyncEngineError(Exception):
    """Base class for sync engine errors."""


class NetworkError(SyncEngineError):
    """The server could not be reached (offline, refused, timed out)."""

    def __init__(self, message: str, timeout: bool = False):
        self.timeout = timeout
        super().__init__(message)


class ApiError(SyncEngineError):
    """A reachable server answered with an application-level failure."""

    def __init__(self, status_code: int, message: str, data: Optional[Any] = None):
        self.status_code = status_code
        self.message = message
        self.data = data
        super().__init__(f"{status_code}: {message}")


class StorageUnavailableError(SyncEngineError):
    """The local durable store could not complete a read or write."""


class UnknownEntityError(SyncEngineError):
    """An endpoint or entity kind that is not in the entity registry."""


class ConflictNotFoundError(SyncEngineError):
    """No active conflict with the given id."""

    def __init__(self, conflict_id: str):
        self.conflict_id = conflict_id
        super().__init__(f"Conflict {conflict_id} not found")


class InvalidResolutionError(SyncEngineError):
    """A resolution request that cannot produce a valid replay payload."""


class OperationInFlightError(SyncEngineError):
    """A queued operation is being replayed and can't be changed right now."""

    def __init__(self, operation_id: str):
        self.operation_id = operation_id
        super().__init__(f"Operation {operation_id} is being replayed")
