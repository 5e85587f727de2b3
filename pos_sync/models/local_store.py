"""
Tables of the device-local durable store.

The store keeps three kinds of rows: cached domain records, the queue of
mutations captured while offline, and a small key/value metadata table for
sync bookkeeping (status, history, temp id map, failed operations).
"""

from sqlmodel import SQLModel, Field, Column, JSON
from typing import Optional, Dict, Any
from datetime import datetime


class CachedEntityRecord(SQLModel, table=True):
    """
    A cached domain record.

    Attributes:
        kind: Entity kind (category, table, menu_pricing, ...)
        entity_id: Server id, or a temp_ id for records created offline
        data: Business fields of the record
        is_temp: Whether the server has not confirmed this record yet
        created_at: Server creation time (or local time for temp records)
        updated_at: Last local write
    """
    __tablename__ = "cached_entities"

    kind: str = Field(primary_key=True, max_length=50)
    entity_id: str = Field(primary_key=True, max_length=255)
    data: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    is_temp: bool = Field(default=False, index=True)
    created_at: Optional[datetime] = Field(default=None)
    updated_at: Optional[datetime] = Field(default=None)


class PendingOperationRecord(SQLModel, table=True):
    """
    A queued mutation awaiting replay.

    Rows are written once at enqueue time; afterwards only the retry
    counters (attempts, last_error, last_attempt_at) and the in_flight claim
    change until the row is cleared. in_flight is set while a replay or a
    conflict resolution owns the row.
    """
    __tablename__ = "pending_operations"

    sequence: Optional[int] = Field(default=None, primary_key=True)
    operation_id: str = Field(unique=True, index=True, max_length=64)
    type: str = Field(max_length=100)
    kind: str = Field(index=True, max_length=50)
    action: str = Field(max_length=10)
    method: str = Field(max_length=10)
    endpoint: str = Field(max_length=500)
    payload: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    snapshot: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    temp_id: Optional[str] = Field(default=None, index=True, max_length=255)
    target_id: Optional[str] = Field(default=None, index=True, max_length=255)
    subresource: Optional[str] = Field(default=None, max_length=50)
    timestamp: datetime = Field(index=True)
    attempts: int = Field(default=0)
    last_error: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    last_attempt_at: Optional[datetime] = Field(default=None)
    in_flight: bool = Field(default=False)


class MetadataEntry(SQLModel, table=True):
    """Key/value sync bookkeeping."""
    __tablename__ = "sync_metadata"

    key: str = Field(primary_key=True, max_length=255)
    value: Optional[Any] = Field(default=None, sa_column=Column(JSON))
    updated_at: Optional[datetime] = Field(default=None)
