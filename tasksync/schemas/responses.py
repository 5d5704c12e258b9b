"""Pydantic response models for API endpoints."""

from datetime import datetime
from typing import Any

from pydantic import BaseModel


class MessageResponse(BaseModel):
    message: str


class SyncStatusResponse(BaseModel):
    """Current orchestrator state plus queue and record counts."""
    state: str
    message: str
    pending_items: int
    last_successful_sync: int | None
    last_error: str | None
    error_kind: str | None
    syncing_kinds: list[str]
    records: dict[str, dict[str, int]]


class ImportProgressResponse(BaseModel):
    kind: str
    phase: str
    window_index: int
    window_name: str | None
    total_windows: int
    records_imported: int
    target: int
    batches: int
    error: str | None
    started_at: int | None
    completed_at: int | None


class QueueEntryResponse(BaseModel):
    """Pending outbox entry."""
    id: int
    entity_type: str
    client_id: str
    remote_id: str | None
    operation: str
    changed_fields: list[str]
    retry_count: int
    last_error: str | None
    pending_since: int

    class Config:
        from_attributes = True


class QueueResponse(BaseModel):
    count: int
    entries: list[QueueEntryResponse]


class SyncLogResponse(BaseModel):
    """One orchestrator cycle."""
    id: int
    cycle_type: str
    started_at: datetime
    completed_at: datetime | None
    status: str
    details: dict[str, Any] | None
    error_message: str | None

    class Config:
        from_attributes = True


class ConnectionResponse(BaseModel):
    ok: bool
    message: str
    user: str | None = None
    error_kind: str | None = None


class RecordListResponse(BaseModel):
    kind: str
    count: int
    records: list[dict[str, Any]]
