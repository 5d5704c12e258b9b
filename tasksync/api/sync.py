"""Sync API endpoints."""

import logging
from dataclasses import asdict

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy import desc, select
from sqlalchemy.ext.asyncio import AsyncSession

from tasksync.core.context import SyncContext, get_context
from tasksync.core.database import get_db
from tasksync.models.sync_log import SyncLog
from tasksync.schemas.responses import (
    ConnectionResponse,
    ImportProgressResponse,
    MessageResponse,
    QueueEntryResponse,
    QueueResponse,
    SyncLogResponse,
    SyncStatusResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sync", tags=["sync"])


@router.get("/status", response_model=SyncStatusResponse)
async def sync_status(
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Orchestrator status with per-kind record breakdown."""
    status = context.orchestrator.status
    records = {
        kind: await repository.status_breakdown(db)
        for kind, repository in context.repositories.items()
    }
    return SyncStatusResponse(
        state=status.state.value,
        message=status.message,
        pending_items=await context.outbox.count(db),
        last_successful_sync=status.last_successful_sync,
        last_error=status.last_error,
        error_kind=status.error_kind,
        syncing_kinds=sorted(context.adapters),
        records=records,
    )


@router.post("/force", response_model=MessageResponse)
async def force_sync(
    background_tasks: BackgroundTasks,
    context: SyncContext = Depends(get_context),
):
    """Run a full sync cycle now."""
    if not context.adapters:
        raise HTTPException(status_code=409, detail="No remote databases configured")
    background_tasks.add_task(context.orchestrator.force_sync)
    return MessageResponse(message="Sync started")


@router.post("/push", response_model=MessageResponse)
async def push_now(
    background_tasks: BackgroundTasks,
    context: SyncContext = Depends(get_context),
):
    """Transmit queued changes without pulling."""
    background_tasks.add_task(context.orchestrator.push_immediate)
    return MessageResponse(message="Push started")


@router.post("/check", response_model=ConnectionResponse)
async def check_connection(context: SyncContext = Depends(get_context)):
    """Test the API key against the remote service."""
    return ConnectionResponse(**await context.orchestrator.check_connection())


@router.get("/queue", response_model=QueueResponse)
async def get_queue(
    failed_only: bool = False,
    limit: int = Query(default=100, ge=1, le=1000),
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """List pending outbox entries, oldest first."""
    if failed_only:
        entries = (await context.outbox.list_failed(db))[:limit]
    else:
        entries = await context.outbox.drain(db, limit)
    return QueueResponse(
        count=await context.outbox.count(db),
        entries=[QueueEntryResponse.model_validate(entry) for entry in entries],
    )


@router.delete("/queue", response_model=MessageResponse)
async def clear_queue(
    kind: str | None = None,
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Discard queued changes, for one kind or all of them."""
    if kind is not None:
        if kind not in context.repositories:
            raise HTTPException(status_code=404, detail=f"Unknown kind: {kind}")
        cleared = await context.outbox.clear_by_type(db, kind)
    else:
        cleared = await context.outbox.clear_all(db)
    logger.warning(f"Sync queue cleared via API ({cleared} entries)")
    return MessageResponse(message=f"Cleared {cleared} queued changes")


@router.get("/import", response_model=list[ImportProgressResponse])
async def import_progress(context: SyncContext = Depends(get_context)):
    """Bulk import progress per kind."""
    return [
        ImportProgressResponse(**{**asdict(progress), "phase": progress.phase.value})
        for progress in context.orchestrator.import_progress.values()
    ]


@router.post("/import/reset", response_model=MessageResponse)
async def reset_import(context: SyncContext = Depends(get_context)):
    """Forget import progress so the next cycle re-imports from scratch."""
    await context.orchestrator.reset_import()
    return MessageResponse(message="Import state reset")


@router.get("/logs", response_model=list[SyncLogResponse])
async def get_sync_logs(
    limit: int = Query(default=20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Recent sync cycles, newest first."""
    result = await db.execute(
        select(SyncLog).order_by(desc(SyncLog.started_at), desc(SyncLog.id)).limit(limit)
    )
    return result.scalars().all()
