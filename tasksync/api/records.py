"""Record CRUD and trash endpoints, one route set for every entity kind."""

import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, Body, Depends, HTTPException, Query
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tasksync.core.context import SyncContext, get_context
from tasksync.core.database import get_db
from tasksync.schemas.responses import MessageResponse, RecordListResponse
from tasksync.services.errors import RecordNotFoundError, RecordTrashedError
from tasksync.services.repository import RecordRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/records", tags=["records"])


def _repository(kind: str, context: SyncContext) -> RecordRepository:
    try:
        return context.repository(kind)
    except KeyError:
        raise HTTPException(status_code=404, detail=f"Unknown kind: {kind}")


def _validation_detail(error: ValidationError) -> list[dict[str, Any]]:
    return [{"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]} for err in error.errors()]


def _schedule_push(repository: RecordRepository, context: SyncContext, background_tasks: BackgroundTasks) -> None:
    if repository.sync_enabled:
        background_tasks.add_task(context.orchestrator.push_immediate)


@router.get("/{kind}", response_model=RecordListResponse)
async def list_records(
    kind: str,
    status: str | None = None,
    date_from: str | None = None,
    date_to: str | None = None,
    urgent: bool | None = None,
    important: bool | None = None,
    hard_deadline: bool | None = None,
    parent: str | None = None,
    include_trashed: bool = False,
    limit: int = Query(default=200, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """List records of a kind with optional filters."""
    repository = _repository(kind, context)
    flags = {
        name: value
        for name, value in (("urgent", urgent), ("important", important), ("hard_deadline", hard_deadline))
        if value is not None
    }
    try:
        records = await repository.list(
            db,
            status=status,
            date_from=date_from,
            date_to=date_to,
            flags=flags,
            parent=parent,
            include_trashed=include_trashed,
            limit=limit,
            offset=offset,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return RecordListResponse(
        kind=kind,
        count=len(records),
        records=[repository.to_dict(record) for record in records],
    )


@router.get("/{kind}/trash", response_model=RecordListResponse)
async def list_trash(
    kind: str,
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Records in the trash, most recently trashed first."""
    repository = _repository(kind, context)
    records = await repository.list_trashed(db)
    return RecordListResponse(
        kind=kind,
        count=len(records),
        records=[repository.to_dict(record) for record in records],
    )


@router.delete("/{kind}/trash", response_model=MessageResponse)
async def empty_trash(
    kind: str,
    older_than_days: int = Query(default=0, ge=0),
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Permanently delete trashed records older than ``older_than_days``."""
    repository = _repository(kind, context)
    purged = await repository.purge_expired_trash(db, older_than_days)
    return MessageResponse(message=f"Purged {purged} {kind} records")


@router.post("/{kind}", status_code=201)
async def create_record(
    kind: str,
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Body(...),
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Create a record locally and queue it for the remote."""
    repository = _repository(kind, context)
    try:
        record = await repository.create(db, payload)
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=_validation_detail(e))
    _schedule_push(repository, context, background_tasks)
    return repository.to_dict(record)


@router.get("/{kind}/{record_id}")
async def get_record(
    kind: str,
    record_id: str,
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Get a record by client id, remote id or unique external id."""
    repository = _repository(kind, context)
    record = await repository.get(db, record_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"{kind} {record_id} not found")
    return repository.to_dict(record)


@router.patch("/{kind}/{record_id}")
async def update_record(
    kind: str,
    record_id: str,
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Body(...),
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Apply a partial update."""
    repository = _repository(kind, context)
    try:
        record = await repository.update(db, record_id, payload)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RecordTrashedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=_validation_detail(e))
    _schedule_push(repository, context, background_tasks)
    return repository.to_dict(record)


@router.delete("/{kind}/{record_id}")
async def trash_record(
    kind: str,
    record_id: str,
    background_tasks: BackgroundTasks,
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Move a record to the trash."""
    repository = _repository(kind, context)
    try:
        record = await repository.mark_trashed(db, record_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _schedule_push(repository, context, background_tasks)
    return repository.to_dict(record)


@router.post("/{kind}/{record_id}/restore")
async def restore_record(
    kind: str,
    record_id: str,
    background_tasks: BackgroundTasks,
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
) -> dict[str, Any]:
    """Take a record out of the trash."""
    repository = _repository(kind, context)
    try:
        record = await repository.restore(db, record_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _schedule_push(repository, context, background_tasks)
    return repository.to_dict(record)


@router.delete("/{kind}/{record_id}/purge", response_model=MessageResponse)
async def purge_record(
    kind: str,
    record_id: str,
    background_tasks: BackgroundTasks,
    context: SyncContext = Depends(get_context),
    db: AsyncSession = Depends(get_db),
):
    """Permanently delete a record."""
    repository = _repository(kind, context)
    try:
        await repository.purge(db, record_id)
    except RecordNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    _schedule_push(repository, context, background_tasks)
    return MessageResponse(message=f"{kind} {record_id} permanently deleted")
