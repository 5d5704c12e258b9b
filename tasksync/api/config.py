from typing import Any

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from tasksync.core.context import SyncContext, get_context

router = APIRouter(prefix="/api", tags=["config"])

VERSION = "0.1.0"


class HealthResponse(BaseModel):
    status: str
    version: str


class ConfigResponse(BaseModel):
    db_path: str
    remote_base_url: str
    api_key_configured: bool
    syncing_kinds: list[str]
    local_only_kinds: list[str]
    sync_interval_seconds: int
    bulk_import_kinds: list[str]
    import_target_count: int
    debug: bool
    settings: dict[str, Any]


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=VERSION)


@router.get("/config", response_model=ConfigResponse)
async def get_config(context: SyncContext = Depends(get_context)) -> ConfigResponse:
    """Get current configuration (excluding secrets)."""
    settings = context.settings
    return ConfigResponse(
        db_path=settings.db_path,
        remote_base_url=settings.remote_base_url,
        api_key_configured=bool(settings.remote_api_key),
        syncing_kinds=sorted(context.adapters),
        local_only_kinds=sorted(set(context.repositories) - set(context.adapters)),
        sync_interval_seconds=settings.sync_interval_seconds,
        bulk_import_kinds=settings.bulk_import_kinds,
        import_target_count=settings.import_target_count,
        debug=settings.debug,
        settings=settings.public_view(),
    )
