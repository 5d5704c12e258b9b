import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tasksync.api import config, records, sync
from tasksync.core.config import get_settings
from tasksync.core.context import build_context


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - startup and shutdown events."""
    # Startup
    settings = get_settings()
    logging.basicConfig(level=logging.DEBUG if settings.debug else logging.INFO)
    context = build_context(settings)
    app.state.context = context
    await context.start()
    yield
    # Shutdown
    await context.close()


# Create FastAPI application
app = FastAPI(
    title="Task Sync",
    description="Local-first task store synchronized with a remote Notion-style workspace",
    version=config.VERSION,
    lifespan=lifespan,
)

# Include routers
app.include_router(config.router)
app.include_router(sync.router)
app.include_router(records.router)
