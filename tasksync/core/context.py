"""Explicit container for everything the sync engine shares.

Built once by the application lifespan (or by tests) and stored on
``app.state.context``; nothing in the engine reaches for module globals.
"""

import logging
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from tasksync.core.config import Settings
from tasksync.core.database import create_engine_for, create_session_maker, init_db
from tasksync.services.adapter import RemoteAdapter
from tasksync.services.entities import ENTITY_SCHEMAS
from tasksync.services.events import EventBus
from tasksync.services.importer import PartitionedImporter
from tasksync.services.notion import NotionAdapter
from tasksync.services.outbox import Outbox
from tasksync.services.remote_client import RateLimitedClient
from tasksync.services.repository import RecordRepository
from tasksync.services.scheduler import SyncScheduler
from tasksync.services.sync import SyncOrchestrator
from tasksync.services.sync_state import SyncStateStore

logger = logging.getLogger(__name__)


class SyncContext:
    def __init__(
        self,
        settings: Settings,
        engine: AsyncEngine,
        session_maker: async_sessionmaker[AsyncSession],
        adapters: Optional[dict[str, RemoteAdapter]] = None,
        client: Optional[RateLimitedClient] = None,
    ):
        self.settings = settings
        self.engine = engine
        self.session_maker = session_maker
        self.events = EventBus()
        self.outbox = Outbox()
        self.state = SyncStateStore()
        self.client = client
        self.adapters: dict[str, RemoteAdapter] = {}
        self.repositories: dict[str, RecordRepository] = {}
        self.orchestrator: Optional[SyncOrchestrator] = None
        self._configure(adapters)

    def _configure(self, adapters: Optional[dict[str, RemoteAdapter]]) -> None:
        settings = self.settings
        if adapters is None:
            adapters = self._build_adapters()
        self.adapters = adapters

        self.repositories = {
            kind: RecordRepository(
                self.schema_for(kind),
                self.outbox,
                sync_enabled=kind in adapters,
            )
            for kind in ENTITY_SCHEMAS
        }

        importers = {
            kind: PartitionedImporter(
                adapters[kind],
                self.repositories[kind],
                self.state,
                target_count=settings.import_target_count,
                batch_size=settings.import_batch_size,
                max_failures=settings.import_max_failures,
                backoff_base=settings.backoff_base,
                max_backoff=settings.max_backoff,
                events=self.events,
            )
            for kind in settings.bulk_import_kinds
            if kind in adapters
        }

        self.orchestrator = SyncOrchestrator(
            self.session_maker,
            self.repositories,
            adapters,
            self.outbox,
            self.state,
            importers=importers,
            events=self.events,
            batch_size=settings.outbox_batch_size,
            stuck_threshold=settings.stuck_retry_threshold,
            max_retries=settings.max_retries,
            pull_page_size=settings.pull_page_size,
            import_batches_per_tick=settings.import_batches_per_tick,
            trash_retention_days=settings.trash_retention_days,
        )
        self.orchestrator.scheduler = SyncScheduler(
            self.orchestrator.tick, settings.sync_interval_seconds
        )

    def schema_for(self, kind: str):
        return ENTITY_SCHEMAS[kind].with_property_names(self.settings.field_maps.get(kind, {}))

    def _build_adapters(self) -> dict[str, RemoteAdapter]:
        settings = self.settings
        if not settings.remote_api_key:
            logger.info("No API key configured; all records stay local")
            return {}

        if self.client is None:
            self.client = RateLimitedClient(
                settings.remote_base_url,
                settings.remote_api_key,
                settings.remote_api_version,
                min_interval=settings.min_request_interval,
                max_retries=settings.max_retries,
                backoff_base=settings.backoff_base,
                max_backoff=settings.max_backoff,
                timeout=settings.request_timeout,
            )
        return {
            kind: NotionAdapter(
                self.client,
                database_id,
                self.schema_for(kind),
                concurrency=settings.import_concurrency,
            )
            for kind, database_id in settings.database_ids().items()
            if database_id
        }

    def repository(self, kind: str) -> RecordRepository:
        try:
            return self.repositories[kind]
        except KeyError:
            raise KeyError(f"Unknown entity kind: {kind}") from None

    async def start(self) -> None:
        await init_db(self.engine)
        await self.orchestrator.start()

    async def reset_remote(self, settings: Settings) -> None:
        """Rebuild client, adapters and orchestrator after a credential change."""
        was_running = self.orchestrator is not None and self.orchestrator.scheduler.running
        if self.orchestrator is not None:
            await self.orchestrator.stop()
        if self.client is not None:
            await self.client.aclose()
            self.client = None
        self.settings = settings
        self._configure(None)
        if was_running:
            await self.orchestrator.start()
        logger.info(f"Remote configuration reloaded ({len(self.adapters)} kinds syncing)")

    async def close(self) -> None:
        if self.orchestrator is not None:
            await self.orchestrator.stop()
        if self.client is not None:
            await self.client.aclose()
        await self.engine.dispose()


def build_context(settings: Settings) -> SyncContext:
    engine = create_engine_for(settings.db_path, echo=settings.debug)
    return SyncContext(settings, engine, create_session_maker(engine))


def get_context(request: Request) -> SyncContext:
    """Dependency for FastAPI to get the application's sync context."""
    return request.app.state.context
