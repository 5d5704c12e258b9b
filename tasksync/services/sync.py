"""Sync orchestration - drains the outbox, drives bulk import and pulls remote changes."""

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tasksync.core.clock import now_ms, utc_now
from tasksync.models.sync_log import SyncLog
from tasksync.models.sync_queue import SyncQueueEntry
from tasksync.services import sync_state as keys
from tasksync.services.adapter import RemoteAdapter, TimeWindow
from tasksync.services.errors import (
    ErrorKind,
    ImportPausedError,
    RemoteError,
    describe_error,
)
from tasksync.services.events import RECORD_UPDATED, STATUS, EventBus
from tasksync.services.importer import ImportProgress, PartitionedImporter
from tasksync.services.outbox import Outbox
from tasksync.services.repository import RecordRepository
from tasksync.services.sync_state import SyncStateStore

logger = logging.getLogger(__name__)


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    OFFLINE = "offline"
    ERROR = "error"


@dataclass(frozen=True)
class SyncStatus:
    state: SyncState = SyncState.IDLE
    message: str = "Ready"
    pending_items: int = 0
    last_successful_sync: Optional[int] = None
    last_error: Optional[str] = None
    error_kind: Optional[str] = None


class SyncOrchestrator:
    """Coordinates push, bulk import and incremental pull for every configured kind."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        repositories: dict[str, RecordRepository],
        adapters: dict[str, RemoteAdapter],
        outbox: Outbox,
        state: SyncStateStore,
        *,
        importers: Optional[dict[str, PartitionedImporter]] = None,
        events: Optional[EventBus] = None,
        batch_size: int = 25,
        stuck_threshold: int = 5,
        max_retries: int = 3,
        pull_page_size: int = 25,
        import_batches_per_tick: int = 50,
        trash_retention_days: int = 30,
        clock: Callable[[], int] = now_ms,
    ):
        self.session_maker = session_maker
        self.repositories = repositories
        self.adapters = adapters
        self.outbox = outbox
        self.state = state
        self.importers = importers or {}
        self.events = events or EventBus()
        self.batch_size = batch_size
        self.stuck_threshold = stuck_threshold
        self.max_retries = max_retries
        self.pull_page_size = pull_page_size
        self.import_batches_per_tick = import_batches_per_tick
        self.trash_retention_days = trash_retention_days
        self.clock = clock
        self.scheduler = None

        self._status = SyncStatus()
        self._ticks_running = 0
        self._push_lock = asyncio.Lock()
        self._fetch_lock = asyncio.Lock()

    # Status

    @property
    def status(self) -> SyncStatus:
        return self._status

    @property
    def import_progress(self) -> dict[str, ImportProgress]:
        return {kind: importer.progress() for kind, importer in self.importers.items()}

    def _set_status(self, **changes) -> SyncStatus:
        self._status = replace(self._status, **changes)
        self.events.publish(STATUS, self._status)
        return self._status

    def _apply_error(self, error: RemoteError, message: Optional[str] = None) -> None:
        state = SyncState.OFFLINE if error.kind is ErrorKind.NETWORK else SyncState.ERROR
        self._set_status(state=state, message=message or describe_error(error), last_error=error.message, error_kind=error.kind.value)

    async def _pending_count(self) -> int:
        async with self.session_maker() as session:
            return await self.outbox.count(session)

    def _notify_record(self, kind: str, client_id: str) -> None:
        self.events.publish(RECORD_UPDATED, {"kind": kind, "client_id": client_id})

    # Lifecycle

    async def start(self) -> None:
        """Housekeeping, then hand the periodic tick to the scheduler."""
        async with self.session_maker() as session:
            stuck = await self.outbox.purge_stuck(session, self.stuck_threshold)
            await session.commit()
            for entry in stuck:
                await self._surface_abandoned(session, entry)
            for repository in self.repositories.values():
                await repository.purge_expired_trash(session, self.trash_retention_days)
            for importer in self.importers.values():
                await importer.load_progress(session)
            pending = await self.outbox.count(session)
        self._set_status(pending_items=pending)
        if self.scheduler is not None:
            self.scheduler.start()
        logger.info(f"Sync started for {sorted(self.adapters)} ({pending} pending changes)")

    async def stop(self) -> None:
        if self.scheduler is not None:
            self.scheduler.shutdown()
        # Let an in-flight push finish before the client is closed
        async with self._push_lock:
            pass
        logger.info("Sync stopped")

    # Cycle

    async def tick(self, force: bool = False) -> dict[str, Any]:
        """One sync cycle: push, then either an import slice or an incremental pull."""
        if self._ticks_running and not force:
            logger.debug("Sync already in progress, skipping tick")
            return {"status": "skipped"}
        self._ticks_running += 1

        started_at = utc_now()
        cycle_type = "tick"
        log_status = "success"
        error_message = None
        details: dict[str, Any] = {"force": force}
        self._set_status(state=SyncState.SYNCING, message="Syncing...")

        try:
            push = await self.push_pending()
            details["push"] = push
            if push.get("halted"):
                log_status = "partial"
                return details

            # A forced tick may overlap a running one; only one fetches at a time
            async with self._fetch_lock:
                imported = await self._run_import_slice()
                if imported is not None:
                    cycle_type = "import"
                    details["import"] = imported
                else:
                    cycle_type = "pull"
                    details["pull"] = await self._pull_all()

            pending = await self._pending_count()
            self._set_status(
                state=SyncState.IDLE,
                message="Up to date" if pending == 0 else f"{pending} changes waiting",
                pending_items=pending,
                last_successful_sync=self.clock(),
                last_error=None,
                error_kind=None,
            )
        except ImportPausedError as e:
            log_status = "partial"
            error_message = str(e)
            logger.warning(str(e))
            cause = e.cause or RemoteError(ErrorKind.UNKNOWN, str(e))
            self._apply_error(cause, message=f"{e}. Will retry.")
        except RemoteError as e:
            log_status = "failed"
            error_message = e.message
            logger.error(f"Sync cycle failed ({e.kind.value}): {e.message}")
            self._apply_error(e)
        except Exception as e:
            log_status = "failed"
            error_message = str(e)
            logger.exception("Sync cycle failed")
            self._set_status(state=SyncState.ERROR, message=str(e), last_error=str(e), error_kind=ErrorKind.UNKNOWN.value)
        finally:
            self._ticks_running -= 1
            await self._write_log(cycle_type, started_at, log_status, details, error_message)

        return details

    async def force_sync(self) -> dict[str, Any]:
        logger.info("Manual sync requested")
        return await self.tick(force=True)

    async def _write_log(
        self,
        cycle_type: str,
        started_at: datetime,
        status: str,
        details: dict[str, Any],
        error_message: Optional[str],
    ) -> None:
        async with self.session_maker() as session:
            session.add(SyncLog(
                cycle_type=cycle_type,
                started_at=started_at,
                completed_at=utc_now(),
                status=status,
                details=details,
                error_message=error_message,
            ))
            await session.commit()

    # Push

    async def push_pending(self) -> dict[str, Any]:
        """Transmit one batch of queued changes."""
        async with self._push_lock:
            result = await self._push_batch()
        self._set_status(pending_items=await self._pending_count())
        return result

    async def push_immediate(self) -> None:
        """Push right after a local edit; failures are left for the next tick."""
        try:
            await self.push_pending()
        except Exception as e:
            logger.error(f"Immediate push failed: {e}")

    async def _surface_abandoned(self, session: AsyncSession, entry: SyncQueueEntry) -> None:
        repository = self.repositories.get(entry.entity_type)
        if repository is not None:
            await repository.record_push_error(
                session,
                entry.client_id,
                f"Gave up after {entry.retry_count} attempts: {entry.last_error}",
            )

    async def _push_batch(self) -> dict[str, Any]:
        result = {"pushed": 0, "failed": 0, "abandoned": 0, "halted": None}

        async with self.session_maker() as session:
            stuck = await self.outbox.purge_stuck(session, self.stuck_threshold)
            await session.commit()
            for entry in stuck:
                await self._surface_abandoned(session, entry)
            result["abandoned"] = len(stuck)
            entries = await self.outbox.drain(session, self.batch_size)

        for entry in entries:
            repository = self.repositories.get(entry.entity_type)
            adapter = self.adapters.get(entry.entity_type)
            if repository is None or adapter is None:
                continue
            try:
                await self._dispatch(entry, repository, adapter)
                result["pushed"] += 1
            except RemoteError as error:
                if error.session_level:
                    async with self.session_maker() as session:
                        await self.outbox.fail(session, entry.id, error.message, count_retry=False)
                        await session.commit()
                    logger.warning(f"Push halted ({error.kind.value}): {error.message}")
                    self._apply_error(error)
                    result["halted"] = error.kind.value
                    break
                await self._handle_record_error(entry, repository, error)
                result["failed"] += 1

        if entries:
            logger.info(
                f"Push: {result['pushed']} sent, {result['failed']} failed"
                + (f", halted on {result['halted']}" if result["halted"] else "")
            )
        return result

    async def _build_payload(
        self,
        session: AsyncSession,
        repository: RecordRepository,
        entry: SyncQueueEntry,
    ) -> dict[str, Any]:
        """Current values of the queued fields, with relations pointed at remote ids."""
        record = await session.get(repository.model, entry.client_id)
        if record is None:
            return dict(entry.payload or {})

        schema = repository.schema
        fields = schema.with_coupled([f for f in entry.changed_fields or [] if f in schema.pushable_fields])
        payload = {name: getattr(record, name) for name in fields}
        if "archived" in (entry.payload or {}):
            payload["archived"] = entry.payload["archived"]

        for name in fields:
            spec = schema.properties[name]
            target = self.repositories.get(spec.target) if spec.target else None
            if target is None or not payload.get(name):
                continue
            if spec.type == "relation_one":
                payload[name] = await self._remote_ref(session, target, payload[name])
            else:
                payload[name] = [await self._remote_ref(session, target, ref) for ref in payload[name]]
        return payload

    async def _remote_ref(self, session: AsyncSession, repository: RecordRepository, ref: str) -> str:
        linked = await repository.get(session, ref)
        if linked is not None and linked.remote_id:
            return linked.remote_id
        return ref

    async def _dispatch(
        self,
        entry: SyncQueueEntry,
        repository: RecordRepository,
        adapter: RemoteAdapter,
    ) -> None:
        pushed_at = self.clock()

        if entry.operation == "delete":
            if entry.remote_id:
                await adapter.delete(entry.remote_id)
            async with self.session_maker() as session:
                await self.outbox.complete(session, entry.id, entry.version)
                await session.commit()
            logger.debug(f"Deleted remote {entry.entity_type} {entry.remote_id}")
            return

        async with self.session_maker() as session:
            payload = await self._build_payload(session, repository, entry)

        if entry.remote_id and entry.operation == "update":
            remote = await adapter.update(entry.remote_id, payload)
        else:
            remote = await adapter.create(payload)

        async with self.session_maker() as session:
            await repository.acknowledge_push(session, entry, pushed_at, remote)
        self._notify_record(entry.entity_type, entry.client_id)

    async def _handle_record_error(
        self,
        entry: SyncQueueEntry,
        repository: RecordRepository,
        error: RemoteError,
    ) -> None:
        async with self.session_maker() as session:
            # A create answered not_found points at the database, not the record
            if error.kind is ErrorKind.NOT_FOUND and entry.operation != "create":
                if entry.operation == "delete":
                    # Already gone remotely
                    await self.outbox.complete(session, entry.id)
                    await session.commit()
                    return
                logger.warning(
                    f"{entry.entity_type} {entry.client_id} no longer exists remotely; moving to trash"
                )
                if await session.get(repository.model, entry.client_id) is not None:
                    await repository.mark_remote_missing(session, entry.client_id)
                else:
                    await self.outbox.complete(session, entry.id)
                    await session.commit()
                self._notify_record(entry.entity_type, entry.client_id)
                return

            # Server errors are transient and do not count against the record
            failed = await self.outbox.fail(
                session, entry.id, error.message, count_retry=not error.retryable
            )
            if failed is not None and error.kind is ErrorKind.VALIDATION and failed.retry_count >= self.max_retries:
                logger.error(
                    f"Dropping {entry.operation} of {entry.entity_type} {entry.client_id} "
                    f"after {failed.retry_count} rejections: {error.message}"
                )
                await self.outbox.clear_for(session, entry.entity_type, entry.client_id)
            await session.commit()
            await repository.record_push_error(session, entry.client_id, describe_error(error))
        self._notify_record(entry.entity_type, entry.client_id)

    # Import

    async def _run_import_slice(self) -> Optional[dict[str, Any]]:
        """Run one slice of the first incomplete import; None when all are done."""
        for kind, importer in self.importers.items():
            async with self.session_maker() as session:
                if await importer.is_complete(session):
                    continue
            progress = await importer.run_slice(self.session_maker, self.import_batches_per_tick)
            self._set_status(message=f"Importing {kind} ({progress.records_imported}/{progress.target})...")
            return {
                "kind": kind,
                "phase": progress.phase.value,
                "window": progress.window_name,
                "records": progress.records_imported,
            }
        return None

    async def reset_import(self) -> None:
        async with self.session_maker() as session:
            for importer in self.importers.values():
                await importer.reset(session)

    # Pull

    async def pull_changes(self) -> dict[str, int]:
        async with self._fetch_lock:
            return await self._pull_all()

    async def _pull_all(self) -> dict[str, int]:
        """Incremental pull per kind; a record-level failure of one kind does not stop the rest."""
        pulled: dict[str, int] = {}
        for kind in self.adapters:
            try:
                pulled[kind] = await self._pull_kind(kind)
            except RemoteError as e:
                if e.session_level:
                    raise
                logger.error(f"Pull of {kind} failed ({e.kind.value}): {e.message}")
                pulled[kind] = -1
        return pulled

    async def _pull_kind(self, kind: str) -> int:
        adapter = self.adapters[kind]
        repository = self.repositories[kind]

        async with self.session_maker() as session:
            last_pull = await self.state.get_int(session, keys.last_pull_key(kind), 0)
            cursor = await self.state.get(session, keys.pull_cursor_key(kind)) or None
            since = await self.state.get_int(session, keys.pull_since_key(kind), 0) if cursor else last_pull

        window = TimeWindow(name="incremental", on_or_after=since or None)
        newest = last_pull
        count = 0
        while True:
            try:
                page = await adapter.fetch_page(window, cursor, self.pull_page_size, sort_ascending=True)
            except RemoteError as e:
                if cursor and e.kind is ErrorKind.VALIDATION:
                    # Saved cursor expired; rescan from the watermark
                    logger.warning(f"Discarding stale {kind} pull cursor: {e.message}")
                    cursor = None
                    continue
                raise

            changed = []
            async with self.session_maker() as session:
                for remote in page.records:
                    if remote.stub and not remote.archived:
                        logger.warning(f"Skipping {kind} {remote.remote_id}: page could not be loaded")
                        continue
                    record = await repository.upsert_remote(session, remote, commit=False)
                    newest = max(newest, remote.last_edited)
                    if record is not None:
                        changed.append(record.client_id)
                if page.has_more and page.next_cursor:
                    cursor = page.next_cursor
                    await self.state.set(session, keys.pull_cursor_key(kind), cursor)
                    await self.state.set(session, keys.pull_since_key(kind), since)
                else:
                    cursor = None
                    await self.state.clear(session, keys.pull_cursor_key(kind), keys.pull_since_key(kind))
                if newest > last_pull:
                    await self.state.set(session, keys.last_pull_key(kind), newest)
                await session.commit()

            count += len(changed)
            for client_id in changed:
                self._notify_record(kind, client_id)
            if cursor is None:
                break

        if count:
            logger.info(f"Pulled {count} {kind} records")
        return count

    # Connection

    async def check_connection(self) -> dict[str, Any]:
        """Authenticated round trip against the remote."""
        if not self.adapters:
            return {"ok": False, "message": "No remote databases configured"}
        adapter = next(iter(self.adapters.values()))
        try:
            user = await adapter.ping()
        except RemoteError as e:
            if e.kind is ErrorKind.AUTH:
                self._apply_error(e)
            return {"ok": False, "message": describe_error(e), "error_kind": e.kind.value}
        return {"ok": True, "message": "Connected", "user": user.get("name")}
