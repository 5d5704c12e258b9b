"""Partitioned bulk import of a remote database, newest edits first.

Deep pagination over a large database times out on the remote side, so the
import walks fixed windows of last-edited time instead. The window index and
page cursor are persisted after every batch; an interrupted import continues
exactly where it stopped, including across restarts.
"""

import asyncio
import logging
import random
from dataclasses import dataclass, replace
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tasksync.core.clock import now_ms
from tasksync.services import sync_state as keys
from tasksync.services.adapter import RemoteAdapter, TimeWindow
from tasksync.services.errors import ImportPausedError, RemoteError
from tasksync.services.events import IMPORT_PROGRESS, RECORD_UPDATED, EventBus
from tasksync.services.remote_client import compute_backoff
from tasksync.services.repository import RecordRepository
from tasksync.services.sync_state import SyncStateStore

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

# (name, newest day offset, oldest day offset) relative to the anchor
WINDOW_BOUNDS = [
    ("last-1-day", 0, 1),
    ("2-3-days", 1, 3),
    ("4-7-days", 3, 7),
    ("8-14-days", 7, 14),
    ("15-30-days", 14, 30),
    ("31-60-days", 30, 60),
    ("61-90-days", 60, 90),
    ("91-180-days", 90, 180),
    ("181-365-days", 180, 365),
]


def build_time_windows(anchor_ms: int) -> list[TimeWindow]:
    """Contiguous, non-overlapping windows covering all time, most recent first."""
    windows = []
    for name, newest, oldest in WINDOW_BOUNDS:
        windows.append(TimeWindow(
            name=name,
            on_or_after=anchor_ms - oldest * DAY_MS,
            before=None if newest == 0 else anchor_ms - newest * DAY_MS,
        ))
    windows.append(TimeWindow(name="older", on_or_after=None, before=anchor_ms - 365 * DAY_MS))
    return windows


class ImportPhase(str, Enum):
    NOT_STARTED = "not_started"
    IMPORTING = "importing"
    PAUSED = "paused"
    COMPLETED = "completed"


@dataclass(frozen=True)
class ImportProgress:
    kind: str
    phase: ImportPhase = ImportPhase.NOT_STARTED
    window_index: int = 0
    window_name: Optional[str] = None
    total_windows: int = len(WINDOW_BOUNDS) + 1
    records_imported: int = 0
    target: int = 500
    batches: int = 0
    error: Optional[str] = None
    started_at: Optional[int] = None
    completed_at: Optional[int] = None


class PartitionedImporter:
    """Resumable time-window import for one entity kind."""

    def __init__(
        self,
        adapter: RemoteAdapter,
        repository: RecordRepository,
        state: SyncStateStore,
        *,
        target_count: int = 500,
        batch_size: int = 5,
        max_failures: int = 10,
        backoff_base: float = 1.5,
        max_backoff: float = 30.0,
        events: Optional[EventBus] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
        rng: Callable[[], float] = random.random,
    ):
        self.adapter = adapter
        self.repository = repository
        self.kind = repository.kind
        self.state = state
        self.target_count = target_count
        self.batch_size = min(max(batch_size, 1), 5)
        self.max_failures = max_failures
        self.backoff_base = backoff_base
        self.max_backoff = max_backoff
        self.events = events
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._progress = ImportProgress(kind=self.kind, target=target_count)

    def progress(self) -> ImportProgress:
        return self._progress

    def _update(self, **changes) -> ImportProgress:
        self._progress = replace(self._progress, **changes)
        if self.events is not None:
            self.events.publish(IMPORT_PROGRESS, self._progress)
        return self._progress

    async def load_progress(self, session: AsyncSession) -> ImportProgress:
        """Rebuild the progress snapshot from persisted state."""
        complete = await self.state.get_bool(session, keys.import_complete_key(self.kind))
        started = await self.state.get_int(session, keys.import_started_key(self.kind), 0) or None
        index = await self.state.get_int(session, keys.import_window_key(self.kind), 0)
        count = await self.repository.count(session)
        if complete:
            phase = ImportPhase.COMPLETED
        elif started:
            phase = ImportPhase.IMPORTING
        else:
            phase = ImportPhase.NOT_STARTED
        self._progress = ImportProgress(
            kind=self.kind,
            phase=phase,
            window_index=index,
            window_name=WINDOW_BOUNDS[index][0] if index < len(WINDOW_BOUNDS) else "older",
            records_imported=count,
            target=self.target_count,
            started_at=started,
        )
        return self._progress

    async def is_complete(self, session: AsyncSession) -> bool:
        return await self.state.get_bool(session, keys.import_complete_key(self.kind))

    async def reset(self, session: AsyncSession) -> None:
        """Forget all import progress so the next tick starts over."""
        await self.state.clear(session, *keys.import_keys(self.kind))
        await session.commit()
        self._progress = ImportProgress(kind=self.kind, target=self.target_count)
        logger.info(f"Reset {self.kind} import state")

    async def _save_position(self, session: AsyncSession, window_index: int, cursor: Optional[str]) -> None:
        await self.state.set(session, keys.import_window_key(self.kind), window_index)
        if cursor:
            await self.state.set(session, keys.import_cursor_key(self.kind), cursor)
        else:
            await self.state.clear(session, keys.import_cursor_key(self.kind))

    async def _finish(self, session: AsyncSession, started_at: int, count: int) -> ImportProgress:
        await self.state.set(session, keys.import_complete_key(self.kind), True)
        # Incremental pulls pick up everything edited since the import began
        last_pull = await self.state.get_int(session, keys.last_pull_key(self.kind), 0)
        if last_pull < started_at:
            await self.state.set(session, keys.last_pull_key(self.kind), started_at)
        await session.commit()
        logger.info(f"{self.kind} import complete: {count} records (target {self.target_count})")
        return self._update(phase=ImportPhase.COMPLETED, records_imported=count, completed_at=self._clock(), error=None)

    async def run_slice(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        max_batches: int = 50,
    ) -> ImportProgress:
        """Import up to ``max_batches`` batches and persist the position.

        Raises ``ImportPausedError`` after ``max_failures`` consecutive
        retryable failures; non-retryable remote errors propagate.
        """
        async with session_maker() as session:
            if await self.is_complete(session):
                if self._progress.phase is not ImportPhase.COMPLETED:
                    await self.load_progress(session)
                return self._progress

            anchor = await self.state.get_int(session, keys.import_anchor_key(self.kind), 0)
            if not anchor:
                anchor = self._clock()
                await self.state.set(session, keys.import_anchor_key(self.kind), anchor)
            started_at = await self.state.get_int(session, keys.import_started_key(self.kind), 0)
            if not started_at:
                started_at = anchor
                await self.state.set(session, keys.import_started_key(self.kind), started_at)
            window_index = await self.state.get_int(session, keys.import_window_key(self.kind), 0)
            cursor = await self.state.get(session, keys.import_cursor_key(self.kind)) or None
            count = await self.repository.count(session)
            await session.commit()

        windows = build_time_windows(anchor)
        if window_index == 0 and cursor is None:
            logger.info(f"Starting {self.kind} import (have {count}, target {self.target_count})")
        elif cursor:
            logger.info(f"Resuming {self.kind} import in window {window_index} from saved cursor")

        failures = 0
        batches = 0
        while window_index < len(windows) and count < self.target_count and batches < max_batches:
            window = windows[window_index]
            self._update(
                phase=ImportPhase.IMPORTING,
                window_index=window_index,
                window_name=window.name,
                records_imported=count,
                started_at=started_at,
            )
            try:
                page = await self.adapter.fetch_page(
                    window, cursor, self.batch_size, retry_on_timeout=False
                )
            except RemoteError as error:
                if error.is_timeout:
                    # Too many records to page through in time; move on
                    logger.warning(f"{self.kind} window {window.name} timed out, moving to next window")
                    window_index += 1
                    cursor = None
                    failures = 0
                    async with session_maker() as session:
                        await self._save_position(session, window_index, cursor)
                        await session.commit()
                    continue
                if not error.retryable:
                    self._update(error=error.message)
                    raise
                failures += 1
                logger.error(f"{self.kind} window {window.name} error ({failures}): {error.message}")
                if failures >= self.max_failures:
                    self._update(phase=ImportPhase.PAUSED, error=error.message)
                    raise ImportPausedError(
                        f"Paused {self.kind} import at {count} records (window {window.name})",
                        cause=error,
                    ) from error
                await self._sleep(compute_backoff(failures - 1, self.backoff_base, self.max_backoff, self._rng))
                continue

            failures = 0
            upserted = []
            async with session_maker() as session:
                for remote in page.records:
                    if remote.stub and not remote.archived:
                        logger.warning(f"Skipping {self.kind} {remote.remote_id}: page could not be loaded")
                        continue
                    record = await self.repository.upsert_remote(session, remote, commit=False)
                    if record is not None:
                        upserted.append(record)
                if page.has_more and page.next_cursor:
                    cursor = page.next_cursor
                else:
                    logger.info(f"{self.kind} window {window.name} complete")
                    window_index += 1
                    cursor = None
                await self._save_position(session, window_index, cursor)
                await session.commit()
                count = await self.repository.count(session)

            batches += 1
            if self.events is not None:
                for record in upserted:
                    self.events.publish(RECORD_UPDATED, {"kind": self.kind, "client_id": record.client_id})
            self._update(records_imported=count, batches=self._progress.batches + 1, error=None)
            logger.debug(f"{self.kind} {window.name}: +{len(page.records)} records (total {count})")

        if window_index >= len(windows) or count >= self.target_count:
            async with session_maker() as session:
                return await self._finish(session, started_at, count)
        return self._progress
