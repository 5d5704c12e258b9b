"""Durable, coalescing queue of local mutations awaiting transmission.

There is at most one entry per ``(entity_type, client_id)``. New changes for a
record already in the queue are folded into the existing entry, so a record's
``create`` is always transmitted before any of its updates.

Methods only flush; the caller owns the transaction and commits it together
with the record write that produced the change.
"""

import logging
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tasksync.core.clock import now_ms
from tasksync.models.sync_queue import SyncQueueEntry

logger = logging.getLogger(__name__)

OPERATIONS = ("create", "update", "delete")


def _merge_payload(existing: Any, incoming: Any) -> Any:
    if isinstance(existing, dict) and isinstance(incoming, dict):
        return {**existing, **incoming}
    return incoming if incoming is not None else existing


def _merge_fields(existing: Iterable[str], incoming: Iterable[str]) -> list[str]:
    merged = list(existing or [])
    for name in incoming or []:
        if name not in merged:
            merged.append(name)
    return merged


class Outbox:
    """Sync queue operations over the ``sync_queue`` table."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self.clock = clock

    async def get_for(
        self, session: AsyncSession, entity_type: str, client_id: str
    ) -> Optional[SyncQueueEntry]:
        result = await session.execute(
            select(SyncQueueEntry).where(
                SyncQueueEntry.entity_type == entity_type,
                SyncQueueEntry.client_id == client_id,
            )
        )
        return result.scalar_one_or_none()

    async def enqueue(
        self,
        session: AsyncSession,
        entity_type: str,
        client_id: str,
        operation: str,
        payload: dict[str, Any],
        changed_fields: Iterable[str],
        remote_id: Optional[str] = None,
    ) -> SyncQueueEntry:
        """Insert a new entry or coalesce into the pending one for this record."""
        if operation not in OPERATIONS:
            raise ValueError(f"Unknown sync operation: {operation}")

        now = self.clock()
        existing = await self.get_for(session, entity_type, client_id)

        if existing is None:
            entry = SyncQueueEntry(
                entity_type=entity_type,
                client_id=client_id,
                remote_id=remote_id,
                operation=operation,
                payload=dict(payload or {}),
                changed_fields=_merge_fields([], changed_fields),
                retry_count=0,
                pending_since=now,
                updated_at=now,
                version=1,
            )
            session.add(entry)
            await session.flush()
            return entry

        if operation == "delete":
            existing.operation = "delete"
            existing.payload = dict(payload or {})
        else:
            # A record that has not synced yet is still being created
            if existing.operation != "create":
                existing.operation = operation
            existing.payload = _merge_payload(existing.payload, payload)
        existing.changed_fields = _merge_fields(existing.changed_fields, changed_fields)
        existing.remote_id = remote_id or existing.remote_id
        existing.pending_since = min(existing.pending_since, now)
        existing.updated_at = now
        existing.version = (existing.version or 1) + 1
        await session.flush()
        return existing

    async def drain(self, session: AsyncSession, limit: int = 25) -> list[SyncQueueEntry]:
        """Oldest ``limit`` entries, FIFO by ``pending_since``."""
        result = await session.execute(
            select(SyncQueueEntry)
            .order_by(SyncQueueEntry.pending_since.asc(), SyncQueueEntry.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count(self, session: AsyncSession) -> int:
        result = await session.execute(select(func.count()).select_from(SyncQueueEntry))
        return int(result.scalar_one())

    async def complete(
        self,
        session: AsyncSession,
        entry_id: int,
        version: Optional[int] = None,
        remote_id: Optional[str] = None,
    ) -> bool:
        """Remove a transmitted entry.

        When ``version`` is given and the entry was coalesced after it was
        drained, the entry is kept so the newer change is sent next cycle; a
        kept ``create`` becomes an ``update`` of the acknowledged remote record.
        Returns True when the entry was removed.
        """
        entry = await session.get(SyncQueueEntry, entry_id, populate_existing=True)
        if entry is None:
            return True
        if version is not None and entry.version != version:
            if remote_id:
                entry.remote_id = remote_id
                if entry.operation == "create":
                    entry.operation = "update"
            entry.retry_count = 0
            entry.last_error = None
            await session.flush()
            logger.debug(f"Kept coalesced queue entry {entry_id} ({entry.entity_type}/{entry.client_id})")
            return False
        await session.delete(entry)
        await session.flush()
        return True

    async def fail(
        self,
        session: AsyncSession,
        entry_id: int,
        error: str,
        count_retry: bool = True,
    ) -> Optional[SyncQueueEntry]:
        """Record a failed transmission attempt."""
        entry = await session.get(SyncQueueEntry, entry_id, populate_existing=True)
        if entry is None:
            return None
        if count_retry:
            entry.retry_count = (entry.retry_count or 0) + 1
        entry.last_error = error
        entry.updated_at = self.clock()
        await session.flush()
        return entry

    async def purge_stuck(self, session: AsyncSession, max_retries: int = 5) -> list[SyncQueueEntry]:
        """Delete entries that failed ``max_retries`` times and return them."""
        result = await session.execute(
            select(SyncQueueEntry).where(SyncQueueEntry.retry_count >= max_retries)
        )
        stuck = list(result.scalars().all())
        for entry in stuck:
            logger.warning(
                f"Abandoning queue entry {entry.id} ({entry.entity_type}/{entry.client_id} "
                f"{entry.operation}) after {entry.retry_count} failures: {entry.last_error}"
            )
            await session.delete(entry)
        if stuck:
            await session.flush()
        return stuck

    async def list_failed(self, session: AsyncSession) -> list[SyncQueueEntry]:
        result = await session.execute(
            select(SyncQueueEntry)
            .where(SyncQueueEntry.last_error.is_not(None))
            .order_by(SyncQueueEntry.pending_since.asc())
        )
        return list(result.scalars().all())

    async def clear_for(self, session: AsyncSession, entity_type: str, client_id: str) -> int:
        result = await session.execute(
            delete(SyncQueueEntry).where(
                SyncQueueEntry.entity_type == entity_type,
                SyncQueueEntry.client_id == client_id,
            )
        )
        return result.rowcount or 0

    async def clear_by_type(self, session: AsyncSession, entity_type: str) -> int:
        result = await session.execute(
            delete(SyncQueueEntry).where(SyncQueueEntry.entity_type == entity_type)
        )
        if result.rowcount:
            logger.info(f"Cleared {result.rowcount} {entity_type} queue entries")
        return result.rowcount or 0

    async def clear_all(self, session: AsyncSession) -> int:
        result = await session.execute(delete(SyncQueueEntry))
        logger.info(f"Cleared all {result.rowcount} queue entries")
        return result.rowcount or 0
