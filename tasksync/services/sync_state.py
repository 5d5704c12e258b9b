"""Persisted sync progress: pull watermarks, cursors and bulk import state."""

import logging
from typing import Callable, Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from tasksync.core.clock import now_ms
from tasksync.models.sync_state import SyncStateEntry

logger = logging.getLogger(__name__)


def last_pull_key(kind: str) -> str:
    return f"last_pull:{kind}"


def pull_cursor_key(kind: str) -> str:
    return f"pull_cursor:{kind}"


def pull_since_key(kind: str) -> str:
    return f"pull_since:{kind}"


def import_window_key(kind: str) -> str:
    return f"import_window:{kind}"


def import_cursor_key(kind: str) -> str:
    return f"import_cursor:{kind}"


def import_anchor_key(kind: str) -> str:
    return f"import_anchor:{kind}"


def import_started_key(kind: str) -> str:
    return f"import_started:{kind}"


def import_complete_key(kind: str) -> str:
    return f"import_complete:{kind}"


def import_keys(kind: str) -> list[str]:
    return [
        import_window_key(kind),
        import_cursor_key(kind),
        import_anchor_key(kind),
        import_started_key(kind),
        import_complete_key(kind),
    ]


class SyncStateStore:
    """String key/value rows in ``sync_state``; callers commit."""

    def __init__(self, clock: Callable[[], int] = now_ms):
        self.clock = clock

    async def get(self, session: AsyncSession, key: str) -> Optional[str]:
        entry = await session.get(SyncStateEntry, key)
        return entry.value if entry is not None else None

    async def get_int(self, session: AsyncSession, key: str, default: int = 0) -> int:
        value = await self.get(session, key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError:
            logger.warning(f"Ignoring non-integer sync state {key}={value!r}")
            return default

    async def get_bool(self, session: AsyncSession, key: str) -> bool:
        return (await self.get(session, key)) == "true"

    async def set(self, session: AsyncSession, key: str, value) -> None:
        if isinstance(value, bool):
            value = "true" if value else "false"
        entry = await session.get(SyncStateEntry, key)
        if entry is None:
            session.add(SyncStateEntry(key=key, value=str(value), updated_at=self.clock()))
        else:
            entry.value = str(value)
            entry.updated_at = self.clock()
        await session.flush()

    async def clear(self, session: AsyncSession, *keys: str) -> None:
        if not keys:
            return
        await session.execute(delete(SyncStateEntry).where(SyncStateEntry.key.in_(keys)))

    async def clear_prefix(self, session: AsyncSession, prefix: str) -> int:
        result = await session.execute(
            delete(SyncStateEntry).where(SyncStateEntry.key.startswith(prefix))
        )
        return result.rowcount or 0

    async def clear_all(self, session: AsyncSession) -> int:
        result = await session.execute(delete(SyncStateEntry))
        return result.rowcount or 0

    async def snapshot(self, session: AsyncSession) -> dict[str, str]:
        result = await session.execute(select(SyncStateEntry))
        return {entry.key: entry.value for entry in result.scalars().all()}
