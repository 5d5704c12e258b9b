"""Tests for ORM model constraints.

Verifies unique identity columns and the one-entry-per-record outbox
constraint raise IntegrityError on duplicate inserts.
"""

import pytest
from sqlalchemy.exc import IntegrityError

from tasksync.models import SyncQueueEntry, SyncStateEntry, Task


def _task(client_id, **kwargs):
    return Task(client_id=client_id, title="T", sync_status="synced", **kwargs)


def _entry(entity_type, client_id):
    return SyncQueueEntry(
        entity_type=entity_type,
        client_id=client_id,
        operation="create",
        payload={},
        changed_fields=[],
        pending_since=1,
        updated_at=1,
    )


class TestRecordIdentityConstraints:

    @pytest.mark.asyncio
    async def test_duplicate_remote_id_raises(self, async_session):
        async_session.add(_task("a", remote_id="r1"))
        await async_session.commit()

        async_session.add(_task("b", remote_id="r1"))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_duplicate_unique_external_id_raises(self, async_session):
        async_session.add(_task("a", unique_external_id="ACT-1"))
        await async_session.commit()

        async_session.add(_task("b", unique_external_id="ACT-1"))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_many_unsynced_records_allowed(self, async_session):
        """NULL remote ids do not collide."""
        async_session.add_all([_task("a"), _task("b"), _task("c")])
        await async_session.commit()

    @pytest.mark.asyncio
    async def test_defaults(self, async_session):
        async_session.add(_task("a"))
        await async_session.commit()

        task = await async_session.get(Task, "a")
        assert task.urgent is False
        assert task.field_local_ts == {}
        assert task.trashed_at is None


class TestSyncQueueConstraints:

    @pytest.mark.asyncio
    async def test_one_entry_per_record(self, async_session):
        async_session.add(_entry("task", "a"))
        await async_session.commit()

        async_session.add(_entry("task", "a"))
        with pytest.raises(IntegrityError):
            await async_session.commit()

    @pytest.mark.asyncio
    async def test_same_client_id_different_kind_allowed(self, async_session):
        async_session.add_all([_entry("task", "a"), _entry("note", "a")])
        await async_session.commit()

    @pytest.mark.asyncio
    async def test_version_defaults_to_one(self, async_session):
        entry = _entry("task", "a")
        async_session.add(entry)
        await async_session.commit()

        assert entry.version == 1
        assert entry.retry_count == 0


class TestSyncStateEntry:

    @pytest.mark.asyncio
    async def test_duplicate_key_raises(self, async_session):
        async_session.add(SyncStateEntry(key="last_pull:task", value="1", updated_at=1))
        await async_session.commit()

        async_session.add(SyncStateEntry(key="last_pull:task", value="2", updated_at=2))
        with pytest.raises(IntegrityError):
            await async_session.commit()
