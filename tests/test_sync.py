"""Tests for the sync orchestrator.

Tests focus on:
1. Push - create/update/delete dispatch, edits racing an in-flight push
2. Error routing - not_found trashes, validation ceiling, session-level halts
3. Cycle - import slice vs incremental pull, re-entry guard, status events
4. Housekeeping and connection checks
"""

import asyncio

import pytest
from sqlalchemy import select

from fakes import FakeAdapter, network_down
from tasksync.models.sync_log import SyncLog
from tasksync.services import sync_state as keys
from tasksync.services.entities import ENTITY_SCHEMAS
from tasksync.services.errors import ErrorKind, RemoteError
from tasksync.services.events import STATUS, EventBus
from tasksync.services.importer import PartitionedImporter
from tasksync.services.outbox import Outbox
from tasksync.services.repository import RecordRepository
from tasksync.services.sync import SyncOrchestrator, SyncState
from tasksync.services.sync_state import SyncStateStore


async def _no_sleep(seconds):
    return None


def _orchestrator(session_maker, clock, adapters, with_importer=False, importer_options=None, **kwargs):
    outbox = Outbox(clock=clock)
    repositories = {
        kind: RecordRepository(ENTITY_SCHEMAS[kind], outbox, clock=clock, sync_enabled=kind in adapters)
        for kind in ("task", "project")
    }
    state = SyncStateStore(clock=clock)
    events = EventBus()
    importers = {}
    if with_importer:
        importers["task"] = PartitionedImporter(
            adapters["task"],
            repositories["task"],
            state,
            events=events,
            clock=clock,
            sleep=_no_sleep,
            **(importer_options or {}),
        )
    return SyncOrchestrator(
        session_maker,
        repositories,
        adapters,
        outbox,
        state,
        importers=importers,
        events=events,
        clock=clock,
        **kwargs,
    )


async def _create(orchestrator, payload, kind="task"):
    async with orchestrator.session_maker() as session:
        return await orchestrator.repositories[kind].create(session, payload)


async def _get(orchestrator, record_id, kind="task"):
    async with orchestrator.session_maker() as session:
        return await orchestrator.repositories[kind].get(session, record_id)


async def _pending(orchestrator):
    async with orchestrator.session_maker() as session:
        return await orchestrator.outbox.count(session)


async def _pushed_task(orchestrator, title="Pushed"):
    record = await _create(orchestrator, {"title": title})
    await orchestrator.push_pending()
    return await _get(orchestrator, record.client_id)


class TestPush:

    @pytest.mark.asyncio
    async def test_offline_create_is_pushed(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        record = await _create(orchestrator, {"title": "Write report", "urgent": True})

        result = await orchestrator.push_pending()

        assert result["pushed"] == 1
        stored = await _get(orchestrator, record.client_id)
        assert stored.remote_id == "remote-1"
        assert stored.sync_status == "synced"
        assert await _pending(orchestrator) == 0
        assert adapter.calls_named("create")[0]["title"] == "Write report"
        assert orchestrator.status.pending_items == 0

    @pytest.mark.asyncio
    async def test_update_sends_current_values(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        record = await _pushed_task(orchestrator)

        async with session_maker() as session:
            repository = orchestrator.repositories["task"]
            await repository.update(session, record.client_id, {"title": "First"})
            await repository.update(session, record.client_id, {"title": "Second"})
        await orchestrator.push_pending()

        assert adapter.calls_named("update") == [("remote-1", {"title": "Second"})]
        assert adapter.pages["remote-1"].fields["title"] == "Second"
        assert (await _get(orchestrator, record.client_id)).sync_status == "synced"

    @pytest.mark.asyncio
    async def test_edit_during_inflight_create_is_kept(self, session_maker, clock):
        orchestrator = None

        class EditingAdapter(FakeAdapter):
            async def create(self, payload):
                remote = await super().create(payload)
                clock.advance()
                async with session_maker() as session:
                    await orchestrator.repositories["task"].update(session, record.client_id, {"title": "Edited"})
                return remote

        adapter = EditingAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        record = await _create(orchestrator, {"title": "Draft"})

        await orchestrator.push_pending()

        stored = await _get(orchestrator, record.client_id)
        assert stored.remote_id == "remote-1"
        assert stored.title == "Edited"
        assert stored.sync_status == "pending"
        async with session_maker() as session:
            entry = await orchestrator.outbox.get_for(session, "task", record.client_id)
        assert entry.operation == "update"
        assert entry.changed_fields == ["title"]

        await orchestrator.push_pending()

        assert adapter.calls_named("update")[-1] == ("remote-1", {"title": "Edited"})
        assert len(adapter.calls_named("create")) == 1
        assert await _pending(orchestrator) == 0

    @pytest.mark.asyncio
    async def test_relations_are_sent_as_remote_ids(self, session_maker, clock):
        tasks = FakeAdapter("task", clock=clock)
        projects = FakeAdapter("project", clock=clock)
        projects.seed({"title": "Existing"}, clock.now)
        orchestrator = _orchestrator(session_maker, clock, {"task": tasks, "project": projects})
        project = await _create(orchestrator, {"title": "Launch"}, kind="project")
        await _create(orchestrator, {"title": "Plan", "project_ids": [project.client_id]})

        await orchestrator.push_pending()

        project = await _get(orchestrator, project.client_id, kind="project")
        assert project.remote_id == "remote-2"
        assert tasks.calls_named("create")[0]["project_ids"] == ["remote-2"]

    @pytest.mark.asyncio
    async def test_trash_pushes_delete(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        record = await _pushed_task(orchestrator)
        async with session_maker() as session:
            await orchestrator.repositories["task"].mark_trashed(session, record.client_id)

        await orchestrator.push_pending()

        assert adapter.calls_named("delete") == ["remote-1"]
        assert adapter.pages["remote-1"].archived
        assert await _pending(orchestrator) == 0

    @pytest.mark.asyncio
    async def test_local_only_kind_is_not_pushed(self, session_maker, clock):
        orchestrator = _orchestrator(session_maker, clock, {"task": FakeAdapter(clock=clock)})
        project = await _create(orchestrator, {"title": "Offline project"}, kind="project")

        assert project.sync_status == "local"
        assert await _pending(orchestrator) == 0


class TestPushErrors:

    @pytest.mark.asyncio
    async def test_not_found_on_update_trashes_without_retry(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        record = await _pushed_task(orchestrator)
        del adapter.pages["remote-1"]
        async with session_maker() as session:
            await orchestrator.repositories["task"].update(session, record.client_id, {"status": "Done"})

        result = await orchestrator.push_pending()

        assert result["failed"] == 1
        stored = await _get(orchestrator, record.client_id)
        assert stored.trash_reason == "remote_missing"
        assert stored.sync_status == "trashed"
        assert await _pending(orchestrator) == 0

    @pytest.mark.asyncio
    async def test_not_found_on_delete_completes(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        record = await _pushed_task(orchestrator)
        del adapter.pages["remote-1"]
        async with session_maker() as session:
            await orchestrator.repositories["task"].mark_trashed(session, record.client_id)

        await orchestrator.push_pending()

        assert await _pending(orchestrator) == 0
        assert (await _get(orchestrator, record.client_id)).trash_reason == "local"

    @pytest.mark.asyncio
    async def test_validation_failures_dropped_at_ceiling(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter}, max_retries=3)
        record = await _create(orchestrator, {"title": "Bad status", "status": "Nope"})
        rejection = RemoteError(ErrorKind.VALIDATION, "Invalid status option", status_code=400)
        adapter.fail_with(rejection, rejection, rejection)

        for _ in range(2):
            await orchestrator.push_pending()
            assert await _pending(orchestrator) == 1
        await orchestrator.push_pending()

        assert await _pending(orchestrator) == 0
        stored = await _get(orchestrator, record.client_id)
        assert "Invalid status option" in stored.sync_error
        assert stored.remote_id is None

    @pytest.mark.asyncio
    async def test_network_error_halts_batch_without_counting(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        await _create(orchestrator, {"title": "One"})
        await _create(orchestrator, {"title": "Two"})
        adapter.fail_with(network_down())

        result = await orchestrator.push_pending()

        assert result["halted"] == "network"
        assert len(adapter.calls_named("create")) == 1
        assert orchestrator.status.state is SyncState.OFFLINE
        async with session_maker() as session:
            entries = await orchestrator.outbox.drain(session)
        assert [e.retry_count for e in entries] == [0, 0]

    @pytest.mark.asyncio
    async def test_server_error_does_not_count(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        await _create(orchestrator, {"title": "One"})
        adapter.fail_with(RemoteError(ErrorKind.UNKNOWN, "Internal error", status_code=500))

        result = await orchestrator.push_pending()

        assert result["failed"] == 1
        async with session_maker() as session:
            (entry,) = await orchestrator.outbox.drain(session)
        assert entry.retry_count == 0
        assert entry.last_error == "Internal error"

    @pytest.mark.asyncio
    async def test_push_immediate_never_raises(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        await _create(orchestrator, {"title": "One"})
        adapter.fail_with(RemoteError(ErrorKind.AUTH, "Unauthorized", status_code=401))

        await orchestrator.push_immediate()

        assert orchestrator.status.state is SyncState.ERROR
        assert orchestrator.status.error_kind == "auth"


class TestCycle:

    @pytest.mark.asyncio
    async def test_tick_pulls_remote_changes(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        page = adapter.seed({"title": "From elsewhere"}, clock.now, unique_external_id="ACT-1")
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})

        details = await orchestrator.tick()

        assert details["pull"] == {"task": 1}
        assert (await _get(orchestrator, "ACT-1")).title == "From elsewhere"

        clock.advance(60_000)
        adapter.remote_edit(page.remote_id, title="Edited elsewhere")
        await orchestrator.tick()

        assert (await _get(orchestrator, "ACT-1")).title == "Edited elsewhere"
        async with session_maker() as session:
            assert await orchestrator.state.get_int(session, keys.last_pull_key("task")) == clock.now
        assert orchestrator.status.state is SyncState.IDLE
        assert orchestrator.status.last_successful_sync == clock.now

    @pytest.mark.asyncio
    async def test_pull_pages_through_cursor(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        for i in range(5):
            adapter.seed({"title": f"Task {i}"}, clock.now + i)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter}, pull_page_size=2)

        pulled = await orchestrator.pull_changes()

        assert pulled == {"task": 5}
        async with session_maker() as session:
            assert await orchestrator.state.get(session, keys.pull_cursor_key("task")) is None
            assert await orchestrator.repositories["task"].count(session) == 5

    @pytest.mark.asyncio
    async def test_stale_cursor_rescans_from_watermark(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        adapter.seed({"title": "A"}, clock.now)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        async with session_maker() as session:
            await orchestrator.state.set(session, keys.pull_cursor_key("task"), "expired")
            await session.commit()
        adapter.fail_with(RemoteError(ErrorKind.VALIDATION, "Invalid start_cursor", status_code=400))

        assert await orchestrator.pull_changes() == {"task": 1}

    @pytest.mark.asyncio
    async def test_remote_archive_moves_record_to_trash(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        page = adapter.seed({"title": "Soon archived"}, clock.now)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        await orchestrator.tick()

        clock.advance(60_000)
        page.archived = True
        page.last_edited = clock.now
        await orchestrator.tick()

        stored = await _get(orchestrator, page.remote_id)
        assert stored.trash_reason == "remote_archived"

    @pytest.mark.asyncio
    async def test_archived_stub_moves_record_to_trash(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        page = adapter.seed({"title": "Soon archived"}, clock.now)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        await orchestrator.tick()

        clock.advance(60_000)
        page.archived = True
        page.last_edited = clock.now
        adapter.stub_ids.add(page.remote_id)
        await orchestrator.tick()

        stored = await _get(orchestrator, page.remote_id)
        assert stored.trash_reason == "remote_archived"
        assert stored.title == "Soon archived"

    @pytest.mark.asyncio
    async def test_unloaded_stub_is_skipped(self, session_maker, clock, caplog):
        adapter = FakeAdapter(clock=clock)
        page = adapter.seed({"title": "Unreadable"}, clock.now)
        adapter.stub_ids.add(page.remote_id)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})

        assert await orchestrator.pull_changes() == {"task": 0}
        assert "could not be loaded" in caplog.text

    @pytest.mark.asyncio
    async def test_import_runs_before_pull(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        adapter.seed({"title": "Imported"}, clock.now - 1000)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter}, with_importer=True)

        first = await orchestrator.tick()
        second = await orchestrator.tick()

        assert first["import"]["phase"] == "completed"
        assert first["import"]["records"] == 1
        assert "pull" in second
        async with session_maker() as session:
            logs = (await session.execute(select(SyncLog).order_by(SyncLog.id))).scalars().all()
        assert [log.cycle_type for log in logs] == ["import", "pull"]
        assert all(log.status == "success" for log in logs)

    @pytest.mark.asyncio
    async def test_halted_push_skips_pull(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        await _create(orchestrator, {"title": "Waiting"})
        adapter.fail_with(network_down())

        details = await orchestrator.tick()

        assert "pull" not in details
        assert adapter.calls_named("fetch_page") == []
        assert orchestrator.status.state is SyncState.OFFLINE
        async with session_maker() as session:
            log = (await session.execute(select(SyncLog))).scalar_one()
        assert log.status == "partial"
        assert log.completed_at >= log.started_at

    @pytest.mark.asyncio
    async def test_paused_import_reports_offline(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        adapter.fail_with(network_down(), network_down())
        orchestrator = _orchestrator(
            session_maker, clock, {"task": adapter}, with_importer=True, importer_options={"max_failures": 2}
        )

        await orchestrator.tick()

        status = orchestrator.status
        assert status.state is SyncState.OFFLINE
        assert status.error_kind == "network"
        assert status.message.endswith("Will retry.")
        async with session_maker() as session:
            log = (await session.execute(select(SyncLog))).scalar_one()
        assert log.status == "partial"

        # Network back: the import resumes and the engine settles
        await orchestrator.tick()
        assert orchestrator.status.state is SyncState.IDLE

    @pytest.mark.asyncio
    async def test_paused_import_on_server_errors_reports_error(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        adapter.fail_with(*[RemoteError(ErrorKind.UNKNOWN, "Bad Gateway", status_code=502) for _ in range(2)])
        orchestrator = _orchestrator(
            session_maker, clock, {"task": adapter}, with_importer=True, importer_options={"max_failures": 2}
        )

        await orchestrator.tick()

        assert orchestrator.status.state is SyncState.ERROR
        assert orchestrator.status.last_error == "Bad Gateway"

    @pytest.mark.asyncio
    async def test_session_level_pull_error_fails_cycle(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})
        adapter.fail_with(RemoteError(ErrorKind.AUTH, "Unauthorized", status_code=401))

        await orchestrator.tick()

        assert orchestrator.status.state is SyncState.ERROR
        assert "API key" in orchestrator.status.message

    @pytest.mark.asyncio
    async def test_overlapping_ticks_are_skipped(self, session_maker, clock):
        orchestrator = _orchestrator(session_maker, clock, {"task": FakeAdapter(clock=clock)})

        results = await asyncio.gather(orchestrator.tick(), orchestrator.tick())

        assert {"status": "skipped"} in results

    @pytest.mark.asyncio
    async def test_force_sync_runs_during_tick(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        adapter.seed({"title": "Remote"}, clock.now - 1000)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})

        scheduled, forced = await asyncio.gather(orchestrator.tick(), orchestrator.force_sync())

        assert scheduled != {"status": "skipped"}
        assert forced["force"] is True
        assert "pull" in forced
        assert len(adapter.calls_named("fetch_page")) == 2

    @pytest.mark.asyncio
    async def test_tick_during_forced_sync_is_skipped(self, session_maker, clock):
        orchestrator = _orchestrator(session_maker, clock, {"task": FakeAdapter(clock=clock)})

        forced, scheduled = await asyncio.gather(orchestrator.force_sync(), orchestrator.tick())

        assert forced["force"] is True
        assert scheduled == {"status": "skipped"}
        # The guard is released once both are done
        assert "pull" in await orchestrator.tick()

    @pytest.mark.asyncio
    async def test_status_events_published(self, session_maker, clock):
        orchestrator = _orchestrator(session_maker, clock, {"task": FakeAdapter(clock=clock)})
        states = []
        orchestrator.events.add_listener(
            lambda event: states.append(event.data.state) if event.type == STATUS else None
        )

        await orchestrator.tick()

        assert states[0] is SyncState.SYNCING
        assert states[-1] is SyncState.IDLE


class TestHousekeeping:

    @pytest.mark.asyncio
    async def test_start_surfaces_abandoned_entries(self, session_maker, clock):
        orchestrator = _orchestrator(session_maker, clock, {"task": FakeAdapter(clock=clock)}, stuck_threshold=2)
        record = await _create(orchestrator, {"title": "Stuck"})
        async with session_maker() as session:
            entry = await orchestrator.outbox.get_for(session, "task", record.client_id)
            await orchestrator.outbox.fail(session, entry.id, "rejected")
            await orchestrator.outbox.fail(session, entry.id, "rejected")
            await session.commit()

        await orchestrator.start()

        assert await _pending(orchestrator) == 0
        stored = await _get(orchestrator, record.client_id)
        assert stored.sync_error.startswith("Gave up after 2 attempts")

    @pytest.mark.asyncio
    async def test_check_connection(self, session_maker, clock):
        adapter = FakeAdapter(clock=clock)
        orchestrator = _orchestrator(session_maker, clock, {"task": adapter})

        assert await orchestrator.check_connection() == {
            "ok": True, "message": "Connected", "user": "Test Integration",
        }

        adapter.fail_with(RemoteError(ErrorKind.AUTH, "Unauthorized", status_code=401))
        result = await orchestrator.check_connection()

        assert result["ok"] is False
        assert result["error_kind"] == "auth"
        assert orchestrator.status.state is SyncState.ERROR

    @pytest.mark.asyncio
    async def test_check_connection_without_remote(self, session_maker, clock):
        orchestrator = _orchestrator(session_maker, clock, {})
        assert (await orchestrator.check_connection())["ok"] is False
