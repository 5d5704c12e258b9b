"""Generic record repository with field-level last-writer-wins bookkeeping.

One ``RecordRepository`` serves one entity kind. Every mutation writes the
record and its outbox change in the same transaction and commits it.

Each record carries two per-field timestamp maps. ``field_local_ts[f]`` moves
only when ``f`` is edited locally; ``field_remote_ts[f]`` moves only when a
remote value for ``f`` is accepted, either by pull or by a push the remote
acknowledged. On pull, a remote value for ``f`` is rejected while a local edit
of ``f`` newer than the last accepted remote value is still queued, or when
it is older than the minute of that value. The remote reports last-edited
times to the minute, so two edits in the same minute compare equal.
"""

import logging
import uuid
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tasksync.core.clock import now_ms
from tasksync.services.adapter import RemoteRecord
from tasksync.services.entities import EntitySchema
from tasksync.services.errors import RecordNotFoundError, RecordTrashedError
from tasksync.services.outbox import Outbox
from tasksync.models.sync_queue import SyncQueueEntry

logger = logging.getLogger(__name__)

SYNC_STATUSES = ("local", "pending", "synced", "trashed")
MINUTE_MS = 60 * 1000
DAY_MS = 24 * 60 * MINUTE_MS


def _upper_bound(value: str) -> str:
    """Exclusive upper bound for an inclusive ``date_to`` filter on ISO strings."""
    if len(value) == 10:
        try:
            return (date.fromisoformat(value) + timedelta(days=1)).isoformat()
        except ValueError:
            return value
    return value + "\uffff"


class RecordRepository:
    def __init__(
        self,
        schema: EntitySchema,
        outbox: Optional[Outbox] = None,
        clock: Callable[[], int] = now_ms,
        sync_enabled: bool = True,
    ):
        self.schema = schema
        self.model = schema.model
        self.kind = schema.kind
        self.outbox = outbox or Outbox(clock=clock)
        self.clock = clock
        self.sync_enabled = sync_enabled

    # Lookups

    def new_client_id(self) -> str:
        return f"{self.kind}-{uuid.uuid4()}"

    async def _find_by(self, session: AsyncSession, column, value: Optional[str]):
        if not value:
            return None
        result = await session.execute(select(self.model).where(column == value))
        return result.scalar_one_or_none()

    async def get(self, session: AsyncSession, record_id: str):
        """Resolve by client_id, then remote_id, then unique_external_id."""
        record = await session.get(self.model, record_id)
        if record is not None:
            return record
        record = await self._find_by(session, self.model.remote_id, record_id)
        if record is not None:
            return record
        return await self._find_by(session, self.model.unique_external_id, record_id)

    async def _require(self, session: AsyncSession, record_id: str):
        record = await self.get(session, record_id)
        if record is None:
            raise RecordNotFoundError(f"{self.kind} {record_id} not found")
        return record

    async def _match_remote(self, session: AsyncSession, remote: RemoteRecord):
        record = await self._find_by(session, self.model.unique_external_id, remote.unique_external_id)
        if record is None:
            record = await self._find_by(session, self.model.remote_id, remote.remote_id)
        return record

    def to_dict(self, record) -> dict[str, Any]:
        return {column.name: getattr(record, column.name) for column in self.model.__table__.columns}

    def _pushable_payload(self, record, fields: Iterable[str]) -> dict[str, Any]:
        return {f: getattr(record, f) for f in fields if f in self.schema.pushable_fields}

    def _all_pushable(self, record) -> tuple[dict[str, Any], list[str]]:
        names = [f for f in self.schema.properties if getattr(record, f) is not None]
        return self._pushable_payload(record, names), names

    # Local mutations

    async def create(self, session: AsyncSession, payload: dict[str, Any]):
        """Validate, store and queue a new record."""
        values = self.schema.create_model.model_validate(payload).model_dump()
        values = {k: v for k, v in values.items() if v is not None}
        if self.schema.derive:
            values = self.schema.derive(values)

        now = self.clock()
        record = self.model(
            client_id=self.new_client_id(),
            sync_status="pending" if self.sync_enabled else "local",
            last_modified_local=now,
            last_modified_remote=0,
            field_local_ts={f: now for f in values},
            field_remote_ts={},
            **values,
        )
        session.add(record)

        if self.sync_enabled:
            pushable = [f for f in values if f in self.schema.pushable_fields]
            await self.outbox.enqueue(
                session,
                self.kind,
                record.client_id,
                "create",
                {f: values[f] for f in pushable},
                pushable,
            )
        await session.commit()
        logger.debug(f"Created {self.kind} {record.client_id}")
        return record

    async def update(self, session: AsyncSession, record_id: str, partial: dict[str, Any]):
        """Apply the fields present in ``partial`` and queue them."""
        record = await self._require(session, record_id)
        if record.trashed_at is not None:
            raise RecordTrashedError(f"{self.kind} {record.client_id} is in the trash")

        changes = self.schema.update_model.model_validate(partial).model_dump(exclude_unset=True)
        columns = self.model.__table__.columns
        changes = {k: v for k, v in changes.items() if v is not None or columns[k].nullable}
        if self.schema.derive:
            current = {c.name: getattr(record, c.name) for c in columns}
            derived = self.schema.derive({**current, **changes})
            for key, value in derived.items():
                if key not in changes and value != current.get(key):
                    changes[key] = value
        if not changes:
            return record

        now = max(self.clock(), record.last_modified_local or 0)
        for name, value in changes.items():
            setattr(record, name, value)
        record.field_local_ts = {**(record.field_local_ts or {}), **{f: now for f in changes}}
        record.last_modified_local = now

        pushable = self.schema.with_coupled([f for f in changes if f in self.schema.pushable_fields])
        if self.sync_enabled and (pushable or record.remote_id is None):
            record.sync_status = "pending"
            if record.remote_id is None:
                # Never reached the remote: (re)queue the full record as a create
                payload, fields = self._all_pushable(record)
                await self.outbox.enqueue(session, self.kind, record.client_id, "create", payload, fields)
            else:
                await self.outbox.enqueue(
                    session,
                    self.kind,
                    record.client_id,
                    "update",
                    self._pushable_payload(record, pushable),
                    pushable,
                    remote_id=record.remote_id,
                )
        await session.commit()
        return record

    async def mark_trashed(self, session: AsyncSession, record_id: str, reason: str = "local"):
        """Soft delete; the remote copy is archived on the next push."""
        record = await self._require(session, record_id)
        if record.trashed_at is not None:
            return record

        record.trashed_at = self.clock()
        record.trash_reason = reason
        record.sync_status = "trashed"
        if self.sync_enabled and record.remote_id and reason == "local":
            await self.outbox.enqueue(
                session, self.kind, record.client_id, "delete", {}, [], remote_id=record.remote_id
            )
        else:
            await self.outbox.clear_for(session, self.kind, record.client_id)
        await session.commit()
        logger.info(f"Trashed {self.kind} {record.client_id} ({reason})")
        return record

    async def mark_remote_missing(self, session: AsyncSession, client_id: str):
        """The remote answered not_found: trash the record and stop retrying."""
        return await self.mark_trashed(session, client_id, reason="remote_missing")

    async def restore(self, session: AsyncSession, record_id: str):
        """Take a record out of the trash and queue whatever the remote needs."""
        record = await self._require(session, record_id)
        if record.trashed_at is None:
            return record

        reason = record.trash_reason
        record.trashed_at = None
        record.trash_reason = None
        record.sync_error = None

        if not self.sync_enabled:
            record.sync_status = "local"
            await session.commit()
            return record

        entry = await self.outbox.get_for(session, self.kind, record.client_id)
        if reason in ("remote_missing", "remote_archived"):
            # The remote copy is gone; recreate it under a new identity
            record.remote_id = None
            record.unique_external_id = None
            record.field_remote_ts = {}
            await self.outbox.clear_for(session, self.kind, record.client_id)
            payload, fields = self._all_pushable(record)
            await self.outbox.enqueue(session, self.kind, record.client_id, "create", payload, fields)
            record.sync_status = "pending"
        elif entry is not None and entry.operation == "delete":
            # Delete never left the device; keep any edits queued before it
            pending = [f for f in entry.changed_fields or [] if f in self.schema.pushable_fields]
            if pending:
                entry.operation = "update"
                entry.payload = self._pushable_payload(record, pending)
                entry.version = (entry.version or 1) + 1
                record.sync_status = "pending"
            else:
                await session.delete(entry)
                record.sync_status = "synced" if record.remote_id else "pending"
        elif record.remote_id:
            payload, fields = self._all_pushable(record)
            payload["archived"] = False
            await self.outbox.enqueue(
                session, self.kind, record.client_id, "update", payload, fields, remote_id=record.remote_id
            )
            record.sync_status = "pending"
        else:
            payload, fields = self._all_pushable(record)
            await self.outbox.enqueue(session, self.kind, record.client_id, "create", payload, fields)
            record.sync_status = "pending"

        await session.commit()
        logger.info(f"Restored {self.kind} {record.client_id}")
        return record

    async def _purge_record(self, session: AsyncSession, record) -> None:
        entry = await self.outbox.get_for(session, self.kind, record.client_id)
        if entry is not None and entry.operation == "delete":
            # Still owed to the remote; the queue entry outlives the row
            pass
        elif self.sync_enabled and record.remote_id and record.trashed_at is None:
            await self.outbox.enqueue(
                session, self.kind, record.client_id, "delete", {}, [], remote_id=record.remote_id
            )
        elif entry is not None:
            await session.delete(entry)
        await session.delete(record)

    async def purge(self, session: AsyncSession, record_id: str) -> None:
        """Permanently delete a record."""
        record = await self._require(session, record_id)
        await self._purge_record(session, record)
        await session.commit()
        logger.info(f"Purged {self.kind} {record.client_id}")

    async def purge_expired_trash(self, session: AsyncSession, older_than_days: int = 30) -> int:
        cutoff = self.clock() - older_than_days * DAY_MS
        result = await session.execute(
            select(self.model).where(
                self.model.trashed_at.is_not(None),
                self.model.trashed_at <= cutoff,
            )
        )
        expired = list(result.scalars().all())
        for record in expired:
            await self._purge_record(session, record)
        await session.commit()
        if expired:
            logger.info(f"Purged {len(expired)} expired {self.kind} records from trash")
        return len(expired)

    async def record_push_error(self, session: AsyncSession, client_id: str, message: Optional[str]) -> None:
        record = await session.get(self.model, client_id)
        if record is None:
            return
        record.sync_error = message
        await session.commit()

    # Remote merges

    async def _claim_remote_id(self, session: AsyncSession, record, remote_id: Optional[str]) -> None:
        """Give ``remote_id`` to ``record``, dropping any pulled duplicate holding it."""
        if not remote_id or record.remote_id == remote_id:
            return
        duplicate = await self._find_by(session, self.model.remote_id, remote_id)
        if duplicate is not None and duplicate is not record:
            logger.info(f"Merging duplicate {self.kind} {duplicate.client_id} into {record.client_id}")
            await self.outbox.clear_for(session, self.kind, duplicate.client_id)
            await session.delete(duplicate)
            await session.flush()
        record.remote_id = remote_id

    async def _claim_external_id(self, session: AsyncSession, record, unique_external_id: Optional[str]) -> None:
        if not unique_external_id or record.unique_external_id == unique_external_id:
            return
        duplicate = await self._find_by(session, self.model.unique_external_id, unique_external_id)
        if duplicate is not None and duplicate is not record:
            await self.outbox.clear_for(session, self.kind, duplicate.client_id)
            await session.delete(duplicate)
            await session.flush()
        record.unique_external_id = unique_external_id

    async def attach_remote_identity(
        self,
        session: AsyncSession,
        client_id: str,
        remote_id: str,
        unique_external_id: Optional[str] = None,
        commit: bool = True,
    ):
        record = await session.get(self.model, client_id)
        if record is None:
            raise RecordNotFoundError(f"{self.kind} {client_id} not found")
        await self._claim_remote_id(session, record, remote_id)
        await self._claim_external_id(session, record, unique_external_id)
        if commit:
            await session.commit()
        return record

    async def _apply_remote(
        self,
        session: AsyncSession,
        record,
        remote: RemoteRecord,
        timestamp: int,
        entry: Optional[SyncQueueEntry],
    ) -> None:
        queued = set(entry.changed_fields or []) if entry is not None else set()
        local_ts = record.field_local_ts or {}
        remote_ts = dict(record.field_remote_ts or {})
        kept_local: set[str] = set()

        for name, value in remote.fields.items():
            if name not in self.schema.remote_fields:
                continue
            previous = remote_ts.get(name, 0)
            if name in queued and local_ts.get(name, 0) > previous:
                kept_local.add(name)
                continue
            if timestamp < previous - previous % MINUTE_MS:
                continue
            setattr(record, name, value)
            remote_ts[name] = max(previous, timestamp)

        record.field_remote_ts = remote_ts
        record.last_modified_remote = max(record.last_modified_remote or 0, timestamp)

        if entry is None:
            record.sync_status = "synced"
            record.sync_error = None
            return

        remaining = [f for f in entry.changed_fields or [] if f in kept_local or f not in remote.fields]
        if not remaining:
            await session.delete(entry)
            record.sync_status = "synced"
            record.sync_error = None
            return

        if remaining != list(entry.changed_fields or []):
            entry.changed_fields = remaining
            entry.payload = {k: v for k, v in (entry.payload or {}).items() if k in remaining or k == "archived"}
            entry.version = (entry.version or 1) + 1
        if entry.operation == "create" and record.remote_id:
            entry.operation = "update"
            entry.remote_id = record.remote_id
            entry.version = (entry.version or 1) + 1
        record.sync_status = "pending"

    async def upsert_remote(
        self,
        session: AsyncSession,
        remote: RemoteRecord,
        remote_timestamp: Optional[int] = None,
        commit: bool = True,
    ):
        """Merge a pulled remote record. Returns the local record, or None when skipped."""
        timestamp = remote_timestamp or remote.last_edited or self.clock()
        record = await self._match_remote(session, remote)

        if record is None:
            if remote.archived:
                return None
            values = {k: v for k, v in remote.fields.items() if k in self.schema.remote_fields}
            record = self.model(
                client_id=remote.remote_id,
                remote_id=remote.remote_id,
                unique_external_id=remote.unique_external_id,
                sync_status="synced",
                last_modified_local=0,
                last_modified_remote=timestamp,
                field_local_ts={},
                field_remote_ts={f: timestamp for f in values},
                **values,
            )
            session.add(record)
            await session.flush()
            if commit:
                await session.commit()
            return record

        if record.trashed_at is not None:
            return record

        await self._claim_remote_id(session, record, remote.remote_id)
        await self._claim_external_id(session, record, remote.unique_external_id)

        if remote.archived:
            record.trashed_at = self.clock()
            record.trash_reason = "remote_archived"
            record.sync_status = "trashed"
            await self.outbox.clear_for(session, self.kind, record.client_id)
            logger.info(f"{self.kind} {record.client_id} was archived remotely; moved to trash")
        else:
            entry = await self.outbox.get_for(session, self.kind, record.client_id)
            await self._apply_remote(session, record, remote, timestamp, entry)

        await session.flush()
        if commit:
            await session.commit()
        return record

    async def acknowledge_push(
        self,
        session: AsyncSession,
        entry: SyncQueueEntry,
        pushed_at: int,
        remote: Optional[RemoteRecord] = None,
    ):
        """Record a successful create/update push and fold in the remote's response.

        Pushed fields not edited again since ``pushed_at`` count as accepted by
        the remote. The queue entry is removed unless it was coalesced while the
        request was in flight.
        """
        record = await session.get(self.model, entry.client_id)
        version = entry.version
        if record is None:
            await self.outbox.complete(session, entry.id, version)
            if remote is not None and entry.operation == "create":
                # Purged while the create was in flight
                await self.outbox.enqueue(
                    session, self.kind, entry.client_id, "delete", {}, [], remote_id=remote.remote_id
                )
            await session.commit()
            return None

        if remote is not None:
            await self._claim_remote_id(session, record, remote.remote_id)
            await self._claim_external_id(session, record, remote.unique_external_id)

        accepted_at = remote.last_edited if remote is not None and remote.last_edited else pushed_at
        local_ts = record.field_local_ts or {}
        remote_ts = dict(record.field_remote_ts or {})
        for name in entry.changed_fields or []:
            if local_ts.get(name, 0) <= pushed_at:
                remote_ts[name] = max(remote_ts.get(name, 0), accepted_at)
        record.field_remote_ts = remote_ts

        await self.outbox.complete(session, entry.id, version, remote_id=record.remote_id)
        if record.trashed_at is not None:
            if record.trash_reason == "local" and entry.operation == "create" and record.remote_id:
                # Trashed while the create was in flight
                await self.outbox.enqueue(
                    session, self.kind, record.client_id, "delete", {}, [], remote_id=record.remote_id
                )
        else:
            current = await self.outbox.get_for(session, self.kind, record.client_id)
            if remote is not None:
                await self._apply_remote(session, record, remote, accepted_at, current)
            else:
                record.sync_status = "pending" if current is not None else "synced"
                if current is None:
                    record.sync_error = None
        await session.commit()
        return record

    # Queries

    def _filtered(
        self,
        status: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        flags: Optional[dict[str, bool]] = None,
        parent: Optional[str] = None,
        include_trashed: bool = False,
    ):
        query = select(self.model)
        if not include_trashed:
            query = query.where(self.model.trashed_at.is_(None))
        if status is not None:
            query = query.where(self.model.status == status)
        if date_from or date_to:
            if not self.schema.date_column:
                raise ValueError(f"{self.kind} records have no date to filter on")
            column = self.schema.column(self.schema.date_column)
            if date_from:
                query = query.where(column >= date_from)
            if date_to:
                query = query.where(column < _upper_bound(date_to))
        for name, value in (flags or {}).items():
            if name not in self.schema.flag_columns:
                raise ValueError(f"Unknown {self.kind} flag: {name}")
            query = query.where(self.schema.column(name) == value)
        if parent is not None:
            if not self.schema.parent_column:
                raise ValueError(f"{self.kind} records have no parent")
            query = query.where(self.schema.column(self.schema.parent_column) == parent)
        return query

    async def list(
        self,
        session: AsyncSession,
        status: Optional[str] = None,
        date_from: Optional[str] = None,
        date_to: Optional[str] = None,
        flags: Optional[dict[str, bool]] = None,
        parent: Optional[str] = None,
        include_trashed: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list:
        query = self._filtered(status, date_from, date_to, flags, parent, include_trashed)
        if self.schema.date_column:
            query = query.order_by(self.schema.column(self.schema.date_column).desc())
        query = query.order_by(self.model.last_modified_local.desc(), self.model.client_id)
        if offset:
            query = query.offset(offset)
        if limit is not None:
            query = query.limit(limit)
        result = await session.execute(query)
        return list(result.scalars().all())

    async def list_trashed(self, session: AsyncSession) -> list:
        result = await session.execute(
            select(self.model)
            .where(self.model.trashed_at.is_not(None))
            .order_by(self.model.trashed_at.desc())
        )
        return list(result.scalars().all())

    async def count(self, session: AsyncSession, include_trashed: bool = False) -> int:
        query = select(func.count()).select_from(self.model)
        if not include_trashed:
            query = query.where(self.model.trashed_at.is_(None))
        result = await session.execute(query)
        return int(result.scalar_one())

    async def status_breakdown(self, session: AsyncSession) -> dict[str, int]:
        """Record counts per sync status plus records carrying a push error."""
        result = await session.execute(
            select(self.model.sync_status, func.count()).group_by(self.model.sync_status)
        )
        breakdown = {status: 0 for status in SYNC_STATUSES}
        for status, count in result.all():
            breakdown[status] = count
        failed = await session.execute(
            select(func.count()).select_from(self.model).where(self.model.sync_error.is_not(None))
        )
        breakdown["failed"] = int(failed.scalar_one())
        return breakdown
