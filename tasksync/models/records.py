"""Local record tables, one per entity kind.

Every table shares the sync bookkeeping columns from ``SyncableMixin``; entity
fields live in dedicated, indexed columns so listings never scan JSON.
"""

from sqlalchemy import BigInteger, Boolean, Column, Integer, JSON, String, Text

from tasksync.core.database import Base


class SyncableMixin:
    """Identity, status and per-field timestamps used for conflict resolution."""

    client_id = Column(String, primary_key=True)
    remote_id = Column(String, nullable=True, unique=True)
    unique_external_id = Column(String, nullable=True, unique=True)
    sync_status = Column(String, nullable=False, default="pending", index=True)  # local, pending, synced, trashed
    last_modified_local = Column(BigInteger, nullable=False, default=0)
    last_modified_remote = Column(BigInteger, nullable=False, default=0)
    field_local_ts = Column(JSON, nullable=False, default=dict)
    field_remote_ts = Column(JSON, nullable=False, default=dict)
    sync_error = Column(Text, nullable=True)
    trashed_at = Column(BigInteger, nullable=True, index=True)
    trash_reason = Column(String, nullable=True)  # local, remote_missing, remote_archived


class Task(SyncableMixin, Base):
    """A task with scheduling flags and relations."""

    __tablename__ = "tasks"

    title = Column(String, nullable=False, default="")
    status = Column(String, nullable=True, index=True)
    due_date = Column(String, nullable=True, index=True)
    due_date_end = Column(String, nullable=True)
    hard_deadline = Column(Boolean, nullable=False, default=False, index=True)
    urgent = Column(Boolean, nullable=False, default=False, index=True)
    important = Column(Boolean, nullable=False, default=False, index=True)
    parent_task_id = Column(String, nullable=True, index=True)
    main_entry = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    project_ids = Column(JSON, nullable=True)
    url = Column(String, nullable=True)


class Project(SyncableMixin, Base):
    """A project grouping tasks."""

    __tablename__ = "projects"

    title = Column(String, nullable=False, default="")
    status = Column(String, nullable=True, index=True)
    description = Column(Text, nullable=True)
    start_date = Column(String, nullable=True, index=True)
    end_date = Column(String, nullable=True)
    tags = Column(JSON, nullable=True)
    url = Column(String, nullable=True)


class TimeEntry(SyncableMixin, Base):
    """A tracked work session, optionally linked to a task."""

    __tablename__ = "time_entries"

    title = Column(String, nullable=True)
    task_id = Column(String, nullable=True, index=True)
    status = Column(String, nullable=True, index=True)
    start_time = Column(String, nullable=True, index=True)
    end_time = Column(String, nullable=True)
    duration_minutes = Column(Integer, nullable=True)


class Note(SyncableMixin, Base):
    """A free-text note (writing log entry)."""

    __tablename__ = "notes"

    title = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    tags = Column(JSON, nullable=True)
    entry_date = Column(String, nullable=True, index=True)
