"""Pydantic models validating local create/update payloads per entity kind."""

from pydantic import BaseModel, ConfigDict, field_validator


class _Payload(BaseModel):
    model_config = ConfigDict(extra="forbid")


def _require_text(value: str | None) -> str | None:
    if value is None:
        return value
    stripped = value.strip()
    if not stripped:
        raise ValueError("title cannot be empty")
    return stripped


class TaskCreate(_Payload):
    title: str
    status: str | None = None
    due_date: str | None = None
    due_date_end: str | None = None
    hard_deadline: bool = False
    urgent: bool = False
    important: bool = False
    parent_task_id: str | None = None
    main_entry: str | None = None
    body: str | None = None
    project_ids: list[str] | None = None

    _title = field_validator("title")(_require_text)


class TaskUpdate(_Payload):
    title: str | None = None
    status: str | None = None
    due_date: str | None = None
    due_date_end: str | None = None
    hard_deadline: bool | None = None
    urgent: bool | None = None
    important: bool | None = None
    parent_task_id: str | None = None
    main_entry: str | None = None
    body: str | None = None
    project_ids: list[str] | None = None

    _title = field_validator("title")(_require_text)


class ProjectCreate(_Payload):
    title: str = "Untitled Project"
    status: str | None = None
    description: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    tags: list[str] | None = None


class ProjectUpdate(_Payload):
    title: str | None = None
    status: str | None = None
    description: str | None = None
    start_date: str | None = None
    end_date: str | None = None
    tags: list[str] | None = None

    _title = field_validator("title")(_require_text)


class TimeEntryCreate(_Payload):
    title: str | None = None
    task_id: str | None = None
    status: str | None = None
    start_time: str | None = None
    end_time: str | None = None
    duration_minutes: int | None = None


class TimeEntryUpdate(TimeEntryCreate):
    pass


class NoteCreate(_Payload):
    title: str | None = None
    body: str | None = None
    tags: list[str] | None = None
    entry_date: str | None = None


class NoteUpdate(NoteCreate):
    pass
