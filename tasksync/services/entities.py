"""Entity schemas: everything the generic repository needs to know per kind.

A schema names the ORM model, the pydantic payload models, the fields that are
mirrored to the remote service (everything else is local-only), and which indexed columns back the listing
filters.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Optional, Type

from pydantic import BaseModel

from tasksync.core.database import Base
from tasksync.models.records import Note, Project, Task, TimeEntry
from tasksync.schemas import records as payloads


@dataclass(frozen=True)
class PropertySpec:
    """Remote property backing a local field."""

    name: str
    type: str  # title, rich_text, status, select, date, date_end, checkbox, number, relation, relation_one, multi_select
    target: Optional[str] = None  # entity kind a relation points at


@dataclass(frozen=True)
class EntitySchema:
    kind: str
    model: Type[Base]
    create_model: Type[BaseModel]
    update_model: Type[BaseModel]
    properties: dict[str, PropertySpec]
    date_column: Optional[str] = None
    flag_columns: tuple[str, ...] = ()
    parent_column: Optional[str] = None
    derive: Optional[Callable[[dict[str, Any]], dict[str, Any]]] = None
    read_only_fields: frozenset[str] = field(default_factory=frozenset)

    @property
    def pushable_fields(self) -> frozenset[str]:
        return frozenset(self.properties)

    @property
    def remote_fields(self) -> frozenset[str]:
        """Fields whose values are taken from the remote service on pull."""
        return self.pushable_fields | self.read_only_fields

    def with_coupled(self, names: list[str]) -> list[str]:
        """``names`` plus fields stored in the same remote property (date start and end)."""
        props = {self.properties[n].name for n in names if n in self.properties}
        extra = [f for f, spec in self.properties.items() if spec.name in props and f not in names]
        return list(names) + extra

    def column(self, name: str):
        return getattr(self.model, name)

    def with_property_names(self, overrides: dict[str, str]) -> "EntitySchema":
        """Copy of this schema with remote property names replaced."""
        if not overrides:
            return self
        properties = dict(self.properties)
        for field_name, prop_name in overrides.items():
            if field_name in properties:
                properties[field_name] = replace(properties[field_name], name=prop_name)
        return replace(self, properties=properties)


def _derive_duration(values: dict[str, Any]) -> dict[str, Any]:
    """Fill duration_minutes from start/end when both are present."""
    start, end = values.get("start_time"), values.get("end_time")
    if not start or not end:
        return values
    try:
        start_dt = datetime.fromisoformat(start.replace("Z", "+00:00"))
        end_dt = datetime.fromisoformat(end.replace("Z", "+00:00"))
    except ValueError:
        return values
    minutes = int((end_dt - start_dt).total_seconds() // 60)
    if minutes >= 0:
        return {**values, "duration_minutes": minutes}
    return values


TASK = EntitySchema(
    kind="task",
    model=Task,
    create_model=payloads.TaskCreate,
    update_model=payloads.TaskUpdate,
    properties={
        "title": PropertySpec("Name", "title"),
        "status": PropertySpec("Status", "status"),
        "due_date": PropertySpec("Date", "date"),
        "due_date_end": PropertySpec("Date", "date_end"),
        "hard_deadline": PropertySpec("Hard Deadline?", "checkbox"),
        "urgent": PropertySpec("Urgent", "checkbox"),
        "important": PropertySpec("Important", "checkbox"),
        "parent_task_id": PropertySpec("Parent Task", "relation_one", "task"),
        "main_entry": PropertySpec("Main Entry", "rich_text"),
        "project_ids": PropertySpec("Projects", "relation", "project"),
    },
    date_column="due_date",
    flag_columns=("urgent", "important", "hard_deadline"),
    parent_column="parent_task_id",
    read_only_fields=frozenset({"url"}),
)

PROJECT = EntitySchema(
    kind="project",
    model=Project,
    create_model=payloads.ProjectCreate,
    update_model=payloads.ProjectUpdate,
    properties={
        "title": PropertySpec("Name", "title"),
        "status": PropertySpec("Status", "status"),
        "description": PropertySpec("Description", "rich_text"),
        "start_date": PropertySpec("Start Date", "date"),
        "end_date": PropertySpec("Deadline", "date"),
        "tags": PropertySpec("Tags", "multi_select"),
    },
    date_column="start_date",
    read_only_fields=frozenset({"url"}),
)

TIME_ENTRY = EntitySchema(
    kind="time_entry",
    model=TimeEntry,
    create_model=payloads.TimeEntryCreate,
    update_model=payloads.TimeEntryUpdate,
    properties={
        "title": PropertySpec("Name", "title"),
        "task_id": PropertySpec("Task", "relation_one", "task"),
        "status": PropertySpec("Status", "select"),
        "start_time": PropertySpec("Start Time", "date"),
        "end_time": PropertySpec("End Time", "date"),
        "duration_minutes": PropertySpec("Duration", "number"),
    },
    date_column="start_time",
    parent_column="task_id",
    derive=_derive_duration,
)

NOTE = EntitySchema(
    kind="note",
    model=Note,
    create_model=payloads.NoteCreate,
    update_model=payloads.NoteUpdate,
    properties={
        "title": PropertySpec("Name", "title"),
        "body": PropertySpec("Content", "rich_text"),
        "tags": PropertySpec("Tags", "multi_select"),
        "entry_date": PropertySpec("Date", "date"),
    },
    date_column="entry_date",
)

ENTITY_SCHEMAS: dict[str, EntitySchema] = {
    schema.kind: schema for schema in (TASK, PROJECT, TIME_ENTRY, NOTE)
}


def get_schema(kind: str) -> EntitySchema:
    try:
        return ENTITY_SCHEMAS[kind]
    except KeyError:
        raise KeyError(f"Unknown entity kind: {kind}") from None
