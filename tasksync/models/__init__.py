# Database models
from tasksync.models.records import Task, Project, TimeEntry, Note
from tasksync.models.sync_queue import SyncQueueEntry
from tasksync.models.sync_state import SyncStateEntry
from tasksync.models.sync_log import SyncLog

__all__ = [
    "Task",
    "Project",
    "TimeEntry",
    "Note",
    "SyncQueueEntry",
    "SyncStateEntry",
    "SyncLog",
]
