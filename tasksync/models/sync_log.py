"""Sync log model for tracking sync cycles."""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON

from tasksync.core.clock import utc_now
from tasksync.core.database import Base


class SyncLog(Base):
    """Log of orchestrator cycles."""

    __tablename__ = "sync_log"

    id = Column(Integer, primary_key=True, autoincrement=True)
    cycle_type = Column(String, nullable=False)  # "tick", "push", "import", "pull"
    started_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)
    status = Column(String, nullable=False)  # "success", "partial", "failed", "skipped"
    details = Column(JSON, nullable=True)
    error_message = Column(Text, nullable=True)
