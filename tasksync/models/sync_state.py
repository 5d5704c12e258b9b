"""Persisted key/value sync progress (cursors, watermarks, import flags)."""

from sqlalchemy import BigInteger, Column, String, Text

from tasksync.core.database import Base


class SyncStateEntry(Base):
    __tablename__ = "sync_state"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=False)
    updated_at = Column(BigInteger, nullable=False)
