"""Outbox table of local mutations awaiting transmission."""

from sqlalchemy import BigInteger, Column, Integer, JSON, String, Text, UniqueConstraint

from tasksync.core.database import Base


class SyncQueueEntry(Base):
    """One coalesced pending change per (entity_type, client_id)."""

    __tablename__ = "sync_queue"

    id = Column(Integer, primary_key=True, autoincrement=True)
    entity_type = Column(String, nullable=False)
    client_id = Column(String, nullable=False)
    remote_id = Column(String, nullable=True)
    operation = Column(String, nullable=False)  # "create", "update", "delete"
    payload = Column(JSON, nullable=False, default=dict)
    changed_fields = Column(JSON, nullable=False, default=list)
    retry_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    pending_since = Column(BigInteger, nullable=False, index=True)
    updated_at = Column(BigInteger, nullable=False)
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (UniqueConstraint("entity_type", "client_id", name="uix_sync_queue_entity"),)
