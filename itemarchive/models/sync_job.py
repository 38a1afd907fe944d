from __future__ import annotations

import enum

from sqlalchemy import JSON, Column, Index, Integer, Text

from ..db.session import Base


class SyncJobStatus(str, enum.Enum):
    PENDING = "PENDING"
    DONE = "DONE"
    FAILED = "FAILED"


class VectorSyncJob(Base):
    """Outbox row: a metadata patch waiting to be mirrored into the vector store.

    Rows are written in the same transaction as the item change they
    describe, so a committed change always has a job.
    """

    __tablename__ = "vector_sync_jobs"
    __table_args__ = (Index("ix_vector_sync_jobs_status_id", "status", "id"),)

    id = Column(Integer, primary_key=True, index=True)
    item_id = Column(Integer, nullable=False, index=True)
    payload = Column(JSON, nullable=False, default=dict)
    status = Column(Text, nullable=False, default=SyncJobStatus.PENDING.value)
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    created_at = Column(Text, nullable=False)
    updated_at = Column(Text, nullable=False)
