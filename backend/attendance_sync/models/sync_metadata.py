"""
SQLAlchemy models for sync checkpoint tracking.
"""

from sqlalchemy import Column, Integer, String, DateTime, Index
from sqlalchemy.sql import func

from attendance_sync.core.database import Base


class SyncCheckpointRecord(Base):
    """Progress marker written after each committed chunk of a sync run."""

    __tablename__ = "sync_checkpoints"

    id = Column(Integer, primary_key=True, index=True)
    operation_id = Column(String(64), nullable=False)
    window_key = Column(String(32), nullable=False)  # "<start>_<end>"
    school_code = Column(String(20), nullable=False)
    chunk_days = Column(Integer, nullable=False)
    last_successful_batch_index = Column(Integer, nullable=False)
    records_processed = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    __table_args__ = (
        Index('idx_sync_checkpoint_lookup', window_key, school_code, chunk_days),
    )
