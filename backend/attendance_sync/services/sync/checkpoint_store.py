"""
Durable sync checkpoints.

A checkpoint records, for one (date window, school, chunk size), the highest
chunk index up to which every chunk has been committed. Writes are
at-least-once; saving the same index twice is harmless.
"""

import logging
from typing import Optional, Protocol, runtime_checkable

from sqlalchemy import select, and_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from attendance_sync.integrations.sis.error_handler import RepositoryError
from attendance_sync.models.sync_metadata import SyncCheckpointRecord
from attendance_sync.schemas.sync import Checkpoint

logger = logging.getLogger(__name__)


@runtime_checkable
class CheckpointStore(Protocol):

    async def save_checkpoint(
        self,
        operation_id: str,
        window_key: str,
        school_code: str,
        chunk_days: int,
        last_successful_batch_index: int,
        records_processed: int = 0
    ) -> int:
        """Persist a checkpoint and return its id."""
        ...

    async def load_latest_checkpoint(
        self,
        window_key: str,
        school_code: str,
        chunk_days: int
    ) -> Optional[Checkpoint]:
        ...

    async def latest(self) -> Optional[Checkpoint]:
        """Most recent checkpoint across all runs."""
        ...


def _to_checkpoint(row: SyncCheckpointRecord) -> Checkpoint:
    return Checkpoint(
        id=row.id,
        operation_id=row.operation_id,
        window_processed=row.window_key,
        school_code=row.school_code,
        chunk_days=row.chunk_days,
        last_successful_batch_index=row.last_successful_batch_index,
        records_processed=row.records_processed,
        timestamp=row.created_at
    )


class SQLAlchemyCheckpointStore:
    """Checkpoint store backed by the ``sync_checkpoints`` table."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def save_checkpoint(
        self,
        operation_id: str,
        window_key: str,
        school_code: str,
        chunk_days: int,
        last_successful_batch_index: int,
        records_processed: int = 0
    ) -> int:
        try:
            async with self.session_factory() as session:
                row = SyncCheckpointRecord(
                    operation_id=operation_id,
                    window_key=window_key,
                    school_code=school_code,
                    chunk_days=chunk_days,
                    last_successful_batch_index=last_successful_batch_index,
                    records_processed=records_processed
                )
                session.add(row)
                await session.commit()
                await session.refresh(row)

                logger.debug(
                    f"Checkpoint {row.id}: {school_code} {window_key} chunk {last_successful_batch_index}"
                )
                return row.id

        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to save checkpoint for school {school_code} ({window_key}): {e}",
                school_code=school_code,
                operation_type="save_checkpoint",
                original_exception=e
            )

    async def load_latest_checkpoint(
        self,
        window_key: str,
        school_code: str,
        chunk_days: int
    ) -> Optional[Checkpoint]:
        query = (
            select(SyncCheckpointRecord)
            .where(
                and_(
                    SyncCheckpointRecord.window_key == window_key,
                    SyncCheckpointRecord.school_code == school_code,
                    SyncCheckpointRecord.chunk_days == chunk_days
                )
            )
            .order_by(
                SyncCheckpointRecord.last_successful_batch_index.desc(),
                SyncCheckpointRecord.id.desc()
            )
            .limit(1)
        )
        return await self._first(query)

    async def latest(self) -> Optional[Checkpoint]:
        query = select(SyncCheckpointRecord).order_by(SyncCheckpointRecord.id.desc()).limit(1)
        return await self._first(query)

    async def _first(self, query) -> Optional[Checkpoint]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(query)
                row = result.scalar_one_or_none()
                return _to_checkpoint(row) if row else None
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to load checkpoint: {e}",
                operation_type="load_checkpoint",
                original_exception=e
            )
