"""
Shared fakes and fixtures for the attendance sync test suite.
"""
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Set, Tuple

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from attendance_sync.core.database import Base
from attendance_sync.domain.sync_window import DateRange
from attendance_sync.integrations.sis.error_handler import RepositoryError
from attendance_sync.schemas.sync import Checkpoint
from attendance_sync.services.sync.data_validator import derive_school_year


def make_raw_records(
    school_code: str,
    days: List[date],
    student_ids: List[str],
    daily_status: str = "PRESENT"
) -> List[Dict[str, Any]]:
    """Upstream-shaped records, one per student per day."""
    return [
        {
            "studentId": student_id,
            "attendanceDate": day.isoformat(),
            "schoolCode": school_code,
            "dailyStatus": daily_status,
        }
        for day in days
        for student_id in student_ids
    ]


def date_span(start: date, count: int) -> List[date]:
    return [start + timedelta(days=i) for i in range(count)]


class FakeSISClient:
    """
    Upstream stand-in serving records by school and date.

    ``failures`` is a list of exceptions raised, in order, by the next calls;
    ``school_errors`` raises the same exception for every call for a school.
    """

    def __init__(self, records: Optional[List[Dict[str, Any]]] = None):
        self.records = list(records or [])
        self.failures: List[Exception] = []
        self.school_errors: Dict[str, Exception] = {}
        self.calls: List[Tuple[str, DateRange, int, int]] = []

    async def fetch_attendance_batch(
        self,
        school_code: str,
        date_range: DateRange,
        offset: int = 0,
        limit: int = 500
    ) -> List[Dict[str, Any]]:
        self.calls.append((school_code, date_range, offset, limit))

        if school_code in self.school_errors:
            raise self.school_errors[school_code]
        if self.failures:
            raise self.failures.pop(0)

        matching = [
            record for record in self.records
            if record.get("schoolCode") == school_code
            and date_range.start_date.isoformat() <= str(record.get("attendanceDate")) <= date_range.end_date.isoformat()
        ]
        return matching[offset:offset + limit]

    async def health_check(self) -> bool:
        return True


class InMemoryAttendanceRepository:
    """Repository keyed by (student_id, attendance_date), like the real one."""

    def __init__(self):
        self.students: Dict[Tuple[str, str], Set[str]] = {}
        self.rows: Dict[Tuple[str, date], Dict[str, Any]] = {}
        self.upsert_calls = 0
        self.fail_upserts = False

    def enroll(self, school_code: str, student_ids: List[str], school_year: str):
        self.students.setdefault((school_code, school_year), set()).update(student_ids)

    def enroll_for_dates(self, school_code: str, student_ids: List[str], days: List[date]):
        for school_year in {derive_school_year(day) for day in days}:
            self.enroll(school_code, student_ids, school_year)

    async def find_students_by_school_and_year(self, school_code: str, school_year: str) -> Set[str]:
        return set(self.students.get((school_code, school_year), set()))

    async def upsert_attendance_records(self, records: List[Dict[str, Any]]) -> int:
        self.upsert_calls += 1
        if self.fail_upserts:
            raise RepositoryError("database is locked", operation_type="upsert_attendance_records")
        for record in records:
            self.rows[(record["student_id"], record["attendance_date"])] = dict(record)
        return len(records)

    async def list_active_school_codes(self) -> List[str]:
        return sorted({school for school, _ in self.students})


class InMemoryCheckpointStore:

    def __init__(self):
        self.checkpoints: List[Checkpoint] = []
        self.fail_saves = False

    async def save_checkpoint(
        self,
        operation_id: str,
        window_key: str,
        school_code: str,
        chunk_days: int,
        last_successful_batch_index: int,
        records_processed: int = 0
    ) -> int:
        if self.fail_saves:
            raise RepositoryError("checkpoint table unavailable", operation_type="save_checkpoint")
        checkpoint = Checkpoint(
            id=len(self.checkpoints) + 1,
            operation_id=operation_id,
            window_processed=window_key,
            school_code=school_code,
            chunk_days=chunk_days,
            last_successful_batch_index=last_successful_batch_index,
            records_processed=records_processed,
            timestamp=datetime.utcnow()
        )
        self.checkpoints.append(checkpoint)
        return checkpoint.id

    async def load_latest_checkpoint(self, window_key: str, school_code: str, chunk_days: int) -> Optional[Checkpoint]:
        matching = [
            c for c in self.checkpoints
            if c.window_processed == window_key and c.school_code == school_code and c.chunk_days == chunk_days
        ]
        if not matching:
            return None
        return max(matching, key=lambda c: (c.last_successful_batch_index, c.id))

    async def latest(self) -> Optional[Checkpoint]:
        return self.checkpoints[-1] if self.checkpoints else None


class SleepRecorder:
    """Replacement for asyncio.sleep that records delays without waiting."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


@pytest.fixture
def sis_client():
    return FakeSISClient()


@pytest.fixture
def repository():
    return InMemoryAttendanceRepository()


@pytest.fixture
def checkpoint_store():
    return InMemoryCheckpointStore()


@pytest.fixture
def no_sleep():
    return SleepRecorder()


@pytest.fixture
async def session_factory():
    """In-memory SQLite database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False}
    )
    from attendance_sync import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()
