"""
Local attendance storage used by the sync pipeline.
"""

import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Protocol, Set, runtime_checkable

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from attendance_sync.domain.attendance_record import PERIOD_NUMBERS, AttendanceStatus
from attendance_sync.integrations.sis.error_handler import RepositoryError
from attendance_sync.models.attendance import DailyAttendance
from attendance_sync.models.student import Student

logger = logging.getLogger(__name__)


_UPSERT_FIELDS = (
    "school_code",
    "school_year",
    "is_present",
    "is_full_day_absent",
    "tardy_count",
    "days_enrolled",
    "can_be_corrected",
    "correction_deadline",
    "sync_timestamp",
) + tuple(f"period_{n}_status" for n in PERIOD_NUMBERS)


@runtime_checkable
class AttendanceRepositoryProtocol(Protocol):
    """Storage operations the sync service relies on. Upserts are keyed by (student_id, attendance_date)."""

    async def find_students_by_school_and_year(self, school_code: str, school_year: str) -> Set[str]:
        ...

    async def upsert_attendance_records(self, records: List[Dict[str, Any]]) -> int:
        ...

    async def list_active_school_codes(self) -> List[str]:
        ...


class SQLAlchemyAttendanceRepository:
    """Attendance repository backed by the service database."""

    def __init__(self, session_factory: async_sessionmaker):
        self.session_factory = session_factory

    async def find_students_by_school_and_year(self, school_code: str, school_year: str) -> Set[str]:
        """SIS identifiers of active students enrolled at a school for a school year."""
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Student.student_id).where(
                        and_(
                            Student.school_code == school_code,
                            Student.school_year == school_year,
                            Student.is_active.is_(True)
                        )
                    )
                )
                return set(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to load students for school {school_code} ({school_year}): {e}",
                school_code=school_code,
                operation_type="find_students_by_school_and_year",
                original_exception=e
            )

    async def list_active_school_codes(self) -> List[str]:
        try:
            async with self.session_factory() as session:
                result = await session.execute(
                    select(Student.school_code).where(Student.is_active.is_(True)).distinct().order_by(Student.school_code)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to list active schools: {e}",
                operation_type="list_active_school_codes",
                original_exception=e
            )

    async def upsert_attendance_record(self, record: Dict[str, Any]) -> None:
        await self.upsert_attendance_records([record])

    async def upsert_attendance_records(self, records: List[Dict[str, Any]]) -> int:
        """
        Insert or update daily attendance rows in one transaction.

        Returns:
            Number of rows written
        """
        if not records:
            return 0

        try:
            return await self._write_batch(records)

        except IntegrityError:
            # Another writer inserted one of our keys first; every row now exists, so retry as updates
            logger.info("Concurrent insert detected during attendance upsert, retrying batch")
            return await self._retry_upsert(records)

        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to upsert {len(records)} attendance records: {e}",
                school_code=records[0].get("school_code"),
                operation_type="upsert_attendance_records",
                original_exception=e
            )

    async def _write_batch(self, records: List[Dict[str, Any]]) -> int:
        async with self.session_factory() as session:
            async with session.begin():
                for record in records:
                    await self._upsert(session, record)
        return len(records)

    async def _retry_upsert(self, records: List[Dict[str, Any]]) -> int:
        try:
            return await self._write_batch(records)
        except SQLAlchemyError as e:
            raise RepositoryError(
                f"Failed to upsert {len(records)} attendance records after retry: {e}",
                school_code=records[0].get("school_code"),
                operation_type="upsert_attendance_records",
                original_exception=e
            )

    @staticmethod
    async def _upsert(session: AsyncSession, record: Dict[str, Any]) -> None:
        result = await session.execute(
            select(DailyAttendance).where(
                and_(
                    DailyAttendance.student_id == record["student_id"],
                    DailyAttendance.attendance_date == record["attendance_date"]
                )
            )
        )
        existing = result.scalar_one_or_none()

        values = {name: record[name] for name in _UPSERT_FIELDS if name in record}
        for n in PERIOD_NUMBERS:
            key = f"period_{n}_status"
            if key in values:
                values[key] = AttendanceStatus(values[key])

        if existing:
            for name, value in values.items():
                setattr(existing, name, value)
        else:
            session.add(DailyAttendance(
                student_id=record["student_id"],
                attendance_date=record["attendance_date"],
                **values
            ))

    async def get_attendance(self, student_id: str, attendance_date: date) -> Optional[DailyAttendance]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DailyAttendance).where(
                    and_(
                        DailyAttendance.student_id == student_id,
                        DailyAttendance.attendance_date == attendance_date
                    )
                )
            )
            return result.scalar_one_or_none()

    async def list_attendance(
        self,
        school_code: Optional[str] = None,
        student_id: Optional[str] = None
    ) -> List[DailyAttendance]:
        query = select(DailyAttendance)
        if school_code:
            query = query.where(DailyAttendance.school_code == school_code)
        if student_id:
            query = query.where(DailyAttendance.student_id == student_id)
        query = query.order_by(DailyAttendance.student_id, DailyAttendance.attendance_date)

        async with self.session_factory() as session:
            result = await session.execute(query)
            return list(result.scalars().all())


def apply_correction_window(
    record: Dict[str, Any],
    enabled: bool,
    days: int,
    today: Optional[date] = None
) -> Dict[str, Any]:
    """Stamp ``can_be_corrected`` and ``correction_deadline`` on a sanitized record."""
    today = today or date.today()
    attendance_date = record["attendance_date"]
    deadline = attendance_date + timedelta(days=days)

    record["correction_deadline"] = deadline if enabled else None
    record["can_be_corrected"] = enabled and today <= deadline
    return record
