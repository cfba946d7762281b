from sqlalchemy import (
    Column, Integer, String, Boolean, Date, DateTime, Float, Enum as SQLEnum,
    Index, UniqueConstraint
)
from sqlalchemy.sql import func

from attendance_sync.core.database import Base
from attendance_sync.domain.attendance_record import AttendanceStatus


def _period_status_column():
    return Column(SQLEnum(AttendanceStatus), nullable=False, default=AttendanceStatus.PRESENT)


class DailyAttendance(Base):
    """
    One row per student per school day.

    Keyed by (student_id, attendance_date) so repeated syncs update in place.
    """

    __tablename__ = "daily_attendance"

    id = Column(Integer, primary_key=True, index=True)

    student_id = Column(String(50), nullable=False, index=True)
    attendance_date = Column(Date, nullable=False)
    school_code = Column(String(20), nullable=False)
    school_year = Column(String(9), nullable=False)

    # Daily summary
    is_present = Column(Boolean, nullable=False, default=True)
    is_full_day_absent = Column(Boolean, nullable=False, default=False)
    tardy_count = Column(Integer, nullable=False, default=0)
    days_enrolled = Column(Float, nullable=False, default=1.0)

    # Period detail
    period_1_status = _period_status_column()
    period_2_status = _period_status_column()
    period_3_status = _period_status_column()
    period_4_status = _period_status_column()
    period_5_status = _period_status_column()
    period_6_status = _period_status_column()
    period_7_status = _period_status_column()

    # Correction window
    can_be_corrected = Column(Boolean, nullable=False, default=False)
    correction_deadline = Column(Date, nullable=True)

    # Timestamps
    sync_timestamp = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('student_id', 'attendance_date', name='_student_attendance_date_uc'),
        Index('idx_daily_attendance_school_date', school_code, attendance_date),
    )

    def period_statuses(self) -> dict:
        return {n: getattr(self, f"period_{n}_status") for n in range(1, 8)}
