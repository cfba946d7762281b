from attendance_sync.domain.value_objects import StudentId, AttendancePercentage
from attendance_sync.domain.attendance_record import (
    AttendanceStatus,
    AttendanceRecord,
    PeriodAttendance,
    DomainErrorKind,
    DomainValidationError,
    PERIODS_PER_DAY,
)
from attendance_sync.domain.sync_window import DateRange, SyncWindow

__all__ = [
    "StudentId",
    "AttendancePercentage",
    "AttendanceStatus",
    "AttendanceRecord",
    "PeriodAttendance",
    "DomainErrorKind",
    "DomainValidationError",
    "PERIODS_PER_DAY",
    "DateRange",
    "SyncWindow",
]
