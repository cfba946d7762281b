"""
Period-based daily attendance.

A middle-school day has exactly seven periods. An ``AttendanceRecord`` holds
one status per period for one student on one calendar day and refuses to exist
in any other shape.
"""
import enum
import re
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from attendance_sync.domain.value_objects import AttendancePercentage, StudentId


PERIODS_PER_DAY = 7
PERIOD_NUMBERS = tuple(range(1, PERIODS_PER_DAY + 1))

_SCHOOL_YEAR_PATTERN = re.compile(r"^\d{4}-\d{4}$")


class AttendanceStatus(str, enum.Enum):
    PRESENT = "PRESENT"
    ABSENT = "ABSENT"
    TARDY = "TARDY"

    @property
    def counts_as_present(self) -> bool:
        return self is not AttendanceStatus.ABSENT


class DomainErrorKind(str, enum.Enum):
    INVALID_PERIOD_COUNT = "InvalidPeriodCount"
    DUPLICATE_PERIOD = "DuplicatePeriod"
    PERIOD_OUT_OF_RANGE = "PeriodOutOfRange"
    INVALID_SCHOOL_YEAR_FORMAT = "InvalidSchoolYearFormat"
    EMPTY_PERIOD_SET = "EmptyPeriodSet"
    INVALID_PERIOD_NUMBER = "InvalidPeriodNumber"
    MISSING_PERIOD = "MissingPeriod"
    INVALID_STATUS = "InvalidStatus"


class DomainValidationError(ValueError):
    """An attendance invariant was violated."""

    def __init__(self, kind: DomainErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
        self.message = message

    def __repr__(self) -> str:
        return f"DomainValidationError({self.kind.value}: {self.message})"


@dataclass(frozen=True)
class PeriodAttendance:
    period: int
    status: AttendanceStatus

    def __post_init__(self):
        if not isinstance(self.status, AttendanceStatus):
            object.__setattr__(self, "status", AttendanceStatus(str(self.status).upper()))

    @property
    def is_present(self) -> bool:
        return self.status.counts_as_present


class AttendanceRecord:
    """
    One school day of attendance for one student.

    Two records are equal when they describe the same student on the same
    date, whatever their period statuses. Incoming data for an existing
    student-day is therefore an update, never a second record.
    """

    def __init__(
        self,
        student_id: Union[StudentId, str],
        attendance_date: date,
        school_year: str,
        periods: Iterable[PeriodAttendance],
        created_at: Optional[datetime] = None,
        updated_at: Optional[datetime] = None
    ):
        if not isinstance(student_id, StudentId):
            student_id = StudentId(student_id)

        self.student_id = student_id
        self.date = attendance_date
        self.school_year = self._validate_school_year(school_year)
        self._periods: Dict[int, PeriodAttendance] = self._validate_periods(list(periods))

        now = datetime.utcnow()
        self.created_at = created_at or now
        self.updated_at = updated_at or self.created_at

    @classmethod
    def from_period_statuses(
        cls,
        student_id: Union[StudentId, str],
        attendance_date: date,
        school_year: str,
        statuses: Mapping[int, Union[AttendanceStatus, str]]
    ) -> "AttendanceRecord":
        """Build a record from a ``{period: status}`` mapping covering periods 1-7."""
        for period in PERIOD_NUMBERS:
            if period not in statuses:
                raise DomainValidationError(
                    DomainErrorKind.MISSING_PERIOD,
                    f"No status given for period {period}"
                )
        try:
            periods = [PeriodAttendance(period, status) for period, status in statuses.items()]
        except ValueError as e:
            raise DomainValidationError(DomainErrorKind.INVALID_STATUS, f"Unknown attendance status: {e}")
        return cls(student_id, attendance_date, school_year, periods)

    @staticmethod
    def _validate_school_year(school_year: str) -> str:
        if not isinstance(school_year, str) or not _SCHOOL_YEAR_PATTERN.match(school_year):
            raise DomainValidationError(
                DomainErrorKind.INVALID_SCHOOL_YEAR_FORMAT,
                f"School year must look like YYYY-YYYY, got {school_year!r}"
            )
        return school_year

    @staticmethod
    def _validate_periods(periods: List[PeriodAttendance]) -> Dict[int, PeriodAttendance]:
        if not periods:
            raise DomainValidationError(DomainErrorKind.EMPTY_PERIOD_SET, "At least one period is required")

        by_number: Dict[int, PeriodAttendance] = {}
        for entry in periods:
            if entry.period not in PERIOD_NUMBERS:
                raise DomainValidationError(
                    DomainErrorKind.PERIOD_OUT_OF_RANGE,
                    f"Period {entry.period} is outside 1-{PERIODS_PER_DAY}"
                )
            if entry.period in by_number:
                raise DomainValidationError(
                    DomainErrorKind.DUPLICATE_PERIOD,
                    f"Period {entry.period} appears more than once"
                )
            by_number[entry.period] = entry

        if len(by_number) != PERIODS_PER_DAY:
            raise DomainValidationError(
                DomainErrorKind.INVALID_PERIOD_COUNT,
                f"Expected {PERIODS_PER_DAY} periods, got {len(by_number)}"
            )

        return dict(sorted(by_number.items()))

    @property
    def periods(self) -> Tuple[PeriodAttendance, ...]:
        return tuple(self._periods.values())

    def get_period_status(self, period: int) -> AttendanceStatus:
        if period not in PERIOD_NUMBERS:
            raise DomainValidationError(
                DomainErrorKind.INVALID_PERIOD_NUMBER,
                f"Period {period} is outside 1-{PERIODS_PER_DAY}"
            )
        return self._periods[period].status

    def update_period_attendance(self, period: int, status: Union[AttendanceStatus, str]) -> None:
        if isinstance(period, bool) or not isinstance(period, int) or period not in PERIOD_NUMBERS:
            raise DomainValidationError(
                DomainErrorKind.INVALID_PERIOD_NUMBER,
                f"Period {period} is outside 1-{PERIODS_PER_DAY}"
            )
        try:
            entry = PeriodAttendance(period, status)
        except ValueError:
            raise DomainValidationError(
                DomainErrorKind.INVALID_STATUS,
                f"Unknown attendance status {status!r} for period {period}"
            )
        self._periods[period] = entry
        self.updated_at = datetime.utcnow()

    def calculate_daily_attendance_percentage(self) -> AttendancePercentage:
        present = sum(1 for entry in self._periods.values() if entry.is_present)
        return AttendancePercentage.from_fraction(present, PERIODS_PER_DAY)

    def is_full_day_absent(self) -> bool:
        return all(entry.status is AttendanceStatus.ABSENT for entry in self._periods.values())

    def get_present_periods(self) -> List[int]:
        """Periods attended, tardy ones included."""
        return [number for number, entry in self._periods.items() if entry.is_present]

    def get_absent_periods(self) -> List[int]:
        return [number for number, entry in self._periods.items() if not entry.is_present]

    def get_tardy_periods(self) -> List[int]:
        return [number for number, entry in self._periods.items() if entry.status is AttendanceStatus.TARDY]

    @property
    def key(self) -> Tuple[str, date]:
        return (self.student_id.value, self.date)

    def __eq__(self, other) -> bool:
        if not isinstance(other, AttendanceRecord):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __repr__(self) -> str:
        statuses = "".join(entry.status.value[0] for entry in self._periods.values())
        return f"AttendanceRecord(student_id={self.student_id.value!r}, date={self.date.isoformat()}, periods={statuses})"
