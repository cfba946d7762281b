"""
Attendance Data Validation

Validates and sanitizes raw attendance records from the upstream SIS before
they become domain objects. Every applicable error is collected in a single
pass; one bad record never aborts the batch it arrived in.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic import ValidationError

from attendance_sync.domain.attendance_record import (
    PERIOD_NUMBERS,
    AttendanceRecord,
    AttendanceStatus,
)
from attendance_sync.schemas.sync import RawAttendanceRecord

logger = logging.getLogger(__name__)


_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_SCHOOL_YEAR = re.compile(r"^\d{4}-\d{4}$")
_ALPHANUMERIC = re.compile(r"^[A-Za-z0-9]+$")

# School years roll over in August
SCHOOL_YEAR_START_MONTH = 8


@dataclass
class AttendanceValidationResult:
    """Result of validating one raw record."""
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    sanitized_record: Optional[Dict[str, Any]] = None


def derive_school_year(day: date) -> str:
    """School year containing ``day``, e.g. 2024-08-15 -> "2024-2025"."""
    start = day.year if day.month >= SCHOOL_YEAR_START_MONTH else day.year - 1
    return f"{start}-{start + 1}"


def _describe_schema_error(error: Mapping[str, Any]) -> str:
    location = ".".join(str(part) for part in error.get("loc", ())) or "record"
    return f"{location}: {error.get('msg', 'invalid value')}"


def build_attendance_record(sanitized: Mapping[str, Any]) -> AttendanceRecord:
    """Construct the domain record from a sanitized record."""
    statuses = {n: sanitized[f"period_{n}_status"] for n in PERIOD_NUMBERS}
    return AttendanceRecord.from_period_statuses(
        sanitized["student_id"],
        sanitized["attendance_date"],
        sanitized["school_year"],
        statuses
    )


class AttendanceDataValidator:
    """
    Validator for upstream attendance records.

    Stateless: ``validate`` is a pure function of the record it is given
    (apart from the sync timestamp stamped on the sanitized output).
    """

    def validate(self, raw: Union[RawAttendanceRecord, Mapping[str, Any]]) -> AttendanceValidationResult:
        if isinstance(raw, RawAttendanceRecord):
            record = raw
        elif isinstance(raw, Mapping):
            try:
                record = RawAttendanceRecord.model_validate(dict(raw))
            except ValidationError as e:
                return AttendanceValidationResult(
                    is_valid=False,
                    errors=[_describe_schema_error(error) for error in e.errors(include_url=False)]
                )
        else:
            return AttendanceValidationResult(
                is_valid=False,
                errors=[f"Record must be an object, got {type(raw).__name__}"]
            )

        errors: List[str] = []

        student_id = self._validate_student_id(record.student_id, errors)
        attendance_date = self._validate_attendance_date(record.attendance_date, errors)
        school_code = self._validate_school_code(record.school_code, errors)
        school_year = self._validate_school_year(record.school_year, attendance_date, errors)
        daily_status = self._normalize_daily_status(record.daily_status)
        period_statuses = self._validate_periods(record.periods, errors)

        if errors:
            return AttendanceValidationResult(is_valid=False, errors=errors)

        if period_statuses is None:
            # No period detail: every period follows the daily status
            fill = AttendanceStatus.ABSENT if daily_status == "ABSENT" else AttendanceStatus.PRESENT
            periods = {n: fill for n in PERIOD_NUMBERS}
            tardy_count = 1 if daily_status == "TARDY" else 0
        else:
            periods = {n: period_statuses.get(n, AttendanceStatus.PRESENT) for n in PERIOD_NUMBERS}
            tardy_count = sum(1 for status in periods.values() if status is AttendanceStatus.TARDY)

        sanitized: Dict[str, Any] = {
            "student_id": student_id,
            "attendance_date": attendance_date,
            "school_code": school_code,
            "school_year": school_year,
            "is_present": self._derive_presence(daily_status, period_statuses),
            "is_full_day_absent": all(status is AttendanceStatus.ABSENT for status in periods.values()),
            "tardy_count": tardy_count,
            "days_enrolled": 1.0,
            "sync_timestamp": datetime.utcnow(),
        }
        for number, status in periods.items():
            sanitized[f"period_{number}_status"] = status.value

        return AttendanceValidationResult(is_valid=True, errors=[], sanitized_record=sanitized)

    @staticmethod
    def _validate_student_id(value: Any, errors: List[str]) -> Optional[str]:
        text = str(value).strip() if value is not None else ""
        if not text:
            errors.append("studentId is required")
            return None
        if not _ALPHANUMERIC.match(text):
            errors.append(f"studentId must be alphanumeric, got {text!r}")
            return None
        return text

    @staticmethod
    def _validate_attendance_date(value: Any, errors: List[str]) -> Optional[date]:
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append("attendanceDate is required")
            return None
        if not isinstance(value, str) or not _ISO_DATE.match(value):
            errors.append(f"attendanceDate must be in YYYY-MM-DD format, got {value!r}")
            return None
        try:
            return date.fromisoformat(value)
        except ValueError:
            errors.append(f"attendanceDate is not a valid calendar date: {value!r}")
            return None

    @staticmethod
    def _validate_school_code(value: Any, errors: List[str]) -> Optional[str]:
        text = str(value).strip() if value is not None else ""
        if not text:
            errors.append("schoolCode is required")
            return None
        return text

    @staticmethod
    def _validate_school_year(value: Any, attendance_date: Optional[date], errors: List[str]) -> Optional[str]:
        if value is None or value == "":
            return derive_school_year(attendance_date) if attendance_date else None
        if not isinstance(value, str) or not _SCHOOL_YEAR.match(value):
            errors.append(f"schoolYear must be in YYYY-YYYY format, got {value!r}")
            return None
        return value

    @staticmethod
    def _normalize_daily_status(value: Any) -> Optional[str]:
        if value is None:
            return None
        text = str(value).strip().upper()
        return text or None

    @staticmethod
    def _validate_periods(value: Any, errors: List[str]) -> Optional[Dict[int, AttendanceStatus]]:
        """Parse per-period data. Returns None when the record carries none."""
        if value is None:
            return None
        if not isinstance(value, list):
            errors.append("periods must be a list")
            return None
        if not value:
            return None

        statuses: Dict[int, AttendanceStatus] = {}
        for index, entry in enumerate(value):
            if not isinstance(entry, Mapping):
                errors.append(f"periods[{index}] must be an object")
                continue

            period = entry.get("period")
            if isinstance(period, float) and period.is_integer():
                period = int(period)
            if isinstance(period, bool) or not isinstance(period, int):
                try:
                    period = int(str(period))
                except ValueError:
                    errors.append(f"periods[{index}].period must be a whole number, got {entry.get('period')!r}")
                    continue

            if period not in PERIOD_NUMBERS:
                errors.append(f"period {period} is outside 1-{len(PERIOD_NUMBERS)}")
                continue
            if period in statuses:
                errors.append(f"period {period} appears more than once")
                continue

            raw_status = str(entry.get("status", "")).strip().upper()
            try:
                statuses[period] = AttendanceStatus(raw_status)
            except ValueError:
                errors.append(f"period {period} has unknown status {entry.get('status')!r}")

        return statuses

    @staticmethod
    def _derive_presence(daily_status: Optional[str], period_statuses: Optional[Dict[int, AttendanceStatus]]) -> bool:
        if daily_status is not None:
            return daily_status != "ABSENT"
        if period_statuses:
            return any(status.counts_as_present for status in period_statuses.values())
        return True
