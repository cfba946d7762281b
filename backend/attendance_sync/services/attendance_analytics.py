"""
Per-student attendance statistics computed from period-level records.
"""
from collections import Counter
from dataclasses import dataclass
from datetime import date
from typing import Iterable, List, Optional

from attendance_sync.domain.attendance_record import (
    PERIODS_PER_DAY,
    AttendanceRecord,
    AttendanceStatus,
)
from attendance_sync.domain.value_objects import AttendancePercentage
from attendance_sync.models.attendance import DailyAttendance


CHRONIC_ABSENCE_THRESHOLD = 90.0


@dataclass
class AttendanceStatistics:
    total_days: int
    present_periods: int
    absent_periods: int
    tardy_periods: int
    attendance_percentage: AttendancePercentage
    full_day_absences: int
    longest_absence_streak: int
    most_absent_period: Optional[int]
    first_date: Optional[date] = None
    last_date: Optional[date] = None


def summarize_attendance(records: Iterable[AttendanceRecord]) -> AttendanceStatistics:
    """
    Aggregate records for one student.

    Tardy periods count as present. The absence streak counts consecutive
    full-day absences across the records in date order.
    """
    ordered = sorted(records, key=lambda r: r.date)
    if not ordered:
        return AttendanceStatistics(
            total_days=0,
            present_periods=0,
            absent_periods=0,
            tardy_periods=0,
            attendance_percentage=AttendancePercentage.PERFECT,
            full_day_absences=0,
            longest_absence_streak=0,
            most_absent_period=None
        )

    present = absent = tardy = full_days = 0
    streak = longest = 0
    absences_by_period: Counter = Counter()

    for record in ordered:
        present_periods = record.get_present_periods()
        absent_periods = record.get_absent_periods()
        present += len(present_periods)
        absent += len(absent_periods)
        tardy += len(record.get_tardy_periods())
        absences_by_period.update(absent_periods)

        if record.is_full_day_absent():
            full_days += 1
            streak += 1
            longest = max(longest, streak)
        else:
            streak = 0

    most_absent = None
    if absences_by_period:
        # Lowest period number wins a tie
        most_absent = min(absences_by_period, key=lambda p: (-absences_by_period[p], p))

    return AttendanceStatistics(
        total_days=len(ordered),
        present_periods=present,
        absent_periods=absent,
        tardy_periods=tardy,
        attendance_percentage=AttendancePercentage.from_fraction(present, len(ordered) * PERIODS_PER_DAY),
        full_day_absences=full_days,
        longest_absence_streak=longest,
        most_absent_period=most_absent,
        first_date=ordered[0].date,
        last_date=ordered[-1].date
    )


def is_chronically_absent(records: Iterable[AttendanceRecord], threshold: float = CHRONIC_ABSENCE_THRESHOLD) -> bool:
    """True when period attendance falls below ``threshold`` percent."""
    stats = summarize_attendance(records)
    if stats.total_days == 0:
        return False
    return not stats.attendance_percentage.is_above_threshold(threshold)


def records_from_rows(rows: Iterable[DailyAttendance]) -> List[AttendanceRecord]:
    """Rebuild domain records from stored daily attendance rows."""
    return [
        AttendanceRecord.from_period_statuses(
            row.student_id,
            row.attendance_date,
            row.school_year,
            {n: AttendanceStatus(status) for n, status in row.period_statuses().items()}
        )
        for row in rows
    ]
