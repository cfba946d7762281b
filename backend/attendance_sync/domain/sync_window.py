"""
Date windows requested from the upstream SIS.
"""
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import FrozenSet, Iterable, List


@dataclass(frozen=True)
class DateRange:
    """Inclusive calendar date range."""
    start_date: date
    end_date: date

    def __post_init__(self):
        if self.start_date > self.end_date:
            raise ValueError(
                f"start_date {self.start_date.isoformat()} is after end_date {self.end_date.isoformat()}"
            )

    @property
    def days(self) -> int:
        return (self.end_date - self.start_date).days + 1

    def split(self, chunk_days: int) -> List["DateRange"]:
        """Consecutive sub-ranges of at most ``chunk_days`` days, in date order."""
        if chunk_days < 1:
            raise ValueError("chunk_days must be at least 1")

        chunks = []
        cursor = self.start_date
        while cursor <= self.end_date:
            chunk_end = min(cursor + timedelta(days=chunk_days - 1), self.end_date)
            chunks.append(DateRange(cursor, chunk_end))
            cursor = chunk_end + timedelta(days=1)
        return chunks

    def __contains__(self, day: date) -> bool:
        return self.start_date <= day <= self.end_date

    def __str__(self) -> str:
        return f"{self.start_date.isoformat()}..{self.end_date.isoformat()}"


@dataclass(frozen=True)
class SyncWindow:
    """The dates and schools one sync run covers."""
    date_range: DateRange
    school_codes: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def create(cls, start_date: date, end_date: date, school_codes: Iterable[str]) -> "SyncWindow":
        return cls(DateRange(start_date, end_date), frozenset(school_codes))

    @property
    def start_date(self) -> date:
        return self.date_range.start_date

    @property
    def end_date(self) -> date:
        return self.date_range.end_date

    def chunks(self, chunk_days: int) -> List[DateRange]:
        return self.date_range.split(chunk_days)

    @property
    def key(self) -> str:
        """Stable identifier used to look up checkpoints for this date range."""
        return f"{self.start_date.isoformat()}_{self.end_date.isoformat()}"
