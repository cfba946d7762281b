"""
Value objects for the attendance domain.
"""
import math
import re
from typing import Union


_ALPHANUMERIC = re.compile(r"^[A-Za-z0-9]+$")


class StudentId:
    """Validated student identifier. Compared and hashed by value."""

    __slots__ = ("_value",)

    def __init__(self, value: Union[str, int]):
        if value is None:
            raise ValueError("Student ID must not be empty")

        normalized = str(value).strip()
        if not normalized:
            raise ValueError("Student ID must not be empty")
        if not _ALPHANUMERIC.match(normalized):
            raise ValueError(f"Student ID must be alphanumeric: {normalized!r}")

        self._value = normalized

    @property
    def value(self) -> str:
        return self._value

    def __eq__(self, other) -> bool:
        if not isinstance(other, StudentId):
            return NotImplemented
        return self._value == other._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"StudentId({self._value!r})"


class AttendancePercentage:
    """A percentage in [0, 100]. No rounding is applied to the stored value."""

    __slots__ = ("_value",)

    PERFECT: "AttendancePercentage"
    ZERO: "AttendancePercentage"

    def __init__(self, value: float):
        if value is None or isinstance(value, bool):
            raise ValueError("Attendance percentage must be a number")

        value = float(value)
        if math.isnan(value):
            raise ValueError("Attendance percentage must not be NaN")
        if value < 0 or value > 100:
            raise ValueError(f"Attendance percentage must be between 0 and 100, got {value}")

        self._value = value

    @classmethod
    def from_fraction(cls, numerator: int, denominator: int) -> "AttendancePercentage":
        """Build from ``numerator / denominator * 100``."""
        if denominator <= 0:
            raise ValueError("Denominator must be positive")
        if numerator < 0:
            raise ValueError("Numerator must not be negative")
        if numerator > denominator:
            raise ValueError("Numerator must not exceed denominator")
        return cls(numerator / denominator * 100)

    @property
    def value(self) -> float:
        return self._value

    def is_above_threshold(self, threshold: float) -> bool:
        return self._value >= threshold

    def __eq__(self, other) -> bool:
        if not isinstance(other, AttendancePercentage):
            return NotImplemented
        return self._value == other._value

    def __lt__(self, other: "AttendancePercentage") -> bool:
        return self._value < other._value

    def __hash__(self) -> int:
        return hash(self._value)

    def __float__(self) -> float:
        return self._value

    def __str__(self) -> str:
        return f"{self._value:.2f}%"

    def __repr__(self) -> str:
        return f"AttendancePercentage({self._value!r})"


AttendancePercentage.PERFECT = AttendancePercentage(100)
AttendancePercentage.ZERO = AttendancePercentage(0)
