"""Attendance reconciliation engine: period-based attendance sync from the district SIS."""

__version__ = "1.0.0"
