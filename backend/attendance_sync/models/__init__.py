from .student import Student
from .attendance import DailyAttendance
from .sync_metadata import SyncCheckpointRecord

__all__ = [
    "Student",
    "DailyAttendance",
    "SyncCheckpointRecord",
]
