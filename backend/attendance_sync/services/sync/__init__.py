"""
Attendance Synchronization Engine

Pulls period attendance from the upstream SIS into local storage.

Components:
- Record validation and sanitization
- Student matching and FERPA compliance gate
- Idempotent upsert keyed by student and date
- Checkpoint/resume for multi-chunk windows
- Dead-letter queue for units the upstream refused
- Progress and completion events
"""

from .attendance_sync import AttendanceSyncService, SyncUnit
from .data_validator import (
    AttendanceDataValidator,
    AttendanceValidationResult,
    build_attendance_record,
    derive_school_year
)
from .compliance_gate import (
    ComplianceGate,
    ComplianceDecision,
    AllowAllComplianceGate,
    BlockedStudentComplianceGate
)
from .checkpoint_store import CheckpointStore, SQLAlchemyCheckpointStore
from .repository import (
    AttendanceRepositoryProtocol,
    SQLAlchemyAttendanceRepository,
    apply_correction_window
)
from .dead_letter_queue import DeadLetterQueue, DeadLetterQueueFullError
from .events import SyncEvent, SyncEventBus

__all__ = [
    'AttendanceSyncService',
    'SyncUnit',
    'AttendanceDataValidator',
    'AttendanceValidationResult',
    'build_attendance_record',
    'derive_school_year',
    'ComplianceGate',
    'ComplianceDecision',
    'AllowAllComplianceGate',
    'BlockedStudentComplianceGate',
    'CheckpointStore',
    'SQLAlchemyCheckpointStore',
    'AttendanceRepositoryProtocol',
    'SQLAlchemyAttendanceRepository',
    'apply_correction_window',
    'DeadLetterQueue',
    'DeadLetterQueueFullError',
    'SyncEvent',
    'SyncEventBus'
]
