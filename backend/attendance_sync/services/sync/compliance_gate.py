"""
FERPA compliance gate consulted before student attendance is persisted.

Policy evaluation lives outside this service; the sync pipeline only needs a
pass/fail answer per record. A rejection is a record-level validation failure,
never a fatal run error.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


# Fields that identify a student or describe their educational record
PII_FIELDS = frozenset({"student_id", "attendance_date", "school_code"})


@dataclass(frozen=True)
class ComplianceDecision:
    allowed: bool
    reason: Optional[str] = None


@runtime_checkable
class ComplianceGate(Protocol):
    async def evaluate(self, record: Dict[str, Any]) -> ComplianceDecision:
        """Decide whether a sanitized attendance record may be persisted."""
        ...


class AllowAllComplianceGate:
    """Gate used when no external policy service is configured."""

    async def evaluate(self, record: Dict[str, Any]) -> ComplianceDecision:
        return ComplianceDecision(allowed=True)


class BlockedStudentComplianceGate:
    """
    Rejects records for students whose data may not be stored locally,
    e.g. after a records-release opt-out.
    """

    def __init__(self, blocked_student_ids: Iterable[str]):
        self.blocked_student_ids = frozenset(str(s) for s in blocked_student_ids)

    async def evaluate(self, record: Dict[str, Any]) -> ComplianceDecision:
        if str(record.get("student_id")) in self.blocked_student_ids:
            logger.info(f"Compliance gate blocked attendance for student {record.get('student_id')}")
            return ComplianceDecision(allowed=False, reason="student has opted out of records storage")
        return ComplianceDecision(allowed=True)


def touches_pii(record: Dict[str, Any]) -> bool:
    return any(record.get(name) is not None for name in PII_FIELDS)
