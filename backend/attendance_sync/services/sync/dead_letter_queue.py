"""
Dead-letter queue for sync units that could not be fetched.

Units land here when the circuit was open or the upstream reported a
persistent error. They are kept for an operator (or a later run) to replay.
"""

import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from attendance_sync.domain.sync_window import DateRange
from attendance_sync.schemas.sync import DeadLetterEntry

logger = logging.getLogger(__name__)


class DeadLetterQueueFullError(Exception):
    """Raised when the queue is at capacity."""

    def __init__(self, max_size: int):
        super().__init__(f"Dead-letter queue is full ({max_size} entries)")
        self.max_size = max_size


@dataclass
class DeadLetterMetrics:
    total_added: int = 0
    total_drained: int = 0
    total_rejected: int = 0


class DeadLetterQueue:
    """Bounded in-memory FIFO of failed sync units."""

    def __init__(self, max_size: int = 1000):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._entries: Deque[DeadLetterEntry] = deque()
        self.metrics = DeadLetterMetrics()

    def add(
        self,
        school_code: str,
        date_range: DateRange,
        chunk_index: int,
        error: BaseException,
        details: Optional[Dict[str, Any]] = None
    ) -> DeadLetterEntry:
        if len(self._entries) >= self.max_size:
            self.metrics.total_rejected += 1
            raise DeadLetterQueueFullError(self.max_size)

        entry = DeadLetterEntry(
            school_code=school_code,
            start_date=date_range.start_date,
            end_date=date_range.end_date,
            chunk_index=chunk_index,
            reason=str(error),
            error_type=type(error).__name__,
            queued_at=datetime.utcnow(),
            details=details or {}
        )
        self._entries.append(entry)
        self.metrics.total_added += 1

        logger.warning(
            f"Dead-lettered school {school_code} {date_range} (chunk {chunk_index}): {entry.error_type}"
        )
        return entry

    def pending(self) -> List[DeadLetterEntry]:
        """Entries currently queued, oldest first."""
        return list(self._entries)

    def drain(self, limit: Optional[int] = None) -> List[DeadLetterEntry]:
        """Remove and return up to ``limit`` entries, oldest first."""
        count = len(self._entries) if limit is None else min(limit, len(self._entries))
        drained = [self._entries.popleft() for _ in range(count)]
        self.metrics.total_drained += len(drained)
        return drained

    def stats(self) -> Dict[str, Any]:
        by_error: Dict[str, int] = {}
        for entry in self._entries:
            by_error[entry.error_type] = by_error.get(entry.error_type, 0) + 1

        return {
            'size': len(self._entries),
            'max_size': self.max_size,
            'total_added': self.metrics.total_added,
            'total_drained': self.metrics.total_drained,
            'total_rejected': self.metrics.total_rejected,
            'by_error_type': by_error,
        }

    def __len__(self) -> int:
        return len(self._entries)
