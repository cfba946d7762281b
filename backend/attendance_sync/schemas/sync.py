"""
Pydantic schemas for attendance sync configuration, upstream records and results.

Every model accepts both camelCase (as sent by the dashboard and the SIS) and
snake_case field names.
"""

import re
from datetime import date, datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


_ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class DateRangeConfig(CamelModel):
    start_date: date
    end_date: date

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def validate_iso_date(cls, v):
        if isinstance(v, date) and not isinstance(v, datetime):
            return v
        if not isinstance(v, str) or not _ISO_DATE.match(v):
            raise ValueError(f"must be a YYYY-MM-DD date, got {v!r}")
        try:
            return date.fromisoformat(v)
        except ValueError:
            raise ValueError(f"{v!r} is not a calendar date")

    @model_validator(mode="after")
    def validate_order(self):
        if self.start_date > self.end_date:
            raise ValueError("startDate must not be after endDate")
        return self


class RetrySettings(CamelModel):
    """Delays are in milliseconds."""
    max_retries: int = Field(default=3, ge=0, le=10)
    initial_delay: int = Field(default=1000, ge=0, le=60000)
    max_delay: int = Field(default=30000, ge=0, le=300000)
    backoff_multiplier: float = Field(default=2.0, ge=1, le=10)


class CircuitBreakerSettings(CamelModel):
    failure_threshold: int = Field(default=5, ge=1, le=50)
    reset_timeout: int = Field(default=60000, ge=0, le=3600000)  # ms
    half_open_requests: int = Field(default=1, ge=1, le=5)


class MonitoringSettings(CamelModel):
    enable_progress_tracking: bool = True
    progress_update_interval: int = Field(default=5000, ge=100, le=60000)  # ms
    enable_metrics: bool = True


class CorrectionWindowSettings(CamelModel):
    enabled: bool = True
    days: int = Field(default=7, ge=1, le=30)


class AttendanceSyncConfig(CamelModel):
    """Configuration for one attendance sync run."""
    date_range: DateRangeConfig
    schools: Optional[List[str]] = None
    batch_size: int = Field(default=500, ge=1, le=1000)
    chunk_days: int = Field(default=30, ge=1, le=90)
    parallel_batches: int = Field(default=3, ge=1, le=5)
    retry_config: RetrySettings = Field(default_factory=RetrySettings)
    circuit_breaker: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    correction_window: CorrectionWindowSettings = Field(default_factory=CorrectionWindowSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("schools")
    @classmethod
    def validate_schools(cls, v):
        if v is None:
            return v
        codes = [code.strip() for code in v if code and code.strip()]
        if not codes:
            raise ValueError("schools must contain at least one school code when given")
        return codes

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        json_schema_extra={
            "example": {
                "dateRange": {"startDate": "2024-08-15", "endDate": "2024-09-13"},
                "schools": ["001", "002"],
                "batchSize": 500,
                "chunkDays": 30,
                "parallelBatches": 3,
                "retryConfig": {"maxRetries": 3, "initialDelay": 1000, "maxDelay": 30000, "backoffMultiplier": 2},
                "circuitBreaker": {"failureThreshold": 5, "resetTimeout": 60000, "halfOpenRequests": 1},
                "monitoring": {"enableProgressTracking": True, "progressUpdateInterval": 5000, "enableMetrics": True}
            }
        }
    )


class RawAttendanceRecord(CamelModel):
    """
    A record as received from the upstream SIS.

    Nothing here is trusted: fields are kept loosely typed and only
    ``AttendanceDataValidator`` decides whether the record is usable.
    """
    student_id: Optional[Any] = None
    attendance_date: Optional[Any] = None
    school_code: Optional[Any] = None
    school_year: Optional[Any] = None
    daily_status: Optional[Any] = None
    periods: Optional[Any] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")


class SyncError(CamelModel):
    entity_key: str
    message: str


class SyncResultMetadata(CamelModel):
    operation_id: str
    circuit_breaker_state: str
    duration_ms: int
    cancelled: bool = False
    resumed_from_checkpoint: bool = False
    total_units: int = 0
    completed_units: int = 0
    skipped_units: int = 0
    dead_lettered_units: int = 0


class SyncResult(CamelModel):
    """Summary of one sync run. Immutable once returned."""
    success: bool
    records_processed: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    retry_attempts: int = 0
    errors: List[SyncError] = Field(default_factory=list)
    metadata: SyncResultMetadata

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


class ProgressUpdate(CamelModel):
    operation_id: str
    timestamp: datetime
    percentage: float
    records_processed: int
    units_completed: int
    total_units: int
    current_step: str
    throughput: float = 0.0  # records per second


class Checkpoint(CamelModel):
    id: int
    operation_id: str
    window_processed: str
    school_code: str
    chunk_days: int
    last_successful_batch_index: int
    records_processed: int = 0
    timestamp: datetime


class SyncFailureResponse(CamelModel):
    error: str
    school_code: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    attempts: int = 0
    result: Optional[SyncResult] = None


class DeadLetterEntry(CamelModel):
    school_code: str
    start_date: date
    end_date: date
    chunk_index: int
    reason: str
    error_type: str
    queued_at: datetime
    details: Dict[str, Any] = Field(default_factory=dict)
