"""
Attendance Sync Service

Drives one synchronization run from the upstream SIS into local storage:
- Splits the date window into day-chunks, one unit of work per chunk per school
- Fetches pages through circuit breaker -> retry policy -> SIS client
- Validates each record, matches it to a locally enrolled student and upserts it
- Writes a checkpoint once every chunk up to an index has been committed
- Publishes progress and completion events
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import ValidationError

from attendance_sync.core.circuit_breaker import CircuitBreaker, CircuitOpenError
from attendance_sync.core.retry_policy import RetryConfig, RetryPolicy
from attendance_sync.domain.attendance_record import DomainValidationError
from attendance_sync.domain.sync_window import DateRange, SyncWindow
from attendance_sync.integrations.sis.client import SISClientProtocol
from attendance_sync.integrations.sis.error_handler import (
    ConfigurationError,
    RepositoryError,
    SISError,
    SISErrorHandler,
    SyncExecutionError,
    global_error_handler,
    is_retryable_error,
)
from attendance_sync.schemas.sync import (
    AttendanceSyncConfig,
    ProgressUpdate,
    SyncError,
    SyncResult,
    SyncResultMetadata,
)
from attendance_sync.services.sync.checkpoint_store import CheckpointStore
from attendance_sync.services.sync.compliance_gate import (
    AllowAllComplianceGate,
    ComplianceGate,
    touches_pii,
)
from attendance_sync.services.sync.data_validator import (
    AttendanceDataValidator,
    build_attendance_record,
)
from attendance_sync.services.sync.dead_letter_queue import DeadLetterQueue, DeadLetterQueueFullError
from attendance_sync.services.sync.events import SyncEvent, SyncEventBus
from attendance_sync.services.sync.repository import AttendanceRepositoryProtocol, apply_correction_window

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncUnit:
    """One day-chunk for one school."""
    school_code: str
    chunk_index: int
    date_range: DateRange

    @property
    def key(self) -> str:
        return f"{self.school_code}:{self.date_range}"


@dataclass
class _FatalFailure:
    unit: SyncUnit
    error: BaseException
    attempts: int


@dataclass
class _RunState:
    """Mutable counters for the run in progress."""
    operation_id: str
    started_at: float
    total_units: int = 0
    completed_units: int = 0
    skipped_units: int = 0
    cancelled_units: int = 0
    dead_lettered_units: int = 0
    records_processed: int = 0
    records_skipped: int = 0
    records_failed: int = 0
    retry_attempts: int = 0
    errors: List[SyncError] = field(default_factory=list)
    fatal_failures: List[_FatalFailure] = field(default_factory=list)
    current_step: str = "starting"


class _CheckpointTracker:
    """
    Tracks committed chunks for one school and reports the contiguous
    high-water mark, so out-of-order completion never over-claims progress.
    """

    def __init__(self, watermark: int = -1):
        self.watermark = watermark
        self._completed: Set[int] = set()
        self.lock = asyncio.Lock()

    def complete(self, chunk_index: int) -> bool:
        """Mark a chunk committed. Returns True when the watermark moved."""
        self._completed.add(chunk_index)
        moved = False
        while self.watermark + 1 in self._completed:
            self.watermark += 1
            self._completed.discard(self.watermark)
            moved = True
        return moved


class AttendanceSyncService:
    """
    Orchestrates attendance sync runs.

    Collaborators are injected so each instance (and each test) owns its own
    client, storage and, unless one is passed in, its own circuit breaker.
    """

    def __init__(
        self,
        config: Union[AttendanceSyncConfig, Mapping[str, Any]],
        sis_client: SISClientProtocol,
        repository: AttendanceRepositoryProtocol,
        checkpoint_store: CheckpointStore,
        validator: Optional[AttendanceDataValidator] = None,
        compliance_gate: Optional[ComplianceGate] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        event_bus: Optional[SyncEventBus] = None,
        dead_letter_queue: Optional[DeadLetterQueue] = None,
        error_handler: Optional[SISErrorHandler] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        self.config = self._validate_config(config)

        self.sis_client = sis_client
        self.repository = repository
        self.checkpoint_store = checkpoint_store
        self.validator = validator or AttendanceDataValidator()
        self.compliance_gate = compliance_gate or AllowAllComplianceGate()
        self.events = event_bus or SyncEventBus()
        self.dead_letter_queue = dead_letter_queue or DeadLetterQueue()
        self.error_handler = error_handler or global_error_handler

        breaker_config = self.config.circuit_breaker
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=breaker_config.failure_threshold,
            recovery_timeout=breaker_config.reset_timeout / 1000.0,
            success_threshold=breaker_config.half_open_requests,
            name="sis_attendance"
        )

        retry_config = self.config.retry_config
        self.retry_policy = RetryPolicy(
            RetryConfig.from_milliseconds(
                max_retries=retry_config.max_retries,
                initial_delay_ms=retry_config.initial_delay,
                max_delay_ms=retry_config.max_delay,
                backoff_multiplier=retry_config.backoff_multiplier
            ),
            should_retry=is_retryable_error,
            on_retry=self._on_retry,
            sleep=sleep
        )

        self.metrics: Dict[str, Any] = {}
        self._initialized = False
        self._running = False
        self._cancel_event = asyncio.Event()
        self._state: Optional[_RunState] = None
        self._student_cache: Dict[Tuple[str, str], Set[str]] = {}

    @staticmethod
    def _validate_config(config: Union[AttendanceSyncConfig, Mapping[str, Any]]) -> AttendanceSyncConfig:
        if isinstance(config, AttendanceSyncConfig):
            return config
        try:
            return AttendanceSyncConfig.model_validate(config)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid attendance sync configuration: {e.error_count()} error(s)",
                details={'errors': e.errors(include_url=False, include_context=False, include_input=False)},
                original_exception=e
            )

    def on(self, event: str, handler: Callable[..., Any]) -> Callable[[], None]:
        """Subscribe to ``initialized``, ``progress`` or ``completed``."""
        return self.events.on(event, handler)

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._initialized = True
        logger.info(
            f"Attendance sync initialized for {self.config.date_range.start_date.isoformat()}"
            f"..{self.config.date_range.end_date.isoformat()}"
        )
        await self.events.emit(SyncEvent.INITIALIZED)

    def cancel(self) -> None:
        """
        Stop scheduling new units of work. Units already running finish normally.

        A request made before ``execute_sync`` applies to the next run.
        """
        if self._running:
            logger.warning("Attendance sync cancellation requested")
        self._cancel_event.set()

    @property
    def is_running(self) -> bool:
        return self._running

    async def resume_from_checkpoint(self) -> SyncResult:
        """Re-run the window, skipping chunks a previous run already committed."""
        return await self.execute_sync(resume=True)

    async def execute_sync(self, resume: bool = False) -> SyncResult:
        """
        Run one sync over the configured window.

        Returns:
            The run summary

        Raises:
            ConfigurationError: When no school codes can be determined
            SyncExecutionError: When a unit of work failed fatally (retries
                exhausted or local persistence failed). Raised after every
                other unit has been attempted; carries the partial result.
        """
        if self._running:
            raise RuntimeError("An attendance sync is already running on this service")

        await self.initialize()

        self._running = True
        self._student_cache = {}
        state = _RunState(operation_id=str(uuid.uuid4()), started_at=time.monotonic())
        self._state = state
        progress_task: Optional[asyncio.Task] = None

        try:
            try:
                window = SyncWindow.create(
                    self.config.date_range.start_date,
                    self.config.date_range.end_date,
                    await self._resolve_school_codes()
                )
                units, trackers = await self._plan_units(window, resume)
            except RepositoryError as e:
                self.error_handler.log_error(e)
                raise SyncExecutionError(
                    f"Could not plan attendance sync: {e}",
                    start_date=self.config.date_range.start_date.isoformat(),
                    end_date=self.config.date_range.end_date.isoformat(),
                    attempts=1,
                    original_exception=e
                ) from e
            state.total_units = len(units)

            logger.info(
                f"Attendance sync {state.operation_id} started: {len(window.school_codes)} school(s), "
                f"{len(units)} unit(s), window {window.date_range}"
            )

            if self.config.monitoring.enable_progress_tracking:
                progress_task = asyncio.create_task(self._progress_loop(state))

            semaphore = asyncio.Semaphore(self.config.parallel_batches)
            await asyncio.gather(*(
                self._run_unit(unit, semaphore, trackers[unit.school_code], window, state)
                for unit in units
            ))

        finally:
            if progress_task is not None:
                progress_task.cancel()
                try:
                    await progress_task
                except asyncio.CancelledError:
                    pass
            self._running = False
            cancelled = self._cancel_event.is_set()
            self._cancel_event.clear()

        state.current_step = "cancelled" if cancelled else "completed"
        if self.config.monitoring.enable_progress_tracking:
            await self.events.emit(SyncEvent.PROGRESS, self._progress_snapshot(state))

        result = self._build_result(state, cancelled, resume)
        self._record_metrics(state, result)

        logger.info(
            f"Attendance sync {state.operation_id} finished: success={result.success} "
            f"processed={result.records_processed} skipped={result.records_skipped} "
            f"failed={result.records_failed} retries={result.retry_attempts} "
            f"circuit={result.metadata.circuit_breaker_state}"
        )
        await self.events.emit(SyncEvent.COMPLETED, result)

        if state.fatal_failures:
            first = state.fatal_failures[0]
            logger.error(
                f"Attendance sync {state.operation_id} failed: {len(state.fatal_failures)} fatal unit(s), "
                f"first {first.unit.key} after {first.attempts} attempt(s): {first.error}"
            )
            raise SyncExecutionError(
                f"Sync failed for school {first.unit.school_code} {first.unit.date_range}: {first.error}",
                school_code=first.unit.school_code,
                start_date=first.unit.date_range.start_date.isoformat(),
                end_date=first.unit.date_range.end_date.isoformat(),
                attempts=first.attempts,
                result=result,
                original_exception=first.error if isinstance(first.error, Exception) else None
            ) from first.error

        return result

    async def _resolve_school_codes(self) -> List[str]:
        if self.config.schools:
            return list(dict.fromkeys(self.config.schools))

        codes = await self.repository.list_active_school_codes()
        if not codes:
            raise ConfigurationError("No school codes configured and no active schools found")
        return codes

    async def _plan_units(
        self,
        window: SyncWindow,
        resume: bool
    ) -> Tuple[List[SyncUnit], Dict[str, _CheckpointTracker]]:
        chunks = window.chunks(self.config.chunk_days)
        units: List[SyncUnit] = []
        trackers: Dict[str, _CheckpointTracker] = {}

        for school_code in sorted(window.school_codes):
            watermark = -1
            if resume:
                checkpoint = await self.checkpoint_store.load_latest_checkpoint(
                    window.key, school_code, self.config.chunk_days
                )
                if checkpoint is not None:
                    watermark = checkpoint.last_successful_batch_index
                    logger.info(
                        f"Resuming school {school_code} after chunk {watermark} "
                        f"(checkpoint {checkpoint.id})"
                    )

            trackers[school_code] = _CheckpointTracker(watermark)
            units.extend(
                SyncUnit(school_code, index, chunk)
                for index, chunk in enumerate(chunks)
                if index > watermark
            )

        return units, trackers

    async def _run_unit(
        self,
        unit: SyncUnit,
        semaphore: asyncio.Semaphore,
        tracker: _CheckpointTracker,
        window: SyncWindow,
        state: _RunState
    ) -> None:
        async with semaphore:
            if self._cancel_event.is_set():
                state.cancelled_units += 1
                return

            state.current_step = f"syncing {unit.key}"
            try:
                await self._process_unit(unit, state)
                async with tracker.lock:
                    if tracker.complete(unit.chunk_index):
                        await self.checkpoint_store.save_checkpoint(
                            operation_id=state.operation_id,
                            window_key=window.key,
                            school_code=unit.school_code,
                            chunk_days=self.config.chunk_days,
                            last_successful_batch_index=tracker.watermark,
                            records_processed=state.records_processed
                        )
                state.completed_units += 1

            except CircuitOpenError as e:
                logger.warning(f"Circuit open, skipping {unit.key}")
                self._skip_unit(unit, e, state)

            except RepositoryError as e:
                self._fail_unit(unit, e, state)

            except SISError as e:
                if is_retryable_error(e):
                    self._fail_unit(unit, e, state)
                else:
                    logger.warning(f"Persistent upstream error, skipping {unit.key}: {e}")
                    self._skip_unit(unit, e, state)

            except Exception as e:
                self._fail_unit(unit, e, state)

    async def _process_unit(self, unit: SyncUnit, state: _RunState) -> None:
        batch_size = self.config.batch_size
        offset = 0

        while True:
            page = await self._fetch_page(unit, offset)
            await self._process_page(unit, page, state)
            if len(page) < batch_size:
                break
            offset += batch_size

    async def _fetch_page(self, unit: SyncUnit, offset: int) -> List[Dict[str, Any]]:
        """One logical upstream call: breaker outside, retries inside."""

        async def fetch():
            return await self.sis_client.fetch_attendance_batch(
                unit.school_code,
                unit.date_range,
                offset=offset,
                limit=self.config.batch_size
            )

        return await self.circuit_breaker.execute(lambda: self.retry_policy.execute(fetch))

    async def _process_page(self, unit: SyncUnit, page: List[Any], state: _RunState) -> None:
        accepted: List[Dict[str, Any]] = []

        for raw in page:
            result = self.validator.validate(raw)
            if not result.is_valid:
                self._record_failure(state, _record_key(raw), "; ".join(result.errors))
                continue

            record = result.sanitized_record
            known_students = await self._known_students(record["school_code"], record["school_year"])
            if record["student_id"] not in known_students:
                state.records_skipped += 1
                logger.debug(f"Skipping attendance for unknown student {record['student_id']} at {record['school_code']}")
                continue

            try:
                build_attendance_record(record)
            except DomainValidationError as e:
                self._record_failure(state, _record_key(raw), f"{e.kind.value}: {e.message}")
                continue

            if touches_pii(record):
                decision = await self.compliance_gate.evaluate(record)
                if not decision.allowed:
                    self._record_failure(
                        state, _record_key(raw), f"Rejected by compliance gate: {decision.reason or 'no reason given'}"
                    )
                    continue

            correction = self.config.correction_window
            accepted.append(apply_correction_window(record, correction.enabled, correction.days))

        if accepted:
            await self.repository.upsert_attendance_records(accepted)
            state.records_processed += len(accepted)

    async def _known_students(self, school_code: str, school_year: str) -> Set[str]:
        key = (school_code, school_year)
        if key not in self._student_cache:
            self._student_cache[key] = set(
                await self.repository.find_students_by_school_and_year(school_code, school_year)
            )
        return self._student_cache[key]

    def _on_retry(self, attempt: int, error: BaseException, delay: float) -> None:
        if self._state is not None:
            self._state.retry_attempts += 1

    @staticmethod
    def _record_failure(state: _RunState, entity_key: str, message: str) -> None:
        state.records_failed += 1
        state.errors.append(SyncError(entity_key=entity_key, message=message))

    def _unit_context(self, unit: SyncUnit) -> Dict[str, Any]:
        return {
            'school_code': unit.school_code,
            'start_date': unit.date_range.start_date.isoformat(),
            'end_date': unit.date_range.end_date.isoformat(),
            'chunk_index': unit.chunk_index,
        }

    def _skip_unit(self, unit: SyncUnit, error: BaseException, state: _RunState) -> None:
        state.skipped_units += 1
        state.errors.append(SyncError(entity_key=unit.key, message=f"{type(error).__name__}: {error}"))
        self.error_handler.log_error(error, self._unit_context(unit))

        try:
            self.dead_letter_queue.add(
                unit.school_code,
                unit.date_range,
                unit.chunk_index,
                error,
                details={'operation_id': state.operation_id}
            )
            state.dead_lettered_units += 1
        except DeadLetterQueueFullError as e:
            logger.error(f"Could not dead-letter {unit.key}: {e}")

    def _fail_unit(self, unit: SyncUnit, error: BaseException, state: _RunState) -> None:
        attempts = getattr(error, "attempts", 1)
        state.fatal_failures.append(_FatalFailure(unit, error, attempts))
        state.errors.append(SyncError(entity_key=unit.key, message=f"{type(error).__name__}: {error}"))
        self.error_handler.log_error(error, {**self._unit_context(unit), 'attempts': attempts})

    def _progress_snapshot(self, state: _RunState) -> ProgressUpdate:
        elapsed = max(time.monotonic() - state.started_at, 1e-9)
        if state.total_units:
            finished = state.completed_units + state.skipped_units + len(state.fatal_failures)
            percentage = finished / state.total_units * 100
        else:
            percentage = 100.0

        return ProgressUpdate(
            operation_id=state.operation_id,
            timestamp=datetime.utcnow(),
            percentage=round(percentage, 2),
            records_processed=state.records_processed,
            units_completed=state.completed_units,
            total_units=state.total_units,
            current_step=state.current_step,
            throughput=round(state.records_processed / elapsed, 2)
        )

    async def _progress_loop(self, state: _RunState) -> None:
        interval = self.config.monitoring.progress_update_interval / 1000.0
        while True:
            await asyncio.sleep(interval)
            await self.events.emit(SyncEvent.PROGRESS, self._progress_snapshot(state))

    def _build_result(self, state: _RunState, cancelled: bool, resumed: bool) -> SyncResult:
        return SyncResult(
            success=not cancelled and state.skipped_units == 0 and not state.fatal_failures,
            records_processed=state.records_processed,
            records_skipped=state.records_skipped,
            records_failed=state.records_failed,
            retry_attempts=state.retry_attempts,
            errors=list(state.errors),
            metadata=SyncResultMetadata(
                operation_id=state.operation_id,
                circuit_breaker_state=self.circuit_breaker.state.value,
                duration_ms=int((time.monotonic() - state.started_at) * 1000),
                cancelled=cancelled,
                resumed_from_checkpoint=resumed,
                total_units=state.total_units,
                completed_units=state.completed_units,
                skipped_units=state.skipped_units,
                dead_lettered_units=state.dead_lettered_units
            )
        )

    def _record_metrics(self, state: _RunState, result: SyncResult) -> None:
        if not self.config.monitoring.enable_metrics:
            return

        duration_seconds = max(result.metadata.duration_ms / 1000.0, 1e-9)
        self.metrics = {
            'operation_id': state.operation_id,
            'duration_ms': result.metadata.duration_ms,
            'records_per_second': round(result.records_processed / duration_seconds, 2),
            'units': {
                'total': state.total_units,
                'completed': state.completed_units,
                'skipped': state.skipped_units,
                'cancelled': state.cancelled_units,
                'fatal': len(state.fatal_failures),
            },
            'circuit_breaker': self.circuit_breaker.get_status(),
            'dead_letter_queue': self.dead_letter_queue.stats(),
        }
        logger.info(f"Attendance sync metrics: {self.metrics['records_per_second']} records/s, units={self.metrics['units']}")

    def get_metrics(self) -> Dict[str, Any]:
        return self.metrics


def _record_key(raw: Any) -> str:
    if isinstance(raw, Mapping):
        student = raw.get("studentId", raw.get("student_id"))
        day = raw.get("attendanceDate", raw.get("attendance_date"))
        return f"{student if student not in (None, '') else 'unknown'}:{day if day not in (None, '') else 'unknown'}"
    return "unknown"
