"""
FastAPI router for attendance synchronization.
"""

import logging
from typing import Any, AsyncGenerator, Dict

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse

from attendance_sync.core.circuit_breaker import CircuitBreakerManager, circuit_breaker_manager
from attendance_sync.core.config import settings
from attendance_sync.core.database import AsyncSessionLocal
from attendance_sync.integrations.sis.client import HttpSISClient, SISClientProtocol
from attendance_sync.integrations.sis.error_handler import ConfigurationError, SyncExecutionError
from attendance_sync.schemas.sync import (
    AttendanceSyncConfig,
    Checkpoint,
    SyncFailureResponse,
    SyncResult,
)
from attendance_sync.services.sync import (
    AttendanceRepositoryProtocol,
    AttendanceSyncService,
    CheckpointStore,
    DeadLetterQueue,
    SQLAlchemyAttendanceRepository,
    SQLAlchemyCheckpointStore,
)

logger = logging.getLogger(__name__)

router = APIRouter()

# Units the upstream refused, shared across requests
dead_letter_queue = DeadLetterQueue()


async def get_sis_client() -> AsyncGenerator[SISClientProtocol, None]:
    async with HttpSISClient(
        settings.SIS_BASE_URL,
        settings.SIS_API_KEY,
        timeout=settings.SIS_TIMEOUT_SECONDS
    ) as client:
        yield client


def get_repository() -> AttendanceRepositoryProtocol:
    return SQLAlchemyAttendanceRepository(AsyncSessionLocal)


def get_checkpoint_store() -> CheckpointStore:
    return SQLAlchemyCheckpointStore(AsyncSessionLocal)


def get_circuit_breaker_manager() -> CircuitBreakerManager:
    return circuit_breaker_manager


def get_dead_letter_queue() -> DeadLetterQueue:
    return dead_letter_queue


@router.post("/attendance", response_model=SyncResult)
async def sync_attendance(
    config: AttendanceSyncConfig,
    sis_client: SISClientProtocol = Depends(get_sis_client),
    repository: AttendanceRepositoryProtocol = Depends(get_repository),
    checkpoint_store: CheckpointStore = Depends(get_checkpoint_store),
    breakers: CircuitBreakerManager = Depends(get_circuit_breaker_manager),
    dlq: DeadLetterQueue = Depends(get_dead_letter_queue),
    resume: bool = False
):
    """
    Run an attendance sync for the requested window and return its summary.

    The circuit breaker is shared by every request, so its settings are
    fixed by the request that first created it.
    """
    if config.schools is None and settings.default_school_codes:
        config = config.model_copy(update={"schools": settings.default_school_codes})

    breaker_config = config.circuit_breaker
    breaker = breakers.get_or_create(
        settings.CIRCUIT_BREAKER_NAME,
        failure_threshold=breaker_config.failure_threshold,
        recovery_timeout=breaker_config.reset_timeout / 1000.0,
        success_threshold=breaker_config.half_open_requests
    )
    requested = (
        breaker_config.failure_threshold,
        breaker_config.reset_timeout / 1000.0,
        breaker_config.half_open_requests
    )
    registered = (
        breaker.config.failure_threshold,
        breaker.config.recovery_timeout,
        breaker.config.success_threshold
    )
    if requested != registered:
        logger.warning(
            f"Ignoring circuitBreaker settings {requested}: breaker '{breaker.name}' "
            f"is already registered with {registered}"
        )

    service = AttendanceSyncService(
        config,
        sis_client=sis_client,
        repository=repository,
        checkpoint_store=checkpoint_store,
        circuit_breaker=breaker,
        dead_letter_queue=dlq
    )

    try:
        if resume:
            return await service.resume_from_checkpoint()
        return await service.execute_sync()

    except ConfigurationError as e:
        raise HTTPException(
            status_code=422,
            detail=e.message
        )

    except SyncExecutionError as e:
        failure = SyncFailureResponse(
            error=e.message,
            school_code=e.school_code,
            start_date=e.start_date,
            end_date=e.end_date,
            attempts=e.attempts,
            result=e.result
        )
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content=failure.model_dump(mode="json", by_alias=True)
        )


@router.get("/circuit-breaker")
async def circuit_breaker_status(
    breakers: CircuitBreakerManager = Depends(get_circuit_breaker_manager)
) -> Dict[str, Any]:
    """Status of every upstream circuit breaker."""
    return {
        "summary": breakers.get_health_summary(),
        "circuit_breakers": breakers.get_all_status()
    }


@router.get("/checkpoints/latest", response_model=Checkpoint)
async def latest_checkpoint(
    checkpoint_store: CheckpointStore = Depends(get_checkpoint_store)
):
    checkpoint = await checkpoint_store.latest()
    if checkpoint is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No sync checkpoint recorded yet"
        )
    return checkpoint


@router.get("/dead-letter")
async def dead_letter_status(
    dlq: DeadLetterQueue = Depends(get_dead_letter_queue)
) -> Dict[str, Any]:
    """Units of work waiting to be replayed."""
    return {
        "stats": dlq.stats(),
        "pending": [entry.model_dump(mode="json", by_alias=True) for entry in dlq.pending()]
    }
