from datetime import UTC, datetime, timedelta

from fastapi import APIRouter
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.config.logging import get_logger
from jobledger.config.settings import Settings, SettingsDep
from jobledger.infra.database import STORE_ERRORS, SessionDep
from jobledger.v1.core.exceptions import create_success_response
from jobledger.v1.embeddings.models import EmbeddingJob, EmbeddingJobStatus
from jobledger.v1.embeddings.runner import DRAIN_JOB_NAME
from jobledger.v1.runs.governor import count_running

logger = get_logger(__name__)

router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Embedding queue status."""

    pending_jobs: int = 0
    processing_jobs: int = 0
    retryable_failed_jobs: int = 0
    oldest_pending_age_seconds: int | None = None
    running_drains: int = 0


@router.get("/healthz", response_model=dict)
async def health_check(settings: Settings = SettingsDep, session: AsyncSession = SessionDep):
    """Health check with database connectivity and queue depth."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)

    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session, settings)
        except STORE_ERRORS as e:
            # Queue figures are informational; connectivity decides health
            await session.rollback()
            logger.warning("Queue health check failed", error=str(e))

    health_data = {
        "ok": db_health.connected,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump() if queue_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except STORE_ERRORS as e:
        await session.rollback()
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(session: AsyncSession, settings: Settings) -> QueueHealth:
    """Count queue rows by state and report the oldest pending job."""
    status_result = await session.execute(
        select(EmbeddingJob.status, func.count(EmbeddingJob.id))
        .where(
            EmbeddingJob.status.in_(
                [
                    EmbeddingJobStatus.PENDING.value,
                    EmbeddingJobStatus.PROCESSING.value,
                ]
            )
        )
        .group_by(EmbeddingJob.status)
    )
    by_status = dict(status_result.all())

    retryable_result = await session.execute(
        select(func.count(EmbeddingJob.id)).where(
            EmbeddingJob.status == EmbeddingJobStatus.FAILED.value,
            EmbeddingJob.retry_count < EmbeddingJob.max_retries,
        )
    )

    oldest_result = await session.execute(
        select(func.min(EmbeddingJob.scheduled_at)).where(
            EmbeddingJob.status == EmbeddingJobStatus.PENDING.value
        )
    )
    oldest_pending = oldest_result.scalar()

    oldest_pending_age_seconds = None
    if oldest_pending is not None:
        # SQLite hands back naive timestamps
        if oldest_pending.tzinfo is None:
            oldest_pending = oldest_pending.replace(tzinfo=UTC)
        age: timedelta = datetime.now(UTC) - oldest_pending
        oldest_pending_age_seconds = max(int(age.total_seconds()), 0)

    return QueueHealth(
        pending_jobs=by_status.get(EmbeddingJobStatus.PENDING.value, 0),
        processing_jobs=by_status.get(EmbeddingJobStatus.PROCESSING.value, 0),
        retryable_failed_jobs=retryable_result.scalar() or 0,
        oldest_pending_age_seconds=oldest_pending_age_seconds,
        running_drains=await count_running(
            session, DRAIN_JOB_NAME, settings.governor_window_hours
        ),
    )
