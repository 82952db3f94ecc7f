"""
Advisory admission control for job runs.

The count is read separately from begin_run, so two callers can both be
admitted when a single slot remains; max_concurrent is a soft target.
"""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.infra.database import STORE_ERRORS
from jobledger.v1.runs.models import JobRun, JobRunStatus
from jobledger.v1.runs.schemas import ConcurrencyCheck

logger = logging.getLogger(__name__)


async def count_running(
    session: AsyncSession, job_name: str, window_hours: int = 24
) -> int:
    """Count runs of job_name still running that started within the window."""
    cutoff = datetime.now(UTC) - timedelta(hours=window_hours)
    result = await session.execute(
        select(func.count(JobRun.id)).where(
            and_(
                JobRun.job_name == job_name,
                JobRun.status == JobRunStatus.RUNNING.value,
                JobRun.started_at >= cutoff,
            )
        )
    )
    return result.scalar() or 0


async def check_concurrent_running(
    session: AsyncSession,
    job_name: str,
    max_concurrent: int = 5,
    window_hours: int = 24,
) -> ConcurrencyCheck:
    """
    Decide whether another run of job_name may start.

    Fails open: if the count cannot be read, the run is admitted so the
    ledger never blocks business work.
    """
    try:
        current_running = await count_running(session, job_name, window_hours)
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error(
            "Failed to check concurrent running jobs",
            extra={"job_name": job_name, "error": str(e)},
        )
        return ConcurrencyCheck(can_run=True, current_running=0)

    can_run = current_running < max_concurrent
    logger.debug(
        "Concurrent running jobs check",
        extra={
            "job_name": job_name,
            "current_running": current_running,
            "max_concurrent": max_concurrent,
            "can_run": can_run,
        },
    )
    return ConcurrencyCheck(can_run=can_run, current_running=current_running)
