"""
Read-only rollups and listings over the job run ledger.
"""

import logging
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, desc, func, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.infra.database import STORE_ERRORS
from jobledger.v1.runs.models import JobRun, JobRunStatus
from jobledger.v1.runs.schemas import JobRunPage, JobRunRecord, JobRunStats

logger = logging.getLogger(__name__)


async def get_job_run_stats(
    session: AsyncSession, job_name: str | None = None, duration_window_hours: int = 24
) -> JobRunStats | None:
    """Get ledger statistics, optionally scoped to one job name."""
    base_filter = JobRun.job_name == job_name if job_name else true()

    try:
        total_result = await session.execute(
            select(func.count(JobRun.id)).where(base_filter)
        )
        total_runs = total_result.scalar() or 0

        status_result = await session.execute(
            select(JobRun.status, func.count(JobRun.id))
            .where(base_filter)
            .group_by(JobRun.status)
        )
        by_status = dict(status_result.all())

        name_result = await session.execute(
            select(JobRun.job_name, func.count(JobRun.id))
            .where(base_filter)
            .group_by(JobRun.job_name)
        )
        by_job_name = dict(name_result.all())

        one_hour_ago = datetime.now(UTC) - timedelta(hours=1)
        failed_recent_result = await session.execute(
            select(func.count(JobRun.id)).where(
                and_(
                    base_filter,
                    JobRun.status == JobRunStatus.FAILED.value,
                    JobRun.updated_at >= one_hour_ago,
                )
            )
        )
        failed_last_hour = failed_recent_result.scalar() or 0

        # Durations are averaged in Python; interval arithmetic differs per dialect
        window_start = datetime.now(UTC) - timedelta(hours=duration_window_hours)
        finished_result = await session.execute(
            select(JobRun.started_at, JobRun.finished_at).where(
                and_(
                    base_filter,
                    JobRun.started_at.is_not(None),
                    JobRun.finished_at.is_not(None),
                    JobRun.finished_at >= window_start,
                )
            )
        )
        durations = [
            (finished - started).total_seconds() * 1000
            for started, finished in finished_result.all()
        ]
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error("Failed to compute job run stats", extra={"error": str(e)})
        return None

    return JobRunStats(
        total_runs=total_runs,
        by_status=by_status,
        by_job_name=by_job_name,
        running=by_status.get(JobRunStatus.RUNNING.value, 0),
        failed_last_hour=failed_last_hour,
        avg_duration_ms=round(sum(durations) / len(durations), 2) if durations else None,
    )


async def list_runs(
    session: AsyncSession,
    job_name: str | None = None,
    status: list[JobRunStatus] | None = None,
    limit: int = 50,
    offset: int = 0,
) -> JobRunPage:
    """List job runs, newest first."""
    base_query = select(JobRun)
    if job_name:
        base_query = base_query.where(JobRun.job_name == job_name)
    if status:
        base_query = base_query.where(JobRun.status.in_([s.value for s in status]))

    try:
        count_query = select(func.count()).select_from(base_query.subquery())
        total = (await session.execute(count_query)).scalar() or 0

        runs_result = await session.execute(
            base_query.order_by(desc(JobRun.created_at))
            .offset(offset)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        runs = runs_result.scalars().all()
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error("Failed to list job runs", extra={"error": str(e)})
        return JobRunPage(limit=limit, offset=offset, error=str(e))

    return JobRunPage(
        runs=[JobRunRecord.model_validate(run) for run in runs],
        total=total,
        limit=limit,
        offset=offset,
    )
