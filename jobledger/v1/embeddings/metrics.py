"""
Rollups over embedding jobs and embeddings for dashboards.
"""

import logging
import math
from uuid import UUID

from sqlalchemy import and_, func, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.infra.database import STORE_ERRORS
from jobledger.v1.embeddings.models import Embedding, EmbeddingJob, EmbeddingJobStatus
from jobledger.v1.embeddings.schemas import EmbeddingMetrics, MetricsResult

logger = logging.getLogger(__name__)


def success_rate_percent(completed: int, total: int) -> int:
    """Whole-number completion rate, halves rounded up; 0 when there are no jobs."""
    if total <= 0:
        return 0
    return math.floor(completed / total * 100 + 0.5)


async def get_embedding_metrics(
    session: AsyncSession, organization_id: UUID | None = None
) -> MetricsResult:
    """
    Aggregate job and embedding counts, optionally for one organization.

    failed_jobs counts both failed and cancelled jobs. Embedding figures only
    consider active rows: total_chunks is the number of active chunks and
    total_embeddings the number of source fields holding an active generation.
    """
    job_filter = (
        EmbeddingJob.organization_id == organization_id
        if organization_id is not None
        else true()
    )
    active_filter = and_(
        Embedding.is_active.is_(True),
        Embedding.organization_id == organization_id
        if organization_id is not None
        else true(),
    )

    try:
        status_result = await session.execute(
            select(EmbeddingJob.status, func.count(EmbeddingJob.id))
            .where(job_filter)
            .group_by(EmbeddingJob.status)
        )
        by_status = dict(status_result.all())

        table_result = await session.execute(
            select(EmbeddingJob.source_table, func.count(EmbeddingJob.id))
            .where(job_filter)
            .group_by(EmbeddingJob.source_table)
        )
        jobs_by_table = dict(table_result.all())

        # Processing time is averaged in Python; interval arithmetic differs per dialect
        timing_result = await session.execute(
            select(EmbeddingJob.started_at, EmbeddingJob.completed_at).where(
                and_(
                    job_filter,
                    EmbeddingJob.status == EmbeddingJobStatus.COMPLETED.value,
                    EmbeddingJob.started_at.is_not(None),
                    EmbeddingJob.completed_at.is_not(None),
                )
            )
        )
        durations = [
            (completed - started).total_seconds() / 60
            for started, completed in timing_result.all()
        ]

        total_chunks = (
            await session.execute(select(func.count(Embedding.id)).where(active_filter))
        ).scalar() or 0

        generations = (
            select(
                Embedding.organization_id,
                Embedding.source_table,
                Embedding.source_id,
                Embedding.source_field,
            )
            .where(active_filter)
            .distinct()
            .subquery()
        )
        total_embeddings = (
            await session.execute(select(func.count()).select_from(generations))
        ).scalar() or 0

        embeddings_by_table = dict(
            (
                await session.execute(
                    select(Embedding.source_table, func.count(Embedding.id))
                    .where(active_filter)
                    .group_by(Embedding.source_table)
                )
            ).all()
        )
        embeddings_by_model = dict(
            (
                await session.execute(
                    select(Embedding.embedding_model, func.count(Embedding.id))
                    .where(active_filter)
                    .group_by(Embedding.embedding_model)
                )
            ).all()
        )
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error("Failed to compute embedding metrics", extra={"error": str(e)})
        return MetricsResult(success=False, error=str(e))

    total_jobs = sum(by_status.values())
    completed_jobs = by_status.get(EmbeddingJobStatus.COMPLETED.value, 0)

    metrics = EmbeddingMetrics(
        total_jobs=total_jobs,
        pending_jobs=by_status.get(EmbeddingJobStatus.PENDING.value, 0),
        processing_jobs=by_status.get(EmbeddingJobStatus.PROCESSING.value, 0),
        completed_jobs=completed_jobs,
        failed_jobs=by_status.get(EmbeddingJobStatus.FAILED.value, 0)
        + by_status.get(EmbeddingJobStatus.CANCELLED.value, 0),
        avg_processing_time_minutes=(
            round(sum(durations) / len(durations), 2) if durations else None
        ),
        success_rate_percent=success_rate_percent(completed_jobs, total_jobs),
        total_embeddings=total_embeddings,
        total_chunks=total_chunks,
        jobs_by_table=jobs_by_table,
        embeddings_by_table=embeddings_by_table,
        embeddings_by_model=embeddings_by_model,
    )
    return MetricsResult(success=True, metrics=metrics)
