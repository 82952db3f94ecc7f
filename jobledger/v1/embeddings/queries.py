"""
Filtered, paginated read accessors over the embedding queue.
"""

import logging

from sqlalchemy import asc, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.infra.database import STORE_ERRORS
from jobledger.v1.embeddings.models import Embedding, EmbeddingJob
from jobledger.v1.embeddings.schemas import (
    EmbeddingFilter,
    EmbeddingJobFilter,
    EmbeddingJobRecord,
    EmbeddingRecord,
    Page,
)

logger = logging.getLogger(__name__)


async def get_embedding_jobs(
    session: AsyncSession, filters: EmbeddingJobFilter | None = None
) -> Page[EmbeddingJobRecord]:
    """List embedding jobs, highest priority and earliest scheduled first."""
    filters = filters or EmbeddingJobFilter()

    query = select(EmbeddingJob)
    if filters.organization_id is not None:
        query = query.where(EmbeddingJob.organization_id == filters.organization_id)
    if filters.source_table:
        query = query.where(EmbeddingJob.source_table == filters.source_table)
    if filters.source_field:
        query = query.where(EmbeddingJob.source_field == filters.source_field)
    if filters.status:
        query = query.where(EmbeddingJob.status.in_([s.value for s in filters.status]))
    if filters.priority_min is not None:
        query = query.where(EmbeddingJob.priority >= filters.priority_min)
    if filters.priority_max is not None:
        query = query.where(EmbeddingJob.priority <= filters.priority_max)
    if filters.created_after is not None:
        query = query.where(EmbeddingJob.created_at >= filters.created_after)
    if filters.created_before is not None:
        query = query.where(EmbeddingJob.created_at <= filters.created_before)

    try:
        total = (
            await session.execute(select(func.count()).select_from(query.subquery()))
        ).scalar() or 0
        result = await session.execute(
            query.order_by(desc(EmbeddingJob.priority), asc(EmbeddingJob.scheduled_at))
            .offset(filters.offset)
            .limit(filters.limit)
            .execution_options(populate_existing=True)
        )
        jobs = result.scalars().all()
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error("Failed to get embedding jobs", extra={"error": str(e)})
        return Page[EmbeddingJobRecord](
            success=False, limit=filters.limit, offset=filters.offset, error=str(e)
        )

    return Page[EmbeddingJobRecord](
        items=[EmbeddingJobRecord.model_validate(job) for job in jobs],
        total=total,
        limit=filters.limit,
        offset=filters.offset,
    )


async def get_embeddings(
    session: AsyncSession, filters: EmbeddingFilter | None = None
) -> Page[EmbeddingRecord]:
    """List embedding chunks, most recently updated first."""
    filters = filters or EmbeddingFilter()

    query = select(Embedding)
    if filters.organization_id is not None:
        query = query.where(Embedding.organization_id == filters.organization_id)
    if filters.source_table:
        query = query.where(Embedding.source_table == filters.source_table)
    if filters.source_id:
        query = query.where(Embedding.source_id == filters.source_id)
    if filters.source_field:
        query = query.where(Embedding.source_field == filters.source_field)
    if filters.is_active is not None:
        query = query.where(Embedding.is_active == filters.is_active)
    if filters.embedding_model:
        query = query.where(Embedding.embedding_model == filters.embedding_model)

    try:
        total = (
            await session.execute(select(func.count()).select_from(query.subquery()))
        ).scalar() or 0
        result = await session.execute(
            query.order_by(desc(Embedding.updated_at), asc(Embedding.chunk_index))
            .offset(filters.offset)
            .limit(filters.limit)
            .execution_options(populate_existing=True)
        )
        embeddings = result.scalars().all()
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error("Failed to get embeddings", extra={"error": str(e)})
        return Page[EmbeddingRecord](
            success=False, limit=filters.limit, offset=filters.offset, error=str(e)
        )

    return Page[EmbeddingRecord](
        items=[EmbeddingRecord.model_validate(emb) for emb in embeddings],
        total=total,
        limit=filters.limit,
        offset=filters.offset,
    )
