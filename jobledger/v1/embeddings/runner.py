"""
Embedding worker: server side of the enqueue and drain endpoints.

Enqueue turns one source field into at most one pending job. Drain claims a
bounded batch, embeds each job and swaps the active chunk generation for the
source field in a single transaction. Every state change is an UPDATE guarded
on the status the worker last observed, so concurrent drains never process
the same job twice.
"""

import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, asc, desc, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.config.settings import Settings
from jobledger.infra.database import STORE_ERRORS
from jobledger.v1.core.exceptions import ServiceUnavailableError
from jobledger.v1.core.registries import Vectorizer
from jobledger.v1.embeddings.chunking import chunk_text
from jobledger.v1.embeddings.hashing import build_idempotency_key, content_hash
from jobledger.v1.embeddings.models import (
    IN_FLIGHT_STATUSES,
    Embedding,
    EmbeddingJob,
    EmbeddingJobStatus,
)
from jobledger.v1.embeddings.schemas import (
    DrainResponse,
    EmbeddingEnqueueRequest,
    EnqueueResponse,
)
from jobledger.v1.embeddings.vectorizers import VectorizerError
from jobledger.v1.runs.governor import check_concurrent_running
from jobledger.v1.runs.ledger import (
    begin_run,
    complete_cancelled,
    complete_failure,
    complete_success,
    expire_stale_runs,
    is_cancel_requested,
    truncate_error_message,
)

logger = logging.getLogger(__name__)

DRAIN_JOB_NAME = "embedding-drain"
CHUNK_STRATEGY = "overlap"
SUPERSEDABLE_STATUSES = (
    EmbeddingJobStatus.PENDING.value,
    EmbeddingJobStatus.FAILED.value,
)


class ClaimLostError(Exception):
    """Another drain changed the job after this worker claimed it."""


class SupersededError(Exception):
    """A newer job for the same source field has already been embedded."""


def _source_filter(model, organization_id: UUID, table: str, source_id: str, field: str):
    return and_(
        model.organization_id == organization_id,
        model.source_table == table,
        model.source_id == source_id,
        model.source_field == field,
    )


async def _active_content_hash(
    session: AsyncSession, request: EmbeddingEnqueueRequest
) -> str | None:
    result = await session.execute(
        select(Embedding.content_hash)
        .where(
            and_(
                _source_filter(
                    Embedding,
                    request.organization_id,
                    request.source_table,
                    request.source_id,
                    request.source_field,
                ),
                Embedding.is_active.is_(True),
            )
        )
        .limit(1)
    )
    return result.scalar_one_or_none()


async def _cancel_superseded(
    session: AsyncSession, request: EmbeddingEnqueueRequest, hash_hex: str
) -> int:
    """
    Cancel queued jobs for the same field that carry older content.

    Failed jobs are included: a retry of old text must not replace a newer
    generation.
    """
    now = datetime.now(UTC)
    result = await session.execute(
        update(EmbeddingJob)
        .where(
            and_(
                _source_filter(
                    EmbeddingJob,
                    request.organization_id,
                    request.source_table,
                    request.source_id,
                    request.source_field,
                ),
                EmbeddingJob.status.in_(SUPERSEDABLE_STATUSES),
                EmbeddingJob.content_hash != hash_hex,
            )
        )
        .values(
            status=EmbeddingJobStatus.CANCELLED.value,
            error_message="Superseded by newer content",
            completed_at=now,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


async def enqueue_job(
    session: AsyncSession,
    request: EmbeddingEnqueueRequest,
    settings: Settings,
    embedding_model: str,
) -> EnqueueResponse:
    """
    Create a pending embedding job unless the content is already embedded or queued.

    Raises:
        ServiceUnavailableError: the store could not be reached
    """
    hash_hex = content_hash(request.content_text)
    idempotency_key = build_idempotency_key(
        request.organization_id,
        request.source_table,
        request.source_id,
        request.source_field,
        hash_hex,
    )
    log_extra = {
        "source_table": request.source_table,
        "source_id": request.source_id,
        "source_field": request.source_field,
        "content_hash": hash_hex,
    }

    try:
        if await _active_content_hash(session, request) == hash_hex:
            logger.info("Embedding unchanged, skipping enqueue", extra=log_extra)
            return EnqueueResponse(message="Skipped (no content change)", skipped=True)

        superseded = await _cancel_superseded(session, request, hash_hex)
        await session.commit()
        if superseded:
            logger.info(
                "Superseded embedding jobs cancelled",
                extra={**log_extra, "cancelled_count": superseded},
            )

        now = datetime.now(UTC)
        job = EmbeddingJob(
            id=uuid4(),
            organization_id=request.organization_id,
            source_table=request.source_table,
            source_id=request.source_id,
            source_field=request.source_field,
            content_hash=hash_hex,
            content_text=request.content_text,
            chunk_count=len(
                chunk_text(request.content_text, settings.chunk_size, settings.chunk_overlap)
            ),
            chunk_strategy=CHUNK_STRATEGY,
            embedding_model=embedding_model,
            status=EmbeddingJobStatus.PENDING.value,
            priority=request.priority,
            idempotency_key=idempotency_key,
            retry_count=0,
            max_retries=settings.embedding_max_retries,
            scheduled_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            session.add(job)
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return await _requeue_existing(session, idempotency_key, request.priority)
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error("Failed to enqueue embedding job", extra={**log_extra, "error": str(e)})
        raise ServiceUnavailableError(
            "Embedding queue unavailable", details={"error": str(e)}
        ) from e

    logger.info("Embedding job enqueued", extra={**log_extra, "job_id": str(job.id)})
    return EnqueueResponse(job_id=job.id, message="Embedding job enqueued")


async def _requeue_existing(
    session: AsyncSession, idempotency_key: str, priority: int
) -> EnqueueResponse:
    """Resolve an idempotency collision against the job already holding the key."""
    result = await session.execute(
        select(EmbeddingJob.id, EmbeddingJob.status).where(
            EmbeddingJob.idempotency_key == idempotency_key
        )
    )
    existing = result.first()
    if existing is None:
        raise ServiceUnavailableError("Failed to fetch existing embedding job")

    job_id, status = existing
    if status in IN_FLIGHT_STATUSES:
        return EnqueueResponse(job_id=job_id, message="Skipped (already queued)", skipped=True)

    # Content reverted to text embedded before; run the old job again
    now = datetime.now(UTC)
    reset = await session.execute(
        update(EmbeddingJob)
        .where(and_(EmbeddingJob.id == job_id, EmbeddingJob.status == status))
        .values(
            status=EmbeddingJobStatus.PENDING.value,
            priority=priority,
            retry_count=0,
            error_message=None,
            batch_id=None,
            scheduled_at=now,
            started_at=None,
            completed_at=None,
            updated_at=now,
        )
        .returning(EmbeddingJob.id)
        .execution_options(synchronize_session=False)
    )
    reset_id = reset.scalar_one_or_none()
    await session.commit()

    if reset_id is None:
        return EnqueueResponse(job_id=job_id, message="Skipped (already queued)", skipped=True)

    logger.info(
        "Terminal embedding job re-queued",
        extra={"job_id": str(job_id), "previous_status": status},
    )
    return EnqueueResponse(job_id=job_id, message="Embedding job re-queued")


async def _select_batch(session: AsyncSession, batch_size: int) -> list[dict[str, Any]]:
    now = datetime.now(UTC)
    result = await session.execute(
        select(EmbeddingJob.__table__)
        .where(
            and_(
                or_(
                    EmbeddingJob.status == EmbeddingJobStatus.PENDING.value,
                    and_(
                        EmbeddingJob.status == EmbeddingJobStatus.FAILED.value,
                        EmbeddingJob.retry_count < EmbeddingJob.max_retries,
                    ),
                ),
                EmbeddingJob.scheduled_at <= now,
            )
        )
        .order_by(desc(EmbeddingJob.priority), asc(EmbeddingJob.scheduled_at))
        .limit(batch_size)
    )
    # Plain mappings survive the rollbacks done on failed jobs
    return [dict(row) for row in result.mappings().all()]


async def _claim(
    session: AsyncSession, job: dict[str, Any], batch_id: str
) -> bool:
    now = datetime.now(UTC)
    result = await session.execute(
        update(EmbeddingJob)
        .where(and_(EmbeddingJob.id == job["id"], EmbeddingJob.status == job["status"]))
        .values(
            status=EmbeddingJobStatus.PROCESSING.value,
            batch_id=batch_id,
            started_at=now,
            updated_at=now,
        )
        .returning(EmbeddingJob.id)
        .execution_options(synchronize_session=False)
    )
    claimed = result.scalar_one_or_none() is not None
    await session.commit()
    return claimed


async def _embed_job(
    session: AsyncSession,
    job: dict[str, Any],
    vectorizer: Vectorizer,
    settings: Settings,
) -> int:
    """Embed a claimed job and swap in its chunk generation. Returns chunk count."""
    chunks = chunk_text(job["content_text"], settings.chunk_size, settings.chunk_overlap)
    if not chunks:
        raise ValueError("Job has no content to embed")

    vectors = await vectorizer.vectorize(chunks)
    if len(vectors) != len(chunks):
        raise VectorizerError(
            f"Vectorizer returned {len(vectors)} vectors for {len(chunks)} chunks"
        )

    newer = await session.execute(
        select(EmbeddingJob.id)
        .where(
            and_(
                _source_filter(
                    EmbeddingJob,
                    job["organization_id"],
                    job["source_table"],
                    job["source_id"],
                    job["source_field"],
                ),
                EmbeddingJob.id != job["id"],
                EmbeddingJob.status == EmbeddingJobStatus.COMPLETED.value,
                EmbeddingJob.scheduled_at > job["scheduled_at"],
            )
        )
        .limit(1)
    )
    if newer.scalar_one_or_none() is not None:
        raise SupersededError(f"Embedding job {job['id']} carries outdated content")

    now = datetime.now(UTC)
    source = _source_filter(
        Embedding,
        job["organization_id"],
        job["source_table"],
        job["source_id"],
        job["source_field"],
    )

    await session.execute(
        update(Embedding)
        .where(and_(source, Embedding.is_active.is_(True)))
        .values(is_active=False, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    session.add_all(
        [
            Embedding(
                id=uuid4(),
                organization_id=job["organization_id"],
                source_table=job["source_table"],
                source_id=job["source_id"],
                source_field=job["source_field"],
                chunk_index=index,
                chunk_text=chunk,
                content_hash=job["content_hash"],
                embedding_model=job["embedding_model"],
                embedding=vector,
                is_active=True,
                created_at=now,
                updated_at=now,
            )
            for index, (chunk, vector) in enumerate(zip(chunks, vectors))
        ]
    )
    await session.flush()

    completed = await session.execute(
        update(EmbeddingJob)
        .where(
            and_(
                EmbeddingJob.id == job["id"],
                EmbeddingJob.status == EmbeddingJobStatus.PROCESSING.value,
            )
        )
        .values(
            status=EmbeddingJobStatus.COMPLETED.value,
            chunk_count=len(chunks),
            error_message=None,
            completed_at=now,
            updated_at=now,
        )
        .returning(EmbeddingJob.id)
        .execution_options(synchronize_session=False)
    )
    if completed.scalar_one_or_none() is None:
        raise ClaimLostError(f"Embedding job {job['id']} is no longer processing")

    await session.commit()
    return len(chunks)


async def _finish_processing(
    session: AsyncSession, job_id: UUID, status: EmbeddingJobStatus, error: str
) -> None:
    """Move a processing job to failed (counting the attempt) or cancelled."""
    now = datetime.now(UTC)
    values: dict[str, Any] = {
        "status": status.value,
        "error_message": truncate_error_message(error),
        "completed_at": now,
        "updated_at": now,
    }
    if status == EmbeddingJobStatus.FAILED:
        values["retry_count"] = EmbeddingJob.retry_count + 1

    try:
        await session.execute(
            update(EmbeddingJob)
            .where(
                and_(
                    EmbeddingJob.id == job_id,
                    EmbeddingJob.status == EmbeddingJobStatus.PROCESSING.value,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error(
            "Failed to record embedding job outcome",
            extra={"job_id": str(job_id), "status": status.value, "error": str(e)},
        )


async def _reclaim_expired_jobs(session: AsyncSession, lease: timedelta) -> int:
    """Fail processing jobs whose claim is older than the lease so they can retry."""
    now = datetime.now(UTC)
    result = await session.execute(
        update(EmbeddingJob)
        .where(
            and_(
                EmbeddingJob.status == EmbeddingJobStatus.PROCESSING.value,
                EmbeddingJob.started_at < now - lease,
            )
        )
        .values(
            status=EmbeddingJobStatus.FAILED.value,
            retry_count=EmbeddingJob.retry_count + 1,
            error_message="Processing lease expired",
            completed_at=now,
            updated_at=now,
        )
        .returning(EmbeddingJob.id)
        .execution_options(synchronize_session=False)
    )
    reclaimed = result.scalars().all()
    await session.commit()
    return len(reclaimed)


async def _recover_abandoned_work(session: AsyncSession, settings: Settings) -> None:
    """Release drain runs and job claims left behind by a worker that died."""
    lease = timedelta(minutes=settings.drain_lease_minutes)
    expired_runs = await expire_stale_runs(session, DRAIN_JOB_NAME, lease)
    try:
        reclaimed_jobs = await _reclaim_expired_jobs(session, lease)
    except STORE_ERRORS as e:
        await session.rollback()
        logger.error("Failed to reclaim expired embedding jobs", extra={"error": str(e)})
        reclaimed_jobs = 0

    if expired_runs or reclaimed_jobs:
        logger.warning(
            "Recovered abandoned drain work",
            extra={"expired_runs": expired_runs, "reclaimed_jobs": reclaimed_jobs},
        )


async def drain_jobs(
    session: AsyncSession, settings: Settings, vectorizer: Vectorizer
) -> DrainResponse:
    """
    Process one bounded batch of pending and retryable embedding jobs.

    The drain itself is tracked as an "embedding-drain" job run: admission
    goes through the concurrency governor, the run can be cancelled
    cooperatively between jobs, and its counts end up in the run's stats.
    Drain runs and job claims older than drain_lease_minutes are released
    first, so a crashed worker does not block later drains.
    """
    await _recover_abandoned_work(session, settings)

    check = await check_concurrent_running(
        session,
        DRAIN_JOB_NAME,
        max_concurrent=settings.drain_max_concurrent,
        window_hours=settings.governor_window_hours,
    )
    if not check.can_run:
        logger.info(
            "Drain refused by concurrency governor",
            extra={"current_running": check.current_running},
        )
        return DrainResponse(
            message=f"Drain skipped: {check.current_running} drain(s) already running"
        )

    begin = await begin_run(
        session,
        DRAIN_JOB_NAME,
        idempotency_key=f"drain:{time.time_ns() // 1000}",
        meta={
            "scope": "batch",
            "runner": "worker",
            "input_summary": {
                "resource": "embedding_jobs",
                "batch_size": settings.drain_batch_size,
            },
        },
    )
    if not begin.success or begin.is_duplicate or begin.record is None:
        if begin.is_duplicate:
            return DrainResponse(message="Drain skipped: already triggered")
        raise ServiceUnavailableError(
            "Could not record drain run", details={"error": begin.error}
        )

    run_id = begin.record.id
    batch_id = str(run_id)
    processed = failed = skipped = 0
    cancelled = False

    try:
        jobs = await _select_batch(session, settings.drain_batch_size)

        for job in jobs:
            if await is_cancel_requested(session, run_id):
                cancelled = True
                break

            if not await _claim(session, job, batch_id):
                skipped += 1
                continue

            try:
                chunk_count = await _embed_job(session, job, vectorizer, settings)
            except ClaimLostError:
                await session.rollback()
                skipped += 1
                continue
            except SupersededError as e:
                await session.rollback()
                logger.info(
                    "Embedding job superseded by newer content",
                    extra={"job_id": str(job["id"])},
                )
                await _finish_processing(
                    session, job["id"], EmbeddingJobStatus.CANCELLED, str(e)
                )
                skipped += 1
                continue
            except Exception as e:
                await session.rollback()
                logger.exception(
                    "Embedding job failed",
                    extra={"job_id": str(job["id"]), "error": str(e)},
                )
                await _finish_processing(
                    session, job["id"], EmbeddingJobStatus.FAILED, str(e)
                )
                failed += 1
                continue

            processed += 1
            logger.info(
                "Embedding job completed",
                extra={"job_id": str(job["id"]), "chunk_count": chunk_count},
            )
    except Exception as e:
        await session.rollback()
        logger.exception("Drain failed", extra={"run_id": batch_id})
        await complete_failure(
            session,
            run_id,
            error_code="DRAIN_ERROR",
            error_message=str(e),
            meta={"stats": _stats(processed, failed, skipped)},
        )
        raise

    meta = {"stats": _stats(processed, failed, skipped)}
    if cancelled:
        await complete_cancelled(session, run_id, meta)
        message = f"Drain cancelled after {processed} processed, {failed} failed"
    else:
        await complete_success(session, run_id, meta)
        message = f"{processed} processed, {failed} failed, {skipped} skipped"

    return DrainResponse(
        processed_count=processed,
        failed_count=failed,
        skipped_count=skipped,
        message=message,
    )


def _stats(processed: int, failed: int, skipped: int) -> dict[str, int]:
    return {
        "items_processed": processed,
        "items_failed": failed,
        "items_skipped": skipped,
    }
