"""Tests for the embedding worker endpoints and drain processing."""

import uuid
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import func, select, update

from jobledger.v1.embeddings.models import Embedding, EmbeddingJob, EmbeddingJobStatus
from jobledger.v1.embeddings.runner import DRAIN_JOB_NAME, drain_jobs
from jobledger.v1.embeddings.vectorizers import StubVectorizer, VectorizerError
from jobledger.v1.runs.ledger import begin_run, request_cancel
from jobledger.v1.runs.models import JobRun, JobRunStatus

ORG_ID = uuid.UUID("7f3c2a10-5a4b-4a8e-9a1d-2c4f6b8d0e12")


def enqueue_body(text: str, source_id: str = "post-1", field: str = "content", priority: int = 5):
    return {
        "organization_id": str(ORG_ID),
        "source_table": "posts",
        "source_id": source_id,
        "source_field": field,
        "content_text": text,
        "priority": priority,
    }


async def enqueue(async_client, auth_headers, text, **kwargs):
    response = await async_client.post(
        "/v1/embeddings/enqueue", json=enqueue_body(text, **kwargs), headers=auth_headers
    )
    assert response.status_code == 200
    return response.json()["data"]


async def job_rows(session_factory):
    async with session_factory() as session:
        result = await session.execute(select(EmbeddingJob).order_by(EmbeddingJob.created_at))
        return result.scalars().all()


async def active_hashes(session_factory, source_id="post-1", field="content"):
    async with session_factory() as session:
        result = await session.execute(
            select(Embedding.content_hash).where(
                Embedding.source_id == source_id,
                Embedding.source_field == field,
                Embedding.is_active.is_(True),
            )
        )
        return set(result.scalars().all())


class FailingVectorizer(StubVectorizer):
    async def vectorize(self, texts):
        raise VectorizerError("upstream 503")


class TestAuth:
    async def test_missing_token_is_rejected(self, async_client):
        response = await async_client.post("/v1/embeddings/drain")

        assert response.status_code == 401
        body = response.json()
        assert body["ok"] is False
        assert body["error"]["message"] == "Missing bearer token"
        assert "X-Request-ID" in response.headers

    async def test_wrong_token_is_rejected(self, async_client):
        response = await async_client.post(
            "/v1/embeddings/enqueue",
            json=enqueue_body("text"),
            headers={"Authorization": "Bearer nope"},
        )

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid worker token"

    async def test_blank_content_is_a_validation_error(self, async_client, auth_headers):
        response = await async_client.post(
            "/v1/embeddings/enqueue", json=enqueue_body("   "), headers=auth_headers
        )

        assert response.status_code == 422
        assert response.json()["ok"] is False


class TestEnqueue:
    async def test_creates_pending_job(self, async_client, auth_headers, session_factory):
        data = await enqueue(async_client, auth_headers, "x" * 2500, priority=8)

        assert data["skipped"] is False
        assert data["job_id"]

        jobs = await job_rows(session_factory)
        assert len(jobs) == 1
        job = jobs[0]
        assert str(job.id) == data["job_id"]
        assert job.status == EmbeddingJobStatus.PENDING.value
        assert job.chunk_count == 3
        assert job.chunk_strategy == "overlap"
        assert job.embedding_model == "stub-v1.0"
        assert job.priority == 8
        assert job.max_retries == 3
        assert job.retry_count == 0

    async def test_same_content_while_queued_is_skipped(
        self, async_client, auth_headers, session_factory
    ):
        first = await enqueue(async_client, auth_headers, "hello world")
        second = await enqueue(async_client, auth_headers, "hello world")

        assert second["skipped"] is True
        assert second["job_id"] == first["job_id"]
        assert len(await job_rows(session_factory)) == 1

    async def test_new_content_supersedes_pending_job(
        self, async_client, auth_headers, session_factory
    ):
        await enqueue(async_client, auth_headers, "first draft")
        await enqueue(async_client, auth_headers, "second draft")

        jobs = await job_rows(session_factory)
        assert [job.status for job in jobs] == ["cancelled", "pending"]
        assert jobs[0].error_message == "Superseded by newer content"

    async def test_other_fields_are_not_superseded(
        self, async_client, auth_headers, session_factory
    ):
        await enqueue(async_client, auth_headers, "a title", field="title")
        await enqueue(async_client, auth_headers, "some content", field="content")

        jobs = await job_rows(session_factory)
        assert {job.status for job in jobs} == {"pending"}


class TestUnchangedContent:
    async def test_unchanged_text_is_skipped_after_embedding(
        self, worker_client, session_factory
    ):
        """Re-submitting already embedded text does no work."""
        from jobledger.v1.embeddings.client import drain_embedding_jobs, enqueue_embedding_job
        from jobledger.v1.embeddings.schemas import EmbeddingEnqueueRequest

        request = EmbeddingEnqueueRequest(**enqueue_body("stable text"))

        first = await enqueue_embedding_job(worker_client, request)
        drained = await drain_embedding_jobs(worker_client)
        second = await enqueue_embedding_job(worker_client, request)

        assert first.success and not first.skipped
        assert drained.success and drained.processed_count == 1
        assert second.success is True
        assert second.skipped is True
        assert second.message == "Skipped (no content change)"
        assert len(await job_rows(session_factory)) == 1


class TestDrain:
    async def test_drain_embeds_and_records_run(
        self, async_client, auth_headers, session_factory
    ):
        await enqueue(async_client, auth_headers, "y" * 1500)

        response = await async_client.post("/v1/embeddings/drain", headers=auth_headers)

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["processed_count"] == 1
        assert data["failed_count"] == 0

        jobs = await job_rows(session_factory)
        assert jobs[0].status == EmbeddingJobStatus.COMPLETED.value
        assert jobs[0].started_at is not None
        assert jobs[0].completed_at is not None

        async with session_factory() as session:
            chunks = (
                await session.execute(
                    select(Embedding).order_by(Embedding.chunk_index)
                )
            ).scalars().all()
            run = (
                await session.execute(select(JobRun).where(JobRun.job_name == DRAIN_JOB_NAME))
            ).scalar_one()

        assert [c.chunk_index for c in chunks] == [0, 1]
        assert all(c.is_active for c in chunks)
        assert len(chunks[0].embedding) == 1536
        assert jobs[0].batch_id == str(run.id)
        assert run.status == JobRunStatus.SUCCEEDED.value
        assert run.idempotency_key.startswith("drain:")
        assert run.meta["stats"] == {
            "items_processed": 1,
            "items_failed": 0,
            "items_skipped": 0,
        }
        assert run.meta["runner"] == "worker"

    async def test_new_generation_replaces_old(
        self, async_client, auth_headers, session_factory
    ):
        from jobledger.v1.embeddings.hashing import content_hash

        await enqueue(async_client, auth_headers, "version one")
        await async_client.post("/v1/embeddings/drain", headers=auth_headers)
        await enqueue(async_client, auth_headers, "version two")
        await async_client.post("/v1/embeddings/drain", headers=auth_headers)

        assert await active_hashes(session_factory) == {content_hash("version two")}

        async with session_factory() as session:
            inactive = (
                await session.execute(
                    select(func.count(Embedding.id)).where(Embedding.is_active.is_(False))
                )
            ).scalar()
        assert inactive == 1

    async def test_reverted_content_requeues_finished_job(
        self, async_client, auth_headers, session_factory
    ):
        from jobledger.v1.embeddings.hashing import content_hash

        original = await enqueue(async_client, auth_headers, "version one")
        await async_client.post("/v1/embeddings/drain", headers=auth_headers)
        await enqueue(async_client, auth_headers, "version two")
        await async_client.post("/v1/embeddings/drain", headers=auth_headers)

        reverted = await enqueue(async_client, auth_headers, "version one")

        assert reverted["skipped"] is False
        assert reverted["job_id"] == original["job_id"]

        await async_client.post("/v1/embeddings/drain", headers=auth_headers)
        assert await active_hashes(session_factory) == {content_hash("version one")}
        assert len(await job_rows(session_factory)) == 2

    async def test_failed_job_is_retried_until_exhausted(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "flaky")

        for attempt in range(1, 4):
            async with session_factory() as session:
                result = await drain_jobs(session, test_settings, FailingVectorizer())
            assert result.failed_count == 1

            job = (await job_rows(session_factory))[0]
            assert job.status == EmbeddingJobStatus.FAILED.value
            assert job.retry_count == attempt
            assert job.error_message == "upstream 503"

        # retry_count has reached max_retries; nothing left to pick up
        async with session_factory() as session:
            result = await drain_jobs(session, test_settings, StubVectorizer())
        assert result.processed_count == 0
        assert result.failed_count == 0

    async def test_failed_job_recovers_on_next_drain(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "flaky")

        async with session_factory() as session:
            await drain_jobs(session, test_settings, FailingVectorizer())
        async with session_factory() as session:
            result = await drain_jobs(session, test_settings, StubVectorizer())

        assert result.processed_count == 1
        job = (await job_rows(session_factory))[0]
        assert job.status == EmbeddingJobStatus.COMPLETED.value
        assert job.retry_count == 1
        assert job.error_message is None

    async def test_failure_message_is_truncated(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        class VerboseFailure(StubVectorizer):
            async def vectorize(self, texts):
                raise VectorizerError("e" * 5000)

        await enqueue(async_client, auth_headers, "text")
        async with session_factory() as session:
            await drain_jobs(session, test_settings, VerboseFailure())

        job = (await job_rows(session_factory))[0]
        assert len(job.error_message) == 2048

    async def test_higher_priority_runs_first(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "low", source_id="low", priority=2)
        await enqueue(async_client, auth_headers, "high", source_id="high", priority=9)

        one_at_a_time = test_settings.model_copy(update={"drain_batch_size": 1})
        async with session_factory() as session:
            result = await drain_jobs(session, one_at_a_time, StubVectorizer())

        assert result.processed_count == 1
        statuses = {job.source_id: job.status for job in await job_rows(session_factory)}
        assert statuses == {"high": "completed", "low": "pending"}

    async def test_governor_refuses_overlapping_drain(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "waiting")
        async with session_factory() as session:
            await begin_run(session, DRAIN_JOB_NAME, idempotency_key="drain:manual")

        response = await async_client.post("/v1/embeddings/drain", headers=auth_headers)

        data = response.json()["data"]
        assert data["processed_count"] == 0
        assert data["message"].startswith("Drain skipped")
        assert (await job_rows(session_factory))[0].status == "pending"

    async def test_cancel_request_stops_drain_between_jobs(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "first", source_id="a", priority=9)
        await enqueue(async_client, auth_headers, "second", source_id="b", priority=1)

        class CancellingVectorizer(StubVectorizer):
            async def vectorize(self, texts):
                async with session_factory() as session:
                    run_id = (
                        await session.execute(
                            select(JobRun.id).where(
                                JobRun.job_name == DRAIN_JOB_NAME,
                                JobRun.status == JobRunStatus.RUNNING.value,
                            )
                        )
                    ).scalar_one()
                    await request_cancel(session, run_id)
                return await super().vectorize(texts)

        async with session_factory() as session:
            result = await drain_jobs(session, test_settings, CancellingVectorizer())

        assert result.processed_count == 1
        assert "cancelled" in result.message

        statuses = {job.source_id: job.status for job in await job_rows(session_factory)}
        assert statuses == {"a": "completed", "b": "pending"}

        async with session_factory() as session:
            run = (
                await session.execute(select(JobRun).where(JobRun.job_name == DRAIN_JOB_NAME))
            ).scalar_one()
        assert run.status == JobRunStatus.CANCELLED.value
        assert run.meta["cancel_requested"] is True


@pytest.mark.parametrize("field", ["title", "summary"])
async def test_enqueue_response_envelope(async_client, auth_headers, field):
    response = await async_client.post(
        "/v1/embeddings/enqueue",
        json=enqueue_body("text", field=field),
        headers={**auth_headers, "X-Request-ID": "req-abc"},
    )

    body = response.json()
    assert body["ok"] is True
    assert body["message"] == "Embedding job enqueued"
    assert body["request_id"] == "req-abc"
    assert response.headers["X-Request-ID"] == "req-abc"


class TestStaleContent:
    async def test_new_content_cancels_retryable_failed_job(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "old text v1", priority=5)
        async with session_factory() as session:
            await drain_jobs(session, test_settings, FailingVectorizer())

        await enqueue(async_client, auth_headers, "new text v2", priority=9)

        jobs = await job_rows(session_factory)
        assert [job.status for job in jobs] == ["cancelled", "pending"]
        assert jobs[0].error_message == "Superseded by newer content"

    async def test_retry_of_old_text_never_replaces_newer_generation(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        from jobledger.v1.embeddings.hashing import content_hash

        await enqueue(async_client, auth_headers, "old text v1", priority=5)
        async with session_factory() as session:
            await drain_jobs(session, test_settings, FailingVectorizer())
        await enqueue(async_client, auth_headers, "new text v2", priority=9)

        async with session_factory() as session:
            result = await drain_jobs(session, test_settings, StubVectorizer())

        assert result.processed_count == 1
        assert await active_hashes(session_factory) == {content_hash("new text v2")}

        stale = await enqueue(async_client, auth_headers, "new text v2")
        assert stale["skipped"] is True

    async def test_in_flight_job_is_dropped_when_newer_content_completed(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        from jobledger.v1.embeddings.hashing import content_hash
        from jobledger.v1.embeddings.runner import SupersededError, _embed_job

        await enqueue(async_client, auth_headers, "old text v1")
        async with session_factory() as session:
            await session.execute(
                update(EmbeddingJob).values(status=EmbeddingJobStatus.PROCESSING.value)
            )
            await session.commit()
            old_job = dict(
                (await session.execute(select(EmbeddingJob.__table__))).mappings().one()
            )

        await enqueue(async_client, auth_headers, "new text v2")
        async with session_factory() as session:
            await drain_jobs(session, test_settings, StubVectorizer())
        assert await active_hashes(session_factory) == {content_hash("new text v2")}

        async with session_factory() as session:
            with pytest.raises(SupersededError):
                await _embed_job(session, old_job, StubVectorizer(), test_settings)
            await session.rollback()

        assert await active_hashes(session_factory) == {content_hash("new text v2")}


class TestAbandonedDrains:
    async def backdate(self, session_factory, minutes: int):
        past = datetime.now(UTC) - timedelta(minutes=minutes)
        async with session_factory() as session:
            await session.execute(update(JobRun).values(started_at=past))
            await session.execute(
                update(EmbeddingJob)
                .where(EmbeddingJob.status == EmbeddingJobStatus.PROCESSING.value)
                .values(started_at=past)
            )
            await session.commit()

    async def crash_drain(self, session_factory):
        """Leave a running drain run holding a processing job, as a dead worker would."""
        async with session_factory() as session:
            begun = await begin_run(session, DRAIN_JOB_NAME, idempotency_key="drain:crashed")
            await session.execute(
                update(EmbeddingJob).values(
                    status=EmbeddingJobStatus.PROCESSING.value,
                    batch_id=str(begun.record.id),
                    started_at=datetime.now(UTC),
                )
            )
            await session.commit()

    async def test_expired_drain_run_is_timed_out_and_job_reclaimed(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "orphaned")
        await self.crash_drain(session_factory)
        await self.backdate(session_factory, test_settings.drain_lease_minutes + 5)

        async with session_factory() as session:
            result = await drain_jobs(session, test_settings, StubVectorizer())

        assert result.processed_count == 1
        job = (await job_rows(session_factory))[0]
        assert job.status == EmbeddingJobStatus.COMPLETED.value
        assert job.retry_count == 1

        async with session_factory() as session:
            crashed = (
                await session.execute(
                    select(JobRun).where(JobRun.idempotency_key == "drain:crashed")
                )
            ).scalar_one()
        assert crashed.status == JobRunStatus.TIMEOUT.value
        assert crashed.error_code == "LEASE_EXPIRED"
        assert crashed.finished_at is not None

    async def test_drain_within_lease_still_blocks(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "in progress")
        await self.crash_drain(session_factory)

        async with session_factory() as session:
            result = await drain_jobs(session, test_settings, StubVectorizer())

        assert result.message == "Drain skipped: 1 drain(s) already running"
        job = (await job_rows(session_factory))[0]
        assert job.status == EmbeddingJobStatus.PROCESSING.value

    async def test_reclaimed_job_with_no_retries_left_stays_failed(
        self, async_client, auth_headers, session_factory, test_settings
    ):
        await enqueue(async_client, auth_headers, "exhausted")
        async with session_factory() as session:
            await session.execute(update(EmbeddingJob).values(retry_count=2))
            await session.commit()
        await self.crash_drain(session_factory)
        await self.backdate(session_factory, test_settings.drain_lease_minutes + 5)

        async with session_factory() as session:
            result = await drain_jobs(session, test_settings, StubVectorizer())

        assert result.processed_count == 0
        job = (await job_rows(session_factory))[0]
        assert job.status == EmbeddingJobStatus.FAILED.value
        assert job.retry_count == 3
        assert job.error_message == "Processing lease expired"
