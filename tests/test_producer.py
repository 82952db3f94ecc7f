"""Tests for organization-wide embedding enqueue."""

import uuid

import pytest
from sqlalchemy import Column, MetaData, String, Table, Text, Uuid, insert, select

from jobledger.v1.embeddings.client import EmbeddingWorkerClient
from jobledger.v1.embeddings.models import EmbeddingJob, EmbeddingJobStatus
from jobledger.v1.embeddings.producer import (
    collect_field_requests,
    enqueue_organization_embeddings,
)

ORG_ID = uuid.UUID("0b6f5f0e-9d1c-4c47-8d8e-3f1a2b4c5d6e")
OTHER_ORG_ID = uuid.UUID("a9e1c3b5-7d2f-4e60-8a1b-2c3d4e5f6a7b")

content_metadata = MetaData()

posts = Table(
    "posts",
    content_metadata,
    Column("id", String(36), primary_key=True),
    Column("organization_id", Uuid, nullable=False),
    Column("title", Text),
    Column("content", Text),
    Column("summary", Text),
)

services = Table(
    "services",
    content_metadata,
    Column("id", String(36), primary_key=True),
    Column("organization_id", Uuid, nullable=False),
    Column("name", Text),
)


@pytest.fixture
async def content_tables(test_engine):
    async with test_engine.begin() as conn:
        await conn.run_sync(content_metadata.create_all)
        await conn.execute(
            insert(posts),
            [
                {
                    "id": "p1",
                    "organization_id": ORG_ID,
                    "title": "Launch notes",
                    "content": "We shipped the new pipeline.",
                    "summary": None,
                },
                {
                    "id": "p2",
                    "organization_id": ORG_ID,
                    "title": "Roadmap",
                    "content": "   ",
                    "summary": "Next quarter plans",
                },
                {
                    "id": "p3",
                    "organization_id": OTHER_ORG_ID,
                    "title": "Someone else's post",
                    "content": "Not ours",
                    "summary": None,
                },
            ],
        )
        await conn.execute(
            insert(services), [{"id": "s1", "organization_id": ORG_ID, "name": "Consulting"}]
        )


async def test_collect_skips_blank_and_missing_fields(test_session, content_tables):
    requests = await collect_field_requests(
        test_session, "posts", ORG_ID, ["title", "description", "content", "summary"], priority=8
    )

    pairs = sorted((r.source_id, r.source_field) for r in requests)
    assert pairs == [
        ("p1", "content"),
        ("p1", "title"),
        ("p2", "summary"),
        ("p2", "title"),
    ]
    assert all(r.priority == 8 and r.organization_id == ORG_ID for r in requests)
    assert all(r.source_table == "posts" for r in requests)


async def test_collect_table_without_text_fields(test_session, content_tables):
    requests = await collect_field_requests(
        test_session, "services", ORG_ID, ["title", "description", "content", "summary"]
    )
    assert requests == []


async def test_enqueue_organization_embeddings(
    test_session, session_factory, content_tables, worker_client, test_settings
):
    result = await enqueue_organization_embeddings(
        test_session,
        worker_client,
        ORG_ID,
        content_types=["posts", "services"],
        priority=7,
        settings=test_settings,
    )

    assert result.success is True
    assert result.enqueued_count == 4
    assert result.skipped_count == 0
    assert result.failed_count == 0
    assert str(ORG_ID) in result.message

    async with session_factory() as session:
        jobs = (await session.execute(select(EmbeddingJob))).scalars().all()
    assert len(jobs) == 4
    assert {job.status for job in jobs} == {EmbeddingJobStatus.PENDING.value}
    assert {job.priority for job in jobs} == {7}
    assert {job.organization_id for job in jobs} == {ORG_ID}


async def test_rerun_skips_already_queued_content(
    test_session, content_tables, worker_client, test_settings
):
    await enqueue_organization_embeddings(
        test_session, worker_client, ORG_ID, content_types=["posts"], settings=test_settings
    )
    result = await enqueue_organization_embeddings(
        test_session, worker_client, ORG_ID, content_types=["posts"], settings=test_settings
    )

    assert result.success is True
    assert result.enqueued_count == 0
    assert result.skipped_count == 4


async def test_unreadable_table_is_reported_and_skipped(
    test_session, content_tables, worker_client, test_settings
):
    result = await enqueue_organization_embeddings(
        test_session,
        worker_client,
        ORG_ID,
        content_types=["faqs", "posts"],
        settings=test_settings,
    )

    assert result.success is True
    assert result.enqueued_count == 4
    assert "unreadable tables: faqs" in result.message


async def test_all_tables_unreadable(test_session, worker_client, test_settings):
    result = await enqueue_organization_embeddings(
        test_session, worker_client, ORG_ID, content_types=["faqs"], settings=test_settings
    )

    assert result.success is False
    assert "faqs" in result.message


async def test_failed_submissions_are_counted(
    test_session, content_tables, async_client, test_settings
):
    bad_settings = test_settings.model_copy(update={"worker_token": "wrong-token"})
    async with EmbeddingWorkerClient(bad_settings, http_client=async_client) as client:
        result = await enqueue_organization_embeddings(
            test_session, client, ORG_ID, content_types=["posts"], settings=test_settings
        )

    assert result.success is True
    assert result.enqueued_count == 0
    assert result.failed_count == 4


async def test_unknown_content_type(test_session, worker_client, test_settings):
    result = await enqueue_organization_embeddings(
        test_session, worker_client, ORG_ID, content_types=["widgets"], settings=test_settings
    )

    assert result.success is False
    assert result.message == "Unknown content types: widgets"


async def test_priority_out_of_range(test_session, worker_client, test_settings):
    result = await enqueue_organization_embeddings(
        test_session, worker_client, ORG_ID, priority=11, settings=test_settings
    )

    assert result.success is False
    assert "priority" in result.message
