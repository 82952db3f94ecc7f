"""Tests for advisory concurrency admission."""

import uuid
from datetime import UTC, datetime, timedelta

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from jobledger.v1.runs.governor import check_concurrent_running, count_running
from jobledger.v1.runs.ledger import begin_run, complete_success
from jobledger.v1.runs.models import JobRun, JobRunStatus


async def add_runs(session, job_name, count, status=JobRunStatus.RUNNING, started_at=None):
    now = datetime.now(UTC)
    for _ in range(count):
        session.add(
            JobRun(
                id=uuid.uuid4(),
                job_name=job_name,
                request_id=str(uuid.uuid4()),
                status=status.value,
                started_at=started_at or now,
                meta={},
                created_at=now,
                updated_at=now,
            )
        )
    await session.commit()


async def test_refuses_when_at_limit(test_session):
    """Six running drains against a limit of five refuses admission."""
    await add_runs(test_session, "embedding-drain", 6)

    check = await check_concurrent_running(test_session, "embedding-drain", 5)

    assert check.can_run is False
    assert check.current_running == 6


async def test_admits_below_limit(test_session):
    await add_runs(test_session, "embedding-drain", 2)

    check = await check_concurrent_running(test_session, "embedding-drain", 5)

    assert check.can_run is True
    assert check.current_running == 2


async def test_only_counts_running_rows_of_same_job(test_session):
    await add_runs(test_session, "embedding-drain", 3, status=JobRunStatus.SUCCEEDED)
    await add_runs(test_session, "embedding-drain", 1, status=JobRunStatus.FAILED)
    await add_runs(test_session, "nightly-export", 4)

    assert await count_running(test_session, "embedding-drain") == 0


async def test_ignores_runs_started_outside_window(test_session):
    stale = datetime.now(UTC) - timedelta(hours=30)
    await add_runs(test_session, "embedding-drain", 3, started_at=stale)
    await add_runs(test_session, "embedding-drain", 1)

    check = await check_concurrent_running(test_session, "embedding-drain", 1)

    assert check.current_running == 1
    assert check.can_run is False


async def test_completed_runs_free_their_slot(test_session):
    begun = await begin_run(test_session, "embedding-drain")
    assert (await check_concurrent_running(test_session, "embedding-drain", 1)).can_run is False

    await complete_success(test_session, begun.record.id)

    assert (await check_concurrent_running(test_session, "embedding-drain", 1)).can_run is True


async def test_fails_open_on_store_error(test_session, monkeypatch):
    async def broken_execute(self, *args, **kwargs):
        raise OperationalError("SELECT", {}, Exception("could not connect to server"))

    monkeypatch.setattr(AsyncSession, "execute", broken_execute)

    check = await check_concurrent_running(test_session, "embedding-drain", 1)

    assert check.can_run is True
    assert check.current_running == 0
