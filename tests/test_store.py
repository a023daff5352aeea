"""
Tests for the job record store: guarded transitions and attempt counting.
"""

import asyncio
import uuid
from datetime import datetime

import pytest
from sqlalchemy.exc import IntegrityError

from jobrelay.v1.jobs.models import Job, JobStatus
from jobrelay.v1.jobs.store import JobStore


@pytest.fixture
def store():
    return JobStore()


@pytest.fixture
async def session(database):
    async with database.SessionLocal() as session:
        yield session


async def make_job(store, session, **fields) -> Job:
    values = {
        "id": uuid.uuid4(),
        "type": "email:send",
        "status": JobStatus.PENDING.value,
        "payload": {"to": "a@example.com"},
        "owner_id": "user-1",
        "attempts": 0,
        "max_attempts": 3,
    }
    values.update(fields)
    return await store.add(session, Job(**values))


class TestFind:
    async def test_find_by_id_with_owner_scope(self, store, session):
        job = await make_job(store, session)

        assert (await store.find_by_id(session, job.id)).id == job.id
        assert (await store.find_by_id(session, job.id, "user-1")).id == job.id
        assert await store.find_by_id(session, job.id, "user-2") is None
        assert await store.find_by_id(session, uuid.uuid4()) is None

    async def test_duplicate_idempotency_key_rejected(self, store, session):
        await make_job(store, session, idempotency_key="key-1")

        with pytest.raises(IntegrityError):
            await make_job(store, session, idempotency_key="key-1")
        await session.rollback()

        found = await store.find_by_idempotency_key(session, "key-1")
        assert found is not None


class TestTransition:
    async def test_processing_sets_started_at_once(self, store, session):
        job = await make_job(store, session)

        first = await store.transition(session, job.id, JobStatus.PROCESSING)
        started_at = first.started_at
        await asyncio.sleep(0.01)
        second = await store.transition(session, job.id, JobStatus.PROCESSING)

        assert second.status == JobStatus.PROCESSING.value
        assert second.started_at == started_at

    async def test_completed_stores_result(self, store, session):
        job = await make_job(store, session)

        updated = await store.transition(
            session, job.id, JobStatus.COMPLETED, result={"messageId": "m-1"}
        )

        assert updated.status == JobStatus.COMPLETED.value
        assert updated.result == {"messageId": "m-1"}
        assert updated.completed_at is not None
        assert updated.error is None

    async def test_completed_without_result_stores_empty_object(self, store, session):
        job = await make_job(store, session)

        updated = await store.transition(session, job.id, JobStatus.COMPLETED)
        assert updated.result == {}

    async def test_failed_stores_error(self, store, session):
        job = await make_job(store, session)

        updated = await store.transition(
            session, job.id, JobStatus.FAILED, error="boom", attempts=3
        )

        assert updated.status == JobStatus.FAILED.value
        assert updated.error == "boom"
        assert updated.failed_at is not None
        assert updated.attempts == 3
        assert updated.result is None

    async def test_explicit_entry_time(self, store, session):
        job = await make_job(store, session)
        at = datetime(2026, 1, 2, 3, 4, 5)

        updated = await store.transition(session, job.id, JobStatus.PROCESSING, at=at)
        assert updated.started_at.replace(tzinfo=None) == at

    @pytest.mark.parametrize(
        "terminal", [JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED]
    )
    async def test_terminal_records_never_change(self, store, session, terminal):
        job = await make_job(store, session)
        await store.transition(session, job.id, terminal, error="first")

        for target in JobStatus:
            assert await store.transition(session, job.id, target, error="second") is None

        reloaded = await store.find_by_id(session, job.id)
        assert reloaded.status == terminal.value

    async def test_missing_record(self, store, session):
        assert await store.transition(session, uuid.uuid4(), JobStatus.PROCESSING) is None


class TestRecordFailure:
    async def test_below_ceiling_stays_processing(self, store, session):
        job = await make_job(store, session, max_attempts=3)

        outcome = await store.record_failure(session, job.id, "boom")

        assert outcome.applied
        assert outcome.will_retry
        assert outcome.attempts == 1

        reloaded = await store.find_by_id(session, job.id)
        assert reloaded.status == JobStatus.PROCESSING.value
        assert reloaded.attempts == 1
        assert reloaded.error is None
        assert reloaded.failed_at is None
        assert reloaded.started_at is not None

    async def test_reaching_ceiling_fails_record(self, store, session):
        job = await make_job(store, session, max_attempts=2)

        first = await store.record_failure(session, job.id, "first")
        second = await store.record_failure(session, job.id, "second")

        assert first.will_retry
        assert second.applied
        assert not second.will_retry
        assert second.status == JobStatus.FAILED.value

        reloaded = await store.find_by_id(session, job.id)
        assert reloaded.status == JobStatus.FAILED.value
        assert reloaded.attempts == 2
        assert reloaded.error == "second"
        assert reloaded.failed_at is not None

    async def test_attempts_never_exceed_ceiling(self, store, session):
        job = await make_job(store, session, max_attempts=1)

        await store.record_failure(session, job.id, "boom")
        extra = await store.record_failure(session, job.id, "again")

        assert not extra.applied
        assert extra.status == JobStatus.FAILED.value
        assert extra.attempts == 1

    async def test_cancelled_record_ignores_failures(self, store, session):
        job = await make_job(store, session)
        await store.transition(session, job.id, JobStatus.CANCELLED)

        outcome = await store.record_failure(session, job.id, "late")

        assert not outcome.applied
        reloaded = await store.find_by_id(session, job.id)
        assert reloaded.status == JobStatus.CANCELLED.value
        assert reloaded.attempts == 0
        assert reloaded.error is None

    async def test_missing_record(self, store, session):
        outcome = await store.record_failure(session, uuid.uuid4(), "boom")
        assert not outcome.applied
        assert outcome.status is None


class TestListAndStats:
    async def test_list_by_owner_paginates(self, store, session):
        for _ in range(5):
            await make_job(store, session, owner_id="alice")
        await make_job(store, session, owner_id="bob")

        seen = set()
        for offset in (0, 2, 4):
            jobs, total = await store.list_by_owner(
                session, "alice", limit=2, offset=offset
            )
            assert total == 5
            seen.update(job.id for job in jobs)

        assert len(seen) == 5

    async def test_list_filters(self, store, session):
        done = await make_job(store, session, type="data:export")
        await make_job(store, session, type="email:send")
        await store.transition(session, done.id, JobStatus.COMPLETED)

        by_status, total = await store.list_by_owner(
            session, "user-1", status=JobStatus.COMPLETED
        )
        assert total == 1
        assert by_status[0].id == done.id

        by_type, total = await store.list_by_owner(session, "user-1", job_type="email:send")
        assert total == 1
        assert by_type[0].type == "email:send"

    async def test_stats(self, store, session):
        job = await make_job(store, session)
        await make_job(store, session, type="file:process")
        await make_job(store, session, owner_id="other")
        await store.transition(session, job.id, JobStatus.COMPLETED)

        stats = await store.stats(session, owner_id="user-1")

        assert stats["total_jobs"] == 2
        assert stats["by_status"]["completed"] == 1
        assert stats["by_status"]["pending"] == 1
        assert stats["by_status"]["failed"] == 0
        assert stats["by_type"] == {"email:send": 1, "file:process": 1}
        assert stats["active"] == 1

        everything = await store.stats(session)
        assert everything["total_jobs"] == 3
