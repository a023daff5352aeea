"""
Tests for the execution engine adapters.

Both adapters are run through the same scenarios so they stay
interchangeable behind the ExecutionEngine protocol.
"""

import pytest

from jobrelay.v1.jobs.engine import (
    DatabaseEngine,
    DispatchOptions,
    ItemState,
    MemoryEngine,
    backoff_delay_seconds,
)

QUEUE = "email-send"
WORKER = "worker-1"


@pytest.fixture(params=["database", "memory"])
async def engine(request, database):
    if request.param == "memory":
        engine = MemoryEngine()
    else:
        engine = DatabaseEngine(database.SessionLocal)
    yield engine
    await engine.close()


async def add_item(engine, item_id: str, **options) -> bool:
    return await engine.add(
        QUEUE,
        "email:send",
        item_id,
        {"job_id": item_id, "payload": {"to": "a@example.com"}},
        DispatchOptions(backoff_base_ms=0, **options),
    )


class TestBackoff:
    def test_disabled_when_base_is_zero(self):
        assert backoff_delay_seconds(0, 3, 300) == 0.0

    def test_doubles_per_attempt(self):
        assert backoff_delay_seconds(2000, 1, 300, jitter=False) == 2.0
        assert backoff_delay_seconds(2000, 2, 300, jitter=False) == 4.0
        assert backoff_delay_seconds(2000, 3, 300, jitter=False) == 8.0

    def test_capped_at_max_delay(self):
        assert backoff_delay_seconds(2000, 20, 300, jitter=False) == 300

    def test_jitter_stays_within_a_quarter(self):
        for _ in range(50):
            delay = backoff_delay_seconds(4000, 1, 300)
            assert 3.0 <= delay <= 5.0


class TestAddAndGet:
    async def test_add_stores_waiting_item(self, engine):
        assert await add_item(engine, "a") is True

        item = await engine.get(QUEUE, "a")
        assert item is not None
        assert item.state == ItemState.WAITING.value
        assert item.attempts_made == 0
        assert item.job_id == "a"
        assert item.payload == {"to": "a@example.com"}

    async def test_duplicate_item_id_is_absorbed(self, engine):
        assert await add_item(engine, "a") is True
        assert await add_item(engine, "a") is False

        counts = await engine.counts(QUEUE)
        assert counts[ItemState.WAITING.value] == 1

    async def test_delayed_item_is_not_claimable_yet(self, engine):
        await add_item(engine, "later", delay_ms=60_000)

        item = await engine.get(QUEUE, "later")
        assert item.state == ItemState.DELAYED.value
        assert await engine.claim(QUEUE, WORKER, 10) == []

    async def test_get_missing_item(self, engine):
        assert await engine.get(QUEUE, "missing") is None


class TestClaim:
    async def test_claim_marks_items_active(self, engine):
        await add_item(engine, "a")
        await add_item(engine, "b")
        await add_item(engine, "c")

        claimed = await engine.claim(QUEUE, WORKER, 2)

        assert len(claimed) == 2
        for item in claimed:
            assert item.state == ItemState.ACTIVE.value
            assert item.locked_by == WORKER
            assert item.processed_at is not None

        counts = await engine.counts(QUEUE)
        assert counts[ItemState.ACTIVE.value] == 2
        assert counts[ItemState.WAITING.value] == 1

    async def test_claim_orders_by_priority(self, engine):
        await add_item(engine, "low", priority=5)
        await add_item(engine, "high", priority=1)

        claimed = await engine.claim(QUEUE, WORKER, 1)
        assert [item.item_id for item in claimed] == ["high"]

    async def test_claimed_item_is_not_claimed_twice(self, engine):
        await add_item(engine, "a")

        assert len(await engine.claim(QUEUE, WORKER, 5)) == 1
        assert await engine.claim(QUEUE, "worker-2", 5) == []

    async def test_zero_limit_claims_nothing(self, engine):
        await add_item(engine, "a")
        assert await engine.claim(QUEUE, WORKER, 0) == []


class TestOutcomes:
    async def test_complete_stores_return_value(self, engine):
        await add_item(engine, "a")
        await engine.claim(QUEUE, WORKER, 1)

        assert await engine.complete(QUEUE, "a", WORKER, {"ok": True}) is True

        item = await engine.get(QUEUE, "a")
        assert item.state == ItemState.COMPLETED.value
        assert item.return_value == {"ok": True}
        assert item.finished_at is not None
        assert item.locked_by is None

    async def test_complete_by_other_worker_is_rejected(self, engine):
        await add_item(engine, "a")
        await engine.claim(QUEUE, WORKER, 1)

        assert await engine.complete(QUEUE, "a", "intruder", {}) is False
        item = await engine.get(QUEUE, "a")
        assert item.state == ItemState.ACTIVE.value

    async def test_fail_with_retry_requeues(self, engine):
        await add_item(engine, "a", attempts=3)
        await engine.claim(QUEUE, WORKER, 1)

        item = await engine.fail(QUEUE, "a", WORKER, "boom", retry=True)

        assert item.state == ItemState.DELAYED.value
        assert item.attempts_made == 1
        assert item.failed_reason == "boom"
        assert item.finished_at is None

        # Zero backoff makes the retry due immediately
        claimed = await engine.claim(QUEUE, WORKER, 1)
        assert [c.item_id for c in claimed] == ["a"]
        assert claimed[0].attempts_made == 1

    async def test_fail_without_retry_is_final(self, engine):
        await add_item(engine, "a", attempts=1)
        await engine.claim(QUEUE, WORKER, 1)

        item = await engine.fail(QUEUE, "a", WORKER, "boom", retry=False)

        assert item.state == ItemState.FAILED.value
        assert item.attempts_made == 1
        assert item.finished_at is not None
        assert await engine.claim(QUEUE, WORKER, 1) == []

    async def test_attempt_budget_decides_retry_by_default(self, engine):
        await add_item(engine, "a", attempts=2)

        await engine.claim(QUEUE, WORKER, 1)
        first = await engine.fail(QUEUE, "a", WORKER, "boom")
        assert first.state == ItemState.DELAYED.value

        await engine.claim(QUEUE, WORKER, 1)
        second = await engine.fail(QUEUE, "a", WORKER, "boom")
        assert second.state == ItemState.FAILED.value
        assert second.attempts_made == 2

    async def test_fail_after_claim_expired_returns_none(self, engine):
        await add_item(engine, "a")
        await engine.claim(QUEUE, "stale-worker", 1)
        await engine.recover_stalled(QUEUE, -1)
        await engine.claim(QUEUE, WORKER, 1)

        assert await engine.fail(QUEUE, "a", "stale-worker", "late") is None
        item = await engine.get(QUEUE, "a")
        assert item.state == ItemState.ACTIVE.value
        assert item.locked_by == WORKER
        assert item.attempts_made == 0

    async def test_fail_unclaimed_item_returns_none(self, engine):
        await add_item(engine, "a")
        assert await engine.fail(QUEUE, "a", WORKER, "boom", retry=True) is None


class TestRemove:
    async def test_remove_waiting_item(self, engine):
        await add_item(engine, "a")

        assert await engine.remove(QUEUE, "a") is True
        assert await engine.get(QUEUE, "a") is None

    async def test_remove_claimed_item_is_refused(self, engine):
        await add_item(engine, "a")
        await engine.claim(QUEUE, WORKER, 1)

        assert await engine.remove(QUEUE, "a") is False
        assert await engine.get(QUEUE, "a") is not None

    async def test_remove_missing_item(self, engine):
        assert await engine.remove(QUEUE, "missing") is False


class TestStalledRecovery:
    async def test_expired_claim_is_redelivered(self, engine):
        await add_item(engine, "a")
        await engine.claim(QUEUE, WORKER, 1)

        # Negative timeout puts the cutoff in the future: every claim is stale
        stalled = await engine.recover_stalled(QUEUE, -1)

        assert stalled == ["a"]
        item = await engine.get(QUEUE, "a")
        assert item.state == ItemState.WAITING.value
        assert item.stalled_count == 1
        assert item.locked_by is None

        # The original holder lost its claim
        assert await engine.complete(QUEUE, "a", WORKER, {}) is False
        assert len(await engine.claim(QUEUE, "worker-2", 1)) == 1

    async def test_fresh_claim_is_left_alone(self, engine):
        await add_item(engine, "a")
        await engine.claim(QUEUE, WORKER, 1)

        assert await engine.recover_stalled(QUEUE, 300) == []


class TestRetention:
    async def _finish(self, engine, item_id: str, **options):
        await add_item(engine, item_id, **options)
        await engine.claim(QUEUE, WORKER, 1)
        await engine.complete(QUEUE, item_id, WORKER, {"id": item_id})

    async def test_count_retention_keeps_newest(self, engine):
        await self._finish(engine, "old", keep_completed_count=1)
        await self._finish(engine, "new", keep_completed_count=1)

        removed = await engine.clean(QUEUE)

        assert removed == 1
        assert await engine.get(QUEUE, "old") is None
        assert await engine.get(QUEUE, "new") is not None

    async def test_age_retention_for_failed_items(self, engine):
        await add_item(engine, "a", attempts=1, keep_failed_age_s=-1)
        await engine.claim(QUEUE, WORKER, 1)
        await engine.fail(QUEUE, "a", WORKER, "boom", retry=False)

        assert await engine.clean(QUEUE) == 1
        assert await engine.get(QUEUE, "a") is None

    async def test_unfinished_items_are_kept(self, engine):
        await add_item(engine, "a", keep_completed_count=0)
        assert await engine.clean(QUEUE) == 0
        assert await engine.get(QUEUE, "a") is not None
