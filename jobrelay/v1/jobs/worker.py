"""
Worker pool: one consumer per job type, pulling items from the execution engine.
"""

import asyncio
import os
import socket
import time
from collections import deque
from collections.abc import Callable, Iterable
from typing import Any

from jobrelay.config.logging import get_logger, job_logger
from jobrelay.config.settings import Settings, WorkerLimits
from jobrelay.v1.core.registries import ProcessorRegistry
from jobrelay.v1.jobs.dispatcher import sanitize_queue_name
from jobrelay.v1.jobs.engine import EngineItem, ExecutionEngine, ItemState
from jobrelay.v1.jobs.lifecycle import LifecycleHandler
from jobrelay.v1.jobs.models import JobType

logger = get_logger(__name__)

SKIPPED_REASON = "Skipped: job record missing or already terminal"


class RateLimiter:
    """Sliding-window limiter: at most ``max_calls`` dequeues per ``period_s``."""

    def __init__(
        self,
        max_calls: int,
        period_s: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_calls = max_calls
        self.period_s = period_s
        self._clock = clock
        self._calls: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._calls and self._calls[0] <= now - self.period_s:
            self._calls.popleft()

    def available(self) -> int:
        """Dequeues still allowed in the current window."""
        self._prune(self._clock())
        return max(0, self.max_calls - len(self._calls))

    def record(self, count: int = 1) -> None:
        now = self._clock()
        self._calls.extend([now] * count)

    def wait_time(self) -> float:
        """Seconds until the next dequeue is allowed."""
        now = self._clock()
        self._prune(now)
        if len(self._calls) < self.max_calls:
            return 0.0
        return max(0.0, self._calls[0] + self.period_s - now)


class QueueConsumer:
    """
    Consumer group for a single job type.

    Features:
    - Bounded concurrency and a sliding-window dequeue rate limit
    - Heartbeats for claimed items and stalled item recovery
    - Retention cleanup of finished items
    """

    def __init__(
        self,
        job_type: str,
        settings: Settings,
        engine: ExecutionEngine,
        registry: ProcessorRegistry,
        lifecycle: LifecycleHandler,
        worker_id: str,
        limits: WorkerLimits | None = None,
    ):
        self.job_type = job_type
        self.queue = sanitize_queue_name(job_type)
        self.settings = settings
        self.engine = engine
        self.registry = registry
        self.lifecycle = lifecycle
        self.worker_id = worker_id

        limits = limits or WorkerLimits()
        self.concurrency = limits.concurrency or settings.worker_concurrency
        self.rate_limiter = RateLimiter(
            limits.rate_limit_max or settings.worker_rate_limit_max,
            (limits.rate_limit_duration_ms or settings.worker_rate_limit_duration_ms)
            / 1000,
        )

        self.running = False
        self.active_items: set[str] = set()
        self._tasks: set[asyncio.Task] = set()
        self._stopping = asyncio.Event()

    @property
    def free_slots(self) -> int:
        return max(0, self.concurrency - len(self.active_items))

    async def start(self) -> None:
        """Run the claim, heartbeat, stall recovery and cleanup loops."""
        if self.running:
            raise RuntimeError(f"Consumer for {self.job_type} is already running")

        self.running = True
        self._stopping.clear()
        logger.info(
            "Starting queue consumer",
            job_type=self.job_type,
            queue=self.queue,
            worker_id=self.worker_id,
            concurrency=self.concurrency,
            rate_limit_max=self.rate_limiter.max_calls,
            rate_limit_period_s=self.rate_limiter.period_s,
        )

        try:
            await asyncio.gather(
                self._claim_loop(),
                self._heartbeat_loop(),
                self._stall_recovery_loop(),
                self._cleanup_loop(),
            )
        finally:
            self.running = False

    async def stop(self, timeout_s: float = 30) -> None:
        """Stop claiming and wait (bounded) for in-flight items."""
        self.running = False
        self._stopping.set()

        if self._tasks:
            _, pending = await asyncio.wait(set(self._tasks), timeout=timeout_s)
            if pending:
                logger.warning(
                    "Consumer stopped with active items",
                    job_type=self.job_type,
                    worker_id=self.worker_id,
                    active_items=len(self.active_items),
                )

    async def run_once(self) -> int:
        """Claim as many items as concurrency and rate limit allow and start them.

        Returns:
            Number of items claimed
        """
        limit = min(self.free_slots, self.rate_limiter.available())
        if limit <= 0:
            return 0

        items = await self.engine.claim(self.queue, self.worker_id, limit)
        if not items:
            return 0

        self.rate_limiter.record(len(items))
        logger.info(
            "Claimed items",
            job_type=self.job_type,
            worker_id=self.worker_id,
            item_count=len(items),
            item_ids=[item.item_id for item in items],
        )

        for item in items:
            self.active_items.add(item.item_id)
            task = asyncio.create_task(self._run_item(item))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return len(items)

    async def drain(self) -> None:
        """Wait for every in-flight item to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))

    async def process(self, item: EngineItem) -> None:
        """
        Run one claimed item through its processor and report the outcome.

        The engine outcome is written before the record outcome so that a
        record write lost to a crash is recovered by read-path
        reconciliation. Outcomes from a worker whose claim has expired are
        discarded without touching the record.
        """
        log = job_logger(logger, self.job_type, item.item_id, item.job_id)

        if not await self.lifecycle.on_started(item.job_id):
            # Record missing or already terminal (e.g. cancelled): retire the item unrun
            await self.engine.fail(
                self.queue, item.item_id, self.worker_id, SKIPPED_REASON, retry=False
            )
            log.info("Item skipped")
            return

        log.info("Processing item", attempts_made=item.attempts_made)

        try:
            result = await self.registry.invoke(self.job_type, item.payload)
        except Exception as e:
            await self._handle_failure(item, e, log)
            return

        if not await self.engine.complete(
            self.queue, item.item_id, self.worker_id, result
        ):
            log.warning("Claim lost before completion, outcome discarded")
            return

        await self.lifecycle.on_completed(item.job_id, result)
        log.info("Item completed")

    async def _handle_failure(self, item: EngineItem, exc: Exception, log: Any) -> None:
        error = str(exc) or exc.__class__.__name__
        log.warning("Item processing failed", error=error)

        failed = await self.engine.fail(self.queue, item.item_id, self.worker_id, error)
        if failed is None:
            log.warning("Claim lost before failure, outcome discarded")
            return

        await self.lifecycle.on_failed(item.job_id, error)

        if failed.state != ItemState.FAILED.value:
            log.info(
                "Item scheduled for retry",
                attempts_made=failed.attempts_made,
                run_at=failed.run_at.isoformat() if failed.run_at else None,
            )
        else:
            log.error("Item failed permanently", attempts_made=failed.attempts_made)

    async def _run_item(self, item: EngineItem) -> None:
        try:
            await self.process(item)
        except Exception:
            # Store or engine unreachable: the claim expires and the item is re-delivered
            logger.exception(
                "Error processing item",
                job_type=self.job_type,
                item_id=item.item_id,
                worker_id=self.worker_id,
            )
        finally:
            self.active_items.discard(item.item_id)

    async def _wait(self, seconds: float) -> bool:
        """Sleep unless stopping. Returns True when the consumer is stopping."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except TimeoutError:
            pass
        return self._stopping.is_set()

    async def _claim_loop(self) -> None:
        poll_s = self.settings.worker_poll_interval_ms / 1000
        while self.running:
            try:
                claimed = await self.run_once()
                if claimed:
                    continue

                delay = poll_s
                if self.free_slots and not self.rate_limiter.available():
                    delay = min(poll_s, self.rate_limiter.wait_time()) or poll_s
                if await self._wait(delay):
                    break
            except Exception:
                logger.exception(
                    "Error in claim loop", job_type=self.job_type, worker_id=self.worker_id
                )
                if await self._wait(5):  # Back off on errors
                    break

    async def _heartbeat_loop(self) -> None:
        while self.running:
            if await self._wait(self.settings.worker_heartbeat_interval_s):
                break
            try:
                await self.engine.heartbeat(
                    self.queue, list(self.active_items), self.worker_id
                )
            except Exception:
                logger.exception(
                    "Error sending heartbeats",
                    job_type=self.job_type,
                    worker_id=self.worker_id,
                )

    async def _stall_recovery_loop(self) -> None:
        while self.running:
            try:
                await self.recover_stalled()
            except Exception:
                logger.exception(
                    "Error recovering stalled items",
                    job_type=self.job_type,
                    worker_id=self.worker_id,
                )
            if await self._wait(self.settings.worker_stall_check_interval_s):
                break

    async def recover_stalled(self) -> list[str]:
        stalled = await self.engine.recover_stalled(
            self.queue, self.settings.worker_visibility_timeout_s
        )
        for item_id in stalled:
            await self.lifecycle.on_stalled(self.job_type, item_id)
        return stalled

    async def _cleanup_loop(self) -> None:
        while self.running:
            try:
                removed = await self.engine.clean(self.queue)
                if removed:
                    logger.info(
                        "Cleaned up finished items",
                        job_type=self.job_type,
                        removed_count=removed,
                    )
            except Exception:
                logger.exception(
                    "Error cleaning finished items", job_type=self.job_type
                )
            if await self._wait(self.settings.worker_cleanup_interval_s):
                break


class WorkerPool:
    """One QueueConsumer per job type sharing a worker identity."""

    def __init__(
        self,
        settings: Settings,
        engine: ExecutionEngine,
        registry: ProcessorRegistry,
        lifecycle: LifecycleHandler,
        job_types: Iterable[str] | None = None,
    ):
        self.settings = settings
        self.worker_id = f"{socket.gethostname()}-{os.getpid()}-{id(self)}"
        self.consumers: dict[str, QueueConsumer] = {
            job_type: QueueConsumer(
                job_type,
                settings,
                engine,
                registry,
                lifecycle,
                self.worker_id,
                settings.worker_overrides.get(job_type),
            )
            for job_type in (job_types or JobType.values())
        }
        self.running = False

    async def start(self) -> None:
        """Run every consumer until stopped."""
        if self.running:
            raise RuntimeError("Worker pool is already running")

        self.running = True
        logger.info(
            "Starting worker pool",
            worker_id=self.worker_id,
            job_types=list(self.consumers),
        )
        try:
            await asyncio.gather(
                *(consumer.start() for consumer in self.consumers.values())
            )
        except Exception:
            logger.exception("Worker pool crashed", worker_id=self.worker_id)
            raise
        finally:
            self.running = False

    async def stop(self, timeout_s: float = 30) -> None:
        """Stop the pool gracefully."""
        logger.info("Stopping worker pool", worker_id=self.worker_id)
        await asyncio.gather(
            *(consumer.stop(timeout_s) for consumer in self.consumers.values())
        )

    def consumer(self, job_type: str) -> QueueConsumer:
        return self.consumers[job_type]

    async def run_once(self) -> int:
        """One claim round on every consumer."""
        claimed = 0
        for consumer in self.consumers.values():
            claimed += await consumer.run_once()
        return claimed

    async def drain(self) -> None:
        for consumer in self.consumers.values():
            await consumer.drain()

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """Claim and finish items until no consumer finds due work.

        Returns:
            Total number of items processed
        """
        processed = 0
        for _ in range(max_rounds):
            claimed = await self.run_once()
            await self.drain()
            if not claimed:
                break
            processed += claimed
        return processed
