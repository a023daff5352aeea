"""
Execution engine adapters.

The engine stores work items per queue, hands them to consumers, counts
attempts, schedules retries with backoff and keeps finished items around for
inspection. The orchestrator only talks to it through ``ExecutionEngine``;
two adapters are provided:

- ``DatabaseEngine``: a table-backed queue (``queue_items``) using
  ``SELECT ... FOR UPDATE SKIP LOCKED`` claims, heartbeats and a visibility
  timeout for stalled claims.
- ``MemoryEngine``: the same semantics held in process memory, for local
  development and tests.
"""

import dataclasses
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Protocol

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobrelay.config.logging import get_logger
from jobrelay.v1.jobs.models import QueueItem, utcnow

logger = get_logger(__name__)


class ItemState(str, Enum):
    """Engine-side state of a work item."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


CLAIMABLE_STATES = (ItemState.WAITING.value, ItemState.DELAYED.value)


@dataclass(frozen=True)
class DispatchOptions:
    """Per-item dispatch policy handed to the engine."""

    attempts: int = 3
    backoff_base_ms: int = 2000
    priority: int = 0
    delay_ms: int = 0
    keep_completed_age_s: int | None = None
    keep_completed_count: int | None = None
    keep_failed_age_s: int | None = None


@dataclass
class EngineItem:
    """The engine's view of one work item."""

    queue: str
    item_id: str
    name: str
    data: dict[str, Any]
    state: str
    attempts_made: int = 0
    max_attempts: int = 3
    priority: int = 0
    backoff_base_ms: int = 0
    run_at: datetime | None = None
    stalled_count: int = 0
    locked_by: str | None = None
    heartbeat_at: datetime | None = None
    return_value: dict[str, Any] | None = None
    failed_reason: str | None = None
    processed_at: datetime | None = None
    finished_at: datetime | None = None
    keep_completed_age_s: int | None = None
    keep_completed_count: int | None = None
    keep_failed_age_s: int | None = None
    created_at: datetime | None = None

    @property
    def job_id(self) -> str | None:
        """Job record id embedded in the item at dispatch time."""
        return self.data.get("job_id")

    @property
    def payload(self) -> dict[str, Any]:
        return self.data.get("payload") or {}

    @classmethod
    def from_row(cls, row: QueueItem) -> "EngineItem":
        return cls(
            **{f.name: getattr(row, f.name) for f in dataclasses.fields(cls)}
        )


def backoff_delay_seconds(
    base_ms: int, attempts_made: int, max_delay_s: float, jitter: bool = True
) -> float:
    """Exponential backoff: base * 2^(attempt - 1), capped, with ±25% jitter."""
    if base_ms <= 0:
        return 0.0

    delay = min(max_delay_s, (base_ms / 1000) * (2 ** max(0, attempts_made - 1)))
    if jitter:
        delay += delay * 0.25 * (2 * random.random() - 1)
    return max(0.0, delay)


def _expired_finished_items(
    items: list[EngineItem], now: datetime
) -> list[str]:
    """Pick finished items whose retention window (age and/or count) lapsed.

    ``items`` must be ordered newest first.
    """
    expired = []
    completed_seen = 0
    for item in items:
        finished = item.finished_at
        if item.state == ItemState.COMPLETED.value:
            completed_seen += 1
            max_age = item.keep_completed_age_s
            if (
                item.keep_completed_count is not None
                and completed_seen > item.keep_completed_count
            ):
                expired.append(item.item_id)
                continue
        else:
            max_age = item.keep_failed_age_s

        if max_age is not None and finished is not None:
            if _naive(finished) < _naive(now) - timedelta(seconds=max_age):
                expired.append(item.item_id)
    return expired


def _should_retry(attempts_made: int, max_attempts: int, retry: bool | None) -> bool:
    if retry is None:
        return attempts_made < max_attempts
    return retry


def _naive(value: datetime) -> datetime:
    # SQLite hands timestamps back without tzinfo; everything is stored in UTC
    return value.replace(tzinfo=None)


class ExecutionEngine(Protocol):
    """At-least-once work item store consumed by the dispatcher and workers."""

    async def add(
        self,
        queue: str,
        name: str,
        item_id: str,
        data: dict[str, Any],
        options: DispatchOptions,
    ) -> bool:
        """Store a new item. Returns False when ``item_id`` already exists."""
        ...

    async def get(self, queue: str, item_id: str) -> EngineItem | None: ...

    async def remove(self, queue: str, item_id: str) -> bool:
        """Remove an item that no consumer has claimed yet."""
        ...

    async def claim(self, queue: str, worker_id: str, limit: int) -> list[EngineItem]:
        """Claim up to ``limit`` due items for ``worker_id``."""
        ...

    async def heartbeat(self, queue: str, item_ids: list[str], worker_id: str) -> None: ...

    async def complete(
        self,
        queue: str,
        item_id: str,
        worker_id: str,
        return_value: dict[str, Any] | None,
    ) -> bool:
        """Mark a claimed item completed. False when the claim was lost."""
        ...

    async def fail(
        self,
        queue: str,
        item_id: str,
        worker_id: str,
        reason: str,
        retry: bool | None = None,
    ) -> EngineItem | None:
        """Record a failed attempt; re-queue with backoff or fail for good.

        Returns None when ``worker_id`` no longer holds the claim. With
        ``retry=None`` the item's own attempt budget decides.
        """
        ...

    async def recover_stalled(
        self, queue: str, visibility_timeout_s: int
    ) -> list[str]:
        """Re-deliver items whose claim expired without an outcome."""
        ...

    async def clean(self, queue: str) -> int:
        """Apply retention to finished items."""
        ...

    async def counts(self, queue: str) -> dict[str, int]: ...

    async def close(self) -> None: ...


class DatabaseEngine:
    """Table-backed execution engine."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        max_backoff_s: float = 300,
    ):
        self.SessionLocal = session_factory
        self.max_backoff_s = max_backoff_s

    async def add(
        self,
        queue: str,
        name: str,
        item_id: str,
        data: dict[str, Any],
        options: DispatchOptions,
    ) -> bool:
        now = utcnow()
        row = QueueItem(
            queue=queue,
            item_id=item_id,
            name=name,
            data=data,
            state=(
                ItemState.DELAYED.value if options.delay_ms > 0 else ItemState.WAITING.value
            ),
            priority=options.priority,
            run_at=now + timedelta(milliseconds=options.delay_ms),
            attempts_made=0,
            max_attempts=options.attempts,
            backoff_base_ms=options.backoff_base_ms,
            keep_completed_age_s=options.keep_completed_age_s,
            keep_completed_count=options.keep_completed_count,
            keep_failed_age_s=options.keep_failed_age_s,
            created_at=now,
        )

        async with self.SessionLocal() as session:
            session.add(row)
            try:
                await session.commit()
            except IntegrityError:
                # Same (queue, item_id) already stored: absorb the duplicate
                await session.rollback()
                return False
        return True

    async def get(self, queue: str, item_id: str) -> EngineItem | None:
        async with self.SessionLocal() as session:
            row = await session.get(QueueItem, (queue, item_id))
            return EngineItem.from_row(row) if row else None

    async def remove(self, queue: str, item_id: str) -> bool:
        async with self.SessionLocal() as session:
            result = await session.execute(
                delete(QueueItem).where(
                    and_(
                        QueueItem.queue == queue,
                        QueueItem.item_id == item_id,
                        QueueItem.state.in_(CLAIMABLE_STATES),
                    )
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def claim(self, queue: str, worker_id: str, limit: int) -> list[EngineItem]:
        if limit <= 0:
            return []

        now = utcnow()
        async with self.SessionLocal() as session:
            result = await session.execute(
                select(QueueItem)
                .where(
                    and_(
                        QueueItem.queue == queue,
                        QueueItem.state.in_(CLAIMABLE_STATES),
                        QueueItem.run_at <= now,
                    )
                )
                .order_by(QueueItem.priority, QueueItem.run_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            rows = result.scalars().all()

            for row in rows:
                row.state = ItemState.ACTIVE.value
                row.locked_by = worker_id
                row.locked_at = now
                row.heartbeat_at = now
                if row.processed_at is None:
                    row.processed_at = now

            claimed = [EngineItem.from_row(row) for row in rows]
            await session.commit()
            return claimed

    async def heartbeat(self, queue: str, item_ids: list[str], worker_id: str) -> None:
        if not item_ids:
            return
        async with self.SessionLocal() as session:
            await session.execute(
                update(QueueItem)
                .where(
                    and_(
                        QueueItem.queue == queue,
                        QueueItem.item_id.in_(item_ids),
                        QueueItem.locked_by == worker_id,
                        QueueItem.state == ItemState.ACTIVE.value,
                    )
                )
                .values(heartbeat_at=utcnow())
            )
            await session.commit()

    async def complete(
        self,
        queue: str,
        item_id: str,
        worker_id: str,
        return_value: dict[str, Any] | None,
    ) -> bool:
        async with self.SessionLocal() as session:
            result = await session.execute(
                update(QueueItem)
                .where(self._claimed_by(queue, item_id, worker_id))
                .values(
                    state=ItemState.COMPLETED.value,
                    return_value=return_value,
                    finished_at=utcnow(),
                    locked_by=None,
                    locked_at=None,
                    heartbeat_at=None,
                )
            )
            await session.commit()
            return result.rowcount > 0

    async def fail(
        self,
        queue: str,
        item_id: str,
        worker_id: str,
        reason: str,
        retry: bool | None = None,
    ) -> EngineItem | None:
        async with self.SessionLocal() as session:
            result = await session.execute(
                select(QueueItem)
                .where(self._claimed_by(queue, item_id, worker_id))
                .with_for_update()
            )
            row = result.scalar_one_or_none()
            if row is None:
                return None

            now = utcnow()
            row.attempts_made += 1
            row.failed_reason = reason
            row.locked_by = None
            row.locked_at = None
            row.heartbeat_at = None

            if _should_retry(row.attempts_made, row.max_attempts, retry):
                delay = backoff_delay_seconds(
                    row.backoff_base_ms, row.attempts_made, self.max_backoff_s
                )
                row.state = ItemState.DELAYED.value
                row.run_at = now + timedelta(seconds=delay)
            else:
                row.state = ItemState.FAILED.value
                row.finished_at = now

            item = EngineItem.from_row(row)
            await session.commit()
            return item

    async def recover_stalled(
        self, queue: str, visibility_timeout_s: int
    ) -> list[str]:
        cutoff = utcnow() - timedelta(seconds=visibility_timeout_s)
        async with self.SessionLocal() as session:
            result = await session.execute(
                select(QueueItem)
                .where(
                    and_(
                        QueueItem.queue == queue,
                        QueueItem.state == ItemState.ACTIVE.value,
                        QueueItem.heartbeat_at < cutoff,
                    )
                )
                .with_for_update(skip_locked=True)
            )
            rows = result.scalars().all()

            now = utcnow()
            for row in rows:
                row.state = ItemState.WAITING.value
                row.run_at = now
                row.stalled_count += 1
                row.locked_by = None
                row.locked_at = None
                row.heartbeat_at = None

            stalled = [row.item_id for row in rows]
            await session.commit()
            return stalled

    async def clean(self, queue: str) -> int:
        async with self.SessionLocal() as session:
            result = await session.execute(
                select(QueueItem)
                .where(
                    and_(
                        QueueItem.queue == queue,
                        QueueItem.state.in_(
                            [ItemState.COMPLETED.value, ItemState.FAILED.value]
                        ),
                    )
                )
                .order_by(QueueItem.finished_at.desc())
            )
            items = [EngineItem.from_row(row) for row in result.scalars().all()]
            expired = _expired_finished_items(items, utcnow())
            if not expired:
                return 0

            await session.execute(
                delete(QueueItem).where(
                    and_(QueueItem.queue == queue, QueueItem.item_id.in_(expired))
                )
            )
            await session.commit()
            return len(expired)

    async def counts(self, queue: str) -> dict[str, int]:
        async with self.SessionLocal() as session:
            result = await session.execute(
                select(QueueItem.state, func.count())
                .where(QueueItem.queue == queue)
                .group_by(QueueItem.state)
            )
            return {state.value: 0 for state in ItemState} | dict(result.all())

    async def close(self) -> None:
        """Sessions are owned by the database; nothing to release here."""

    @staticmethod
    def _claimed_by(queue: str, item_id: str, worker_id: str):
        return and_(
            QueueItem.queue == queue,
            QueueItem.item_id == item_id,
            QueueItem.state == ItemState.ACTIVE.value,
            QueueItem.locked_by == worker_id,
        )


class MemoryEngine:
    """In-process execution engine with the same semantics as DatabaseEngine.

    Every method runs without suspending between read and write, so the
    event loop serialises access to the item map.
    """

    def __init__(self, max_backoff_s: float = 300):
        self.max_backoff_s = max_backoff_s
        self._items: dict[tuple[str, str], EngineItem] = {}

    async def add(
        self,
        queue: str,
        name: str,
        item_id: str,
        data: dict[str, Any],
        options: DispatchOptions,
    ) -> bool:
        key = (queue, item_id)
        if key in self._items:
            return False

        now = utcnow()
        self._items[key] = EngineItem(
            queue=queue,
            item_id=item_id,
            name=name,
            data=dict(data),
            state=(
                ItemState.DELAYED.value if options.delay_ms > 0 else ItemState.WAITING.value
            ),
            max_attempts=options.attempts,
            priority=options.priority,
            backoff_base_ms=options.backoff_base_ms,
            run_at=now + timedelta(milliseconds=options.delay_ms),
            keep_completed_age_s=options.keep_completed_age_s,
            keep_completed_count=options.keep_completed_count,
            keep_failed_age_s=options.keep_failed_age_s,
            created_at=now,
        )
        return True

    async def get(self, queue: str, item_id: str) -> EngineItem | None:
        item = self._items.get((queue, item_id))
        return dataclasses.replace(item) if item else None

    async def remove(self, queue: str, item_id: str) -> bool:
        item = self._items.get((queue, item_id))
        if item is None or item.state not in CLAIMABLE_STATES:
            return False
        del self._items[(queue, item_id)]
        return True

    async def claim(self, queue: str, worker_id: str, limit: int) -> list[EngineItem]:
        if limit <= 0:
            return []

        now = utcnow()
        due = sorted(
            (
                item
                for (q, _), item in self._items.items()
                if q == queue and item.state in CLAIMABLE_STATES and item.run_at <= now
            ),
            key=lambda item: (item.priority, item.run_at),
        )[:limit]

        for item in due:
            item.state = ItemState.ACTIVE.value
            item.locked_by = worker_id
            item.heartbeat_at = now
            if item.processed_at is None:
                item.processed_at = now
        return [dataclasses.replace(item) for item in due]

    async def heartbeat(self, queue: str, item_ids: list[str], worker_id: str) -> None:
        now = utcnow()
        for item_id in item_ids:
            item = self._claimed(queue, item_id, worker_id)
            if item:
                item.heartbeat_at = now

    async def complete(
        self,
        queue: str,
        item_id: str,
        worker_id: str,
        return_value: dict[str, Any] | None,
    ) -> bool:
        item = self._claimed(queue, item_id, worker_id)
        if item is None:
            return False

        item.state = ItemState.COMPLETED.value
        item.return_value = return_value
        item.finished_at = utcnow()
        item.locked_by = None
        item.heartbeat_at = None
        return True

    async def fail(
        self,
        queue: str,
        item_id: str,
        worker_id: str,
        reason: str,
        retry: bool | None = None,
    ) -> EngineItem | None:
        item = self._claimed(queue, item_id, worker_id)
        if item is None:
            return None

        now = utcnow()
        item.attempts_made += 1
        item.failed_reason = reason
        item.locked_by = None
        item.heartbeat_at = None

        if _should_retry(item.attempts_made, item.max_attempts, retry):
            delay = backoff_delay_seconds(
                item.backoff_base_ms, item.attempts_made, self.max_backoff_s
            )
            item.state = ItemState.DELAYED.value
            item.run_at = now + timedelta(seconds=delay)
        else:
            item.state = ItemState.FAILED.value
            item.finished_at = now
        return dataclasses.replace(item)

    async def recover_stalled(
        self, queue: str, visibility_timeout_s: int
    ) -> list[str]:
        now = utcnow()
        cutoff = now - timedelta(seconds=visibility_timeout_s)
        stalled = []
        for (q, item_id), item in self._items.items():
            if (
                q == queue
                and item.state == ItemState.ACTIVE.value
                and item.heartbeat_at is not None
                and item.heartbeat_at < cutoff
            ):
                item.state = ItemState.WAITING.value
                item.run_at = now
                item.stalled_count += 1
                item.locked_by = None
                item.heartbeat_at = None
                stalled.append(item_id)
        return stalled

    async def clean(self, queue: str) -> int:
        finished = sorted(
            (
                item
                for (q, _), item in self._items.items()
                if q == queue
                and item.state in (ItemState.COMPLETED.value, ItemState.FAILED.value)
            ),
            key=lambda item: item.finished_at,
            reverse=True,
        )
        expired = _expired_finished_items(finished, utcnow())
        for item_id in expired:
            del self._items[(queue, item_id)]
        return len(expired)

    async def counts(self, queue: str) -> dict[str, int]:
        counts = {state.value: 0 for state in ItemState}
        for (q, _), item in self._items.items():
            if q == queue:
                counts[item.state] += 1
        return counts

    async def close(self) -> None:
        self._items.clear()

    def _claimed(self, queue: str, item_id: str, worker_id: str) -> EngineItem | None:
        item = self._items.get((queue, item_id))
        if item and item.state == ItemState.ACTIVE.value and item.locked_by == worker_id:
            return item
        return None
