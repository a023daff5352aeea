"""
Queue dispatcher: one logical engine queue per job type.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from jobrelay.config.logging import get_logger
from jobrelay.config.settings import Settings
from jobrelay.v1.core.exceptions import InfrastructureError
from jobrelay.v1.jobs.engine import DispatchOptions, EngineItem, ExecutionEngine

logger = get_logger(__name__)


def sanitize_queue_name(job_type: str) -> str:
    """Map a job type onto an engine-legal queue name (``email:send`` -> ``email-send``)."""
    return job_type.replace(":", "-")


@contextmanager
def engine_errors(queue: str, operation: str) -> Iterator[None]:
    """Re-raise engine storage failures as InfrastructureError."""
    try:
        yield
    except (SQLAlchemyError, OSError) as e:
        logger.error(
            "Execution engine unavailable",
            queue=queue,
            operation=operation,
            error=str(e),
        )
        raise InfrastructureError(
            "Execution engine unavailable",
            {"queue": queue, "operation": operation},
        ) from e


class QueueDispatcher:
    """Forwards work to the execution engine under the default dispatch policy."""

    def __init__(self, settings: Settings, engine: ExecutionEngine):
        self.settings = settings
        self.engine = engine

    def default_options(self, **overrides: Any) -> DispatchOptions:
        """Default policy: exponential backoff, completed items kept by age
        and count, failed items kept longer and by age only."""
        options = {
            "attempts": self.settings.queue_default_attempts,
            "backoff_base_ms": self.settings.queue_backoff_base_ms,
            "keep_completed_age_s": self.settings.queue_keep_completed_age_s,
            "keep_completed_count": self.settings.queue_keep_completed_count,
            "keep_failed_age_s": self.settings.queue_keep_failed_age_s,
        }
        options.update({k: v for k, v in overrides.items() if v is not None})
        return DispatchOptions(**options)

    async def enqueue(
        self,
        job_type: str,
        data: dict[str, Any],
        item_id: str,
        options: DispatchOptions | None = None,
    ) -> str:
        """
        Add an item to the job type's queue.

        A second enqueue with an ``item_id`` that already exists is absorbed
        by the engine without error.

        Returns:
            The item identifier

        Raises:
            InfrastructureError: If the engine cannot be reached
        """
        queue = sanitize_queue_name(job_type)
        with engine_errors(queue, "enqueue"):
            created = await self.engine.add(
                queue, job_type, item_id, data, options or self.default_options()
            )

        if created:
            logger.info("Item added to queue", queue=queue, item_id=item_id)
        else:
            logger.info("Duplicate item absorbed by queue", queue=queue, item_id=item_id)

        return item_id

    async def lookup(self, job_type: str, item_id: str) -> EngineItem | None:
        queue = sanitize_queue_name(job_type)
        with engine_errors(queue, "lookup"):
            return await self.engine.get(queue, item_id)

    async def remove(self, job_type: str, item_id: str) -> bool:
        """Remove a not-yet-claimed item. Returns whether a removal occurred."""
        queue = sanitize_queue_name(job_type)
        with engine_errors(queue, "remove"):
            removed = await self.engine.remove(queue, item_id)

        if removed:
            logger.info("Item removed from queue", queue=queue, item_id=item_id)
        else:
            logger.info(
                "Item not removable (absent or already claimed)",
                queue=queue,
                item_id=item_id,
            )
        return removed

    async def queue_counts(self, job_types: list[str]) -> dict[str, dict[str, int]]:
        """Engine item counts by state for each job type's queue."""
        counts = {}
        for job_type in job_types:
            queue = sanitize_queue_name(job_type)
            with engine_errors(queue, "counts"):
                counts[job_type] = await self.engine.counts(queue)
        return counts
