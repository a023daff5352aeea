"""
Standalone worker process entry point.

Runs the worker pool for every job type until SIGINT/SIGTERM, then drains
in-flight items and releases resources.
"""

import asyncio
import signal

from jobrelay.config.logging import get_logger, setup_logging
from jobrelay.config.settings import Settings, get_settings
from jobrelay.v1.jobs.runtime import JobRuntime

logger = get_logger(__name__)


async def run_worker(settings: Settings, shutdown_timeout_s: float = 30) -> None:
    """Run the worker pool until a shutdown signal arrives."""
    runtime = await JobRuntime.create(settings)
    pool = runtime.create_worker_pool()

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.warning("Signal handlers unavailable on this platform", signal=sig.name)

    pool_task = asyncio.create_task(pool.start())
    stop_task = asyncio.create_task(stop_event.wait())

    try:
        done, _ = await asyncio.wait(
            {pool_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )
        if pool_task in done:
            # Pool exited on its own: surface its exception, if any
            pool_task.result()
        else:
            logger.info("Shutdown signal received", worker_id=pool.worker_id)
            await pool.stop(shutdown_timeout_s)
            await asyncio.gather(pool_task, return_exceptions=True)
    finally:
        stop_task.cancel()
        await runtime.close()
        logger.info("Worker stopped", worker_id=pool.worker_id)


def main() -> None:
    settings = get_settings()
    setup_logging(settings, component="worker")
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
