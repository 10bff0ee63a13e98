"""Standalone worker process for video processing jobs.

Run with ``python -m coursemedia.worker``. Several processes can share one
queue when ``QUEUE_BACKEND=redis``.
"""

import asyncio
import logging
import signal

from coursemedia.core.config import settings
from coursemedia.core.logging import log_info, setup_logging
from coursemedia.core.storage import StorageService
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.transcoding.tasks import build_pipeline, register_video_worker

logger = logging.getLogger("coursemedia.worker")


async def run_worker() -> None:
    """Run the video worker until SIGINT or SIGTERM, then drain in-flight jobs."""
    manager = QueueManager.from_settings()
    register_video_worker(manager, build_pipeline(StorageService.from_settings()))

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows event loops have no signal handler support.
            pass

    await manager.start()
    log_info(
        logger,
        "Worker started",
        queues=manager.queue_names,
        concurrency=settings.VIDEO_WORKER_CONCURRENCY,
    )
    try:
        await stop.wait()
        log_info(logger, "Shutdown requested, finishing current jobs")
    finally:
        await manager.shutdown(settings.QUEUE_SHUTDOWN_TIMEOUT_SECONDS)
        log_info(logger, "Worker stopped")


def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
