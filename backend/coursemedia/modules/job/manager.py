"""Queue manager owning the job store, event bus, queues and workers.

Constructed explicitly and passed to whatever needs it; the FastAPI app keeps
one on ``app.state`` and the standalone worker process builds its own.
"""

import asyncio
import logging
from typing import Any, Optional

from coursemedia.core.config import settings
from coursemedia.core.logging import log_info
from coursemedia.modules.job.events import EventBus, Subscriber, register_metrics
from coursemedia.modules.job.models import (
    BackoffPolicy,
    Job,
    JobOptions,
    RetentionPolicy,
    WorkerOptions,
)
from coursemedia.modules.job.queue import Queue
from coursemedia.modules.job.store import JobStore, create_store
from coursemedia.modules.job.worker import JobHandler, Worker

logger = logging.getLogger(__name__)


def default_job_options() -> JobOptions:
    """Default job options from settings."""
    return JobOptions(
        attempts=settings.QUEUE_DEFAULT_ATTEMPTS,
        backoff=BackoffPolicy(type="exponential", delay=settings.QUEUE_BACKOFF_DELAY_MS),
        remove_on_complete=RetentionPolicy(
            count=settings.QUEUE_KEEP_COMPLETED_COUNT,
            age_seconds=settings.QUEUE_KEEP_COMPLETED_AGE_SECONDS,
        ),
        remove_on_fail=RetentionPolicy(
            count=settings.QUEUE_KEEP_FAILED_COUNT,
            age_seconds=settings.QUEUE_KEEP_FAILED_AGE_SECONDS,
        ),
    )


class QueueManager:
    """Entry point for publishing jobs and running workers."""

    def __init__(
        self,
        store: JobStore,
        bus: Optional[EventBus] = None,
        default_options: Optional[JobOptions] = None,
        poll_interval: float = 1.0,
    ):
        self.store = store
        self.bus = bus or EventBus()
        self.default_options = default_options or default_job_options()
        self.poll_interval = poll_interval
        self._queues: dict[str, Queue] = {}
        self._workers: dict[str, Worker] = {}
        self._started = False

    @classmethod
    def from_settings(cls, store: Optional[JobStore] = None) -> "QueueManager":
        """Build a manager with the configured store and Prometheus subscriber."""
        manager = cls(
            store or create_store(settings.QUEUE_BACKEND, prefix=settings.QUEUE_PREFIX),
            poll_interval=settings.QUEUE_POLL_INTERVAL_SECONDS,
        )
        register_metrics(manager.bus)
        return manager

    @property
    def is_started(self) -> bool:
        return self._started

    def get_queue(self, name: str) -> Queue:
        """Get a queue by name, creating it on first use."""
        if name not in self._queues:
            self._queues[name] = Queue(name, self.store, self.bus, self.default_options)
        return self._queues[name]

    @property
    def queue_names(self) -> list[str]:
        return sorted(set(self._queues) | set(self._workers))

    async def enqueue(
        self,
        queue_name: str,
        job_name: str,
        data: Optional[dict] = None,
        options: Optional[JobOptions] = None,
    ) -> Job:
        """Publish a job. Returns as soon as the job is stored."""
        return await self.get_queue(queue_name).add(job_name, data, options)

    def register_worker(
        self,
        queue_name: str,
        handler: JobHandler,
        options: Optional[WorkerOptions] = None,
    ) -> Worker:
        """Attach a handler to a queue.

        Registering the same queue twice returns the existing worker.
        """
        if queue_name in self._workers:
            return self._workers[queue_name]

        worker = Worker(
            self.get_queue(queue_name),
            handler,
            options,
            poll_interval=self.poll_interval,
        )
        self._workers[queue_name] = worker
        if self._started:
            worker.start()
        return worker

    def get_worker(self, queue_name: str) -> Optional[Worker]:
        return self._workers.get(queue_name)

    def on(self, event: str, handler: Subscriber, queue: Optional[str] = None) -> None:
        """Subscribe to job events."""
        self.bus.subscribe(event, handler, queue)

    async def start(self) -> None:
        """Start every registered worker."""
        if self._started:
            return
        self._started = True
        for worker in self._workers.values():
            worker.start()
        log_info(logger, "Queue manager started", workers=len(self._workers))

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop workers, drain in-flight jobs, then close the store."""
        if timeout is None:
            timeout = settings.QUEUE_SHUTDOWN_TIMEOUT_SECONDS
        await asyncio.gather(
            *(worker.close(timeout) for worker in self._workers.values())
        )
        self._started = False
        await self.store.close()
        log_info(logger, "Queue manager stopped")

    async def get_all_stats(self) -> dict[str, dict[str, Any]]:
        return {name: await self.get_queue(name).get_stats() for name in self.queue_names}
