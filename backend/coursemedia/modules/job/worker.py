"""Worker pool executing jobs from one queue.

Each worker runs up to ``concurrency`` jobs at once as asyncio tasks. A job
occupies its slot until the handler returns or raises, and its lock is
renewed while it runs. A separate loop takes back jobs whose worker died.
"""

import asyncio
import collections
import logging
import time
from typing import Any, Awaitable, Callable, Optional

from coursemedia.core.logging import correlation_scope, log_error, log_info, log_warning
from coursemedia.core.metrics import WORKER_ACTIVE_JOBS
from coursemedia.modules.job import events
from coursemedia.modules.job.models import (
    Job,
    RateLimit,
    UnrecoverableError,
    WorkerOptions,
)
from coursemedia.modules.job.queue import Queue

logger = logging.getLogger(__name__)

JobHandler = Callable[[Job], Awaitable[Any]]

FINISH_ATTEMPTS = 3


class RateLimiter:
    """Sliding window limit on job starts."""

    def __init__(self, limit: RateLimit):
        self.max = limit.max
        self.window = limit.duration / 1000
        self._starts: collections.deque[float] = collections.deque()

    def _trim(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window:
            self._starts.popleft()

    async def acquire(self) -> None:
        """Wait until another job may start."""
        while True:
            now = time.monotonic()
            self._trim(now)
            if len(self._starts) < self.max:
                return
            await asyncio.sleep(self.window - (now - self._starts[0]))

    def record(self) -> None:
        self._starts.append(time.monotonic())


class Worker:
    """Pulls jobs from a queue and runs them through a handler."""

    def __init__(
        self,
        queue: Queue,
        handler: JobHandler,
        options: Optional[WorkerOptions] = None,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.handler = handler
        self.options = options or WorkerOptions()
        self.poll_interval = poll_interval
        self.limiter = RateLimiter(self.options.limiter) if self.options.limiter else None

        self._slots = asyncio.Semaphore(self.options.concurrency)
        self._in_flight: set[asyncio.Task] = set()
        self._loop_task: Optional[asyncio.Task] = None
        self._stalled_task: Optional[asyncio.Task] = None
        self._running = False

    def __repr__(self) -> str:
        return f"<Worker(queue={self.queue.name}, concurrency={self.options.concurrency})>"

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_count(self) -> int:
        return len(self._in_flight)

    def start(self) -> None:
        """Start fetching jobs in the background."""
        if self._running:
            return
        self._running = True
        self._loop_task = asyncio.create_task(
            self._fetch_loop(), name=f"worker:{self.queue.name}"
        )
        self._stalled_task = asyncio.create_task(
            self._stalled_loop(), name=f"stalled:{self.queue.name}"
        )
        log_info(
            logger,
            "Worker started",
            queue=self.queue.name,
            concurrency=self.options.concurrency,
        )

    async def close(self, timeout: Optional[float] = None) -> None:
        """Stop fetching and wait for in-flight jobs.

        Jobs still running after ``timeout`` are cancelled and returned to
        the waiting state.
        """
        if not self._running and self._loop_task is None:
            return
        self._running = False
        self.queue._new_job.set()

        loops = [task for task in (self._loop_task, self._stalled_task) if task is not None]
        for task in loops:
            task.cancel()
        await asyncio.gather(*loops, return_exceptions=True)
        self._loop_task = None
        self._stalled_task = None

        if self._in_flight:
            _, pending = await asyncio.wait(set(self._in_flight), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        log_info(logger, "Worker stopped", queue=self.queue.name)

    async def _fetch_loop(self) -> None:
        while self._running:
            await self._slots.acquire()
            try:
                if self.limiter:
                    await self.limiter.acquire()
                job = await self.queue.fetch_next(self.options.lock_duration)
            except asyncio.CancelledError:
                self._slots.release()
                raise
            except Exception as e:
                self._slots.release()
                log_error(logger, "Failed to fetch job", exception=e, queue=self.queue.name)
                await asyncio.sleep(self.poll_interval)
                continue

            if job is None:
                self._slots.release()
                await self.queue.wait_for_job(await self.queue.next_delay(self.poll_interval))
                continue

            if self.limiter:
                self.limiter.record()
            task = asyncio.create_task(self._run(job), name=f"job:{job.id}")
            self._in_flight.add(task)
            WORKER_ACTIVE_JOBS.labels(queue_name=self.queue.name).inc()
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        self._slots.release()
        WORKER_ACTIVE_JOBS.labels(queue_name=self.queue.name).dec()
        if not task.cancelled() and task.exception() is not None:
            log_error(
                logger,
                "Job task crashed",
                exception=task.exception(),
                queue=self.queue.name,
                task=task.get_name(),
            )

    async def _stalled_loop(self) -> None:
        """Periodically return jobs with expired locks to the queue."""
        while self._running:
            try:
                await self.queue.recover_stalled()
            except Exception as e:
                log_error(logger, "Stalled job check failed", exception=e, queue=self.queue.name)
            await asyncio.sleep(self.options.stalled_interval / 1000)

    async def _keep_lock(self, job: Job) -> None:
        interval = self.options.lock_duration / 2000
        while True:
            await asyncio.sleep(interval)
            try:
                held = await self.queue.extend_lock(job, self.options.lock_duration)
            except Exception as e:
                log_error(
                    logger,
                    "Failed to renew job lock",
                    exception=e,
                    queue=self.queue.name,
                    job_id=job.id,
                )
                continue
            if not held:
                log_warning(logger, "Job lock lost", queue=self.queue.name, job_id=job.id)
                return

    async def _finish(
        self, job: Job, outcome: str, record: Callable[[], Awaitable[Any]]
    ) -> Any:
        """Store a job outcome, retrying transient store errors.

        When every attempt fails the job stays active until its lock
        expires and stalled recovery takes it back.
        """
        for attempt in range(1, FINISH_ATTEMPTS + 1):
            try:
                return await record()
            except Exception as e:
                log_error(
                    logger,
                    f"Failed to record job {outcome}",
                    exception=e,
                    queue=self.queue.name,
                    job_id=job.id,
                    attempt=attempt,
                )
                if attempt < FINISH_ATTEMPTS:
                    await asyncio.sleep(self.poll_interval * attempt)
        return None

    async def _run(self, job: Job) -> None:
        with correlation_scope(job.id):
            await self.queue.bus.emit(self.queue.name, events.ACTIVE, job)
            log_info(
                logger,
                "Job started",
                queue=self.queue.name,
                job_id=job.id,
                job_name=job.name,
                attempt=job.attempts_made,
                max_attempts=job.max_attempts,
            )
            lock = asyncio.create_task(self._keep_lock(job), name=f"lock:{job.id}")
            try:
                result = await self.handler(job)
            except asyncio.CancelledError:
                await asyncio.shield(self.queue.requeue(job))
                raise
            except UnrecoverableError as e:
                log_error(
                    logger,
                    "Job failed without retry",
                    exception=e,
                    queue=self.queue.name,
                    job_id=job.id,
                )
                await self._finish(
                    job, "failure", lambda: self.queue.fail(job, e, unrecoverable=True)
                )
                return
            except Exception as e:
                retried = await self._finish(job, "failure", lambda: self.queue.fail(job, e))
                log_error(
                    logger,
                    "Job attempt failed, retrying" if retried else "Job failed",
                    exception=e,
                    queue=self.queue.name,
                    job_id=job.id,
                    attempt=job.attempts_made,
                )
                return
            finally:
                lock.cancel()

            await self._finish(job, "completion", lambda: self.queue.complete(job, result))
            log_info(logger, "Job completed", queue=self.queue.name, job_id=job.id)
