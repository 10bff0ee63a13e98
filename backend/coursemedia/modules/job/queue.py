"""Named job queues.

A queue publishes jobs into the store, answers inspection queries, and owns
the state transitions workers apply to the jobs they run.
"""

import asyncio
import logging
import traceback
import uuid
from typing import Any, Optional

from coursemedia.core.exceptions import NotFound, ValidationError
from coursemedia.core.logging import log_info, log_warning
from coursemedia.core.metrics import QUEUE_DEPTH
from coursemedia.modules.job import events
from coursemedia.modules.job.events import EventBus
from coursemedia.modules.job.models import (
    FINISHED_STATES,
    Job,
    JobOptions,
    JobState,
    RetentionPolicy,
    now_ms,
)
from coursemedia.modules.job.store import JobStore

logger = logging.getLogger(__name__)

STACKTRACE_LIMIT = 10
MAX_SCORE = 2 ** 62
DEFAULT_LOCK_DURATION = 30_000
STALLED_REASON = "Job stalled: its worker stopped renewing the lock"


class Queue:
    """A named queue backed by a job store."""

    def __init__(
        self,
        name: str,
        store: JobStore,
        bus: EventBus,
        default_options: Optional[JobOptions] = None,
    ):
        self.name = name
        self.store = store
        self.bus = bus
        self.default_options = default_options or JobOptions(attempts=1)
        self._new_job = asyncio.Event()

    def __repr__(self) -> str:
        return f"<Queue(name={self.name})>"

    def _bind(self, job: Optional[Job]) -> Optional[Job]:
        if job is not None:
            job._queue = self
        return job

    # ==================== Producer side ====================

    async def add(
        self,
        name: str,
        data: Optional[dict] = None,
        options: Optional[JobOptions] = None,
    ) -> Job:
        """Publish a job and return it without waiting for execution."""
        opts = (options or JobOptions()).merged_with(self.default_options)
        job = Job(
            queue=self.name,
            name=name,
            data=data or {},
            priority=opts.priority,
            delay=opts.delay,
            max_attempts=opts.attempts,
            backoff=opts.backoff,
            remove_on_complete=opts.remove_on_complete,
            remove_on_fail=opts.remove_on_fail,
        )
        if opts.job_id:
            job.id = opts.job_id
        if opts.delay > 0:
            job.state = JobState.DELAYED
            job.run_at = job.timestamp + opts.delay

        await self.store.add(job)
        self._new_job.set()

        log_info(
            logger,
            "Job enqueued",
            queue=self.name,
            job_id=job.id,
            job_name=job.name,
            priority=job.priority,
            delay=job.delay,
        )
        await self.bus.emit(self.name, events.ENQUEUED, job)
        return self._bind(job)

    # ==================== Inspection ====================

    async def get_job(self, job_id: str) -> Optional[Job]:
        return self._bind(await self.store.get(self.name, job_id))

    async def get_jobs(
        self, state: JobState, start: int = 0, end: int = -1
    ) -> list[Job]:
        return [self._bind(job) for job in await self.store.list_jobs(self.name, state, start, end)]

    async def get_stats(self) -> dict[str, Any]:
        """Job counts per state plus total."""
        counts = await self.store.counts(self.name)
        stats: dict[str, Any] = {state.value: counts.get(state, 0) for state in JobState}
        stats["total"] = sum(counts.values())
        stats["paused"] = await self.store.is_paused(self.name)
        for state in JobState:
            QUEUE_DEPTH.labels(queue_name=self.name, state=state.value).set(
                stats[state.value]
            )
        return stats

    # ==================== Administration ====================

    async def pause(self) -> None:
        """Stop workers from fetching new jobs. Active jobs finish."""
        await self.store.set_paused(self.name, True)
        log_info(logger, "Queue paused", queue=self.name)

    async def resume(self) -> None:
        await self.store.set_paused(self.name, False)
        self._new_job.set()
        log_info(logger, "Queue resumed", queue=self.name)

    async def is_paused(self) -> bool:
        return await self.store.is_paused(self.name)

    async def clean(
        self,
        grace_ms: int,
        limit: int = 0,
        state: JobState = JobState.COMPLETED,
    ) -> list[str]:
        """Remove jobs in ``state`` older than ``grace_ms``.

        Args:
            grace_ms: Keep jobs younger than this many milliseconds
            limit: Maximum number of jobs to remove, 0 for no limit
            state: Job state to clean; active jobs cannot be cleaned

        Returns:
            IDs of removed jobs
        """
        if state == JobState.ACTIVE:
            raise ValidationError("Active jobs cannot be cleaned")
        cutoff = now_ms() - grace_ms
        job_ids = await self.store.older_than(self.name, state, cutoff, limit)
        await self.store.remove(self.name, job_ids)
        if job_ids:
            log_info(
                logger,
                "Queue cleaned",
                queue=self.name,
                state=state.value,
                removed=len(job_ids),
            )
            await self.bus.emit(self.name, events.CLEANED, job_ids=job_ids, state=state.value)
        return job_ids

    async def drain(self) -> int:
        """Remove all waiting and delayed jobs."""
        removed = 0
        for state in (JobState.WAITING, JobState.DELAYED):
            job_ids = await self.store.older_than(self.name, state, MAX_SCORE)
            removed += await self.store.remove(self.name, job_ids)
        log_info(logger, "Queue drained", queue=self.name, removed=removed)
        return removed

    async def retry_job(self, job_id: str) -> Job:
        """Move a failed job back to waiting with a fresh attempt budget."""
        job = await self.store.get(self.name, job_id)
        if job is None:
            raise NotFound(f"Job {job_id} not found")
        if job.state != JobState.FAILED:
            raise ValidationError(f"Job {job_id} is {job.state.value}, only failed jobs can be retried")

        job.state = JobState.WAITING
        job.attempts_made = 0
        job.failed_reason = None
        job.finished_on = None
        job.processed_on = None
        job.progress = 0
        await self.store.move(job, JobState.FAILED)
        self._new_job.set()
        log_info(logger, "Failed job re-queued", queue=self.name, job_id=job.id)
        return self._bind(job)

    # ==================== Worker side ====================

    async def wait_for_job(self, timeout: float) -> None:
        """Sleep until a job is published in-process or ``timeout`` passes."""
        try:
            await asyncio.wait_for(self._new_job.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        self._new_job.clear()

    async def next_delay(self, default: float) -> float:
        """Seconds until the earliest delayed job is due, capped at ``default``."""
        due = await self.store.next_delayed_at(self.name)
        if due is None:
            return default
        return max(0.0, min(default, (due - now_ms()) / 1000))

    async def fetch_next(self, lock_duration: int = DEFAULT_LOCK_DURATION) -> Optional[Job]:
        """Take the next runnable job and mark it active.

        The job is locked for ``lock_duration`` milliseconds. A worker that
        neither finishes nor renews the lock in time loses the job to
        :meth:`recover_stalled`.
        """
        if await self.store.is_paused(self.name):
            return None
        now = now_ms()
        job = await self.store.pop_next(self.name, now, now + lock_duration)
        if job is None:
            return None

        previous = job.state
        job.state = JobState.ACTIVE
        job.attempts_made += 1
        job.processed_on = now
        job.finished_on = None
        job.lock_token = uuid.uuid4().hex
        job.lock_until = now + lock_duration
        await self.store.move(job, previous)
        return self._bind(job)

    async def extend_lock(self, job: Job, lock_duration: int) -> bool:
        """Renew the lock of a running job.

        Returns:
            False if the job is no longer held by this worker
        """
        if job.lock_token is None:
            return False
        lock_until = now_ms() + lock_duration
        if not await self.store.refresh_lock(self.name, job.id, job.lock_token, lock_until):
            return False
        job.lock_until = lock_until
        return True

    async def recover_stalled(self, limit: int = 0) -> list[str]:
        """Take back active jobs whose lock expired.

        The stalled run counts as an attempt: a job with attempts left goes
        back to waiting, any other job fails.

        Returns:
            IDs of recovered jobs
        """
        recovered = []
        expired = await self.store.older_than(self.name, JobState.ACTIVE, now_ms(), limit)
        for job_id in expired:
            # Several workers may scan at once; the removal picks one.
            if not await self.store.release_active(self.name, job_id):
                continue
            job = await self.store.get(self.name, job_id)
            if job is None or job.state != JobState.ACTIVE:
                continue
            job.lock_token = None
            job.lock_until = None

            if job.attempts_made >= job.max_attempts:
                job.state = JobState.FAILED
                job.failed_reason = STALLED_REASON
                job.finished_on = now_ms()
                await self.store.move(job, JobState.ACTIVE)
                log_warning(logger, "Stalled job failed", queue=self.name, job_id=job.id)
                await self.bus.emit(self.name, events.FAILED, job, reason=STALLED_REASON)
                await self._apply_retention(JobState.FAILED, job.remove_on_fail)
            else:
                job.state = JobState.WAITING
                job.processed_on = None
                await self.store.move(job, JobState.ACTIVE)
                log_warning(
                    logger,
                    "Stalled job returned to waiting",
                    queue=self.name,
                    job_id=job.id,
                    attempt=job.attempts_made,
                )
                await self.bus.emit(self.name, events.STALLED, job)
                self._new_job.set()
            recovered.append(job_id)
        return recovered

    async def _current(self, job: Job) -> Optional[Job]:
        current = await self.store.get(self.name, job.id)
        if (
            current is None
            or current.state != JobState.ACTIVE
            or current.lock_token != job.lock_token
        ):
            log_warning(
                logger,
                "Ignoring result for job that is no longer active",
                queue=self.name,
                job_id=job.id,
                state=current.state.value if current else None,
            )
            return None
        return current

    async def update_progress(self, job: Job, percent: int) -> None:
        job.progress = percent
        current = await self.store.get(self.name, job.id)
        if current is not None:
            current.progress = percent
            await self.store.save(current)
        await self.bus.emit(self.name, events.PROGRESS, job, progress=percent)

    async def complete(self, job: Job, return_value: Any = None) -> None:
        """Move an active job to completed. Repeated calls are no-ops."""
        current = await self._current(job)
        if current is None:
            return

        job.state = JobState.COMPLETED
        job.return_value = return_value
        job.finished_on = now_ms()
        await self.store.move(job, JobState.ACTIVE)

        await self.bus.emit(self.name, events.COMPLETED, job, return_value=return_value)
        await self._apply_retention(JobState.COMPLETED, job.remove_on_complete)

    async def fail(self, job: Job, error: BaseException, unrecoverable: bool = False) -> bool:
        """Record a failed attempt.

        Returns:
            True if the job was scheduled for another attempt
        """
        current = await self._current(job)
        if current is None:
            return False

        reason = str(error) or error.__class__.__name__
        job.failed_reason = reason
        job.stacktrace = (
            job.stacktrace
            + ["".join(traceback.format_exception(type(error), error, error.__traceback__))]
        )[-STACKTRACE_LIMIT:]

        if unrecoverable or job.attempts_made >= job.max_attempts:
            job.state = JobState.FAILED
            job.finished_on = now_ms()
            await self.store.move(job, JobState.ACTIVE)
            await self.bus.emit(self.name, events.FAILED, job, reason=reason)
            await self._apply_retention(JobState.FAILED, job.remove_on_fail)
            return False

        delay = job.backoff.calculate_delay(job.attempts_made)
        job.state = JobState.DELAYED
        job.run_at = now_ms() + delay
        await self.store.move(job, JobState.ACTIVE)
        await self.bus.emit(
            self.name,
            events.RETRYING,
            job,
            reason=reason,
            attempt=job.attempts_made,
            delay=delay,
        )
        return True

    async def requeue(self, job: Job) -> None:
        """Return an interrupted active job to waiting without using an attempt."""
        current = await self.store.get(self.name, job.id)
        if (
            current is None
            or current.state != JobState.ACTIVE
            or current.lock_token != job.lock_token
        ):
            return
        current.state = JobState.WAITING
        current.attempts_made = max(0, current.attempts_made - 1)
        current.processed_on = None
        current.lock_token = None
        current.lock_until = None
        await self.store.move(current, JobState.ACTIVE)

    async def _apply_retention(
        self, state: JobState, policy: Optional[RetentionPolicy]
    ) -> None:
        if policy is None or state not in FINISHED_STATES:
            return
        job_ids: set[str] = set()
        if policy.count is not None:
            job_ids.update(await self.store.beyond_count(self.name, state, policy.count))
        if policy.age_seconds is not None:
            cutoff = now_ms() - policy.age_seconds * 1000
            job_ids.update(await self.store.older_than(self.name, state, cutoff))
        if job_ids:
            await self.store.remove(self.name, sorted(job_ids))
