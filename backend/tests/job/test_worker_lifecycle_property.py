"""Tests for worker concurrency, shutdown and queue administration.

**Feature: course-media, Property 3: Worker concurrency bound**
**Feature: course-media, Property 4: Graceful shutdown**
"""

import asyncio

import pytest
from hypothesis import given, settings, strategies as st

from coursemedia.core.exceptions import NotFound, ValidationError
from coursemedia.modules.job import events
from coursemedia.modules.job.events import EventBus
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.job.models import (
    JobOptions,
    JobState,
    RetentionPolicy,
    UnrecoverableError,
    WorkerOptions,
)
from coursemedia.modules.job.store import MemoryJobStore


async def wait_until(predicate, timeout: float = 3.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not await predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestConcurrency:
    """Property tests for the concurrency bound."""

    @given(
        concurrency=st.integers(min_value=1, max_value=4),
        job_count=st.integers(min_value=1, max_value=8),
    )
    @settings(max_examples=15, deadline=None)
    @pytest.mark.asyncio
    async def test_never_more_than_concurrency_jobs_run(
        self, concurrency: int, job_count: int
    ) -> None:
        """**Feature: course-media, Property 3: Worker concurrency bound**

        At any instant a worker SHALL run at most ``concurrency`` jobs, and
        every job SHALL eventually complete.
        """
        manager = QueueManager(MemoryJobStore(), poll_interval=0.01)
        running = 0
        peak = 0
        done = 0

        async def handler(job):
            nonlocal running, peak, done
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1
            done += 1

        manager.register_worker("pool", handler, WorkerOptions(concurrency=concurrency))
        await manager.start()
        try:
            for _ in range(job_count):
                await manager.enqueue("pool", "work")

            async def all_done():
                return done == job_count

            await wait_until(all_done)
        finally:
            await manager.shutdown(timeout=1.0)

        assert peak <= concurrency
        stats = await manager.get_queue("pool").get_stats()
        assert stats["completed"] == job_count

    @pytest.mark.asyncio
    async def test_slow_job_does_not_block_other_slots(self, queue_manager) -> None:
        release = asyncio.Event()
        finished = []

        async def handler(job):
            if job.data["slow"]:
                await release.wait()
            finished.append(job.data["slow"])

        queue_manager.register_worker("slots", handler, WorkerOptions(concurrency=2))
        await queue_manager.start()
        await queue_manager.enqueue("slots", "w", {"slow": True})
        await queue_manager.enqueue("slots", "w", {"slow": False})

        async def fast_done():
            return finished == [False]

        await wait_until(fast_done)
        release.set()


class TestShutdown:
    """Tests for draining and interrupting in-flight jobs."""

    @pytest.mark.asyncio
    async def test_shutdown_waits_for_in_flight_jobs(self, queue_manager) -> None:
        """**Feature: course-media, Property 4: Graceful shutdown**

        Jobs running when shutdown starts SHALL finish within the timeout.
        """
        started = asyncio.Event()

        async def handler(job):
            started.set()
            await asyncio.sleep(0.1)
            return "finished"

        queue_manager.register_worker("drain", handler)
        await queue_manager.start()
        job = await queue_manager.enqueue("drain", "w")
        await asyncio.wait_for(started.wait(), 2.0)

        await queue_manager.shutdown(timeout=2.0)

        stored = await queue_manager.get_queue("drain").get_job(job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.return_value == "finished"

    @pytest.mark.asyncio
    async def test_timeout_requeues_interrupted_job(self, queue_manager) -> None:
        started = asyncio.Event()

        async def handler(job):
            started.set()
            await asyncio.sleep(10)

        queue_manager.register_worker("interrupt", handler)
        await queue_manager.start()
        job = await queue_manager.enqueue("interrupt", "w")
        await asyncio.wait_for(started.wait(), 2.0)

        await queue_manager.shutdown(timeout=0.05)

        stored = await queue_manager.get_queue("interrupt").get_job(job.id)
        assert stored.state == JobState.WAITING
        assert stored.attempts_made == 0

    @pytest.mark.asyncio
    async def test_worker_registered_after_start_runs(self, queue_manager) -> None:
        await queue_manager.start()

        async def handler(job):
            return job.data["n"] * 2

        worker = queue_manager.register_worker("late", handler)
        assert worker.is_running
        assert queue_manager.register_worker("late", handler) is worker

        job = await queue_manager.enqueue("late", "double", {"n": 21})
        queue = queue_manager.get_queue("late")

        async def completed():
            return (await queue.get_job(job.id)).state == JobState.COMPLETED

        await wait_until(completed)
        assert (await queue.get_job(job.id)).return_value == 42


class TestEvents:
    """Tests for the event bus."""

    @pytest.mark.asyncio
    async def test_lifecycle_events_in_order(self, queue_manager) -> None:
        received = []

        def record(event):
            received.append(event.event)

        for name in (events.ENQUEUED, events.ACTIVE, events.PROGRESS, events.COMPLETED):
            queue_manager.on(name, record, queue="evt")

        async def handler(job):
            await job.update_progress(50)

        queue_manager.register_worker("evt", handler)
        await queue_manager.start()
        job = await queue_manager.enqueue("evt", "w")
        queue = queue_manager.get_queue("evt")

        async def completed():
            return (await queue.get_job(job.id)).state == JobState.COMPLETED

        await wait_until(completed)
        assert received == [events.ENQUEUED, events.ACTIVE, events.PROGRESS, events.COMPLETED]
        assert (await queue.get_job(job.id)).progress == 50

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_affect_job(self, queue_manager) -> None:
        def broken(event):
            raise RuntimeError("subscriber bug")

        queue_manager.on(events.ACTIVE, broken)
        queue_manager.on(events.COMPLETED, broken)

        async def handler(job):
            return "ok"

        queue_manager.register_worker("robust", handler)
        await queue_manager.start()
        job = await queue_manager.enqueue("robust", "w")
        queue = queue_manager.get_queue("robust")

        async def completed():
            return (await queue.get_job(job.id)).state == JobState.COMPLETED

        await wait_until(completed)

    @pytest.mark.asyncio
    async def test_async_subscriber_receives_failure_reason(self, queue_manager) -> None:
        reasons = []

        async def on_failed(event):
            reasons.append(event.data["reason"])

        queue_manager.on(events.FAILED, on_failed, queue="reasons")

        async def handler(job):
            raise UnrecoverableError("no source")

        queue_manager.register_worker("reasons", handler)
        await queue_manager.start()
        await queue_manager.enqueue("reasons", "w")

        async def notified():
            return reasons == ["no source"]

        await wait_until(notified)

    def test_unknown_event_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            EventBus().subscribe("exploded", lambda event: None)


class TestQueueAdministration:
    """Tests for completion idempotency, pause, clean, drain and retry."""

    @pytest.mark.asyncio
    async def test_completion_is_idempotent(self, queue_manager) -> None:
        completed = []
        queue_manager.on(events.COMPLETED, lambda event: completed.append(event.job.id))
        queue = queue_manager.get_queue("idem")
        await queue.add("w")
        job = await queue.fetch_next()

        await queue.complete(job, 1)
        await queue.complete(job, 2)
        assert await queue.fail(job, RuntimeError("late")) is False

        stored = await queue.get_job(job.id)
        assert stored.state == JobState.COMPLETED
        assert stored.return_value == 1
        assert completed == [job.id]

    @pytest.mark.asyncio
    async def test_paused_queue_is_not_fetched(self, queue_manager) -> None:
        queue = queue_manager.get_queue("paused")
        await queue.add("w")
        await queue.pause()
        assert await queue.is_paused()
        assert await queue.fetch_next() is None

        await queue.resume()
        assert await queue.fetch_next() is not None

    @pytest.mark.asyncio
    async def test_clean_removes_old_finished_jobs(self, queue_manager) -> None:
        cleaned = []
        queue_manager.on(events.CLEANED, lambda event: cleaned.extend(event.data["job_ids"]))
        queue = queue_manager.get_queue("clean")
        for _ in range(3):
            await queue.add("w")
            await queue.complete(await queue.fetch_next())

        await asyncio.sleep(0.01)
        removed = await queue.clean(grace_ms=0, limit=2)

        assert len(removed) == 2
        assert sorted(cleaned) == sorted(removed)
        assert (await queue.get_stats())["completed"] == 1

    @pytest.mark.asyncio
    async def test_active_jobs_cannot_be_cleaned(self, queue_manager) -> None:
        with pytest.raises(ValidationError):
            await queue_manager.get_queue("clean").clean(0, state=JobState.ACTIVE)

    @pytest.mark.asyncio
    async def test_drain_removes_waiting_and_delayed(self, queue_manager) -> None:
        queue = queue_manager.get_queue("drain-all")
        await queue.add("now")
        await queue.add("later", options=JobOptions(delay=60_000))

        assert await queue.drain() == 2
        stats = await queue.get_stats()
        assert stats["waiting"] == 0
        assert stats["delayed"] == 0

    @pytest.mark.asyncio
    async def test_retry_failed_job_resets_attempts(self, queue_manager) -> None:
        queue = queue_manager.get_queue("manual-retry")
        await queue.add("w", options=JobOptions(attempts=1))
        job = await queue.fetch_next()
        await queue.fail(job, RuntimeError("x"))

        retried = await queue.retry_job(job.id)

        assert retried.state == JobState.WAITING
        assert retried.attempts_made == 0
        assert (await queue.fetch_next()).id == job.id

    @pytest.mark.asyncio
    async def test_retry_rejects_unknown_and_unfailed_jobs(self, queue_manager) -> None:
        queue = queue_manager.get_queue("manual-retry")
        with pytest.raises(NotFound):
            await queue.retry_job("missing")
        job = await queue.add("w")
        with pytest.raises(ValidationError):
            await queue.retry_job(job.id)

    @pytest.mark.asyncio
    async def test_retention_keeps_newest_completed(self, queue_manager) -> None:
        queue = queue_manager.get_queue("retention")
        options = JobOptions(remove_on_complete=RetentionPolicy(count=2))
        ids = []
        for _ in range(4):
            await queue.add("w", options=options)
            job = await queue.fetch_next()
            await queue.complete(job)
            ids.append(job.id)
            await asyncio.sleep(0.002)

        kept = [job.id for job in await queue.get_jobs(JobState.COMPLETED)]
        assert kept == [ids[3], ids[2]]
