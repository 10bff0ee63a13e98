"""Property-based tests for job retries, backoff and ordering.

**Feature: course-media, Property 1: Bounded retries with exponential backoff**
**Feature: course-media, Property 2: Priority then FIFO ordering**
"""

import asyncio
import math

import pytest
from hypothesis import given, settings, strategies as st

from coursemedia.modules.job import events
from coursemedia.modules.job.models import (
    BackoffPolicy,
    Job,
    JobOptions,
    JobState,
    UnrecoverableError,
    WorkerOptions,
)
from coursemedia.modules.job.store import MemoryJobStore


async def wait_until(predicate, timeout: float = 3.0) -> None:
    """Poll an async predicate until it holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while True:
        if await predicate():
            return
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestBackoffPolicy:
    """Property tests for retry delays."""

    @given(
        delay=st.integers(min_value=1, max_value=60_000),
        attempt=st.integers(min_value=1, max_value=15),
    )
    @settings(max_examples=100)
    def test_exponential_delay_doubles_per_attempt(self, delay: int, attempt: int) -> None:
        """**Feature: course-media, Property 1: Bounded retries with exponential backoff**

        For any base delay and attempt, the delay SHALL equal
        delay * 2^(attempt - 1).
        """
        policy = BackoffPolicy(type="exponential", delay=delay)
        assert policy.calculate_delay(attempt) == int(delay * math.pow(2, attempt - 1))

    @given(
        delay=st.integers(min_value=1, max_value=10_000),
        max_delay=st.integers(min_value=1, max_value=50_000),
        attempt=st.integers(min_value=1, max_value=30),
    )
    @settings(max_examples=100)
    def test_delay_never_exceeds_cap(self, delay: int, max_delay: int, attempt: int) -> None:
        policy = BackoffPolicy(type="exponential", delay=delay, max_delay=max_delay)
        assert policy.calculate_delay(attempt) <= max_delay

    @given(attempt=st.integers(min_value=1, max_value=20))
    @settings(max_examples=50)
    def test_fixed_delay_is_constant(self, attempt: int) -> None:
        policy = BackoffPolicy(type="fixed", delay=500)
        assert policy.calculate_delay(attempt) == 500

    def test_default_policy_matches_queue_defaults(self) -> None:
        policy = BackoffPolicy()
        assert [policy.calculate_delay(a) for a in (1, 2, 3)] == [2000, 4000, 8000]


class TestJobOptions:
    """Tests for option validation and merging."""

    def test_rejects_out_of_range_priority(self) -> None:
        with pytest.raises(ValueError):
            JobOptions(priority=-1)
        with pytest.raises(ValueError):
            JobOptions(priority=1001)

    def test_rejects_zero_attempts(self) -> None:
        with pytest.raises(ValueError):
            JobOptions(attempts=0)

    def test_unset_fields_fall_back_to_defaults(self) -> None:
        defaults = JobOptions(attempts=4, backoff=BackoffPolicy(delay=100))
        merged = JobOptions(priority=3).merged_with(defaults)
        assert merged.priority == 3
        assert merged.attempts == 4
        assert merged.backoff.delay == 100

    def test_job_survives_json(self) -> None:
        job = Job(queue="q", name="n", data={"a": 1}, max_attempts=3, attempts_made=2)
        restored = Job.from_json(job.to_json())
        assert restored.id == job.id
        assert restored.data == {"a": 1}
        assert restored.state == JobState.WAITING
        assert restored.is_final_attempt is False


class TestPriorityOrdering:
    """Property tests for the waiting order."""

    @given(priorities=st.lists(st.integers(min_value=0, max_value=1000), min_size=1, max_size=30))
    @settings(max_examples=50, deadline=None)
    @pytest.mark.asyncio
    async def test_pop_order_is_priority_then_arrival(self, priorities: list[int]) -> None:
        """**Feature: course-media, Property 2: Priority then FIFO ordering**

        Lower priority numbers SHALL be served first; equal priorities SHALL
        be served in arrival order.
        """
        store = MemoryJobStore()
        jobs = []
        for index, priority in enumerate(priorities):
            job = Job(queue="ordering", name="n", data={"index": index}, priority=priority)
            await store.add(job)
            jobs.append(job)

        popped = []
        while (job := await store.pop_next("ordering", now=0)) is not None:
            popped.append(job.data["index"])

        expected = [
            index for index, _ in sorted(enumerate(priorities), key=lambda p: (p[1], p[0]))
        ]
        assert popped == expected

    @pytest.mark.asyncio
    async def test_delayed_job_waits_until_due(self, queue_manager) -> None:
        queue = queue_manager.get_queue("delays")
        job = await queue.add("later", options=JobOptions(delay=80))
        assert job.state == JobState.DELAYED

        assert await queue.fetch_next() is None
        await asyncio.sleep(0.12)
        fetched = await queue.fetch_next()
        assert fetched is not None
        assert fetched.id == job.id
        assert fetched.state == JobState.ACTIVE


class TestRetries:
    """Tests for attempts, retries and terminal failure."""

    @pytest.mark.asyncio
    async def test_failing_job_runs_exactly_max_attempts(self, queue_manager) -> None:
        """**Feature: course-media, Property 1: Bounded retries with exponential backoff**

        A handler that always raises SHALL run exactly ``attempts`` times and
        the job SHALL end FAILED with one failed event.
        """
        calls = []
        seen = {events.RETRYING: 0, events.FAILED: 0}

        async def handler(job):
            calls.append(job.attempts_made)
            raise RuntimeError("boom")

        def count(event):
            seen[event.event] += 1

        queue_manager.on(events.RETRYING, count)
        queue_manager.on(events.FAILED, count)
        queue_manager.register_worker("retry", handler, WorkerOptions(concurrency=1))
        await queue_manager.start()

        job = await queue_manager.enqueue("retry", "always-fails", options=JobOptions(attempts=3))
        queue = queue_manager.get_queue("retry")

        async def failed():
            current = await queue.get_job(job.id)
            return current.state == JobState.FAILED

        await wait_until(failed)
        final = await queue.get_job(job.id)

        assert calls == [1, 2, 3]
        assert final.attempts_made == 3
        assert final.failed_reason == "boom"
        assert len(final.stacktrace) == 3
        assert seen == {events.RETRYING: 2, events.FAILED: 1}

    @pytest.mark.asyncio
    async def test_unrecoverable_error_skips_retries(self, queue_manager) -> None:
        calls = []

        async def handler(job):
            calls.append(job.attempts_made)
            raise UnrecoverableError("corrupt input")

        queue_manager.register_worker("fatal", handler)
        await queue_manager.start()
        job = await queue_manager.enqueue("fatal", "bad", options=JobOptions(attempts=5))
        queue = queue_manager.get_queue("fatal")

        async def failed():
            return (await queue.get_job(job.id)).state == JobState.FAILED

        await wait_until(failed)
        assert calls == [1]
        assert (await queue.get_job(job.id)).failed_reason == "corrupt input"

    @pytest.mark.asyncio
    async def test_job_succeeding_on_retry_completes(self, queue_manager) -> None:
        async def handler(job):
            if job.attempts_made < 2:
                raise RuntimeError("transient")
            return {"ok": True}

        queue_manager.register_worker("flaky", handler)
        await queue_manager.start()
        job = await queue_manager.enqueue("flaky", "flaky")
        queue = queue_manager.get_queue("flaky")

        async def completed():
            return (await queue.get_job(job.id)).state == JobState.COMPLETED

        await wait_until(completed)
        final = await queue.get_job(job.id)
        assert final.attempts_made == 2
        assert final.return_value == {"ok": True}

    @pytest.mark.asyncio
    async def test_fail_schedules_backoff_delay(self, queue_manager) -> None:
        queue = queue_manager.get_queue("manual")
        await queue.add("n", options=JobOptions(attempts=2, backoff=BackoffPolicy(delay=1000)))
        job = await queue.fetch_next()

        retried = await queue.fail(job, RuntimeError("x"))

        assert retried is True
        stored = await queue.get_job(job.id)
        assert stored.state == JobState.DELAYED
        assert stored.run_at - job.processed_on >= 1000
        assert await queue.fetch_next() is None
