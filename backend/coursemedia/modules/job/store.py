"""Job persistence backends.

Every state has an ordered index: waiting by priority then arrival, delayed
by due time, active by lock expiry, completed and failed by finish time.
An active job whose lock expires without a refresh has stalled.
"""

import itertools
import logging
from abc import ABC, abstractmethod
from typing import Optional

import redis.asyncio as redis

from coursemedia.modules.job.models import (
    Job,
    JobState,
    PRIORITY_SCALE,
    now_ms,
)

logger = logging.getLogger(__name__)

NEWEST_FIRST = (JobState.COMPLETED, JobState.FAILED)

# KEYS: waiting, active. ARGV: lock expiry.
POP_TO_ACTIVE = """
local popped = redis.call("ZPOPMIN", KEYS[1])
if #popped == 0 then
    return false
end
redis.call("ZADD", KEYS[2], ARGV[1], popped[1])
return popped[1]
"""

# KEYS: active, jobs. ARGV: job id, lock token, lock expiry.
REFRESH_LOCK = """
if not redis.call("ZSCORE", KEYS[1], ARGV[1]) then
    return 0
end
local raw = redis.call("HGET", KEYS[2], ARGV[1])
if not raw or cjson.decode(raw)["lock_token"] ~= ARGV[2] then
    return 0
end
redis.call("ZADD", KEYS[1], ARGV[3], ARGV[1])
return 1
"""


def waiting_score(priority: int, sequence: int) -> int:
    """Order key for waiting jobs: lower priority number first, then FIFO."""
    return priority * PRIORITY_SCALE + sequence


def index_score(job: Job) -> int:
    """Order key of a job in a non-waiting state index."""
    if job.state == JobState.DELAYED:
        return job.run_at or job.timestamp
    if job.state == JobState.ACTIVE:
        return job.lock_until or job.processed_on or job.timestamp
    return job.finished_on or job.timestamp


class JobStore(ABC):
    """Abstract base class for job stores."""

    @abstractmethod
    async def add(self, job: Job) -> None:
        """Persist a new job and index it under its current state."""

    @abstractmethod
    async def move(self, job: Job, previous: JobState) -> None:
        """Persist a job whose state changed from ``previous``."""

    @abstractmethod
    async def save(self, job: Job) -> None:
        """Persist job fields without changing its state index."""

    @abstractmethod
    async def get(self, queue: str, job_id: str) -> Optional[Job]:
        """Load a job."""

    @abstractmethod
    async def pop_next(
        self, queue: str, now: int, lock_until: Optional[int] = None
    ) -> Optional[Job]:
        """Promote due delayed jobs, then take the next waiting job.

        The job leaves the waiting index and enters the active index, scored
        by ``lock_until``, in one step. The caller persists its new state.
        """

    @abstractmethod
    async def refresh_lock(
        self, queue: str, job_id: str, token: str, lock_until: int
    ) -> bool:
        """Push back the lock expiry of an active job held under ``token``.

        Returns:
            False if the job is no longer active under that token
        """

    @abstractmethod
    async def release_active(self, queue: str, job_id: str) -> bool:
        """Take a job out of the active index.

        Returns:
            True for exactly one caller when several race on the same job
        """

    @abstractmethod
    async def list_jobs(
        self, queue: str, state: JobState, start: int = 0, end: int = -1
    ) -> list[Job]:
        """List jobs in a state. Finished states are newest first."""

    @abstractmethod
    async def counts(self, queue: str) -> dict[JobState, int]:
        """Number of jobs per state."""

    @abstractmethod
    async def remove(self, queue: str, job_ids: list[str]) -> int:
        """Remove jobs from every index. Returns the number removed."""

    @abstractmethod
    async def older_than(
        self, queue: str, state: JobState, cutoff: int, limit: int = 0
    ) -> list[str]:
        """IDs in a state whose index score is below ``cutoff``."""

    @abstractmethod
    async def beyond_count(self, queue: str, state: JobState, keep: int) -> list[str]:
        """IDs of finished jobs past the newest ``keep``."""

    @abstractmethod
    async def next_delayed_at(self, queue: str) -> Optional[int]:
        """Due time of the earliest delayed job."""

    @abstractmethod
    async def set_paused(self, queue: str, paused: bool) -> None:
        """Pause or resume fetching from a queue."""

    @abstractmethod
    async def is_paused(self, queue: str) -> bool:
        """Whether a queue is paused."""

    async def close(self) -> None:
        """Release backend resources."""


class MemoryJobStore(JobStore):
    """In-process job store for tests and single-process development."""

    def __init__(self):
        self._jobs: dict[str, dict[str, str]] = {}
        self._index: dict[str, dict[JobState, dict[str, int]]] = {}
        self._paused: set[str] = set()
        self._sequence = itertools.count(1)

    def _queue_index(self, queue: str) -> dict[JobState, dict[str, int]]:
        if queue not in self._index:
            self._index[queue] = {state: {} for state in JobState}
            self._jobs[queue] = {}
        return self._index[queue]

    def _score(self, job: Job) -> int:
        if job.state == JobState.WAITING:
            return waiting_score(job.priority, next(self._sequence))
        return index_score(job)

    async def add(self, job: Job) -> None:
        index = self._queue_index(job.queue)
        self._jobs[job.queue][job.id] = job.to_json()
        index[job.state][job.id] = self._score(job)

    async def move(self, job: Job, previous: JobState) -> None:
        index = self._queue_index(job.queue)
        index[previous].pop(job.id, None)
        self._jobs[job.queue][job.id] = job.to_json()
        index[job.state][job.id] = self._score(job)

    async def save(self, job: Job) -> None:
        self._queue_index(job.queue)
        if job.id in self._jobs[job.queue]:
            self._jobs[job.queue][job.id] = job.to_json()

    async def get(self, queue: str, job_id: str) -> Optional[Job]:
        self._queue_index(queue)
        raw = self._jobs[queue].get(job_id)
        return Job.from_json(raw) if raw is not None else None

    async def pop_next(
        self, queue: str, now: int, lock_until: Optional[int] = None
    ) -> Optional[Job]:
        index = self._queue_index(queue)
        due = [
            job_id for job_id, run_at in index[JobState.DELAYED].items()
            if run_at <= now
        ]
        for job_id in sorted(due, key=index[JobState.DELAYED].get):
            del index[JobState.DELAYED][job_id]
            job = Job.from_json(self._jobs[queue][job_id])
            job.state = JobState.WAITING
            await self.add(job)

        waiting = index[JobState.WAITING]
        if not waiting:
            return None
        job_id = min(waiting, key=waiting.get)
        del waiting[job_id]
        index[JobState.ACTIVE][job_id] = now if lock_until is None else lock_until
        return Job.from_json(self._jobs[queue][job_id])

    async def refresh_lock(
        self, queue: str, job_id: str, token: str, lock_until: int
    ) -> bool:
        active = self._queue_index(queue)[JobState.ACTIVE]
        raw = self._jobs[queue].get(job_id)
        if job_id not in active or raw is None:
            return False
        if Job.from_json(raw).lock_token != token:
            return False
        active[job_id] = lock_until
        return True

    async def release_active(self, queue: str, job_id: str) -> bool:
        return self._queue_index(queue)[JobState.ACTIVE].pop(job_id, None) is not None

    async def list_jobs(
        self, queue: str, state: JobState, start: int = 0, end: int = -1
    ) -> list[Job]:
        bucket = self._queue_index(queue)[state]
        ids = sorted(bucket, key=bucket.get, reverse=state in NEWEST_FIRST)
        ids = ids[start:] if end == -1 else ids[start:end + 1]
        return [Job.from_json(self._jobs[queue][job_id]) for job_id in ids]

    async def counts(self, queue: str) -> dict[JobState, int]:
        index = self._queue_index(queue)
        return {state: len(index[state]) for state in JobState}

    async def remove(self, queue: str, job_ids: list[str]) -> int:
        index = self._queue_index(queue)
        removed = 0
        for job_id in job_ids:
            if self._jobs[queue].pop(job_id, None) is not None:
                removed += 1
            for bucket in index.values():
                bucket.pop(job_id, None)
        return removed

    async def older_than(
        self, queue: str, state: JobState, cutoff: int, limit: int = 0
    ) -> list[str]:
        bucket = self._queue_index(queue)[state]
        ids = sorted(
            (job_id for job_id, score in bucket.items() if score < cutoff),
            key=bucket.get,
        )
        return ids[:limit] if limit > 0 else ids

    async def beyond_count(self, queue: str, state: JobState, keep: int) -> list[str]:
        bucket = self._queue_index(queue)[state]
        ids = sorted(bucket, key=bucket.get, reverse=True)
        return ids[keep:]

    async def next_delayed_at(self, queue: str) -> Optional[int]:
        delayed = self._queue_index(queue)[JobState.DELAYED]
        return min(delayed.values()) if delayed else None

    async def set_paused(self, queue: str, paused: bool) -> None:
        if paused:
            self._paused.add(queue)
        else:
            self._paused.discard(queue)

    async def is_paused(self, queue: str) -> bool:
        return queue in self._paused


class RedisJobStore(JobStore):
    """Redis-backed job store shared by API and worker processes.

    Layout per queue: a hash of job JSON keyed by ID, one sorted set per
    state, a sequence counter and a paused flag.
    """

    def __init__(self, client: redis.Redis, prefix: str = "coursemedia"):
        self.redis = client
        self.prefix = prefix
        self._pop_to_active = client.register_script(POP_TO_ACTIVE)
        self._refresh_lock = client.register_script(REFRESH_LOCK)

    def _key(self, queue: str, suffix: str) -> str:
        return f"{self.prefix}:{queue}:{suffix}"

    def _state_key(self, queue: str, state: JobState) -> str:
        return self._key(queue, state.value)

    async def _score(self, job: Job) -> int:
        if job.state == JobState.WAITING:
            sequence = await self.redis.incr(self._key(job.queue, "seq"))
            return waiting_score(job.priority, sequence)
        return index_score(job)

    async def add(self, job: Job) -> None:
        score = await self._score(job)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(self._key(job.queue, "jobs"), job.id, job.to_json())
            pipe.zadd(self._state_key(job.queue, job.state), {job.id: score})
            await pipe.execute()

    async def move(self, job: Job, previous: JobState) -> None:
        score = await self._score(job)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zrem(self._state_key(job.queue, previous), job.id)
            pipe.hset(self._key(job.queue, "jobs"), job.id, job.to_json())
            pipe.zadd(self._state_key(job.queue, job.state), {job.id: score})
            await pipe.execute()

    async def save(self, job: Job) -> None:
        key = self._key(job.queue, "jobs")
        if await self.redis.hexists(key, job.id):
            await self.redis.hset(key, job.id, job.to_json())

    async def get(self, queue: str, job_id: str) -> Optional[Job]:
        raw = await self.redis.hget(self._key(queue, "jobs"), job_id)
        return Job.from_json(raw) if raw is not None else None

    async def _promote_delayed(self, queue: str, now: int) -> None:
        delayed_key = self._state_key(queue, JobState.DELAYED)
        due = await self.redis.zrangebyscore(delayed_key, "-inf", now)
        for job_id in due:
            # ZREM decides which process owns the promotion.
            if not await self.redis.zrem(delayed_key, job_id):
                continue
            job = await self.get(queue, job_id)
            if job is None:
                continue
            job.state = JobState.WAITING
            await self.add(job)

    async def pop_next(
        self, queue: str, now: int, lock_until: Optional[int] = None
    ) -> Optional[Job]:
        await self._promote_delayed(queue, now)
        waiting_key = self._state_key(queue, JobState.WAITING)
        active_key = self._state_key(queue, JobState.ACTIVE)
        while True:
            job_id = await self._pop_to_active(
                keys=[waiting_key, active_key],
                args=[now if lock_until is None else lock_until],
            )
            if job_id is None:
                return None
            job = await self.get(queue, job_id)
            if job is not None:
                return job
            await self.redis.zrem(active_key, job_id)
            logger.warning(
                "Dropping index entry without job data",
                extra={"queue": queue, "job_id": job_id},
            )

    async def refresh_lock(
        self, queue: str, job_id: str, token: str, lock_until: int
    ) -> bool:
        refreshed = await self._refresh_lock(
            keys=[self._state_key(queue, JobState.ACTIVE), self._key(queue, "jobs")],
            args=[job_id, token, lock_until],
        )
        return bool(refreshed)

    async def release_active(self, queue: str, job_id: str) -> bool:
        return bool(await self.redis.zrem(self._state_key(queue, JobState.ACTIVE), job_id))

    async def _load_many(self, queue: str, job_ids: list[str]) -> list[Job]:
        if not job_ids:
            return []
        raws = await self.redis.hmget(self._key(queue, "jobs"), job_ids)
        return [Job.from_json(raw) for raw in raws if raw is not None]

    async def list_jobs(
        self, queue: str, state: JobState, start: int = 0, end: int = -1
    ) -> list[Job]:
        key = self._state_key(queue, state)
        if state in NEWEST_FIRST:
            job_ids = await self.redis.zrevrange(key, start, end)
        else:
            job_ids = await self.redis.zrange(key, start, end)
        return await self._load_many(queue, job_ids)

    async def counts(self, queue: str) -> dict[JobState, int]:
        async with self.redis.pipeline(transaction=False) as pipe:
            for state in JobState:
                pipe.zcard(self._state_key(queue, state))
            results = await pipe.execute()
        return dict(zip(JobState, results))

    async def remove(self, queue: str, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hdel(self._key(queue, "jobs"), *job_ids)
            for state in JobState:
                pipe.zrem(self._state_key(queue, state), *job_ids)
            results = await pipe.execute()
        return results[0]

    async def older_than(
        self, queue: str, state: JobState, cutoff: int, limit: int = 0
    ) -> list[str]:
        key = self._state_key(queue, state)
        if limit > 0:
            return await self.redis.zrangebyscore(
                key, "-inf", f"({cutoff}", start=0, num=limit
            )
        return await self.redis.zrangebyscore(key, "-inf", f"({cutoff}")

    async def beyond_count(self, queue: str, state: JobState, keep: int) -> list[str]:
        return await self.redis.zrevrange(self._state_key(queue, state), keep, -1)

    async def next_delayed_at(self, queue: str) -> Optional[int]:
        first = await self.redis.zrange(
            self._state_key(queue, JobState.DELAYED), 0, 0, withscores=True
        )
        return int(first[0][1]) if first else None

    async def set_paused(self, queue: str, paused: bool) -> None:
        key = self._key(queue, "paused")
        if paused:
            await self.redis.set(key, "1")
        else:
            await self.redis.delete(key)

    async def is_paused(self, queue: str) -> bool:
        return bool(await self.redis.exists(self._key(queue, "paused")))

    async def close(self) -> None:
        await self.redis.aclose()


def create_store(backend: str, client: Optional[redis.Redis] = None, prefix: str = "coursemedia") -> JobStore:
    """Create the configured job store."""
    backend = backend.lower()
    if backend == "memory":
        return MemoryJobStore()
    if backend == "redis":
        if client is None:
            from coursemedia.core.redis import create_redis
            client = create_redis()
        return RedisJobStore(client, prefix=prefix)
    raise ValueError(f"Unsupported queue backend: {backend}")


__all__ = [
    "JobStore",
    "MemoryJobStore",
    "RedisJobStore",
    "create_store",
    "now_ms",
]
