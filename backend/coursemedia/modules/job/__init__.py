"""Job queue and worker pool."""

from coursemedia.modules.job.events import EventBus, JobEvent
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.job.models import (
    BackoffPolicy,
    Job,
    JobOptions,
    JobState,
    RateLimit,
    RetentionPolicy,
    UnrecoverableError,
    WorkerOptions,
)
from coursemedia.modules.job.queue import Queue
from coursemedia.modules.job.store import JobStore, MemoryJobStore, RedisJobStore

__all__ = [
    "BackoffPolicy",
    "EventBus",
    "Job",
    "JobEvent",
    "JobOptions",
    "JobState",
    "JobStore",
    "MemoryJobStore",
    "Queue",
    "QueueManager",
    "RateLimit",
    "RedisJobStore",
    "RetentionPolicy",
    "UnrecoverableError",
    "WorkerOptions",
]
