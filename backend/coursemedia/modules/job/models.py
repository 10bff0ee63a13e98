"""Job Queue models for reliable background processing.

Jobs live in the job store (Redis or memory), not in the relational database,
so they are plain dataclasses serialized to JSON.
"""

import json
import math
import time
import uuid
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from coursemedia.modules.job.queue import Queue

# Keeps priority * PRIORITY_SCALE + sequence inside a double's exact range.
MAX_PRIORITY = 1000
PRIORITY_SCALE = 10 ** 12


def now_ms() -> int:
    """Current wall clock time in milliseconds."""
    return int(time.time() * 1000)


class JobState(str, Enum):
    """Job lifecycle state."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


FINISHED_STATES = (JobState.COMPLETED, JobState.FAILED)


class UnrecoverableError(Exception):
    """Raised by a handler to fail a job without further retries."""


@dataclass
class BackoffPolicy:
    """Retry delay with exponential or fixed backoff.

    Delays are in milliseconds.
    """
    type: str = "exponential"
    delay: int = 2000
    max_delay: Optional[int] = None

    def calculate_delay(self, attempt: int) -> int:
        """Calculate delay before retrying after a failed attempt.

        Args:
            attempt: The attempt that just failed (1-indexed).

        Returns:
            The delay in milliseconds, capped at max_delay when set.
        """
        if attempt < 1 or self.type == "fixed":
            delay = self.delay
        else:
            delay = self.delay * math.pow(2, attempt - 1)
        if self.max_delay is not None:
            delay = min(delay, self.max_delay)
        return int(delay)


@dataclass
class RetentionPolicy:
    """How many finished jobs to keep and for how long."""
    count: Optional[int] = None
    age_seconds: Optional[int] = None


@dataclass
class JobOptions:
    """Per-job options. Unset fields fall back to the queue defaults."""
    priority: int = 0
    delay: int = 0
    attempts: Optional[int] = None
    backoff: Optional[BackoffPolicy] = None
    remove_on_complete: Optional[RetentionPolicy] = None
    remove_on_fail: Optional[RetentionPolicy] = None
    job_id: Optional[str] = None

    def __post_init__(self):
        if not 0 <= self.priority <= MAX_PRIORITY:
            raise ValueError(f"priority must be between 0 and {MAX_PRIORITY}")
        if self.delay < 0:
            raise ValueError("delay must not be negative")
        if self.attempts is not None and self.attempts < 1:
            raise ValueError("attempts must be at least 1")

    def merged_with(self, defaults: "JobOptions") -> "JobOptions":
        """Fill unset fields from defaults."""
        return JobOptions(
            priority=self.priority or defaults.priority,
            delay=self.delay or defaults.delay,
            attempts=self.attempts or defaults.attempts or 1,
            backoff=self.backoff or defaults.backoff or BackoffPolicy(),
            remove_on_complete=self.remove_on_complete or defaults.remove_on_complete,
            remove_on_fail=self.remove_on_fail or defaults.remove_on_fail,
            job_id=self.job_id,
        )


@dataclass
class RateLimit:
    """At most ``max`` job starts per ``duration`` milliseconds."""
    max: int
    duration: int


@dataclass
class WorkerOptions:
    """Worker pool options."""
    concurrency: int = 5
    limiter: Optional[RateLimit] = None
    # Milliseconds. A running job renews its lock every half lock_duration.
    lock_duration: int = 30_000
    stalled_interval: int = 30_000

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        if self.lock_duration < 1 or self.stalled_interval < 1:
            raise ValueError("lock_duration and stalled_interval must be positive")


@dataclass
class Job:
    """A unit of background work and its bookkeeping."""
    queue: str
    name: str
    data: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    priority: int = 0
    delay: int = 0
    attempts_made: int = 0
    max_attempts: int = 1
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)
    state: JobState = JobState.WAITING
    progress: int = 0
    failed_reason: Optional[str] = None
    stacktrace: list[str] = field(default_factory=list)
    return_value: Any = None
    timestamp: int = field(default_factory=now_ms)
    run_at: Optional[int] = None
    processed_on: Optional[int] = None
    finished_on: Optional[int] = None
    lock_token: Optional[str] = None
    lock_until: Optional[int] = None
    remove_on_complete: Optional[RetentionPolicy] = None
    remove_on_fail: Optional[RetentionPolicy] = None

    _queue: Optional["Queue"] = field(default=None, repr=False, compare=False)

    def __repr__(self) -> str:
        return f"<Job(id={self.id}, name={self.name}, state={self.state.value})>"

    @property
    def is_final_attempt(self) -> bool:
        """True while running the last attempt the job is allowed."""
        return self.attempts_made >= self.max_attempts

    def is_finished(self) -> bool:
        return self.state in FINISHED_STATES

    async def update_progress(self, percent: int) -> None:
        """Record progress (0-100) and emit a progress event."""
        percent = max(0, min(100, int(percent)))
        if self._queue is None:
            self.progress = percent
            return
        await self._queue.update_progress(self, percent)

    def to_dict(self) -> dict:
        data = {
            f.name: getattr(self, f.name) for f in fields(self)
            if not f.name.startswith("_")
        }
        data["state"] = self.state.value
        data["backoff"] = asdict(self.backoff)
        for key in ("remove_on_complete", "remove_on_fail"):
            if data[key] is not None:
                data[key] = asdict(data[key])
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        data = dict(data)
        data["state"] = JobState(data["state"])
        data["backoff"] = BackoffPolicy(**(data.get("backoff") or {}))
        for key in ("remove_on_complete", "remove_on_fail"):
            if data.get(key) is not None:
                data[key] = RetentionPolicy(**data[key])
        return cls(**data)

    @classmethod
    def from_json(cls, raw: str) -> "Job":
        return cls.from_dict(json.loads(raw))
