"""Pydantic schemas for the queue administration API."""

from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import BaseModel, Field

from coursemedia.modules.job.models import Job, JobState


def _from_ms(value: Optional[int]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


class JobInfo(BaseModel):
    """Job information."""
    id: str
    queue: str
    name: str
    data: dict
    state: JobState
    priority: int
    progress: int
    attempts_made: int
    max_attempts: int
    failed_reason: Optional[str] = None
    stacktrace: list[str] = Field(default_factory=list)
    return_value: Any = None
    created_at: datetime
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobInfo":
        return cls(
            id=job.id,
            queue=job.queue,
            name=job.name,
            data=job.data,
            state=job.state,
            priority=job.priority,
            progress=job.progress,
            attempts_made=job.attempts_made,
            max_attempts=job.max_attempts,
            failed_reason=job.failed_reason,
            stacktrace=job.stacktrace,
            return_value=job.return_value,
            created_at=_from_ms(job.timestamp),
            processed_at=_from_ms(job.processed_on),
            finished_at=_from_ms(job.finished_on),
        )


class QueueStatsResponse(BaseModel):
    """Job counts per state for one queue."""
    queue: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    total: int = 0
    paused: bool = False


class QueueCleanRequest(BaseModel):
    """Remove finished jobs older than a grace period."""
    grace_ms: int = Field(0, ge=0, description="Keep jobs younger than this")
    limit: int = Field(0, ge=0, description="Maximum jobs to remove, 0 for all")
    state: JobState = JobState.COMPLETED


class QueueCleanResponse(BaseModel):
    queue: str
    removed: list[str]


class QueueActionResponse(BaseModel):
    queue: str
    paused: bool
    message: str
