"""API Router for queue administration."""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from coursemedia.core.exceptions import NotFound
from coursemedia.modules.auth import Principal, require_admin
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.job.models import JobState
from coursemedia.modules.job.schemas import (
    JobInfo,
    QueueActionResponse,
    QueueCleanRequest,
    QueueCleanResponse,
    QueueStatsResponse,
)

router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_queue_manager(request: Request) -> QueueManager:
    """Dependency to get the application's QueueManager."""
    return request.app.state.queue_manager


@router.get("/queues", response_model=list[QueueStatsResponse])
async def list_queues(
    manager: QueueManager = Depends(get_queue_manager),
    _: Principal = Depends(require_admin),
) -> list[QueueStatsResponse]:
    """Stats for every known queue."""
    stats = await manager.get_all_stats()
    return [QueueStatsResponse(queue=name, **values) for name, values in stats.items()]


@router.get("/queues/{name}/stats", response_model=QueueStatsResponse)
async def get_queue_stats(
    name: str,
    manager: QueueManager = Depends(get_queue_manager),
    _: Principal = Depends(require_admin),
) -> QueueStatsResponse:
    stats = await manager.get_queue(name).get_stats()
    return QueueStatsResponse(queue=name, **stats)


@router.get("/queues/{name}/jobs", response_model=list[JobInfo])
async def list_jobs(
    name: str,
    state: JobState = Query(JobState.FAILED),
    start: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    manager: QueueManager = Depends(get_queue_manager),
    _: Principal = Depends(require_admin),
) -> list[JobInfo]:
    jobs = await manager.get_queue(name).get_jobs(state, start, start + limit - 1)
    return [JobInfo.from_job(job) for job in jobs]


@router.get("/queues/{name}/jobs/{job_id}", response_model=JobInfo)
async def get_job(
    name: str,
    job_id: str,
    manager: QueueManager = Depends(get_queue_manager),
    _: Principal = Depends(require_admin),
) -> JobInfo:
    job = await manager.get_queue(name).get_job(job_id)
    if job is None:
        raise NotFound(f"Job {job_id} not found")
    return JobInfo.from_job(job)


@router.post("/queues/{name}/jobs/{job_id}/retry", response_model=JobInfo)
async def retry_job(
    name: str,
    job_id: str,
    manager: QueueManager = Depends(get_queue_manager),
    _: Principal = Depends(require_admin),
) -> JobInfo:
    """Move a failed job back to waiting."""
    job = await manager.get_queue(name).retry_job(job_id)
    return JobInfo.from_job(job)


@router.post("/queues/{name}/pause", response_model=QueueActionResponse)
async def pause_queue(
    name: str,
    manager: QueueManager = Depends(get_queue_manager),
    _: Principal = Depends(require_admin),
) -> QueueActionResponse:
    await manager.get_queue(name).pause()
    return QueueActionResponse(queue=name, paused=True, message="Queue paused")


@router.post("/queues/{name}/resume", response_model=QueueActionResponse)
async def resume_queue(
    name: str,
    manager: QueueManager = Depends(get_queue_manager),
    _: Principal = Depends(require_admin),
) -> QueueActionResponse:
    await manager.get_queue(name).resume()
    return QueueActionResponse(queue=name, paused=False, message="Queue resumed")


@router.post("/queues/{name}/clean", response_model=QueueCleanResponse)
async def clean_queue(
    name: str,
    request: Optional[QueueCleanRequest] = None,
    manager: QueueManager = Depends(get_queue_manager),
    _: Principal = Depends(require_admin),
) -> QueueCleanResponse:
    request = request or QueueCleanRequest()
    removed = await manager.get_queue(name).clean(
        request.grace_ms, request.limit, request.state
    )
    return QueueCleanResponse(queue=name, removed=removed)
