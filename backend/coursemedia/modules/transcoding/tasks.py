"""Queue wiring for video processing jobs."""

import logging
import uuid
from typing import Optional

from coursemedia.core.config import settings
from coursemedia.core.database import async_session_maker
from coursemedia.core.storage import StorageService
from coursemedia.modules.job import events
from coursemedia.modules.job.events import JobEvent
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.job.models import Job, JobOptions, WorkerOptions
from coursemedia.modules.job.worker import Worker
from coursemedia.modules.transcoding.ffmpeg import FFmpegTranscoder
from coursemedia.modules.transcoding.pipeline import (
    ProcessVideoPayload,
    VideoProcessingPipeline,
)

logger = logging.getLogger(__name__)

VIDEO_QUEUE = "video-processing"
PROCESS_VIDEO = "process-video"


def build_pipeline(storage: Optional[StorageService] = None) -> VideoProcessingPipeline:
    """Pipeline wired to the configured database, storage and ffmpeg."""
    return VideoProcessingPipeline(
        session_factory=async_session_maker,
        storage=storage or StorageService.from_settings(),
        transcoder=FFmpegTranscoder(
            ffmpeg_path=settings.FFMPEG_PATH,
            ffprobe_path=settings.FFPROBE_PATH,
            preset=settings.FFMPEG_PRESET,
        ),
    )


async def enqueue_video_processing(
    manager: QueueManager,
    video_id: uuid.UUID,
    input_path: str,
    output_qualities: Optional[list[str]] = None,
) -> Job:
    """Publish the processing job for an uploaded video."""
    payload = ProcessVideoPayload(
        video_id=video_id,
        input_path=input_path,
        output_qualities=output_qualities,
    )
    return await manager.enqueue(
        VIDEO_QUEUE,
        PROCESS_VIDEO,
        payload.to_data(),
        JobOptions(
            priority=settings.VIDEO_JOB_PRIORITY,
            attempts=settings.VIDEO_JOB_ATTEMPTS,
        ),
    )


def register_video_worker(
    manager: QueueManager,
    pipeline: VideoProcessingPipeline,
    concurrency: Optional[int] = None,
) -> Worker:
    """Attach the pipeline to the video queue and watch for final failures."""

    async def on_failed(event: JobEvent) -> None:
        # Covers jobs that failed before the pipeline could record the error.
        job = event.job
        if job is None or job.name != PROCESS_VIDEO:
            return
        video_id = job.data.get("video_id")
        if not video_id:
            return
        reason = event.data.get("reason") or job.failed_reason or "Processing failed"
        await pipeline.mark_failed(uuid.UUID(str(video_id)), reason)

    manager.on(events.FAILED, on_failed, queue=VIDEO_QUEUE)
    return manager.register_worker(
        VIDEO_QUEUE,
        pipeline.process,
        WorkerOptions(
            concurrency=concurrency or settings.VIDEO_WORKER_CONCURRENCY,
            lock_duration=settings.QUEUE_LOCK_DURATION_MS,
            stalled_interval=settings.QUEUE_STALLED_INTERVAL_MS,
        ),
    )
