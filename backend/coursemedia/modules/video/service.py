"""Video service for business logic.

Implements upload, processing status, thumbnails and deletion. Processing
itself happens in the ``video-processing`` queue.
"""

import logging
import os
import uuid
from typing import BinaryIO, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from coursemedia.core.config import settings
from coursemedia.core.exceptions import (
    Forbidden,
    NotFound,
    PayloadTooLarge,
    ValidationError,
)
from coursemedia.core.logging import log_error, log_info
from coursemedia.core.storage import StorageService, generate_key
from coursemedia.modules.auth import Principal
from coursemedia.modules.course import CourseRepository
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.job.models import Job
from coursemedia.modules.transcoding.pipeline import thumbnail_key
from coursemedia.modules.transcoding.tasks import enqueue_video_processing
from coursemedia.modules.video.models import Video, VideoStatus
from coursemedia.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)

ORIGINALS_PREFIX = "videos/originals"

THUMBNAIL_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".webp": "image/webp",
}


def generate_unique_filename(original_name: str) -> str:
    """Storage filename keeping the original extension."""
    ext = os.path.splitext(original_name or "")[1].lower()
    return f"{uuid.uuid4().hex}{ext}"


def validate_video_upload(content_type: Optional[str], size: Optional[int]) -> None:
    """Validate an upload before it is stored.

    Raises:
        ValidationError: If the content type is not video/*
        PayloadTooLarge: If the declared size exceeds the limit
    """
    if not content_type or not content_type.lower().startswith("video/"):
        raise ValidationError("Only video files are accepted")
    if size is not None and size > settings.VIDEO_MAX_UPLOAD_BYTES:
        raise PayloadTooLarge(
            f"File exceeds the maximum upload size of {settings.VIDEO_MAX_UPLOAD_BYTES} bytes"
        )
    if size == 0:
        raise ValidationError("File is empty")


def calculate_progress(status: str, rendition_count: int, enabled_count: int) -> int:
    """Percent of enabled qualities already produced."""
    if status == VideoStatus.COMPLETED.value:
        return 100
    if enabled_count <= 0:
        return 0
    return min(100, round(100 * rendition_count / enabled_count))


class VideoService:
    """Service for the video lifecycle."""

    def __init__(
        self,
        session: AsyncSession,
        storage: StorageService,
        queue_manager: Optional[QueueManager] = None,
    ):
        self.session = session
        self.storage = storage
        self.queue_manager = queue_manager
        self.repo = VideoRepository(session)
        self.courses = CourseRepository(session)

    async def upload(
        self,
        fileobj: BinaryIO,
        original_name: str,
        content_type: Optional[str],
        principal: Principal,
        size: Optional[int] = None,
        material_id: Optional[uuid.UUID] = None,
    ) -> tuple[Video, Job]:
        """Store an original, create the Video and publish its processing job.

        Returns:
            The PENDING video and the published job
        """
        validate_video_upload(content_type, size)
        if self.queue_manager is None:
            raise RuntimeError("VideoService.upload requires a queue manager")

        material = None
        if material_id is not None:
            material = await self.courses.get_material(material_id)
            if material is None:
                raise NotFound("Material not found")

        filename = generate_unique_filename(original_name)
        key = generate_key(ORIGINALS_PREFIX, filename)
        stored = await self.storage.save_fileobj(fileobj, key, content_type)

        if stored.file_size > settings.VIDEO_MAX_UPLOAD_BYTES:
            await self.storage.delete(key)
            raise PayloadTooLarge(
                f"File exceeds the maximum upload size of {settings.VIDEO_MAX_UPLOAD_BYTES} bytes"
            )

        video = await self.repo.create(
            original_name=original_name or filename,
            filename=filename,
            path=key,
            size=stored.file_size,
            mime_type=content_type,
            uploaded_by=principal.user_id,
        )
        if material is not None:
            material.video_id = video.id
        # Committed before publishing so a worker always finds the row.
        await self.session.commit()

        try:
            job = await enqueue_video_processing(self.queue_manager, video.id, key)
        except Exception as e:
            log_error(logger, "Could not publish processing job", exception=e, video_id=str(video.id))
            await self.repo.set_status(video, VideoStatus.FAILED, "Could not schedule processing")
            await self.session.commit()
            raise

        log_info(
            logger,
            "Video uploaded",
            video_id=str(video.id),
            job_id=job.id,
            size=stored.file_size,
            material_id=str(material_id) if material_id else None,
        )
        return video, job

    async def get_video(self, video_id: uuid.UUID) -> Video:
        video = await self.repo.get_by_id(video_id, include_qualities=True)
        if video is None:
            raise NotFound("Video not found")
        return video

    async def get_processing_status(self, video_id: uuid.UUID) -> dict:
        """Status, progress and error of a video."""
        video = await self.repo.get_by_id(video_id)
        if video is None:
            raise NotFound("Video not found")
        count = await self.repo.count_qualities(video_id)
        return {
            "video_id": video.id,
            "status": video.status,
            "progress": calculate_progress(
                video.status, count, len(settings.VIDEO_ENABLED_QUALITIES)
            ),
            "error": video.processing_error,
        }

    async def get_thumbnail(self, video_id: uuid.UUID) -> tuple[bytes, str]:
        """Thumbnail bytes and content type."""
        video = await self.repo.get_by_id(video_id)
        if video is None or not video.thumbnail:
            raise NotFound("Thumbnail not found")
        content = await self.storage.read(video.thumbnail)
        ext = os.path.splitext(video.thumbnail)[1].lower()
        return content, THUMBNAIL_CONTENT_TYPES.get(ext, "image/jpeg")

    async def delete_video(self, video_id: uuid.UUID, principal: Principal) -> None:
        """Remove the original, renditions, thumbnails and the row."""
        video = await self.repo.get_by_id(video_id, include_qualities=True)
        if video is None:
            raise NotFound("Video not found")
        if not principal.is_admin and video.uploaded_by != principal.user_id:
            raise Forbidden("Only the uploader or an administrator can delete this video")

        keys = [video.path] + [quality.path for quality in video.qualities]
        thumbnails = {thumbnail_key(video.id, i) for i in range(settings.VIDEO_THUMBNAIL_COUNT)}
        if video.thumbnail:
            thumbnails.add(video.thumbnail)
        keys.extend(sorted(thumbnails))

        for key in keys:
            if await self.storage.exists(key):
                await self.storage.delete(key)

        await self.repo.delete(video)
        await self.session.commit()
        log_info(logger, "Video deleted", video_id=str(video_id), files=len(keys))
