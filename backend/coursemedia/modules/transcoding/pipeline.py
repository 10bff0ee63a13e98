"""Video processing pipeline.

One run of ``process-video``: probe the original, convert it to every enabled
ladder quality in bitrate order, extract thumbnails, and move the Video from
PROCESSING to COMPLETED. Marking PROCESSING is the first write of a run and
marking COMPLETED or FAILED is the last.
"""

import asyncio
import logging
import math
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursemedia.core.config import settings
from coursemedia.core.exceptions import StorageError
from coursemedia.core.logging import log_error, log_info, log_warning
from coursemedia.core.metrics import RENDITIONS_TOTAL
from coursemedia.core.storage import StorageService
from coursemedia.modules.job.models import Job, UnrecoverableError
from coursemedia.modules.transcoding.ffmpeg import (
    ProbeError,
    TranscodeOutput,
    VideoInfo,
    validate_resolution_output,
)
from coursemedia.modules.transcoding.ladder import QualityProfile, enabled_profiles
from coursemedia.modules.video.models import VideoStatus
from coursemedia.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)

PROCESSED_PREFIX = "videos/processed"
THUMBNAILS_PREFIX = "videos/thumbnails"

# Share of job progress reported during conversions; thumbnails finish it.
CONVERSION_PROGRESS_SHARE = 90


class TranscodeError(Exception):
    """A rendition could not be produced. Retryable."""


class Transcoder(Protocol):
    def probe(self, input_path: str) -> VideoInfo:
        ...

    def transcode(
        self, input_path: str, output_path: str, profile: QualityProfile
    ) -> TranscodeOutput:
        ...

    def generate_thumbnails(
        self,
        input_path: str,
        output_dir: str,
        filename_prefix: str,
        duration: float,
        count: int = 3,
        size: str = "320x180",
        quality: int = 2,
    ) -> list[str]:
        ...


@dataclass
class PipelineConfig:
    """Per-deployment pipeline settings."""
    enabled_qualities: list[str] = field(
        default_factory=lambda: list(settings.VIDEO_ENABLED_QUALITIES)
    )
    thumbnail_count: int = settings.VIDEO_THUMBNAIL_COUNT
    thumbnail_size: str = settings.VIDEO_THUMBNAIL_SIZE
    thumbnail_quality: int = settings.VIDEO_THUMBNAIL_QUALITY
    delete_original: bool = settings.VIDEO_DELETE_ORIGINAL


@dataclass
class ProcessVideoPayload:
    """Message published for each uploaded video."""
    video_id: uuid.UUID
    input_path: str
    output_qualities: Optional[list[str]] = None

    @classmethod
    def from_data(cls, data: dict) -> "ProcessVideoPayload":
        try:
            return cls(
                video_id=uuid.UUID(str(data["video_id"])),
                input_path=str(data["input_path"]),
                output_qualities=data.get("output_qualities"),
            )
        except (KeyError, ValueError) as e:
            raise UnrecoverableError(f"Invalid process-video payload: {e}") from e

    def to_data(self) -> dict:
        return {
            "video_id": str(self.video_id),
            "input_path": self.input_path,
            "output_qualities": self.output_qualities,
        }


def rendition_key(quality: str, video_id: uuid.UUID) -> str:
    return f"{PROCESSED_PREFIX}/{quality}/{video_id}.mp4"


def thumbnail_key(video_id: uuid.UUID, index: int) -> str:
    return f"{THUMBNAILS_PREFIX}/{video_id}_{index}.jpg"


def conversion_progress(done: int, total: int) -> int:
    """Job progress after ``done`` of ``total`` conversions."""
    if total <= 0:
        return CONVERSION_PROGRESS_SHARE
    return round(CONVERSION_PROGRESS_SHARE * done / total)


class VideoProcessingPipeline:
    """Runs the transcoding steps for one job attempt."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        storage: StorageService,
        transcoder: Transcoder,
        config: Optional[PipelineConfig] = None,
    ):
        self.session_factory = session_factory
        self.storage = storage
        self.transcoder = transcoder
        self.config = config or PipelineConfig()

    async def process(self, job: Job) -> dict[str, Any]:
        """Job handler for ``process-video``.

        Raises:
            UnrecoverableError: Missing video, missing source, unreadable media
            Exception: Any other failure; the queue decides whether to retry
        """
        payload = ProcessVideoPayload.from_data(job.data)

        try:
            return await self._run(job, payload)
        except Exception as e:
            final = isinstance(e, UnrecoverableError) or job.is_final_attempt
            if final:
                await self.mark_failed(payload.video_id, self._failure_message(e))
            raise

    async def _run(self, job: Job, payload: ProcessVideoPayload) -> dict[str, Any]:
        async with self.session_factory() as session:
            repo = VideoRepository(session)

            video = await repo.get_by_id(payload.video_id)
            if video is None:
                raise UnrecoverableError(f"Video {payload.video_id} not found")
            # A failed video stays failed; the job must not report success.
            if video.status == VideoStatus.FAILED.value:
                raise UnrecoverableError(f"Video {video.id} already failed")
            if video.is_terminal():
                log_warning(
                    logger,
                    "Skipping processing of finished video",
                    video_id=str(video.id),
                    status=video.status,
                )
                return {"video_id": str(video.id), "status": video.status, "skipped": True}

            await repo.set_status(video, VideoStatus.PROCESSING)
            await session.commit()

            profiles = enabled_profiles(
                self.config.enabled_qualities, payload.output_qualities
            )
            if not profiles:
                raise UnrecoverableError("No enabled qualities to produce")

            if not await self.storage.exists(payload.input_path):
                raise UnrecoverableError("Source video is missing from storage")

            workdir = await asyncio.to_thread(tempfile.mkdtemp, prefix="coursemedia-")
            try:
                source = await self._local_source(payload.input_path, workdir)

                try:
                    info = await asyncio.to_thread(self.transcoder.probe, source)
                except ProbeError as e:
                    log_error(logger, "Probe failed", exception=e, video_id=str(video.id))
                    raise UnrecoverableError("Source video is unreadable") from e

                duration = float(math.floor(info.duration))
                await repo.update(video, duration=duration)
                await session.commit()

                produced = []
                for done, profile in enumerate(profiles, start=1):
                    await self._convert(repo, video.id, source, workdir, profile)
                    await session.commit()
                    produced.append(profile.label.value)
                    await job.update_progress(conversion_progress(done, len(profiles)))

                thumbnails = await self._thumbnails(video.id, source, workdir, info.duration)
                if thumbnails:
                    await repo.update(video, thumbnail=thumbnails[0])
                await job.update_progress(100)

                await repo.set_status(video, VideoStatus.COMPLETED)
                await session.commit()
            finally:
                await asyncio.to_thread(shutil.rmtree, workdir, True)

        log_info(
            logger,
            "Video processed",
            video_id=str(payload.video_id),
            qualities=produced,
            thumbnails=len(thumbnails),
        )

        if self.config.delete_original:
            if not await self.storage.delete(payload.input_path):
                log_warning(logger, "Could not delete original", video_id=str(payload.video_id))

        return {
            "video_id": str(payload.video_id),
            "qualities": produced,
            "thumbnail": thumbnails[0] if thumbnails else None,
            "duration": duration,
        }

    async def _local_source(self, key: str, workdir: str) -> str:
        """Filesystem path of the original, downloading it when remote."""
        path = self.storage.local_path(key)
        if path is not None:
            return path
        destination = os.path.join(workdir, "source" + os.path.splitext(key)[1])
        if not await self.storage.download(key, destination):
            raise StorageError("Could not download source video")
        return destination

    async def _convert(
        self,
        repo: VideoRepository,
        video_id: uuid.UUID,
        source: str,
        workdir: str,
        profile: QualityProfile,
    ) -> None:
        quality = profile.label.value
        output_path = os.path.join(workdir, f"{quality}.mp4")

        result = await asyncio.to_thread(
            self.transcoder.transcode, source, output_path, profile
        )
        if not result.success:
            RENDITIONS_TOTAL.labels(quality=quality, status="failed").inc()
            log_error(
                logger,
                "Conversion failed",
                video_id=str(video_id),
                quality=quality,
                error=result.error_message,
            )
            raise TranscodeError(f"Conversion to {quality} failed")

        if not validate_resolution_output(result.width, result.height, profile):
            log_warning(
                logger,
                "Rendition dimensions differ from ladder",
                video_id=str(video_id),
                quality=quality,
                width=result.width,
                height=result.height,
            )

        key = rendition_key(quality, video_id)
        stored = await self.storage.save_file(output_path, key, "video/mp4")
        await repo.upsert_quality(
            video_id=video_id,
            quality=quality,
            path=key,
            size=stored.file_size,
            bitrate=result.bitrate,
            bitrate_kbps=profile.video_bitrate_kbps,
            resolution=f"{result.width}x{result.height}",
        )
        RENDITIONS_TOTAL.labels(quality=quality, status="completed").inc()
        log_info(
            logger,
            "Rendition stored",
            video_id=str(video_id),
            quality=quality,
            size=stored.file_size,
        )

    async def _thumbnails(
        self,
        video_id: uuid.UUID,
        source: str,
        workdir: str,
        duration: float,
    ) -> list[str]:
        if self.config.thumbnail_count <= 0:
            return []
        paths = await asyncio.to_thread(
            self.transcoder.generate_thumbnails,
            source,
            os.path.join(workdir, "thumbnails"),
            str(video_id),
            duration,
            self.config.thumbnail_count,
            self.config.thumbnail_size,
            self.config.thumbnail_quality,
        )
        keys = []
        for index, path in enumerate(paths):
            key = thumbnail_key(video_id, index)
            await self.storage.save_file(path, key, "image/jpeg")
            keys.append(key)
        return keys

    async def mark_failed(self, video_id: uuid.UUID, message: str) -> bool:
        """Record a terminal failure unless the video already finished.

        Returns:
            True if the video was moved to FAILED
        """
        async with self.session_factory() as session:
            repo = VideoRepository(session)
            video = await repo.get_by_id(video_id)
            if video is None or video.is_terminal():
                return False
            await repo.set_status(video, VideoStatus.FAILED, message)
            await session.commit()

        log_error(logger, "Video processing failed", video_id=str(video_id), error=message)
        return True

    @staticmethod
    def _failure_message(error: BaseException) -> str:
        return str(error) or error.__class__.__name__
