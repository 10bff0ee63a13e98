"""Ranged delivery of video renditions."""

import logging
import uuid
from dataclasses import dataclass, field
from typing import AsyncIterator, Optional, Sequence

from coursemedia.core.config import settings
from coursemedia.core.exceptions import NotFound, Unavailable
from coursemedia.core.logging import log_info
from coursemedia.core.metrics import ACTIVE_STREAMS, STREAM_BYTES_TOTAL
from coursemedia.core.storage import ByteRange, StorageService
from coursemedia.modules.streaming.ranges import content_range, parse_range
from coursemedia.modules.transcoding.ladder import parse_quality, quality_for_bandwidth
from coursemedia.modules.video.models import Video, VideoQuality, VideoStatus
from coursemedia.modules.video.repository import VideoRepository

logger = logging.getLogger(__name__)

EXPOSED_HEADERS = "Content-Range, Accept-Ranges, Content-Length, X-Video-Quality"


@dataclass
class StreamInfo:
    """Everything needed to build the HTTP response for a stream."""
    status_code: int
    headers: dict[str, str]
    body: AsyncIterator[bytes]
    size: int
    quality: str
    byte_range: Optional[ByteRange] = None
    content_type: str = field(default="video/mp4")


def ensure_streamable(video: Video) -> None:
    """Raise Unavailable unless the video finished processing."""
    if video.status == VideoStatus.COMPLETED.value:
        return
    if video.status == VideoStatus.FAILED.value:
        raise Unavailable("Video processing failed", reason="processing_failed")
    raise Unavailable(f"Video is still {video.status.lower()}")


def select_rendition(
    renditions: Sequence[VideoQuality],
    requested_quality: Optional[str] = None,
    connection_speed: Optional[float] = None,
    default_quality: Optional[str] = None,
) -> VideoQuality:
    """Pick the rendition to serve.

    Order: the requested quality if it exists; else the best fit for the
    connection speed (Mbps); else the default quality; else the lowest
    available.

    Raises:
        ValidationError: If the requested quality is outside the ladder
        NotFound: If the video has no renditions
    """
    if requested_quality:
        requested_quality = parse_quality(requested_quality).value
    if not renditions:
        raise NotFound("No renditions available for this video")

    by_quality = {r.quality: r for r in renditions}

    if requested_quality in by_quality:
        return by_quality[requested_quality]

    if connection_speed is not None and connection_speed > 0:
        chosen = quality_for_bandwidth(by_quality.keys(), connection_speed)
        if chosen in by_quality:
            return by_quality[chosen]

    if default_quality and default_quality in by_quality:
        return by_quality[default_quality]

    return min(renditions, key=lambda r: r.bitrate_kbps)


class StreamingService:
    """Serves renditions with byte-range support."""

    def __init__(
        self,
        videos: VideoRepository,
        storage: StorageService,
        chunk_size: Optional[int] = None,
        default_quality: Optional[str] = None,
        allow_origin: Optional[str] = None,
    ):
        self.videos = videos
        self.storage = storage
        self.chunk_size = chunk_size or settings.STREAM_CHUNK_SIZE
        self.default_quality = default_quality or settings.VIDEO_DEFAULT_QUALITY
        self.allow_origin = allow_origin or settings.STREAM_ALLOW_ORIGIN

    async def get_optimal_quality(
        self, video_id: uuid.UUID, connection_speed: float
    ) -> Optional[str]:
        """Best available quality for a connection speed in Mbps."""
        renditions = await self.videos.get_qualities(video_id)
        return quality_for_bandwidth((r.quality for r in renditions), connection_speed)

    async def stream_video(
        self,
        video_id: uuid.UUID,
        requested_quality: Optional[str] = None,
        range_header: Optional[str] = None,
        connection_speed: Optional[float] = None,
    ) -> StreamInfo:
        """Resolve quality and range and open the rendition.

        Raises:
            NotFound: Unknown video or no renditions
            Unavailable: Video not COMPLETED
            ValidationError: Bad quality or malformed Range
            RangeNotSatisfiable: Range starts beyond the end
        """
        video = await self.videos.get_by_id(video_id)
        if video is None:
            raise NotFound("Video not found")
        ensure_streamable(video)

        renditions = await self.videos.get_qualities(video.id)
        rendition = select_rendition(
            renditions,
            requested_quality=requested_quality,
            connection_speed=connection_speed,
            default_quality=self.default_quality,
        )

        size = await self.storage.size(rendition.path)
        byte_range = parse_range(range_header, size)

        headers = {
            "Content-Type": "video/mp4",
            "Accept-Ranges": "bytes",
            "Access-Control-Allow-Origin": self.allow_origin,
            "Access-Control-Expose-Headers": EXPOSED_HEADERS,
            "X-Video-Quality": rendition.quality,
        }

        if byte_range is None:
            status_code = 200
            start, end = 0, size - 1
            headers["Content-Length"] = str(size)
        else:
            status_code = 206
            start, end = byte_range.start, byte_range.end
            headers["Content-Length"] = str(byte_range.length)
            headers["Content-Range"] = content_range(byte_range, size)

        log_info(
            logger,
            "Streaming video",
            video_id=str(video.id),
            quality=rendition.quality,
            status_code=status_code,
            start=start,
            end=end,
            size=size,
        )

        return StreamInfo(
            status_code=status_code,
            headers=headers,
            body=self._body(rendition, start, end),
            size=size,
            quality=rendition.quality,
            byte_range=byte_range,
        )

    async def _body(self, rendition: VideoQuality, start: int, end: int) -> AsyncIterator[bytes]:
        if end < start:
            return
        chunks = self.storage.open_range(rendition.path, start, end, self.chunk_size)
        ACTIVE_STREAMS.inc()
        try:
            async for chunk in chunks:
                STREAM_BYTES_TOTAL.labels(quality=rendition.quality).inc(len(chunk))
                yield chunk
        finally:
            await chunks.aclose()
            ACTIVE_STREAMS.dec()
