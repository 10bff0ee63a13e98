"""Video repository for database operations."""

import uuid
from typing import Optional

from sqlalchemy import func as sql_func, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from coursemedia.modules.video.models import (
    Video,
    VideoQuality,
    VideoStatus,
    transition_status,
)


class VideoRepository:
    """Repository for Video and VideoQuality operations."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session."""
        self.session = session

    async def create(
        self,
        original_name: str,
        filename: str,
        path: str,
        size: int,
        mime_type: str,
        uploaded_by: Optional[uuid.UUID] = None,
    ) -> Video:
        """Create a new video in PENDING state."""
        video = Video(
            original_name=original_name,
            filename=filename,
            path=path,
            size=size,
            mime_type=mime_type,
            uploaded_by=uploaded_by,
            status=VideoStatus.PENDING.value,
            qualities=[],
        )
        self.session.add(video)
        await self.session.flush()
        return video

    async def get_by_id(
        self,
        video_id: uuid.UUID,
        include_qualities: bool = False,
    ) -> Optional[Video]:
        """Get video by ID.

        Args:
            video_id: Video UUID
            include_qualities: Eagerly load renditions

        Returns:
            Optional[Video]: Video if found
        """
        query = select(Video).where(Video.id == video_id)
        if include_qualities:
            query = query.options(selectinload(Video.qualities))
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def set_status(
        self,
        video: Video,
        status: VideoStatus,
        error: Optional[str] = None,
    ) -> Video:
        """Change status through the transition rules and flush."""
        transition_status(video, status, error)
        await self.session.flush()
        return video

    async def update(self, video: Video, **kwargs) -> Video:
        for key, value in kwargs.items():
            if hasattr(video, key):
                setattr(video, key, value)
        await self.session.flush()
        return video

    async def get_qualities(self, video_id: uuid.UUID) -> list[VideoQuality]:
        """Renditions of a video, lowest bitrate first."""
        result = await self.session.execute(
            select(VideoQuality)
            .where(VideoQuality.video_id == video_id)
            .order_by(VideoQuality.bitrate_kbps)
        )
        return list(result.scalars().all())

    async def get_quality(
        self, video_id: uuid.UUID, quality: str
    ) -> Optional[VideoQuality]:
        result = await self.session.execute(
            select(VideoQuality).where(
                VideoQuality.video_id == video_id,
                VideoQuality.quality == quality,
            )
        )
        return result.scalar_one_or_none()

    async def count_qualities(self, video_id: uuid.UUID) -> int:
        result = await self.session.execute(
            select(sql_func.count())
            .select_from(VideoQuality)
            .where(VideoQuality.video_id == video_id)
        )
        return result.scalar() or 0

    async def upsert_quality(
        self,
        video_id: uuid.UUID,
        quality: str,
        path: str,
        size: int,
        bitrate: str,
        bitrate_kbps: int,
        resolution: str,
    ) -> VideoQuality:
        """Insert or overwrite the rendition keyed by (video_id, quality)."""
        rendition = await self.get_quality(video_id, quality)
        if rendition is None:
            rendition = VideoQuality(video_id=video_id, quality=quality)
            self.session.add(rendition)
        rendition.path = path
        rendition.size = size
        rendition.bitrate = bitrate
        rendition.bitrate_kbps = bitrate_kbps
        rendition.resolution = resolution
        await self.session.flush()
        return rendition

    async def delete(self, video: Video) -> None:
        """Delete a video. Renditions cascade."""
        await self.session.delete(video)
        await self.session.flush()
