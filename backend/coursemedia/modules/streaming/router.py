"""Material playback endpoint with byte-range streaming."""

import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, Header, Query
from fastapi.responses import StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from coursemedia.core.database import get_db
from coursemedia.core.logging import log_warning
from coursemedia.core.storage import StorageService
from coursemedia.modules.auth import Principal, get_optional_principal
from coursemedia.modules.course import CourseRepository
from coursemedia.modules.streaming.access import PlaybackGrant, authorize_playback
from coursemedia.modules.streaming.service import StreamingService
from coursemedia.modules.video.repository import VideoRepository
from coursemedia.modules.video.router import get_storage

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/materials", tags=["streaming"])


async def record_watch(
    session: AsyncSession, courses: CourseRepository, grant: PlaybackGrant
) -> None:
    """Upsert the enrollment's progress row. Failures never block playback."""
    if grant.enrollment is None or grant.material.is_free:
        return
    try:
        await courses.touch_progress(
            enrollment_id=grant.enrollment.id,
            material_id=grant.material.id,
            user_id=grant.enrollment.user_id,
            last_position=0,
        )
        await session.commit()
    except SQLAlchemyError as e:
        await session.rollback()
        log_warning(
            logger,
            "Failed to record watch progress",
            material_id=str(grant.material.id),
            error=str(e),
        )


@router.get("/{material_id}/video")
async def stream_material_video(
    material_id: uuid.UUID,
    quality: Optional[str] = Query(None, description="Requested quality, e.g. 720p"),
    speed: Optional[float] = Query(None, gt=0, description="Connection speed in Mbps"),
    range_header: Optional[str] = Header(None, alias="Range"),
    principal: Optional[Principal] = Depends(get_optional_principal),
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage),
) -> StreamingResponse:
    """Stream the material's video, honouring a single byte range."""
    courses = CourseRepository(db)
    videos = VideoRepository(db)

    grant = await authorize_playback(material_id, principal, courses, courses, videos)

    info = await StreamingService(videos, storage).stream_video(
        grant.video.id,
        requested_quality=quality,
        range_header=range_header,
        connection_speed=speed,
    )
    await record_watch(db, courses, grant)
    return StreamingResponse(
        info.body,
        status_code=info.status_code,
        headers=info.headers,
        media_type=info.content_type,
    )
