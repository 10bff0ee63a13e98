"""Entitlement checks for material playback."""

import uuid
from dataclasses import dataclass
from typing import Optional

from coursemedia.core.exceptions import AuthenticationRequired, Forbidden, NotFound
from coursemedia.modules.auth import Principal
from coursemedia.modules.course import (
    Enrollment,
    EnrollmentLookup,
    Material,
    MaterialLookup,
)
from coursemedia.modules.streaming.service import ensure_streamable
from coursemedia.modules.video.models import Video
from coursemedia.modules.video.repository import VideoRepository


@dataclass
class PlaybackGrant:
    """Outcome of a successful access check."""
    material: Material
    video: Video
    enrollment: Optional[Enrollment] = None


async def active_enrollment(
    enrollments: EnrollmentLookup, principal: Principal, material: Material
) -> Optional[Enrollment]:
    """The principal's enrollment in the material's course, if it is active."""
    enrollment = await enrollments.get_enrollment(principal.user_id, material.course_id)
    if enrollment is None or not enrollment.is_active:
        return None
    return enrollment


async def authorize_playback(
    material_id: uuid.UUID,
    principal: Optional[Principal],
    materials: MaterialLookup,
    enrollments: EnrollmentLookup,
    videos: VideoRepository,
) -> PlaybackGrant:
    """Check that ``principal`` may watch the material's video.

    Checks run in this order: material exists, material has a video, video
    is COMPLETED, then for non-free material: authenticated, then actively
    enrolled or administrator. Cancelled or expired enrollments count as
    no enrollment.

    Raises:
        NotFound, Unavailable, AuthenticationRequired, Forbidden
    """
    material = await materials.get_material(material_id)
    if material is None:
        raise NotFound("Material not found")
    if material.video_id is None:
        raise NotFound("No video attached to this material")

    video = await videos.get_by_id(material.video_id)
    if video is None:
        raise NotFound("Video not found")
    ensure_streamable(video)

    if material.is_free:
        enrollment = None
        if principal is not None:
            enrollment = await active_enrollment(enrollments, principal, material)
        return PlaybackGrant(material=material, video=video, enrollment=enrollment)

    if principal is None:
        raise AuthenticationRequired("Authentication required")

    enrollment = await active_enrollment(enrollments, principal, material)
    if enrollment is None and not principal.is_admin:
        raise Forbidden("You are not enrolled in this course")

    return PlaybackGrant(material=material, video=video, enrollment=enrollment)
