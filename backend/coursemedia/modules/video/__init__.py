"""Video lifecycle module."""

from coursemedia.modules.video.models import (
    InvalidStatusTransition,
    Video,
    VideoQuality,
    VideoStatus,
    transition_status,
)
from coursemedia.modules.video.repository import VideoRepository

__all__ = [
    "InvalidStatusTransition",
    "Video",
    "VideoQuality",
    "VideoRepository",
    "VideoStatus",
    "transition_status",
]
