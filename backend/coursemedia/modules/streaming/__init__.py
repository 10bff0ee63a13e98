"""Byte-range streaming of processed renditions."""

from coursemedia.modules.streaming.ranges import content_range, parse_range
from coursemedia.modules.streaming.service import (
    StreamInfo,
    StreamingService,
    ensure_streamable,
    select_rendition,
)
from coursemedia.modules.streaming.access import PlaybackGrant, authorize_playback

__all__ = [
    "PlaybackGrant",
    "StreamInfo",
    "StreamingService",
    "authorize_playback",
    "content_range",
    "ensure_streamable",
    "parse_range",
    "select_rendition",
]
