"""Transcoding pipeline producing the rendition ladder and thumbnails."""

from coursemedia.modules.transcoding.ladder import (
    DEFAULT_LADDER,
    QualityLabel,
    QualityProfile,
)
from coursemedia.modules.transcoding.pipeline import (
    PipelineConfig,
    ProcessVideoPayload,
    VideoProcessingPipeline,
)
from coursemedia.modules.transcoding.tasks import (
    PROCESS_VIDEO,
    VIDEO_QUEUE,
    enqueue_video_processing,
    register_video_worker,
)

__all__ = [
    "DEFAULT_LADDER",
    "PROCESS_VIDEO",
    "PipelineConfig",
    "ProcessVideoPayload",
    "QualityLabel",
    "QualityProfile",
    "VIDEO_QUEUE",
    "VideoProcessingPipeline",
    "enqueue_video_processing",
    "register_video_worker",
]
