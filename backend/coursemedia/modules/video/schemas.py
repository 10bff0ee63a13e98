"""Pydantic schemas for the video lifecycle API."""

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from coursemedia.modules.video.models import VideoStatus


class VideoQualityResponse(BaseModel):
    """One rendition of a video."""
    quality: str
    size: int
    bitrate: str
    resolution: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class VideoResponse(BaseModel):
    """Video metadata with its renditions."""
    id: uuid.UUID
    original_name: str
    filename: str
    size: int
    mime_type: str
    status: VideoStatus
    duration: Optional[float] = None
    thumbnail: Optional[str] = None
    processing_error: Optional[str] = None
    qualities: list[VideoQualityResponse] = []
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class VideoUploadResponse(BaseModel):
    """Response after an upload was accepted."""
    video: VideoResponse
    job_id: str
    material_id: Optional[uuid.UUID] = None


class ProcessingStatusResponse(BaseModel):
    """Processing state of a video."""
    video_id: uuid.UUID
    status: VideoStatus
    progress: int
    error: Optional[str] = None
