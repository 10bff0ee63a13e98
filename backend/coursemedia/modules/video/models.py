"""Video models for course media.

Implements Video (the uploaded original and its processing state) and
VideoQuality (one transcoded rendition per quality).
"""

import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    DateTime,
    Float,
    ForeignKey,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import func

from coursemedia.core.database import Base


class VideoStatus(str, Enum):
    """Processing status of a video."""

    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class InvalidStatusTransition(Exception):
    """Raised when a video status change is not allowed."""

    def __init__(self, current: VideoStatus, target: VideoStatus, message: str = ""):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move video from {current.value} to {target.value}")


ALLOWED_TRANSITIONS: dict[VideoStatus, frozenset[VideoStatus]] = {
    VideoStatus.PENDING: frozenset({VideoStatus.PROCESSING, VideoStatus.FAILED}),
    # PROCESSING -> PROCESSING is a queue retry re-entering the pipeline.
    VideoStatus.PROCESSING: frozenset({
        VideoStatus.PROCESSING,
        VideoStatus.COMPLETED,
        VideoStatus.FAILED,
    }),
    VideoStatus.COMPLETED: frozenset(),
    VideoStatus.FAILED: frozenset(),
}


def can_transition(current: VideoStatus, target: VideoStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class Video(Base):
    """An uploaded course video and its processing state."""

    __tablename__ = "videos"
    __mapper_args__ = {"eager_defaults": True}

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Original upload
    original_name: Mapped[str] = mapped_column(String(255), nullable=False)
    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    path: Mapped[str] = mapped_column(String(512), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    uploaded_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid(as_uuid=True), nullable=True, index=True
    )

    # Processing state
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=VideoStatus.PENDING.value, index=True
    )
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    thumbnail: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    processing_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    qualities: Mapped[list["VideoQuality"]] = relationship(
        "VideoQuality",
        back_populates="video",
        cascade="all, delete-orphan",
        order_by="VideoQuality.bitrate_kbps",
    )

    def __repr__(self) -> str:
        return f"<Video(id={self.id}, status={self.status})>"

    @property
    def status_enum(self) -> VideoStatus:
        return VideoStatus(self.status)

    def is_ready(self) -> bool:
        """Check if the video can be streamed."""
        return self.status == VideoStatus.COMPLETED.value

    def is_terminal(self) -> bool:
        return self.status in (VideoStatus.COMPLETED.value, VideoStatus.FAILED.value)


class VideoQuality(Base):
    """One transcoded rendition of a video."""

    __tablename__ = "video_qualities"
    __mapper_args__ = {"eager_defaults": True}
    __table_args__ = (
        UniqueConstraint("video_id", "quality", name="uq_video_quality"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    video_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        ForeignKey("videos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    quality: Mapped[str] = mapped_column(String(10), nullable=False)
    path: Mapped[str] = mapped_column(String(512), nullable=False)
    size: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    bitrate: Mapped[str] = mapped_column(String(20), nullable=False)
    bitrate_kbps: Mapped[int] = mapped_column(nullable=False, default=0)
    resolution: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    video: Mapped["Video"] = relationship("Video", back_populates="qualities")

    def __repr__(self) -> str:
        return f"<VideoQuality(video_id={self.video_id}, quality={self.quality})>"


def transition_status(
    video: Video,
    target: VideoStatus,
    error: Optional[str] = None,
) -> Video:
    """Apply a status change, enforcing the allowed transitions.

    Entering FAILED requires a non-empty error message; any other target
    clears a previous error.

    Raises:
        InvalidStatusTransition: If the transition is not allowed
    """
    current = VideoStatus(video.status)
    if not can_transition(current, target):
        raise InvalidStatusTransition(current, target)

    if target == VideoStatus.FAILED:
        if not error or not error.strip():
            raise InvalidStatusTransition(
                current, target, "A failed video must carry a processing error"
            )
        video.processing_error = error
    else:
        video.processing_error = None

    video.status = target.value
    return video
