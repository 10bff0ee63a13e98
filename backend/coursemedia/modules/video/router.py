"""Video API router.

Upload, metadata, processing status (polling and SSE), thumbnail and delete.
"""

import asyncio
import json
import uuid
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, File, Form, Request, Response, UploadFile, status
from fastapi.responses import StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from coursemedia.core.config import settings
from coursemedia.core.database import get_db, get_session_factory
from coursemedia.core.storage import StorageService
from coursemedia.modules.auth import Principal, get_current_principal
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.job.router import get_queue_manager
from coursemedia.modules.video.models import VideoStatus
from coursemedia.modules.video.schemas import (
    ProcessingStatusResponse,
    VideoResponse,
    VideoUploadResponse,
)
from coursemedia.modules.video.service import VideoService

router = APIRouter(prefix="/videos", tags=["videos"])

TERMINAL_STATUSES = (VideoStatus.COMPLETED.value, VideoStatus.FAILED.value)


def get_storage(request: Request) -> StorageService:
    """Dependency to get the application's storage service."""
    return request.app.state.storage


def get_video_service(
    db: AsyncSession = Depends(get_db),
    storage: StorageService = Depends(get_storage),
    manager: QueueManager = Depends(get_queue_manager),
) -> VideoService:
    return VideoService(db, storage, manager)


@router.post("", response_model=VideoUploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_video(
    file: UploadFile = File(...),
    material_id: Optional[uuid.UUID] = Form(None),
    principal: Principal = Depends(get_current_principal),
    service: VideoService = Depends(get_video_service),
) -> VideoUploadResponse:
    """Upload a video and schedule its processing."""
    video, job = await service.upload(
        file.file,
        original_name=file.filename or "",
        content_type=file.content_type,
        principal=principal,
        size=file.size,
        material_id=material_id,
    )
    return VideoUploadResponse(
        video=VideoResponse.model_validate(video),
        job_id=job.id,
        material_id=material_id,
    )


@router.get("/{video_id}", response_model=VideoResponse)
async def get_video(
    video_id: uuid.UUID,
    _: Principal = Depends(get_current_principal),
    service: VideoService = Depends(get_video_service),
) -> VideoResponse:
    video = await service.get_video(video_id)
    return VideoResponse.model_validate(video)


@router.get("/{video_id}/status", response_model=ProcessingStatusResponse)
async def get_processing_status(
    video_id: uuid.UUID,
    _: Principal = Depends(get_current_principal),
    service: VideoService = Depends(get_video_service),
) -> ProcessingStatusResponse:
    """Processing status with progress across enabled qualities."""
    return ProcessingStatusResponse(**await service.get_processing_status(video_id))


@router.get("/{video_id}/progress")
async def stream_processing_progress(
    video_id: uuid.UUID,
    request: Request,
    _: Principal = Depends(get_current_principal),
    storage: StorageService = Depends(get_storage),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> StreamingResponse:
    """Server-Sent Events with the processing status until it is final."""
    # Fail fast with 404 before opening the stream.
    async with session_factory() as session:
        await VideoService(session, storage).get_processing_status(video_id)

    async def events() -> AsyncIterator[str]:
        while True:
            if await request.is_disconnected():
                return
            async with session_factory() as session:
                current = await VideoService(session, storage).get_processing_status(video_id)
            payload = ProcessingStatusResponse(**current).model_dump(mode="json")
            yield f"data: {json.dumps(payload)}\n\n"
            if current["status"] in TERMINAL_STATUSES:
                return
            await asyncio.sleep(settings.VIDEO_PROGRESS_POLL_SECONDS)

    return StreamingResponse(
        events(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/{video_id}/thumbnail")
async def get_thumbnail(
    video_id: uuid.UUID,
    service: VideoService = Depends(get_video_service),
) -> Response:
    content, content_type = await service.get_thumbnail(video_id)
    return Response(
        content=content,
        media_type=content_type,
        headers={"Cache-Control": "public, max-age=31536000, immutable"},
    )


@router.delete("/{video_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_video(
    video_id: uuid.UUID,
    principal: Principal = Depends(get_current_principal),
    service: VideoService = Depends(get_video_service),
) -> Response:
    """Delete a video with all its files."""
    await service.delete_video(video_id, principal)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
