"""FastAPI application entry point."""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from coursemedia.core.config import settings
from coursemedia.core.exceptions import MediaError
from coursemedia.core.logging import log_info, setup_logging
from coursemedia.core.metrics import get_content_type, get_metrics, set_app_info
from coursemedia.core.middleware import (
    CorrelationIdMiddleware,
    MetricsMiddleware,
    RequestLoggingMiddleware,
)
from coursemedia.core.storage import StorageService
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.job.router import router as job_router
from coursemedia.modules.streaming.router import router as streaming_router
from coursemedia.modules.transcoding.tasks import build_pipeline, register_video_worker
from coursemedia.modules.video.router import router as video_router

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Build the storage service and queue manager, run workers if configured."""
    storage = StorageService.from_settings()
    manager = QueueManager.from_settings()
    app.state.storage = storage
    app.state.queue_manager = manager

    if settings.RUN_WORKERS_IN_PROCESS:
        register_video_worker(manager, build_pipeline(storage))

    await manager.start()
    log_info(
        logger,
        "Application started",
        queue_backend=settings.QUEUE_BACKEND,
        storage_backend=settings.STORAGE_BACKEND,
        workers_in_process=settings.RUN_WORKERS_IN_PROCESS,
    )
    try:
        yield
    finally:
        await manager.shutdown(settings.QUEUE_SHUTDOWN_TIMEOUT_SECONDS)
        log_info(logger, "Application stopped")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version=settings.VERSION,
    description="""
## Course Media API

Video upload, background transcoding into an adaptive quality ladder, and
byte-range streaming of course materials to enrolled students.

### Authentication

Protected endpoints require a JWT Bearer token issued by the course platform.

```
Authorization: Bearer <access_token>
```
    """,
    openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
    openapi_tags=[
        {"name": "health", "description": "Health check endpoints"},
        {"name": "videos", "description": "Video upload, processing status, thumbnails"},
        {"name": "streaming", "description": "Byte-range streaming of material videos"},
        {"name": "jobs", "description": "Job queue administration"},
    ],
    lifespan=lifespan,
)

setup_logging(
    level=settings.LOG_LEVEL if not settings.DEBUG else "DEBUG",
    json_format=settings.LOG_JSON,
    include_stack_trace=True,
)

set_app_info(version=settings.VERSION, environment=settings.ENVIRONMENT)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)
app.add_middleware(MetricsMiddleware)


@app.exception_handler(MediaError)
async def media_error_handler(request: Request, exc: MediaError) -> JSONResponse:
    """Render media errors as ``{"detail", "reason"}`` with their headers."""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "reason": exc.reason},
        headers=exc.headers(),
    )


@app.get("/health", tags=["health"])
async def health_check() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/metrics", include_in_schema=False)
async def metrics() -> Response:
    """Prometheus metrics."""
    return Response(content=get_metrics(), media_type=get_content_type())


app.include_router(video_router, prefix=settings.API_V1_PREFIX)
app.include_router(streaming_router, prefix=settings.API_V1_PREFIX)
app.include_router(job_router, prefix=settings.API_V1_PREFIX)
