"""Application configuration settings.

All configuration values are loaded from environment variables (.env file).
No sensitive values should be hardcoded here.
"""

from typing import Optional
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    PROJECT_NAME: str = "Course Media API"
    VERSION: str = "0.1.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./coursemedia.db"

    # Redis
    REDIS_URL: str = "redis://localhost:6379/0"

    # Security (token verification only, tokens are issued elsewhere)
    SECRET_KEY: str = "insecure-development-key"
    JWT_ALGORITHM: str = "HS256"

    # CORS
    CORS_ORIGINS: list[str] = []
    STREAM_ALLOW_ORIGIN: str = "*"

    # Storage Configuration
    # STORAGE_BACKEND: local, s3, minio
    STORAGE_BACKEND: str = "local"

    # Local Storage (when STORAGE_BACKEND=local)
    LOCAL_STORAGE_PATH: str = "./storage"

    # S3/MinIO/Compatible Storage (when STORAGE_BACKEND=s3 or minio)
    STORAGE_BUCKET: str = ""
    STORAGE_REGION: str = ""
    STORAGE_ACCESS_KEY: str = ""
    STORAGE_SECRET_KEY: str = ""
    STORAGE_ENDPOINT_URL: Optional[str] = None  # Required for MinIO
    STORAGE_USE_SSL: bool = True

    # Job queue
    # QUEUE_BACKEND: redis, memory
    QUEUE_BACKEND: str = "redis"
    QUEUE_PREFIX: str = "coursemedia"
    QUEUE_DEFAULT_ATTEMPTS: int = 3
    QUEUE_BACKOFF_DELAY_MS: int = 2000
    QUEUE_KEEP_COMPLETED_COUNT: int = 100
    QUEUE_KEEP_COMPLETED_AGE_SECONDS: int = 24 * 3600
    QUEUE_KEEP_FAILED_COUNT: int = 500
    QUEUE_KEEP_FAILED_AGE_SECONDS: int = 7 * 24 * 3600
    QUEUE_POLL_INTERVAL_SECONDS: float = 1.0
    # A running job renews its lock every half period; a lock left to expire
    # marks the job stalled.
    QUEUE_LOCK_DURATION_MS: int = 30_000
    QUEUE_STALLED_INTERVAL_MS: int = 30_000
    QUEUE_SHUTDOWN_TIMEOUT_SECONDS: float = 30.0
    RUN_WORKERS_IN_PROCESS: bool = False

    # Video processing
    VIDEO_WORKER_CONCURRENCY: int = 5
    VIDEO_JOB_PRIORITY: int = 5
    VIDEO_JOB_ATTEMPTS: int = 2
    VIDEO_ENABLED_QUALITIES: list[str] = ["360p", "480p", "720p", "1080p"]
    VIDEO_DEFAULT_QUALITY: str = "720p"
    VIDEO_THUMBNAIL_COUNT: int = 3
    VIDEO_THUMBNAIL_SIZE: str = "320x180"
    VIDEO_THUMBNAIL_QUALITY: int = 2  # ffmpeg -q:v, 2 (best) .. 31
    VIDEO_DELETE_ORIGINAL: bool = False
    VIDEO_MAX_UPLOAD_BYTES: int = 2 * 1024 * 1024 * 1024  # 2 GB
    VIDEO_PROGRESS_POLL_SECONDS: float = 2.0

    # Streaming
    STREAM_CHUNK_SIZE: int = 64 * 1024

    # FFmpeg
    FFMPEG_PATH: str = "ffmpeg"
    FFPROBE_PATH: str = "ffprobe"
    FFMPEG_PRESET: str = "medium"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = True

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"


settings = Settings()
