"""Shared fixtures: file-backed SQLite, local storage, in-memory job queue."""

import os
import uuid
from typing import Optional

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from coursemedia.core.database import Base
from coursemedia.core.storage import LocalStorage, StorageConfig, StorageService
from coursemedia.modules.auth.jwt import ROLE_STUDENT, create_token
from coursemedia.modules.course.models import Enrollment, Material, Progress  # noqa: F401
from coursemedia.modules.job.events import EventBus
from coursemedia.modules.job.manager import QueueManager
from coursemedia.modules.job.models import BackoffPolicy, JobOptions
from coursemedia.modules.job.store import MemoryJobStore
from coursemedia.modules.transcoding.ffmpeg import ProbeError, TranscodeOutput, VideoInfo
from coursemedia.modules.transcoding.ladder import QualityProfile
from coursemedia.modules.video.models import Video, VideoQuality, VideoStatus  # noqa: F401


class FakeTranscoder:
    """Transcoder double writing small files instead of running ffmpeg."""

    def __init__(
        self,
        duration: float = 12.7,
        fail_qualities: Optional[set[str]] = None,
        unreadable: bool = False,
        output_size: Optional[tuple[int, int]] = None,
    ):
        self.duration = duration
        self.fail_qualities = fail_qualities or set()
        self.unreadable = unreadable
        self.output_size = output_size
        self.transcoded: list[str] = []

    def probe(self, input_path: str) -> VideoInfo:
        if self.unreadable:
            raise ProbeError(f"ffprobe could not read {input_path}")
        return VideoInfo(
            duration=self.duration,
            width=1920,
            height=1080,
            codec="h264",
            format="mp4",
            bitrate=6_000_000,
            fps=30.0,
        )

    def transcode(
        self, input_path: str, output_path: str, profile: QualityProfile
    ) -> TranscodeOutput:
        quality = profile.label.value
        self.transcoded.append(quality)
        if quality in self.fail_qualities:
            return TranscodeOutput(
                success=False,
                output_path=output_path,
                width=0,
                height=0,
                file_size=0,
                bitrate="",
                error_message="encoder crashed",
            )
        content = f"{quality}:".encode() * 64
        with open(output_path, "wb") as f:
            f.write(content)
        width, height = self.output_size or (profile.width, profile.height)
        return TranscodeOutput(
            success=True,
            output_path=output_path,
            width=width,
            height=height,
            file_size=len(content),
            bitrate=profile.bitrate,
        )

    def generate_thumbnails(
        self,
        input_path: str,
        output_dir: str,
        filename_prefix: str,
        duration: float,
        count: int = 3,
        size: str = "320x180",
        quality: int = 2,
    ) -> list[str]:
        os.makedirs(output_dir, exist_ok=True)
        paths = []
        for index in range(count):
            path = os.path.join(output_dir, f"{filename_prefix}_{index}.jpg")
            with open(path, "wb") as f:
                f.write(b"\xff\xd8\xff" + bytes([index]))
            paths.append(path)
        return paths


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    """Session factory over a fresh database file.

    Every session gets its own connection, so concurrent sessions see each
    other only through committed data.
    """
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'media.db'}",
        poolclass=NullPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path) -> StorageService:
    return StorageService(
        LocalStorage(StorageConfig(backend="local", local_path=str(tmp_path / "storage")))
    )


@pytest.fixture
def fast_options() -> JobOptions:
    """Job defaults with millisecond backoff so retries run quickly."""
    return JobOptions(attempts=3, backoff=BackoffPolicy(type="exponential", delay=10))


@pytest_asyncio.fixture
async def queue_manager(fast_options):
    manager = QueueManager(
        MemoryJobStore(),
        bus=EventBus(),
        default_options=fast_options,
        poll_interval=0.02,
    )
    yield manager
    await manager.shutdown(timeout=1.0)


async def create_video(
    session: AsyncSession,
    status: VideoStatus = VideoStatus.PENDING,
    path: Optional[str] = None,
    uploaded_by: Optional[uuid.UUID] = None,
) -> Video:
    """Insert a video row in the given status."""
    video = Video(
        original_name="lesson.mp4",
        filename="lesson.mp4",
        path=path or f"videos/originals/{uuid.uuid4().hex}.mp4",
        size=1024,
        mime_type="video/mp4",
        uploaded_by=uploaded_by,
        status=status.value,
        qualities=[],
    )
    session.add(video)
    await session.flush()
    return video


@pytest.fixture
def make_video():
    return create_video


@pytest.fixture
def transcoder_factory():
    return FakeTranscoder


@pytest_asyncio.fixture
async def api_client(session_factory, storage, queue_manager):
    """HTTP client bound to the app with test database, storage and queue."""
    from coursemedia.core.database import get_db, get_session_factory
    from coursemedia.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.state.storage = storage
    app.state.queue_manager = queue_manager

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    """Build a bearer header for a user and role."""

    def build(user_id: uuid.UUID, role: str = ROLE_STUDENT) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_token(user_id, role)}"}

    return build
