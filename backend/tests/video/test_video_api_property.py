"""Tests for the video lifecycle API.

**Feature: course-media, Property 6: Upload publishes exactly one processing job**
"""

import uuid

import pytest

from coursemedia.core.config import settings
from coursemedia.modules.course.models import Material
from coursemedia.modules.job.models import JobState
from coursemedia.modules.transcoding.tasks import PROCESS_VIDEO, VIDEO_QUEUE
from coursemedia.modules.video.models import VideoQuality, VideoStatus

API = settings.API_V1_PREFIX


class TestUpload:
    """Tests for POST /videos."""

    @pytest.mark.asyncio
    async def test_upload_creates_pending_video_and_job(
        self, api_client, auth_headers, queue_manager, storage
    ) -> None:
        """**Feature: course-media, Property 6: Upload publishes exactly one processing job**"""
        user_id = uuid.uuid4()
        response = await api_client.post(
            f"{API}/videos",
            files={"file": ("intro.mp4", b"\x00\x00\x00\x18ftypmp42" * 10, "video/mp4")},
            headers=auth_headers(user_id),
        )

        assert response.status_code == 201
        body = response.json()
        video = body["video"]
        assert video["status"] == VideoStatus.PENDING.value
        assert video["original_name"] == "intro.mp4"

        queue = queue_manager.get_queue(VIDEO_QUEUE)
        waiting = await queue.get_jobs(JobState.WAITING)
        assert [job.id for job in waiting] == [body["job_id"]]
        job = waiting[0]
        assert job.name == PROCESS_VIDEO
        assert job.data["video_id"] == video["id"]
        assert job.data["input_path"].startswith("videos/originals/")
        assert await storage.exists(job.data["input_path"])
        assert job.priority == settings.VIDEO_JOB_PRIORITY
        assert job.max_attempts == settings.VIDEO_JOB_ATTEMPTS

    @pytest.mark.asyncio
    async def test_upload_links_material(
        self, api_client, auth_headers, session_factory
    ) -> None:
        async with session_factory() as session:
            material = Material(course_id=uuid.uuid4(), is_free=False)
            session.add(material)
            await session.commit()
            material_id = material.id

        response = await api_client.post(
            f"{API}/videos",
            files={"file": ("lesson.mp4", b"data" * 16, "video/mp4")},
            data={"material_id": str(material_id)},
            headers=auth_headers(uuid.uuid4()),
        )
        assert response.status_code == 201

        async with session_factory() as session:
            material = await session.get(Material, material_id)
            assert str(material.video_id) == response.json()["video"]["id"]

    @pytest.mark.asyncio
    async def test_upload_unknown_material_is_404(self, api_client, auth_headers) -> None:
        response = await api_client.post(
            f"{API}/videos",
            files={"file": ("lesson.mp4", b"data", "video/mp4")},
            data={"material_id": str(uuid.uuid4())},
            headers=auth_headers(uuid.uuid4()),
        )
        assert response.status_code == 404
        assert response.json()["reason"] == "not_found"

    @pytest.mark.asyncio
    async def test_upload_rejects_non_video(self, api_client, auth_headers) -> None:
        response = await api_client.post(
            f"{API}/videos",
            files={"file": ("notes.pdf", b"%PDF-1.4", "application/pdf")},
            headers=auth_headers(uuid.uuid4()),
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_request"

    @pytest.mark.asyncio
    async def test_upload_requires_authentication(self, api_client) -> None:
        response = await api_client.post(
            f"{API}/videos",
            files={"file": ("lesson.mp4", b"data", "video/mp4")},
        )
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"


class TestStatusAndDelete:
    """Tests for status, thumbnail and delete endpoints."""

    @pytest.mark.asyncio
    async def test_status_reports_share_of_renditions(
        self, api_client, auth_headers, session_factory, make_video
    ) -> None:
        async with session_factory() as session:
            video = await make_video(session, status=VideoStatus.PROCESSING)
            session.add(VideoQuality(
                video_id=video.id,
                quality="360p",
                path="videos/processed/360p/x.mp4",
                size=10,
                bitrate="800k",
                bitrate_kbps=800,
                resolution="640x360",
            ))
            await session.commit()
            video_id = video.id

        response = await api_client.get(
            f"{API}/videos/{video_id}/status", headers=auth_headers(uuid.uuid4())
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == VideoStatus.PROCESSING.value
        assert body["progress"] == round(100 / len(settings.VIDEO_ENABLED_QUALITIES))
        assert body["error"] is None

    @pytest.mark.asyncio
    async def test_unknown_video_is_404(self, api_client, auth_headers) -> None:
        response = await api_client.get(
            f"{API}/videos/{uuid.uuid4()}", headers=auth_headers(uuid.uuid4())
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    @pytest.mark.parametrize("suffix", ["", "/status", "/progress"])
    async def test_status_routes_require_authentication(
        self, api_client, session_factory, make_video, suffix: str
    ) -> None:
        async with session_factory() as session:
            video = await make_video(session, status=VideoStatus.PROCESSING)
            await session.commit()
            video_id = video.id

        response = await api_client.get(f"{API}/videos/{video_id}{suffix}")

        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    @pytest.mark.asyncio
    async def test_progress_feed_ends_on_final_status(
        self, api_client, auth_headers, session_factory, make_video
    ) -> None:
        async with session_factory() as session:
            video = await make_video(session, status=VideoStatus.COMPLETED)
            await session.commit()
            video_id = video.id

        response = await api_client.get(
            f"{API}/videos/{video_id}/progress", headers=auth_headers(uuid.uuid4())
        )

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.text.count("data: ") == 1
        assert '"status": "COMPLETED"' in response.text

    @pytest.mark.asyncio
    async def test_thumbnail_is_served_with_cache_header(
        self, api_client, session_factory, storage, make_video
    ) -> None:
        await storage.save("videos/thumbnails/t_0.jpg", b"\xff\xd8\xffthumb", "image/jpeg")
        async with session_factory() as session:
            video = await make_video(session, status=VideoStatus.COMPLETED)
            video.thumbnail = "videos/thumbnails/t_0.jpg"
            await session.commit()
            video_id = video.id

        response = await api_client.get(f"{API}/videos/{video_id}/thumbnail")

        assert response.status_code == 200
        assert response.content == b"\xff\xd8\xffthumb"
        assert response.headers["content-type"] == "image/jpeg"
        assert "immutable" in response.headers["cache-control"]

    @pytest.mark.asyncio
    async def test_only_uploader_or_admin_can_delete(
        self, api_client, auth_headers, session_factory, storage, make_video
    ) -> None:
        owner = uuid.uuid4()
        await storage.save("videos/originals/owned.mp4", b"original", "video/mp4")
        async with session_factory() as session:
            video = await make_video(
                session,
                status=VideoStatus.COMPLETED,
                path="videos/originals/owned.mp4",
                uploaded_by=owner,
            )
            await session.commit()
            video_id = video.id

        forbidden = await api_client.delete(
            f"{API}/videos/{video_id}", headers=auth_headers(uuid.uuid4())
        )
        assert forbidden.status_code == 403

        deleted = await api_client.delete(f"{API}/videos/{video_id}", headers=auth_headers(owner))
        assert deleted.status_code == 204
        assert not await storage.exists("videos/originals/owned.mp4")
        missing = await api_client.get(f"{API}/videos/{video_id}", headers=auth_headers(owner))
        assert missing.status_code == 404
