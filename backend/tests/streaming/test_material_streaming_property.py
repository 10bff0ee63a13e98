"""Tests for entitlement-gated material streaming.

**Feature: course-media, Property 11: Partial content correctness**
**Feature: course-media, Property 12: Entitlement before bytes**
"""

import uuid
from dataclasses import dataclass

import pytest
import pytest_asyncio
from hypothesis import given, settings as hypothesis_settings, strategies as st
from sqlalchemy import select

from coursemedia.core.config import settings
from coursemedia.core.exceptions import NotFound, Unavailable, ValidationError
from coursemedia.core.metrics import ACTIVE_STREAMS
from coursemedia.modules.auth import ROLE_ADMIN
from coursemedia.modules.course.models import (
    Enrollment,
    EnrollmentStatus,
    Material,
    Progress,
)
from coursemedia.modules.streaming.service import StreamingService, select_rendition
from coursemedia.modules.transcoding.ladder import get_profile
from coursemedia.modules.video.models import VideoQuality, VideoStatus
from coursemedia.modules.video.repository import VideoRepository

API = settings.API_V1_PREFIX
CONTENT = {
    "360p": (bytes(range(256)) * 20)[:5000],
    "720p": (bytes(reversed(range(256))) * 40)[:9000],
}


@dataclass
class Catalog:
    course_id: uuid.UUID
    student_id: uuid.UUID
    enrollment_id: uuid.UUID
    video_id: uuid.UUID
    paid_material: uuid.UUID
    free_material: uuid.UUID
    processing_material: uuid.UUID
    empty_material: uuid.UUID


def make_rendition(video_id: uuid.UUID, quality: str) -> VideoQuality:
    profile = get_profile(quality)
    return VideoQuality(
        video_id=video_id,
        quality=quality,
        path=f"videos/processed/{quality}/{video_id}.mp4",
        size=len(CONTENT.get(quality, b"")),
        bitrate=profile.bitrate,
        bitrate_kbps=profile.video_bitrate_kbps,
        resolution=profile.resolution,
    )


@pytest_asyncio.fixture
async def catalog(session_factory, storage, make_video) -> Catalog:
    course_id = uuid.uuid4()
    student_id = uuid.uuid4()
    async with session_factory() as session:
        ready = await make_video(session, status=VideoStatus.COMPLETED)
        processing = await make_video(session, status=VideoStatus.PROCESSING)
        for quality, content in CONTENT.items():
            rendition = make_rendition(ready.id, quality)
            session.add(rendition)
            await storage.save(rendition.path, content, "video/mp4")

        paid = Material(course_id=course_id, video_id=ready.id, is_free=False)
        free = Material(course_id=course_id, video_id=ready.id, is_free=True)
        pending = Material(course_id=course_id, video_id=processing.id, is_free=False)
        empty = Material(course_id=course_id, video_id=None, is_free=True)
        enrollment = Enrollment(user_id=student_id, course_id=course_id)
        session.add_all([paid, free, pending, empty, enrollment])
        await session.commit()

        return Catalog(
            course_id=course_id,
            student_id=student_id,
            enrollment_id=enrollment.id,
            video_id=ready.id,
            paid_material=paid.id,
            free_material=free.id,
            processing_material=pending.id,
            empty_material=empty.id,
        )


def video_url(material_id: uuid.UUID) -> str:
    return f"{API}/materials/{material_id}/video"


async def set_enrollment_status(session_factory, enrollment_id, status) -> None:
    async with session_factory() as session:
        enrollment = await session.get(Enrollment, enrollment_id)
        enrollment.status = status.value
        await session.commit()


class TestPartialContent:
    """Tests for ranged responses."""

    @pytest.mark.asyncio
    async def test_range_returns_206_with_exact_slice(
        self, api_client, auth_headers, catalog
    ) -> None:
        """**Feature: course-media, Property 11: Partial content correctness**"""
        response = await api_client.get(
            video_url(catalog.paid_material),
            params={"quality": "360p"},
            headers={**auth_headers(catalog.student_id), "Range": "bytes=100-199"},
        )

        assert response.status_code == 206
        assert response.headers["content-range"] == f"bytes 100-199/{len(CONTENT['360p'])}"
        assert response.headers["content-length"] == "100"
        assert response.headers["accept-ranges"] == "bytes"
        assert response.headers["content-type"] == "video/mp4"
        assert response.headers["access-control-allow-origin"] == settings.STREAM_ALLOW_ORIGIN
        assert "Content-Range" in response.headers["access-control-expose-headers"]
        assert response.content == CONTENT["360p"][100:200]

    @pytest.mark.asyncio
    async def test_no_range_returns_full_body(self, api_client, auth_headers, catalog) -> None:
        response = await api_client.get(
            video_url(catalog.paid_material),
            params={"quality": "720p"},
            headers=auth_headers(catalog.student_id),
        )

        assert response.status_code == 200
        assert "content-range" not in response.headers
        assert response.headers["content-length"] == str(len(CONTENT["720p"]))
        assert response.headers["x-video-quality"] == "720p"
        assert response.content == CONTENT["720p"]

    @pytest.mark.asyncio
    async def test_end_beyond_size_is_clamped(self, api_client, catalog) -> None:
        size = len(CONTENT["360p"])
        response = await api_client.get(
            video_url(catalog.free_material),
            params={"quality": "360p"},
            headers={"Range": f"bytes={size - 10}-{size + 500}"},
        )
        assert response.status_code == 206
        assert response.headers["content-range"] == f"bytes {size - 10}-{size - 1}/{size}"
        assert response.content == CONTENT["360p"][-10:]

    @pytest.mark.asyncio
    async def test_range_beyond_end_is_416(self, api_client, catalog) -> None:
        size = len(CONTENT["360p"])
        response = await api_client.get(
            video_url(catalog.free_material),
            params={"quality": "360p"},
            headers={"Range": f"bytes={size}-"},
        )
        assert response.status_code == 416
        assert response.headers["content-range"] == f"bytes */{size}"
        assert response.json()["reason"] == "range_not_satisfiable"

    @pytest.mark.asyncio
    async def test_malformed_range_is_400(self, api_client, catalog) -> None:
        response = await api_client.get(
            video_url(catalog.free_material), headers={"Range": "bytes=9-1"}
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unsupported_quality_is_400(self, api_client, catalog) -> None:
        response = await api_client.get(
            video_url(catalog.free_material), params={"quality": "4k"}
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "invalid_request"


class TestEntitlement:
    """Tests for the access check order."""

    @pytest.mark.asyncio
    async def test_processing_video_is_503_even_with_range(
        self, api_client, auth_headers, catalog
    ) -> None:
        """**Feature: course-media, Property 12: Entitlement before bytes**

        A video that has not finished processing SHALL yield 503 and no
        video bytes, regardless of Range or credentials.
        """
        for headers in ({}, {**auth_headers(catalog.student_id), "Range": "bytes=0-10"}):
            response = await api_client.get(
                video_url(catalog.processing_material), headers=headers
            )
            assert response.status_code == 503
            assert response.json() == {
                "detail": "Video is still processing",
                "reason": "processing",
            }
            assert response.headers["retry-after"] == "10"

    @pytest.mark.asyncio
    async def test_anonymous_on_paid_material_is_401(self, api_client, catalog) -> None:
        response = await api_client.get(video_url(catalog.paid_material))
        assert response.status_code == 401
        assert response.json()["reason"] == "auth_required"

    @pytest.mark.asyncio
    async def test_invalid_token_counts_as_anonymous(self, api_client, catalog) -> None:
        response = await api_client.get(
            video_url(catalog.paid_material),
            headers={"Authorization": "Bearer not-a-token"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_not_enrolled_is_403(self, api_client, auth_headers, catalog) -> None:
        response = await api_client.get(
            video_url(catalog.paid_material), headers=auth_headers(uuid.uuid4())
        )
        assert response.status_code == 403
        assert response.json()["reason"] == "forbidden"

    @pytest.mark.asyncio
    async def test_admin_without_enrollment_may_watch(
        self, api_client, auth_headers, catalog
    ) -> None:
        response = await api_client.get(
            video_url(catalog.paid_material),
            headers=auth_headers(uuid.uuid4(), ROLE_ADMIN),
        )
        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_free_material_is_public(self, api_client, catalog) -> None:
        response = await api_client.get(
            video_url(catalog.free_material), headers={"Range": "bytes=0-0"}
        )
        assert response.status_code == 206
        assert response.headers["content-length"] == "1"

    @pytest.mark.asyncio
    async def test_missing_material_or_video_is_404(self, api_client, catalog) -> None:
        assert (await api_client.get(video_url(uuid.uuid4()))).status_code == 404
        assert (await api_client.get(video_url(catalog.empty_material))).status_code == 404

    @pytest.mark.asyncio
    async def test_enrolled_watch_records_progress(
        self, api_client, auth_headers, catalog, session_factory
    ) -> None:
        for _ in range(2):
            response = await api_client.get(
                video_url(catalog.paid_material),
                headers={**auth_headers(catalog.student_id), "Range": "bytes=0-99"},
            )
            assert response.status_code == 206

        async with session_factory() as session:
            rows = (await session.execute(
                select(Progress).where(Progress.enrollment_id == catalog.enrollment_id)
            )).scalars().all()
        assert len(rows) == 1
        assert rows[0].material_id == catalog.paid_material
        assert rows[0].last_position == 0
        assert rows[0].is_completed is False

    @pytest.mark.asyncio
    async def test_rejected_range_records_no_progress(
        self, api_client, auth_headers, catalog, session_factory
    ) -> None:
        size = len(CONTENT["360p"])
        response = await api_client.get(
            video_url(catalog.paid_material),
            params={"quality": "360p"},
            headers={**auth_headers(catalog.student_id), "Range": f"bytes={size + 1}-"},
        )
        assert response.status_code == 416

        async with session_factory() as session:
            rows = (await session.execute(
                select(Progress).where(Progress.enrollment_id == catalog.enrollment_id)
            )).scalars().all()
        assert rows == []

    @pytest.mark.parametrize(
        "status", [EnrollmentStatus.CANCELLED, EnrollmentStatus.EXPIRED]
    )
    @pytest.mark.asyncio
    async def test_inactive_enrollment_is_403(
        self, api_client, auth_headers, catalog, session_factory, status
    ) -> None:
        """**Feature: course-media, Property 12: Entitlement before bytes**

        A cancelled or expired enrollment SHALL NOT entitle its user to paid
        material.
        """
        await set_enrollment_status(session_factory, catalog.enrollment_id, status)

        response = await api_client.get(
            video_url(catalog.paid_material), headers=auth_headers(catalog.student_id)
        )

        assert response.status_code == 403
        assert response.json()["reason"] == "forbidden"

    @pytest.mark.asyncio
    async def test_completed_enrollment_may_still_watch(
        self, api_client, auth_headers, catalog, session_factory
    ) -> None:
        await set_enrollment_status(
            session_factory, catalog.enrollment_id, EnrollmentStatus.COMPLETED
        )

        response = await api_client.get(
            video_url(catalog.paid_material),
            headers={**auth_headers(catalog.student_id), "Range": "bytes=0-9"},
        )

        assert response.status_code == 206

    @given(status=st.sampled_from(list(EnrollmentStatus)))
    @hypothesis_settings(max_examples=20)
    def test_only_active_or_completed_enrollments_entitle(self, status) -> None:
        enrollment = Enrollment(
            user_id=uuid.uuid4(), course_id=uuid.uuid4(), status=status.value
        )
        assert enrollment.is_active == (
            status in (EnrollmentStatus.ACTIVE, EnrollmentStatus.COMPLETED)
        )


class TestQualitySelection:
    """Tests for rendition choice."""

    @pytest.mark.asyncio
    async def test_missing_quality_falls_back_to_default(
        self, api_client, catalog
    ) -> None:
        response = await api_client.get(
            video_url(catalog.free_material), params={"quality": "1080p"}
        )
        assert response.status_code == 200
        assert response.headers["x-video-quality"] == settings.VIDEO_DEFAULT_QUALITY

    @pytest.mark.asyncio
    async def test_connection_speed_picks_fitting_quality(self, api_client, catalog) -> None:
        response = await api_client.get(
            video_url(catalog.free_material), params={"speed": 1.5}
        )
        assert response.headers["x-video-quality"] == "360p"

    @given(
        qualities=st.sets(st.sampled_from(["360p", "480p", "720p", "1080p"]), min_size=1),
        requested=st.one_of(st.none(), st.sampled_from(["360p", "480p", "720p", "1080p"])),
    )
    @hypothesis_settings(max_examples=100)
    def test_selection_always_returns_an_existing_rendition(self, qualities, requested) -> None:
        video_id = uuid.uuid4()
        renditions = [make_rendition(video_id, q) for q in qualities]

        chosen = select_rendition(renditions, requested_quality=requested, default_quality="720p")

        assert chosen.quality in qualities
        if requested in qualities:
            assert chosen.quality == requested
        elif "720p" in qualities:
            assert chosen.quality == "720p"
        else:
            assert chosen.bitrate_kbps == min(r.bitrate_kbps for r in renditions)

    def test_no_renditions_is_not_found(self) -> None:
        with pytest.raises(NotFound):
            select_rendition([])

    def test_bad_quality_is_rejected_before_lookup(self) -> None:
        with pytest.raises(ValidationError):
            select_rendition([], requested_quality="8k")

class TestStreamingService:
    """Tests for the service used by the endpoint."""

    @pytest.mark.asyncio
    async def test_closing_body_releases_stream(self, session_factory, storage, catalog) -> None:
        async with session_factory() as session:
            service = StreamingService(VideoRepository(session), storage, chunk_size=64)
            info = await service.stream_video(catalog.video_id, requested_quality="360p")

            before = ACTIVE_STREAMS._value.get()
            first = await info.body.__anext__()
            assert len(first) == 64
            assert ACTIVE_STREAMS._value.get() == before + 1

            await info.body.aclose()
            assert ACTIVE_STREAMS._value.get() == before

    @pytest.mark.asyncio
    async def test_unknown_or_unfinished_video(self, session_factory, storage, make_video) -> None:
        async with session_factory() as session:
            service = StreamingService(VideoRepository(session), storage)
            with pytest.raises(NotFound):
                await service.stream_video(uuid.uuid4())

            failed = await make_video(session, status=VideoStatus.FAILED)
            with pytest.raises(Unavailable):
                await service.stream_video(failed.id)

    @pytest.mark.asyncio
    async def test_optimal_quality(self, session_factory, storage, catalog) -> None:
        async with session_factory() as session:
            service = StreamingService(VideoRepository(session), storage)
            assert await service.get_optimal_quality(catalog.video_id, 100.0) == "720p"
            assert await service.get_optimal_quality(catalog.video_id, 0.1) == "360p"
