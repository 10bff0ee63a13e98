"""Collaborator interfaces for course data and their SQLAlchemy implementations."""

import uuid
from typing import Optional, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from coursemedia.modules.course.models import Enrollment, Material, Progress


class MaterialLookup(Protocol):
    async def get_material(self, material_id: uuid.UUID) -> Optional[Material]:
        ...


class EnrollmentLookup(Protocol):
    async def get_enrollment(
        self, user_id: uuid.UUID, course_id: uuid.UUID
    ) -> Optional[Enrollment]:
        ...


class ProgressRecorder(Protocol):
    async def touch_progress(
        self,
        enrollment_id: uuid.UUID,
        material_id: uuid.UUID,
        user_id: uuid.UUID,
        last_position: int = 0,
    ) -> None:
        ...


class CourseRepository:
    """Reads materials and enrollments, and upserts watch progress."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_material(self, material_id: uuid.UUID) -> Optional[Material]:
        result = await self.session.execute(
            select(Material).where(Material.id == material_id)
        )
        return result.scalar_one_or_none()

    async def get_enrollment(
        self, user_id: uuid.UUID, course_id: uuid.UUID
    ) -> Optional[Enrollment]:
        result = await self.session.execute(
            select(Enrollment).where(
                Enrollment.user_id == user_id,
                Enrollment.course_id == course_id,
            )
        )
        return result.scalar_one_or_none()

    async def touch_progress(
        self,
        enrollment_id: uuid.UUID,
        material_id: uuid.UUID,
        user_id: uuid.UUID,
        last_position: int = 0,
    ) -> None:
        """Create the progress row on first watch, otherwise update its position."""
        result = await self.session.execute(
            select(Progress).where(
                Progress.enrollment_id == enrollment_id,
                Progress.material_id == material_id,
            )
        )
        progress = result.scalar_one_or_none()
        if progress is None:
            progress = Progress(
                enrollment_id=enrollment_id,
                material_id=material_id,
                user_id=user_id,
                is_completed=False,
                watched_duration=0,
                last_position=last_position,
            )
            self.session.add(progress)
        else:
            progress.last_position = last_position
        await self.session.flush()

    async def link_video(self, material_id: uuid.UUID, video_id: uuid.UUID) -> Optional[Material]:
        """Attach a video to a material."""
        material = await self.get_material(material_id)
        if material is None:
            return None
        material.video_id = video_id
        await self.session.flush()
        return material
