"""Course data consumed by the media service."""

from coursemedia.modules.course.lookups import (
    CourseRepository,
    EnrollmentLookup,
    MaterialLookup,
    ProgressRecorder,
)
from coursemedia.modules.course.models import (
    Enrollment,
    EnrollmentStatus,
    Material,
    Progress,
)

__all__ = [
    "CourseRepository",
    "Enrollment",
    "EnrollmentLookup",
    "EnrollmentStatus",
    "Material",
    "MaterialLookup",
    "Progress",
    "ProgressRecorder",
]
