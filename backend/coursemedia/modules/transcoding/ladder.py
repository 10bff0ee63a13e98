"""Quality ladder for course video renditions.

Each rendition is a progressive MP4 at one resolution and target bitrate.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from coursemedia.core.exceptions import ValidationError


class QualityLabel(str, Enum):
    """Supported rendition qualities."""
    Q360P = "360p"
    Q480P = "480p"
    Q720P = "720p"
    Q1080P = "1080p"


@dataclass(frozen=True)
class QualityProfile:
    """Encoding target for one rung of the ladder."""
    label: QualityLabel
    width: int
    height: int
    video_bitrate_kbps: int
    audio_bitrate_kbps: int = 128

    @property
    def bitrate(self) -> str:
        """Video bitrate as stored on renditions, e.g. ``"800k"``."""
        return f"{self.video_bitrate_kbps}k"

    @property
    def total_bitrate_kbps(self) -> int:
        return self.video_bitrate_kbps + self.audio_bitrate_kbps

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


DEFAULT_LADDER: tuple[QualityProfile, ...] = (
    QualityProfile(QualityLabel.Q360P, 640, 360, 800, 96),
    QualityProfile(QualityLabel.Q480P, 854, 480, 1400, 128),
    QualityProfile(QualityLabel.Q720P, 1280, 720, 2800, 128),
    QualityProfile(QualityLabel.Q1080P, 1920, 1080, 5000, 192),
)

_PROFILES = {profile.label.value: profile for profile in DEFAULT_LADDER}


def parse_quality(value: str) -> QualityLabel:
    """Parse a quality string, raising ValidationError outside the ladder."""
    try:
        return QualityLabel(value.strip().lower())
    except (ValueError, AttributeError):
        allowed = ", ".join(label.value for label in QualityLabel)
        raise ValidationError(f"Unsupported quality '{value}'. Use one of: {allowed}")


def get_profile(quality: str) -> QualityProfile:
    return _PROFILES[parse_quality(quality).value]


def enabled_profiles(
    enabled: Iterable[str],
    requested: Optional[Iterable[str]] = None,
) -> list[QualityProfile]:
    """Profiles to produce, ordered lowest to highest bitrate.

    Args:
        enabled: Qualities enabled by configuration
        requested: Optional subset requested by the job

    Returns:
        Ordered profiles present in both sets
    """
    labels = {parse_quality(q).value for q in enabled}
    if requested is not None:
        labels &= {parse_quality(q).value for q in requested}
    return sorted(
        (_PROFILES[label] for label in labels),
        key=lambda p: p.video_bitrate_kbps,
    )


def quality_for_bandwidth(
    available: Iterable[str],
    connection_speed_mbps: float,
    headroom: float = 0.8,
) -> Optional[str]:
    """Highest available quality whose bitrate fits the usable bandwidth.

    Only ``headroom`` of the measured speed is treated as usable. Returns the
    lowest available quality when nothing fits, None when nothing is available.
    """
    profiles = sorted(
        (_PROFILES[q] for q in available if q in _PROFILES),
        key=lambda p: p.video_bitrate_kbps,
    )
    if not profiles:
        return None
    budget_kbps = max(connection_speed_mbps, 0) * 1000 * headroom
    fitting = [p for p in profiles if p.total_bitrate_kbps <= budget_kbps]
    return (fitting[-1] if fitting else profiles[0]).label.value
