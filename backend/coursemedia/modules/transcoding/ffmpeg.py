"""FFmpeg transcoding utilities.

Probes sources, converts them to ladder renditions and extracts thumbnails.
All calls block; async callers run them in a thread.
"""

import json
import os
import subprocess
from dataclasses import dataclass
from typing import Optional

from coursemedia.modules.transcoding.ladder import QualityProfile


class ProbeError(Exception):
    """Raised when ffprobe cannot read the source media."""


@dataclass
class VideoInfo:
    """Source media metadata from ffprobe."""
    duration: float
    width: int
    height: int
    codec: str
    format: str
    bitrate: int
    fps: float
    has_audio: bool = True


@dataclass
class TranscodeOutput:
    """Result of transcoding operation."""
    success: bool
    output_path: str
    width: int
    height: int
    file_size: int
    bitrate: str
    error_message: Optional[str] = None


def _parse_fps(rate: str) -> float:
    try:
        num, _, den = rate.partition("/")
        return float(num) / float(den or 1)
    except (ValueError, ZeroDivisionError):
        return 0.0


def thumbnail_timestamps(duration: float, count: int) -> list[float]:
    """Evenly spaced timestamps strictly inside the video."""
    if count <= 0:
        return []
    if duration <= 0:
        return [0.0] * count
    step = duration / (count + 1)
    return [round(step * (i + 1), 3) for i in range(count)]


class FFmpegTranscoder:
    """FFmpeg-based video transcoder."""

    def __init__(
        self,
        ffmpeg_path: str = "ffmpeg",
        ffprobe_path: str = "ffprobe",
        preset: str = "medium",
    ):
        """Initialize transcoder.

        Args:
            ffmpeg_path: Path to ffmpeg binary
            ffprobe_path: Path to ffprobe binary
            preset: x264 preset
        """
        self.ffmpeg_path = ffmpeg_path
        self.ffprobe_path = ffprobe_path
        self.preset = preset

    def get_video_info(self, input_path: str) -> dict:
        """Get raw video information using ffprobe.

        Raises:
            ProbeError: If ffprobe fails or prints invalid JSON
        """
        cmd = [
            self.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            input_path,
        ]

        try:
            result = subprocess.run(cmd, capture_output=True, text=True, check=True)
            return json.loads(result.stdout)
        except (subprocess.CalledProcessError, json.JSONDecodeError, OSError) as e:
            raise ProbeError(f"Cannot probe media: {e}") from e

    def probe(self, input_path: str) -> VideoInfo:
        """Read duration and video stream metadata.

        Raises:
            ProbeError: If the file has no video stream
        """
        info = self.get_video_info(input_path)
        streams = info.get("streams") or []
        video = next((s for s in streams if s.get("codec_type") == "video"), None)
        if video is None:
            raise ProbeError("Source has no video stream")

        fmt = info.get("format") or {}
        return VideoInfo(
            duration=float(fmt.get("duration") or video.get("duration") or 0),
            width=int(video.get("width", 0)),
            height=int(video.get("height", 0)),
            codec=video.get("codec_name", ""),
            format=fmt.get("format_name", ""),
            bitrate=int(fmt.get("bit_rate") or 0),
            fps=_parse_fps(video.get("r_frame_rate", "0/1")),
            has_audio=any(s.get("codec_type") == "audio" for s in streams),
        )

    def build_transcode_command(
        self,
        input_path: str,
        output_path: str,
        profile: QualityProfile,
    ) -> list[str]:
        """Build FFmpeg command for one rendition.

        Args:
            input_path: Source file
            output_path: Destination MP4
            profile: Ladder rung to encode

        Returns:
            FFmpeg command as list of arguments
        """
        kbps = profile.video_bitrate_kbps
        return [
            self.ffmpeg_path,
            "-y",  # Overwrite output
            "-i", input_path,
            # Video settings
            "-c:v", "libx264",
            "-preset", self.preset,
            "-b:v", f"{kbps}k",
            "-maxrate", f"{int(kbps * 1.5)}k",
            "-bufsize", f"{kbps * 2}k",
            "-vf", (
                f"scale={profile.width}:{profile.height}:force_original_aspect_ratio=decrease,"
                f"pad={profile.width}:{profile.height}:(ow-iw)/2:(oh-ih)/2"
            ),
            # Audio settings
            "-c:a", "aac",
            "-b:a", f"{profile.audio_bitrate_kbps}k",
            "-ar", "48000",
            "-ac", "2",
            # Progressive download
            "-movflags", "+faststart",
            "-f", "mp4",
            output_path,
        ]

    def transcode(
        self,
        input_path: str,
        output_path: str,
        profile: QualityProfile,
    ) -> TranscodeOutput:
        """Transcode video to one ladder quality."""
        cmd = self.build_transcode_command(input_path, output_path, profile)

        try:
            process = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            return self._failed(output_path, profile, str(e))

        if process.returncode != 0:
            # Last lines of stderr carry the actual error.
            tail = "\n".join(process.stderr.strip().splitlines()[-5:])
            return self._failed(output_path, profile, tail or "ffmpeg failed")

        if not os.path.exists(output_path):
            return self._failed(output_path, profile, "ffmpeg produced no output")

        # Report what was written, not what was asked for.
        try:
            produced = self.probe(output_path)
        except ProbeError as e:
            return self._failed(output_path, profile, f"ffmpeg output is unreadable: {e}")

        return TranscodeOutput(
            success=True,
            output_path=output_path,
            width=produced.width,
            height=produced.height,
            file_size=os.path.getsize(output_path),
            bitrate=profile.bitrate,
        )

    def _failed(self, output_path: str, profile: QualityProfile, message: str) -> TranscodeOutput:
        return TranscodeOutput(
            success=False,
            output_path=output_path,
            width=profile.width,
            height=profile.height,
            file_size=0,
            bitrate=profile.bitrate,
            error_message=message,
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
        """Extract JPEG frames at evenly spaced timestamps.

        Returns:
            Paths of the written thumbnails, in timestamp order

        Raises:
            RuntimeError: If ffmpeg fails for any frame
        """
        os.makedirs(output_dir, exist_ok=True)
        width, _, height = size.partition("x")
        outputs = []

        for i, timestamp in enumerate(thumbnail_timestamps(duration, count)):
            output_path = os.path.join(output_dir, f"{filename_prefix}_{i}.jpg")
            cmd = [
                self.ffmpeg_path,
                "-y",
                "-ss", str(timestamp),
                "-i", input_path,
                "-frames:v", "1",
                "-vf", f"scale={width}:{height}",
                "-q:v", str(quality),
                output_path,
            ]
            process = subprocess.run(cmd, capture_output=True, text=True)
            if process.returncode != 0 or not os.path.exists(output_path):
                raise RuntimeError(f"Thumbnail extraction failed at {timestamp}s")
            outputs.append(output_path)

        return outputs


def validate_resolution_output(
    actual_width: int,
    actual_height: int,
    profile: QualityProfile,
) -> bool:
    """Validate that output dimensions match a ladder rung.

    Allows letterboxing or pillarboxing: one dimension matches exactly and
    the other fits inside.
    """
    if actual_width == profile.width and actual_height == profile.height:
        return True
    if actual_width == profile.width and actual_height <= profile.height:
        return True
    if actual_height == profile.height and actual_width <= profile.width:
        return True
    return False
