"""Media file information utilities using FFprobe."""

import asyncio
import json
import subprocess
from dataclasses import dataclass
from typing import Optional

from captionburn.config import get_settings
from captionburn.exceptions import ExternalEngineError, InvalidInputError


def _get_settings():
    """Get settings lazily to avoid import issues in tests."""
    return get_settings()


@dataclass
class VideoMetadata:
    """Probed properties of a video file."""

    width: int
    height: int
    fps: float
    duration_ms: float
    has_audio: bool = False
    video_codec: Optional[str] = None
    audio_codec: Optional[str] = None


def _run_ffprobe(file_path: str, *args) -> dict:
    """Run ffprobe and return parsed JSON."""
    settings = _get_settings()
    cmd = [
        settings.ffprobe_path,
        "-v", "quiet",
        "-print_format", "json",
        *args,
        file_path,
    ]

    try:
        result = subprocess.run(cmd, capture_output=True, text=True)
    except FileNotFoundError as e:
        raise ExternalEngineError(f"ffprobe not found: {settings.ffprobe_path}", command=cmd) from e
    if result.returncode != 0:
        raise ExternalEngineError(
            f"ffprobe failed for {file_path}",
            returncode=result.returncode,
            stderr_tail=result.stderr[-2000:],
            command=cmd,
        )

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ExternalEngineError(f"Failed to parse ffprobe output: {e}", command=cmd) from e


def parse_frame_rate(value: Optional[str]) -> Optional[float]:
    """Parse ffprobe's "num/den" frame rate; None when unknown."""
    if not value:
        return None
    try:
        if "/" in value:
            num, den = value.split("/")
            if float(den) == 0:
                return None
            fps = float(num) / float(den)
        else:
            fps = float(value)
    except ValueError:
        return None
    return fps if fps > 0 else None


def get_media_duration(file_path: str) -> float:
    """
    Get media file duration in milliseconds.

    Raises:
        ExternalEngineError: If ffprobe fails or duration not found
    """
    data = _run_ffprobe(file_path, "-show_format")
    format_info = data.get("format", {})

    if "duration" not in format_info:
        raise ExternalEngineError(f"Duration not found in: {file_path}")

    return float(format_info["duration"]) * 1000


def probe_video(file_path: str) -> VideoMetadata:
    """
    Get dimensions, frame rate, duration and audio presence of a video.

    Args:
        file_path: Path to video file

    Returns:
        VideoMetadata for the first video stream

    Raises:
        InvalidInputError: If the file has no video stream
        ExternalEngineError: If ffprobe fails
    """
    settings = _get_settings()
    data = _run_ffprobe(file_path, "-show_format", "-show_streams")

    video_stream = None
    audio_stream = None
    for stream in data.get("streams", []):
        codec_type = stream.get("codec_type")
        if codec_type == "video" and video_stream is None:
            video_stream = stream
        elif codec_type == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        raise InvalidInputError(f"No video stream found in: {file_path}")

    width = video_stream.get("width")
    height = video_stream.get("height")
    if not width or not height:
        raise InvalidInputError(f"Video dimensions not found in: {file_path}")

    fps = (
        parse_frame_rate(video_stream.get("avg_frame_rate"))
        or parse_frame_rate(video_stream.get("r_frame_rate"))
        or settings.render_fallback_fps
    )

    duration_s = data.get("format", {}).get("duration") or video_stream.get("duration")
    if duration_s is None:
        raise ExternalEngineError(f"Duration not found in: {file_path}")

    return VideoMetadata(
        width=int(width),
        height=int(height),
        fps=fps,
        duration_ms=float(duration_s) * 1000,
        has_audio=audio_stream is not None,
        video_codec=video_stream.get("codec_name"),
        audio_codec=audio_stream.get("codec_name") if audio_stream else None,
    )


async def probe_video_async(file_path: str) -> VideoMetadata:
    """probe_video without blocking the event loop."""
    return await asyncio.to_thread(probe_video, file_path)
