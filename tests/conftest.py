"""
Pytest fixtures for captionburn tests.

Sample videos are generated on the fly with ffmpeg's lavfi test sources.

CI/CD Note:
Tests that run real ffmpeg processes are marked with @pytest.mark.requires_ffmpeg
and skipped when ffmpeg/ffprobe are not on PATH.
Run `pytest -m "not requires_ffmpeg"` to skip them explicitly.
"""

import shutil
import subprocess
import tempfile
from pathlib import Path

import pytest

from captionburn.schemas.caption import CaptionSegment


def pytest_configure(config):
    """Register custom markers for CI/CD test filtering."""
    config.addinivalue_line(
        "markers",
        "requires_ffmpeg: mark test as requiring ffmpeg and ffprobe on PATH"
    )


def _ffmpeg_available() -> bool:
    return shutil.which("ffmpeg") is not None and shutil.which("ffprobe") is not None


def pytest_collection_modifyitems(config, items):
    """Skip tests marked requires_ffmpeg when ffmpeg is missing."""
    if _ffmpeg_available():
        return
    skip_ffmpeg = pytest.mark.skip(reason="ffmpeg/ffprobe not available")
    for item in items:
        if "requires_ffmpeg" in item.keywords:
            item.add_marker(skip_ffmpeg)


def _generate_test_video(path: Path, duration_s: int = 10, with_audio: bool = True) -> Path:
    cmd = [
        "ffmpeg", "-y", "-hide_banner", "-loglevel", "error",
        "-f", "lavfi", "-i", f"testsrc=size=640x360:rate=30:duration={duration_s}",
    ]
    if with_audio:
        cmd += ["-f", "lavfi", "-i", f"sine=frequency=440:duration={duration_s}"]
    cmd += ["-c:v", "libx264", "-preset", "ultrafast", "-pix_fmt", "yuv420p", "-g", "30"]
    if with_audio:
        cmd += ["-c:a", "aac", "-shortest"]
    cmd.append(str(path))
    subprocess.run(cmd, check=True, capture_output=True)
    return path


@pytest.fixture
def temp_output_dir():
    """Temporary directory for test outputs."""
    with tempfile.TemporaryDirectory(prefix="captionburn_test_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_video_with_audio(temp_output_dir) -> Path:
    """A 10s 640x360@30 test pattern with a sine tone."""
    if not _ffmpeg_available():
        pytest.skip("ffmpeg/ffprobe not available")
    return _generate_test_video(temp_output_dir / "source.mp4")


@pytest.fixture
def test_video_no_audio(temp_output_dir) -> Path:
    """A 10s 640x360@30 test pattern without audio."""
    if not _ffmpeg_available():
        pytest.skip("ffmpeg/ffprobe not available")
    return _generate_test_video(temp_output_dir / "source_silent.mp4", with_audio=False)


@pytest.fixture
def static_caption() -> CaptionSegment:
    """A caption without word timing."""
    return CaptionSegment(id="c1", start_time_ms=1000, end_time_ms=3000, text="Hello world")


@pytest.fixture
def karaoke_caption() -> CaptionSegment:
    """A three-word caption with touching word boundaries."""
    return CaptionSegment.model_validate(
        {
            "id": "k1",
            "startTime": 0,
            "endTime": 1500,
            "text": "one two three",
            "words": [
                {"word": "one", "start": 0, "end": 500},
                {"word": "two", "start": 500, "end": 1000},
                {"word": "three", "start": 1000, "end": 1500},
            ],
        }
    )
