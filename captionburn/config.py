import json
import tempfile
from functools import lru_cache
from typing import Literal

from pydantic import computed_field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    app_name: str = "Captionburn API"
    app_version: str = "0.1.0"
    git_hash: str = "unknown"  # Set via GIT_HASH env var at build time
    environment: Literal["development", "staging", "production"] = "development"
    debug: bool = True
    log_level: str = "INFO"

    # CORS - stored as string, parsed via computed property
    cors_origins_raw: str = "http://localhost:5173,http://localhost:3000"

    @computed_field
    @property
    def cors_origins(self) -> list[str]:
        """Parse CORS origins from pipe/comma-separated string or JSON array."""
        v = self.cors_origins_raw
        if v.startswith("["):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        if "|" in v:
            return [origin.strip() for origin in v.split("|") if origin.strip()]
        return [origin.strip() for origin in v.split(",") if origin.strip()]

    # FFmpeg
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Render settings
    render_temp_root: str = tempfile.gettempdir()
    render_default_quality: Literal["low", "medium", "high", "ultra"] = "high"
    render_fallback_fps: float = 30.0
    render_audio_bitrate: str = "192k"
    # Maximum threads for FFmpeg (limits per-thread buffer memory)
    render_ffmpeg_threads: int = 2
    # Maximum muxing queue size (limits FFmpeg muxer memory)
    render_ffmpeg_max_muxing_queue: int = 1024
    # Window length (in seconds) for smart chunking
    render_smart_chunk_duration_s: int = 90
    # Concurrent segment extractions / caption-free chunk copies
    render_max_concurrent_extractions: int = 4
    # auto | none | videotoolbox | nvenc | qsv | amf
    render_hardware_acceleration: str = "auto"
    # Allow hardware encoders for filter-graph compositing (disabled per job after a failure)
    render_hw_overlay_compositing: bool = True
    # Filter graphs longer than this are passed via -filter_complex_script
    render_filter_script_threshold_chars: int = 4096
    # Overlay batch bounds derived from the open-file limit
    render_min_overlay_batch_size: int = 10
    render_max_overlay_batch_size: int = 100
    render_fd_limit_divisor: int = 10
    render_default_fd_limit: int = 1024
    # Seconds to wait after SIGTERM before SIGKILL
    render_terminate_grace_s: float = 2.0
    render_stderr_tail_lines: int = 40

    # Overlay generation
    overlay_max_workers: int = 8
    overlay_cpu_fraction: float = 0.75
    overlay_worker_memory_mb: int = 150
    # Caption counts at or below this are rendered inline instead of in worker processes
    overlay_inline_threshold: int = 4
    # Adjacent word windows are separated by this much (ms)
    overlay_boundary_epsilon_ms: float = 0.001
    # Words closer than this (ms) are treated as touching
    overlay_adjacent_tolerance_ms: float = 1.0
    # Per-index offset applied to enable windows (ms)
    filter_tie_offset_ms: float = 0.001
    caption_min_duration_ms: float = 100.0
    overlay_cancel_poll_s: float = 0.25
    overlay_worker_grace_s: float = 2.0


@lru_cache
def get_settings() -> Settings:
    return Settings()
