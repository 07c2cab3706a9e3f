"""
FFmpeg process orchestration for a render job.

Every ffmpeg process is spawned through FFmpegEngine.run, which registers it
on the job (so cancellation can reach it), parses `-progress` output into a
percentage and classifies failures:

- RenderCancelledError: the job was cancelled while the process ran
- ResourceExhaustedError: open files / memory / argument list limits
- EngineCrashError: killed by a signal or segfault
- HardwareEncoderError: a hardware encoder rejected the stream
- ExternalEngineError: anything else

Compositing reacts to those failures: hardware failures fall back to
software encoding, resource exhaustion splits the overlays into smaller
time windows, and crashes retry once with explicit pixel formats before
copying the span without overlays.
"""

import asyncio
import errno
import logging
import os
import shutil
from collections import deque
from typing import Callable, Optional, Sequence
from uuid import uuid4

from captionburn.config import Settings, get_settings
from captionburn.exceptions import (
    EngineCrashError,
    ExternalEngineError,
    HardwareEncoderError,
    RenderCancelledError,
    ResourceExhaustedError,
)
from captionburn.render.chunks import VideoChunk, split_overlays_by_count
from captionburn.render.filter_graph import (
    build_alpha_safe_filter_chain,
    build_overlay_filter_chain,
    filter_graph_args,
    optimal_batch_size,
    reduced_batch_size,
    sort_overlays,
)
from captionburn.render.hardware import (
    ENCODERS,
    HardwareAccel,
    is_hardware_encoder_failure,
    supports_overlay_compositing,
    video_quality_args,
)
from captionburn.render.overlay_generator import OverlayArtifact

logger = logging.getLogger(__name__)

ProgressFn = Optional[Callable[[float], None]]

RESOURCE_ERRNOS = {errno.EMFILE, errno.ENFILE, errno.EAGAIN, errno.E2BIG, errno.ENOMEM}
RESOURCE_PATTERNS = [
    "too many open files",
    "resource temporarily unavailable",
    "argument list too long",
    "cannot allocate memory",
    "out of memory",
]
CRASH_PATTERNS = ["segmentation fault", "sigsegv", "killed", "core dumped"]
CRASH_RETURNCODES = {134, 137, 139}
HARDWARE_ENCODERS = {name for accel, name in ENCODERS.items() if accel != HardwareAccel.NONE}


def _seconds(ms: float) -> str:
    return f"{ms / 1000:.6f}"


class FFmpegEngine:
    """Runs ffmpeg for one render job."""

    def __init__(
        self,
        job,
        settings: Optional[Settings] = None,
        accel: HardwareAccel = HardwareAccel.NONE,
    ):
        self.job = job
        self.settings = settings or get_settings()
        self.accel = accel
        self.ffmpeg_path = self.settings.ffmpeg_path
        self.hw_compositing = self.settings.render_hw_overlay_compositing and supports_overlay_compositing(accel)

    @property
    def composite_accel(self) -> HardwareAccel:
        return self.accel if self.hw_compositing else HardwareAccel.NONE

    # ========================================================================
    # Process execution
    # ========================================================================

    async def run(
        self,
        cmd: list[str],
        *,
        duration_ms: Optional[float] = None,
        on_progress: ProgressFn = None,
        label: str = "ffmpeg",
    ) -> None:
        """Run one ffmpeg command to completion or raise a classified error."""
        self.job.check_cancelled()

        if on_progress and duration_ms:
            # Insert -progress pipe:1 before output_path to get progress on stdout
            cmd = cmd[:-1] + ["-progress", "pipe:1", "-nostats", cmd[-1]]

        logger.debug(f"[ENGINE] {label}: {' '.join(cmd)}")
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            if e.errno in RESOURCE_ERRNOS:
                raise ResourceExhaustedError(f"{label}: could not start ffmpeg: {e}", command=cmd) from e
            raise ExternalEngineError(f"{label}: could not start ffmpeg: {e}", command=cmd) from e

        self.job.track_process(proc)
        stderr_tail: deque[str] = deque(maxlen=self.settings.render_stderr_tail_lines)
        try:
            await asyncio.gather(
                self._read_progress(proc, duration_ms, on_progress),
                self._read_stderr(proc, stderr_tail),
            )
            returncode = await proc.wait()
        finally:
            self.job.untrack_process(proc)
            if proc.returncode is None:
                try:
                    proc.kill()
                except ProcessLookupError:
                    pass

        if returncode != 0:
            raise self._classify_failure(cmd, returncode, "\n".join(stderr_tail), label)

    async def _read_progress(self, proc, duration_ms: Optional[float], on_progress: ProgressFn) -> None:
        last_reported_pct = -1.0
        async for raw_line in proc.stdout:
            if not on_progress or not duration_ms:
                continue
            line = raw_line.decode("utf-8", errors="replace").strip()
            if line.startswith("out_time_us="):
                try:
                    time_ms = int(line.split("=")[1]) / 1000
                except ValueError:
                    continue
                pct = min(100.0, max(0.0, time_ms / duration_ms * 100))
                if pct > last_reported_pct:
                    last_reported_pct = pct
                    on_progress(pct)
            elif line.startswith("progress=end"):
                on_progress(100.0)

    async def _read_stderr(self, proc, tail: deque) -> None:
        async for raw_line in proc.stderr:
            line = raw_line.decode("utf-8", errors="replace").rstrip()
            if line:
                tail.append(line)

    def _classify_failure(self, cmd: list[str], returncode: int, stderr: str, label: str) -> Exception:
        if self.job.cancelled:
            return RenderCancelledError(f"{label} stopped: render cancelled")

        text = stderr.lower()
        kwargs = {"returncode": returncode, "stderr_tail": stderr, "command": cmd}
        last_line = stderr.splitlines()[-1] if stderr else ""

        if any(p in text for p in RESOURCE_PATTERNS):
            logger.warning(f"[ENGINE] {label}: resource exhaustion (rc={returncode})")
            return ResourceExhaustedError(f"{label} ran out of resources: {last_line}", **kwargs)
        if returncode < 0 or returncode in CRASH_RETURNCODES or any(p in text for p in CRASH_PATTERNS):
            logger.warning(f"[ENGINE] {label}: ffmpeg crashed (rc={returncode})")
            return EngineCrashError(f"{label} crashed (rc={returncode})", **kwargs)
        if HARDWARE_ENCODERS.intersection(cmd) and is_hardware_encoder_failure(stderr):
            logger.warning(f"[ENGINE] {label}: hardware encoder failure")
            return HardwareEncoderError(f"{label} hardware encoder failed: {last_line}", **kwargs)

        logger.error(f"[ENGINE] {label} failed (rc={returncode}): {stderr}")
        return ExternalEngineError(f"{label} failed (rc={returncode}): {last_line}", **kwargs)

    # ========================================================================
    # Commands
    # ========================================================================

    def _output_args(self, accel: HardwareAccel, quality: str, fps: Optional[float]) -> list[str]:
        args = video_quality_args(accel, quality)
        if fps:
            args += ["-r", f"{fps:g}"]
        args += [
            "-pix_fmt", "yuv420p",
            "-movflags", "+faststart",
            "-threads", str(self.settings.render_ffmpeg_threads),
            "-max_muxing_queue_size", str(self.settings.render_ffmpeg_max_muxing_queue),
        ]
        return args

    def build_stream_copy_command(self, src: str, out: str, start_ms: float, duration_ms: float) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-ss", _seconds(start_ms),
            "-i", src,
            "-t", _seconds(duration_ms),
            "-map", "0:v:0",
            "-map", "0:a?",
            "-c", "copy",
            "-avoid_negative_ts", "make_zero",
            out,
        ]

    def build_reencode_command(
        self,
        src: str,
        out: str,
        start_ms: float,
        duration_ms: float,
        accel: HardwareAccel,
        quality: str,
        fps: Optional[float],
    ) -> list[str]:
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-ss", _seconds(start_ms),
            "-i", src,
            "-t", _seconds(duration_ms),
            "-map", "0:v:0",
            "-map", "0:a?",
            *self._output_args(accel, quality, fps),
            "-c:a", "aac",
            "-b:a", self.settings.render_audio_bitrate,
            "-avoid_negative_ts", "make_zero",
            out,
        ]

    def build_composite_command(
        self,
        src: str,
        overlays: Sequence[OverlayArtifact],
        out: str,
        start_ms: float,
        duration_ms: float,
        filter_args: list[str],
        accel: HardwareAccel,
        quality: str,
        fps: Optional[float],
    ) -> list[str]:
        inputs = ["-ss", _seconds(start_ms), "-t", _seconds(duration_ms), "-i", src]
        for overlay in overlays:
            inputs.extend(["-i", overlay.file_path])
        return [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            *inputs,
            *filter_args,
            "-map", "[final]",
            "-map", "0:a?",
            "-c:a", "copy",
            *self._output_args(accel, quality, fps),
            out,
        ]

    # ========================================================================
    # Operations
    # ========================================================================

    async def extract_segment(
        self,
        src: str,
        out: str,
        start_ms: float,
        end_ms: float,
        *,
        stream_copy: bool = True,
        quality: str = "high",
        fps: Optional[float] = None,
        on_progress: ProgressFn = None,
    ) -> str:
        """Cut [start_ms, end_ms) out of src.

        Stream copy is tried first when allowed; a failed copy falls back to
        an accurate re-encode.
        """
        duration_ms = end_ms - start_ms
        if stream_copy:
            try:
                await self.run(
                    self.build_stream_copy_command(src, out, start_ms, duration_ms),
                    duration_ms=duration_ms,
                    on_progress=on_progress,
                    label="extract (copy)",
                )
                return out
            except ExternalEngineError as e:
                logger.warning(f"[ENGINE] Stream copy of {start_ms:.0f}-{end_ms:.0f}ms failed, re-encoding: {e}")

        await self._reencode(src, out, start_ms, duration_ms, self.accel, quality, fps, on_progress)
        return out

    async def _reencode(
        self,
        src: str,
        out: str,
        start_ms: float,
        duration_ms: float,
        accel: HardwareAccel,
        quality: str,
        fps: Optional[float],
        on_progress: ProgressFn,
    ) -> None:
        try:
            await self.run(
                self.build_reencode_command(src, out, start_ms, duration_ms, accel, quality, fps),
                duration_ms=duration_ms,
                on_progress=on_progress,
                label="extract (encode)",
            )
        except HardwareEncoderError as e:
            logger.warning(f"[HWACCEL] {accel.value} encode failed, retrying with libx264: {e}")
            await self._reencode(src, out, start_ms, duration_ms, HardwareAccel.NONE, quality, fps, on_progress)

    async def composite_overlays(
        self,
        src: str,
        overlays: Sequence[OverlayArtifact],
        out: str,
        start_ms: float,
        duration_ms: float,
        *,
        quality: str = "high",
        fps: Optional[float] = None,
        on_progress: ProgressFn = None,
        max_batch: Optional[int] = None,
    ) -> str:
        """Burn overlays (timed relative to start_ms) into a span of src."""
        if not overlays:
            return await self.extract_segment(
                src, out, start_ms, start_ms + duration_ms, stream_copy=False, quality=quality, fps=fps,
                on_progress=on_progress,
            )

        batch = max_batch or optimal_batch_size(self.settings)
        if len(overlays) > batch:
            windows = split_overlays_by_count(overlays, duration_ms, batch)
            if len(windows) > 1:
                logger.info(f"[ENGINE] {len(overlays)} overlays exceed batch size {batch}, splitting into {len(windows)} windows")
                await self.composite_in_batches(src, windows, out, start_ms, duration_ms, batch, quality, fps, on_progress)
                return out

        await self._composite_with_fallbacks(src, overlays, out, start_ms, duration_ms, quality, fps, on_progress)
        return out

    async def _composite_with_fallbacks(
        self,
        src: str,
        overlays: Sequence[OverlayArtifact],
        out: str,
        start_ms: float,
        duration_ms: float,
        quality: str,
        fps: Optional[float],
        on_progress: ProgressFn,
    ) -> None:
        try:
            await self._composite_once(
                src, overlays, out, start_ms, duration_ms, build_overlay_filter_chain,
                self.composite_accel, quality, fps, on_progress,
            )
        except HardwareEncoderError as e:
            logger.warning(f"[HWACCEL] Hardware compositing failed, disabling it for this job: {e}")
            self.hw_compositing = False
            await self._composite_with_fallbacks(src, overlays, out, start_ms, duration_ms, quality, fps, on_progress)
        except ResourceExhaustedError:
            if len(overlays) <= 1:
                raise
            smaller = reduced_batch_size(len(overlays))
            windows = split_overlays_by_count(overlays, duration_ms, smaller)
            if len(windows) <= 1:
                raise
            logger.warning(
                f"[ENGINE] Resource exhaustion with {len(overlays)} overlays, "
                f"retrying in {len(windows)} windows of <= {smaller}"
            )
            await self.composite_in_batches(src, windows, out, start_ms, duration_ms, smaller, quality, fps, on_progress)
        except EngineCrashError as e:
            logger.warning(f"[ENGINE] Compositing crashed, retrying with explicit pixel formats: {e}")
            try:
                await self._composite_once(
                    src, overlays, out, start_ms, duration_ms, build_alpha_safe_filter_chain,
                    HardwareAccel.NONE, quality, fps, on_progress,
                )
            except EngineCrashError as retry_error:
                logger.error(
                    f"[ENGINE] Compositing crashed again, copying "
                    f"{start_ms:.0f}-{start_ms + duration_ms:.0f}ms without captions: {retry_error}"
                )
                await self.extract_segment(
                    src, out, start_ms, start_ms + duration_ms, stream_copy=True, quality=quality, fps=fps,
                    on_progress=on_progress,
                )

    async def _composite_once(
        self,
        src: str,
        overlays: Sequence[OverlayArtifact],
        out: str,
        start_ms: float,
        duration_ms: float,
        chain_builder: Callable[[Sequence[OverlayArtifact], Optional[float]], str],
        accel: HardwareAccel,
        quality: str,
        fps: Optional[float],
        on_progress: ProgressFn,
    ) -> None:
        ordered = sort_overlays(overlays)
        chain = chain_builder(ordered, self.settings.filter_tie_offset_ms)
        script_dir = self.job.work_dir or os.path.dirname(os.path.abspath(out))
        name = os.path.splitext(os.path.basename(out))[0]
        filter_args = filter_graph_args(chain, script_dir, name, self.settings)
        cmd = self.build_composite_command(
            src, ordered, out, start_ms, duration_ms, filter_args, accel, quality, fps,
        )
        logger.info(
            f"[ENGINE] Compositing {len(ordered)} overlays into "
            f"{start_ms:.0f}-{start_ms + duration_ms:.0f}ms ({accel.value})"
        )
        await self.run(cmd, duration_ms=duration_ms, on_progress=on_progress, label="composite")

    async def composite_in_batches(
        self,
        src: str,
        windows: list[VideoChunk],
        out: str,
        start_ms: float,
        duration_ms: float,
        max_batch: int,
        quality: str,
        fps: Optional[float],
        on_progress: ProgressFn,
    ) -> None:
        """Composite each time window separately, then join the parts."""
        stem, ext = os.path.splitext(out)
        parts = []
        for window in windows:
            self.job.check_cancelled()
            part = f"{stem}_w{window.index:03d}{ext}"
            await self.composite_overlays(
                src,
                window.overlays,
                part,
                start_ms + window.start_ms,
                window.duration_ms,
                quality=quality,
                fps=fps,
                on_progress=self._window_progress(on_progress, window, duration_ms),
                max_batch=max_batch,
            )
            parts.append(part)
        await self.concat(parts, out)

    @staticmethod
    def _window_progress(on_progress: ProgressFn, window: VideoChunk, total_ms: float) -> ProgressFn:
        if not on_progress:
            return None

        def cb(p: float) -> None:
            on_progress((window.start_ms + p / 100 * window.duration_ms) / total_ms * 100)

        return cb

    async def concat(self, parts: Sequence[str], out: str) -> str:
        """Join parts losslessly with the concat demuxer."""
        if not parts:
            raise ValueError("nothing to concatenate")
        if len(parts) == 1:
            self.job.check_cancelled()
            shutil.copy2(parts[0], out)
            return out

        list_dir = self.job.create_work_dir()
        concat_list_path = os.path.join(list_dir, f"concat_{uuid4().hex[:12]}.txt")
        with open(concat_list_path, "w") as f:
            for part in parts:
                # FFmpeg concat requires escaped paths
                escaped = os.path.abspath(part).replace("'", "'\\''")
                f.write(f"file '{escaped}'\n")

        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-f", "concat",
            "-safe", "0",
            "-i", concat_list_path,
            "-c", "copy",
            "-movflags", "+faststart",
            out,
        ]
        logger.info(f"[ENGINE] Concatenating {len(parts)} parts into {out}")
        try:
            await self.run(cmd, label="concat")
        finally:
            if os.path.exists(concat_list_path):
                os.remove(concat_list_path)
        return out

    async def replace_audio(self, video: str, audio: str, out: str) -> str:
        """Swap the audio track, keeping the video stream as is."""
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-i", video,
            "-i", audio,
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", self.settings.render_audio_bitrate,
            "-map", "0:v:0",
            "-map", "1:a:0",
            "-shortest",
            "-movflags", "+faststart",
            out,
        ]
        await self.run(cmd, label="replace audio")
        return out

    async def copy_video(self, src: str, out: str) -> str:
        cmd = [
            self.ffmpeg_path,
            "-y",
            "-hide_banner",
            "-i", src,
            "-map", "0",
            "-c", "copy",
            "-movflags", "+faststart",
            out,
        ]
        await self.run(cmd, label="copy")
        return out
