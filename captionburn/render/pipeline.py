"""
Caption burn-in render pipeline.

This module orchestrates the entire rendering process:
1. Validate inputs and probe the source video
2. Replace the audio track (optional)
3. Cut removed clips out of the video and remap caption timing (optional)
4. Render caption overlay images
5. Plan smart chunks: stream-copy caption-free spans, composite the rest
6. Concatenate chunks into the output and validate it

All intermediate files live in the job's work directory, which is removed
on every exit path.
"""

import asyncio
import logging
import os
import shutil
from typing import Any, Awaitable, Callable, Optional, Sequence

from captionburn.config import Settings, get_settings
from captionburn.exceptions import (
    CaptionBurnError,
    InvalidInputError,
    OutputValidationError,
    RenderCancelledError,
    TimingInconsistencyError,
)
from captionburn.render.chunks import VideoChunk, plan_smart_chunks
from captionburn.render.engine import FFmpegEngine
from captionburn.render.hardware import HardwareAccel, select_hardware_acceleration
from captionburn.render.job import RenderJob
from captionburn.render.overlay_generator import OverlayImageGenerator
from captionburn.render.progress import ProgressAggregator, ProgressCallback
from captionburn.render.timeline import TimelineMapper, adjust_captions_for_clips, normalize_caption_timing
from captionburn.schemas.caption import CaptionSegment, ExportSettings, VideoClip, parse_captions, parse_clips
from captionburn.utils.media_info import VideoMetadata, probe_video_async

logger = logging.getLogger(__name__)

STAGE_AUDIO = "Replacing audio"
STAGE_CLIPS = "Extracting clips"
STAGE_OVERLAYS = "Generating captions"
STAGE_COMPOSITE = "Compositing captions"
STAGE_FINALIZE = "Finalizing"

STAGE_WEIGHTS = {
    STAGE_AUDIO: 15,
    STAGE_CLIPS: 35,
    STAGE_OVERLAYS: 15,
    STAGE_COMPOSITE: 45,
    STAGE_FINALIZE: 5,
}


def validate_render_inputs(
    video_path: str,
    output_path: str,
    replacement_audio_path: Optional[str] = None,
) -> None:
    """Raise InvalidInputError for missing or unreadable inputs."""
    if not video_path or not os.path.isfile(video_path):
        raise InvalidInputError(f"Source video not found: {video_path}")
    if not os.access(video_path, os.R_OK):
        raise InvalidInputError(f"Source video is not readable: {video_path}")
    if not output_path:
        raise InvalidInputError("Output path is required")
    output_dir = os.path.dirname(os.path.abspath(output_path))
    if not os.path.isdir(output_dir):
        raise InvalidInputError(f"Output directory does not exist: {output_dir}")
    if os.path.abspath(output_path) == os.path.abspath(video_path):
        raise InvalidInputError("Output path must differ from the source video")
    if replacement_audio_path is not None:
        if not os.path.isfile(replacement_audio_path):
            raise InvalidInputError(f"Replacement audio not found: {replacement_audio_path}")
        if not os.access(replacement_audio_path, os.R_OK):
            raise InvalidInputError(f"Replacement audio is not readable: {replacement_audio_path}")


class CaptionRenderPipeline:
    """One caption render: its job, engine, overlay generator and progress."""

    def __init__(
        self,
        job: Optional[RenderJob] = None,
        settings: Optional[Settings] = None,
        on_progress: Optional[ProgressCallback] = None,
        accel: Optional[HardwareAccel] = None,
    ):
        self.settings = settings or get_settings()
        self.job = job or RenderJob(settings=self.settings)
        self._on_progress = on_progress
        self._accel = accel
        self.engine: Optional[FFmpegEngine] = None
        self.generator = OverlayImageGenerator(self.job, self.settings)
        self.progress: Optional[ProgressAggregator] = None
        self._phases: dict[str, int] = {}
        self._output_written = False

    def _update_progress(self, progress: int, stage: str) -> None:
        """Update render progress."""
        self.job.update_progress(progress, stage)
        if self._on_progress:
            self._on_progress(progress, stage)

    def _set_phases(self, stages: Sequence[str]) -> None:
        self._phases = {stage: i for i, stage in enumerate(stages)}
        self.progress = ProgressAggregator(
            [STAGE_WEIGHTS[s] for s in stages],
            on_progress=self._update_progress,
            stages=stages,
        )

    def _phase(self, stage: str) -> Callable[[float], None]:
        self.job.current_stage = stage
        return self.progress.phase_callback(self._phases[stage])

    async def _run_bounded(self, factories: Sequence[Callable[[], Awaitable[Any]]], limit: int) -> list[Any]:
        """Run coroutine factories with bounded concurrency, results in order.

        The first failure cancels the remaining work and is re-raised.
        """
        semaphore = asyncio.Semaphore(max(1, limit))

        async def guarded(factory: Callable[[], Awaitable[Any]]) -> Any:
            async with semaphore:
                self.job.check_cancelled()
                return await factory()

        tasks = [asyncio.ensure_future(guarded(f)) for f in factories]
        try:
            return await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    # ========================================================================
    # Entry point
    # ========================================================================

    async def render(
        self,
        video_path: str,
        captions: Sequence[CaptionSegment | dict[str, Any]],
        output_path: str,
        *,
        clips: Optional[Sequence[VideoClip | dict[str, Any]]] = None,
        replacement_audio_path: Optional[str] = None,
        export_settings: Optional[ExportSettings] = None,
        require_captions: bool = False,
    ) -> str:
        job = self.job
        try:
            job.check_cancelled()
            validate_render_inputs(video_path, output_path, replacement_audio_path)

            parsed = parse_captions(list(captions))
            burn_in = [c for c in parsed if c.style.burn_in]
            if parsed and not burn_in:
                raise InvalidInputError("None of the captions are marked for burn-in")
            caption_list = normalize_caption_timing(burn_in)

            clip_list = parse_clips(list(clips) if clips else None)
            has_removed = any(c.is_removed for c in clip_list)
            if clip_list and all(c.is_removed for c in clip_list):
                raise InvalidInputError("Every clip is marked as removed; nothing left to render")

            job.mark_started()
            work_dir = job.create_work_dir()
            metadata = await probe_video_async(video_path)
            export = export_settings or ExportSettings()
            quality = export.quality or self.settings.render_default_quality
            fps = export.framerate or metadata.fps

            stages = []
            if replacement_audio_path:
                stages.append(STAGE_AUDIO)
            if has_removed:
                stages.append(STAGE_CLIPS)
            if caption_list:
                stages.extend([STAGE_OVERLAYS, STAGE_COMPOSITE])
            stages.append(STAGE_FINALIZE)
            self._set_phases(stages)

            accel = self._accel
            if accel is None:
                accel = await asyncio.to_thread(select_hardware_acceleration, self.settings)
            self.engine = FFmpegEngine(job, self.settings, accel)

            logger.info(
                f"[RENDER] Job {job.id}: {len(caption_list)} captions, {len(clip_list)} clips, "
                f"{metadata.width}x{metadata.height}@{metadata.fps:.3f}, {metadata.duration_ms:.0f}ms, "
                f"quality={quality}, encoder={accel.value}"
            )

            working = video_path
            if replacement_audio_path:
                self._phase(STAGE_AUDIO)(0)
                working = await self.engine.replace_audio(
                    working, replacement_audio_path, os.path.join(work_dir, "audio_replaced.mp4")
                )
                self._phase(STAGE_AUDIO)(100)

            total_ms = metadata.duration_ms
            if has_removed:
                mapper = TimelineMapper(clip_list)
                working, total_ms = await self._apply_clips(working, mapper, metadata, work_dir, quality, fps)
                caption_list = adjust_captions_for_clips(caption_list, clip_list)

            if not caption_list:
                if require_captions:
                    raise TimingInconsistencyError("No caption remains after timing normalization and clip mapping")
                logger.info(f"[RENDER] Job {job.id}: no captions to burn, copying video")
                await self._finalize_without_captions(working, video_path, output_path)
            else:
                await self._burn_captions(working, caption_list, output_path, metadata, total_ms, work_dir, quality, fps)

            output_size = self._validate_output(output_path)
            job.mark_completed(output_path, output_size)
            self.progress.complete()
            logger.info(f"[RENDER] Job {job.id}: completed {output_path} ({output_size} bytes)")
            return output_path

        except asyncio.CancelledError:
            logger.info(f"[RENDER] Job {job.id}: task cancelled, stopping processes")
            await job.cancel()
            self._remove_partial_output(output_path)
            raise
        except Exception as e:
            self._remove_partial_output(output_path)
            if isinstance(e, RenderCancelledError) or job.cancelled:
                # Failures caused by cancel() tearing down processes are cancellations
                logger.info(f"[RENDER] Job {job.id}: cancelled")
                job.mark_cancelled()
                if isinstance(e, RenderCancelledError):
                    raise
                raise RenderCancelledError() from e
            if isinstance(e, CaptionBurnError):
                logger.error(f"[RENDER] Job {job.id}: failed: {e.code}: {e.message}")
                job.mark_failed(e.message, e.code)
            else:
                logger.exception(f"[RENDER] Job {job.id}: unexpected failure: {e}")
                job.mark_failed(str(e), "INTERNAL_ERROR")
            raise
        finally:
            job.finish()

    # ========================================================================
    # Phases
    # ========================================================================

    async def _apply_clips(
        self,
        working: str,
        mapper: TimelineMapper,
        metadata: VideoMetadata,
        work_dir: str,
        quality: str,
        fps: float,
    ) -> tuple[str, float]:
        """Re-encode the active segments and join them into the edited video."""
        report = self._phase(STAGE_CLIPS)
        segments = [
            (seg, min(seg.original_end, metadata.duration_ms))
            for seg in mapper.segments
            if seg.original_start < metadata.duration_ms
        ]
        if not segments:
            raise InvalidInputError("No active clip overlaps the source video")

        total = sum(end - seg.original_start for seg, end in segments)
        if mapper.total_effective_duration > total:
            logger.warning(
                f"[RENDER] Clips cover {mapper.total_effective_duration:.0f}ms but only {total:.0f}ms "
                f"lie within the source video"
            )
        done = [0.0] * len(segments)
        clips_dir = os.path.join(work_dir, "clips")
        os.makedirs(clips_dir, exist_ok=True)

        def make_segment_callback(idx: int, length: float) -> Callable[[float], None]:
            def cb(p: float) -> None:
                done[idx] = p / 100 * length
                report(sum(done) / total * 90)
            return cb

        def make_extract(idx: int, seg, end: float) -> Callable[[], Awaitable[str]]:
            out = os.path.join(clips_dir, f"segment_{idx:03d}.mp4")
            return lambda: self.engine.extract_segment(
                working,
                out,
                seg.original_start,
                end,
                stream_copy=False,
                quality=quality,
                fps=fps,
                on_progress=make_segment_callback(idx, end - seg.original_start),
            )

        logger.info(f"[RENDER] Extracting {len(segments)} active segments ({total:.0f}ms)")
        parts = await self._run_bounded(
            [make_extract(i, seg, end) for i, (seg, end) in enumerate(segments)],
            self.settings.render_max_concurrent_extractions,
        )
        clipped = await self.engine.concat(parts, os.path.join(work_dir, "clipped.mp4"))
        report(100)
        return clipped, total

    async def _burn_captions(
        self,
        working: str,
        captions: list[CaptionSegment],
        output_path: str,
        metadata: VideoMetadata,
        total_ms: float,
        work_dir: str,
        quality: str,
        fps: float,
    ) -> None:
        overlays = await self.generator.generate(
            captions,
            metadata.width,
            metadata.height,
            os.path.join(work_dir, "overlays"),
            on_progress=self._phase(STAGE_OVERLAYS),
        )
        self._phase(STAGE_OVERLAYS)(100)

        chunks = plan_smart_chunks(overlays, total_ms, self.settings.render_smart_chunk_duration_s * 1000)
        parts = await self._render_chunks(working, chunks, work_dir, quality, fps)

        self._phase(STAGE_FINALIZE)(0)
        self._output_written = True
        await self.engine.concat(parts, output_path)
        self._phase(STAGE_FINALIZE)(100)

    async def _render_chunks(
        self,
        working: str,
        chunks: list[VideoChunk],
        work_dir: str,
        quality: str,
        fps: float,
    ) -> list[str]:
        """Stream-copy caption-free chunks and composite caption chunks, in time order."""
        report = self._phase(STAGE_COMPOSITE)
        chunks_dir = os.path.join(work_dir, "chunks")
        os.makedirs(chunks_dir, exist_ok=True)
        parts = [os.path.join(chunks_dir, f"chunk_{c.index:03d}.mp4") for c in chunks]

        caption_chunks = [c for c in chunks if c.has_captions]
        caption_total = sum(c.duration_ms for c in caption_chunks) or 1.0
        done = {c.index: 0.0 for c in caption_chunks}

        def make_chunk_callback(chunk: VideoChunk) -> Callable[[float], None]:
            def cb(p: float) -> None:
                done[chunk.index] = p / 100 * chunk.duration_ms
                report(sum(done.values()) / caption_total * 100)
            return cb

        def make_copy(chunk: VideoChunk) -> Callable[[], Awaitable[str]]:
            return lambda: self.engine.extract_segment(
                working, parts[chunk.index], chunk.start_ms, chunk.end_ms, stream_copy=True, quality=quality, fps=fps
            )

        async def copy_all() -> None:
            await self._run_bounded(
                [make_copy(c) for c in chunks if not c.has_captions],
                self.settings.render_max_concurrent_extractions,
            )

        async def composite_all() -> None:
            for chunk in caption_chunks:
                logger.info(
                    f"[RENDER] Chunk {chunk.index + 1}/{len(chunks)}: "
                    f"{chunk.start_ms:.0f}-{chunk.end_ms:.0f}ms, {len(chunk.overlays)} overlays"
                )
                await self.engine.composite_overlays(
                    working,
                    chunk.overlays,
                    parts[chunk.index],
                    chunk.start_ms,
                    chunk.duration_ms,
                    quality=quality,
                    fps=fps,
                    on_progress=make_chunk_callback(chunk),
                )

        await self._run_bounded([copy_all, composite_all], 2)
        report(100)
        return parts

    async def _finalize_without_captions(self, working: str, video_path: str, output_path: str) -> None:
        self._phase(STAGE_FINALIZE)(0)
        self._output_written = True
        if working == video_path:
            await self.engine.copy_video(video_path, output_path)
        else:
            self.job.check_cancelled()
            shutil.copy2(working, output_path)
        self._phase(STAGE_FINALIZE)(100)

    # ========================================================================
    # Output
    # ========================================================================

    def _validate_output(self, output_path: str) -> int:
        if not os.path.isfile(output_path):
            raise OutputValidationError(f"Output file was not created: {output_path}")
        size = os.path.getsize(output_path)
        if size == 0:
            raise OutputValidationError(f"Output file is empty: {output_path}")
        return size

    def _remove_partial_output(self, output_path: str) -> None:
        if self._output_written and output_path and os.path.isfile(output_path):
            os.remove(output_path)
            logger.info(f"[RENDER] Removed partial output {output_path}")


async def render_video_with_captions(
    video_path: str,
    captions: Sequence[CaptionSegment | dict[str, Any]],
    output_path: str,
    *,
    clips: Optional[Sequence[VideoClip | dict[str, Any]]] = None,
    replacement_audio_path: Optional[str] = None,
    export_settings: Optional[ExportSettings] = None,
    on_progress: Optional[ProgressCallback] = None,
    job: Optional[RenderJob] = None,
    require_captions: bool = False,
    settings: Optional[Settings] = None,
) -> str:
    """
    Burn captions into a video.

    Args:
        video_path: Source video
        captions: Caption segments (models or dicts) on the original timeline
        output_path: Destination file; its directory must exist
        clips: Clip edits; removed clips are cut out and captions remapped
        replacement_audio_path: Audio file that replaces the source audio
        export_settings: Frame rate and quality
        on_progress: Called with (percent, stage); percent never decreases
        job: Job to run under (for cancellation and status); created if omitted
        require_captions: Fail with TimingInconsistencyError instead of copying
            the video when no caption survives normalization

    Returns:
        output_path

    Raises:
        InvalidInputError, TimingInconsistencyError, ExternalEngineError,
        RenderCancelledError, OutputValidationError
    """
    pipeline = CaptionRenderPipeline(job=job, settings=settings, on_progress=on_progress)
    return await pipeline.render(
        video_path,
        captions,
        output_path,
        clips=clips,
        replacement_audio_path=replacement_audio_path,
        export_settings=export_settings,
        require_captions=require_captions,
    )
