"""
Tests for overlay image generation.

Features:
- Worker sizing from CPU and memory
- Non-overlapping word windows
- Batch rendering to PNG files
- Inline and worker-process generation with cancellation
"""

import asyncio
import os
import threading
from unittest.mock import patch

import pytest
from PIL import Image

from captionburn.config import Settings
from captionburn.exceptions import RenderCancelledError
from captionburn.render.caption_image import render_static_caption
from captionburn.render.job import RenderJob, RenderStatus
from captionburn.render.overlay_generator import (
    OverlayImageGenerator,
    compute_worker_count,
    count_overlay_units,
    plan_word_overlay_windows,
    render_caption_batch,
    split_into_batches,
)
from captionburn.schemas.caption import CaptionSegment, WordTiming

GIB = 1024 ** 3


def _captions(count: int) -> list[CaptionSegment]:
    return [
        CaptionSegment(id=f"c{i}", start_time_ms=i * 1000, end_time_ms=i * 1000 + 800, text=f"caption {i}")
        for i in range(count)
    ]


class TestWorkerSizing:
    """Tests for compute_worker_count and split_into_batches."""

    @pytest.mark.parametrize(
        "cpus,memory,expected",
        [
            (16, 64 * GIB, 8),
            (4, 64 * GIB, 3),
            (16, 300 * 1024 ** 2, 2),
            (1, 64 * GIB, 1),
            (8, 0, 1),
        ],
    )
    def test_worker_count(self, cpus, memory, expected):
        """Test max(1, min(cpu * 0.75, memory / 150MB, 8))."""
        assert compute_worker_count(Settings(), cpu_count=cpus, available_memory=memory) == expected

    def test_batches_contiguous_and_balanced(self):
        """Test that batches keep caption order and differ by at most one."""
        captions = _captions(10)

        batches = split_into_batches(captions, 3)

        assert [len(b) for b in batches] == [4, 3, 3]
        assert [c.id for b in batches for c in b] == [c.id for c in captions]

    def test_more_workers_than_captions(self):
        """Test that empty batches are never produced."""
        batches = split_into_batches(_captions(2), 8)

        assert len(batches) == 2

    def test_count_overlay_units(self, static_caption, karaoke_caption):
        """Test one unit per static caption and one per word."""
        assert count_overlay_units([static_caption, karaoke_caption]) == 4


class TestWordWindows:
    """Tests for plan_word_overlay_windows."""

    def test_touching_words_never_overlap(self, karaoke_caption):
        """Test touching words get an epsilon gap."""
        windows = plan_word_overlay_windows(karaoke_caption.words, 0.001, 1.0)

        assert windows[0] == (0, 0, pytest.approx(499.999))
        assert windows[1] == (1, 500, pytest.approx(999.999))
        assert windows[2] == (2, 1000, 1500)
        for (_, _, end), (_, start, _) in zip(windows, windows[1:]):
            assert end < start

    def test_overlapping_words_trimmed(self):
        """Test that an overlapping word ends before the next starts."""
        words = [WordTiming(word="a", start_ms=0, end_ms=700), WordTiming(word="b", start_ms=500, end_ms=900)]

        windows = plan_word_overlay_windows(words, 0.001, 1.0)

        assert windows[0][2] == pytest.approx(499.999)

    def test_gap_preserved(self):
        """Test that words separated by more than the tolerance keep their end."""
        words = [WordTiming(word="a", start_ms=0, end_ms=400), WordTiming(word="b", start_ms=500, end_ms=900)]

        windows = plan_word_overlay_windows(words, 0.001, 1.0)

        assert windows[0] == (0, 0, 400)

    def test_collapsed_window_skipped(self):
        """Test that a word whose window collapses is skipped."""
        words = [WordTiming(word="a", start_ms=500, end_ms=600), WordTiming(word="b", start_ms=500, end_ms=900)]

        windows = plan_word_overlay_windows(words, 0.001, 1.0)

        assert [index for index, _, _ in windows] == [1]

    def test_clamped_to_caption(self):
        """Test that windows are clamped to the caption bounds."""
        words = [WordTiming(word="a", start_ms=0, end_ms=2000)]

        assert plan_word_overlay_windows(words, 0.001, 1.0, 100, 1500) == [(0, 100, 1500)]


class TestRenderCaptionBatch:
    """Tests for render_caption_batch."""

    def test_static_and_word_overlays(self, temp_output_dir, static_caption, karaoke_caption):
        """Test file naming, image size and timing of rendered overlays."""
        progress = []

        artifacts = render_caption_batch(
            [static_caption, karaoke_caption], 2, 320, 180, str(temp_output_dir), 0.001, 1.0,
            on_progress=lambda done, total: progress.append((done, total)),
        )

        names = [os.path.basename(a.file_path) for a in artifacts]
        assert names == [
            "batch_2_caption_000_static.png",
            "batch_2_caption_001_word_000.png",
            "batch_2_caption_001_word_001.png",
            "batch_2_caption_001_word_002.png",
        ]
        assert (artifacts[0].start_ms, artifacts[0].end_ms) == (1000, 3000)
        with Image.open(artifacts[1].file_path) as img:
            assert img.size == (320, 180)
            assert img.mode == "RGBA"
        assert progress == [(1, 4), (4, 4)]

    def test_cancelled(self, temp_output_dir, static_caption):
        """Test that a set cancel flag stops rendering before any file is written."""
        with pytest.raises(RenderCancelledError):
            render_caption_batch(
                [static_caption], 0, 320, 180, str(temp_output_dir), 0.001, 1.0, is_cancelled=lambda: True,
            )

        assert os.listdir(temp_output_dir) == []


class TestOverlayImageGenerator:
    """Tests for OverlayImageGenerator."""

    @pytest.mark.asyncio
    async def test_empty_captions(self, temp_output_dir):
        """Test that no captions produce no overlays."""
        generator = OverlayImageGenerator(RenderJob(settings=Settings()), Settings())

        assert await generator.generate([], 320, 180, str(temp_output_dir)) == []

    @pytest.mark.asyncio
    async def test_inline_sorted_by_start(self, temp_output_dir, static_caption, karaoke_caption):
        """Test inline generation returns overlays sorted by start time."""
        progress = []
        generator = OverlayImageGenerator(RenderJob(settings=Settings()), Settings())

        artifacts = await generator.generate(
            [static_caption, karaoke_caption], 320, 180, str(temp_output_dir), on_progress=progress.append,
        )

        assert [a.start_ms for a in artifacts] == sorted(a.start_ms for a in artifacts)
        assert len(artifacts) == 4
        assert all(os.path.exists(a.file_path) for a in artifacts)
        assert progress[-1] == 100

    @pytest.mark.asyncio
    async def test_cancelled_job_rejected(self, temp_output_dir, static_caption):
        """Test that generation never starts for a cancelled job."""
        job = RenderJob(settings=Settings(render_terminate_grace_s=0))
        await job.cancel()

        with pytest.raises(RenderCancelledError):
            await OverlayImageGenerator(job, Settings()).generate([static_caption], 320, 180, str(temp_output_dir))

    @pytest.mark.asyncio
    async def test_worker_processes(self, temp_output_dir):
        """Test multi-process generation merges every batch and releases its workers."""
        settings = Settings(overlay_inline_threshold=1)
        job = RenderJob(settings=settings)
        captions = _captions(6)

        with patch("captionburn.render.overlay_generator.compute_worker_count", return_value=2):
            artifacts = await OverlayImageGenerator(job, settings).generate(captions, 160, 90, str(temp_output_dir))

        assert [a.start_ms for a in artifacts] == [c.start_time_ms for c in captions]
        assert {os.path.basename(a.file_path).split("_caption")[0] for a in artifacts} == {"batch_0", "batch_1"}
        assert job.worker_count == 0


class TestCancelDuringGeneration:
    """Cancelling while overlay images are being written."""

    @pytest.fixture
    def settings(self, temp_output_dir):
        return Settings(
            render_temp_root=str(temp_output_dir),
            overlay_inline_threshold=100,
            render_terminate_grace_s=0.2,
        )

    async def _cancel_after_first_overlay(self, job: RenderJob, settings: Settings, out_dir: str) -> None:
        """Render five captions inline and cancel the job while the second one is drawn."""
        release = threading.Event()
        first_written = asyncio.Event()
        drawn = []

        def gated_render(caption, width, height):
            drawn.append(caption.id)
            if len(drawn) > 1:
                release.wait(timeout=5)
            return render_static_caption(caption, width, height)

        generator = OverlayImageGenerator(job, settings)
        with patch("captionburn.render.overlay_generator.render_static_caption", side_effect=gated_render):
            task = asyncio.create_task(
                generator.generate(_captions(5), 160, 90, out_dir, on_progress=lambda p: first_written.set())
            )
            await first_written.wait()
            await job.cancel()
            release.set()

            with pytest.raises(RenderCancelledError):
                await task

        assert len(drawn) < 5

    @pytest.mark.asyncio
    async def test_running_render_keeps_work_dir_until_finished(self, settings):
        """Test the inline thread can finish its image before the work dir is removed."""
        job = RenderJob(settings=settings)
        job.mark_started()
        out_dir = os.path.join(job.create_work_dir(), "overlays")

        await self._cancel_after_first_overlay(job, settings, out_dir)

        assert job.status == RenderStatus.CANCELLED
        assert os.path.isdir(out_dir)
        job.finish()
        assert not os.path.exists(out_dir)

    @pytest.mark.asyncio
    async def test_write_failure_after_cancel_is_cancellation(self, settings):
        """Test a save into an already purged work dir surfaces as RenderCancelledError."""
        job = RenderJob(settings=settings)
        out_dir = os.path.join(job.create_work_dir(), "overlays")

        await self._cancel_after_first_overlay(job, settings, out_dir)

        assert job.status == RenderStatus.CANCELLED
        assert not os.path.exists(out_dir)

    def test_failures_only_converted_once_cancelled(self, settings):
        """Test errors of a live job pass through unchanged."""
        job = RenderJob(settings=settings)
        generator = OverlayImageGenerator(job, settings)

        generator._raise_if_cancelled(OSError("disk full"))

        job.mark_cancelled()
        with pytest.raises(RenderCancelledError):
            generator._raise_if_cancelled(OSError("disk full"))
