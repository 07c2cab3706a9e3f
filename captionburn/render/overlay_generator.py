"""
Caption overlay image generation.

Each caption becomes one full-frame transparent PNG (static captions) or one
PNG per word (karaoke / progressive). Large caption sets are split into
contiguous batches rendered by separate worker processes; workers only talk
back through a message queue and stop when the job's cancel event is set.
"""

import asyncio
import logging
import math
import multiprocessing
import os
import queue
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional, Sequence

from captionburn.config import Settings, get_settings
from captionburn.exceptions import OverlayGenerationError, RenderCancelledError
from captionburn.render.caption_image import render_static_caption, render_word_highlight
from captionburn.schemas.caption import CaptionSegment, WordTiming

logger = logging.getLogger(__name__)

_MB = 1024 ** 2


@dataclass
class OverlayArtifact:
    """A rendered overlay PNG and its display window (milliseconds)."""

    file_path: str
    start_ms: float
    end_ms: float

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms


# ============================================================================
# Worker sizing
# ============================================================================


def get_available_memory() -> int:
    """Available memory in bytes, bounded by the container (cgroup) limit.

    Falls back to 2 GiB if detection fails.
    """
    available = None
    try:
        with open("/proc/meminfo") as f:
            for line in f:
                if line.startswith("MemAvailable:"):
                    available = int(line.split()[1]) * 1024
                    break
    except (FileNotFoundError, ValueError, PermissionError):
        pass

    for path in ("/sys/fs/cgroup/memory.max", "/sys/fs/cgroup/memory/memory.limit_in_bytes"):
        try:
            with open(path) as f:
                raw = f.read().strip()
            if raw == "max":
                break
            limit = int(raw)
            if limit > 0:
                available = min(available, limit) if available else limit
                break
        except (FileNotFoundError, ValueError, PermissionError):
            continue

    return available if available else 2 * 1024 ** 3


def compute_worker_count(
    settings: Optional[Settings] = None,
    cpu_count: Optional[int] = None,
    available_memory: Optional[int] = None,
) -> int:
    """max(1, min(cpu * fraction, memory / per-worker memory, cap))."""
    settings = settings or get_settings()
    cpus = cpu_count if cpu_count is not None else (os.cpu_count() or 1)
    memory = available_memory if available_memory is not None else get_available_memory()

    by_cpu = math.floor(cpus * settings.overlay_cpu_fraction)
    by_memory = memory // (settings.overlay_worker_memory_mb * _MB)
    return int(max(1, min(by_cpu, by_memory, settings.overlay_max_workers)))


def split_into_batches(captions: Sequence[CaptionSegment], batch_count: int) -> list[list[CaptionSegment]]:
    """Contiguous, near-equal batches preserving caption order."""
    batch_count = max(1, min(batch_count, len(captions)))
    size, extra = divmod(len(captions), batch_count)
    batches = []
    start = 0
    for i in range(batch_count):
        end = start + size + (1 if i < extra else 0)
        batches.append(list(captions[start:end]))
        start = end
    return batches


# ============================================================================
# Rendering (shared by worker processes and the inline path)
# ============================================================================


def plan_word_overlay_windows(
    words: Sequence[WordTiming],
    epsilon_ms: float,
    tolerance_ms: float,
    caption_start_ms: Optional[float] = None,
    caption_end_ms: Optional[float] = None,
) -> list[tuple[int, float, float]]:
    """(word index, start, end) windows that never overlap.

    A word followed within tolerance_ms (or overlapped) by the next word ends
    epsilon_ms before the next word starts. Windows that collapse are skipped.
    """
    windows = []
    for i, word in enumerate(words):
        start = word.start_ms
        end = word.end_ms
        if i + 1 < len(words):
            next_start = words[i + 1].start_ms
            if next_start - end < tolerance_ms:
                end = next_start - epsilon_ms
        if caption_start_ms is not None:
            start = max(start, caption_start_ms)
        if caption_end_ms is not None:
            end = min(end, caption_end_ms)
        if end <= start:
            logger.debug(f"[OVERLAY] Skipping word {i} '{word.word}': empty window after boundary adjustment")
            continue
        windows.append((i, start, end))
    return windows


def count_overlay_units(captions: Sequence[CaptionSegment]) -> int:
    return sum(len(c.words) if c.has_words else 1 for c in captions)


def render_caption_batch(
    captions: Sequence[CaptionSegment],
    batch_index: int,
    width: int,
    height: int,
    out_dir: str,
    epsilon_ms: float,
    tolerance_ms: float,
    is_cancelled: Callable[[], bool] = lambda: False,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> list[OverlayArtifact]:
    """Render every overlay for a batch of captions into out_dir.

    Raises RenderCancelledError as soon as is_cancelled() turns true.
    """
    total = count_overlay_units(captions)
    done = 0
    artifacts: list[OverlayArtifact] = []

    for caption_idx, caption in enumerate(captions):
        if is_cancelled():
            raise RenderCancelledError()

        if not caption.has_words:
            path = os.path.join(out_dir, f"batch_{batch_index}_caption_{caption_idx:03d}_static.png")
            render_static_caption(caption, width, height).save(path, "PNG")
            artifacts.append(OverlayArtifact(path, caption.start_time_ms, caption.end_time_ms))
            done += 1
            if on_progress:
                on_progress(done, total)
            continue

        windows = plan_word_overlay_windows(
            caption.words,
            epsilon_ms,
            tolerance_ms,
            caption.start_time_ms,
            caption.end_time_ms,
        )
        for word_idx, start, end in windows:
            if is_cancelled():
                raise RenderCancelledError()
            path = os.path.join(
                out_dir, f"batch_{batch_index}_caption_{caption_idx:03d}_word_{word_idx:03d}.png"
            )
            render_word_highlight(caption, word_idx, width, height).save(path, "PNG")
            artifacts.append(OverlayArtifact(path, start, end))
        done += len(caption.words)
        if on_progress:
            on_progress(done, total)

    return artifacts


def _overlay_worker(
    captions: list[CaptionSegment],
    batch_index: int,
    width: int,
    height: int,
    out_dir: str,
    epsilon_ms: float,
    tolerance_ms: float,
    messages: Any,
    cancel_event: Any,
) -> None:
    """Worker process entry point. Reports only through the message queue."""

    def report_progress(done: int, total: int) -> None:
        messages.put({"type": "progress", "batch": batch_index, "done": done, "total": total})

    try:
        artifacts = render_caption_batch(
            captions,
            batch_index,
            width,
            height,
            out_dir,
            epsilon_ms,
            tolerance_ms,
            is_cancelled=cancel_event.is_set,
            on_progress=report_progress,
        )
    except RenderCancelledError:
        messages.put({"type": "cancelled", "batch": batch_index})
        return
    except Exception as e:
        messages.put({"type": "error", "batch": batch_index, "message": f"{type(e).__name__}: {e}"})
        return
    messages.put({"type": "complete", "batch": batch_index, "artifacts": [asdict(a) for a in artifacts]})


# ============================================================================
# Generator
# ============================================================================


class OverlayImageGenerator:
    """Renders caption overlays for one job, in worker processes or inline."""

    def __init__(self, job: Any, settings: Optional[Settings] = None):
        self.job = job
        self.settings = settings or get_settings()

    async def generate(
        self,
        captions: Sequence[CaptionSegment],
        width: int,
        height: int,
        out_dir: str,
        on_progress: Optional[Callable[[float], None]] = None,
    ) -> list[OverlayArtifact]:
        if not captions:
            return []
        self.job.check_cancelled()
        os.makedirs(out_dir, exist_ok=True)

        workers = compute_worker_count(self.settings)
        if len(captions) <= self.settings.overlay_inline_threshold or workers == 1:
            logger.info(f"[OVERLAY] Rendering {len(captions)} captions inline")
            artifacts = await self._generate_inline(captions, width, height, out_dir, on_progress)
        else:
            batches = split_into_batches(captions, workers)
            logger.info(f"[OVERLAY] Rendering {len(captions)} captions in {len(batches)} worker processes")
            artifacts = await self._generate_in_workers(batches, width, height, out_dir, on_progress)

        artifacts.sort(key=lambda a: (a.start_ms, os.path.basename(a.file_path)))
        logger.info(f"[OVERLAY] Generated {len(artifacts)} overlay images")
        return artifacts

    async def _generate_inline(
        self,
        captions: Sequence[CaptionSegment],
        width: int,
        height: int,
        out_dir: str,
        on_progress: Optional[Callable[[float], None]],
    ) -> list[OverlayArtifact]:
        loop = asyncio.get_running_loop()

        def report_progress(done: int, total: int) -> None:
            if on_progress:
                loop.call_soon_threadsafe(on_progress, done / total * 100)

        try:
            return await asyncio.to_thread(
                render_caption_batch,
                captions,
                0,
                width,
                height,
                out_dir,
                self.settings.overlay_boundary_epsilon_ms,
                self.settings.overlay_adjacent_tolerance_ms,
                lambda: self.job.cancelled,
                report_progress,
            )
        except RenderCancelledError:
            raise
        except Exception as e:
            self._raise_if_cancelled(e)
            raise

    def _raise_if_cancelled(self, error: Exception) -> None:
        """Report a failure that happened after the job was cancelled as the cancellation."""
        if self.job.cancelled:
            logger.info(f"[OVERLAY] Ignoring {type(error).__name__} raised after cancellation: {error}")
            raise RenderCancelledError() from error

    async def _generate_in_workers(
        self,
        batches: list[list[CaptionSegment]],
        width: int,
        height: int,
        out_dir: str,
        on_progress: Optional[Callable[[float], None]],
    ) -> list[OverlayArtifact]:
        ctx = multiprocessing.get_context("spawn")
        messages = ctx.Queue()
        cancel_event = ctx.Event()
        total_units = sum(count_overlay_units(b) for b in batches)
        done_by_batch = [0] * len(batches)
        results: dict[int, list[OverlayArtifact]] = {}
        processes = []

        try:
            for batch_index, batch in enumerate(batches):
                self.job.check_cancelled()
                process = ctx.Process(
                    target=_overlay_worker,
                    args=(
                        batch,
                        batch_index,
                        width,
                        height,
                        out_dir,
                        self.settings.overlay_boundary_epsilon_ms,
                        self.settings.overlay_adjacent_tolerance_ms,
                        messages,
                        cancel_event,
                    ),
                    daemon=True,
                )
                process.start()
                processes.append(process)
                self.job.track_worker(process, cancel_event)

            while len(results) < len(batches):
                self.job.check_cancelled()
                try:
                    message = await asyncio.to_thread(messages.get, True, self.settings.overlay_cancel_poll_s)
                except queue.Empty:
                    self._check_workers_alive(processes, results)
                    continue

                kind = message["type"]
                batch_index = message["batch"]
                if kind == "progress":
                    done_by_batch[batch_index] = message["done"]
                    if on_progress:
                        on_progress(sum(done_by_batch) / total_units * 100)
                elif kind == "complete":
                    results[batch_index] = [OverlayArtifact(**a) for a in message["artifacts"]]
                    done_by_batch[batch_index] = count_overlay_units(batches[batch_index])
                    logger.info(f"[OVERLAY] Batch {batch_index} complete ({len(results[batch_index])} images)")
                elif kind == "cancelled":
                    raise RenderCancelledError()
                elif kind == "error":
                    raise OverlayGenerationError(f"Overlay batch {batch_index} failed: {message['message']}")
        except RenderCancelledError:
            raise
        except Exception as e:
            self._raise_if_cancelled(e)
            raise
        finally:
            await self._stop_workers(processes, cancel_event)
            messages.close()

        return [artifact for i in range(len(batches)) for artifact in results[i]]

    def _check_workers_alive(self, processes: list, results: dict[int, list[OverlayArtifact]]) -> None:
        for batch_index, process in enumerate(processes):
            if batch_index in results or process.exitcode is None:
                continue
            if process.exitcode != 0:
                raise OverlayGenerationError(
                    f"Overlay worker {batch_index} exited with code {process.exitcode}"
                )

    async def _stop_workers(self, processes: list, cancel_event: Any) -> None:
        alive = [p for p in processes if p.is_alive()]
        if alive:
            cancel_event.set()
            deadline = asyncio.get_running_loop().time() + self.settings.overlay_worker_grace_s
            while any(p.is_alive() for p in alive) and asyncio.get_running_loop().time() < deadline:
                await asyncio.sleep(0.05)
            for process in alive:
                if process.is_alive():
                    logger.warning(f"[OVERLAY] Terminating unresponsive worker pid={process.pid}")
                    process.terminate()
        for process in processes:
            process.join(timeout=1)
            self.job.untrack_worker(process)
