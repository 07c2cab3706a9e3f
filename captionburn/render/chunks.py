"""
Chunk planning for caption compositing.

A video is cut into time windows. Windows without captions are stream-copied
(no re-encode); windows with captions are composited with their overlays
re-based onto the window's own clock. Every plan covers [0, total) exactly,
in order, with no gaps or overlaps.
"""

import logging
from dataclasses import dataclass, field
from typing import Sequence

from captionburn.render.overlay_generator import OverlayArtifact

logger = logging.getLogger(__name__)


@dataclass
class VideoChunk:
    """A window of the working video and the overlays shown inside it."""

    index: int
    start_ms: float
    end_ms: float
    has_captions: bool = False
    overlays: list[OverlayArtifact] = field(default_factory=list)

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms


def rebase_overlays(
    overlays: Sequence[OverlayArtifact],
    start_ms: float,
    end_ms: float,
) -> list[OverlayArtifact]:
    """Overlays intersecting [start_ms, end_ms), shifted to the window's clock.

    Relative times are clamped to [0, end_ms - start_ms); overlays whose
    clamped window is empty are dropped.
    """
    window = end_ms - start_ms
    rebased: list[OverlayArtifact] = []
    for overlay in overlays:
        if overlay.end_ms <= start_ms or overlay.start_ms >= end_ms:
            continue
        rel_start = max(0.0, overlay.start_ms - start_ms)
        rel_end = min(window, overlay.end_ms - start_ms)
        if rel_end <= rel_start:
            continue
        rebased.append(OverlayArtifact(overlay.file_path, rel_start, rel_end))
    return rebased


def _window_bounds(total_ms: float, chunk_ms: float) -> list[tuple[float, float]]:
    if chunk_ms <= 0:
        raise ValueError(f"chunk duration must be positive (got {chunk_ms})")
    bounds: list[tuple[float, float]] = []
    start = 0.0
    while start < total_ms:
        end = min(start + chunk_ms, total_ms)
        bounds.append((start, end))
        start = end
    return bounds


def plan_fixed_chunks(
    total_ms: float,
    chunk_ms: float,
    overlays: Sequence[OverlayArtifact] = (),
) -> list[VideoChunk]:
    """Equal windows of chunk_ms; the last one may be shorter."""
    chunks = []
    for index, (start, end) in enumerate(_window_bounds(total_ms, chunk_ms)):
        rebased = rebase_overlays(overlays, start, end)
        chunks.append(VideoChunk(index, start, end, has_captions=bool(rebased), overlays=rebased))
    return chunks


def merge_caption_free_chunks(chunks: Sequence[VideoChunk]) -> list[VideoChunk]:
    """Merge runs of consecutive caption-free windows into one span.

    Caption-bearing windows are never merged into, or with, anything.
    """
    merged: list[VideoChunk] = []
    for chunk in chunks:
        if (
            not chunk.has_captions
            and merged
            and not merged[-1].has_captions
            and merged[-1].end_ms == chunk.start_ms
        ):
            merged[-1].end_ms = chunk.end_ms
            continue
        merged.append(
            VideoChunk(
                index=len(merged),
                start_ms=chunk.start_ms,
                end_ms=chunk.end_ms,
                has_captions=chunk.has_captions,
                overlays=list(chunk.overlays),
            )
        )
    return merged


def plan_smart_chunks(
    overlays: Sequence[OverlayArtifact],
    total_ms: float,
    chunk_ms: float,
) -> list[VideoChunk]:
    """Fixed windows tagged by caption presence, caption-free runs merged."""
    fixed = plan_fixed_chunks(total_ms, chunk_ms, overlays)
    chunks = merge_caption_free_chunks(fixed)
    caption_chunks = sum(1 for c in chunks if c.has_captions)
    logger.info(
        f"[CHUNKS] {len(fixed)} windows of {chunk_ms / 1000:.0f}s -> {len(chunks)} chunks "
        f"({caption_chunks} with captions, {len(chunks) - caption_chunks} stream-copied)"
    )
    return chunks


def split_overlays_by_count(
    overlays: Sequence[OverlayArtifact],
    duration_ms: float,
    batch_size: int,
) -> list[VideoChunk]:
    """Split a unit into consecutive sub-windows of at most batch_size starting overlays.

    Sub-window boundaries sit at the start of every batch_size-th overlay
    (sorted by start), so the sub-windows together cover [0, duration_ms).
    """
    if batch_size < 1:
        raise ValueError(f"batch size must be at least 1 (got {batch_size})")
    ordered = sorted(overlays, key=lambda o: o.start_ms)

    cuts = [0.0]
    for i in range(batch_size, len(ordered), batch_size):
        cut = ordered[i].start_ms
        if 0.0 < cut < duration_ms and cut > cuts[-1]:
            cuts.append(cut)
    cuts.append(duration_ms)

    windows = []
    for index, (start, end) in enumerate(zip(cuts, cuts[1:])):
        rebased = rebase_overlays(ordered, start, end)
        windows.append(VideoChunk(index, start, end, has_captions=bool(rebased), overlays=rebased))
    return windows
