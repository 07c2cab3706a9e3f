"""
FFmpeg filter graphs for overlay compositing.

Input 0 is the base video; inputs 1..N are overlay PNGs in display order.
Each overlay is enabled only inside its own window, and the chain ends in
the [final] label.
"""

import logging
import os
import resource
from typing import Optional, Sequence

from captionburn.config import Settings, get_settings
from captionburn.render.overlay_generator import OverlayArtifact

logger = logging.getLogger(__name__)

FINAL_LABEL = "final"


def build_enable_expr(start_ms: float, end_ms: float) -> str:
    """between() expression in seconds with microsecond precision."""
    return f"between(t,{start_ms / 1000:.6f},{end_ms / 1000:.6f})"


def sort_overlays(overlays: Sequence[OverlayArtifact]) -> list[OverlayArtifact]:
    return sorted(overlays, key=lambda o: (o.start_ms, o.end_ms))


def build_overlay_filter_chain(
    overlays: Sequence[OverlayArtifact],
    tie_offset_ms: Optional[float] = None,
) -> str:
    """Chain of overlay filters, one per image, ending in [final].

    Overlays must already be in input order (see sort_overlays). The i-th
    overlay's window is shifted by i * tie_offset_ms so equal boundaries
    never tie.
    """
    if not overlays:
        raise ValueError("filter chain needs at least one overlay")
    if tie_offset_ms is None:
        tie_offset_ms = get_settings().filter_tie_offset_ms

    parts = []
    current = "0:v"
    for i, overlay in enumerate(overlays):
        offset = i * tie_offset_ms
        label = FINAL_LABEL if i == len(overlays) - 1 else f"v{i + 1}"
        enable = build_enable_expr(overlay.start_ms + offset, overlay.end_ms + offset)
        parts.append(f"[{current}][{i + 1}:v]overlay=enable='{enable}'[{label}]")
        current = label
    return ";".join(parts)


def build_alpha_safe_filter_chain(
    overlays: Sequence[OverlayArtifact],
    tie_offset_ms: Optional[float] = None,
) -> str:
    """Crash-retry variant with explicit pixel formats on every input."""
    if not overlays:
        raise ValueError("filter chain needs at least one overlay")
    if tie_offset_ms is None:
        tie_offset_ms = get_settings().filter_tie_offset_ms

    parts = ["[0:v]format=yuva420p[base]"]
    for i in range(len(overlays)):
        parts.append(f"[{i + 1}:v]format=rgba[img{i + 1}]")

    current = "base"
    for i, overlay in enumerate(overlays):
        offset = i * tie_offset_ms
        enable = build_enable_expr(overlay.start_ms + offset, overlay.end_ms + offset)
        label = f"v{i + 1}"
        parts.append(f"[{current}][img{i + 1}]overlay=enable='{enable}':format=auto[{label}]")
        current = label
    parts.append(f"[{current}]format=yuv420p[{FINAL_LABEL}]")
    return ";".join(parts)


def get_open_file_limit(settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    try:
        soft, _hard = resource.getrlimit(resource.RLIMIT_NOFILE)
    except (ValueError, OSError):
        return settings.render_default_fd_limit
    if soft == resource.RLIM_INFINITY or soft <= 0:
        return settings.render_default_fd_limit
    return soft


def optimal_batch_size(settings: Optional[Settings] = None, fd_limit: Optional[int] = None) -> int:
    """Largest overlay count per ffmpeg process the open-file limit allows."""
    settings = settings or get_settings()
    limit = fd_limit if fd_limit is not None else get_open_file_limit(settings)
    by_fd = limit // settings.render_fd_limit_divisor
    return max(settings.render_min_overlay_batch_size, min(settings.render_max_overlay_batch_size, by_fd))


def reduced_batch_size(count: int) -> int:
    """Batch size for a retry after resource exhaustion."""
    return max(1, count // 4)


def needs_filter_script(filter_graph: str, settings: Optional[Settings] = None) -> bool:
    settings = settings or get_settings()
    return len(filter_graph) > settings.render_filter_script_threshold_chars


def filter_graph_args(filter_graph: str, work_dir: str, name: str, settings: Optional[Settings] = None) -> list[str]:
    """-filter_complex, or -filter_complex_script for long graphs."""
    if not needs_filter_script(filter_graph, settings):
        return ["-filter_complex", filter_graph]
    script_path = os.path.join(work_dir, f"{name}.filter")
    with open(script_path, "w") as f:
        f.write(filter_graph)
    logger.info(f"[FILTER] Graph of {len(filter_graph)} chars written to {script_path}")
    return ["-filter_complex_script", script_path]
