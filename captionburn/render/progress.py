"""Weighted multi-phase progress reporting."""

import logging
import threading
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class ProgressAggregator:
    """Maps per-phase 0-100 progress onto one monotonic 0-100 value.

    Each phase owns a band proportional to its weight. Reports that would
    move the overall value backwards are ignored. The callback runs under
    the aggregator's lock, so concurrent reporters deliver values to it in
    increasing order.
    """

    def __init__(
        self,
        weights: Sequence[float],
        on_progress: Optional[ProgressCallback] = None,
        stages: Optional[Sequence[str]] = None,
    ):
        if not weights or any(w < 0 for w in weights) or sum(weights) <= 0:
            raise ValueError(f"phase weights must be non-negative with a positive sum (got {list(weights)})")
        total = float(sum(weights))
        self._bands: list[tuple[float, float]] = []
        start = 0.0
        for w in weights:
            width = w / total * 100
            self._bands.append((start, width))
            start += width
        self._stages = list(stages) if stages else [f"phase {i + 1}" for i in range(len(weights))]
        self._on_progress = on_progress
        # Reentrant: the callback may report progress itself
        self._lock = threading.RLock()
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def update(self, phase_index: int, local_percent: float, stage: Optional[str] = None) -> int:
        """Record progress within a phase and return the overall percent."""
        band_start, band_width = self._bands[phase_index]
        local = min(100.0, max(0.0, local_percent))
        overall = round(band_start + local / 100 * band_width)
        overall = min(100, max(0, overall))

        with self._lock:
            if overall <= self._current:
                return self._current
            self._current = overall
            if self._on_progress:
                self._on_progress(overall, stage or self._stages[phase_index])
        return overall

    def phase_callback(self, phase_index: int) -> Callable[[float], None]:
        """A callable reporting local percent for one phase."""

        def cb(local_percent: float) -> None:
            self.update(phase_index, local_percent)

        return cb

    def complete(self, stage: str = "Complete") -> None:
        with self._lock:
            if self._current >= 100:
                return
            self._current = 100
            if self._on_progress:
                self._on_progress(100, stage)
