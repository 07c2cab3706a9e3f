"""
Timeline mapping between the original video and the clip-edited output.

Removed clips are cut out of the output; the remaining (active) clips are
laid end to end. Captions and word timings authored on the original
timeline are translated onto this effective timeline before rendering.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence

from captionburn.config import get_settings
from captionburn.schemas.caption import CaptionSegment, VideoClip, WordTiming

logger = logging.getLogger(__name__)

NOT_MAPPED = -1.0


@dataclass
class TimelineSegment:
    """An active span of the original timeline and its place in the output."""

    original_start: float
    original_end: float
    effective_start: float
    effective_end: float
    index: int

    @property
    def duration_ms(self) -> float:
        return self.original_end - self.original_start


class TimelineMapper:
    """Maps original-timeline times onto the effective (edited) timeline."""

    def __init__(self, clips: Sequence[VideoClip]):
        active = sorted((c for c in clips if not c.is_removed), key=lambda c: c.start_time)
        self.segments: list[TimelineSegment] = []
        offset = 0.0
        for index, clip in enumerate(active):
            duration = clip.end_time - clip.start_time
            self.segments.append(
                TimelineSegment(
                    original_start=clip.start_time,
                    original_end=clip.end_time,
                    effective_start=offset,
                    effective_end=offset + duration,
                    index=index,
                )
            )
            offset += duration

    @property
    def total_effective_duration(self) -> float:
        if not self.segments:
            return 0.0
        return self.segments[-1].effective_end

    def map_time(self, original_ms: float) -> float:
        """Return the effective time, or NOT_MAPPED if the time was removed."""
        for seg in self.segments:
            if seg.original_start <= original_ms <= seg.original_end:
                return seg.effective_start + (original_ms - seg.original_start)
        return NOT_MAPPED

    def should_filter(self, start_ms: float, end_ms: float) -> bool:
        """True when [start_ms, end_ms) touches no active segment."""
        return not any(
            start_ms < seg.original_end and end_ms > seg.original_start
            for seg in self.segments
        )

    def map_caption_bounds(self, start_ms: float, end_ms: float) -> Optional[tuple[float, float]]:
        """Map caption bounds, clamping endpoints that fall inside removed spans.

        A start inside a removed span snaps forward to the next active
        segment; an end snaps back to the end of the previous one.
        """
        first = next((s for s in self.segments if s.original_end > start_ms), None)
        last = next((s for s in reversed(self.segments) if s.original_start < end_ms), None)
        if first is None or last is None:
            return None

        mapped_start = first.effective_start + max(0.0, start_ms - first.original_start)
        mapped_end = last.effective_start + (min(end_ms, last.original_end) - last.original_start)
        if mapped_end <= mapped_start:
            return None
        return mapped_start, mapped_end


def _map_words(
    mapper: TimelineMapper,
    words: list[WordTiming],
    caption_start: float,
    caption_end: float,
    caption_id: str,
) -> list[WordTiming]:
    mapped: list[WordTiming] = []
    for word in words:
        start = mapper.map_time(word.start_ms)
        end = mapper.map_time(word.end_ms)
        if start == NOT_MAPPED or end == NOT_MAPPED:
            logger.info(f"[TIMELINE] Caption {caption_id}: dropping word '{word.word}' in removed span")
            continue
        start = max(start, caption_start)
        end = min(end, caption_end)
        if end <= start:
            logger.info(f"[TIMELINE] Caption {caption_id}: dropping word '{word.word}' collapsed by clip edit")
            continue
        mapped.append(word.model_copy(update={"start_ms": start, "end_ms": end}))
    return mapped


def adjust_captions_for_clips(
    captions: Sequence[CaptionSegment],
    clips: Sequence[VideoClip] | None,
) -> list[CaptionSegment]:
    """Translate captions onto the effective timeline defined by clips.

    With no removed clip, the captions come back unchanged (as copies).
    """
    if not clips or not any(c.is_removed for c in clips):
        return [c.model_copy(deep=True) for c in captions]

    settings = get_settings()
    mapper = TimelineMapper(clips)
    adjusted: list[CaptionSegment] = []

    for caption in captions:
        if mapper.should_filter(caption.start_time_ms, caption.end_time_ms):
            logger.info(f"[TIMELINE] Caption {caption.id} lies entirely in removed clips, dropping")
            continue

        bounds = mapper.map_caption_bounds(caption.start_time_ms, caption.end_time_ms)
        if bounds is None:
            logger.info(f"[TIMELINE] Caption {caption.id} could not be mapped, dropping")
            continue
        start, end = bounds

        if end - start < settings.caption_min_duration_ms:
            logger.info(
                f"[TIMELINE] Caption {caption.id} shorter than "
                f"{settings.caption_min_duration_ms}ms after mapping ({end - start:.1f}ms), dropping"
            )
            continue

        words = None
        if caption.words:
            words = _map_words(mapper, caption.words, start, end, caption.id)

        adjusted.append(
            caption.model_copy(
                update={"start_time_ms": start, "end_time_ms": end, "words": words},
                deep=True,
            )
        )

    logger.info(f"[TIMELINE] Mapped {len(adjusted)}/{len(captions)} captions onto edited timeline")
    return adjusted


def normalize_caption_timing(captions: Sequence[CaptionSegment]) -> list[CaptionSegment]:
    """Drop captions and words with empty windows and sort words by start."""
    normalized: list[CaptionSegment] = []
    for caption in captions:
        if caption.start_time_ms >= caption.end_time_ms:
            logger.warning(
                f"[TIMING] Caption {caption.id} has start >= end "
                f"({caption.start_time_ms} >= {caption.end_time_ms}), dropping"
            )
            continue

        if not caption.words:
            normalized.append(caption)
            continue

        words = []
        for word in caption.words:
            if word.start_ms >= word.end_ms:
                logger.warning(
                    f"[TIMING] Caption {caption.id}: word '{word.word}' has start >= end, dropping"
                )
                continue
            words.append(word)
        words.sort(key=lambda w: w.start_ms)
        normalized.append(caption.model_copy(update={"words": words}))
    return normalized
