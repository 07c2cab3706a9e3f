"""Tests for chunk planning."""

import pytest

from captionburn.render.chunks import (
    VideoChunk,
    merge_caption_free_chunks,
    plan_fixed_chunks,
    plan_smart_chunks,
    rebase_overlays,
    split_overlays_by_count,
)
from captionburn.render.overlay_generator import OverlayArtifact


def _assert_covers(chunks: list[VideoChunk], total_ms: float) -> None:
    assert chunks[0].start_ms == 0
    assert chunks[-1].end_ms == total_ms
    for prev, nxt in zip(chunks, chunks[1:]):
        assert prev.end_ms == nxt.start_ms
    assert [c.index for c in chunks] == list(range(len(chunks)))


class TestRebaseOverlays:
    """Tests for rebase_overlays."""

    def test_relative_times(self):
        """Test that overlays are shifted onto the window clock."""
        overlays = [OverlayArtifact("a.png", 95000, 97000)]

        rebased = rebase_overlays(overlays, 90000, 180000)

        assert rebased == [OverlayArtifact("a.png", 5000, 7000)]

    def test_clamped_to_window(self):
        """Test that overlays crossing the window edges are clamped."""
        overlays = [OverlayArtifact("a.png", 89000, 91000), OverlayArtifact("b.png", 179000, 181000)]

        rebased = rebase_overlays(overlays, 90000, 180000)

        assert rebased[0].start_ms == 0
        assert rebased[0].end_ms == 1000
        assert rebased[1].start_ms == 89000
        assert rebased[1].end_ms == 90000

    def test_outside_window_dropped(self):
        """Test that overlays not intersecting the window are dropped."""
        overlays = [OverlayArtifact("a.png", 0, 90000), OverlayArtifact("b.png", 180000, 181000)]

        assert rebase_overlays(overlays, 90000, 180000) == []


class TestFixedChunks:
    """Tests for plan_fixed_chunks."""

    @pytest.mark.parametrize("total_ms", [1000, 90000, 90001, 250000, 333333.5])
    def test_coverage(self, total_ms):
        """Test that windows cover [0, total) without gaps or overlaps."""
        chunks = plan_fixed_chunks(total_ms, 90000)

        _assert_covers(chunks, total_ms)
        assert all(c.duration_ms <= 90000 for c in chunks)

    def test_rejects_non_positive_chunk(self):
        """Test that a zero chunk duration is rejected."""
        with pytest.raises(ValueError):
            plan_fixed_chunks(1000, 0)


class TestSmartChunks:
    """Tests for plan_smart_chunks and merging."""

    def test_merges_caption_free_runs(self):
        """Test that consecutive caption-free windows merge but caption windows stay apart."""
        overlays = [
            OverlayArtifact("a.png", 10000, 12000),
            OverlayArtifact("b.png", 400000, 401000),
        ]

        chunks = plan_smart_chunks(overlays, 600000, 90000)

        _assert_covers(chunks, 600000)
        assert [(c.start_ms, c.end_ms, c.has_captions) for c in chunks] == [
            (0, 90000, True),
            (90000, 360000, False),
            (360000, 450000, True),
            (450000, 600000, False),
        ]
        assert chunks[2].overlays == [OverlayArtifact("b.png", 40000, 41000)]

    def test_caption_windows_never_merged(self):
        """Test that adjacent caption windows remain separate chunks."""
        overlays = [OverlayArtifact("a.png", 1000, 2000), OverlayArtifact("b.png", 91000, 92000)]

        chunks = plan_smart_chunks(overlays, 180000, 90000)

        assert len(chunks) == 2
        assert all(c.has_captions for c in chunks)

    def test_no_captions_single_chunk(self):
        """Test that a caption-free video becomes one stream-copied chunk."""
        chunks = plan_smart_chunks([], 300000, 90000)

        assert len(chunks) == 1
        assert chunks[0].has_captions is False
        _assert_covers(chunks, 300000)

    def test_merge_preserves_caption_chunk(self):
        """Test merge_caption_free_chunks on a hand-built plan."""
        chunks = [
            VideoChunk(0, 0, 10, False),
            VideoChunk(1, 10, 20, True, [OverlayArtifact("a.png", 0, 5)]),
            VideoChunk(2, 20, 30, False),
            VideoChunk(3, 30, 40, False),
        ]

        merged = merge_caption_free_chunks(chunks)

        assert [(c.index, c.start_ms, c.end_ms) for c in merged] == [(0, 0, 10), (1, 10, 20), (2, 20, 40)]


class TestSplitOverlaysByCount:
    """Tests for split_overlays_by_count."""

    def test_windows_hold_at_most_batch_size(self):
        """Test that each window starts at most batch_size overlays and windows cover the unit."""
        overlays = [OverlayArtifact(f"{i}.png", i * 1000, i * 1000 + 900) for i in range(10)]

        windows = split_overlays_by_count(overlays, 10000, 4)

        _assert_covers(windows, 10000)
        assert [w.start_ms for w in windows] == [0, 4000, 8000]
        assert [len(w.overlays) for w in windows] == [4, 4, 2]

    def test_single_window_when_batch_large(self):
        """Test that a batch larger than the overlay count yields one window."""
        overlays = [OverlayArtifact("a.png", 0, 500), OverlayArtifact("b.png", 600, 900)]

        windows = split_overlays_by_count(overlays, 1000, 10)

        assert len(windows) == 1
        assert windows[0].overlays == overlays

    def test_rejects_zero_batch(self):
        """Test that a zero batch size is rejected."""
        with pytest.raises(ValueError):
            split_overlays_by_count([], 1000, 0)
