"""Tests for the planning stage."""

from __future__ import annotations

import math

import pytest

from chunkflow.models.schema import SourceAsset
from chunkflow.stages.plan import (
    estimate_duration,
    ideal_chunk_duration,
    needs_chunking,
    plan_chunks,
    plan_for_asset,
)

MB = 1024 * 1024


def _asset(size_bytes: int, duration: float | None) -> SourceAsset:
    return SourceAsset(asset_id="ast_test", path="/media/talk.mp4", size_bytes=size_bytes, duration=duration)


class TestNeedsChunking:
    """Tests for the size/duration gate."""

    def test_small_and_short_asset_passes(self) -> None:
        """An asset under both limits should not be chunked."""
        assert needs_chunking(_asset(5 * MB, 120.0), max_bytes=20 * MB, max_duration=300) is False

    def test_large_asset_is_chunked(self) -> None:
        """An asset over the size limit should be chunked."""
        assert needs_chunking(_asset(40 * MB, 120.0), max_bytes=20 * MB, max_duration=300) is True

    def test_long_asset_is_chunked(self) -> None:
        """An asset over the duration limit should be chunked even when small."""
        assert needs_chunking(_asset(1 * MB, 301.0), max_bytes=20 * MB, max_duration=300) is True

    def test_limits_are_inclusive(self) -> None:
        """An asset exactly at both limits should not be chunked."""
        assert needs_chunking(_asset(20 * MB, 300.0), max_bytes=20 * MB, max_duration=300) is False

    @pytest.mark.parametrize("duration", [None, 0.0, -1.0])
    def test_unknown_duration_uses_size_only(self, duration: float | None) -> None:
        """Unknown duration should fall back to evaluating size alone."""
        assert needs_chunking(_asset(1 * MB, duration), max_bytes=20 * MB, max_duration=300) is False
        assert needs_chunking(_asset(21 * MB, duration), max_bytes=20 * MB, max_duration=300) is True


class TestIdealChunkDuration:
    """Tests for ideal_chunk_duration."""

    def test_clamped_to_max(self) -> None:
        """A low bitrate should give the maximum window."""
        assert ideal_chunk_duration(600.0, 1 * MB, 20 * MB, 30.0, 300.0) == 300.0

    def test_clamped_to_min(self) -> None:
        """A very high bitrate should give the minimum window."""
        assert ideal_chunk_duration(60.0, 600 * MB, 20 * MB, 30.0, 300.0) == 30.0

    def test_zero_bytes_gives_max(self) -> None:
        """Zero bytes should not divide by zero and should give the maximum window."""
        assert ideal_chunk_duration(100.0, 0, 20 * MB, 30.0, 300.0) == 300.0

    def test_in_range_value(self) -> None:
        """An unclamped ideal should equal max bytes over bitrate."""
        assert ideal_chunk_duration(125.0, 40 * MB, 20 * MB, 30.0, 300.0) == pytest.approx(62.5)


class TestPlanChunks:
    """Tests for plan_chunks."""

    def test_reference_scenario(self) -> None:
        """125s / 40MB with 20MB and 60s limits should give three windows."""
        plan = plan_chunks(
            duration=125.0,
            total_bytes=40 * MB,
            max_chunk_bytes=20 * MB,
            min_chunk_duration=30.0,
            max_chunk_duration=60.0,
        )

        bounds = [(w.start_time, w.end_time) for w in plan.windows]
        assert bounds == [(0.0, 60.0), (60.0, 120.0), (120.0, 125.0)]
        assert [w.index for w in plan.windows] == [0, 1, 2]
        assert plan.chunk_duration == 60.0
        assert plan.estimated is False

    @pytest.mark.parametrize(
        "duration,total_bytes",
        [(125.0, 40 * MB), (3600.0, 700 * MB), (59.9, 30 * MB), (7201.3, 95 * MB), (1.0, 1)],
    )
    def test_windows_cover_duration_exactly_once(self, duration: float, total_bytes: int) -> None:
        """Windows should be contiguous, non-overlapping and end exactly at the duration."""
        plan = plan_chunks(duration, total_bytes, 20 * MB, 30.0, 300.0)

        assert plan.windows[0].start_time == 0.0
        assert plan.windows[-1].end_time == duration
        for previous, current in zip(plan.windows, plan.windows[1:]):
            assert current.start_time == previous.end_time
        assert all(w.duration > 0 for w in plan.windows)
        assert sum(w.duration for w in plan.windows) == pytest.approx(duration)

    @pytest.mark.parametrize("duration,total_bytes", [(125.0, 40 * MB), (3600.0, 700 * MB), (900.0, 10 * MB)])
    def test_chunk_count_is_minimal(self, duration: float, total_bytes: int) -> None:
        """One window fewer should not be able to cover the duration."""
        plan = plan_chunks(duration, total_bytes, 20 * MB, 30.0, 300.0)

        assert plan.count * plan.chunk_duration >= duration - 1e-6
        assert (plan.count - 1) * plan.chunk_duration < duration
        assert plan.count <= math.ceil(duration / plan.chunk_duration)

    def test_windows_respect_limits(self) -> None:
        """Every window should stay within the max duration and the estimated byte limit."""
        duration, total_bytes = 3600.0, 700 * MB
        plan = plan_chunks(duration, total_bytes, 20 * MB, 30.0, 300.0)
        bytes_per_second = total_bytes / duration

        for window in plan.windows:
            assert window.duration <= 300.0
            assert window.duration * bytes_per_second <= 20 * MB + 1

    def test_last_window_is_truncated_not_padded(self) -> None:
        """The final window should stop at the duration."""
        plan = plan_chunks(250.0, 1 * MB, 20 * MB, 30.0, 100.0)
        assert plan.windows[-1].start_time == 200.0
        assert plan.windows[-1].end_time == 250.0

    def test_exact_multiple_has_no_empty_window(self) -> None:
        """A duration that is an exact multiple of the window should not get a zero-length tail."""
        plan = plan_chunks(120.0, 1 * MB, 20 * MB, 30.0, 60.0)
        assert plan.count == 2

    def test_deterministic(self) -> None:
        """The same inputs should always give an identical plan."""
        first = plan_chunks(3601.7, 512 * MB, 20 * MB, 30.0, 300.0)
        second = plan_chunks(3601.7, 512 * MB, 20 * MB, 30.0, 300.0)
        assert first == second

    @pytest.mark.parametrize("duration", [None, 0.0])
    def test_unknown_duration_gives_single_estimated_window(self, duration: float | None) -> None:
        """Unknown duration should give one window spanning the size-based estimate."""
        plan = plan_chunks(duration, 300 * 1024 * 1024, 20 * MB, 30.0, 300.0)

        assert plan.count == 1
        assert plan.estimated is True
        expected = 300 * 1024 * 1024 / (500 * 1024)
        assert plan.windows[0].end_time == pytest.approx(expected)
        assert plan.total_duration == pytest.approx(expected)

    def test_estimate_has_a_floor(self) -> None:
        """A small file with unknown duration should be estimated at no less than 300s."""
        plan = plan_chunks(None, 1024, 20 * MB, 30.0, 300.0)
        assert plan.total_duration == 300.0

    def test_min_greater_than_max_raises(self) -> None:
        """Inconsistent duration limits should raise ValueError."""
        with pytest.raises(ValueError, match="must not exceed"):
            plan_chunks(100.0, 1 * MB, 20 * MB, 120.0, 60.0)

    def test_non_positive_limits_raise(self) -> None:
        """Zero chunk size should raise ValueError."""
        with pytest.raises(ValueError, match="max_chunk_bytes"):
            plan_chunks(100.0, 1 * MB, 0, 30.0, 60.0)


class TestEstimateDuration:
    """Tests for estimate_duration."""

    def test_uses_assumed_bitrate(self) -> None:
        """Large files should be estimated from the assumed bitrate."""
        assert estimate_duration(1000 * 500 * 1024) == pytest.approx(1000.0)

    def test_rejects_zero_bitrate(self) -> None:
        """A zero bitrate should raise ValueError."""
        with pytest.raises(ValueError):
            estimate_duration(1024, assumed_bytes_per_second=0)


class TestPlanForAsset:
    """Tests for plan_for_asset."""

    def test_small_asset_gets_single_window(self) -> None:
        """An asset within limits should be covered by one window."""
        plan = plan_for_asset(
            _asset(5 * MB, 120.0),
            max_chunk_bytes=20 * MB,
            min_chunk_duration=30.0,
            max_chunk_duration=60.0,
            max_asset_bytes=20 * MB,
            max_asset_duration=300.0,
        )
        assert plan.count == 1
        assert plan.windows[0].end_time == 120.0
        assert plan.is_chunked is False

    def test_large_asset_is_planned(self) -> None:
        """An asset over the limits should be split."""
        plan = plan_for_asset(
            _asset(40 * MB, 125.0),
            max_chunk_bytes=20 * MB,
            min_chunk_duration=30.0,
            max_chunk_duration=60.0,
            max_asset_bytes=20 * MB,
            max_asset_duration=300.0,
        )
        assert plan.count == 3
        assert plan.is_chunked is True
