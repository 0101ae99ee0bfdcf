"""Planning stage: size/duration gate and chunk planning.

This stage handles:
- Deciding whether an asset exceeds downstream limits
- Computing contiguous time windows that cover the asset

Both functions are pure: the same inputs always produce the same plan,
which is what lets an interrupted job resume against its stored state.
"""

from __future__ import annotations

import logging
import math

from chunkflow.models.schema import ChunkPlan, ChunkWindow, SourceAsset

logger = logging.getLogger(__name__)

# Tolerance for float division when counting windows, so that e.g.
# 120.0 / 60.0 never rounds up to a third, empty window.
_EPSILON = 1e-9

DEFAULT_ASSUMED_BYTES_PER_SECOND = 500 * 1024
DEFAULT_MIN_ESTIMATED_DURATION = 300.0


def needs_chunking(asset: SourceAsset, max_bytes: int, max_duration: float) -> bool:
    """Decide whether an asset must be split before processing.

    Args:
        asset: The probed source asset.
        max_bytes: Largest asset accepted without chunking.
        max_duration: Longest asset (seconds) accepted without chunking.

    Returns:
        True if the asset is too large or too long. When the duration is
        unknown only the size is evaluated.
    """
    if asset.size_bytes > max_bytes:
        return True

    if asset.duration is None or asset.duration <= 0:
        return False

    return asset.duration > max_duration


def estimate_duration(
    total_bytes: int,
    assumed_bytes_per_second: float = DEFAULT_ASSUMED_BYTES_PER_SECOND,
    min_estimated_duration: float = DEFAULT_MIN_ESTIMATED_DURATION,
) -> float:
    """Estimate a duration from file size using an assumed bitrate.

    Args:
        total_bytes: Size of the asset in bytes.
        assumed_bytes_per_second: Bitrate to assume.
        min_estimated_duration: Lower bound for the estimate.

    Returns:
        Estimated duration in seconds.
    """
    if assumed_bytes_per_second <= 0:
        raise ValueError("assumed_bytes_per_second must be positive")
    return max(min_estimated_duration, max(total_bytes, 0) / assumed_bytes_per_second)


def _validate_limits(max_chunk_bytes: int, min_chunk_duration: float, max_chunk_duration: float) -> None:
    if max_chunk_bytes <= 0:
        raise ValueError(f"max_chunk_bytes must be positive, got {max_chunk_bytes}")
    if min_chunk_duration <= 0 or max_chunk_duration <= 0:
        raise ValueError("Chunk durations must be positive")
    if min_chunk_duration > max_chunk_duration:
        raise ValueError(
            f"min_chunk_duration ({min_chunk_duration}) must not exceed "
            f"max_chunk_duration ({max_chunk_duration})"
        )


def ideal_chunk_duration(
    duration: float,
    total_bytes: int,
    max_chunk_bytes: int,
    min_chunk_duration: float,
    max_chunk_duration: float,
) -> float:
    """Longest window that keeps the estimated chunk size under the limit.

    The result is clamped to [min_chunk_duration, max_chunk_duration].
    An asset with no bytes (or no duration) gets the maximum window.
    """
    if duration <= 0 or total_bytes <= 0:
        return max_chunk_duration

    bytes_per_second = total_bytes / duration
    ideal = max_chunk_bytes / bytes_per_second
    return min(max_chunk_duration, max(min_chunk_duration, ideal))


def plan_chunks(
    duration: float | None,
    total_bytes: int,
    max_chunk_bytes: int,
    min_chunk_duration: float,
    max_chunk_duration: float,
    assumed_bytes_per_second: float = DEFAULT_ASSUMED_BYTES_PER_SECOND,
    min_estimated_duration: float = DEFAULT_MIN_ESTIMATED_DURATION,
) -> ChunkPlan:
    """Compute contiguous time windows covering the asset.

    Args:
        duration: Asset duration in seconds, or None if it was not reported.
        total_bytes: Asset size in bytes.
        max_chunk_bytes: Target upper bound for the bytes in one window.
        min_chunk_duration: Shortest window, in seconds.
        max_chunk_duration: Longest window, in seconds.
        assumed_bytes_per_second: Bitrate used to estimate a missing duration.
        min_estimated_duration: Lower bound for an estimated duration.

    Returns:
        ChunkPlan whose windows cover [0, duration) exactly once. When the
        duration is unknown the plan holds a single window spanning the
        estimated duration and is flagged as estimated.

    Raises:
        ValueError: If the limits are inconsistent.
    """
    _validate_limits(max_chunk_bytes, min_chunk_duration, max_chunk_duration)

    if duration is None or duration <= 0:
        estimated = estimate_duration(total_bytes, assumed_bytes_per_second, min_estimated_duration)
        logger.warning(
            f"Duration unknown, estimated {estimated:.1f}s from {total_bytes} bytes; "
            "using a single window"
        )
        return ChunkPlan(
            windows=(ChunkWindow(index=0, start_time=0.0, end_time=estimated),),
            total_duration=estimated,
            chunk_duration=estimated,
            estimated=True,
        )

    ideal = ideal_chunk_duration(
        duration, total_bytes, max_chunk_bytes, min_chunk_duration, max_chunk_duration
    )
    num_chunks = max(1, math.ceil(duration / ideal - _EPSILON))

    windows: list[ChunkWindow] = []
    for index in range(num_chunks):
        start = index * ideal
        # Last window is truncated to the remaining duration, never padded
        end = duration if index == num_chunks - 1 else min((index + 1) * ideal, duration)
        windows.append(ChunkWindow(index=index, start_time=start, end_time=end))

    logger.debug(
        f"Planned {num_chunks} windows of {ideal:.1f}s for {duration:.1f}s / {total_bytes} bytes"
    )

    return ChunkPlan(
        windows=tuple(windows),
        total_duration=duration,
        chunk_duration=ideal,
        estimated=False,
    )


def plan_for_asset(
    asset: SourceAsset,
    max_chunk_bytes: int,
    min_chunk_duration: float,
    max_chunk_duration: float,
    max_asset_bytes: int,
    max_asset_duration: float,
    assumed_bytes_per_second: float = DEFAULT_ASSUMED_BYTES_PER_SECOND,
    min_estimated_duration: float = DEFAULT_MIN_ESTIMATED_DURATION,
) -> ChunkPlan:
    """Gate and plan in one step.

    Assets within limits get a single window covering the whole asset;
    larger ones are planned with plan_chunks.
    """
    if not needs_chunking(asset, max_asset_bytes, max_asset_duration):
        if asset.duration is None or asset.duration <= 0:
            estimated = estimate_duration(
                asset.size_bytes, assumed_bytes_per_second, min_estimated_duration
            )
            return ChunkPlan(
                windows=(ChunkWindow(index=0, start_time=0.0, end_time=estimated),),
                total_duration=estimated,
                chunk_duration=estimated,
                estimated=True,
            )
        return ChunkPlan(
            windows=(ChunkWindow(index=0, start_time=0.0, end_time=asset.duration),),
            total_duration=asset.duration,
            chunk_duration=asset.duration,
            estimated=asset.duration_estimated,
        )

    return plan_chunks(
        duration=asset.duration,
        total_bytes=asset.size_bytes,
        max_chunk_bytes=max_chunk_bytes,
        min_chunk_duration=min_chunk_duration,
        max_chunk_duration=max_chunk_duration,
        assumed_bytes_per_second=assumed_bytes_per_second,
        min_estimated_duration=min_estimated_duration,
    )
