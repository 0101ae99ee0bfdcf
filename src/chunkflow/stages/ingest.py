"""Ingestion stage: file validation and probing.

This stage handles:
- File format validation
- Metadata extraction via ffprobe
- Building the immutable SourceAsset the rest of the pipeline works on

A failed probe is not fatal: the asset is still built, with an unknown
duration, and the planner falls back to a size-based estimate.
"""

from __future__ import annotations

import hashlib
import json
import logging
import mimetypes
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from chunkflow.models.schema import SourceAsset
from chunkflow.utils.retry import run_blocking

logger = logging.getLogger(__name__)

# Supported formats
SUPPORTED_VIDEO_FORMATS = {".mp4", ".mov", ".avi", ".mkv", ".webm"}
SUPPORTED_AUDIO_FORMATS = {".mp3", ".wav", ".m4a"}
SUPPORTED_FORMATS = SUPPORTED_VIDEO_FORMATS | SUPPORTED_AUDIO_FORMATS


@dataclass
class ProbeResult:
    """Raw probe result from ffprobe."""

    duration: float | None
    format_name: str
    has_video: bool
    has_audio: bool
    bit_rate: int | None = None


class ProbeError(Exception):
    """Duration or size of an asset could not be determined."""

    pass


class MediaProbe(Protocol):
    """Measures an asset's duration and bitrate."""

    async def probe(self, source: Path) -> ProbeResult: ...


def validate_file(source: Path) -> None:
    """Validate that a file exists and has a supported format.

    Args:
        source: Path to the input file.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file format is not supported.
    """
    if not source.exists():
        raise FileNotFoundError(f"Source file not found: {source}")

    suffix = source.suffix.lower()
    if suffix not in SUPPORTED_FORMATS:
        raise ValueError(
            f"Unsupported format: {suffix}. "
            f"Supported formats: {', '.join(sorted(SUPPORTED_FORMATS))}"
        )


def _run_ffprobe(source: Path, timeout: float = 30) -> dict:
    """Run ffprobe and return parsed JSON output.

    Args:
        source: Path to the media file.
        timeout: Seconds before ffprobe is abandoned.

    Returns:
        Parsed JSON from ffprobe.

    Raises:
        ProbeError: If ffprobe fails or is not installed.
    """
    cmd = [
        "ffprobe",
        "-v", "quiet",
        "-print_format", "json",
        "-show_format",
        "-show_streams",
        str(source),
    ]

    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise ProbeError(
            "ffprobe not found. Please install FFmpeg:\n"
            "  Ubuntu/Debian: sudo apt install ffmpeg\n"
            "  macOS: brew install ffmpeg\n"
            "  Windows: choco install ffmpeg"
        )
    except subprocess.TimeoutExpired:
        raise ProbeError(f"ffprobe timed out reading: {source}")

    if result.returncode != 0:
        raise ProbeError(f"ffprobe failed: {result.stderr}")

    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise ProbeError(f"Failed to parse ffprobe output: {e}")


def _parse_probe_result(data: dict) -> ProbeResult:
    """Parse ffprobe JSON into a ProbeResult.

    Args:
        data: Parsed ffprobe JSON.

    Returns:
        ProbeResult; duration is None when no stream reports one.
    """
    streams = data.get("streams", [])
    format_info = data.get("format", {})

    video_stream = None
    audio_stream = None

    for stream in streams:
        codec_type = stream.get("codec_type")
        if codec_type == "video" and video_stream is None:
            video_stream = stream
        elif codec_type == "audio" and audio_stream is None:
            audio_stream = stream

    # Prefer format duration, fall back to stream; "N/A" counts as missing
    duration = None
    for candidate in (format_info, video_stream or {}, audio_stream or {}):
        raw = candidate.get("duration")
        if raw in (None, "N/A"):
            continue
        try:
            duration = float(raw)
        except (TypeError, ValueError):
            continue
        break

    if duration is not None and duration <= 0:
        duration = None

    bit_rate = None
    raw_bit_rate = format_info.get("bit_rate")
    if raw_bit_rate not in (None, "N/A"):
        try:
            bit_rate = int(raw_bit_rate)
        except (TypeError, ValueError):
            bit_rate = None

    # Take first format if multiple (e.g., "mov,mp4,m4a,3gp")
    format_name = format_info.get("format_name", "unknown")
    if "," in format_name:
        format_name = format_name.split(",")[0]

    return ProbeResult(
        duration=duration,
        format_name=format_name,
        has_video=video_stream is not None,
        has_audio=audio_stream is not None,
        bit_rate=bit_rate,
    )


def probe_file(source: Path) -> ProbeResult:
    """Probe a media file and return metadata.

    Args:
        source: Path to the media file.

    Returns:
        ProbeResult with file metadata.

    Raises:
        ProbeError: If probing fails.
    """
    start_time = time.perf_counter()

    data = _run_ffprobe(source)
    result = _parse_probe_result(data)

    elapsed = time.perf_counter() - start_time
    logger.debug(f"Probed {source.name} in {elapsed:.2f}s")

    return result


class FfprobeMediaProbe:
    """MediaProbe backed by the ffprobe binary."""

    async def probe(self, source: Path) -> ProbeResult:
        return await run_blocking(probe_file, source)


def generate_asset_id(source: Path) -> str:
    """Derive a stable asset ID from the file's head, size and name.

    The same file always maps to the same ID, so job state stored under
    it can be found again by a later run.
    """
    hasher = hashlib.md5()
    with source.open("rb") as f:
        hasher.update(f.read(8192))
    hasher.update(str(source.stat().st_size).encode())
    hasher.update(source.name.encode())
    return f"ast_{hasher.hexdigest()[:12]}"


def guess_content_type(source: Path) -> str:
    """Guess the MIME type of a media file from its extension."""
    content_type, _ = mimetypes.guess_type(source.name)
    if content_type:
        return content_type
    if source.suffix.lower() in SUPPORTED_AUDIO_FORMATS:
        return "audio/octet-stream"
    return "video/octet-stream"


async def load_asset(source: Path, probe: MediaProbe | None = None) -> SourceAsset:
    """Validate, probe and describe a local media file.

    Args:
        source: Path to the input file.
        probe: MediaProbe to use (defaults to ffprobe).

    Returns:
        SourceAsset. If probing fails the duration is left unknown and the
        error is logged instead of raised.

    Raises:
        FileNotFoundError: If the file does not exist.
        ValueError: If the file format is not supported.
    """
    validate_file(source)
    probe = probe or FfprobeMediaProbe()

    size_bytes = source.stat().st_size
    suffix = source.suffix.lower()
    duration: float | None = None
    has_video = suffix in SUPPORTED_VIDEO_FORMATS
    has_audio = True

    try:
        result = await probe.probe(source)
        duration = result.duration
        # Containers like .mp4 may hold audio only
        has_video = result.has_video
        has_audio = result.has_audio
        if duration is None:
            logger.warning(f"No duration reported for {source.name}, will estimate from size")
    except ProbeError as e:
        logger.warning(f"Probe failed for {source.name}, will estimate duration from size: {e}")

    return SourceAsset(
        asset_id=generate_asset_id(source),
        path=str(source.absolute()),
        size_bytes=size_bytes,
        duration=duration,
        content_type=guess_content_type(source),
        has_video=has_video,
        has_audio=has_audio,
        duration_estimated=False,
    )
