"""Materialization stage: turning a planned window into bytes.

The pipeline only relies on the ``MediaMaterializer`` contract. The
ffmpeg implementations write the window into a temporary file and return
its bytes, so only one chunk is held in memory at a time:

- ``FfmpegMaterializer`` stream-copies the window in the source container
- ``FfmpegAudioExtractor`` decodes the window's audio track to 16kHz mono
  WAV, which is what the transcription stage sends for video assets

ffmpeg runs as an asyncio subprocess and is killed when the awaiting task
is cancelled, so a timed-out cut never keeps running next to its retry.
"""

from __future__ import annotations

import asyncio
import logging
import tempfile
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol

from chunkflow.models.schema import ChunkWindow
from chunkflow.utils.retry import run_blocking

logger = logging.getLogger(__name__)

FFMPEG_MISSING = (
    "ffmpeg not found. Please install FFmpeg:\n"
    "  Ubuntu/Debian: sudo apt install ffmpeg\n"
    "  macOS: brew install ffmpeg\n"
    "  Windows: choco install ffmpeg"
)


class MaterializeError(Exception):
    """A window's bytes could not be produced."""

    pass


class MediaMaterializer(Protocol):
    """Produces the bytes of one window of the source asset."""

    async def materialize(self, window: ChunkWindow) -> bytes: ...


def _build_ffmpeg_command(source: Path, window: ChunkWindow, output_path: Path) -> list[str]:
    return [
        "ffmpeg",
        "-v", "error",
        "-ss", f"{window.start_time:.3f}",
        "-i", str(source),
        "-t", f"{window.duration:.3f}",
        "-c", "copy",  # No re-encode
        "-avoid_negative_ts", "make_zero",
        "-y",
        str(output_path),
    ]


def _build_audio_command(
    source: Path,
    window: ChunkWindow,
    output_path: Path,
    sample_rate: int = 16000,
    mono: bool = True,
) -> list[str]:
    cmd = [
        "ffmpeg",
        "-v", "error",
        "-ss", f"{window.start_time:.3f}",
        "-i", str(source),
        "-t", f"{window.duration:.3f}",
        "-vn",  # No video
        "-acodec", "pcm_s16le",  # 16-bit PCM
        "-ar", str(sample_rate),  # Sample rate
    ]

    if mono:
        cmd.extend(["-ac", "1"])  # Mono

    cmd.extend([
        "-y",  # Overwrite output
        str(output_path),
    ])
    return cmd


async def run_ffmpeg(cmd: list[str], timeout: float | None = None) -> tuple[int, str]:
    """Run an ffmpeg command as a subprocess.

    The process is killed if it outlives the timeout or if the awaiting task
    is cancelled.

    Args:
        cmd: Command line, starting with the ffmpeg binary.
        timeout: Seconds before the process is killed (None for no limit).

    Returns:
        Tuple of (return code, stderr text).

    Raises:
        MaterializeError: If ffmpeg is missing or timed out.
    """
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError:
        raise MaterializeError(FFMPEG_MISSING)

    try:
        _, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except (asyncio.CancelledError, asyncio.TimeoutError) as e:
        if process.returncode is None:
            logger.debug(f"Killing ffmpeg process {process.pid}")
            process.kill()
            await process.wait()
        if isinstance(e, asyncio.TimeoutError):
            raise MaterializeError(f"ffmpeg timed out after {timeout:.0f}s")
        raise

    return process.returncode, (stderr or b"").decode(errors="replace")


async def _run_to_bytes(
    cmd_for: Callable[[Path], list[str]],
    output_name: str,
    what: str,
    timeout: float | None,
) -> bytes:
    with tempfile.TemporaryDirectory(prefix="chunkflow_") as tmpdir:
        output_path = Path(tmpdir) / output_name
        returncode, stderr = await run_ffmpeg(cmd_for(output_path), timeout=timeout)

        if returncode != 0:
            if "does not contain any stream" in stderr.lower():
                raise MaterializeError(f"No matching stream for {what}")
            raise MaterializeError(f"ffmpeg failed on {what}: {stderr.strip()}")

        if not output_path.exists() or output_path.stat().st_size == 0:
            raise MaterializeError(f"ffmpeg produced no output for {what}")

        return output_path.read_bytes()


async def cut_window(source: Path, window: ChunkWindow, timeout: float | None = None) -> bytes:
    """Cut one window out of a media file with ffmpeg.

    Args:
        source: Path to the source asset.
        window: Window to cut.
        timeout: Seconds before ffmpeg is killed (None leaves it to the caller).

    Returns:
        The window encoded in the source's container format.

    Raises:
        MaterializeError: If ffmpeg is missing, fails or produces nothing.
    """
    start_time = time.perf_counter()

    data = await _run_to_bytes(
        lambda output_path: _build_ffmpeg_command(source, window, output_path),
        f"chunk_{window.index:03d}{source.suffix.lower()}",
        window.label,
        timeout,
    )

    elapsed = time.perf_counter() - start_time
    logger.debug(f"Materialized {window.label} ({len(data)} bytes) in {elapsed:.2f}s")
    return data


async def extract_audio(
    source: Path,
    window: ChunkWindow,
    sample_rate: int = 16000,
    mono: bool = True,
    timeout: float | None = None,
) -> bytes:
    """Extract one window's audio track as WAV.

    Extracts audio at 16kHz mono by default, which is optimal
    for speech recognition models like Whisper.

    Args:
        source: Path to the input video/audio file.
        window: Window whose audio is extracted.
        sample_rate: Output sample rate in Hz (default: 16000).
        mono: Convert to mono if True (default: True).
        timeout: Seconds before ffmpeg is killed (None leaves it to the caller).

    Returns:
        WAV bytes.

    Raises:
        MaterializeError: If extraction fails or the source has no audio track.
    """
    start_time = time.perf_counter()

    data = await _run_to_bytes(
        lambda output_path: _build_audio_command(source, window, output_path, sample_rate, mono),
        f"audio_{window.index:03d}.wav",
        f"audio of {window.label}",
        timeout,
    )

    elapsed = time.perf_counter() - start_time
    logger.debug(f"Extracted audio of {window.label} ({len(data)} bytes) in {elapsed:.2f}s")
    return data


class FfmpegMaterializer:
    """MediaMaterializer cutting windows from a local file with ffmpeg.

    Args:
        source: Path to the source asset.
    """

    def __init__(self, source: str | Path) -> None:
        self.source = Path(source)

    async def materialize(self, window: ChunkWindow) -> bytes:
        return await cut_window(self.source, window)


class FfmpegAudioExtractor:
    """MediaMaterializer producing the WAV audio of a window.

    Args:
        source: Path to the source asset.
        sample_rate: Output sample rate in Hz.
    """

    def __init__(self, source: str | Path, sample_rate: int = 16000) -> None:
        self.source = Path(source)
        self.sample_rate = sample_rate

    async def materialize(self, window: ChunkWindow) -> bytes:
        return await extract_audio(self.source, window, sample_rate=self.sample_rate)


class WholeFileMaterializer:
    """MediaMaterializer for an asset that fits in a single window."""

    def __init__(self, source: str | Path) -> None:
        self.source = Path(source)

    async def materialize(self, window: ChunkWindow) -> bytes:
        try:
            return await run_blocking(self.source.read_bytes)
        except OSError as e:
            raise MaterializeError(f"Failed to read {self.source}: {e}") from e
