"""Transcription stage: per-chunk submission and result merging.

This stage handles:
- Submitting each uploaded chunk to a transcription service
- Cleaning up the returned text
- Merging per-chunk transcripts back into one, in plan order, with an
  explicit gap wherever a chunk produced nothing

The bundled service runs faster-whisper locally. The model is lazy-loaded
to avoid startup overhead.
"""

from __future__ import annotations

import logging
import re
import tempfile
import time
from collections.abc import Iterable, Mapping
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol

from chunkflow.models.schema import (
    Chunk,
    ChunkPlan,
    ChunkStatus,
    MergedTranscript,
    TranscriptGap,
    TranscriptSegment,
    format_clock,
)
from chunkflow.utils.retry import CallTimeoutError, call_with_retry, run_blocking

if TYPE_CHECKING:
    from faster_whisper import WhisperModel

    from chunkflow.store.blob import BlobStore

logger = logging.getLogger(__name__)

# Lazy-loaded model references
_whisper_model: WhisperModel | None = None
_whisper_model_size: str | None = None
_whisper_device: str | None = None


class TranscriptionError(Exception):
    """The transcription service could not transcribe a chunk."""

    pass


class MergeError(Exception):
    """No chunk produced a transcript, so there is nothing to merge."""

    pass


class TranscriptionService(Protocol):
    """Turns a stored chunk into text."""

    async def transcribe(self, ref: str) -> str: ...


_SPACES = re.compile(r"[ \t\f\v]+")
_EXTRA_BREAKS = re.compile(r"\n{3,}")


def clean_transcript(text: str) -> str:
    """Collapse repeated whitespace, trim every line and the whole text."""
    if not text:
        return ""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    lines = [_SPACES.sub(" ", line).strip() for line in text.split("\n")]
    return _EXTRA_BREAKS.sub("\n\n", "\n".join(lines)).strip()


class TranscriptionSubmitter:
    """Submits uploaded chunks to a TranscriptionService.

    Args:
        service: The transcription service.
        max_bytes: Largest chunk the service accepts.
        timeout: Seconds allowed per call; the floor when the service sets a deadline.
        attempts: Attempts per chunk (2 = one retry).
    """

    def __init__(
        self,
        service: TranscriptionService,
        max_bytes: int = 24 * 1024 * 1024,
        timeout: float = 45.0,
        attempts: int = 2,
    ) -> None:
        self.service = service
        self.max_bytes = max_bytes
        self.timeout = timeout
        self.attempts = attempts

    def timeout_for(self, chunk: Chunk) -> float:
        """Seconds allowed per call for a chunk.

        A service that runs locally can ask for more time through a
        ``deadline(duration)`` method; the configured timeout is the floor.
        """
        deadline = getattr(self.service, "deadline", None)
        if deadline is None:
            return self.timeout
        return max(self.timeout, deadline(chunk.window.duration))

    async def submit_chunk(self, chunk: Chunk) -> TranscriptSegment:
        """Transcribe one uploaded chunk.

        The chunk's extracted audio is sent when there is any, the chunk
        itself otherwise. Media over the size limit is rejected without
        calling the service.

        Args:
            chunk: An UPLOADED chunk with a storage_ref.

        Returns:
            The chunk's transcript, positioned by its window.

        Raises:
            TranscriptionError: If the chunk is rejected or every attempt failed.
                The chunk is marked FAILED in both cases.
        """
        if chunk.status != ChunkStatus.UPLOADED or chunk.storage_ref is None:
            raise TranscriptionError(
                f"Chunk {chunk.index} is {chunk.status.value}, only uploaded chunks can be transcribed"
            )

        if chunk.audio_ref is not None:
            ref, size_bytes = chunk.audio_ref, chunk.audio_size_bytes
        else:
            ref, size_bytes = chunk.storage_ref, chunk.size_bytes

        if size_bytes is not None and size_bytes > self.max_bytes:
            message = (
                f"Chunk {chunk.index} is {size_bytes / (1024 * 1024):.1f}MB, "
                f"over the {self.max_bytes / (1024 * 1024):.0f}MB transcription limit"
            )
            chunk.transition(ChunkStatus.FAILED, error=message)
            raise TranscriptionError(message)

        chunk.transition(ChunkStatus.TRANSCRIBING)

        async def attempt() -> str:
            chunk.attempts += 1
            try:
                return await self.service.transcribe(ref)
            except TranscriptionError:
                raise
            except Exception as e:
                raise TranscriptionError(f"{type(e).__name__}: {e}") from e

        start_time = time.perf_counter()
        try:
            text = await call_with_retry(
                attempt,
                label=f"Transcription of chunk {chunk.index}",
                timeout=self.timeout_for(chunk),
                attempts=self.attempts,
                retry_on=(TranscriptionError,),
            )
        except (TranscriptionError, CallTimeoutError) as e:
            chunk.transition(ChunkStatus.FAILED, error=str(e))
            raise TranscriptionError(str(e)) from e

        chunk.transition(ChunkStatus.COMPLETE)

        elapsed = time.perf_counter() - start_time
        logger.debug(f"Transcribed chunk {chunk.index} in {elapsed:.2f}s")

        return TranscriptSegment(
            chunk_index=chunk.index,
            text=clean_transcript(text),
            start_time=chunk.window.start_time,
            end_time=chunk.window.end_time,
        )


def _render_text(parts: list[TranscriptSegment | TranscriptGap]) -> str:
    blocks = []
    for part in parts:
        if isinstance(part, TranscriptSegment):
            body = part.text
        else:
            body = f"[Error transcribing this segment: {part.reason}]"
        blocks.append(f"[{format_clock(part.start_time)}] {body}".rstrip())
    return "\n\n".join(blocks)


def merge_segments(
    segments: Iterable[TranscriptSegment],
    plan: ChunkPlan,
    errors: Mapping[int, str] | None = None,
) -> MergedTranscript:
    """Combine per-chunk transcripts into one, ordered by chunk index.

    Completion order never matters. Every window without a segment gets a
    TranscriptGap at its position.

    Args:
        segments: Transcripts of the chunks that succeeded, in any order.
        plan: The plan the chunks were cut from.
        errors: Optional reason per failed chunk index, used on the gaps.

    Returns:
        MergedTranscript covering every window of the plan.

    Raises:
        MergeError: If there are no segments at all.
    """
    errors = errors or {}
    by_index: dict[int, TranscriptSegment] = {}

    for segment in sorted(segments, key=lambda s: s.chunk_index):
        if segment.chunk_index >= plan.count:
            logger.warning(f"Ignoring segment for chunk {segment.chunk_index}, plan has {plan.count} windows")
            continue
        if segment.chunk_index in by_index:
            logger.warning(f"Duplicate segment for chunk {segment.chunk_index}, keeping the first")
            continue
        by_index[segment.chunk_index] = segment

    if not by_index:
        raise MergeError(f"No transcript was produced for any of the {plan.count} chunks")

    parts: list[TranscriptSegment | TranscriptGap] = []
    for window in plan.windows:
        segment = by_index.get(window.index)
        if segment is not None:
            parts.append(segment)
        else:
            parts.append(
                TranscriptGap(
                    chunk_index=window.index,
                    start_time=window.start_time,
                    end_time=window.end_time,
                    reason=errors.get(window.index, "not transcribed"),
                )
            )

    merged = MergedTranscript(
        parts=tuple(parts),
        text=_render_text(parts),
        total_chunks=plan.count,
        succeeded_chunks=len(by_index),
    )

    if merged.is_partial:
        logger.warning(
            f"Transcript is partial: {merged.succeeded_chunks} of {merged.total_chunks} chunks"
        )
    return merged


def _get_compute_type(device: str) -> str:
    """Get the appropriate compute type for the device."""
    if device == "cuda":
        return "float16"
    return "int8"


def _load_whisper_model(model_size: str = "small", device: str = "cpu") -> WhisperModel:
    """Lazy-load the Whisper model.

    Args:
        model_size: Model size (tiny, base, small, medium, large-v3).
        device: Compute device.

    Returns:
        Loaded WhisperModel instance.
    """
    global _whisper_model, _whisper_model_size, _whisper_device

    if (
        _whisper_model is not None
        and _whisper_model_size == model_size
        and _whisper_device == device
    ):
        return _whisper_model

    start_time = time.perf_counter()
    logger.info(f"Loading Whisper model '{model_size}' on {device}...")

    try:
        from faster_whisper import WhisperModel
    except ImportError as e:
        raise TranscriptionError(
            f"Failed to import faster-whisper: {e}\n"
            "Install with: pip install 'chunkflow[whisper]'"
        )

    compute_type = _get_compute_type(device)
    fw_device = "cuda" if device == "cuda" else "cpu"

    try:
        _whisper_model = WhisperModel(model_size, device=fw_device, compute_type=compute_type)
    except Exception as e:
        raise TranscriptionError(f"Failed to load Whisper model: {e}") from e

    _whisper_model_size = model_size
    _whisper_device = device

    elapsed = time.perf_counter() - start_time
    logger.info(
        f"Whisper model loaded in {elapsed:.2f}s "
        f"(size={model_size}, device={fw_device}, compute_type={compute_type})"
    )
    return _whisper_model


def transcribe_file(
    audio_path: Path,
    model_size: str = "small",
    device: str = "cpu",
    language: str | None = None,
) -> str:
    """Transcribe a media file to plain text with faster-whisper.

    Raises:
        TranscriptionError: If the model cannot be loaded or decoding fails.
    """
    model = _load_whisper_model(model_size, device)
    start_time = time.perf_counter()

    try:
        segments_iter, info = model.transcribe(
            str(audio_path),
            language=language,
            vad_filter=True,  # Filter out non-speech
            vad_parameters=dict(min_silence_duration_ms=500),
        )
        text = " ".join(segment.text.strip() for segment in segments_iter)
    except Exception as e:
        raise TranscriptionError(f"Transcription failed for {audio_path.name}: {e}") from e

    elapsed = time.perf_counter() - start_time
    duration = getattr(info, "duration", 0) or 0
    rtf = elapsed / duration if duration > 0 else 0
    logger.info(f"Transcribed {audio_path.name} in {elapsed:.2f}s (RTF: {rtf:.2f}x)")
    return text


class WhisperTranscriptionService:
    """TranscriptionService running faster-whisper on chunks read from a BlobStore.

    Local decoding is slow on CPU, so the service asks the submitter for a
    deadline scaled to the window duration instead of the per-call timeout.

    Args:
        store: BlobStore holding the chunks.
        model_size: Whisper model size.
        device: Compute device ('cuda' or 'cpu').
        language: Force language (None for auto-detect).
        load_allowance: Seconds allowed on top of decoding, for loading the model.
        realtime_factor: Decoding seconds allowed per second of media (default:
            3.0 on CPU, 1.0 on CUDA).
    """

    def __init__(
        self,
        store: BlobStore,
        model_size: str = "small",
        device: str = "cpu",
        language: str | None = None,
        load_allowance: float = 120.0,
        realtime_factor: float | None = None,
    ) -> None:
        self.store = store
        self.model_size = model_size
        self.device = device
        self.language = language
        self.load_allowance = load_allowance
        if realtime_factor is None:
            realtime_factor = 1.0 if device == "cuda" else 3.0
        self.realtime_factor = realtime_factor

    def deadline(self, duration: float) -> float:
        """Seconds allowed to transcribe a window of the given duration."""
        return self.load_allowance + duration * self.realtime_factor

    async def transcribe(self, ref: str) -> str:
        try:
            data = await self.store.get(ref)
        except (OSError, ValueError) as e:
            raise TranscriptionError(f"Could not read chunk {ref}: {e}") from e

        suffix = PurePosixPath(ref).suffix
        with tempfile.TemporaryDirectory(prefix="chunkflow_") as tmpdir:
            chunk_path = Path(tmpdir) / f"chunk{suffix}"
            chunk_path.write_bytes(data)
            del data
            # The directory must outlive the worker thread, even on timeout
            return await run_blocking(
                transcribe_file, chunk_path, self.model_size, self.device, self.language
            )
