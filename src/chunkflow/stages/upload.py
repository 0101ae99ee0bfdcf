"""Upload stage: materializing chunks and storing their bytes.

Chunks are handled strictly one after another, and a chunk's bytes are
dropped as soon as they are stored, so at most one chunk is held in memory.
Each external call gets one automatic retry on a transient failure; after
that the chunk is marked failed and the next chunk is processed.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from chunkflow.models.schema import Chunk, ChunkStatus
from chunkflow.stages.materialize import MaterializeError, MediaMaterializer
from chunkflow.store.blob import BlobStore
from chunkflow.utils.retry import CallTimeoutError, call_with_retry

logger = logging.getLogger(__name__)

# (aggregate_percent, message)
StageProgress = Callable[[float, str], None]


class UploadError(Exception):
    """Storing a chunk's bytes failed."""

    pass


def chunk_storage_path(project_id: str, asset_id: str, index: int, suffix: str) -> str:
    """Deterministic blob path for a chunk, e.g. projects/p/chunks/a/chunk_002.mp4."""
    return f"projects/{project_id}/chunks/{asset_id}/chunk_{index:03d}{suffix}"


def audio_storage_path(project_id: str, asset_id: str, index: int) -> str:
    """Blob path for a chunk's extracted audio, e.g. projects/p/audio/a/chunk_002.wav."""
    return f"projects/{project_id}/audio/{asset_id}/chunk_{index:03d}.wav"


def aggregate_progress(completed: int, current_progress: float, total: int) -> float:
    """Stage progress across chunks as a percentage.

    Args:
        completed: Chunks already finished (successfully or not).
        current_progress: Progress of the chunk in flight, 0-100.
        total: Number of chunks in the stage.
    """
    if total <= 0:
        return 100.0
    current = min(100.0, max(0.0, current_progress))
    return min(100.0, (completed + current / 100.0) / total * 100.0)


class ChunkUploader:
    """Uploads chunks to a BlobStore with timeout and retry.

    Args:
        store: Where chunk bytes are written.
        project_id: Project the asset belongs to.
        asset_id: Asset the chunks are cut from.
        suffix: File extension for stored chunks.
        timeout: Seconds allowed per external call.
        attempts: Attempts per call (2 = one retry).
        on_chunk_progress: Called with (chunk_index, percent) while bytes move.
    """

    def __init__(
        self,
        store: BlobStore,
        project_id: str,
        asset_id: str,
        suffix: str = "",
        timeout: float = 45.0,
        attempts: int = 2,
        on_chunk_progress: Callable[[int, float], None] | None = None,
    ) -> None:
        self.store = store
        self.project_id = project_id
        self.asset_id = asset_id
        self.suffix = suffix
        self.timeout = timeout
        self.attempts = attempts
        self.on_chunk_progress = on_chunk_progress

    def storage_path(self, chunk: Chunk) -> str:
        return chunk_storage_path(self.project_id, self.asset_id, chunk.index, self.suffix)

    def _report(self, chunk: Chunk, percent: float) -> None:
        if self.on_chunk_progress is not None:
            self.on_chunk_progress(chunk.index, percent)

    async def upload_chunk(self, chunk: Chunk, data: bytes) -> str:
        """Store one chunk's bytes.

        The chunk moves to UPLOADING, then to UPLOADED with its storage_ref
        set, or to FAILED after the retry is used up.

        Args:
            chunk: Chunk to upload (PENDING or MATERIALIZING).
            data: The chunk's bytes.

        Returns:
            Storage reference.

        Raises:
            UploadError: If the upload failed on every attempt.
        """
        if chunk.status == ChunkStatus.PENDING:
            chunk.transition(ChunkStatus.MATERIALIZING)
        chunk.transition(ChunkStatus.UPLOADING)
        chunk.size_bytes = len(data)
        path = self.storage_path(chunk)

        def on_bytes(written: int, total: int) -> None:
            self._report(chunk, 100.0 if total == 0 else written / total * 100.0)

        async def attempt() -> str:
            chunk.attempts += 1
            self._report(chunk, 0.0)
            try:
                return await self.store.put(path, data, progress=on_bytes)
            except UploadError:
                raise
            except Exception as e:
                raise UploadError(f"Failed to store {path}: {e}") from e

        start_time = time.perf_counter()
        try:
            ref = await call_with_retry(
                attempt,
                label=f"Upload of chunk {chunk.index}",
                timeout=self.timeout,
                attempts=self.attempts,
                retry_on=(UploadError,),
            )
        except (UploadError, CallTimeoutError) as e:
            chunk.transition(ChunkStatus.FAILED, error=str(e))
            raise UploadError(str(e)) from e

        chunk.storage_ref = ref
        chunk.transition(ChunkStatus.UPLOADED)
        self._report(chunk, 100.0)

        elapsed = time.perf_counter() - start_time
        logger.debug(f"Uploaded chunk {chunk.index} ({len(data)} bytes) in {elapsed:.2f}s")
        return ref

    async def materialize_chunk(self, chunk: Chunk, materializer: MediaMaterializer) -> bytes | None:
        """Produce a chunk's bytes, marking the chunk failed if that is impossible.

        A MaterializeError is not retried; a timeout is. Any other error from
        the materializer counts as a MaterializeError.

        Returns:
            The bytes, or None if the chunk failed.
        """
        chunk.transition(ChunkStatus.MATERIALIZING)

        async def attempt() -> bytes:
            chunk.attempts += 1
            try:
                return await materializer.materialize(chunk.window)
            except MaterializeError:
                raise
            except Exception as e:
                raise MaterializeError(f"{type(e).__name__}: {e}") from e

        try:
            return await call_with_retry(
                attempt,
                label=f"Materialize of chunk {chunk.index}",
                timeout=self.timeout,
                attempts=self.attempts,
            )
        except (MaterializeError, CallTimeoutError) as e:
            logger.warning(f"Chunk {chunk.index} could not be materialized: {e}")
            chunk.transition(ChunkStatus.FAILED, error=str(e))
            return None

    async def process_chunk(self, chunk: Chunk, materializer: MediaMaterializer) -> str | None:
        """Materialize then upload one chunk.

        Returns:
            Storage reference, or None if the chunk failed.
        """
        data = await self.materialize_chunk(chunk, materializer)
        if data is None:
            return None

        try:
            return await self.upload_chunk(chunk, data)
        except UploadError as e:
            logger.warning(f"Chunk {chunk.index} failed to upload: {e}")
            return None
        finally:
            del data

    async def upload_audio(self, chunk: Chunk, extractor: MediaMaterializer) -> str | None:
        """Extract and store an uploaded chunk's audio track for transcription.

        A failure here is not fatal for the chunk: it stays UPLOADED and the
        chunk itself is transcribed instead.

        Returns:
            Storage reference of the audio, or None if it could not be produced.
        """
        path = audio_storage_path(self.project_id, self.asset_id, chunk.index)

        async def extract() -> bytes:
            chunk.attempts += 1
            try:
                return await extractor.materialize(chunk.window)
            except MaterializeError:
                raise
            except Exception as e:
                raise MaterializeError(f"{type(e).__name__}: {e}") from e

        async def store(data: bytes) -> str:
            try:
                return await self.store.put(path, data)
            except UploadError:
                raise
            except Exception as e:
                raise UploadError(f"Failed to store {path}: {e}") from e

        start_time = time.perf_counter()
        try:
            data = await call_with_retry(
                extract,
                label=f"Audio extraction of chunk {chunk.index}",
                timeout=self.timeout,
                attempts=self.attempts,
            )
            ref = await call_with_retry(
                lambda: store(data),
                label=f"Upload of audio for chunk {chunk.index}",
                timeout=self.timeout,
                attempts=self.attempts,
                retry_on=(UploadError,),
            )
        except (MaterializeError, UploadError, CallTimeoutError) as e:
            logger.warning(f"No separate audio for chunk {chunk.index}, sending the chunk itself: {e}")
            return None

        chunk.audio_ref = ref
        chunk.audio_size_bytes = len(data)

        elapsed = time.perf_counter() - start_time
        logger.debug(f"Stored audio of chunk {chunk.index} ({len(data)} bytes) in {elapsed:.2f}s")
        return ref

    async def upload_all(
        self,
        chunks: Sequence[Chunk],
        materializer: MediaMaterializer,
        progress: StageProgress | None = None,
    ) -> list[Chunk]:
        """Materialize and upload every pending chunk, one at a time.

        Failed chunks do not stop the loop. Chunks that are not pending
        (for example completed by an earlier run) count as done.

        Args:
            chunks: Chunks in plan order.
            materializer: Source of the chunks' bytes.
            progress: Receives the stage aggregate and a status message.

        Returns:
            The chunks, with updated statuses.
        """
        total = len(chunks)
        completed = 0
        original_callback = self.on_chunk_progress

        def on_chunk(index: int, percent: float) -> None:
            if original_callback is not None:
                original_callback(index, percent)
            if progress is not None:
                progress(
                    aggregate_progress(completed, percent, total),
                    f"Uploading part {index + 1} of {total} ({percent:.0f}%)",
                )

        self.on_chunk_progress = on_chunk
        try:
            for chunk in chunks:
                if chunk.status == ChunkStatus.PENDING:
                    await self.process_chunk(chunk, materializer)
                completed += 1
                if progress is not None:
                    progress(aggregate_progress(completed, 0.0, total), f"Processed {completed} of {total} parts")
        finally:
            self.on_chunk_progress = original_callback

        failed = sum(1 for c in chunks if c.status == ChunkStatus.FAILED)
        logger.info(f"Upload finished: {total - failed} of {total} chunks stored")
        return list(chunks)
