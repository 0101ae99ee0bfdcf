"""Pydantic models defining the chunkflow data schema.

Everything a pipeline run produces or an observer receives is one of these
models. Value objects are frozen; the only mutable model is ``Chunk``, whose
status moves forward through ``Chunk.transition`` as the uploader and the
transcription submitter work on it.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_clock(seconds: float) -> str:
    """Format seconds as MM:SS (or H:MM:SS past an hour)."""
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    if hours:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


class SourceAsset(BaseModel):
    """A probed audio/video asset. Immutable once probed."""

    model_config = ConfigDict(frozen=True)

    asset_id: str = Field(..., description="Stable identifier derived from the file content")
    path: str = Field(..., description="Location of the source bytes")
    size_bytes: int = Field(..., ge=0, description="Size of the asset in bytes")
    duration: float | None = Field(
        default=None, description="Duration in seconds, None if it could not be measured"
    )
    content_type: str = Field(default="application/octet-stream", description="MIME type tag")
    has_video: bool = Field(default=True, description="Whether the asset has a video track")
    has_audio: bool = Field(default=True, description="Whether the asset has an audio track")
    duration_estimated: bool = Field(
        default=False, description="True when duration was estimated from size"
    )

    @property
    def suffix(self) -> str:
        """File extension of the source, including the dot."""
        return Path(self.path).suffix.lower()


class ChunkWindow(BaseModel):
    """A contiguous time window of the asset."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0, description="Position of the window in the plan (0-based)")
    start_time: float = Field(..., ge=0, description="Start time in seconds (inclusive)")
    end_time: float = Field(..., ge=0, description="End time in seconds (exclusive)")

    @property
    def duration(self) -> float:
        """Length of the window in seconds."""
        return self.end_time - self.start_time

    @property
    def label(self) -> str:
        """Human readable label, e.g. 'Part 2 (01:00 to 02:00)'."""
        return f"Part {self.index + 1} ({format_clock(self.start_time)} to {format_clock(self.end_time)})"


class ChunkPlan(BaseModel):
    """Ordered windows covering [0, total_duration) with no gaps or overlaps."""

    model_config = ConfigDict(frozen=True)

    windows: tuple[ChunkWindow, ...] = Field(..., min_length=1)
    total_duration: float = Field(..., gt=0, description="Duration covered by the plan")
    chunk_duration: float = Field(..., gt=0, description="Ideal window length the plan was built with")
    estimated: bool = Field(
        default=False, description="True when the duration was estimated from size"
    )

    @property
    def count(self) -> int:
        """Number of windows in the plan."""
        return len(self.windows)

    @property
    def is_chunked(self) -> bool:
        """True when the plan splits the asset into more than one window."""
        return len(self.windows) > 1


class ChunkStatus(str, Enum):
    """Lifecycle of a chunk."""

    PENDING = "pending"
    MATERIALIZING = "materializing"
    UPLOADING = "uploading"
    UPLOADED = "uploaded"
    TRANSCRIBING = "transcribing"
    COMPLETE = "complete"
    FAILED = "failed"


# Allowed forward moves. A chunk whose upload succeeded but which is not sent
# for transcription (frames-only runs) may go straight to COMPLETE.
_CHUNK_TRANSITIONS: dict[ChunkStatus, frozenset[ChunkStatus]] = {
    ChunkStatus.PENDING: frozenset({ChunkStatus.MATERIALIZING, ChunkStatus.FAILED}),
    ChunkStatus.MATERIALIZING: frozenset({ChunkStatus.UPLOADING, ChunkStatus.FAILED}),
    ChunkStatus.UPLOADING: frozenset({ChunkStatus.UPLOADED, ChunkStatus.FAILED}),
    ChunkStatus.UPLOADED: frozenset(
        {ChunkStatus.TRANSCRIBING, ChunkStatus.COMPLETE, ChunkStatus.FAILED}
    ),
    ChunkStatus.TRANSCRIBING: frozenset({ChunkStatus.COMPLETE, ChunkStatus.FAILED}),
    ChunkStatus.COMPLETE: frozenset(),
    ChunkStatus.FAILED: frozenset(),
}


class ChunkStateError(Exception):
    """Illegal chunk status transition."""

    pass


class Chunk(BaseModel):
    """A window of the asset together with its upload/transcription state."""

    window: ChunkWindow
    status: ChunkStatus = Field(default=ChunkStatus.PENDING)
    storage_ref: str | None = Field(default=None, description="Reference returned by the blob store")
    error: str | None = Field(default=None, description="Last error for a failed chunk")
    attempts: int = Field(default=0, ge=0, description="External calls made for this chunk")
    size_bytes: int | None = Field(default=None, ge=0, description="Materialized size in bytes")
    audio_ref: str | None = Field(
        default=None, description="Stored audio track of the chunk, sent for transcription instead"
    )
    audio_size_bytes: int | None = Field(default=None, ge=0, description="Size of the stored audio")

    @property
    def index(self) -> int:
        return self.window.index

    @property
    def is_terminal(self) -> bool:
        return self.status in (ChunkStatus.COMPLETE, ChunkStatus.FAILED)

    def transition(self, status: ChunkStatus, error: str | None = None) -> None:
        """Move the chunk to a new status.

        Args:
            status: Target status.
            error: Error message, recorded when moving to FAILED.

        Raises:
            ChunkStateError: If the move is not allowed from the current status.
        """
        if status not in _CHUNK_TRANSITIONS[self.status]:
            raise ChunkStateError(
                f"Chunk {self.index}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status
        if status == ChunkStatus.FAILED:
            self.error = error or "unknown error"


class TranscriptSegment(BaseModel):
    """Transcript of one chunk, positioned by chunk index."""

    model_config = ConfigDict(frozen=True)

    chunk_index: int = Field(..., ge=0)
    text: str = Field(default="")
    start_time: float = Field(..., ge=0)
    end_time: float = Field(..., ge=0)


class TranscriptGap(BaseModel):
    """Explicit marker for a chunk that produced no transcript."""

    model_config = ConfigDict(frozen=True)

    chunk_index: int = Field(..., ge=0)
    start_time: float = Field(..., ge=0)
    end_time: float = Field(..., ge=0)
    reason: str = Field(default="not transcribed")


class MergedTranscript(BaseModel):
    """Ordered transcript parts with gaps where chunks failed."""

    model_config = ConfigDict(frozen=True)

    parts: tuple[TranscriptSegment | TranscriptGap, ...] = Field(default=())
    text: str = Field(default="", description="Rendered transcript with per-part time offsets")
    total_chunks: int = Field(..., ge=0)
    succeeded_chunks: int = Field(..., ge=0)

    @property
    def failed_chunks(self) -> int:
        return self.total_chunks - self.succeeded_chunks

    @property
    def is_partial(self) -> bool:
        return 0 < self.succeeded_chunks < self.total_chunks

    @property
    def gaps(self) -> list[TranscriptGap]:
        return [p for p in self.parts if isinstance(p, TranscriptGap)]

    def to_markdown(self, title: str = "Untitled Project") -> str:
        """Render the transcript with a heading per part.

        Args:
            title: Project title used in the headings.

        Returns:
            Markdown document, failed parts carrying an error note.
        """
        lines = [f"# {title} Transcription"]
        for part in self.parts:
            heading = (
                f"## {title} - Part {part.chunk_index + 1} "
                f"({format_clock(part.start_time)} to {format_clock(part.end_time)})"
            )
            if isinstance(part, TranscriptSegment):
                body = part.text
            else:
                body = f"[Error transcribing this segment: {part.reason}]"
            lines.extend(["", heading, "", body])
        return "\n".join(lines)


class ExtractedFrame(BaseModel):
    """A still image taken from the asset at a timestamp."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Unique frame identifier")
    timestamp: float = Field(..., ge=0, description="Position in the asset, in seconds")
    image_ref: str = Field(..., description="Blob store reference of the image")


class Slide(BaseModel):
    """A presentation unit. Edits produce new instances."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    content: str = ""
    timestamp: str | None = Field(default=None, description="Timestamp the slide refers to")
    image_refs: tuple[str, ...] = Field(default=())
    transcript_timestamps: tuple[str, ...] = Field(default=())


class OperationStatus(str, Enum):
    """Lifecycle of a workflow step."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class Operation(BaseModel):
    """One weighted step of a workflow."""

    model_config = ConfigDict(frozen=True)

    id: str
    label: str
    weight: float = Field(default=1.0, gt=0)
    status: OperationStatus = Field(default=OperationStatus.PENDING)
    progress: float = Field(default=0.0, ge=0, le=100)
    message: str = Field(default="")
    hard_fail: bool = Field(
        default=True, description="A failure of this step fails the whole workflow"
    )
    partial: bool = Field(
        default=False, description="Step succeeded but only for part of its input"
    )
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in (OperationStatus.SUCCEEDED, OperationStatus.FAILED)


class WorkflowStatus(str, Enum):
    """Aggregate status of a workflow."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    FAILED = "failed"


class WorkflowSnapshot(BaseModel):
    """Immutable view of a workflow handed to observers."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    label: str
    steps: tuple[Operation, ...]
    progress: float = Field(..., ge=0, le=100)
    status: WorkflowStatus
    summary: str = ""
    created_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            WorkflowStatus.SUCCEEDED,
            WorkflowStatus.PARTIALLY_SUCCEEDED,
            WorkflowStatus.FAILED,
        )

    @property
    def current_step(self) -> Operation | None:
        """The first running step, or None."""
        for step in self.steps:
            if step.status == OperationStatus.RUNNING:
                return step
        return None


class ProgressEvent(BaseModel):
    """A single progress change published on the event channel."""

    model_config = ConfigDict(frozen=True)

    workflow_id: str
    operation_id: str
    progress: float = Field(..., ge=0, le=100)
    message: str = ""
    status: OperationStatus


class JobOutcome(str, Enum):
    """User-visible result of a pipeline run."""

    SUCCEEDED = "succeeded"
    PARTIALLY_SUCCEEDED = "partially_succeeded"
    FAILED = "failed"


class JobResult(BaseModel):
    """The complete output of Pipeline.process()."""

    asset: SourceAsset
    plan: ChunkPlan
    chunks: list[Chunk] = Field(default_factory=list)
    transcript: MergedTranscript | None = None
    frames: list[ExtractedFrame] = Field(default_factory=list)
    outcome: JobOutcome
    summary: str = ""
    snapshot: WorkflowSnapshot | None = None

    def to_dict(self) -> dict:
        """Export to dictionary format."""
        return self.model_dump(mode="json")

    def to_json(self, path: str | Path | None = None, indent: int = 2) -> str:
        """Export to JSON string, optionally writing to a file.

        Args:
            path: Optional file path to write JSON to.
            indent: JSON indentation level.

        Returns:
            JSON string representation.
        """
        json_str = self.model_dump_json(indent=indent)
        if path is not None:
            Path(path).write_text(json_str)
        return json_str
