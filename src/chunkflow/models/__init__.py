"""Data models for chunkflow."""

from chunkflow.models.schema import (
    Chunk,
    ChunkPlan,
    ChunkStatus,
    ChunkWindow,
    ExtractedFrame,
    JobOutcome,
    JobResult,
    MergedTranscript,
    Operation,
    ProgressEvent,
    Slide,
    SourceAsset,
    TranscriptGap,
    TranscriptSegment,
    WorkflowSnapshot,
)

__all__ = [
    "SourceAsset",
    "ChunkWindow",
    "ChunkPlan",
    "Chunk",
    "ChunkStatus",
    "TranscriptSegment",
    "TranscriptGap",
    "MergedTranscript",
    "ExtractedFrame",
    "Slide",
    "Operation",
    "ProgressEvent",
    "WorkflowSnapshot",
    "JobOutcome",
    "JobResult",
]
