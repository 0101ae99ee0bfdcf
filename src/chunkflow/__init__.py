"""chunkflow: Split large media into bounded chunks and process them in stages."""

from chunkflow.config import ChunkingOptions, PipelineConfig, TranscriptionOptions
from chunkflow.models.schema import (
    Chunk,
    ChunkPlan,
    ChunkStatus,
    ChunkWindow,
    ExtractedFrame,
    JobOutcome,
    JobResult,
    MergedTranscript,
    Slide,
    SourceAsset,
    TranscriptGap,
    TranscriptSegment,
    WorkflowSnapshot,
)
from chunkflow.pipeline import CancellationToken, Pipeline, PipelineCancelled, PipelineError
from chunkflow.slides import SlideDeck, SlideDeckError
from chunkflow.stages.frames import FrameExtractionError, FrameExtractionMapper, FrameLibrary
from chunkflow.stages.ingest import ProbeError
from chunkflow.stages.materialize import MaterializeError
from chunkflow.stages.plan import needs_chunking, plan_chunks
from chunkflow.stages.transcribe import MergeError, TranscriptionError, merge_segments
from chunkflow.stages.upload import ChunkUploader, UploadError
from chunkflow.store.persistence import PersistenceError
from chunkflow.workflow import ProgressRegistry, Workflow, WorkflowError

__version__ = "0.1.0"

__all__ = [
    "Pipeline",
    "PipelineConfig",
    "ChunkingOptions",
    "TranscriptionOptions",
    "CancellationToken",
    "ProgressRegistry",
    "Workflow",
    "SlideDeck",
    "FrameLibrary",
    "FrameExtractionMapper",
    "ChunkUploader",
    "needs_chunking",
    "plan_chunks",
    "merge_segments",
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
    "WorkflowSnapshot",
    "JobOutcome",
    "JobResult",
    "ProbeError",
    "MaterializeError",
    "UploadError",
    "TranscriptionError",
    "MergeError",
    "FrameExtractionError",
    "PersistenceError",
    "SlideDeckError",
    "WorkflowError",
    "PipelineError",
    "PipelineCancelled",
    "__version__",
]
