"""Processing stages for the chunkflow pipeline.

Each stage handles a specific part of the job:
- ingest: File validation and probing
- plan: Size/duration gate and chunk planning
- materialize: Cutting a planned window into bytes
- upload: Storing chunk bytes with retry
- transcribe: Per-chunk transcription and result merging
- frames: Timestamp-to-frame mapping and the frame library
"""

__all__ = [
    "ingest",
    "plan",
    "materialize",
    "upload",
    "transcribe",
    "frames",
]
