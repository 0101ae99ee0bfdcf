"""Configuration and settings for chunkflow pipelines."""

from __future__ import annotations

import os
from enum import Enum

from pydantic import BaseModel, Field, model_validator

from chunkflow.utils.hardware import detect_device

MB = 1024 * 1024


class WhisperModel(str, Enum):
    """Available Whisper model sizes for local transcription."""

    TINY = "tiny"
    BASE = "base"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large-v3"


class ChunkingOptions(BaseModel):
    """Limits that decide whether and how an asset is split."""

    max_chunk_bytes: int = Field(
        default=20 * MB, gt=0, description="Target upper bound for a single chunk in bytes"
    )
    min_chunk_duration: float = Field(
        default=30.0, gt=0, description="Shortest chunk the planner will choose, in seconds"
    )
    max_chunk_duration: float = Field(
        default=300.0, gt=0, description="Longest chunk the planner will choose, in seconds"
    )
    max_asset_bytes: int = Field(
        default=20 * MB, gt=0, description="Assets larger than this are chunked"
    )
    max_asset_duration: float = Field(
        default=300.0, gt=0, description="Assets longer than this are chunked"
    )
    assumed_bytes_per_second: float = Field(
        default=500 * 1024,
        gt=0,
        description="Bitrate assumed when the duration cannot be probed",
    )
    min_estimated_duration: float = Field(
        default=300.0,
        ge=0,
        description="Floor for a duration estimated from file size, in seconds",
    )

    @model_validator(mode="after")
    def _check_duration_bounds(self) -> ChunkingOptions:
        if self.min_chunk_duration > self.max_chunk_duration:
            raise ValueError(
                f"min_chunk_duration ({self.min_chunk_duration}) must not exceed "
                f"max_chunk_duration ({self.max_chunk_duration})"
            )
        return self


class TranscriptionOptions(BaseModel):
    """Options for the transcription stage."""

    whisper_model: WhisperModel = Field(
        default=WhisperModel.SMALL, description="Whisper model size for local transcription"
    )
    language: str | None = Field(default=None, description="Force language (None = auto-detect)")
    max_bytes: int = Field(
        default=24 * MB,
        gt=0,
        description="Largest chunk the transcription service accepts",
    )


class PipelineConfig(BaseModel):
    """Configuration for a chunkflow pipeline."""

    project_id: str = Field(default="default", min_length=1, description="Project the asset belongs to")
    output_dir: str | None = Field(
        default=None,
        description="Directory for job state and local storage. Falls back to CHUNKFLOW_OUTPUT_DIR.",
    )
    call_timeout: float | None = Field(
        default=None,
        ge=1,
        le=600,
        description="Timeout for each external call in seconds. Falls back to CHUNKFLOW_CALL_TIMEOUT.",
    )
    max_attempts: int = Field(
        default=2, ge=1, le=5, description="Attempts per external call (2 = one automatic retry)"
    )
    resume: bool = Field(default=True, description="Skip chunks completed by an earlier run")
    device: str | None = Field(
        default=None,
        description="Transcription device: 'cuda', 'cpu', or None for auto-detect",
    )
    chunking: ChunkingOptions = Field(default_factory=ChunkingOptions, description="Chunking limits")
    transcription: TranscriptionOptions = Field(
        default_factory=TranscriptionOptions, description="Transcription options"
    )

    def get_device(self) -> str:
        """Get the transcription device, auto-detecting if not specified."""
        if self.device is not None:
            return self.device
        return detect_device()

    def get_output_dir(self) -> str:
        """Get the output directory from config or environment."""
        if self.output_dir is not None:
            return self.output_dir
        return os.environ.get("CHUNKFLOW_OUTPUT_DIR", "./chunkflow_output")

    def get_call_timeout(self) -> float:
        """Get the per-call timeout from config or environment.

        Raises:
            ValueError: If CHUNKFLOW_CALL_TIMEOUT is set but not a positive number.
        """
        if self.call_timeout is not None:
            return self.call_timeout

        raw = os.environ.get("CHUNKFLOW_CALL_TIMEOUT")
        if raw is None:
            return 45.0

        try:
            value = float(raw)
        except ValueError:
            raise ValueError(f"CHUNKFLOW_CALL_TIMEOUT must be a number, got {raw!r}")
        if value <= 0:
            raise ValueError(f"CHUNKFLOW_CALL_TIMEOUT must be positive, got {value}")
        return value
