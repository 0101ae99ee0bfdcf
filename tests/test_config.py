"""Tests for configuration and environment fallbacks."""

from __future__ import annotations

import os

import pytest
from pydantic import ValidationError

from chunkflow.config import MB, ChunkingOptions, PipelineConfig, TranscriptionOptions, WhisperModel


class TestChunkingOptions:
    """Tests for ChunkingOptions."""

    def test_defaults(self) -> None:
        """Defaults should match the documented limits."""
        opts = ChunkingOptions()
        assert opts.max_chunk_bytes == 20 * MB
        assert (opts.min_chunk_duration, opts.max_chunk_duration) == (30.0, 300.0)
        assert opts.max_asset_bytes == 20 * MB
        assert opts.max_asset_duration == 300.0
        assert opts.assumed_bytes_per_second == 500 * 1024

    def test_min_above_max_rejected(self) -> None:
        """A minimum duration above the maximum should fail validation."""
        with pytest.raises(ValidationError, match="must not exceed"):
            ChunkingOptions(min_chunk_duration=120, max_chunk_duration=60)

    def test_non_positive_size_rejected(self) -> None:
        """A zero chunk size should fail validation."""
        with pytest.raises(ValidationError):
            ChunkingOptions(max_chunk_bytes=0)


class TestPipelineConfig:
    """Tests for PipelineConfig getters."""

    def test_transcription_defaults(self) -> None:
        """Transcription should default to the small model and a 24MB limit."""
        opts = TranscriptionOptions()
        assert opts.whisper_model == WhisperModel.SMALL
        assert opts.max_bytes == 24 * MB

    def test_output_dir_from_env(self, clean_env) -> None:
        """CHUNKFLOW_OUTPUT_DIR should be used when no directory is configured."""
        assert PipelineConfig().get_output_dir() == "./chunkflow_output"
        os.environ["CHUNKFLOW_OUTPUT_DIR"] = "/tmp/chunks"
        assert PipelineConfig().get_output_dir() == "/tmp/chunks"
        assert PipelineConfig(output_dir="/data").get_output_dir() == "/data"

    def test_call_timeout_default(self, clean_env) -> None:
        """The per-call timeout should default to 45 seconds."""
        assert PipelineConfig().get_call_timeout() == 45.0

    def test_call_timeout_from_env(self, clean_env) -> None:
        """CHUNKFLOW_CALL_TIMEOUT should override the default."""
        os.environ["CHUNKFLOW_CALL_TIMEOUT"] = "90"
        assert PipelineConfig().get_call_timeout() == 90.0
        assert PipelineConfig(call_timeout=10).get_call_timeout() == 10.0

    @pytest.mark.parametrize("raw", ["soon", "0", "-3"])
    def test_call_timeout_env_invalid(self, clean_env, raw: str) -> None:
        """A malformed or non-positive environment timeout should raise ValueError."""
        os.environ["CHUNKFLOW_CALL_TIMEOUT"] = raw
        with pytest.raises(ValueError, match="CHUNKFLOW_CALL_TIMEOUT"):
            PipelineConfig().get_call_timeout()

    def test_call_timeout_bounds(self) -> None:
        """Configured timeouts outside 1-600 seconds should fail validation."""
        with pytest.raises(ValidationError):
            PipelineConfig(call_timeout=0.5)
        with pytest.raises(ValidationError):
            PipelineConfig(call_timeout=601)

    def test_explicit_device(self) -> None:
        """An explicit device should bypass detection."""
        assert PipelineConfig(device="cpu").get_device() == "cpu"
