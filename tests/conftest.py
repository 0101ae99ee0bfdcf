"""Pytest configuration and fixtures for chunkflow tests."""

from __future__ import annotations

import asyncio
import os
import tempfile
from collections import Counter
from pathlib import Path

import pytest

from chunkflow.models.schema import ChunkWindow, ExtractedFrame, Slide
from chunkflow.stages.frames import FrameExtractionError
from chunkflow.stages.ingest import ProbeError, ProbeResult
from chunkflow.stages.materialize import MaterializeError
from chunkflow.stages.transcribe import TranscriptionError
from chunkflow.stages.upload import UploadError
from chunkflow.store.persistence import PersistenceError


class FakeProbe:
    """MediaProbe returning a fixed result, or failing."""

    def __init__(self, duration: float | None = 125.0, has_video: bool = True, fail: bool = False) -> None:
        self.duration = duration
        self.has_video = has_video
        self.fail = fail
        self.error: Exception | None = None
        self.calls = 0

    async def probe(self, source: Path) -> ProbeResult:
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.fail:
            raise ProbeError("ffprobe failed: moov atom not found")
        return ProbeResult(
            duration=self.duration,
            format_name="mov",
            has_video=self.has_video,
            has_audio=True,
        )


class FakeMaterializer:
    """MediaMaterializer producing a fixed number of bytes per window."""

    def __init__(self, size: int = 1024) -> None:
        self.size = size
        self.fail_indices: set[int] = set()
        self.errors: dict[int, Exception] = {}
        self.delays: dict[int, float] = {}
        self.calls: list[int] = []

    async def materialize(self, window: ChunkWindow) -> bytes:
        self.calls.append(window.index)
        if window.index in self.delays:
            await asyncio.sleep(self.delays[window.index])
        if window.index in self.errors:
            raise self.errors[window.index]
        if window.index in self.fail_indices:
            raise MaterializeError(f"cannot cut window {window.index}")
        return bytes([window.index % 256]) * self.size


class FakeAudioExtractor:
    """MediaMaterializer standing in for ffmpeg audio extraction."""

    def __init__(self, size: int = 256) -> None:
        self.size = size
        self.fail_indices: set[int] = set()
        self.calls: list[int] = []

    async def materialize(self, window: ChunkWindow) -> bytes:
        self.calls.append(window.index)
        if window.index in self.fail_indices:
            raise MaterializeError(f"No matching stream for audio of window {window.index}")
        return b"RIFF" + bytes(self.size - 4)


class MemoryBlobStore:
    """BlobStore keeping blobs in a dict, with injectable failures per path."""

    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.failures: Counter[str] = Counter()
        self.put_calls: list[str] = []

    def fail_path(self, fragment: str, times: int) -> None:
        """Fail puts whose path contains fragment, the given number of times."""
        self.failures[fragment] = times

    async def put(self, path: str, data: bytes, progress=None) -> str:
        self.put_calls.append(path)
        for fragment, remaining in self.failures.items():
            if fragment in path and remaining > 0:
                self.failures[fragment] -= 1
                raise UploadError(f"connection reset while storing {path}")
        half = len(data) // 2
        if progress is not None:
            progress(half, len(data))
            progress(len(data), len(data))
        self.blobs[path] = bytes(data)
        return path

    async def get(self, ref: str) -> bytes:
        if ref not in self.blobs:
            raise FileNotFoundError(f"Blob not found: {ref}")
        return self.blobs[ref]


class FakeTranscriptionService:
    """TranscriptionService returning canned text per storage ref."""

    def __init__(self) -> None:
        self.failures: Counter[str] = Counter()
        self.delays: dict[str, float] = {}
        self.calls: list[str] = []

    def fail_ref(self, fragment: str, times: int) -> None:
        self.failures[fragment] = times

    async def transcribe(self, ref: str) -> str:
        self.calls.append(ref)
        for fragment, delay in self.delays.items():
            if fragment in ref:
                await asyncio.sleep(delay)
        for fragment, remaining in self.failures.items():
            if fragment in ref and remaining > 0:
                self.failures[fragment] -= 1
                raise TranscriptionError(f"service unavailable for {ref}")
        name = ref.rsplit("/", 1)[-1]
        return f"  text   of {name}  "


class FakeRenderer:
    """FrameRenderer returning tiny fake JPEG payloads."""

    def __init__(self) -> None:
        self.fail_timestamps: set[float] = set()
        self.errors: dict[float, Exception] = {}
        self.calls: list[float] = []

    async def render_frame_at(self, timestamp: float) -> bytes:
        self.calls.append(timestamp)
        if timestamp in self.errors:
            raise self.errors[timestamp]
        if timestamp in self.fail_timestamps:
            raise FrameExtractionError(f"no frame at {timestamp}")
        return b"\xff\xd8fake-jpeg-" + str(timestamp).encode()


class RecordingPersistence:
    """PersistenceStore recording every save."""

    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.slide_saves: list[tuple[str, tuple[Slide, ...]]] = []
        self.frame_saves: list[tuple[str, tuple[ExtractedFrame, ...]]] = []

    async def save_slides(self, project_id: str, slides) -> None:
        if self.fail:
            raise PersistenceError("database is read-only")
        self.slide_saves.append((project_id, tuple(slides)))

    async def save_frames(self, project_id: str, frames) -> None:
        if self.fail:
            raise PersistenceError("database is read-only")
        self.frame_saves.append((project_id, tuple(frames)))


@pytest.fixture
def temp_dir() -> Path:
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_video_path(temp_dir: Path) -> Path:
    """Create a mock video file for testing.

    Note: The content is not real media; probing and cutting are faked.
    """
    video_path = temp_dir / "test_video.mp4"
    video_path.write_bytes(b"mock video content for testing")
    return video_path


@pytest.fixture
def sample_audio_path(temp_dir: Path) -> Path:
    """Create a mock audio file for testing."""
    audio_path = temp_dir / "test_audio.wav"
    audio_path.write_bytes(b"mock audio content for testing")
    return audio_path


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def materializer() -> FakeMaterializer:
    return FakeMaterializer()


@pytest.fixture
def audio_extractor() -> FakeAudioExtractor:
    return FakeAudioExtractor()


@pytest.fixture
def blob_store() -> MemoryBlobStore:
    return MemoryBlobStore()


@pytest.fixture
def transcriber() -> FakeTranscriptionService:
    return FakeTranscriptionService()


@pytest.fixture
def renderer() -> FakeRenderer:
    return FakeRenderer()


@pytest.fixture
def persistence() -> RecordingPersistence:
    return RecordingPersistence()


@pytest.fixture
def clean_env():
    """Ensure CHUNKFLOW_* environment variables are not set."""
    names = ["CHUNKFLOW_OUTPUT_DIR", "CHUNKFLOW_CALL_TIMEOUT"]
    original = {name: os.environ.get(name) for name in names}
    for name in names:
        os.environ.pop(name, None)
    yield
    for name, value in original.items():
        if value is None:
            os.environ.pop(name, None)
        else:
            os.environ[name] = value
