"""JSON persistence for slides, frame libraries and resumable job state."""

from __future__ import annotations

import asyncio
import json
import tempfile
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, ValidationError

from chunkflow.models.schema import Chunk, ChunkPlan, ExtractedFrame, Slide, TranscriptSegment
from chunkflow.utils.logging import get_logger

logger = get_logger(__name__)


class PersistenceError(Exception):
    """Error reading or writing persisted state."""

    pass


class PersistenceStore(Protocol):
    """Saves a project's slides and frame library."""

    async def save_slides(self, project_id: str, slides: Sequence[Slide]) -> None: ...

    async def save_frames(self, project_id: str, frames: Sequence[ExtractedFrame]) -> None: ...


def _write_json(path: Path, payload: object) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    # Each writer gets its own temporary file; the rename is atomic
    with tempfile.NamedTemporaryFile(
        "w", dir=path.parent, prefix=path.name + ".", suffix=".tmp", delete=False
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            tmp.write(json.dumps(payload, indent=2))
        except BaseException:
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(path)


def _read_json(path: Path) -> object | None:
    if not path.exists():
        return None
    try:
        return json.loads(path.read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise PersistenceError(f"Failed to read {path}: {e}") from e


class JsonPersistenceStore:
    """PersistenceStore writing one JSON file per project and collection.

    Layout::

        <root>/projects/<project_id>/slides.json
        <root>/projects/<project_id>/frames.json
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, project_id: str, name: str) -> Path:
        return self.root / "projects" / project_id / f"{name}.json"

    async def save_slides(self, project_id: str, slides: Sequence[Slide]) -> None:
        payload = [slide.model_dump(mode="json") for slide in slides]
        await self._save(self._path(project_id, "slides"), payload)

    async def save_frames(self, project_id: str, frames: Sequence[ExtractedFrame]) -> None:
        payload = [frame.model_dump(mode="json") for frame in frames]
        await self._save(self._path(project_id, "frames"), payload)

    def load_slides(self, project_id: str) -> list[Slide]:
        data = _read_json(self._path(project_id, "slides")) or []
        try:
            return [Slide.model_validate(item) for item in data]
        except ValidationError as e:
            raise PersistenceError(f"Invalid slides for project {project_id}: {e}") from e

    def load_frames(self, project_id: str) -> list[ExtractedFrame]:
        data = _read_json(self._path(project_id, "frames")) or []
        try:
            return [ExtractedFrame.model_validate(item) for item in data]
        except ValidationError as e:
            raise PersistenceError(f"Invalid frames for project {project_id}: {e}") from e

    async def _save(self, path: Path, payload: object) -> None:
        try:
            await asyncio.to_thread(_write_json, path, payload)
        except OSError as e:
            raise PersistenceError(f"Failed to write {path}: {e}") from e
        logger.debug(f"Saved {path}")


class JobState(BaseModel):
    """Everything needed to resume a job for one asset."""

    asset_id: str
    plan: ChunkPlan
    chunks: list[Chunk] = Field(default_factory=list)
    segments: list[TranscriptSegment] = Field(default_factory=list)


class JobStateStore:
    """Persists job state per asset ID so an interrupted run can resume.

    State is written after every chunk; a later run with the same asset and
    an identical plan skips the chunks already marked complete.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root) / "jobs"

    def _path(self, asset_id: str) -> Path:
        return self.root / f"{asset_id}.json"

    def save(self, state: JobState) -> None:
        """Write the job state.

        Raises:
            PersistenceError: If the state cannot be written.
        """
        try:
            _write_json(self._path(state.asset_id), state.model_dump(mode="json"))
        except OSError as e:
            raise PersistenceError(f"Failed to save job state for {state.asset_id}: {e}") from e

    def load(self, asset_id: str) -> JobState | None:
        """Read the job state, or None if there is none.

        Raises:
            PersistenceError: If the stored state is unreadable.
        """
        data = _read_json(self._path(asset_id))
        if data is None:
            return None
        try:
            return JobState.model_validate(data)
        except ValidationError as e:
            raise PersistenceError(f"Invalid job state for {asset_id}: {e}") from e

    def clear(self, asset_id: str) -> bool:
        path = self._path(asset_id)
        if path.exists():
            path.unlink()
            return True
        return False
