"""Frame stage: timestamp-to-frame mapping and the frame library.

This stage handles:
- Normalizing requested timestamps to millisecond keys
- Rendering only the frames the library does not already hold
- Merging new frames into the library (an existing entry always wins)
- Assigning frames to slides

Frames are rendered with decord (lazy-loaded) and encoded as JPEG with PIL.
"""

from __future__ import annotations

import io
import logging
import re
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from numpy.typing import NDArray
from PIL import Image

from chunkflow.models.schema import ExtractedFrame, Slide
from chunkflow.utils.background import BackgroundSaver
from chunkflow.utils.retry import CallTimeoutError, call_with_retry, run_blocking

if TYPE_CHECKING:
    from chunkflow.slides import SlideDeck
    from chunkflow.store.blob import BlobStore
    from chunkflow.store.persistence import PersistenceStore

logger = logging.getLogger(__name__)

_CLOCK = re.compile(r"^\d+(?:\.\d+)?(?::\d{1,2}(?:\.\d+)?){0,2}$")

# Lazy-loaded decord references
_decord_loaded = False
_VideoReader = None
_cpu_ctx = None


class FrameExtractionError(Exception):
    """A frame could not be rendered or stored."""

    pass


class FrameRenderer(Protocol):
    """Renders a still image of the asset as encoded bytes."""

    async def render_frame_at(self, timestamp: float) -> bytes: ...


def parse_timestamp(value: float | int | str) -> float:
    """Convert seconds or an "HH:MM:SS" / "MM:SS" / "SS" string to seconds.

    Raises:
        ValueError: If the value is negative or not a timestamp.
    """
    if isinstance(value, bool):
        raise ValueError(f"Not a timestamp: {value!r}")

    if isinstance(value, (int, float)):
        seconds = float(value)
    else:
        text = value.strip()
        if not _CLOCK.match(text):
            raise ValueError(f"Not a timestamp: {value!r}")
        seconds = 0.0
        for part in text.split(":"):
            seconds = seconds * 60 + float(part)

    if seconds < 0:
        raise ValueError(f"Timestamp must not be negative: {value!r}")
    return seconds


def timestamp_key(value: float | int | str) -> int:
    """Millisecond key used to de-duplicate frames."""
    return int(round(parse_timestamp(value) * 1000))


def frame_storage_path(project_id: str, key: int) -> str:
    return f"projects/{project_id}/frames/frame-{key}.jpg"


class FrameLibrary:
    """Frames of one project, at most one per millisecond timestamp."""

    def __init__(self, frames: Iterable[ExtractedFrame] = ()) -> None:
        self._frames: dict[int, ExtractedFrame] = {}
        self.merge(frames)

    def __len__(self) -> int:
        return len(self._frames)

    def __contains__(self, timestamp: object) -> bool:
        try:
            return timestamp_key(timestamp) in self._frames  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return False

    def get(self, timestamp: float | str) -> ExtractedFrame | None:
        return self._frames.get(timestamp_key(timestamp))

    def has_key(self, key: int) -> bool:
        return key in self._frames

    def by_key(self, key: int) -> ExtractedFrame | None:
        return self._frames.get(key)

    def get_by_id(self, frame_id: str) -> ExtractedFrame | None:
        for frame in self._frames.values():
            if frame.id == frame_id:
                return frame
        return None

    def frames(self) -> tuple[ExtractedFrame, ...]:
        """All frames, sorted by timestamp."""
        return tuple(self._frames[key] for key in sorted(self._frames))

    def merge(self, new_frames: Iterable[ExtractedFrame]) -> list[ExtractedFrame]:
        """Add frames whose timestamp is not taken yet.

        On a collision the frame already in the library is kept.

        Returns:
            The frames actually inserted.
        """
        inserted = []
        for frame in new_frames:
            key = timestamp_key(frame.timestamp)
            if key in self._frames:
                continue
            self._frames[key] = frame
            inserted.append(frame)
        return inserted

    def remove(self, frame_id: str) -> bool:
        for key, frame in self._frames.items():
            if frame.id == frame_id:
                del self._frames[key]
                return True
        return False

    def remove_many(self, frame_ids: Iterable[str]) -> int:
        wanted = set(frame_ids)
        doomed = [key for key, frame in self._frames.items() if frame.id in wanted]
        for key in doomed:
            del self._frames[key]
        return len(doomed)


@dataclass
class FrameUsage:
    """How many library frames are assigned to slides."""

    total: int
    used: int
    unused: int
    unused_frames: list[ExtractedFrame] = field(default_factory=list)


def frame_usage(library: FrameLibrary, slides: Sequence[Slide]) -> FrameUsage:
    used_refs = {ref for slide in slides for ref in slide.image_refs}
    frames = library.frames()
    unused = [frame for frame in frames if frame.image_ref not in used_refs]
    return FrameUsage(
        total=len(frames),
        used=len(frames) - len(unused),
        unused=len(unused),
        unused_frames=unused,
    )


def map_timestamps_to_refs(library: FrameLibrary, timestamps: Iterable[float | str]) -> list[str]:
    """Image refs of the library frames at the given timestamps, in order.

    Timestamps with no frame in the library, or that do not parse, are
    skipped.
    """
    refs: list[str] = []
    for value in timestamps:
        try:
            frame = library.get(value)
        except ValueError:
            logger.debug(f"Ignoring malformed timestamp {value!r}")
            continue
        if frame is None:
            logger.debug(f"No frame for timestamp {value!r}")
            continue
        refs.append(frame.image_ref)
    return refs


class FrameExtractionMapper:
    """Maps requested timestamps to stored frames.

    Args:
        library: Frames already extracted for the project.
        renderer: Produces image bytes for a timestamp.
        store: Where rendered images are written.
        project_id: Project the frames belong to.
        persistence: Receives the library after every change.
        deck: Slides that frames can be assigned to.
        timeout: Seconds allowed per render or store call.
        attempts: Attempts per frame (2 = one retry).
        on_progress: Called with (done, total) while frames are rendered.
    """

    def __init__(
        self,
        library: FrameLibrary,
        renderer: FrameRenderer,
        store: BlobStore,
        project_id: str,
        persistence: PersistenceStore | None = None,
        deck: SlideDeck | None = None,
        timeout: float = 45.0,
        attempts: int = 2,
        on_progress: Callable[[int, int], None] | None = None,
    ) -> None:
        self.library = library
        self.renderer = renderer
        self.store = store
        self.project_id = project_id
        self.persistence = persistence
        self.deck = deck
        self.timeout = timeout
        self.attempts = attempts
        self.on_progress = on_progress
        self.failed: dict[float, str] = {}
        self._saver = BackgroundSaver(f"frames for project {project_id}")

    async def _render_and_store(self, seconds: float, key: int) -> ExtractedFrame:
        async def render() -> bytes:
            try:
                return await self.renderer.render_frame_at(seconds)
            except FrameExtractionError:
                raise
            except Exception as e:
                raise FrameExtractionError(f"{type(e).__name__}: {e}") from e

        data = await call_with_retry(
            render,
            label=f"Frame at {seconds:.3f}s",
            timeout=self.timeout,
            attempts=self.attempts,
            retry_on=(FrameExtractionError,),
        )

        path = frame_storage_path(self.project_id, key)

        async def put() -> str:
            try:
                return await self.store.put(path, data)
            except FrameExtractionError:
                raise
            except Exception as e:
                raise FrameExtractionError(f"Failed to store {path}: {e}") from e

        ref = await call_with_retry(
            put,
            label=f"Store of frame {key}",
            timeout=self.timeout,
            attempts=self.attempts,
            retry_on=(FrameExtractionError,),
        )
        return ExtractedFrame(id=f"frame-{key}", timestamp=key / 1000, image_ref=ref)

    async def request_frames(self, timestamps: Iterable[float | str]) -> list[ExtractedFrame]:
        """Return a frame for every requested timestamp, rendering only the missing ones.

        Timestamps that fail to render are skipped and recorded in
        ``self.failed`` for this call.

        Args:
            timestamps: Seconds or clock strings, in any order, duplicates allowed.

        Returns:
            The frames for the requested timestamps, sorted by timestamp.

        Raises:
            ValueError: If a timestamp cannot be parsed.
        """
        keys: dict[int, float] = {}
        for value in timestamps:
            seconds = parse_timestamp(value)
            keys.setdefault(int(round(seconds * 1000)), seconds)

        self.failed = {}
        missing = [(key, seconds) for key, seconds in sorted(keys.items()) if not self.library.has_key(key)]
        start_time = time.perf_counter()

        rendered: list[ExtractedFrame] = []
        for done, (key, seconds) in enumerate(missing, start=1):
            try:
                rendered.append(await self._render_and_store(seconds, key))
            except (FrameExtractionError, CallTimeoutError) as e:
                logger.warning(f"Skipping frame at {seconds:.3f}s: {e}")
                self.failed[seconds] = str(e)
            if self.on_progress is not None:
                self.on_progress(done, len(missing))

        if rendered:
            self.library.merge(rendered)
            self._save()

        if missing:
            elapsed = time.perf_counter() - start_time
            logger.info(
                f"Rendered {len(rendered)} of {len(missing)} new frames in {elapsed:.2f}s "
                f"({len(keys) - len(missing)} already in library)"
            )

        found = (self.library.by_key(key) for key in sorted(keys))
        return [frame for frame in found if frame is not None]

    def assign_frames_to_slide(self, slide_id: str, frame_refs: Iterable[str]) -> Slide:
        """Replace a slide's images with the given frame refs.

        Raises:
            FrameExtractionError: If the mapper has no slide deck.
            SlideDeckError: If the slide does not exist.
        """
        if self.deck is None:
            raise FrameExtractionError("No slide deck to assign frames to")
        return self.deck.set_images(slide_id, frame_refs)

    def assign_deck_frames(self) -> int:
        """Add the frames at each slide's own timestamps to its images.

        The slide's timestamp comes first, then its transcript timestamps.
        Images already on a slide are kept.

        Returns:
            Number of slides that gained images.
        """
        if self.deck is None:
            return 0

        updated = 0
        for slide in self.deck.slides:
            wanted = [slide.timestamp] if slide.timestamp else []
            wanted.extend(slide.transcript_timestamps)
            refs = map_timestamps_to_refs(self.library, wanted)
            added = [ref for ref in dict.fromkeys(refs) if ref not in slide.image_refs]
            if not added:
                continue
            self.assign_frames_to_slide(slide.id, [*slide.image_refs, *added])
            updated += 1

        if updated:
            logger.info(f"Assigned frames to {updated} slide{'s' if updated != 1 else ''}")
        return updated

    def remove_frames(self, frame_ids: Iterable[str]) -> int:
        removed = self.library.remove_many(frame_ids)
        if removed:
            self._save()
        return removed

    async def flush(self) -> None:
        await self._saver.flush()

    def _save(self) -> None:
        if self.persistence is None:
            return
        persistence = self.persistence
        frames = self.library.frames()
        self._saver.schedule(lambda: persistence.save_frames(self.project_id, frames))


def _load_decord() -> None:
    """Lazy-load decord for frame extraction."""
    global _decord_loaded, _VideoReader, _cpu_ctx

    if _decord_loaded:
        return

    start_time = time.perf_counter()

    try:
        from decord import VideoReader, cpu
    except ImportError as e:
        raise FrameExtractionError(
            f"Failed to import decord: {e}\n"
            "Install with: pip install 'chunkflow[video]'"
        )

    _VideoReader = VideoReader
    _cpu_ctx = cpu(0)
    _decord_loaded = True

    elapsed = time.perf_counter() - start_time
    logger.info(f"decord loaded in {elapsed:.2f}s")


def encode_jpeg(frame: NDArray[np.uint8], quality: int = 85) -> bytes:
    """Encode an RGB array as JPEG bytes."""
    buffer = io.BytesIO()
    Image.fromarray(frame).save(buffer, "JPEG", quality=quality)
    return buffer.getvalue()


class DecordFrameRenderer:
    """FrameRenderer reading frames from a local video with decord.

    Args:
        source: Path to the video file.
        quality: JPEG quality.
    """

    def __init__(self, source: str | Path, quality: int = 85) -> None:
        self.source = Path(source)
        self.quality = quality
        self._reader = None

    def _render(self, timestamp: float) -> bytes:
        if not self.source.exists():
            raise FrameExtractionError(f"Video file not found: {self.source}")

        _load_decord()

        try:
            if self._reader is None:
                self._reader = _VideoReader(str(self.source), ctx=_cpu_ctx)
            reader = self._reader

            fps = reader.get_avg_fps()
            frame_idx = max(0, min(int(timestamp * fps), len(reader) - 1))
            frame = reader[frame_idx].asnumpy()
            return encode_jpeg(frame, self.quality)
        except Exception as e:
            raise FrameExtractionError(f"Failed to extract frame at {timestamp}s: {e}") from e

    async def render_frame_at(self, timestamp: float) -> bytes:
        return await run_blocking(self._render, timestamp)
