"""Slide list that extracted frames are assigned to.

Slides are frozen models; every edit swaps in a new instance. Each
mutation schedules a background save through the PersistenceStore, and a
failed save is logged without undoing the edit.
"""

from __future__ import annotations

import uuid
from collections.abc import Iterable

from chunkflow.models.schema import Slide
from chunkflow.store.persistence import PersistenceStore
from chunkflow.utils.background import BackgroundSaver
from chunkflow.utils.logging import get_logger

logger = get_logger(__name__)

PLACEHOLDER_TITLE = "Generate Your Slides"
PLACEHOLDER_CONTENT = (
    "Click the 'Generate Slides' button to process your content and create presentation slides."
)
NEW_SLIDE_TITLE = "New Slide"
NEW_SLIDE_CONTENT = "Add your content here..."


class SlideDeckError(Exception):
    """Rejected slide edit. The deck is left unchanged."""

    pass


def _new_slide_id() -> str:
    return f"slide-{uuid.uuid4().hex[:12]}"


def placeholder_slide() -> Slide:
    return Slide(id=_new_slide_id(), title=PLACEHOLDER_TITLE, content=PLACEHOLDER_CONTENT)


class SlideDeck:
    """Ordered, never-empty list of slides for one project.

    Args:
        project_id: Project the slides belong to.
        slides: Initial slides. An empty deck gets the placeholder slide.
        persistence: Where slides are saved after every change.

    Example:
        >>> deck = SlideDeck("demo")
        >>> deck.slides[0].title
        'Generate Your Slides'
    """

    def __init__(
        self,
        project_id: str,
        slides: Iterable[Slide] | None = None,
        persistence: PersistenceStore | None = None,
    ) -> None:
        self.project_id = project_id
        self.persistence = persistence
        self._slides: list[Slide] = list(slides or [])
        if not self._slides:
            self._slides.append(placeholder_slide())
        self._last_deleted: tuple[int, Slide] | None = None
        self._saver = BackgroundSaver(f"slides for project {project_id}")

    @property
    def slides(self) -> tuple[Slide, ...]:
        return tuple(self._slides)

    @property
    def can_undo(self) -> bool:
        return self._last_deleted is not None

    def __len__(self) -> int:
        return len(self._slides)

    def get(self, slide_id: str) -> Slide | None:
        for slide in self._slides:
            if slide.id == slide_id:
                return slide
        return None

    def index_of(self, slide_id: str) -> int:
        """Position of a slide.

        Raises:
            SlideDeckError: If no slide has this ID.
        """
        for index, slide in enumerate(self._slides):
            if slide.id == slide_id:
                return index
        raise SlideDeckError(f"Unknown slide: {slide_id}")

    def add_slide(
        self,
        after_index: int | None = None,
        title: str = NEW_SLIDE_TITLE,
        content: str = NEW_SLIDE_CONTENT,
        timestamp: str | None = None,
    ) -> Slide:
        """Insert a new slide after the given position (at the end by default)."""
        if after_index is None:
            position = len(self._slides)
        elif -1 <= after_index < len(self._slides):
            position = after_index + 1
        else:
            raise SlideDeckError(f"Cannot add after index {after_index} in a deck of {len(self)}")

        slide = Slide(id=_new_slide_id(), title=title, content=content, timestamp=timestamp)
        self._slides.insert(position, slide)
        self._save()
        return slide

    def update_slide(
        self,
        slide_id: str,
        *,
        title: str | None = None,
        content: str | None = None,
        timestamp: str | None = None,
        transcript_timestamps: Iterable[str] | None = None,
    ) -> Slide:
        """Replace fields of a slide. Fields left as None are kept."""
        index = self.index_of(slide_id)
        update: dict = {}
        if title is not None:
            update["title"] = title
        if content is not None:
            update["content"] = content
        if timestamp is not None:
            update["timestamp"] = timestamp
        if transcript_timestamps is not None:
            update["transcript_timestamps"] = tuple(transcript_timestamps)
        return self._replace(index, update)

    def delete_slide(self, index: int) -> Slide:
        """Remove the slide at index, remembering it for undo_delete.

        Raises:
            SlideDeckError: If the index is out of range or the slide is the
                only one left.
        """
        if not 0 <= index < len(self._slides):
            raise SlideDeckError(f"No slide at index {index}")
        if len(self._slides) <= 1:
            raise SlideDeckError("Cannot delete the only slide")

        slide = self._slides.pop(index)
        self._last_deleted = (index, slide)
        self._save()
        logger.debug(f"Deleted slide {slide.id} at index {index}")
        return slide

    def undo_delete(self) -> Slide | None:
        """Put the most recently deleted slide back where it was.

        Returns:
            The restored slide, or None if there is nothing to undo.
        """
        if self._last_deleted is None:
            return None

        index, slide = self._last_deleted
        self._last_deleted = None
        self._slides.insert(min(index, len(self._slides)), slide)
        self._save()
        return slide

    def set_images(self, slide_id: str, refs: Iterable[str]) -> Slide:
        """Replace a slide's images, dropping duplicate refs."""
        index = self.index_of(slide_id)
        return self._replace(index, {"image_refs": tuple(dict.fromkeys(refs))})

    def remove_image(self, slide_id: str, ref: str) -> Slide:
        index = self.index_of(slide_id)
        current = self._slides[index].image_refs
        if ref not in current:
            raise SlideDeckError(f"Slide {slide_id} has no image {ref}")
        return self._replace(index, {"image_refs": tuple(r for r in current if r != ref)})

    def timestamps(self) -> list[str]:
        """Every slide and transcript timestamp, de-duplicated, in deck order."""
        seen: dict[str, None] = {}
        for slide in self._slides:
            if slide.timestamp:
                seen.setdefault(slide.timestamp, None)
            for ts in slide.transcript_timestamps:
                if ts:
                    seen.setdefault(ts, None)
        return list(seen)

    def used_image_refs(self) -> set[str]:
        return {ref for slide in self._slides for ref in slide.image_refs}

    async def flush(self) -> None:
        """Wait for pending saves."""
        await self._saver.flush()

    def _replace(self, index: int, update: dict) -> Slide:
        slide = self._slides[index].model_copy(update=update)
        self._slides[index] = slide
        self._save()
        return slide

    def _save(self) -> None:
        if self.persistence is None:
            return
        persistence = self.persistence
        snapshot = tuple(self._slides)
        self._saver.schedule(lambda: persistence.save_slides(self.project_id, snapshot))
