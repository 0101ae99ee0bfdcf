"""Tests for the slide deck."""

from __future__ import annotations

import asyncio
import logging

import pytest

from chunkflow.models.schema import Slide
from chunkflow.slides import (
    NEW_SLIDE_TITLE,
    PLACEHOLDER_TITLE,
    SlideDeck,
    SlideDeckError,
)


def _deck(count: int = 3, persistence=None) -> SlideDeck:
    slides = [Slide(id=f"s{i}", title=f"Slide {i}") for i in range(count)]
    return SlideDeck("proj", slides, persistence=persistence)


class TestSlideDeck:
    """Tests for SlideDeck editing."""

    def test_empty_deck_gets_placeholder(self) -> None:
        """A deck created without slides should hold the placeholder."""
        deck = SlideDeck("proj")
        assert len(deck) == 1
        assert deck.slides[0].title == PLACEHOLDER_TITLE

    def test_add_slide_at_end(self) -> None:
        """add_slide without a position should append a default slide."""
        deck = _deck(2)
        slide = deck.add_slide()
        assert deck.slides[-1] == slide
        assert slide.title == NEW_SLIDE_TITLE

    def test_add_slide_after_index(self) -> None:
        """add_slide should insert right after the given position."""
        deck = _deck(3)
        slide = deck.add_slide(after_index=0, title="Inserted")
        assert [s.id for s in deck.slides][:2] == ["s0", slide.id]

    def test_add_slide_bad_index(self) -> None:
        """An out-of-range position should be rejected."""
        with pytest.raises(SlideDeckError):
            _deck(2).add_slide(after_index=5)

    def test_update_slide_keeps_unset_fields(self) -> None:
        """Only the fields passed should change."""
        deck = _deck(1)
        updated = deck.update_slide("s0", content="New body", transcript_timestamps=["00:10"])

        assert updated.title == "Slide 0"
        assert updated.content == "New body"
        assert updated.transcript_timestamps == ("00:10",)
        assert deck.get("s0") == updated

    def test_update_unknown_slide(self) -> None:
        """Updating a missing slide should raise SlideDeckError."""
        with pytest.raises(SlideDeckError, match="Unknown slide"):
            _deck(1).update_slide("nope", title="x")

    def test_cannot_delete_only_slide(self) -> None:
        """Deleting the last remaining slide should be rejected and change nothing."""
        deck = _deck(1)
        with pytest.raises(SlideDeckError, match="only slide"):
            deck.delete_slide(0)
        assert len(deck) == 1
        assert deck.can_undo is False

    def test_delete_out_of_range(self) -> None:
        """Deleting a missing index should raise SlideDeckError."""
        with pytest.raises(SlideDeckError, match="No slide"):
            _deck(2).delete_slide(2)

    def test_undo_restores_original_position(self) -> None:
        """undo_delete should put the slide back at the index it had."""
        deck = _deck(3)
        deleted = deck.delete_slide(1)

        assert [s.id for s in deck.slides] == ["s0", "s2"]
        assert deck.can_undo

        restored = deck.undo_delete()

        assert restored == deleted
        assert [s.id for s in deck.slides] == ["s0", "s1", "s2"]
        assert deck.undo_delete() is None

    def test_set_and_remove_images(self) -> None:
        """Images should be replaceable and removable one at a time."""
        deck = _deck(1)
        deck.set_images("s0", ["a.jpg", "b.jpg", "a.jpg"])
        assert deck.get("s0").image_refs == ("a.jpg", "b.jpg")

        deck.remove_image("s0", "a.jpg")
        assert deck.get("s0").image_refs == ("b.jpg",)
        assert deck.used_image_refs() == {"b.jpg"}

    def test_remove_missing_image(self) -> None:
        """Removing an image the slide does not have should raise SlideDeckError."""
        with pytest.raises(SlideDeckError, match="no image"):
            _deck(1).remove_image("s0", "missing.jpg")

    def test_timestamps_deduplicated_in_order(self) -> None:
        """timestamps() should list slide then transcript timestamps once each."""
        deck = SlideDeck(
            "proj",
            [
                Slide(id="a", timestamp="00:10", transcript_timestamps=("00:12", "00:10")),
                Slide(id="b", timestamp="00:30"),
                Slide(id="c", transcript_timestamps=("00:12",)),
            ],
        )
        assert deck.timestamps() == ["00:10", "00:12", "00:30"]


class TestSlidePersistence:
    """Tests for background saving of slides."""

    def test_edits_saved_on_flush(self, persistence) -> None:
        """Edits made outside an event loop should be saved by flush()."""
        deck = _deck(2, persistence=persistence)
        deck.update_slide("s1", title="Renamed")

        asyncio.run(deck.flush())

        project_id, slides = persistence.slide_saves[-1]
        assert project_id == "proj"
        assert slides[1].title == "Renamed"

    def test_every_edit_in_loop_is_saved(self, persistence) -> None:
        """Inside an event loop each edit should schedule its own save."""
        deck = _deck(2, persistence=persistence)

        async def edit() -> None:
            deck.add_slide()
            deck.delete_slide(0)
            await deck.flush()

        asyncio.run(edit())

        assert len(persistence.slide_saves) == 2
        assert len(persistence.slide_saves[-1][1]) == 2

    def test_failed_save_is_logged_not_raised(self, persistence, caplog) -> None:
        """A failing store should not undo the edit or raise."""
        persistence.fail = True
        deck = _deck(2, persistence=persistence)

        async def edit() -> None:
            deck.update_slide("s0", title="Kept")
            await deck.flush()

        with caplog.at_level(logging.ERROR):
            asyncio.run(edit())

        assert deck.get("s0").title == "Kept"
        assert "Saving slides for project proj failed" in caplog.text
