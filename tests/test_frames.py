"""Tests for the frame stage."""

from __future__ import annotations

import asyncio
import io

import numpy as np
import pytest
from PIL import Image

from chunkflow.models.schema import ExtractedFrame, Slide
from chunkflow.slides import SlideDeck, SlideDeckError
from chunkflow.stages.frames import (
    FrameExtractionError,
    FrameExtractionMapper,
    FrameLibrary,
    DecordFrameRenderer,
    encode_jpeg,
    frame_storage_path,
    frame_usage,
    map_timestamps_to_refs,
    parse_timestamp,
    timestamp_key,
)


def _frame(seconds: float, ref: str | None = None) -> ExtractedFrame:
    key = int(round(seconds * 1000))
    return ExtractedFrame(id=f"frame-{key}", timestamp=seconds, image_ref=ref or f"img/{key}.jpg")


@pytest.fixture
def mapper(renderer, blob_store, persistence) -> FrameExtractionMapper:
    return FrameExtractionMapper(
        FrameLibrary(), renderer, blob_store, "proj", persistence=persistence
    )


class TestParseTimestamp:
    """Tests for parse_timestamp and timestamp_key."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (12, 12.0),
            (1.5, 1.5),
            ("45", 45.0),
            ("01:30", 90.0),
            ("1:02:03", 3723.0),
            ("00:00:01.250", 1.25),
        ],
    )
    def test_valid_values(self, value, expected: float) -> None:
        """Numbers and clock strings should convert to seconds."""
        assert parse_timestamp(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["abc", "1:2:3:4", "", "-5", True])
    def test_invalid_values(self, value) -> None:
        """Malformed values should raise ValueError."""
        with pytest.raises(ValueError):
            parse_timestamp(value)

    def test_negative_number_rejected(self) -> None:
        """Negative seconds should raise ValueError."""
        with pytest.raises(ValueError, match="negative"):
            parse_timestamp(-1.0)

    def test_key_is_milliseconds(self) -> None:
        """Equal instants in different notations should share a key."""
        assert timestamp_key("00:01:30") == timestamp_key(90) == 90000
        assert timestamp_key(1.2344) == 1234

    def test_storage_path(self) -> None:
        """Frame paths should be keyed by millisecond timestamp."""
        assert frame_storage_path("proj", 90000) == "projects/proj/frames/frame-90000.jpg"


class TestFrameLibrary:
    """Tests for FrameLibrary."""

    def test_frames_sorted_by_timestamp(self) -> None:
        """frames() should be ordered by timestamp regardless of insertion order."""
        library = FrameLibrary([_frame(30), _frame(10), _frame(20)])
        assert [f.timestamp for f in library.frames()] == [10, 20, 30]

    def test_existing_frame_wins_on_collision(self) -> None:
        """Merging a frame for a taken timestamp should keep the original."""
        library = FrameLibrary([_frame(10, ref="original.jpg")])

        inserted = library.merge([_frame(10, ref="newer.jpg"), _frame(11)])

        assert [f.timestamp for f in inserted] == [11]
        assert library.get(10).image_ref == "original.jpg"
        assert len(library) == 2

    def test_lookup_by_clock_string(self) -> None:
        """Frames should be found by any notation of their timestamp."""
        library = FrameLibrary([_frame(90)])
        assert "01:30" in library
        assert library.get("00:01:30").id == "frame-90000"
        assert "not a time" not in library

    def test_get_by_id_and_remove(self) -> None:
        """Frames should be removable by ID."""
        library = FrameLibrary([_frame(1), _frame(2)])

        assert library.get_by_id("frame-2000").timestamp == 2
        assert library.remove("frame-2000") is True
        assert library.remove("frame-2000") is False
        assert library.get_by_id("frame-2000") is None

    def test_remove_many(self) -> None:
        """remove_many should report how many frames were dropped."""
        library = FrameLibrary([_frame(1), _frame(2), _frame(3)])
        assert library.remove_many(["frame-1000", "frame-3000", "frame-9"]) == 2
        assert [f.id for f in library.frames()] == ["frame-2000"]


class TestFrameUsage:
    """Tests for frame_usage."""

    def test_counts_used_and_unused(self) -> None:
        """Frames referenced by any slide should count as used."""
        library = FrameLibrary([_frame(1), _frame(2), _frame(3)])
        slides = [
            Slide(id="s1", image_refs=("img/1000.jpg",)),
            Slide(id="s2", image_refs=("img/1000.jpg", "img/3000.jpg")),
        ]

        usage = frame_usage(library, slides)

        assert (usage.total, usage.used, usage.unused) == (3, 2, 1)
        assert [f.id for f in usage.unused_frames] == ["frame-2000"]


class TestRequestFrames:
    """Tests for FrameExtractionMapper.request_frames."""

    def test_renders_and_stores_new_frames(self, mapper, renderer, blob_store) -> None:
        """Each new timestamp should be rendered once and stored under its key."""
        frames = asyncio.run(mapper.request_frames(["00:00:05", 2.5]))

        assert [f.timestamp for f in frames] == [2.5, 5.0]
        assert [f.id for f in frames] == ["frame-2500", "frame-5000"]
        assert frames[1].image_ref == "projects/proj/frames/frame-5000.jpg"
        assert set(blob_store.blobs) == {
            "projects/proj/frames/frame-2500.jpg",
            "projects/proj/frames/frame-5000.jpg",
        }
        assert sorted(renderer.calls) == [2.5, 5.0]

    def test_is_idempotent(self, mapper, renderer) -> None:
        """Requesting the same timestamps twice should render nothing the second time."""
        first = asyncio.run(mapper.request_frames([1, 2]))
        second = asyncio.run(mapper.request_frames([2, 1, "00:00:01"]))

        assert first == second
        assert len(renderer.calls) == 2
        assert len(mapper.library) == 2

    def test_only_missing_frames_are_rendered(self, renderer, blob_store) -> None:
        """Timestamps already in the library should not be rendered again."""
        library = FrameLibrary([_frame(10, ref="kept.jpg")])
        mapper = FrameExtractionMapper(library, renderer, blob_store, "proj")

        frames = asyncio.run(mapper.request_frames([10, 20]))

        assert renderer.calls == [20.0]
        assert frames[0].image_ref == "kept.jpg"

    def test_failed_frames_are_skipped(self, mapper, renderer) -> None:
        """A timestamp that keeps failing should be skipped and recorded."""
        renderer.fail_timestamps.add(3.0)

        frames = asyncio.run(mapper.request_frames([1, 3, 5]))

        assert [f.timestamp for f in frames] == [1.0, 5.0]
        assert 3.0 in mapper.failed
        # One retry for the failing frame
        assert renderer.calls.count(3.0) == 2

    def test_unexpected_renderer_error_skips_frame(self, mapper, renderer) -> None:
        """A renderer crash other than FrameExtractionError should also be skipped."""
        renderer.errors[3.0] = RuntimeError("decoder crashed")

        frames = asyncio.run(mapper.request_frames([1, 3]))

        assert [f.timestamp for f in frames] == [1.0]
        assert mapper.failed[3.0] == "RuntimeError: decoder crashed"

    def test_progress_reported_per_frame(self, renderer, blob_store) -> None:
        """on_progress should be called with (done, total) for every new frame."""
        seen: list[tuple[int, int]] = []
        mapper = FrameExtractionMapper(
            FrameLibrary(), renderer, blob_store, "proj", on_progress=lambda d, t: seen.append((d, t))
        )

        asyncio.run(mapper.request_frames([1, 2, 3]))

        assert seen == [(1, 3), (2, 3), (3, 3)]

    def test_invalid_timestamp_raises(self, mapper) -> None:
        """An unparseable timestamp should raise ValueError before any rendering."""
        with pytest.raises(ValueError):
            asyncio.run(mapper.request_frames([1, "soon"]))

    def test_library_saved_after_change(self, mapper, persistence) -> None:
        """A change to the library should be saved in the background."""

        async def run() -> None:
            await mapper.request_frames([4])
            await mapper.flush()

        asyncio.run(run())

        assert len(persistence.frame_saves) == 1
        project_id, frames = persistence.frame_saves[0]
        assert project_id == "proj"
        assert [f.id for f in frames] == ["frame-4000"]

    def test_remove_frames_saves(self, mapper, persistence) -> None:
        """Removing frames should save the smaller library."""
        mapper.library.merge([_frame(1), _frame(2)])

        assert mapper.remove_frames(["frame-1000"]) == 1
        asyncio.run(mapper.flush())

        assert [f.id for f in persistence.frame_saves[-1][1]] == ["frame-2000"]


class TestAssignFrames:
    """Tests for assigning frames to slides."""

    def test_assign_replaces_images(self, renderer, blob_store) -> None:
        """Assigned refs should become the slide's images, without duplicates."""
        deck = SlideDeck("proj")
        slide_id = deck.slides[0].id
        mapper = FrameExtractionMapper(FrameLibrary(), renderer, blob_store, "proj", deck=deck)

        slide = mapper.assign_frames_to_slide(slide_id, ["a.jpg", "b.jpg", "a.jpg"])

        assert slide.image_refs == ("a.jpg", "b.jpg")
        assert deck.get(slide_id).image_refs == ("a.jpg", "b.jpg")

    def test_unknown_slide(self, renderer, blob_store) -> None:
        """Assigning to a missing slide should raise SlideDeckError."""
        mapper = FrameExtractionMapper(
            FrameLibrary(), renderer, blob_store, "proj", deck=SlideDeck("proj")
        )
        with pytest.raises(SlideDeckError):
            mapper.assign_frames_to_slide("slide-missing", ["a.jpg"])

    def test_without_deck(self, mapper) -> None:
        """A mapper without a deck cannot assign frames."""
        with pytest.raises(FrameExtractionError, match="No slide deck"):
            mapper.assign_frames_to_slide("s1", ["a.jpg"])

    def test_map_timestamps_to_refs(self) -> None:
        """Timestamps should map to library refs in order, skipping unknown ones."""
        library = FrameLibrary([_frame(10), _frame(30)])

        refs = map_timestamps_to_refs(library, ["00:30", 10, "00:00:20", "whenever"])

        assert refs == ["img/30000.jpg", "img/10000.jpg"]

    def test_assign_deck_frames(self, renderer, blob_store) -> None:
        """Each slide should gain the frames at its timestamps, keeping its images."""
        deck = SlideDeck(
            "proj",
            [
                Slide(id="s1", timestamp="00:00:10"),
                Slide(id="s2", image_refs=("upload.png",), transcript_timestamps=("00:30", "00:10")),
                Slide(id="s3", timestamp="00:00:45"),
            ],
        )
        library = FrameLibrary([_frame(10), _frame(30)])
        mapper = FrameExtractionMapper(library, renderer, blob_store, "proj", deck=deck)

        assert mapper.assign_deck_frames() == 2

        assert deck.get("s1").image_refs == ("img/10000.jpg",)
        assert deck.get("s2").image_refs == ("upload.png", "img/30000.jpg", "img/10000.jpg")
        assert deck.get("s3").image_refs == ()

    def test_assign_deck_frames_is_idempotent(self, renderer, blob_store) -> None:
        """Assigning twice should not add the same frame again."""
        deck = SlideDeck("proj", [Slide(id="s1", timestamp="00:00:10")])
        mapper = FrameExtractionMapper(FrameLibrary([_frame(10)]), renderer, blob_store, "proj", deck=deck)

        mapper.assign_deck_frames()

        assert mapper.assign_deck_frames() == 0
        assert deck.get("s1").image_refs == ("img/10000.jpg",)


class TestEncoding:
    """Tests for JPEG encoding and the decord renderer."""

    def test_encode_jpeg(self) -> None:
        """An RGB array should encode to a decodable JPEG of the same size."""
        frame = np.zeros((24, 32, 3), dtype=np.uint8)
        frame[:, :, 0] = 200

        data = encode_jpeg(frame)

        image = Image.open(io.BytesIO(data))
        assert image.format == "JPEG"
        assert image.size == (32, 24)

    def test_missing_video(self, temp_dir) -> None:
        """Rendering from a missing file should raise FrameExtractionError."""
        renderer = DecordFrameRenderer(temp_dir / "missing.mp4")
        with pytest.raises(FrameExtractionError, match="not found"):
            asyncio.run(renderer.render_frame_at(1.0))
