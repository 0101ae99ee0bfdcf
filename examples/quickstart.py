#!/usr/bin/env python3
"""chunkflow Quickstart Example.

This script splits a media file into chunks, transcribes them and pulls a
few frames, printing progress as the job runs.

Usage:
    python examples/quickstart.py path/to/lecture.mp4 [00:01:30 ...]

Requirements:
    - ffmpeg/ffprobe on PATH
    - pip install 'chunkflow[all]' for transcription and frame extraction
"""

from __future__ import annotations

import sys
from pathlib import Path


def main() -> None:
    """Run the quickstart example."""
    import chunkflow

    # Check command line arguments
    if len(sys.argv) < 2:
        print("Usage: python quickstart.py <media_file> [timestamp ...]")
        print("\nExample:")
        print("  python quickstart.py lecture.mp4")
        print("  python quickstart.py lecture.mp4 00:01:30 00:12:05")
        sys.exit(1)

    media_path = Path(sys.argv[1])
    timestamps = sys.argv[2:]

    if not media_path.exists():
        print(f"Error: File not found: {media_path}")
        sys.exit(1)

    print(f"chunkflow v{chunkflow.__version__}")
    print(f"Processing: {media_path}")
    print(f"Frames requested: {len(timestamps)}")
    print("-" * 50)

    # Initialize the pipeline and follow its progress
    registry = chunkflow.ProgressRegistry()
    pipeline = chunkflow.Pipeline(
        config=chunkflow.PipelineConfig(project_id="quickstart"),
        registry=registry,
    )
    registry.events.subscribe(
        lambda event: print(f"  {registry.get(event.workflow_id).progress:5.1f}%  {event.message}")
    )

    # Process the file
    try:
        result = pipeline.process(media_path, timestamps=timestamps)
    except chunkflow.PipelineError as e:
        print(f"\nFailed: {e}")
        sys.exit(1)

    # Display results
    print(f"\nSummary: {result.summary}")
    print(f"Asset ID: {result.asset.asset_id}")
    duration = result.asset.duration or 0
    print(f"Duration: {duration:.1f}s{' (estimated)' if result.asset.duration_estimated else ''}")
    print(f"Chunks: {result.plan.count}")

    print("\n" + "=" * 50)
    print("TRANSCRIPT")
    print("=" * 50)

    if result.transcript is not None:
        for part in result.transcript.parts:
            if isinstance(part, chunkflow.TranscriptGap):
                print(f"\n[{part.start_time:.1f}s - {part.end_time:.1f}s] missing: {part.reason}")
            else:
                print(f"\n[{part.start_time:.1f}s - {part.end_time:.1f}s] {part.text[:100]}...")

    for frame in result.frames:
        print(f"Frame {frame.id}: {frame.image_ref}")

    # Export to JSON
    output_path = media_path.with_suffix(".chunkflow.json")
    result.to_json(output_path)
    print(f"\nOutput saved to: {output_path}")


if __name__ == "__main__":
    main()
