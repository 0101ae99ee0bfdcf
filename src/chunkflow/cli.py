"""Command-line interface for chunkflow."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Annotated, Optional

import typer

from chunkflow import __version__
from chunkflow.config import MB, ChunkingOptions, PipelineConfig, TranscriptionOptions, WhisperModel
from chunkflow.models.schema import JobOutcome, ProgressEvent, format_clock
from chunkflow.pipeline import Pipeline, PipelineCancelled, PipelineError
from chunkflow.stages.ingest import SUPPORTED_AUDIO_FORMATS, SUPPORTED_VIDEO_FORMATS, load_asset
from chunkflow.stages.plan import plan_for_asset
from chunkflow.utils.hardware import get_device_info
from chunkflow.utils.logging import get_logger
from chunkflow.utils.progress import TqdmWorkflowObserver

app = typer.Typer(
    name="chunkflow",
    help="Split large media into bounded chunks, transcribe them and extract frames.",
    add_completion=False,
    no_args_is_help=True,
)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_PARTIAL = 2


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        typer.echo(f"chunkflow {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """chunkflow: chunked media processing with progress tracking."""
    pass


@app.command()
def plan(
    source: Annotated[
        Path,
        typer.Argument(help="Path to a video or audio file", exists=True, readable=True),
    ],
    max_chunk_mb: Annotated[
        float,
        typer.Option("--max-chunk-mb", help="Target upper bound for one chunk, in MB"),
    ] = 20.0,
    min_chunk_duration: Annotated[
        float,
        typer.Option("--min-chunk-duration", help="Shortest chunk, in seconds"),
    ] = 30.0,
    max_chunk_duration: Annotated[
        float,
        typer.Option("--max-chunk-duration", help="Longest chunk, in seconds"),
    ] = 300.0,
    as_json: Annotated[
        bool,
        typer.Option("--json", help="Print the plan as JSON"),
    ] = False,
) -> None:
    """Show how a file would be split, without processing it.

    Example:
        chunkflow plan lecture.mp4 --max-chunk-duration 120
    """
    try:
        opts = ChunkingOptions(
            max_chunk_bytes=int(max_chunk_mb * MB),
            min_chunk_duration=min_chunk_duration,
            max_chunk_duration=max_chunk_duration,
            max_asset_bytes=int(max_chunk_mb * MB),
            max_asset_duration=max_chunk_duration,
        )
        asset = asyncio.run(load_asset(source))
        chunk_plan = plan_for_asset(
            asset,
            max_chunk_bytes=opts.max_chunk_bytes,
            min_chunk_duration=opts.min_chunk_duration,
            max_chunk_duration=opts.max_chunk_duration,
            max_asset_bytes=opts.max_asset_bytes,
            max_asset_duration=opts.max_asset_duration,
            assumed_bytes_per_second=opts.assumed_bytes_per_second,
            min_estimated_duration=opts.min_estimated_duration,
        )
    except (ValueError, FileNotFoundError) as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_FAILURE)

    if as_json:
        payload = {"asset": asset.model_dump(mode="json"), "plan": chunk_plan.model_dump(mode="json")}
        typer.echo(json.dumps(payload, indent=2))
        return

    duration = "unknown" if asset.duration is None else format_clock(asset.duration)
    typer.echo(f"{source.name}: {asset.size_bytes / MB:.1f} MB, duration {duration}")
    if chunk_plan.estimated:
        typer.echo(f"  Duration estimated from size: {format_clock(chunk_plan.total_duration)}")
    typer.echo(f"  {chunk_plan.count} chunk(s) of up to {chunk_plan.chunk_duration:.1f}s")
    for window in chunk_plan.windows:
        typer.echo(f"  {window.label}  [{window.start_time:.3f}s, {window.end_time:.3f}s)")


@app.command()
def process(
    source: Annotated[
        Path,
        typer.Argument(
            help="Path to a video or audio file (.mp4, .mov, .avi, .mkv, .webm, .mp3, .wav, .m4a)",
            exists=True,
            readable=True,
        ),
    ],
    timestamp: Annotated[
        Optional[list[str]],
        typer.Option(
            "--timestamp",
            "-t",
            help="Extract a frame at this position (seconds or HH:MM:SS); repeatable",
        ),
    ] = None,
    output: Annotated[
        Optional[Path],
        typer.Option("--output", "-o", help="Output JSON file path (default: stdout)"),
    ] = None,
    transcript: Annotated[
        Optional[Path],
        typer.Option("--transcript", help="Also write the merged transcript as Markdown"),
    ] = None,
    store_dir: Annotated[
        Optional[Path],
        typer.Option(
            "--store-dir",
            "-d",
            help="Directory for chunks, frames and job state (default: $CHUNKFLOW_OUTPUT_DIR or ./chunkflow_output)",
        ),
    ] = None,
    project_id: Annotated[
        str,
        typer.Option("--project-id", help="Project the asset belongs to"),
    ] = "default",
    whisper_model: Annotated[
        WhisperModel,
        typer.Option("--whisper-model", "-m", help="Whisper model size"),
    ] = WhisperModel.SMALL,
    transcribe: Annotated[
        bool,
        typer.Option("--transcribe/--no-transcribe", help="Transcribe the chunks"),
    ] = True,
    no_resume: Annotated[
        bool,
        typer.Option("--no-resume", help="Ignore chunks completed by an earlier run"),
    ] = False,
    timeout: Annotated[
        Optional[float],
        typer.Option("--timeout", help="Timeout per external call in seconds (1-600)"),
    ] = None,
    device: Annotated[
        Optional[str],
        typer.Option("--device", help="Transcription device: cuda or cpu (auto-detect if not specified)"),
    ] = None,
    quiet: Annotated[
        bool,
        typer.Option("--quiet", "-q", help="Suppress progress output"),
    ] = False,
) -> None:
    """Chunk, upload, transcribe and extract frames from a media file.

    Exits with 0 on success, 2 on partial success and 1 on failure.

    Example:
        chunkflow process lecture.mp4 -t 00:01:30 -t 00:12:05 -o result.json
    """
    log_level = logging.WARNING if quiet else logging.INFO
    get_logger("chunkflow", level=log_level)

    try:
        config = PipelineConfig(
            project_id=project_id,
            output_dir=str(store_dir) if store_dir is not None else None,
            call_timeout=timeout,
            resume=not no_resume,
            device=device,
            transcription=TranscriptionOptions(whisper_model=whisper_model),
        )
        pipeline = Pipeline(config)

        observer = None
        if not quiet:
            observer = TqdmWorkflowObserver()

            def on_event(event: ProgressEvent) -> None:
                workflow = pipeline.registry.get(event.workflow_id)
                if workflow is not None:
                    observer(workflow.snapshot())

            pipeline.registry.events.subscribe(on_event)

        try:
            result = pipeline.process(source, timestamps=timestamp or None, transcribe=transcribe)
        finally:
            if observer is not None:
                observer.close()

    except PipelineCancelled as e:
        typer.secho(f"Cancelled: {e}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(EXIT_FAILURE)
    except PipelineError as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_FAILURE)
    except (ValueError, FileNotFoundError) as e:
        typer.secho(f"Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_FAILURE)
    except Exception as e:
        typer.secho(f"Unexpected error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(EXIT_FAILURE)

    json_output = result.to_json(indent=2)
    if output:
        output.write_text(json_output)
        if not quiet:
            typer.echo(f"Output written to: {output}")
    else:
        typer.echo(json_output)

    if transcript is not None and result.transcript is not None:
        transcript.write_text(result.transcript.to_markdown(title=source.stem))
        if not quiet:
            typer.echo(f"Transcript written to: {transcript}")

    if result.outcome == JobOutcome.PARTIALLY_SUCCEEDED:
        typer.secho(f"Warning: {result.summary}", fg=typer.colors.YELLOW, err=True)
        raise typer.Exit(EXIT_PARTIAL)


@app.command()
def info() -> None:
    """Show system information, supported formats and default limits."""
    typer.echo(f"chunkflow v{__version__}")
    typer.echo("")

    device_info = get_device_info()
    typer.echo("Hardware Detection:")
    typer.echo(f"  Device: {device_info.device}")
    typer.echo(f"  Name: {device_info.name}")
    if device_info.cuda_devices:
        typer.echo(f"  CUDA devices: {device_info.cuda_devices}")
    if device_info.cpu_threads:
        typer.echo(f"  CPU threads: {device_info.cpu_threads}")

    typer.echo("")
    typer.echo("Supported Formats:")
    typer.echo(f"  Video: {', '.join(sorted(SUPPORTED_VIDEO_FORMATS))}")
    typer.echo(f"  Audio: {', '.join(sorted(SUPPORTED_AUDIO_FORMATS))}")

    defaults = ChunkingOptions()
    typer.echo("")
    typer.echo("Default Limits:")
    typer.echo(f"  Chunk size: {defaults.max_chunk_bytes / MB:.0f} MB")
    typer.echo(
        f"  Chunk duration: {defaults.min_chunk_duration:.0f}-{defaults.max_chunk_duration:.0f}s"
    )
    typer.echo(
        f"  Chunking above: {defaults.max_asset_bytes / MB:.0f} MB or {defaults.max_asset_duration:.0f}s"
    )
    typer.echo(f"  Transcription limit: {TranscriptionOptions().max_bytes / MB:.0f} MB")


if __name__ == "__main__":
    app()
