"""Main pipeline orchestration for chunkflow."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable, Iterable
from pathlib import Path

from chunkflow.config import PipelineConfig
from chunkflow.models.schema import (
    Chunk,
    ChunkPlan,
    ChunkStatus,
    ExtractedFrame,
    JobOutcome,
    JobResult,
    MergedTranscript,
    OperationStatus,
    SourceAsset,
    TranscriptSegment,
)
from chunkflow.slides import SlideDeck
from chunkflow.stages.frames import (
    DecordFrameRenderer,
    FrameExtractionMapper,
    FrameLibrary,
    FrameRenderer,
    parse_timestamp,
)
from chunkflow.stages.ingest import FfprobeMediaProbe, MediaProbe, load_asset, validate_file
from chunkflow.stages.materialize import (
    FfmpegAudioExtractor,
    FfmpegMaterializer,
    MediaMaterializer,
    WholeFileMaterializer,
)
from chunkflow.stages.plan import plan_for_asset
from chunkflow.stages.transcribe import (
    MergeError,
    TranscriptionError,
    TranscriptionService,
    TranscriptionSubmitter,
    WhisperTranscriptionService,
    merge_segments,
)
from chunkflow.stages.upload import ChunkUploader, aggregate_progress
from chunkflow.store.blob import BlobStore, LocalBlobStore
from chunkflow.store.persistence import (
    JobState,
    JobStateStore,
    JsonPersistenceStore,
    PersistenceError,
    PersistenceStore,
)
from chunkflow.utils.logging import get_logger, log_large_job_hint
from chunkflow.workflow import ProgressRegistry, Workflow

logger = get_logger(__name__)

MaterializerFactory = Callable[[SourceAsset, ChunkPlan], MediaMaterializer]
RendererFactory = Callable[[SourceAsset], FrameRenderer]
AudioExtractorFactory = Callable[[SourceAsset, ChunkPlan], MediaMaterializer | None]


class PipelineError(Exception):
    """Error during pipeline processing."""

    pass


class PipelineCancelled(Exception):
    """The job was cancelled between chunks. Its state is saved for resuming."""

    pass


class CancellationToken:
    """Cooperative cancellation flag, checked by the pipeline between chunks."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled


def _default_materializer(asset: SourceAsset, plan: ChunkPlan) -> MediaMaterializer:
    if plan.is_chunked:
        return FfmpegMaterializer(asset.path)
    return WholeFileMaterializer(asset.path)


def _default_renderer(asset: SourceAsset) -> FrameRenderer:
    return DecordFrameRenderer(asset.path)


def _default_audio_extractor(asset: SourceAsset, plan: ChunkPlan) -> MediaMaterializer | None:
    # Audio files are transcribed as they are
    if asset.has_video and asset.has_audio:
        return FfmpegAudioExtractor(asset.path)
    return None


class Pipeline:
    """chunkflow processing pipeline.

    Probes an asset, splits it into bounded windows when it exceeds the
    configured limits, uploads and transcribes the windows one at a time,
    extracts frames for requested timestamps and merges whatever succeeded.

    Every collaborator can be swapped; the defaults run locally with
    ffprobe/ffmpeg, faster-whisper, decord and the filesystem.

    Example:
        >>> import chunkflow
        >>> pipeline = chunkflow.Pipeline()
        >>> result = pipeline.process("lecture.mp4", timestamps=["00:01:30"])
        >>> print(result.summary)
    """

    def __init__(
        self,
        config: PipelineConfig | None = None,
        store: BlobStore | None = None,
        probe: MediaProbe | None = None,
        materializer_factory: MaterializerFactory | None = None,
        transcription: TranscriptionService | None = None,
        renderer_factory: RendererFactory | None = None,
        audio_factory: AudioExtractorFactory | None = None,
        persistence: PersistenceStore | None = None,
        job_store: JobStateStore | None = None,
        registry: ProgressRegistry | None = None,
    ) -> None:
        """Initialize a chunkflow pipeline.

        Args:
            config: Pipeline configuration (defaults apply when omitted).
            store: Blob store for chunks and frames. Defaults to a
                LocalBlobStore under the output directory.
            probe: Media probe. Defaults to ffprobe.
            materializer_factory: Builds the materializer for an asset and plan.
            transcription: Transcription service. Defaults to faster-whisper,
                loaded on first use.
            renderer_factory: Builds the frame renderer for an asset.
            audio_factory: Builds the extractor whose audio is transcribed in
                place of each chunk, or returns None to send the chunks as they are.
            persistence: Where slides and frame libraries are saved.
            job_store: Where resumable job state is kept.
            registry: Progress registry shared with observers.
        """
        self.config = config or PipelineConfig()
        self._output_dir = Path(self.config.get_output_dir())

        self.store = store or LocalBlobStore(self._output_dir / "blobs")
        self.probe = probe or FfprobeMediaProbe()
        self.materializer_factory = materializer_factory or _default_materializer
        self.renderer_factory = renderer_factory or _default_renderer
        self.audio_factory = audio_factory or _default_audio_extractor
        self.persistence = persistence or JsonPersistenceStore(self._output_dir)
        self.job_store = job_store or JobStateStore(self._output_dir)
        self.registry = registry if registry is not None else ProgressRegistry()
        self._transcription = transcription
        self._timeout = self.config.get_call_timeout()

        logger.info(
            f"chunkflow pipeline initialized (project={self.config.project_id}, "
            f"output_dir={self._output_dir}, timeout={self._timeout:.0f}s)"
        )

    @property
    def transcription(self) -> TranscriptionService:
        if self._transcription is None:
            opts = self.config.transcription
            self._transcription = WhisperTranscriptionService(
                self.store,
                model_size=opts.whisper_model.value,
                device=self.config.get_device(),
                language=opts.language,
            )
        return self._transcription

    def process(
        self,
        source: str | Path,
        timestamps: Iterable[float | str] | None = None,
        transcribe: bool = True,
        deck: SlideDeck | None = None,
        library: FrameLibrary | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> JobResult:
        """Process a media file (blocking). See ``run`` for the arguments."""
        return asyncio.run(
            self.run(
                source,
                timestamps=timestamps,
                transcribe=transcribe,
                deck=deck,
                library=library,
                cancel_token=cancel_token,
            )
        )

    async def run(
        self,
        source: str | Path,
        timestamps: Iterable[float | str] | None = None,
        transcribe: bool = True,
        deck: SlideDeck | None = None,
        library: FrameLibrary | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> JobResult:
        """Process a media file.

        Args:
            source: Path to the input file.
            timestamps: Positions (seconds or clock strings) to extract frames at.
                The deck's own timestamps are added when a deck is given, and
                the extracted frames are added to the matching slides.
            transcribe: Send chunks for transcription.
            deck: Slides the job belongs to.
            library: Frames extracted by earlier jobs of the project.
            cancel_token: Checked before each chunk.

        Returns:
            JobResult; its outcome is succeeded or partially_succeeded.

        Raises:
            FileNotFoundError: If the source file does not exist.
            ValueError: If the format or a timestamp is invalid.
            PipelineError: If nothing could be produced.
            PipelineCancelled: If the token was cancelled mid-job.
        """
        source_path = Path(source)
        start_time = time.perf_counter()
        validate_file(source_path)

        requested = [parse_timestamp(ts) for ts in (timestamps or [])]
        if deck is not None:
            requested.extend(parse_timestamp(ts) for ts in deck.timestamps())
        cancel_token = cancel_token or CancellationToken()

        steps = [{"label": "Analyze", "weight": 1.0}, {"label": "Upload", "weight": 4.0}]
        if transcribe:
            steps.append({"label": "Transcribe", "weight": 4.0})
        if requested:
            steps.append({"label": "Frames", "weight": 1.0, "hard_fail": False})
        index = {step["label"]: i for i, step in enumerate(steps)}

        workflow = self.registry.start_workflow(f"Processing {source_path.name}", steps)
        logger.info(f"Processing: {source_path.name} (workflow {workflow.workflow_id})")

        try:
            result = await self._execute(
                workflow, index, source_path, requested, transcribe, deck, library, cancel_token
            )
        except (PipelineError, PipelineCancelled):
            raise
        except Exception as e:
            self._abort(workflow, e)
            raise

        elapsed = time.perf_counter() - start_time
        logger.info(f"Processing complete: {result.summary} in {elapsed:.2f}s")
        return result

    async def _execute(
        self,
        workflow: Workflow,
        index: dict[str, int],
        source_path: Path,
        requested: list[float],
        transcribe: bool,
        deck: SlideDeck | None,
        library: FrameLibrary | None,
        cancel_token: CancellationToken,
    ) -> JobResult:
        # Analyze
        workflow.update_step(index["Analyze"], 0, "Probing media")
        asset = await load_asset(source_path, self.probe)
        opts = self.config.chunking
        try:
            plan = plan_for_asset(
                asset,
                max_chunk_bytes=opts.max_chunk_bytes,
                min_chunk_duration=opts.min_chunk_duration,
                max_chunk_duration=opts.max_chunk_duration,
                max_asset_bytes=opts.max_asset_bytes,
                max_asset_duration=opts.max_asset_duration,
                assumed_bytes_per_second=opts.assumed_bytes_per_second,
                min_estimated_duration=opts.min_estimated_duration,
            )
        except ValueError as e:
            workflow.complete_step(index["Analyze"], False, str(e))
            workflow.set_summary(f"failed: {e}")
            raise PipelineError(f"Planning failed: {e}") from e

        if plan.estimated:
            asset = asset.model_copy(update={"duration": plan.total_duration, "duration_estimated": True})

        workflow.complete_step(
            index["Analyze"],
            True,
            f"{plan.count} part{'s' if plan.count != 1 else ''} of {plan.chunk_duration:.0f}s",
        )
        logger.info(
            f"Planned {plan.count} chunks for {plan.total_duration / 60:.1f} min "
            f"({asset.size_bytes / (1024 * 1024):.1f}MB)"
            + (" from an estimated duration" if plan.estimated else "")
        )
        log_large_job_hint(logger, chunk_count=plan.count, duration_hours=plan.total_duration / 3600)

        chunks, segments = self._restore(asset, plan, transcribe)

        await self._run_chunks(
            workflow, index, asset, plan, chunks, segments, transcribe, cancel_token
        )

        transcript = self._finish_chunks(workflow, index, plan, chunks, segments, transcribe)

        frames: list[ExtractedFrame] = []
        frames_failed = 0
        if requested:
            frames, frames_failed = await self._run_frames(
                workflow, index["Frames"], asset, requested, deck, library
            )

        succeeded = sum(1 for c in chunks if c.status == ChunkStatus.COMPLETE)
        if succeeded < plan.count:
            outcome = JobOutcome.PARTIALLY_SUCCEEDED
            summary = f"partially succeeded ({succeeded} of {plan.count})"
        elif frames_failed:
            outcome = JobOutcome.PARTIALLY_SUCCEEDED
            total_frames = len(frames) + frames_failed
            summary = f"partially succeeded ({len(frames)} of {total_frames} frames)"
        else:
            outcome = JobOutcome.SUCCEEDED
            summary = "succeeded"

        workflow.set_summary(summary)
        if deck is not None:
            await deck.flush()

        return JobResult(
            asset=asset,
            plan=plan,
            chunks=chunks,
            transcript=transcript,
            frames=frames,
            outcome=outcome,
            summary=summary,
            snapshot=workflow.snapshot(),
        )

    def _abort(self, workflow: Workflow, error: Exception) -> None:
        """Fail every unfinished step after an unexpected error."""
        message = f"{type(error).__name__}: {error}"
        for i, step in enumerate(workflow.steps):
            if not step.is_terminal:
                workflow.complete_step(i, False, message)
        workflow.set_summary(f"failed: {message}")
        logger.error(f"{workflow.label} failed unexpectedly: {message}")

    def _restore(
        self, asset: SourceAsset, plan: ChunkPlan, transcribe: bool
    ) -> tuple[list[Chunk], dict[int, TranscriptSegment]]:
        """Fresh chunks for the plan, reusing finished work from an earlier run.

        A complete chunk is reused as it is when its transcript is stored or
        none is wanted. A chunk completed by a run without transcription goes
        back to UPLOADED, so only its transcription is left to do.
        """
        chunks = [Chunk(window=window) for window in plan.windows]
        segments: dict[int, TranscriptSegment] = {}

        if not self.config.resume:
            return chunks, segments

        try:
            state = self.job_store.load(asset.asset_id)
        except PersistenceError as e:
            logger.warning(f"Ignoring unreadable job state: {e}")
            return chunks, segments

        if state is None:
            return chunks, segments
        if state.plan != plan:
            logger.info(f"Stored plan for {asset.asset_id} differs, starting over")
            return chunks, segments

        stored_segments = {s.chunk_index: s for s in state.segments}
        for stored in state.chunks:
            if stored.status != ChunkStatus.COMPLETE:
                continue
            if stored.index in stored_segments:
                chunks[stored.index] = stored
                segments[stored.index] = stored_segments[stored.index]
            elif not transcribe:
                chunks[stored.index] = stored
            elif stored.storage_ref is not None:
                chunks[stored.index] = stored.model_copy(update={"status": ChunkStatus.UPLOADED})

        resumed = sum(1 for c in chunks if c.status == ChunkStatus.COMPLETE)
        untranscribed = sum(1 for c in chunks if c.status == ChunkStatus.UPLOADED)
        if resumed or untranscribed:
            logger.info(
                f"Resuming {asset.asset_id}: {resumed} of {plan.count} chunks already complete"
                + (f", {untranscribed} uploaded but not transcribed" if untranscribed else "")
            )
        return chunks, segments

    def _save_state(
        self, asset: SourceAsset, plan: ChunkPlan, chunks: list[Chunk], segments: dict[int, TranscriptSegment]
    ) -> None:
        state = JobState(
            asset_id=asset.asset_id,
            plan=plan,
            chunks=chunks,
            segments=[segments[i] for i in sorted(segments)],
        )
        try:
            self.job_store.save(state)
        except PersistenceError as e:
            logger.warning(f"Could not save job state: {e}")

    async def _run_chunks(
        self,
        workflow: Workflow,
        index: dict[str, int],
        asset: SourceAsset,
        plan: ChunkPlan,
        chunks: list[Chunk],
        segments: dict[int, TranscriptSegment],
        transcribe: bool,
        cancel_token: CancellationToken,
    ) -> None:
        total = len(chunks)
        done = 0
        upload_step = index["Upload"]
        transcribe_step = index.get("Transcribe")

        def on_chunk_progress(chunk_index: int, percent: float) -> None:
            workflow.update_step(
                upload_step,
                aggregate_progress(done, percent, total),
                f"Uploading part {chunk_index + 1} of {total}",
            )

        uploader = ChunkUploader(
            self.store,
            project_id=self.config.project_id,
            asset_id=asset.asset_id,
            suffix=asset.suffix,
            timeout=self._timeout,
            attempts=self.config.max_attempts,
            on_chunk_progress=on_chunk_progress,
        )
        submitter = None
        if transcribe:
            submitter = TranscriptionSubmitter(
                self.transcription,
                max_bytes=self.config.transcription.max_bytes,
                timeout=self._timeout,
                attempts=self.config.max_attempts,
            )
        materializer = self.materializer_factory(asset, plan)
        extractor = self.audio_factory(asset, plan) if transcribe else None

        try:
            for chunk in chunks:
                if chunk.status == ChunkStatus.COMPLETE:
                    done += 1
                    continue

                if cancel_token.cancelled:
                    self._cancel(workflow, asset, plan, chunks, segments)

                logger.debug(f"Processing {chunk.window.label}")
                if chunk.status == ChunkStatus.UPLOADED:
                    # Uploaded by an earlier run that did not transcribe
                    ref = chunk.storage_ref
                else:
                    ref = await uploader.process_chunk(chunk, materializer)

                if ref is not None and submitter is not None and transcribe_step is not None:
                    if extractor is not None and chunk.audio_ref is None:
                        workflow.update_step(
                            transcribe_step,
                            aggregate_progress(done, 0, total),
                            f"Extracting audio for part {chunk.index + 1} of {total}",
                        )
                        await uploader.upload_audio(chunk, extractor)
                    workflow.update_step(
                        transcribe_step,
                        aggregate_progress(done, 0, total),
                        f"Transcribing part {chunk.index + 1} of {total}",
                    )
                    try:
                        segments[chunk.index] = await submitter.submit_chunk(chunk)
                    except TranscriptionError as e:
                        logger.warning(f"Chunk {chunk.index} was not transcribed: {e}")
                elif ref is not None:
                    chunk.transition(ChunkStatus.COMPLETE)

                done += 1
                workflow.update_step(
                    upload_step, aggregate_progress(done, 0, total), f"Processed {done} of {total} parts"
                )
                if transcribe_step is not None:
                    workflow.update_step(transcribe_step, aggregate_progress(done, 0, total))
                self._save_state(asset, plan, chunks, segments)
        except PipelineCancelled:
            raise
        except Exception:
            # Keep the finished chunks for the next run
            self._save_state(asset, plan, chunks, segments)
            raise

    def _cancel(
        self,
        workflow: Workflow,
        asset: SourceAsset,
        plan: ChunkPlan,
        chunks: list[Chunk],
        segments: dict[int, TranscriptSegment],
    ) -> None:
        self._save_state(asset, plan, chunks, segments)
        running = [i for i, step in enumerate(workflow.steps) if step.status == OperationStatus.RUNNING]
        if not running:
            # Cancelled before the first chunk: fail the stage that was about to start
            running = [next(i for i, step in enumerate(workflow.steps) if not step.is_terminal)]
        for i in running:
            workflow.complete_step(i, False, "Cancelled")

        complete = sum(1 for c in chunks if c.status == ChunkStatus.COMPLETE)
        workflow.set_summary(f"cancelled ({complete} of {len(chunks)} complete)")
        logger.warning(f"Job for {asset.asset_id} cancelled with {complete} of {len(chunks)} chunks complete")
        raise PipelineCancelled(f"Cancelled after {complete} of {len(chunks)} chunks")

    def _finish_chunks(
        self,
        workflow: Workflow,
        index: dict[str, int],
        plan: ChunkPlan,
        chunks: list[Chunk],
        segments: dict[int, TranscriptSegment],
        transcribe: bool,
    ) -> MergedTranscript | None:
        total = len(chunks)
        uploaded = sum(1 for c in chunks if c.storage_ref is not None)
        errors = {c.index: c.error for c in chunks if c.status == ChunkStatus.FAILED and c.error}

        if uploaded == 0:
            workflow.complete_step(index["Upload"], False, f"None of {total} parts could be uploaded")
        else:
            workflow.complete_step(
                index["Upload"], True, f"Uploaded {uploaded} of {total} parts", partial=uploaded < total
            )

        if not transcribe:
            if uploaded == 0:
                workflow.set_summary("failed")
                raise PipelineError(f"Processing failed: none of {total} chunks could be uploaded")
            return None

        try:
            transcript = merge_segments(segments.values(), plan, errors=errors)
        except MergeError as e:
            workflow.complete_step(index["Transcribe"], False, str(e))
            workflow.set_summary("failed")
            raise PipelineError(f"Processing failed: {e}") from e

        workflow.complete_step(
            index["Transcribe"],
            True,
            f"Transcribed {transcript.succeeded_chunks} of {transcript.total_chunks} parts",
            partial=transcript.is_partial,
        )
        return transcript

    async def _run_frames(
        self,
        workflow: Workflow,
        step: int,
        asset: SourceAsset,
        requested: list[float],
        deck: SlideDeck | None,
        library: FrameLibrary | None,
    ) -> tuple[list[ExtractedFrame], int]:
        """Extract frames for the requested timestamps. Returns (frames, failures)."""
        unique = len({round(ts * 1000) for ts in requested})
        if not asset.has_video:
            workflow.complete_step(step, False, "Asset has no video track")
            return [], unique

        if library is None:
            library = FrameLibrary(self._load_frames())

        mapper = FrameExtractionMapper(
            library,
            self.renderer_factory(asset),
            self.store,
            project_id=self.config.project_id,
            persistence=self.persistence,
            deck=deck,
            timeout=self._timeout,
            attempts=self.config.max_attempts,
            on_progress=lambda done, total: workflow.update_step(
                step, done / total * 100, f"Extracted {done} of {total} frames"
            ),
        )
        workflow.update_step(step, 0, f"Extracting {unique} frames")
        frames = await mapper.request_frames(requested)
        if deck is not None:
            mapper.assign_deck_frames()
        await mapper.flush()

        failed = len(mapper.failed)
        if frames:
            workflow.complete_step(step, True, f"{len(frames)} of {unique} frames ready", partial=failed > 0)
        else:
            workflow.complete_step(step, False, f"None of {unique} frames could be extracted")
        return frames, failed

    def _load_frames(self) -> list[ExtractedFrame]:
        load = getattr(self.persistence, "load_frames", None)
        if load is None:
            return []
        try:
            return load(self.config.project_id)
        except PersistenceError as e:
            logger.warning(f"Ignoring unreadable frame library: {e}")
            return []
