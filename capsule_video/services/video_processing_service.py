"""Video processing orchestrator."""

import asyncio
import os
import shutil
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from ..config import settings
from ..core.abort import AbortSignal
from ..core.exceptions import AbortError, ProcessingInProgressError
from ..core.interfaces import ProcessingRepository, ProgressEventSink
from ..repositories.media_store_repo import MediaStoreRepository
from ..schemas.video import (
    DanglingFile,
    ProcessedFile,
    ProcessingOptions,
    ProcessingResult,
    ProbeResult,
    TranscodeOutcome,
    VideoProcessingEvent,
    utcnow,
)
from ..utils.constants import (
    PROGRESS_COMPLETE,
    PROGRESS_FINALIZING,
    PROGRESS_PROBED,
    PROGRESS_START,
    PROGRESS_TRANSCODE_END,
    PROGRESS_TRANSCODE_START,
    TARGET_CODEC_ALIASES,
    VIDEO_PROCESSING_EVENT,
    EventStatus,
    ProcessingStatus,
    RunOutcome,
    VideoQuality,
)
from ..utils.helpers import job_key, map_progress, namespace_key, normalize_namespace
from ..utils.logger import bind_video_context, clear_video_context, get_logger
from .media_sources import VideoInput
from .reconciler_service import ReconcilerService
from .transcoder_service import TranscoderService

logger = get_logger(__name__)

ProgressHandler = Callable[[int, str], None]
FinalizeHook = Callable[[ProcessingResult], Awaitable[None]]


@dataclass
class ActiveJob:
    """In-memory record of a run in progress."""

    file_id: str
    namespace: List[str]
    started_at: datetime = field(default_factory=utcnow)
    status: ProcessingStatus = ProcessingStatus.PENDING
    progress: int = 0
    temp_dir: Optional[str] = None


class _ProgressPersister:
    """Writes the latest progress value with at most one write in flight."""

    def __init__(self, repository: ProcessingRepository, video_id: str):
        self.repository = repository
        self.video_id = video_id
        self._pending: Optional[int] = None
        self._task: Optional[asyncio.Task] = None

    def request(self, progress: int) -> None:
        self._pending = progress
        if self._task is None or self._task.done():
            self._task = asyncio.get_running_loop().create_task(self._drain())

    async def _drain(self) -> None:
        while self._pending is not None:
            value, self._pending = self._pending, None
            try:
                await self.repository.update_video_processing_status(
                    self.video_id, processing_progress=value
                )
            except Exception as e:
                logger.warning("Failed to persist progress", progress=value, error=str(e))

    async def flush(self) -> None:
        if self._task is not None:
            await self._task


class _RunReporter:
    """Progress of one run: never decreases, fans out to every listener."""

    def __init__(
        self,
        video_id: str,
        job: ActiveJob,
        on_progress: Optional[ProgressHandler],
        events: Optional[ProgressEventSink],
        persister: Optional[_ProgressPersister],
    ):
        self.video_id = video_id
        self.job = job
        self.on_progress = on_progress
        self.events = events
        self.persister = persister
        self.current = 0

    def report(self, progress: int, message: str) -> None:
        progress = max(self.current, min(progress, PROGRESS_COMPLETE - 1))
        self.current = progress
        self.job.progress = progress
        if self.on_progress:
            self.on_progress(progress, message)
        if self.persister:
            self.persister.request(progress)
        self.publish(EventStatus.PROCESSING, message)

    def complete(self, message: str, metadata: Dict[str, Any]) -> None:
        self.current = PROGRESS_COMPLETE
        self.job.progress = PROGRESS_COMPLETE
        if self.on_progress:
            self.on_progress(PROGRESS_COMPLETE, message)
        self.publish(EventStatus.COMPLETED, message, metadata)

    def publish(
        self, status: EventStatus, message: str, metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        if self.events is None:
            return
        event = VideoProcessingEvent(
            progress=self.current, status=status, message=message, metadata=metadata
        )
        try:
            self.events.emit(VIDEO_PROCESSING_EVENT, {"video_id": self.video_id}, event)
        except Exception as e:
            logger.warning("Failed to emit progress event", error=str(e))


class VideoProcessingService:
    """
    Runs one video through probe, optional H.264 conversion and finalization.

    Every run lives in a namespace-scoped workspace. Abort wins over every
    other outcome: once the signal has fired, a run can only end aborted.
    Runs for different ids are independent. A run for an id that is still
    being processed, here or by another process, is refused with
    ProcessingInProgressError and leaves the running one untouched.
    """

    def __init__(
        self,
        transcoder: TranscoderService,
        store: MediaStoreRepository,
        reconciler: Optional[ReconcilerService] = None,
        repository: Optional[ProcessingRepository] = None,
        events: Optional[ProgressEventSink] = None,
    ):
        self.transcoder = transcoder
        self.store = store
        self.reconciler = reconciler or ReconcilerService(store)
        self.repository = repository
        self.events = events
        self.active_jobs: Dict[str, ActiveJob] = {}

    async def process_video_from_file(
        self,
        video: VideoInput,
        namespace: Sequence[str],
        on_progress: Optional[ProgressHandler] = None,
        abort_signal: Optional[AbortSignal] = None,
        options: Optional[ProcessingOptions] = None,
        finalize: Optional[FinalizeHook] = None,
    ) -> ProcessingResult:
        """
        Process a video end to end and return where the result is.

        ``finalize`` runs during finalization with the result, before the
        run is recorded as completed. Whatever it has written is kept when
        an abort lands after it; the run still ends aborted. Raises
        AbortError when the signal fires at any point, and re-raises the
        original error after recording it when the run fails.
        """
        segments = normalize_namespace(namespace)
        if abort_signal is not None and abort_signal.aborted:
            raise AbortError(reason=abort_signal.reason)

        options = options or ProcessingOptions(quality=VideoQuality(settings.default_quality))
        key = job_key(video.id, segments)
        if key in self.active_jobs or self.store.is_actively_processing(video.id, segments):
            raise ProcessingInProgressError(f"File {video.id} is already being processed")
        job = ActiveJob(file_id=video.id, namespace=segments)
        self.active_jobs[key] = job
        persister = _ProgressPersister(self.repository, video.id) if self.repository else None
        reporter = _RunReporter(video.id, job, on_progress, self.events, persister)

        def checkpoint() -> None:
            if abort_signal is not None and abort_signal.aborted:
                raise AbortError(reason=abort_signal.reason)

        bind_video_context(video.id, namespace_key(segments))
        output_path: Optional[Path] = None
        acquired = False
        try:
            logger.info("Starting video processing", force_convert=options.force_convert)
            workspace = await self.store.materialize_local_copy(video, segments)
            acquired = True
            reporter.report(PROGRESS_START, "Starting video processing")
            job.temp_dir = workspace.temp_dir
            output_path = Path(workspace.output_path)
            checkpoint()

            job.status = ProcessingStatus.PROBING
            probe = await self.transcoder.probe(workspace.input_path)
            checkpoint()
            reporter.report(PROGRESS_PROBED, "Video analyzed")
            logger.info(
                "Probed video",
                codec=probe.codec,
                duration=probe.duration,
                width=probe.width,
                height=probe.height,
            )

            if probe.codec.lower() in TARGET_CODEC_ALIASES and not options.force_convert:
                outcome = await self._keep_original(workspace.input_path, output_path, probe)
                checkpoint()
                reporter.report(PROGRESS_TRANSCODE_END, "Video already H.264")
            else:
                job.status = ProcessingStatus.TRANSCODING
                reporter.report(PROGRESS_TRANSCODE_START, "Converting video to H.264")

                def on_transcode_progress(percent: float) -> None:
                    reporter.report(
                        map_progress(percent, PROGRESS_TRANSCODE_START, PROGRESS_TRANSCODE_END),
                        f"Converting video: {round(percent)}%",
                    )

                outcome = await self.transcoder.transcode_to_standard_codec(
                    workspace.input_path,
                    output_path,
                    on_transcode_progress,
                    abort_signal,
                    duration=probe.duration,
                    quality=options.quality,
                )
                # The encoder may have finished just as the signal fired
                checkpoint()
                reporter.report(PROGRESS_TRANSCODE_END, "Conversion complete")

            reporter.report(PROGRESS_FINALIZING, "Finalizing")
            metadata = probe
            if outcome.was_converted:
                metadata = await self.transcoder.probe(outcome.output_path)
            checkpoint()

            result = ProcessingResult(
                file_id=video.id,
                output_path=outcome.output_path,
                was_converted=outcome.was_converted,
                final_codec=outcome.final_codec,
                new_size=os.path.getsize(outcome.output_path),
                metadata=metadata,
            )
            if finalize is not None:
                checkpoint()
                await finalize(result)
            checkpoint()
        except BaseException as e:
            if not acquired and isinstance(e, ProcessingInProgressError):
                # Another process owns the workspace
                raise
            # Task cancellation ends the run like an abort
            stopped = isinstance(e, (AbortError, asyncio.CancelledError))
            if stopped or (abort_signal is not None and abort_signal.aborted):
                await self._record_abort(video.id, segments, job, reporter, persister, output_path)
                if stopped:
                    raise
                raise AbortError(reason=abort_signal.reason) from e
            if isinstance(e, Exception):
                await self._record_failure(video.id, segments, job, reporter, persister, e)
            raise
        else:
            await self._record_completion(video.id, segments, job, reporter, persister, result)
            return result
        finally:
            if self.active_jobs.get(key) is job:
                del self.active_jobs[key]
            clear_video_context()

    async def _keep_original(
        self, input_path: str, output_path: Path, probe: ProbeResult
    ) -> TranscodeOutcome:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, shutil.copyfile, input_path, output_path)
        return TranscodeOutcome(
            was_converted=False,
            output_path=str(output_path),
            final_codec=probe.codec,
        )

    async def _record_completion(
        self,
        video_id: str,
        namespace: List[str],
        job: ActiveJob,
        reporter: _RunReporter,
        persister: Optional[_ProgressPersister],
        result: ProcessingResult,
    ) -> None:
        job.status = ProcessingStatus.COMPLETED
        self.store.mark_finished(video_id, namespace, RunOutcome.COMPLETED)
        if persister:
            await persister.flush()
        if self.repository:
            await self.repository.update_video_processing_status(
                video_id,
                is_processed=True,
                processing_progress=PROGRESS_COMPLETE,
                processing_error=None,
            )
        reporter.complete(
            "Processing complete",
            {
                "wasConverted": result.was_converted,
                "codec": result.final_codec,
                "size": result.new_size,
                "duration": result.metadata.duration,
                "width": result.metadata.width,
                "height": result.metadata.height,
            },
        )
        logger.info(
            "Video processing completed",
            was_converted=result.was_converted,
            codec=result.final_codec,
            size=result.new_size,
        )

    async def _record_abort(
        self,
        video_id: str,
        namespace: List[str],
        job: ActiveJob,
        reporter: _RunReporter,
        persister: Optional[_ProgressPersister],
        output_path: Optional[Path],
    ) -> None:
        job.status = ProcessingStatus.ABORTED
        if output_path is not None:
            output_path.unlink(missing_ok=True)
        self.store.mark_finished(video_id, namespace, RunOutcome.ABORTED)
        if persister:
            await persister.flush()
        if self.repository:
            try:
                await self.repository.update_video_processing_status(video_id, is_processed=False)
            except Exception as e:
                logger.error("Failed to record aborted run", error=str(e))
        reporter.publish(EventStatus.CANCELLED, "Processing cancelled")
        logger.info("Video processing aborted", progress=reporter.current)

    async def _record_failure(
        self,
        video_id: str,
        namespace: List[str],
        job: ActiveJob,
        reporter: _RunReporter,
        persister: Optional[_ProgressPersister],
        error: Exception,
    ) -> None:
        job.status = ProcessingStatus.FAILED
        message = str(error) or type(error).__name__
        self.store.mark_finished(video_id, namespace, RunOutcome.FAILED)
        if persister:
            await persister.flush()
        if self.repository:
            try:
                await self.repository.update_video_processing_status(
                    video_id, is_processed=False, processing_error=message
                )
            except Exception as e:
                logger.error("Failed to record processing error", error=str(e))
        reporter.publish(EventStatus.FAILED, message)
        logger.error(
            "Video processing failed",
            error=message,
            error_type=type(error).__name__,
            progress=reporter.current,
        )

    async def get_dangling_files(self, namespace: Sequence[str]) -> List[DanglingFile]:
        """Workspaces in namespace left behind by interrupted runs."""
        return await self.reconciler.list_dangling(namespace)

    async def cleanup(self, file_id: str, namespace: Sequence[str]) -> bool:
        """Remove the workspace of file_id. Refused while any process is working on it."""
        if self.is_processing(file_id, namespace) or self.store.is_actively_processing(
            file_id, namespace
        ):
            raise ProcessingInProgressError(
                f"Cannot clean up {file_id} while it is being processed"
            )
        return await self.reconciler.cleanup(file_id, namespace)

    def get_processed_file(self, file_id: str, namespace: Sequence[str]) -> ProcessedFile:
        return self.store.get_processed_file(file_id, namespace)

    def is_processing(self, file_id: str, namespace: Sequence[str]) -> bool:
        return job_key(file_id, normalize_namespace(namespace)) in self.active_jobs

    def get_progress(self, file_id: str, namespace: Sequence[str]) -> Optional[int]:
        job = self.active_jobs.get(job_key(file_id, normalize_namespace(namespace)))
        return job.progress if job else None
