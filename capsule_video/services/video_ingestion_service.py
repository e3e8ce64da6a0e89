"""Upload handling and background runs of the processing pipeline."""

from typing import Any, Dict, Optional, Sequence
from fastapi import UploadFile

from ..config import settings, get_redis
from ..core.abort import AbortSignal
from ..core.exceptions import NotFoundError, ProcessingInProgressError
from ..middleware.validation import validate_video_upload
from ..repositories.storage_repo import StorageRepository
from ..repositories.video_file_repo import ProcessingStatusRepository
from ..schemas.video import ProcessingOptions, ProcessingResult
from ..utils.constants import CAPSULE_VIDEO_NAMESPACE, OUTPUT_MIME_TYPE
from ..utils.helpers import (
    generate_video_id,
    job_key,
    namespace_key,
    normalize_namespace,
    parse_namespace,
)
from ..utils.logger import get_logger
from .job_registry import ProcessingTaskRegistry
from .media_sources import StoredObjectSource, VideoInput
from .remote_abort import request_abort
from .video_processing_service import VideoProcessingService

logger = get_logger(__name__)


class VideoIngestionService:
    """
    Accepts uploads and drives them through the processing pipeline.

    The original is stored first and a placeholder record created, then
    processing runs in the background. A new run for the same video aborts
    the one still in flight.
    """

    def __init__(
        self,
        processor: VideoProcessingService,
        storage: StorageRepository,
        videos: ProcessingStatusRepository,
        registry: ProcessingTaskRegistry,
    ):
        self.processor = processor
        self.storage = storage
        self.videos = videos
        self.registry = registry

    async def handle_upload(
        self,
        file: UploadFile,
        namespace: Sequence[str] = CAPSULE_VIDEO_NAMESPACE,
        options: Optional[ProcessingOptions] = None,
    ) -> Dict[str, Any]:
        """
        Store an uploaded video, create its record and schedule processing.
        Returns the new video record.
        """
        validate_video_upload(file)
        segments = normalize_namespace(namespace)
        video_id = generate_video_id()
        filename = file.filename or "video.mp4"
        content_type = file.content_type or "application/octet-stream"
        storage_key = self.storage.generate_key(video_id, filename, namespace_key(segments))

        await file.seek(0)
        file_size = await self.storage.save_fileobj(file.file, storage_key, content_type)

        video = await self.videos.create_video(
            video_id=video_id,
            namespace=namespace_key(segments),
            original_filename=filename,
            content_type=content_type,
            file_size=file_size,
            storage_key=storage_key,
        )
        logger.info(
            "Video uploaded",
            video_id=video_id,
            namespace=namespace_key(segments),
            size=file_size,
        )

        await self.schedule(video_id, segments, options)
        return video

    async def schedule(
        self,
        video_id: str,
        namespace: Sequence[str],
        options: Optional[ProcessingOptions] = None,
    ) -> None:
        """Start processing in the background without waiting for it."""
        segments = normalize_namespace(namespace)
        if settings.use_task_queue:
            # Imported here to avoid circular imports
            from ..tasks.transcoding import process_video

            process_video.delay(
                video_id=video_id,
                namespace=namespace_key(segments),
                options=options.model_dump(mode="json") if options else None,
            )
            logger.info("Queued video processing", video_id=video_id)
            return

        async def run(signal: AbortSignal) -> ProcessingResult:
            return await self.run_pipeline(video_id, segments, signal, options)

        await self.registry.start(
            job_key(video_id, segments),
            run,
            timeout_seconds=settings.processing_timeout_seconds,
        )

    async def run_pipeline(
        self,
        video_id: str,
        namespace: Sequence[str],
        abort_signal: Optional[AbortSignal] = None,
        options: Optional[ProcessingOptions] = None,
    ) -> ProcessingResult:
        """
        Process a stored video and replace the original with the result.
        A video whose source cannot be found is recorded as failed. The
        original is replaced during finalization, so an abort arriving
        after that leaves the converted file in place; the next run finds
        it already H.264 and completes without converting again.
        """
        segments = normalize_namespace(namespace)
        try:
            video = await self.videos.get_video(video_id)
            if video is None:
                raise NotFoundError(f"Video not found: {video_id}")
            storage_key = await self.videos.get_video_source(video_id)
        except NotFoundError as e:
            logger.error("Cannot process video without a source", video_id=video_id, error=str(e))
            await self.videos.update_video_processing_status(
                video_id, is_processed=False, processing_error=str(e)
            )
            raise

        source = StoredObjectSource(
            storage_key,
            self.storage,
            content_type=video["content_type"],
            filename=video["original_filename"],
        )

        async def store_result(result: ProcessingResult) -> None:
            if result.was_converted:
                await self.storage.replace_from_path(
                    storage_key, result.output_path, OUTPUT_MIME_TYPE
                )
            await self.videos.update_media_metadata(
                video_id,
                duration=result.metadata.duration,
                width=result.metadata.width,
                height=result.metadata.height,
                codec=result.final_codec,
                file_size=result.new_size,
                content_type=OUTPUT_MIME_TYPE if result.was_converted else None,
            )

        try:
            result = await self.processor.process_video_from_file(
                VideoInput(id=video_id, source=source),
                segments,
                abort_signal=abort_signal,
                options=options,
                finalize=store_result,
            )
        except ProcessingInProgressError:
            # The workspace belongs to the run in progress
            logger.warning("Video is already being processed", video_id=video_id)
            raise
        except BaseException:
            await self.processor.reconciler.cleanup(video_id, segments)
            raise
        await self.processor.reconciler.cleanup(video_id, segments)
        return result

    async def retry(
        self, video_id: str, options: Optional[ProcessingOptions] = None
    ) -> Dict[str, Any]:
        """Clear a recorded failure and process the video again."""
        video = await self.videos.reset_processing(video_id)
        if video is None:
            raise NotFoundError(f"Video not found: {video_id}")
        await self.schedule(video_id, parse_namespace(video["namespace"]), options)
        logger.info("Video processing retried", video_id=video_id)
        return video

    async def abort(self, video_id: str, namespace: Sequence[str]) -> bool:
        """
        Abort the background run of a video. Runs in task queue workers are
        reached through Redis. False when none is running.
        """
        key = job_key(video_id, normalize_namespace(namespace))
        if self.registry.abort(key):
            return True
        if settings.use_task_queue:
            return await request_abort(await get_redis(), key)
        return False
