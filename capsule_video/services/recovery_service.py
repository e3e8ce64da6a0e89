"""Crash recovery: resume unfinished videos and settle leftover workspaces."""

from typing import Dict, List, Sequence

from ..repositories.storage_repo import StorageRepository
from ..repositories.video_file_repo import ProcessingStatusRepository
from ..schemas.video import DanglingFile
from ..utils.constants import OUTPUT_MIME_TYPE, PROGRESS_COMPLETE, RunOutcome
from ..utils.helpers import job_key, namespace_key, normalize_namespace, parse_namespace
from ..utils.logger import get_logger
from .transcoder_service import TranscoderService
from .video_ingestion_service import VideoIngestionService
from .video_processing_service import VideoProcessingService

logger = get_logger(__name__)


def _finished_cleanly(entry: DanglingFile) -> bool:
    """Crashed mid-run or completed; failed and aborted outputs are never kept."""
    return entry.lock is None or entry.lock.outcome in (None, RunOutcome.COMPLETED)


class VideoRecoveryService:
    """
    Runs after a restart.

    Dangling workspaces are settled first: completed outputs are stored,
    everything else is removed. Then every video that never finished is
    scheduled again, one background run per video.
    """

    def __init__(
        self,
        ingestion: VideoIngestionService,
        processor: VideoProcessingService,
        transcoder: TranscoderService,
        storage: StorageRepository,
        videos: ProcessingStatusRepository,
    ):
        self.ingestion = ingestion
        self.processor = processor
        self.transcoder = transcoder
        self.storage = storage
        self.videos = videos

    async def resume_incomplete_videos(self) -> int:
        """
        Schedule processing for every unfinished video and return how many.
        Does not wait for the runs themselves.
        """
        incomplete = await self.videos.find_incomplete_videos()
        scheduled = 0
        for video in incomplete:
            segments = parse_namespace(video["namespace"])
            if self.ingestion.registry.is_running(job_key(video["id"], segments)):
                continue
            await self.ingestion.schedule(video["id"], segments)
            scheduled += 1

        if scheduled:
            logger.info("Resumed incomplete videos", count=scheduled)
        return scheduled

    async def recover_all(self) -> Dict[str, int]:
        """Settle dangling workspaces in every namespace."""
        totals = {"recovered": 0, "cleaned": 0}
        for namespace in self.processor.store.all_namespaces():
            counts = await self.recover_dangling_files(namespace)
            totals["recovered"] += counts["recovered"]
            totals["cleaned"] += counts["cleaned"]
        return totals

    async def recover_dangling_files(self, namespace: Sequence[str]) -> Dict[str, int]:
        """
        Store completed outputs of known videos, remove every other leftover.
        Returns counts of recovered and cleaned workspaces.
        """
        segments = normalize_namespace(namespace)
        dangling = await self.processor.get_dangling_files(segments)
        counts = {"recovered": 0, "cleaned": 0}
        if not dangling:
            return counts

        logger.info(
            "Found dangling files",
            count=len(dangling),
            namespace=namespace_key(segments),
        )
        for entry in dangling:
            try:
                if await self._settle(entry, segments):
                    counts["recovered"] += 1
                else:
                    counts["cleaned"] += 1
            except Exception as e:
                logger.error(
                    "Failed to recover dangling file",
                    file_id=entry.file_id,
                    error=str(e),
                )
                await self.processor.reconciler.cleanup(entry.file_id, segments)
                counts["cleaned"] += 1
        return counts

    async def _settle(self, entry: DanglingFile, namespace: List[str]) -> bool:
        video_id = entry.associated_video_id or entry.file_id
        video = await self.videos.get_video(video_id)

        if video is None:
            logger.warning("Dangling file has no video record, cleaning up", file_id=entry.file_id)
        elif video["is_processed"]:
            logger.info("Dangling file already processed, cleaning up", file_id=entry.file_id)
        elif entry.is_complete and entry.output_path and _finished_cleanly(entry):
            await self._store_completed(video_id, video["storage_key"], entry.output_path)
            await self.processor.reconciler.cleanup(entry.file_id, namespace)
            logger.info("Recovered completed file", file_id=entry.file_id)
            return True
        else:
            logger.info("Cleaning up interrupted file", file_id=entry.file_id)

        await self.processor.reconciler.cleanup(entry.file_id, namespace)
        return False

    async def _store_completed(self, video_id: str, storage_key: str, output_path: str) -> None:
        metadata = await self.transcoder.probe(output_path)
        size = await self.storage.replace_from_path(storage_key, output_path, OUTPUT_MIME_TYPE)
        await self.videos.update_media_metadata(
            video_id,
            duration=metadata.duration,
            width=metadata.width,
            height=metadata.height,
            codec=metadata.codec,
            file_size=size,
            content_type=OUTPUT_MIME_TYPE,
        )
        await self.videos.update_video_processing_status(
            video_id,
            is_processed=True,
            processing_progress=PROGRESS_COMPLETE,
            processing_error=None,
        )

    async def run_startup(self, resume: bool = True) -> None:
        """Recovery pass run once in the background after startup."""
        totals = await self.recover_all()
        logger.info("Dangling file recovery finished", **totals)
        if resume:
            await self.resume_incomplete_videos()
