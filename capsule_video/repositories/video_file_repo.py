"""Video file repository for processing status persistence."""

from typing import Any, Callable, Dict, List, Optional
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .base import BaseRepository
from ..core.exceptions import NotFoundError
from ..core.interfaces import UNSET
from ..models.video_file import VideoFile


class VideoFileRepository(BaseRepository[VideoFile]):
    """Repository for VideoFile operations within one session."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, VideoFile)

    async def create_video(
        self,
        video_id: str,
        namespace: str,
        original_filename: str,
        content_type: str,
        file_size: int,
        storage_key: str,
    ) -> Dict[str, Any]:
        """Create placeholder record for a freshly uploaded video."""
        return await self.create(
            id=video_id,
            namespace=namespace,
            original_filename=original_filename,
            content_type=content_type,
            file_size=file_size,
            storage_key=storage_key,
            is_processed=False,
            processing_progress=0,
        )

    async def find_incomplete(self, include_failed: bool = False) -> List[Dict[str, Any]]:
        """Videos that have not been marked processed, oldest first."""
        stmt = select(VideoFile).where(VideoFile.is_processed.is_(False))
        if not include_failed:
            stmt = stmt.where(VideoFile.processing_error.is_(None))
        stmt = stmt.order_by(VideoFile.created_at.asc())
        result = await self.session.execute(stmt)
        return [self._to_dict(v) for v in result.scalars().all()]

    async def get_storage_key(self, video_id: str) -> str:
        """Get storage key of the original upload."""
        result = await self.session.execute(
            select(VideoFile.storage_key).where(VideoFile.id == video_id)
        )
        key = result.scalar_one_or_none()
        if key is None:
            raise NotFoundError(f"Source not found for video: {video_id}")
        return key

    async def update_processing_status(
        self,
        video_id: str,
        is_processed: Optional[bool] = None,
        processing_progress: Optional[int] = None,
        processing_error: Any = UNSET,
    ) -> None:
        """Update only the status columns that were given."""
        values: Dict[str, Any] = {}
        if is_processed is not None:
            values["is_processed"] = is_processed
        if processing_progress is not None:
            values["processing_progress"] = processing_progress
        if processing_error is not UNSET:
            values["processing_error"] = processing_error
        await self.update_values(video_id, values)

    async def update_media_metadata(
        self,
        video_id: str,
        duration: float,
        width: int,
        height: int,
        codec: str,
        file_size: Optional[int] = None,
        content_type: Optional[str] = None,
    ) -> None:
        """Store probe results of the processed output."""
        values: Dict[str, Any] = {
            "duration": duration,
            "width": width,
            "height": height,
            "codec": codec,
        }
        if file_size is not None:
            values["file_size"] = file_size
        if content_type is not None:
            values["content_type"] = content_type
        await self.update_values(video_id, values)

    async def reset_processing(self, video_id: str) -> Optional[Dict[str, Any]]:
        """Clear a recorded failure so the video is picked up again."""
        return await self.update(
            video_id,
            is_processed=False,
            processing_progress=0,
            processing_error=None,
        )


class ProcessingStatusRepository:
    """
    ProcessingRepository implementation for background work.
    Opens a short-lived session per call because processing runs
    outlive the request that started them.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession], include_failed: bool = False):
        self.session_factory = session_factory
        self.include_failed = include_failed

    async def find_incomplete_videos(self) -> List[Dict[str, Any]]:
        async with self.session_factory() as session:
            return await VideoFileRepository(session).find_incomplete(
                include_failed=self.include_failed
            )

    async def get_video_source(self, video_id: str) -> str:
        async with self.session_factory() as session:
            return await VideoFileRepository(session).get_storage_key(video_id)

    async def get_video(self, video_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            return await VideoFileRepository(session).get_by_id(video_id)

    async def update_video_processing_status(
        self,
        video_id: str,
        *,
        is_processed: Optional[bool] = None,
        processing_progress: Optional[int] = None,
        processing_error: Any = UNSET,
    ) -> None:
        async with self.session_factory() as session:
            await VideoFileRepository(session).update_processing_status(
                video_id,
                is_processed=is_processed,
                processing_progress=processing_progress,
                processing_error=processing_error,
            )
            await session.commit()

    async def update_media_metadata(self, video_id: str, **kwargs: Any) -> None:
        async with self.session_factory() as session:
            await VideoFileRepository(session).update_media_metadata(video_id, **kwargs)
            await session.commit()

    async def reset_processing(self, video_id: str) -> Optional[Dict[str, Any]]:
        async with self.session_factory() as session:
            video = await VideoFileRepository(session).reset_processing(video_id)
            await session.commit()
            return video

    async def create_video(self, **kwargs: Any) -> Dict[str, Any]:
        async with self.session_factory() as session:
            video = await VideoFileRepository(session).create_video(**kwargs)
            await session.commit()
            return video
