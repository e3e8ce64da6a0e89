"""Capabilities consumed by the processing pipeline."""

from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from ..schemas.video import VideoProcessingEvent


class _Unset:
    """Sentinel for 'leave this column unchanged'."""

    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@runtime_checkable
class ProcessingRepository(Protocol):
    """Persists per-video processing status."""

    async def find_incomplete_videos(self) -> List[Dict[str, Any]]:
        """Videos not marked processed; each dict has at least id and is_processed."""
        ...

    async def get_video_source(self, video_id: str) -> str:
        """Storage key of the original upload. Raises NotFoundError."""
        ...

    async def update_video_processing_status(
        self,
        video_id: str,
        *,
        is_processed: Optional[bool] = None,
        processing_progress: Optional[int] = None,
        processing_error: Any = UNSET,
    ) -> None:
        ...


@runtime_checkable
class ProgressEventSink(Protocol):
    """Publishes progress ticks to subscribers."""

    def emit(
        self,
        event_name: str,
        filter: Dict[str, str],
        data: VideoProcessingEvent,
    ) -> None:
        ...
