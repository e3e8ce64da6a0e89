"""Video processing schemas."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from pydantic import BaseModel, ConfigDict, Field

from ..utils.constants import EventStatus, OUTPUT_MIME_TYPE, RunOutcome, VideoQuality


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProbeResult(BaseModel):
    """Metadata extracted by ffprobe."""

    duration: float = Field(..., ge=0, description="Duration in seconds")
    width: int = Field(..., gt=0, description="Video width in pixels")
    height: int = Field(..., gt=0, description="Video height in pixels")
    codec: str = Field(..., description="Video codec name, e.g. h264, hevc, vp9")
    bitrate: Optional[int] = Field(default=None, description="Bitrate in bits per second")
    fps: Optional[float] = None
    format_name: Optional[str] = None


class TranscodeOutcome(BaseModel):
    """What the conversion step produced."""

    was_converted: bool
    output_path: str
    final_codec: str


class ProcessingOptions(BaseModel):
    """Per-run processing options."""

    force_convert: bool = Field(default=False, description="Re-encode even if already H.264")
    quality: VideoQuality = VideoQuality.MEDIUM


class ProcessingResult(BaseModel):
    """Result returned after a run completes."""

    file_id: str
    output_path: str
    was_converted: bool
    final_codec: str
    new_size: int = Field(..., ge=0, description="Size of processed file in bytes")
    metadata: ProbeResult


class LockFileContent(BaseModel):
    """Contents of a workspace .lock file."""

    file_id: str
    namespace: List[str]
    original_name: str
    mime_type: str = OUTPUT_MIME_TYPE
    started_at: datetime
    pid: int
    instance_id: Optional[str] = Field(
        default=None, description="Identifies the server process that owns the run"
    )
    finished_at: Optional[datetime] = None
    outcome: Optional[RunOutcome] = None


class Workspace(BaseModel):
    """Paths of one file's workspace."""

    file_id: str
    namespace: List[str]
    temp_dir: str
    input_path: str
    output_path: str
    segments_dir: str


class DanglingFile(BaseModel):
    """A workspace left behind by an interrupted or uncleaned run."""

    file_id: str
    associated_video_id: Optional[str] = Field(
        default=None, description="Video id from the lock file; None for orphans"
    )
    namespace: List[str]
    temp_dir: str
    input_path: Optional[str] = None
    output_path: Optional[str] = None
    is_complete: bool = False
    created_at: datetime
    lock: Optional[LockFileContent] = None


class ProcessedFile(BaseModel):
    """A completed output ready to be copied to permanent storage."""

    path: str
    size: int
    mime_type: str = OUTPUT_MIME_TYPE


class NamespaceStats(BaseModel):
    files: int = 0
    size: int = 0


class TempStorageStats(BaseModel):
    """Statistics about temp workspace usage."""

    total_files: int = 0
    total_size: int = 0
    by_namespace: Dict[str, NamespaceStats] = Field(default_factory=dict)
    dangling_count: int = 0


class VideoProcessingEvent(BaseModel):
    """Progress event published to subscribers."""

    progress: int = Field(..., ge=0, le=100)
    status: EventStatus
    message: str
    metadata: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)


class VideoResponse(BaseModel):
    """Video record response schema."""

    id: str
    namespace: str
    original_filename: str
    content_type: str
    file_size: int
    storage_key: str
    is_processed: bool = False
    processing_progress: int = Field(default=0, description="Processing progress percentage (0-100)")
    processing_error: Optional[str] = Field(default=None, description="Error message if processing failed")
    duration: Optional[float] = None
    width: Optional[int] = None
    height: Optional[int] = None
    codec: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    model_config = ConfigDict(from_attributes=True)


class CleanupResponse(BaseModel):
    file_id: str
    namespace: List[str]
    removed: bool


class VideoStatusResponse(VideoResponse):
    """Video record plus the state of its in-process run."""

    is_running: bool = False
    live_progress: Optional[int] = None


class AbortResponse(BaseModel):
    video_id: str
    aborted: bool


class TempCleanupResponse(BaseModel):
    removed: int
    max_age_hours: float
