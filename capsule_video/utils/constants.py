"""Application constants and enums."""

from enum import Enum


class ProcessingStatus(str, Enum):
    """Lifecycle state of a single processing run."""

    PENDING = "pending"
    PROBING = "probing"
    TRANSCODING = "transcoding"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class EventStatus(str, Enum):
    """Status values published to progress subscribers."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RunOutcome(str, Enum):
    """Outcome recorded in a workspace lock file when a run ends."""

    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


class StorageBackend(str, Enum):
    """Storage backend for original and processed videos."""

    LOCAL = "local"
    S3 = "s3"


class VideoQuality(str, Enum):
    """Software encoder quality preset."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def crf(self) -> int:
        return {
            VideoQuality.LOW: 32,
            VideoQuality.MEDIUM: 28,
            VideoQuality.HIGH: 23,
        }[self]


class HardwareAccelType(str, Enum):
    """Supported hardware encoders."""

    VAAPI = "vaapi"
    NVENC = "nvenc"
    QSV = "qsv"


VIDEO_PROCESSING_EVENT = "videoProcessing"

TARGET_CODEC = "h264"
TARGET_CODEC_ALIASES = frozenset({"h264", "avc1", "avc"})
OUTPUT_MIME_TYPE = "video/mp4"

# Default namespace for uploads
CAPSULE_VIDEO_NAMESPACE = ("capsules",)

# Workspace layout: <temp_base>/<namespace...>/.jobs/<file_id>/
WORKSPACE_CONTAINER = ".jobs"
LOCK_FILE_NAME = ".lock"
INPUT_FILE_STEM = "input"
OUTPUT_FILE_NAME = "output.mp4"
SEGMENTS_DIR_NAME = "segments"

# Overall progress milestones for one run
PROGRESS_START = 10
PROGRESS_PROBED = 20
PROGRESS_TRANSCODE_START = 40
PROGRESS_TRANSCODE_END = 80
PROGRESS_FINALIZING = 90
PROGRESS_COMPLETE = 100
