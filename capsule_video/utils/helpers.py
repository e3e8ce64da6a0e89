"""Helper functions for common operations."""

import os
import re
import uuid
from typing import Iterable, List, Optional, Sequence

from ..core.exceptions import InvalidNamespaceError

SEGMENT_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,63}$")
_TIMEMARK_PATTERN = re.compile(r"^(\d+):(\d{1,2}):(\d{1,2}(?:\.\d+)?)$")


def generate_video_id() -> str:
    """Generate an opaque id for a new video record."""
    return str(uuid.uuid4())


def validate_path_segment(segment: str, kind: str = "namespace segment") -> str:
    """
    Validate a single directory name used in the temp layout.
    Segments never start with a dot, so they cannot collide with the
    workspace container or lock file.
    """
    if not isinstance(segment, str) or not SEGMENT_PATTERN.match(segment):
        raise InvalidNamespaceError(f"Invalid {kind}: {segment!r}")
    return segment


def normalize_namespace(namespace: Iterable[str]) -> List[str]:
    """Validate a namespace and return it as a list of segments."""
    if isinstance(namespace, str):
        namespace = parse_namespace(namespace)
    segments = [validate_path_segment(s) for s in namespace]
    if not segments:
        raise InvalidNamespaceError("Namespace must contain at least one segment")
    return segments


def parse_namespace(value: str) -> List[str]:
    """Parse 'presentation/video' into ['presentation', 'video']."""
    return [part for part in value.strip().split("/") if part]


def namespace_key(namespace: Sequence[str]) -> str:
    """Join namespace segments into a stable key."""
    return "/".join(namespace)


def job_key(file_id: str, namespace: Sequence[str]) -> str:
    """Unique key for a file within a namespace."""
    return f"{namespace_key(namespace)}/{file_id}"


def parse_timemark(timemark: str) -> float:
    """
    Convert an FFmpeg timemark (HH:MM:SS.ms) to seconds.
    Returns 0.0 for anything that does not parse.
    """
    match = _TIMEMARK_PATTERN.match(timemark.strip()) if timemark else None
    if not match:
        return 0.0
    hours, minutes, seconds = match.groups()
    return int(hours) * 3600 + int(minutes) * 60 + float(seconds)


def clamp(value: float, low: float = 0.0, high: float = 100.0) -> float:
    """Clamp value into [low, high]."""
    return max(low, min(high, value))


def map_progress(progress: float, start: float, end: float) -> int:
    """Map a 0-100 progress value into the [start, end] window."""
    return round(start + clamp(progress) * (end - start) / 100)


def sanitize_filename(filename: str) -> str:
    """Sanitize filename for safe storage."""
    filename = os.path.basename(filename)
    filename = "".join(c if c.isalnum() or c in "._-" else "_" for c in filename)
    return filename[:255]


def file_extension(filename: Optional[str], default: str = ".mp4") -> str:
    """Lower-cased extension of filename, including the dot."""
    ext = os.path.splitext(filename or "")[1].lower()
    if not ext or not re.match(r"^\.[a-z0-9]{1,8}$", ext):
        return default
    return ext


def is_process_running(pid: int) -> bool:
    """Check whether a process with the given PID exists."""
    if pid <= 0:
        return False
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by another user
        return True
    except OSError:
        return False
    return True
