"""Exception hierarchy for the video pipeline."""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class ProbeError(PipelineError):
    """Input is unreadable or cannot be decoded by ffprobe."""

    def __init__(self, message: str, diagnostic: Optional[str] = None):
        super().__init__(message)
        self.diagnostic = diagnostic or ""


class TranscodeError(PipelineError):
    """Encoder process failed (crash, unsupported parameters, disk full)."""

    def __init__(self, message: str, stderr: Optional[str] = None, returncode: Optional[int] = None):
        super().__init__(message)
        self.stderr = stderr or ""
        self.returncode = returncode


class AbortError(PipelineError):
    """Processing was cancelled through an abort signal."""

    def __init__(self, message: str = "Processing aborted", reason: Optional[str] = None):
        super().__init__(message)
        self.reason = reason


class NotFoundError(PipelineError):
    """Requested processed file or source does not exist."""


class ProcessingInProgressError(PipelineError):
    """Operation refused because the file is still being processed."""


class InvalidNamespaceError(PipelineError, ValueError):
    """Namespace or file id cannot be used as a directory name."""
