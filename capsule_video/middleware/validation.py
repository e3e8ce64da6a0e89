"""Validators for video uploads."""

from fastapi import UploadFile, HTTPException, status
from ..config import settings


def validate_file_size(file: UploadFile) -> UploadFile:
    """
    Validate uploaded file size.
    Raises HTTPException if file exceeds maximum allowed size.
    """
    if file.size is not None and file.size > settings.max_file_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=f"File size exceeds maximum allowed size of {settings.max_file_size_mb} MB",
        )
    if file.size == 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Uploaded file is empty",
        )
    return file


def validate_video_type(file: UploadFile) -> UploadFile:
    """
    Validate uploaded file MIME type.
    Raises HTTPException if the type is not an accepted video type.
    """
    if file.content_type not in settings.allowed_video_types:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"File type {file.content_type} is not allowed. Allowed types: {', '.join(settings.allowed_video_types)}",
        )
    return file


def validate_video_upload(file: UploadFile) -> UploadFile:
    """
    Combined validator for file size and type.
    """
    validate_video_type(file)
    validate_file_size(file)
    return file
