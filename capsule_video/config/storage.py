"""Object storage configuration for S3-compatible providers."""

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from .settings import settings


def get_storage_client() -> BaseClient:
    """
    Get S3 client for the configured bucket.
    A custom endpoint makes this work with MinIO, Wasabi and other
    S3-compatible providers.
    """
    kwargs = {
        "aws_access_key_id": settings.aws_access_key_id or None,
        "aws_secret_access_key": settings.aws_secret_access_key or None,
        "region_name": settings.aws_region,
        "config": Config(signature_version="s3v4", retries={"max_attempts": 3}),
    }
    if settings.s3_endpoint_url:
        kwargs["endpoint_url"] = settings.s3_endpoint_url

    return boto3.client("s3", **kwargs)


def get_bucket_name() -> str:
    """Get bucket name for video storage."""
    if not settings.s3_bucket_name:
        raise ValueError("S3_BUCKET_NAME must be set when STORAGE_BACKEND=s3")
    return settings.s3_bucket_name
