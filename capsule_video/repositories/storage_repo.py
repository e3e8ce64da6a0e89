"""Storage repository for original and processed videos."""

import asyncio
import io
import os
import shutil
from pathlib import Path
from typing import BinaryIO, Optional, Union
from botocore.client import BaseClient
from botocore.exceptions import ClientError
from ..config import settings
from ..config.storage import get_storage_client, get_bucket_name
from ..core.exceptions import NotFoundError
from ..utils.constants import StorageBackend
from ..utils.helpers import sanitize_filename
from ..utils.logger import get_logger

logger = get_logger(__name__)

_COPY_CHUNK = 1024 * 1024


class StorageRepository:
    """
    Persistent storage for video bytes addressed by key.
    Backed by a local directory or an S3-compatible bucket.
    """

    def __init__(
        self,
        backend: Optional[str] = None,
        root: Optional[Union[str, Path]] = None,
        client: Optional[BaseClient] = None,
        bucket_name: Optional[str] = None,
    ):
        self.backend = StorageBackend((backend or settings.storage_backend).lower())
        self.root = Path(root or settings.storage_root).resolve()
        self.client = client
        self.bucket_name = bucket_name

    def _get_client(self) -> BaseClient:
        """Get or create storage client."""
        if self.client is None:
            self.client = get_storage_client()
        if self.bucket_name is None:
            self.bucket_name = get_bucket_name()
        return self.client

    def generate_key(self, video_id: str, filename: str, namespace: str) -> str:
        """Generate storage key: <namespace>/<video_id>/<filename>."""
        return f"{namespace}/{video_id}/{sanitize_filename(filename or 'video.mp4')}"

    def local_path(self, key: str) -> Path:
        """Resolve a key inside the local storage root."""
        path = (self.root / key).resolve()
        if self.root not in path.parents:
            raise NotFoundError(f"Storage key escapes storage root: {key}")
        return path

    async def save_fileobj(
        self, fileobj: BinaryIO, key: str, content_type: str
    ) -> int:
        """
        Store a file-like object under key.
        Returns the number of bytes written.
        """
        loop = asyncio.get_running_loop()

        if self.backend == StorageBackend.S3:
            client = self._get_client()

            def _upload() -> int:
                start = fileobj.tell() if fileobj.seekable() else 0
                client.upload_fileobj(
                    Fileobj=fileobj,
                    Bucket=self.bucket_name,
                    Key=key,
                    ExtraArgs={"ContentType": content_type},
                )
                return fileobj.tell() - start if fileobj.seekable() else 0

            return await loop.run_in_executor(None, _upload)

        path = self.local_path(key)

        def _write() -> int:
            path.parent.mkdir(parents=True, exist_ok=True)
            written = 0
            with open(path, "wb") as out:
                while True:
                    chunk = fileobj.read(_COPY_CHUNK)
                    if not chunk:
                        break
                    out.write(chunk)
                    written += len(chunk)
            return written

        return await loop.run_in_executor(None, _write)

    async def save_bytes(self, content: bytes, key: str, content_type: str) -> int:
        """Store raw bytes under key."""
        return await self.save_fileobj(io.BytesIO(content), key, content_type)

    async def download_to(self, key: str, destination: Union[str, Path]) -> int:
        """
        Copy the object stored under key to a local path.
        Raises NotFoundError if it does not exist.
        """
        destination = Path(destination)
        loop = asyncio.get_running_loop()

        if self.backend == StorageBackend.S3:
            client = self._get_client()

            def _download() -> int:
                try:
                    client.download_file(self.bucket_name, key, str(destination))
                except ClientError as e:
                    code = e.response.get("Error", {}).get("Code")
                    if code in ("404", "NoSuchKey", "NotFound"):
                        raise NotFoundError(f"Stored object not found: {key}") from e
                    raise
                return destination.stat().st_size

            return await loop.run_in_executor(None, _download)

        source = self.local_path(key)

        def _copy() -> int:
            if not source.is_file():
                raise NotFoundError(f"Stored object not found: {key}")
            shutil.copyfile(source, destination)
            return destination.stat().st_size

        return await loop.run_in_executor(None, _copy)

    async def replace_from_path(
        self, key: str, source_path: Union[str, Path], content_type: str
    ) -> int:
        """Replace the stored object with the content of a local file."""
        source_path = Path(source_path)
        loop = asyncio.get_running_loop()

        if self.backend == StorageBackend.S3:
            client = self._get_client()

            def _upload() -> int:
                client.upload_file(
                    str(source_path),
                    self.bucket_name,
                    key,
                    ExtraArgs={"ContentType": content_type},
                )
                return source_path.stat().st_size

            size = await loop.run_in_executor(None, _upload)
        else:
            target = self.local_path(key)

            def _replace() -> int:
                target.parent.mkdir(parents=True, exist_ok=True)
                staging = target.with_name(f".{target.name}.replace")
                shutil.copyfile(source_path, staging)
                os.replace(staging, target)
                return target.stat().st_size

            size = await loop.run_in_executor(None, _replace)

        logger.info("Replaced stored object", key=key, size=size, backend=self.backend.value)
        return size
