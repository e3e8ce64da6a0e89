"""Sources the pipeline can materialize into a workspace."""

import asyncio
import shutil
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..core.exceptions import NotFoundError
from ..repositories.storage_repo import StorageRepository
from ..utils.constants import OUTPUT_MIME_TYPE


class MediaSource(ABC):
    """Handle to the bytes of an uploaded video."""

    filename: str = "video.mp4"
    content_type: str = OUTPUT_MIME_TYPE

    @abstractmethod
    async def write_to(self, path: Path) -> int:
        """Write the full content to path. Returns bytes written."""


class LocalFileSource(MediaSource):
    """A file already on local disk."""

    def __init__(self, path: Union[str, Path], content_type: Optional[str] = None):
        self.path = Path(path)
        self.filename = self.path.name
        if content_type:
            self.content_type = content_type

    async def write_to(self, path: Path) -> int:
        if not self.path.is_file():
            raise NotFoundError(f"Source file not found: {self.path}")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, shutil.copyfile, self.path, path)
        return path.stat().st_size


class BytesSource(MediaSource):
    """In-memory content, mostly useful for small uploads and tests."""

    def __init__(self, content: bytes, filename: str, content_type: Optional[str] = None):
        self.content = content
        self.filename = filename
        if content_type:
            self.content_type = content_type

    async def write_to(self, path: Path) -> int:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, path.write_bytes, self.content)
        return len(self.content)


class StoredObjectSource(MediaSource):
    """An original kept by the storage repository."""

    def __init__(
        self,
        key: str,
        storage: StorageRepository,
        content_type: Optional[str] = None,
        filename: Optional[str] = None,
    ):
        self.key = key
        self.storage = storage
        self.filename = filename or key.rsplit("/", 1)[-1]
        if content_type:
            self.content_type = content_type

    async def write_to(self, path: Path) -> int:
        return await self.storage.download_to(self.key, path)


@dataclass
class VideoInput:
    """A video to process: its id and where its bytes come from."""

    id: str
    source: MediaSource
