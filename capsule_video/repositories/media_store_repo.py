"""Namespace-scoped temp workspaces for processing runs."""

import asyncio
import os
import shutil
import uuid
from pathlib import Path
from typing import List, Optional, Sequence, Union
from pydantic import ValidationError

from ..config import settings
from ..core.exceptions import NotFoundError, ProcessingInProgressError
from ..schemas.video import LockFileContent, ProcessedFile, Workspace, utcnow
from ..services.media_sources import VideoInput
from ..utils.constants import (
    INPUT_FILE_STEM,
    LOCK_FILE_NAME,
    OUTPUT_FILE_NAME,
    OUTPUT_MIME_TYPE,
    SEGMENTS_DIR_NAME,
    WORKSPACE_CONTAINER,
    RunOutcome,
)
from ..utils.helpers import (
    SEGMENT_PATTERN,
    file_extension,
    is_process_running,
    normalize_namespace,
    validate_path_segment,
)
from ..utils.logger import get_logger

logger = get_logger(__name__)

# Distinguishes this server process from an earlier one that reused its PID
INSTANCE_ID = uuid.uuid4().hex


class MediaStoreRepository:
    """
    Owns the on-disk layout of processing workspaces.

    Layout: ``<base>/<namespace...>/.jobs/<file_id>/`` holding
    ``input.<ext>``, ``output.mp4``, ``segments/`` and a ``.lock`` file.
    """

    def __init__(self, base_path: Optional[Union[str, Path]] = None):
        self.base_path = Path(base_path) if base_path else settings.temp_base_path

    def ensure_base(self) -> None:
        self.base_path.mkdir(parents=True, exist_ok=True)

    def namespace_dir(self, namespace: Sequence[str]) -> Path:
        return self.base_path.joinpath(*normalize_namespace(namespace))

    def jobs_dir(self, namespace: Sequence[str]) -> Path:
        return self.namespace_dir(namespace) / WORKSPACE_CONTAINER

    def workspace_dir(self, file_id: str, namespace: Sequence[str]) -> Path:
        validate_path_segment(file_id, kind="file id")
        return self.jobs_dir(namespace) / file_id

    def output_path(self, file_id: str, namespace: Sequence[str]) -> Path:
        return self.workspace_dir(file_id, namespace) / OUTPUT_FILE_NAME

    def lock_path(self, file_id: str, namespace: Sequence[str]) -> Path:
        return self.workspace_dir(file_id, namespace) / LOCK_FILE_NAME

    @staticmethod
    def find_input(workspace_dir: Path) -> Optional[Path]:
        """Locate the materialized input inside a workspace."""
        for candidate in sorted(workspace_dir.glob(f"{INPUT_FILE_STEM}.*")):
            if candidate.is_file():
                return candidate
        return None

    def workspace(self, file_id: str, namespace: Sequence[str]) -> Workspace:
        """Describe an existing workspace."""
        temp_dir = self.workspace_dir(file_id, namespace)
        input_path = self.find_input(temp_dir) or temp_dir / f"{INPUT_FILE_STEM}.mp4"
        return Workspace(
            file_id=file_id,
            namespace=normalize_namespace(namespace),
            temp_dir=str(temp_dir),
            input_path=str(input_path),
            output_path=str(temp_dir / OUTPUT_FILE_NAME),
            segments_dir=str(temp_dir / SEGMENTS_DIR_NAME),
        )

    async def materialize_local_copy(
        self, video: VideoInput, namespace: Sequence[str]
    ) -> Workspace:
        """
        Create a fresh workspace for video and copy its bytes into it.
        Any leftovers from an earlier run of the same id are removed first.
        """
        segments = normalize_namespace(namespace)
        temp_dir = self.workspace_dir(video.id, segments)
        loop = asyncio.get_running_loop()

        if self.is_actively_processing(video.id, segments):
            raise ProcessingInProgressError(f"File {video.id} is already being processed")
        if temp_dir.exists():
            logger.info("Replacing stale workspace", file_id=video.id, temp_dir=str(temp_dir))
            await loop.run_in_executor(None, shutil.rmtree, temp_dir)
        temp_dir.mkdir(parents=True, exist_ok=False)

        input_path = temp_dir / f"{INPUT_FILE_STEM}{file_extension(video.source.filename)}"
        self.write_lock(
            LockFileContent(
                file_id=video.id,
                namespace=segments,
                original_name=video.source.filename,
                mime_type=video.source.content_type or OUTPUT_MIME_TYPE,
                started_at=utcnow(),
                pid=os.getpid(),
                instance_id=INSTANCE_ID,
            )
        )

        try:
            size = await video.source.write_to(input_path)
        except Exception:
            await loop.run_in_executor(None, shutil.rmtree, temp_dir, True)
            raise

        logger.info(
            "Materialized local copy",
            file_id=video.id,
            namespace="/".join(segments),
            size=size,
        )
        return self.workspace(video.id, segments)

    def write_lock(self, lock: LockFileContent) -> None:
        path = self.lock_path(lock.file_id, lock.namespace)
        staging = path.with_name(f"{LOCK_FILE_NAME}.tmp")
        staging.write_text(lock.model_dump_json(indent=2), encoding="utf-8")
        os.replace(staging, path)

    @staticmethod
    def read_lock_at(workspace_dir: Path) -> Optional[LockFileContent]:
        """Parse the lock file of a workspace. None when missing or unreadable."""
        path = workspace_dir / LOCK_FILE_NAME
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Could not read lock file", path=str(path), error=str(e))
            return None
        try:
            return LockFileContent.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Invalid lock file", path=str(path), error=str(e))
            return None

    def read_lock(self, file_id: str, namespace: Sequence[str]) -> Optional[LockFileContent]:
        return self.read_lock_at(self.workspace_dir(file_id, namespace))

    def mark_finished(
        self, file_id: str, namespace: Sequence[str], outcome: RunOutcome
    ) -> None:
        """Record how a run ended. No-op when the workspace is gone."""
        lock = self.read_lock(file_id, namespace)
        if lock is None:
            return
        lock.finished_at = utcnow()
        lock.outcome = outcome
        try:
            self.write_lock(lock)
        except FileNotFoundError:
            # Workspace was removed concurrently
            return

    @staticmethod
    def is_lock_active(lock: Optional[LockFileContent]) -> bool:
        """A lock is active while its owning process is alive and has not finished."""
        if lock is None or lock.outcome is not None:
            return False
        if lock.pid == os.getpid() and lock.instance_id != INSTANCE_ID:
            return False
        return is_process_running(lock.pid)

    def is_actively_processing(self, file_id: str, namespace: Sequence[str]) -> bool:
        return self.is_lock_active(self.read_lock(file_id, namespace))

    def get_processed_file(self, file_id: str, namespace: Sequence[str]) -> ProcessedFile:
        """Completed output of a run, or NotFoundError."""
        path = self.output_path(file_id, namespace)
        if not path.is_file():
            raise NotFoundError(
                f"Processed file not found: {file_id} in {'/'.join(normalize_namespace(namespace))}"
            )
        return ProcessedFile(path=str(path), size=path.stat().st_size, mime_type=OUTPUT_MIME_TYPE)

    async def delete_artifacts(self, file_id: str, namespace: Sequence[str]) -> bool:
        """
        Remove the workspace of file_id in namespace.
        Returns False when there was nothing to remove.
        """
        temp_dir = self.workspace_dir(file_id, namespace)
        if not temp_dir.exists():
            return False
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, shutil.rmtree, temp_dir, True)
        return not temp_dir.exists()

    def list_workspaces(self, namespace: Sequence[str]) -> List[Path]:
        """Workspace directories of one namespace; empty when it does not exist."""
        jobs = self.jobs_dir(namespace)
        if not jobs.is_dir():
            return []
        return sorted(
            p for p in jobs.iterdir() if p.is_dir() and SEGMENT_PATTERN.match(p.name)
        )

    def all_namespaces(self) -> List[List[str]]:
        """Every namespace under the base path that holds a workspace container."""
        found: List[List[str]] = []
        if not self.base_path.is_dir():
            return found

        def walk(directory: Path, prefix: List[str]) -> None:
            if prefix and (directory / WORKSPACE_CONTAINER).is_dir():
                found.append(prefix)
            for child in sorted(directory.iterdir()):
                if child.is_dir() and not child.name.startswith("."):
                    walk(child, prefix + [child.name])

        walk(self.base_path, [])
        return found
