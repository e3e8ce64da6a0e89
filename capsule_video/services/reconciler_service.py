"""Discovery and cleanup of workspaces left behind by earlier runs."""

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Sequence

from ..config import settings
from ..repositories.media_store_repo import MediaStoreRepository
from ..schemas.video import DanglingFile, NamespaceStats, TempStorageStats
from ..utils.constants import OUTPUT_FILE_NAME
from ..utils.helpers import namespace_key, normalize_namespace
from ..utils.logger import get_logger

logger = get_logger(__name__)


def _directory_size(path: Path) -> int:
    total = 0
    for item in path.rglob("*"):
        try:
            if item.is_file():
                total += item.stat().st_size
        except FileNotFoundError:
            continue
    return total


def _mtime(path: Path) -> datetime:
    return datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)


class ReconcilerService:
    """
    Finds workspaces no live run owns and removes them on request.

    Listing never modifies anything. Every operation is scoped to one
    namespace except the age-based sweep and the statistics.
    """

    def __init__(self, store: MediaStoreRepository):
        self.store = store

    def _describe(self, workspace_dir: Path, namespace: List[str]) -> Optional[DanglingFile]:
        lock = self.store.read_lock_at(workspace_dir)
        if self.store.is_lock_active(lock):
            return None

        output = workspace_dir / OUTPUT_FILE_NAME
        is_complete = output.is_file()
        input_path = self.store.find_input(workspace_dir)
        return DanglingFile(
            file_id=workspace_dir.name,
            associated_video_id=lock.file_id if lock else None,
            namespace=namespace,
            temp_dir=str(workspace_dir),
            input_path=str(input_path) if input_path else None,
            output_path=str(output) if is_complete else None,
            is_complete=is_complete,
            created_at=lock.started_at if lock else _mtime(workspace_dir),
            lock=lock,
        )

    async def list_dangling(self, namespace: Sequence[str]) -> List[DanglingFile]:
        """Workspaces in namespace that no running job owns. Empty for unknown namespaces."""
        segments = normalize_namespace(namespace)
        dangling = []
        for workspace_dir in self.store.list_workspaces(segments):
            try:
                entry = self._describe(workspace_dir, segments)
            except FileNotFoundError:
                # Removed while listing
                continue
            if entry is not None:
                dangling.append(entry)
        return dangling

    async def cleanup(self, video_id: str, namespace: Sequence[str]) -> bool:
        """Remove one workspace. Repeating the call is harmless."""
        removed = await self.store.delete_artifacts(video_id, namespace)
        if removed:
            logger.info(
                "Cleaned up workspace",
                file_id=video_id,
                namespace=namespace_key(normalize_namespace(namespace)),
            )
        return removed

    async def cleanup_old_files(self, max_age_seconds: Optional[int] = None) -> int:
        """
        Remove workspaces older than max_age_seconds in every namespace.
        Workspaces owned by a live run are kept. Returns how many were removed.
        """
        max_age = settings.temp_max_age_seconds if max_age_seconds is None else max_age_seconds
        now = time.time()
        removed = 0

        for namespace in self.store.all_namespaces():
            for workspace_dir in self.store.list_workspaces(namespace):
                lock = self.store.read_lock_at(workspace_dir)
                if self.store.is_lock_active(lock):
                    continue
                try:
                    started = lock.started_at.timestamp() if lock else workspace_dir.stat().st_mtime
                except FileNotFoundError:
                    continue
                if now - started <= max_age:
                    continue
                if await self.store.delete_artifacts(workspace_dir.name, namespace):
                    removed += 1

        if removed:
            logger.info("Removed stale workspaces", count=removed, max_age_seconds=max_age)
        return removed

    async def get_stats(self) -> TempStorageStats:
        """Workspace counts and sizes per namespace."""
        stats = TempStorageStats()
        for namespace in self.store.all_namespaces():
            ns_stats = NamespaceStats()
            for workspace_dir in self.store.list_workspaces(namespace):
                ns_stats.files += 1
                ns_stats.size += _directory_size(workspace_dir)
            stats.by_namespace[namespace_key(namespace)] = ns_stats
            stats.total_files += ns_stats.files
            stats.total_size += ns_stats.size
            stats.dangling_count += len(await self.list_dangling(namespace))
        return stats
