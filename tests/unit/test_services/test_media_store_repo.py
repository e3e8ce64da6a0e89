"""Unit tests for the workspace store."""

import os
import pytest

from capsule_video.core.exceptions import (
    InvalidNamespaceError,
    NotFoundError,
    ProcessingInProgressError,
)
from capsule_video.repositories.media_store_repo import INSTANCE_ID, MediaStoreRepository
from capsule_video.schemas.video import LockFileContent, utcnow
from capsule_video.services.media_sources import BytesSource, LocalFileSource, VideoInput
from capsule_video.utils.constants import RunOutcome

NAMESPACE = ["presentation", "video"]


def make_video(video_id: str = "vid1") -> VideoInput:
    return VideoInput(id=video_id, source=BytesSource(b"bytes", "talk.webm", "video/webm"))


def make_lock(**overrides) -> LockFileContent:
    values = dict(
        file_id="vid1",
        namespace=NAMESPACE,
        original_name="talk.webm",
        started_at=utcnow(),
        pid=os.getpid(),
        instance_id=INSTANCE_ID,
    )
    values.update(overrides)
    return LockFileContent(**values)


@pytest.mark.asyncio
async def test_materialize_creates_workspace(store):
    """Test materializing copies the input and writes a lock."""
    workspace = await store.materialize_local_copy(make_video(), NAMESPACE)

    assert workspace.input_path.endswith("input.webm")
    assert open(workspace.input_path, "rb").read() == b"bytes"
    assert workspace.output_path.endswith("output.mp4")
    assert str(store.base_path / "presentation" / "video" / ".jobs" / "vid1") == workspace.temp_dir

    lock = store.read_lock("vid1", NAMESPACE)
    assert lock.pid == os.getpid()
    assert lock.original_name == "talk.webm"
    assert lock.mime_type == "video/webm"
    assert lock.outcome is None
    assert store.is_actively_processing("vid1", NAMESPACE)


@pytest.mark.asyncio
async def test_materialize_refuses_active_workspace(store):
    """Test a second run cannot take over a live workspace."""
    await store.materialize_local_copy(make_video(), NAMESPACE)

    with pytest.raises(ProcessingInProgressError):
        await store.materialize_local_copy(make_video(), NAMESPACE)


@pytest.mark.asyncio
async def test_materialize_replaces_stale_workspace(store):
    """Test leftovers of a finished run are removed."""
    workspace = await store.materialize_local_copy(make_video(), NAMESPACE)
    store.mark_finished("vid1", NAMESPACE, RunOutcome.FAILED)
    stale = store.workspace_dir("vid1", NAMESPACE) / "output.mp4"
    stale.write_bytes(b"old")

    fresh = await store.materialize_local_copy(make_video(), NAMESPACE)

    assert fresh.temp_dir == workspace.temp_dir
    assert not stale.exists()
    assert store.read_lock("vid1", NAMESPACE).outcome is None


@pytest.mark.asyncio
async def test_materialize_missing_source_leaves_nothing(store, tmp_path):
    """Test a failing source does not leave a half-built workspace."""
    video = VideoInput(id="vid1", source=LocalFileSource(tmp_path / "missing.mp4"))

    with pytest.raises(NotFoundError):
        await store.materialize_local_copy(video, NAMESPACE)

    assert not store.workspace_dir("vid1", NAMESPACE).exists()


@pytest.mark.parametrize("file_id", ["../escape", ".lock", "", "a/b"])
def test_invalid_file_id(store, file_id):
    """Test ids that are not plain directory names are rejected."""
    with pytest.raises(InvalidNamespaceError):
        store.workspace_dir(file_id, NAMESPACE)


def test_lock_activity():
    """Test which locks count as owned by a live run."""
    assert MediaStoreRepository.is_lock_active(make_lock())
    assert not MediaStoreRepository.is_lock_active(None)
    assert not MediaStoreRepository.is_lock_active(make_lock(outcome=RunOutcome.COMPLETED))
    # Same PID reused by a restarted server
    assert not MediaStoreRepository.is_lock_active(make_lock(instance_id="previous-server"))
    assert not MediaStoreRepository.is_lock_active(make_lock(pid=0))


@pytest.mark.asyncio
async def test_corrupt_lock_reads_as_missing(store):
    """Test an unparsable lock file is treated as absent."""
    await store.materialize_local_copy(make_video(), NAMESPACE)
    store.lock_path("vid1", NAMESPACE).write_text("{not json", encoding="utf-8")

    assert store.read_lock("vid1", NAMESPACE) is None
    assert not store.is_actively_processing("vid1", NAMESPACE)


@pytest.mark.asyncio
async def test_get_processed_file(store):
    """Test the processed file is only found once output exists."""
    await store.materialize_local_copy(make_video(), NAMESPACE)

    with pytest.raises(NotFoundError):
        store.get_processed_file("vid1", NAMESPACE)

    store.output_path("vid1", NAMESPACE).write_bytes(b"12345")
    processed = store.get_processed_file("vid1", NAMESPACE)
    assert processed.size == 5
    assert processed.mime_type == "video/mp4"


@pytest.mark.asyncio
async def test_delete_artifacts_is_idempotent(store):
    """Test deleting twice reports nothing the second time."""
    await store.materialize_local_copy(make_video(), NAMESPACE)

    assert await store.delete_artifacts("vid1", NAMESPACE) is True
    assert await store.delete_artifacts("vid1", NAMESPACE) is False


def test_mark_finished_without_workspace(store):
    """Test recording an outcome for a removed workspace is a no-op."""
    store.mark_finished("gone", NAMESPACE, RunOutcome.ABORTED)

    assert not store.workspace_dir("gone", NAMESPACE).exists()


@pytest.mark.asyncio
async def test_all_namespaces(store):
    """Test nested namespaces are discovered and dot directories skipped."""
    await store.materialize_local_copy(make_video("a"), ["capsules"])
    await store.materialize_local_copy(make_video("b"), NAMESPACE)
    (store.base_path / ".cache" / ".jobs").mkdir(parents=True)

    assert store.all_namespaces() == [["capsules"], ["presentation", "video"]]
    assert [p.name for p in store.list_workspaces(["capsules"])] == ["a"]
    assert store.list_workspaces(["unknown"]) == []
