"""Unit tests for startup recovery."""

import pytest
from unittest.mock import AsyncMock, MagicMock

from capsule_video.services.job_registry import ProcessingTaskRegistry
from capsule_video.services.media_sources import BytesSource, VideoInput
from capsule_video.services.recovery_service import VideoRecoveryService
from capsule_video.utils.constants import RunOutcome

NAMESPACE = ["capsules"]


async def crashed_workspace(store, file_id, output=True, outcome=None):
    """Workspace left by a server that is gone."""
    await store.materialize_local_copy(
        VideoInput(id=file_id, source=BytesSource(b"input", "clip.mp4")), NAMESPACE
    )
    lock = store.read_lock(file_id, NAMESPACE)
    lock.instance_id = "previous-server"
    lock.outcome = outcome
    store.write_lock(lock)
    if output:
        store.output_path(file_id, NAMESPACE).write_bytes(b"recovered-output")


@pytest.fixture
def videos():
    videos = MagicMock()
    videos.find_incomplete_videos = AsyncMock(return_value=[])
    videos.get_video = AsyncMock(
        return_value={"id": "vid1", "is_processed": False, "storage_key": "capsules/vid1/clip.mp4"}
    )
    videos.update_media_metadata = AsyncMock()
    videos.update_video_processing_status = AsyncMock()
    return videos


@pytest.fixture
def storage():
    storage = MagicMock()
    storage.replace_from_path = AsyncMock(return_value=16)
    return storage


@pytest.fixture
def ingestion():
    ingestion = MagicMock()
    ingestion.registry = ProcessingTaskRegistry()
    ingestion.schedule = AsyncMock()
    return ingestion


@pytest.fixture
def recovery(ingestion, processor, fake_transcoder, storage, videos) -> VideoRecoveryService:
    return VideoRecoveryService(ingestion, processor, fake_transcoder, storage, videos)


@pytest.mark.asyncio
async def test_resume_schedules_incomplete(recovery, ingestion, videos):
    """Test every unfinished video is scheduled without waiting for it."""
    videos.find_incomplete_videos.return_value = [
        {"id": "a", "namespace": "capsules", "is_processed": False},
        {"id": "b", "namespace": "presentation/video", "is_processed": False},
    ]

    scheduled = await recovery.resume_incomplete_videos()

    assert scheduled == 2
    ingestion.schedule.assert_any_await("a", ["capsules"])
    ingestion.schedule.assert_any_await("b", ["presentation", "video"])


@pytest.mark.asyncio
async def test_resume_skips_running(recovery, ingestion, videos):
    """Test a video already running in this process is not scheduled twice."""
    ingestion.registry.is_running = MagicMock(side_effect=lambda key: key == "capsules/a")
    videos.find_incomplete_videos.return_value = [
        {"id": "a", "namespace": "capsules", "is_processed": False},
    ]

    assert await recovery.resume_incomplete_videos() == 0
    ingestion.schedule.assert_not_awaited()


@pytest.mark.asyncio
async def test_completed_output_is_recovered(recovery, store, storage, videos):
    """Test a finished output of a crashed run is stored and recorded."""
    await crashed_workspace(store, "vid1")

    counts = await recovery.recover_dangling_files(NAMESPACE)

    assert counts == {"recovered": 1, "cleaned": 0}
    key, path, mime = storage.replace_from_path.await_args.args
    assert key == "capsules/vid1/clip.mp4"
    assert mime == "video/mp4"
    assert videos.update_media_metadata.await_args.kwargs["file_size"] == 16
    videos.update_video_processing_status.assert_awaited_once_with(
        "vid1", is_processed=True, processing_progress=100, processing_error=None
    )
    assert not store.workspace_dir("vid1", NAMESPACE).exists()


@pytest.mark.asyncio
async def test_failed_output_is_not_recovered(recovery, store, storage):
    """Test output of a run recorded as failed is discarded."""
    await crashed_workspace(store, "vid1", outcome=RunOutcome.FAILED)

    counts = await recovery.recover_dangling_files(NAMESPACE)

    assert counts == {"recovered": 0, "cleaned": 1}
    storage.replace_from_path.assert_not_awaited()
    assert not store.workspace_dir("vid1", NAMESPACE).exists()


@pytest.mark.asyncio
async def test_interrupted_run_is_cleaned(recovery, store, storage):
    """Test a workspace without output is removed."""
    await crashed_workspace(store, "vid1", output=False)

    assert await recovery.recover_dangling_files(NAMESPACE) == {"recovered": 0, "cleaned": 1}
    storage.replace_from_path.assert_not_awaited()


@pytest.mark.asyncio
async def test_unknown_or_processed_videos_are_cleaned(recovery, store, storage, videos):
    """Test workspaces of deleted or already processed videos are removed."""
    await crashed_workspace(store, "deleted")
    await crashed_workspace(store, "processed")

    async def get_video(video_id):
        if video_id == "deleted":
            return None
        return {"id": video_id, "is_processed": True, "storage_key": "k"}

    videos.get_video.side_effect = get_video

    assert await recovery.recover_dangling_files(NAMESPACE) == {"recovered": 0, "cleaned": 2}
    storage.replace_from_path.assert_not_awaited()


@pytest.mark.asyncio
async def test_recovery_error_still_cleans(recovery, store, storage):
    """Test a failing store of the output falls back to cleanup."""
    await crashed_workspace(store, "vid1")
    storage.replace_from_path.side_effect = OSError("disk full")

    assert await recovery.recover_dangling_files(NAMESPACE) == {"recovered": 0, "cleaned": 1}
    assert not store.workspace_dir("vid1", NAMESPACE).exists()


@pytest.mark.asyncio
async def test_run_startup(recovery, store, ingestion, videos):
    """Test startup settles every namespace, then resumes only when asked."""
    await crashed_workspace(store, "vid1", output=False)

    await recovery.run_startup(resume=False)

    assert not store.workspace_dir("vid1", NAMESPACE).exists()
    videos.find_incomplete_videos.assert_not_awaited()

    await recovery.run_startup(resume=True)
    videos.find_incomplete_videos.assert_awaited_once()
