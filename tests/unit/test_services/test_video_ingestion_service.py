"""Unit tests for uploads and background pipeline runs."""

import asyncio
import io
import pytest
from unittest.mock import AsyncMock, MagicMock
from fastapi import UploadFile
from starlette.datastructures import Headers

from capsule_video.config import settings
from capsule_video.core.abort import AbortController
from capsule_video.core.exceptions import AbortError, NotFoundError, ProcessingInProgressError
from capsule_video.services.job_registry import ProcessingTaskRegistry
from capsule_video.services.video_ingestion_service import VideoIngestionService

NAMESPACE = ["capsules"]


def video_record(video_id: str = "vid1", storage_key: str = "capsules/vid1/clip.mov"):
    return {
        "id": video_id,
        "namespace": "capsules",
        "original_filename": "clip.mov",
        "content_type": "video/quicktime",
        "storage_key": storage_key,
        "is_processed": False,
    }


@pytest.fixture
def videos():
    videos = MagicMock()
    videos.get_video = AsyncMock(return_value=video_record())
    videos.get_video_source = AsyncMock(return_value="capsules/vid1/clip.mov")
    videos.update_video_processing_status = AsyncMock()
    videos.update_media_metadata = AsyncMock()
    videos.create_video = AsyncMock(side_effect=lambda **kwargs: {"id": kwargs["video_id"], **kwargs})
    videos.reset_processing = AsyncMock(return_value=video_record())
    return videos


@pytest.fixture
def ingestion(processor, local_storage, videos) -> VideoIngestionService:
    return VideoIngestionService(processor, local_storage, videos, ProcessingTaskRegistry())


@pytest.mark.asyncio
async def test_run_pipeline_replaces_original(ingestion, local_storage, videos, store):
    """Test a converted result replaces the stored original and the workspace is removed."""
    await local_storage.save_bytes(b"hevc-original", "capsules/vid1/clip.mov", "video/quicktime")

    result = await ingestion.run_pipeline("vid1", NAMESPACE)

    assert result.was_converted is True
    assert local_storage.local_path("capsules/vid1/clip.mov").read_bytes() == b"h264-output"
    videos.update_media_metadata.assert_awaited_once()
    metadata = videos.update_media_metadata.await_args.kwargs
    assert metadata["codec"] == "h264"
    assert metadata["content_type"] == "video/mp4"
    assert metadata["file_size"] == len(b"h264-output")
    assert not store.workspace_dir("vid1", NAMESPACE).exists()


@pytest.mark.asyncio
async def test_run_pipeline_keeps_h264_original(ingestion, local_storage, videos, fake_transcoder):
    """Test an H.264 original is left untouched."""
    fake_transcoder.codec = "h264"
    await local_storage.save_bytes(b"h264-original", "capsules/vid1/clip.mov", "video/quicktime")

    result = await ingestion.run_pipeline("vid1", NAMESPACE)

    assert result.was_converted is False
    assert local_storage.local_path("capsules/vid1/clip.mov").read_bytes() == b"h264-original"
    assert videos.update_media_metadata.await_args.kwargs["content_type"] is None


@pytest.mark.asyncio
async def test_run_pipeline_unknown_video(ingestion, videos):
    """Test a video without a record is recorded as failed."""
    videos.get_video.return_value = None

    with pytest.raises(NotFoundError):
        await ingestion.run_pipeline("vid1", NAMESPACE)

    videos.update_video_processing_status.assert_awaited_once_with(
        "vid1", is_processed=False, processing_error="Video not found: vid1"
    )


@pytest.mark.asyncio
async def test_run_pipeline_missing_source(ingestion, mock_repository, store):
    """Test a record whose original is gone fails and leaves no workspace."""
    with pytest.raises(NotFoundError):
        await ingestion.run_pipeline("vid1", NAMESPACE)

    last = mock_repository.update_video_processing_status.await_args
    assert last.kwargs["is_processed"] is False
    assert "Stored object not found" in last.kwargs["processing_error"]
    assert not store.workspace_dir("vid1", NAMESPACE).exists()


@pytest.mark.asyncio
async def test_schedule_runs_in_background(ingestion, local_storage):
    """Test scheduling returns before the run finishes."""
    await local_storage.save_bytes(b"hevc-original", "capsules/vid1/clip.mov", "video/quicktime")

    await ingestion.schedule("vid1", NAMESPACE)

    assert ingestion.registry.is_running("capsules/vid1")
    await ingestion.registry.wait("capsules/vid1")
    assert not ingestion.registry.is_running("capsules/vid1")
    assert local_storage.local_path("capsules/vid1/clip.mov").read_bytes() == b"h264-output"


@pytest.mark.asyncio
async def test_handle_upload(ingestion, local_storage, videos):
    """Test an upload is stored, recorded and scheduled."""
    ingestion.schedule = AsyncMock()
    upload = UploadFile(
        file=io.BytesIO(b"uploaded-bytes"),
        filename="My Clip.mov",
        size=14,
        headers=Headers({"content-type": "video/quicktime"}),
    )

    video = await ingestion.handle_upload(upload, NAMESPACE)

    assert video["namespace"] == "capsules"
    assert video["file_size"] == 14
    assert video["storage_key"].endswith("/My_Clip.mov")
    assert local_storage.local_path(video["storage_key"]).read_bytes() == b"uploaded-bytes"
    ingestion.schedule.assert_awaited_once_with(video["video_id"], ["capsules"], None)


@pytest.mark.asyncio
async def test_retry_unknown_video(ingestion, videos):
    """Test retrying a missing video."""
    videos.reset_processing.return_value = None

    with pytest.raises(NotFoundError):
        await ingestion.retry("missing")


@pytest.mark.asyncio
async def test_retry_schedules_again(ingestion, videos):
    """Test retry clears the failure and schedules a run."""
    ingestion.schedule = AsyncMock()

    await ingestion.retry("vid1")

    videos.reset_processing.assert_awaited_once_with("vid1")
    ingestion.schedule.assert_awaited_once_with("vid1", ["capsules"], None)


@pytest.mark.asyncio
async def test_abort_without_run(ingestion):
    assert await ingestion.abort("vid1", NAMESPACE) is False


@pytest.mark.asyncio
async def test_duplicate_run_keeps_live_workspace(ingestion, local_storage, fake_transcoder, store):
    """Test a refused second run does not remove the workspace of the first."""
    await local_storage.save_bytes(b"hevc-original", "capsules/vid1/clip.mov", "video/quicktime")
    fake_transcoder.release = asyncio.Event()
    first = asyncio.create_task(ingestion.run_pipeline("vid1", NAMESPACE))
    while fake_transcoder.transcode_calls == 0:
        await asyncio.sleep(0)

    with pytest.raises(ProcessingInProgressError):
        await ingestion.run_pipeline("vid1", NAMESPACE)

    assert store.workspace_dir("vid1", NAMESPACE).exists()
    fake_transcoder.release.set()
    result = await first
    assert result.was_converted is True
    assert local_storage.local_path("capsules/vid1/clip.mov").read_bytes() == b"h264-output"


@pytest.mark.asyncio
async def test_abort_after_result_is_stored(ingestion, local_storage, videos, mock_repository, store):
    """Test an abort after the result is stored ends aborted and keeps the converted file."""
    await local_storage.save_bytes(b"hevc-original", "capsules/vid1/clip.mov", "video/quicktime")
    controller = AbortController()
    videos.update_media_metadata.side_effect = lambda *args, **kwargs: controller.abort("user")

    with pytest.raises(AbortError):
        await ingestion.run_pipeline("vid1", NAMESPACE, abort_signal=controller.signal)

    assert local_storage.local_path("capsules/vid1/clip.mov").read_bytes() == b"h264-output"
    last = mock_repository.update_video_processing_status.await_args
    assert last.kwargs == {"is_processed": False}
    assert not store.workspace_dir("vid1", NAMESPACE).exists()


@pytest.mark.asyncio
async def test_abort_reaches_queue_workers(ingestion, monkeypatch):
    """Test aborting a queued run publishes an abort request to the workers."""
    client = MagicMock()
    client.publish = AsyncMock(return_value=1)
    monkeypatch.setattr(settings, "use_task_queue", True)
    monkeypatch.setattr(
        "capsule_video.services.video_ingestion_service.get_redis", AsyncMock(return_value=client)
    )

    assert await ingestion.abort("vid1", NAMESPACE) is True
    client.publish.assert_awaited_once_with("video-abort:capsules/vid1", "aborted by request")

    client.publish.return_value = 0
    assert await ingestion.abort("vid1", NAMESPACE) is False
