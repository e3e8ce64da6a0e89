"""Video upload, processing status and temp workspace routes."""

from typing import List, Optional, Union
from fastapi import APIRouter, Depends, File, HTTPException, Query, Request, UploadFile, status
from fastapi.responses import StreamingResponse

from ..core.dependencies import (
    get_event_stream,
    get_ingestion_service,
    get_processing_service,
    get_reconciler,
    get_video_repo,
)
from ..core.exceptions import (
    InvalidNamespaceError,
    NotFoundError,
    PipelineError,
    ProcessingInProgressError,
)
from ..middleware.rate_limit import limiter, upload_limit
from ..repositories.video_file_repo import VideoFileRepository
from ..schemas.video import (
    AbortResponse,
    CleanupResponse,
    DanglingFile,
    ProcessingOptions,
    TempCleanupResponse,
    TempStorageStats,
    VideoResponse,
    VideoStatusResponse,
)
from ..services.progress_events import InMemoryProgressBroker, RedisProgressPublisher
from ..services.reconciler_service import ReconcilerService
from ..services.video_ingestion_service import VideoIngestionService
from ..services.video_processing_service import VideoProcessingService
from ..utils.constants import VIDEO_PROCESSING_EVENT, VideoQuality
from ..utils.helpers import normalize_namespace, parse_namespace

router = APIRouter(prefix="/videos", tags=["videos"])


def to_http_error(error: PipelineError) -> HTTPException:
    """Translate pipeline errors into HTTP errors."""
    if isinstance(error, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, ProcessingInProgressError):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(error))
    if isinstance(error, InvalidNamespaceError):
        return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(error))
    return HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(error))


def _namespace(value: str) -> List[str]:
    try:
        return normalize_namespace(parse_namespace(value))
    except InvalidNamespaceError as e:
        raise to_http_error(e) from e


@router.get("/temp/stats", response_model=TempStorageStats)
async def temp_stats(reconciler: ReconcilerService = Depends(get_reconciler)):
    """Workspace usage per namespace."""
    return await reconciler.get_stats()


@router.post("/temp/cleanup", response_model=TempCleanupResponse)
async def cleanup_old_workspaces(
    max_age_hours: float = Query(24, gt=0),
    reconciler: ReconcilerService = Depends(get_reconciler),
):
    """Remove workspaces older than max_age_hours that no run owns."""
    removed = await reconciler.cleanup_old_files(int(max_age_hours * 3600))
    return TempCleanupResponse(removed=removed, max_age_hours=max_age_hours)


@router.get("/temp/{namespace:path}/dangling", response_model=List[DanglingFile])
async def list_dangling(
    namespace: str,
    processor: VideoProcessingService = Depends(get_processing_service),
):
    """Workspaces left behind in a namespace."""
    return await processor.get_dangling_files(_namespace(namespace))


@router.delete("/temp/{namespace:path}/{file_id}", response_model=CleanupResponse)
async def cleanup_workspace(
    namespace: str,
    file_id: str,
    processor: VideoProcessingService = Depends(get_processing_service),
):
    """Remove one workspace. Refused while the file is being processed."""
    segments = _namespace(namespace)
    try:
        removed = await processor.cleanup(file_id, segments)
    except PipelineError as e:
        raise to_http_error(e) from e
    return CleanupResponse(file_id=file_id, namespace=segments, removed=removed)


@router.post("/upload", response_model=VideoResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(upload_limit)
async def upload_video(
    request: Request,
    file: UploadFile = File(...),
    namespace: str = Query("capsules"),
    force_convert: bool = Query(False),
    quality: Optional[VideoQuality] = Query(None),
    ingestion: VideoIngestionService = Depends(get_ingestion_service),
):
    """
    Upload a video.
    The original is stored and processing starts in the background.
    """
    options = None
    if force_convert or quality:
        options = ProcessingOptions(
            force_convert=force_convert,
            quality=quality or VideoQuality.MEDIUM,
        )
    try:
        return await ingestion.handle_upload(file, _namespace(namespace), options)
    except PipelineError as e:
        raise to_http_error(e) from e


@router.get("/{video_id}", response_model=VideoStatusResponse)
async def get_video_status(
    video_id: str,
    videos: VideoFileRepository = Depends(get_video_repo),
    processor: VideoProcessingService = Depends(get_processing_service),
):
    """Stored processing status of a video and the progress of its live run."""
    video = await videos.get_by_id(video_id)
    if not video:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    namespace = parse_namespace(video["namespace"])
    return VideoStatusResponse(
        **video,
        is_running=processor.is_processing(video_id, namespace),
        live_progress=processor.get_progress(video_id, namespace),
    )


@router.get("/{video_id}/events")
async def stream_video_events(
    video_id: str,
    events: Union[InMemoryProgressBroker, RedisProgressPublisher] = Depends(get_event_stream),
):
    """Server-sent progress events until processing ends."""

    async def event_source():
        async for event in events.stream(VIDEO_PROCESSING_EVENT, {"video_id": video_id}):
            yield f"event: {VIDEO_PROCESSING_EVENT}\ndata: {event.model_dump_json()}\n\n"

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.post("/{video_id}/abort", response_model=AbortResponse)
async def abort_processing(
    video_id: str,
    videos: VideoFileRepository = Depends(get_video_repo),
    ingestion: VideoIngestionService = Depends(get_ingestion_service),
):
    """Abort the running processing of a video."""
    video = await videos.get_by_id(video_id)
    if not video:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Video not found")
    aborted = await ingestion.abort(video_id, parse_namespace(video["namespace"]))
    if not aborted:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Video is not being processed",
        )
    return AbortResponse(video_id=video_id, aborted=True)


@router.post("/{video_id}/retry", response_model=VideoResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_processing(
    video_id: str,
    force_convert: bool = Query(False),
    ingestion: VideoIngestionService = Depends(get_ingestion_service),
):
    """Clear a recorded failure and process the video again."""
    options = ProcessingOptions(force_convert=True) if force_convert else None
    try:
        return await ingestion.retry(video_id, options)
    except PipelineError as e:
        raise to_http_error(e) from e
