"""Service wiring and reusable FastAPI dependencies."""

from dataclasses import dataclass
from pathlib import Path
from typing import AsyncGenerator, Callable, Optional, Union
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import settings
from ..config.database import AsyncSessionLocal, get_db
from ..config.redis import get_redis
from ..core.interfaces import ProgressEventSink
from ..repositories.media_store_repo import MediaStoreRepository
from ..repositories.storage_repo import StorageRepository
from ..repositories.video_file_repo import ProcessingStatusRepository, VideoFileRepository
from ..services.hardware_accel_service import HardwareAccelerationService
from ..services.job_registry import ProcessingTaskRegistry
from ..services.progress_events import InMemoryProgressBroker, RedisProgressPublisher
from ..services.reconciler_service import ReconcilerService
from ..services.recovery_service import VideoRecoveryService
from ..services.transcoder_service import TranscoderService
from ..services.video_ingestion_service import VideoIngestionService
from ..services.video_processing_service import VideoProcessingService


@dataclass
class Pipeline:
    """Long-lived services shared by requests, background runs and workers."""

    store: MediaStoreRepository
    storage: StorageRepository
    hardware: HardwareAccelerationService
    transcoder: TranscoderService
    reconciler: ReconcilerService
    videos: ProcessingStatusRepository
    broker: InMemoryProgressBroker
    events: ProgressEventSink
    processor: VideoProcessingService
    registry: ProcessingTaskRegistry
    ingestion: VideoIngestionService
    recovery: VideoRecoveryService


async def build_pipeline(
    session_factory: Callable[[], AsyncSession] = AsyncSessionLocal,
    temp_base: Optional[Union[str, Path]] = None,
    storage: Optional[StorageRepository] = None,
    hardware: Optional[HardwareAccelerationService] = None,
    event_backend: Optional[str] = None,
) -> Pipeline:
    """Create every pipeline service from settings."""
    store = MediaStoreRepository(temp_base)
    storage = storage or StorageRepository()
    hardware = hardware or HardwareAccelerationService()
    transcoder = TranscoderService(hardware=hardware)
    reconciler = ReconcilerService(store)
    videos = ProcessingStatusRepository(
        session_factory, include_failed=settings.retry_failed_on_startup
    )

    broker = InMemoryProgressBroker()
    events: ProgressEventSink = broker
    if (event_backend or settings.event_backend).lower() == "redis":
        events = RedisProgressPublisher(await get_redis(), local=broker)

    processor = VideoProcessingService(
        transcoder=transcoder,
        store=store,
        reconciler=reconciler,
        repository=videos,
        events=events,
    )
    registry = ProcessingTaskRegistry()
    ingestion = VideoIngestionService(processor, storage, videos, registry)
    recovery = VideoRecoveryService(ingestion, processor, transcoder, storage, videos)

    return Pipeline(
        store=store,
        storage=storage,
        hardware=hardware,
        transcoder=transcoder,
        reconciler=reconciler,
        videos=videos,
        broker=broker,
        events=events,
        processor=processor,
        registry=registry,
        ingestion=ingestion,
        recovery=recovery,
    )


def get_pipeline(request: Request) -> Pipeline:
    """Pipeline created by the application lifespan."""
    return request.app.state.pipeline


async def get_video_repo(
    db: AsyncSession = Depends(get_db),
) -> AsyncGenerator[VideoFileRepository, None]:
    """Dependency to get video file repository."""
    yield VideoFileRepository(db)


def get_ingestion_service(pipeline: Pipeline = Depends(get_pipeline)) -> VideoIngestionService:
    return pipeline.ingestion


def get_processing_service(pipeline: Pipeline = Depends(get_pipeline)) -> VideoProcessingService:
    return pipeline.processor


def get_reconciler(pipeline: Pipeline = Depends(get_pipeline)) -> ReconcilerService:
    return pipeline.reconciler


def get_event_stream(
    pipeline: Pipeline = Depends(get_pipeline),
) -> Union[InMemoryProgressBroker, RedisProgressPublisher]:
    """Source of progress events for streaming to clients."""
    if isinstance(pipeline.events, RedisProgressPublisher):
        return pipeline.events
    return pipeline.broker
