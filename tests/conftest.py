"""Pytest configuration and fixtures."""

import asyncio
import pytest
from pathlib import Path
from typing import AsyncGenerator, Callable, List, Optional
from unittest.mock import AsyncMock
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from capsule_video.main import app
from capsule_video.config.database import Base, get_db
from capsule_video.core.abort import AbortSignal
from capsule_video.core.dependencies import build_pipeline
from capsule_video.core.exceptions import ProbeError
from capsule_video.models import video_file  # noqa: F401
from capsule_video.repositories.media_store_repo import MediaStoreRepository
from capsule_video.repositories.storage_repo import StorageRepository
from capsule_video.repositories.video_file_repo import ProcessingStatusRepository
from capsule_video.schemas.video import ProbeResult, TranscodeOutcome
from capsule_video.services.hardware_accel_service import HardwareAccelerationService
from capsule_video.services.progress_events import InMemoryProgressBroker
from capsule_video.services.video_processing_service import VideoProcessingService
from capsule_video.utils.constants import OUTPUT_FILE_NAME, VideoQuality


# Test database URL (in-memory SQLite for testing)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

# Create test engine
test_engine = create_async_engine(
    TEST_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestSessionLocal = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


class FakeTranscoder:
    """Stands in for ffmpeg: probes return fixed metadata, transcodes write a small file."""

    def __init__(self, codec: str = "hevc"):
        self.codec = codec
        self.duration = 12.5
        self.ticks: List[float] = [0.0, 50.0, 25.0, 100.0]
        self.probe_error: Optional[Exception] = None
        self.fail_with: Optional[BaseException] = None
        self.during_transcode: Optional[Callable[[Optional[AbortSignal]], None]] = None
        self.release: Optional[asyncio.Event] = None
        self.probed: List[str] = []
        self.transcode_calls = 0

    async def probe(self, path) -> ProbeResult:
        self.probed.append(str(path))
        if self.probe_error is not None:
            raise self.probe_error
        codec = "h264" if Path(path).name == OUTPUT_FILE_NAME and self.transcode_calls else self.codec
        return ProbeResult(duration=self.duration, width=1280, height=720, codec=codec)

    async def transcode_to_standard_codec(
        self,
        input_path,
        output_path,
        on_progress=None,
        abort_signal=None,
        *,
        duration=None,
        quality=VideoQuality.MEDIUM,
    ) -> TranscodeOutcome:
        self.transcode_calls += 1
        for tick in self.ticks:
            if on_progress:
                on_progress(tick)
        if self.release is not None:
            await self.release.wait()
        if self.during_transcode is not None:
            self.during_transcode(abort_signal)
        if self.fail_with is not None:
            raise self.fail_with
        Path(output_path).write_bytes(b"h264-output")
        return TranscodeOutcome(was_converted=True, output_path=str(output_path), final_codec="h264")


@pytest.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    """Create test database session."""
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with TestSessionLocal() as session:
        yield session
        await session.rollback()

    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def status_repo(db_session: AsyncSession) -> ProcessingStatusRepository:
    """Processing repository backed by the test database."""
    return ProcessingStatusRepository(TestSessionLocal)


@pytest.fixture
def store(tmp_path: Path) -> MediaStoreRepository:
    """Media store rooted in a temporary directory."""
    return MediaStoreRepository(tmp_path / "temp")


@pytest.fixture
def local_storage(tmp_path: Path) -> StorageRepository:
    """Local-disk storage for originals."""
    return StorageRepository(backend="local", root=tmp_path / "storage")


@pytest.fixture
def fake_transcoder() -> FakeTranscoder:
    return FakeTranscoder()


@pytest.fixture
def mock_repository() -> AsyncMock:
    """Processing repository that records every status write."""
    repository = AsyncMock()
    repository.update_video_processing_status = AsyncMock(return_value=None)
    return repository


@pytest.fixture
def broker() -> InMemoryProgressBroker:
    return InMemoryProgressBroker()


@pytest.fixture
def processor(
    fake_transcoder: FakeTranscoder,
    store: MediaStoreRepository,
    mock_repository: AsyncMock,
    broker: InMemoryProgressBroker,
) -> VideoProcessingService:
    """Orchestrator wired to the fake transcoder."""
    return VideoProcessingService(
        transcoder=fake_transcoder,
        store=store,
        repository=mock_repository,
        events=broker,
    )


@pytest.fixture
async def pipeline(db_session: AsyncSession, tmp_path: Path):
    """Every pipeline service, backed by the test database and temp directories."""
    pipeline = await build_pipeline(
        session_factory=TestSessionLocal,
        temp_base=tmp_path / "temp",
        storage=StorageRepository(backend="local", root=tmp_path / "storage"),
        hardware=HardwareAccelerationService(enabled=False),
        event_backend="memory",
    )
    yield pipeline
    await pipeline.registry.shutdown()


@pytest.fixture(scope="function")
async def client(db_session: AsyncSession, pipeline) -> AsyncGenerator[AsyncClient, None]:
    """Create test HTTP client."""
    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.state.pipeline = pipeline

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def probe_error() -> ProbeError:
    return ProbeError("Could not read video metadata: moov atom not found", diagnostic="moov atom not found")
