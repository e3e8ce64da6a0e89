"""FastAPI application entry point."""

import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded

from .config import settings
from .config.database import init_db, close_db
from .config.redis import close_redis
from .core.dependencies import build_pipeline
from .middleware.rate_limit import limiter, rate_limit_exceeded_handler
from .routers import videos
from .utils.logger import configure_logging, get_logger

# Configure logging
configure_logging()
logger = get_logger(__name__)


def _log_recovery_result(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.error("Startup recovery failed", error=str(error), exc_info=error)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    # Startup
    logger.info("Starting application", version=settings.app_version, environment=settings.environment)
    await init_db()

    pipeline = await build_pipeline()
    pipeline.store.ensure_base()
    app.state.pipeline = pipeline
    logger.info("FFmpeg temp directory", path=str(pipeline.store.base_path))

    app.state.ffmpeg_available = await pipeline.transcoder.check_availability()
    if not app.state.ffmpeg_available:
        logger.warning("FFmpeg is not available, video processing will fail")
    await pipeline.hardware.detect()

    # Recovery runs in the background so startup is not delayed
    recovery_task = asyncio.create_task(
        pipeline.recovery.run_startup(resume=settings.resume_on_startup)
    )
    recovery_task.add_done_callback(_log_recovery_result)

    yield

    # Shutdown
    logger.info("Shutting down application")
    if not recovery_task.done():
        recovery_task.cancel()
    await pipeline.registry.shutdown()
    await close_db()
    await close_redis()


# Create FastAPI app
app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
    description="Video ingestion and H.264 transcoding pipeline with crash recovery",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# Add rate limiting
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Exception handlers
@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler."""
    logger.error("Unhandled exception", exc_info=exc, path=request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Internal server error"},
    )


# Health check endpoint
@app.get("/health")
async def health_check(request: Request):
    """Health check endpoint with encoder and job status."""
    pipeline = getattr(request.app.state, "pipeline", None)
    accel = pipeline.hardware.accel_type if pipeline else None
    return {
        "status": "healthy",
        "version": settings.app_version,
        "ffmpeg": getattr(request.app.state, "ffmpeg_available", None),
        "hardware_acceleration": accel.value if accel else None,
        "running_jobs": len(pipeline.registry.keys()) if pipeline else 0,
    }


# Include routers
app.include_router(videos.router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "capsule_video.main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.debug,
    )
