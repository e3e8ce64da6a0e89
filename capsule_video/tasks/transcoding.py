"""Video processing Celery tasks."""

import asyncio
from typing import Optional
from ..tasks.celery_app import celery_app
from ..config import settings, close_db, close_redis, get_redis
from ..core.abort import AbortController
from ..core.dependencies import build_pipeline
from ..core.exceptions import AbortError, NotFoundError, ProcessingInProgressError
from ..schemas.video import ProcessingOptions
from ..services.remote_abort import listen_for_abort
from ..utils.helpers import job_key, parse_namespace
from ..utils.logger import get_logger

logger = get_logger(__name__)


async def _process(video_id: str, namespace: str, options: Optional[dict]) -> dict:
    pipeline = await build_pipeline(event_backend="redis")
    await pipeline.hardware.detect()
    controller = AbortController.timeout(settings.processing_timeout_seconds)
    segments = parse_namespace(namespace)
    try:
        async with listen_for_abort(await get_redis(), job_key(video_id, segments), controller):
            result = await pipeline.ingestion.run_pipeline(
                video_id,
                segments,
                abort_signal=controller.signal,
                options=ProcessingOptions(**options) if options else None,
            )
    finally:
        controller.dispose()
        await pipeline.events.flush()
        # Connections are bound to this task's event loop
        await close_redis()
        await close_db()
    return {
        "video_id": video_id,
        "status": "completed",
        "was_converted": result.was_converted,
        "codec": result.final_codec,
        "size": result.new_size,
    }


@celery_app.task(name="process_video", bind=True)
def process_video(self, video_id: str, namespace: str, options: Optional[dict] = None) -> dict:
    """
    Run the processing pipeline for a stored video.
    Failures are recorded on the video and not retried automatically.
    """
    # Run async code in sync context
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        return loop.run_until_complete(_process(video_id, namespace, options))
    except AbortError as exc:
        logger.warning("Queued processing aborted", video_id=video_id, reason=exc.reason)
        return {"video_id": video_id, "status": "aborted", "reason": exc.reason}
    except NotFoundError as exc:
        return {"video_id": video_id, "status": "failed", "error": str(exc)}
    except ProcessingInProgressError as exc:
        return {"video_id": video_id, "status": "skipped", "reason": str(exc)}
    finally:
        loop.close()
