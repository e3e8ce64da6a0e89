"""Periodic tasks for temp workspace maintenance."""

import asyncio
from datetime import datetime, timezone
from typing import Optional
from ..tasks.celery_app import celery_app
from ..config import settings
from ..repositories.media_store_repo import MediaStoreRepository
from ..services.reconciler_service import ReconcilerService


@celery_app.task(name="cleanup_stale_workspaces")
def cleanup_stale_workspaces(max_age_hours: Optional[float] = None) -> dict:
    """
    Remove workspaces older than the configured maximum age.
    Workspaces of runs that are still alive are kept.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        max_age = int((max_age_hours or settings.temp_max_age_hours) * 3600)
        reconciler = ReconcilerService(MediaStoreRepository())
        removed = loop.run_until_complete(reconciler.cleanup_old_files(max_age))
        return {
            "status": "completed",
            "removed": removed,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
    finally:
        loop.close()


# Configure periodic task schedule
celery_app.conf.beat_schedule = {
    "cleanup-stale-workspaces": {
        "task": "cleanup_stale_workspaces",
        "schedule": 3600.0,
    },
}
