"""Celery application for queued processing and maintenance."""

from celery import Celery
from ..config import settings

celery_app = Celery(
    "capsule_video",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "capsule_video.tasks.transcoding",
        "capsule_video.tasks.maintenance",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)
