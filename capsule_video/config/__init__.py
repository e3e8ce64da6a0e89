"""Configuration module for application settings."""

from .settings import settings
from .database import get_db, init_db, close_db
from .storage import get_storage_client
from .redis import get_redis, close_redis

__all__ = [
    "settings",
    "get_db",
    "init_db",
    "close_db",
    "get_storage_client",
    "get_redis",
    "close_redis",
]
