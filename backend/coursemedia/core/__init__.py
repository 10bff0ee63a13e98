"""Core module for configuration and utilities."""

from coursemedia.core.config import settings
from coursemedia.core.database import Base, get_db
from coursemedia.core.redis import create_redis

__all__ = [
    "settings",
    "Base",
    "get_db",
    "create_redis",
]
