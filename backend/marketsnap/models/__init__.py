"""SQLAlchemy ORM models and queue value types."""

from marketsnap.models.base import Base
from marketsnap.models.cached_session import CachedSession, CachedSessionRecord
from marketsnap.models.queued_media import (
    ErrorKind,
    FilterType,
    ItemStatus,
    MediaType,
    QueuedMediaItem,
    QueuedMediaRecord,
)

__all__ = [
    "Base",
    "CachedSession",
    "CachedSessionRecord",
    "ErrorKind",
    "FilterType",
    "ItemStatus",
    "MediaType",
    "QueuedMediaItem",
    "QueuedMediaRecord",
]
