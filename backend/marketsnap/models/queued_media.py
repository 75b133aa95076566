"""Pending media queue — one record per captured snap awaiting upload."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from sqlalchemy import Integer, LargeBinary, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from marketsnap.models.base import Base, UTCDateTime


class MediaType(str, Enum):
    PHOTO = "photo"
    VIDEO = "video"


class FilterType(str, Enum):
    NONE = "none"
    WARM = "warm"
    COOL = "cool"
    CONTRAST = "contrast"


class ItemStatus(str, Enum):
    PENDING = "pending"
    UPLOADING = "uploading"
    FAILED = "failed"


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    AUTH = "auth"


class QueuedMediaRecord(Base):
    """Row in the ``pendingMediaQueue`` store.

    Scheduling columns stay in clear so the queue can be filtered and
    ordered in SQL. Everything describing the snap itself lives in
    ``payload``, sealed with the store key.
    """

    __tablename__ = "pending_media_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=ItemStatus.PENDING.value, nullable=False)
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    requires_attention: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_kind: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    def __repr__(self) -> str:
        return f"<QueuedMediaRecord(id={self.id}, status='{self.status}', retries={self.retry_count})>"


@dataclass
class QueuedMediaItem:
    """Decrypted view of a queue record handed to the sync pipeline."""

    id: str
    local_file_path: Path
    media_type: MediaType
    owner_id: str
    created_at: datetime
    caption: str | None = None
    filter_type: FilterType | None = None
    status: ItemStatus = ItemStatus.PENDING
    retry_count: int = 0
    last_attempt_at: datetime | None = None
    requires_attention: bool = False
    error_kind: ErrorKind | None = None
    last_error: str | None = None

    @property
    def display_state(self) -> str:
        """What the UI shows: backoff is just "queued", only give-ups alarm."""
        if self.status == ItemStatus.UPLOADING:
            return "uploading"
        if self.requires_attention:
            return "failed"
        return "queued"
