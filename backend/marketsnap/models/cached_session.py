"""Cached session model — offline snapshot of the signed-in user."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from marketsnap.models.base import Base, UTCDateTime


class CachedSessionRecord(Base):
    __tablename__ = "auth_cache"

    key: Mapped[str] = mapped_column(String(32), primary_key=True)
    cached_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)

    def __repr__(self) -> str:
        return f"<CachedSessionRecord(key={self.key}, cached_at={self.cached_at})>"


@dataclass
class CachedSession:
    """Drives the UI while offline; never authorizes remote writes."""

    user_id: str
    display_name: str | None
    avatar_ref: str | None
    cached_at: datetime
