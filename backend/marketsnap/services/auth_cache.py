"""Offline session cache (the ``authCache`` store)."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete
from sqlalchemy.exc import DatabaseError

from marketsnap.database import Database
from marketsnap.errors import StorageError
from marketsnap.models.base import utcnow
from marketsnap.models.cached_session import CachedSession, CachedSessionRecord
from marketsnap.utils.crypto import RecordCipher, RecordDecryptError

logger = logging.getLogger(__name__)

SESSION_KEY = "current"


class AuthCache:
    """Keeps the last signed-in user so the app can start without a network."""

    def __init__(
        self,
        database: Database,
        cipher: RecordCipher,
        *,
        ttl_days: int = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = database
        self._cipher = cipher
        self._ttl = timedelta(days=ttl_days)
        self._clock = clock

    async def save(
        self,
        user_id: str,
        display_name: str | None = None,
        avatar_ref: str | None = None,
    ) -> CachedSession:
        """Write the snapshot after a successful sign-in."""
        session = CachedSession(
            user_id=user_id,
            display_name=display_name,
            avatar_ref=avatar_ref,
            cached_at=self._clock(),
        )
        payload = {
            "user_id": session.user_id,
            "display_name": session.display_name,
            "avatar_ref": session.avatar_ref,
        }
        try:
            async with self._db.session() as db:
                record = await db.get(CachedSessionRecord, SESSION_KEY)
                sealed = self._cipher.seal(payload, SESSION_KEY)
                if record is None:
                    db.add(CachedSessionRecord(key=SESSION_KEY, cached_at=session.cached_at, payload=sealed))
                else:
                    record.cached_at = session.cached_at
                    record.payload = sealed
                await db.commit()
        except DatabaseError as e:
            raise StorageError(f"Cannot cache session: {e}") from e
        logger.info("Cached session for %s", user_id)
        return session

    async def load(self, now: datetime | None = None) -> CachedSession | None:
        """Read the snapshot at start-up; expired or unreadable entries are cleared."""
        now = now or self._clock()
        try:
            async with self._db.session() as db:
                record = await db.get(CachedSessionRecord, SESSION_KEY)
        except DatabaseError as e:
            raise StorageError(f"Cannot read session cache: {e}") from e
        if record is None:
            return None

        if now - record.cached_at > self._ttl:
            logger.info("Cached session from %s expired — clearing", record.cached_at.isoformat())
            await self.clear()
            return None

        try:
            data = self._cipher.open(record.payload, SESSION_KEY)
            return CachedSession(
                user_id=data["user_id"],
                display_name=data.get("display_name"),
                avatar_ref=data.get("avatar_ref"),
                cached_at=record.cached_at,
            )
        except (RecordDecryptError, KeyError) as e:
            logger.warning("Cached session unreadable (%s) — clearing", e)
            await self.clear()
            return None

    async def clear(self) -> None:
        """Sign-out or expiry."""
        try:
            async with self._db.session() as db:
                await db.execute(delete(CachedSessionRecord))
                await db.commit()
        except DatabaseError as e:
            raise StorageError(f"Cannot clear session cache: {e}") from e
