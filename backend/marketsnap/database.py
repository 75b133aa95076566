"""SQLAlchemy async engine & session for the local queue database (SQLite, WAL)."""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.exc import DatabaseError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from marketsnap.errors import CorruptStoreError, StorageError
from marketsnap.models import Base

logger = logging.getLogger(__name__)

# Primary SQLite result codes
SQLITE_CORRUPT = 11
SQLITE_FULL = 13
SQLITE_NOTADB = 26

CORRUPTION_MARKERS = ("file is not a database", "malformed", "database disk image")


def _configure_sqlite(dbapi_conn, _connection_record):
    """Apply SQLite PRAGMAs for crash safety on constrained devices."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA cache_size=-4000")  # 4 MB
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _sqlite_error(exc: BaseException) -> tuple[int | None, str]:
    orig = getattr(exc, "orig", None) or exc
    code = getattr(orig, "sqlite_errorcode", None)
    return (code & 0xFF if code is not None else None), str(orig).lower()


def is_corruption(exc: BaseException) -> bool:
    """True only for a damaged file, not for lock, I/O or constraint errors."""
    if isinstance(exc, CorruptStoreError):
        return True
    code, message = _sqlite_error(exc)
    if code in (SQLITE_CORRUPT, SQLITE_NOTADB):
        return True
    return any(marker in message for marker in CORRUPTION_MARKERS)


def is_disk_full(exc: BaseException) -> bool:
    code, message = _sqlite_error(exc)
    return code == SQLITE_FULL or "disk is full" in message


class Database:
    """Owns the engine for one SQLite file and can rebuild it when corrupt."""

    def __init__(self, path: str | Path, *, echo: bool = False):
        self.path = Path(path)
        self._echo = echo
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None
        self.recovered_from_corruption = False

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            raise StorageError("Database not opened — call open() first")
        return self._engine

    def session(self) -> AsyncSession:
        if self._session_factory is None:
            raise StorageError("Database not opened — call open() first")
        return self._session_factory()

    async def open(self) -> None:
        """Connect, verify integrity and create tables.

        Only a corrupt file is rebuilt; lock or I/O errors leave it untouched
        and raise ``StorageError``.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._connect()
        except (DatabaseError, sqlite3.DatabaseError, StorageError) as e:
            if not is_corruption(e):
                await self.close()
                raise StorageError(f"Cannot open queue database at {self.path}: {e}") from e
            logger.error("Queue database at %s is corrupt (%s) — rebuilding", self.path, e)
            await self.repair()

    async def repair(self) -> None:
        """Move the damaged file aside and start from an empty store."""
        await self.close()
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S")
        if self.path.exists():
            aside = self.path.with_name(f"{self.path.name}.corrupt-{stamp}")
            self.path.replace(aside)
            logger.warning("Corrupt queue database moved to %s", aside)
        for suffix in ("-wal", "-shm"):
            Path(f"{self.path}{suffix}").unlink(missing_ok=True)

        try:
            await self._connect()
        except (DatabaseError, sqlite3.DatabaseError) as e:
            await self.close()
            raise StorageError(f"Cannot recreate queue database at {self.path}: {e}") from e
        self.recovered_from_corruption = True
        logger.warning("Queue database recreated empty — previously queued items are lost")

    async def close(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._session_factory = None

    async def _connect(self) -> None:
        engine = create_async_engine(f"sqlite+aiosqlite:///{self.path}", echo=self._echo)
        event.listen(engine.sync_engine, "connect", _configure_sqlite)
        self._engine = engine
        self._session_factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

        async with engine.begin() as conn:
            result = await conn.exec_driver_sql("PRAGMA quick_check")
            verdict = result.scalar()
            if verdict != "ok":
                raise CorruptStoreError(f"Integrity check failed: {verdict}")
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Queue database opened at %s", self.path)
