"""Durable, encrypted queue of captured media awaiting upload.

The store exclusively owns the records in ``pending_media_queue`` and the
files in the quarantine directory. The UI path only ever calls
``enqueue`` and the read methods; status transitions belong to the sync
coordinator; user re-queue/discard go through ``retry``/``discard``.
"""

from __future__ import annotations

import asyncio
import errno
import logging
import shutil
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import AsyncIterator, Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import DatabaseError
from sqlalchemy.ext.asyncio import AsyncSession

from marketsnap.database import Database, is_corruption, is_disk_full
from marketsnap.errors import (
    CapacityError,
    InvalidMediaError,
    ItemBusyError,
    ItemNotFoundError,
    StorageError,
)
from marketsnap.models.base import utcnow
from marketsnap.models.queued_media import (
    ErrorKind,
    FilterType,
    ItemStatus,
    MediaType,
    QueuedMediaItem,
    QueuedMediaRecord,
)
from marketsnap.services.retry_policy import RetryPolicy
from marketsnap.utils.crypto import RecordCipher, RecordDecryptError
from marketsnap.utils.storage import has_room_for

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
RETRYABLE_STATUSES = (ItemStatus.PENDING.value, ItemStatus.FAILED.value)


@dataclass(frozen=True)
class QueueStatus:
    """Counts for UI badges."""

    pending_count: int = 0
    failed_count: int = 0
    uploading_count: int = 0
    attention_count: int = 0

    @property
    def total(self) -> int:
        return self.pending_count + self.failed_count + self.uploading_count


class QueueStore:
    """Crash-safe local persistence for ``QueuedMediaItem`` records."""

    def __init__(
        self,
        database: Database,
        cipher: RecordCipher,
        quarantine_dir: str | Path,
        *,
        policy: RetryPolicy | None = None,
        min_free_bytes: int = 0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._db = database
        self._cipher = cipher
        self._quarantine = Path(quarantine_dir)
        self._policy = policy or RetryPolicy()
        self._min_free_bytes = min_free_bytes
        self._clock = clock
        self._listeners: set[asyncio.Queue[QueueStatus]] = set()
        self.lost_items = 0

    @property
    def quarantine_dir(self) -> Path:
        return self._quarantine

    @property
    def recovered_from_corruption(self) -> bool:
        return self._db.recovered_from_corruption

    # ── Lifecycle ──

    async def open(self) -> int:
        """Open (repairing if needed) and recover items interrupted mid-upload.

        Returns the number of items reset from ``uploading`` to ``failed``.
        """
        self._quarantine.mkdir(parents=True, exist_ok=True)
        await self._db.open()
        recovered = await self.reconcile_on_open()
        await self._drop_unreadable_records()
        orphans = self._remove_orphan_files(await self._known_ids())
        if self._db.recovered_from_corruption and orphans:
            # Files whose records went down with the old database file.
            self._count_lost(orphans)
        return recovered

    async def close(self) -> None:
        await self._db.close()

    async def reconcile_on_open(self) -> int:
        """Reset items a previous process left in ``uploading``; retry count untouched."""
        async with self._session() as db:
            result = await db.execute(
                update(QueuedMediaRecord)
                .where(QueuedMediaRecord.status == ItemStatus.UPLOADING.value)
                .values(
                    status=ItemStatus.FAILED.value,
                    error_kind=ErrorKind.TRANSIENT.value,
                    last_error="Upload interrupted before completion",
                )
            )
            await db.commit()
        count = result.rowcount or 0
        if count:
            logger.warning("Recovered %d item(s) interrupted mid-upload", count)
            await self._notify()
        return count

    # ── Enqueue path (UI) ──

    async def enqueue(
        self,
        source_path: str | Path,
        media_type: MediaType,
        owner_id: str,
        caption: str | None = None,
        filter_type: FilterType | None = None,
    ) -> str:
        """Quarantine a copy of ``source_path`` and persist a pending record."""
        source = Path(source_path)
        if not source.is_file():
            raise InvalidMediaError(f"Media file not found: {source}")
        if not owner_id:
            raise InvalidMediaError("Queued media needs an owner")

        self._quarantine.mkdir(parents=True, exist_ok=True)
        size = source.stat().st_size
        if not has_room_for(self._quarantine, size, self._min_free_bytes):
            raise CapacityError(
                f"Not enough free space to queue {size} bytes (reserve {self._min_free_bytes})"
            )

        item_id = str(uuid.uuid4())
        target = self._quarantine / f"{item_id}{source.suffix.lower()}"
        try:
            await asyncio.to_thread(shutil.copy2, source, target)
        except OSError as e:
            target.unlink(missing_ok=True)
            if e.errno == errno.ENOSPC:
                raise CapacityError("Disk full while quarantining media") from e
            raise StorageError(f"Cannot quarantine {source}: {e}") from e
        self._assert_quarantined(target)

        payload = {
            "path": str(target),
            "media_type": MediaType(media_type).value,
            "owner_id": owner_id,
            "caption": caption,
            "filter_type": FilterType(filter_type).value if filter_type else None,
        }
        created_at = self._clock()
        try:
            await self._insert(item_id, created_at, payload)
        except StorageError:
            target.unlink(missing_ok=True)
            raise
        except DatabaseError as e:
            if is_disk_full(e):
                target.unlink(missing_ok=True)
                raise CapacityError("Disk full while saving the queue record") from e
            if not is_corruption(e):
                target.unlink(missing_ok=True)
                raise StorageError(f"Cannot save queue record: {e}") from e
            logger.error("Enqueue failed on a corrupt store (%s) — repairing", e)
            try:
                await self._db.repair()
                self._count_lost(self._remove_orphan_files({item_id}))
                await self._insert(item_id, created_at, payload)
            except (DatabaseError, StorageError) as retry_error:
                target.unlink(missing_ok=True)
                raise StorageError(f"Queue store unavailable: {retry_error}") from retry_error

        logger.info(
            "Queued %s %s for %s (filter=%s)",
            payload["media_type"], item_id, owner_id, payload["filter_type"],
        )
        await self._notify()
        return item_id

    # ── Reads ──

    async def get(self, item_id: str) -> QueuedMediaItem:
        async with self._session() as db:
            record = await self._require(db, item_id)
        return await self._decode_one(record)

    async def list_items(self) -> list[QueuedMediaItem]:
        """Every queued item, oldest first (for the queue screen)."""
        async with self._session() as db:
            result = await db.execute(
                select(QueuedMediaRecord).order_by(
                    QueuedMediaRecord.created_at, QueuedMediaRecord.id
                )
            )
            records = result.scalars().all()
        return await self._decode_all(records)

    async def list_pending(self, now: datetime | None = None) -> list[QueuedMediaItem]:
        """Items due for an attempt now, ordered by ``created_at`` ascending."""
        now = now or self._clock()
        async with self._session() as db:
            result = await db.execute(
                select(QueuedMediaRecord)
                .where(
                    QueuedMediaRecord.status.in_(RETRYABLE_STATUSES),
                    QueuedMediaRecord.requires_attention == 0,
                )
                .order_by(QueuedMediaRecord.created_at, QueuedMediaRecord.id)
            )
            records = result.scalars().all()
        items = await self._decode_all(records)
        return [
            item for item in items
            if self._policy.is_eligible(item.retry_count, item.last_attempt_at, now, item.id)
        ]

    async def status(self) -> QueueStatus:
        async with self._session() as db:
            result = await db.execute(
                select(QueuedMediaRecord.status, func.count()).group_by(QueuedMediaRecord.status)
            )
            counts = {status: count for status, count in result.all()}
            attention = await db.scalar(
                select(func.count()).where(QueuedMediaRecord.requires_attention == 1)
            )
        return QueueStatus(
            pending_count=counts.get(ItemStatus.PENDING.value, 0),
            failed_count=counts.get(ItemStatus.FAILED.value, 0),
            uploading_count=counts.get(ItemStatus.UPLOADING.value, 0),
            attention_count=attention or 0,
        )

    async def observe_status(self) -> AsyncIterator[QueueStatus]:
        """Yield the current counts, then fresh counts after every mutation."""
        queue: asyncio.Queue[QueueStatus] = asyncio.Queue(maxsize=1)
        self._listeners.add(queue)
        try:
            yield await self.status()
            while True:
                yield await queue.get()
        finally:
            self._listeners.discard(queue)

    # ── Transitions (sync coordinator) ──

    async def mark_uploading(self, item_id: str) -> bool:
        """Claim an item for one worker. False if it is not claimable."""
        async with self._session() as db:
            result = await db.execute(
                update(QueuedMediaRecord)
                .where(
                    QueuedMediaRecord.id == item_id,
                    QueuedMediaRecord.status.in_(RETRYABLE_STATUSES),
                )
                .values(status=ItemStatus.UPLOADING.value)
            )
            await db.commit()
        claimed = result.rowcount == 1
        if claimed:
            await self._notify()
        else:
            logger.debug("Item %s not claimable (missing or already uploading)", item_id)
        return claimed

    async def mark_done(self, item_id: str) -> None:
        """Upload confirmed: delete the record, then its quarantined file."""
        async with self._session() as db:
            record = await self._require(db, item_id)
            path = self._path_of(record)
            await db.delete(record)
            await db.commit()
        if path is not None:
            path.unlink(missing_ok=True)
        logger.info("Item %s uploaded and removed from queue", item_id)
        await self._notify()

    async def mark_failed(
        self,
        item_id: str,
        reason: str,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        requires_attention: bool = False,
    ) -> QueuedMediaItem:
        """Count a failed attempt and put the item back in ``failed``."""
        now = self._clock()
        async with self._session() as db:
            record = await self._require(db, item_id)
            record.retry_count += 1
            if record.last_attempt_at is None or now > record.last_attempt_at:
                record.last_attempt_at = now
            record.status = ItemStatus.FAILED.value
            record.error_kind = ErrorKind(kind).value
            record.last_error = reason[:MAX_ERROR_LENGTH]
            record.requires_attention = 1 if requires_attention else 0
            await db.commit()
        item = await self._decode_one(record)
        if requires_attention:
            logger.warning(
                "Item %s needs user action after %d attempt(s): %s",
                item_id, item.retry_count, reason,
            )
        await self._notify()
        return item

    async def release(self, item_id: str, reason: str) -> None:
        """Hand an ``uploading`` item back without charging it an attempt."""
        async with self._session() as db:
            record = await self._require(db, item_id)
            record.status = ItemStatus.FAILED.value
            record.error_kind = ErrorKind.AUTH.value
            record.last_error = reason[:MAX_ERROR_LENGTH]
            await db.commit()
        await self._notify()

    # ── User actions ──

    async def retry(self, item_id: str) -> QueuedMediaItem:
        """User re-queue: the only path that resets retry bookkeeping."""
        async with self._session() as db:
            record = await self._require(db, item_id)
            if record.status == ItemStatus.UPLOADING.value:
                raise ItemBusyError(f"Item {item_id} is uploading")
            record.status = ItemStatus.PENDING.value
            record.retry_count = 0
            record.last_attempt_at = None
            record.requires_attention = 0
            record.error_kind = None
            record.last_error = None
            await db.commit()
        logger.info("Item %s re-queued by user", item_id)
        await self._notify()
        return await self._decode_one(record)

    async def discard(self, item_id: str) -> None:
        """User discard: drop the record and its quarantined file."""
        async with self._session() as db:
            record = await self._require(db, item_id)
            if record.status == ItemStatus.UPLOADING.value:
                raise ItemBusyError(f"Item {item_id} is uploading")
            path = self._path_of(record)
            await db.delete(record)
            await db.commit()
        if path is not None:
            path.unlink(missing_ok=True)
        logger.info("Item %s discarded by user", item_id)
        await self._notify()

    async def purge_owner(self, owner_id: str) -> int:
        """Discard every idle item of one owner (account deletion / sign-out purge)."""
        purged = 0
        for item in await self.list_items():
            if item.owner_id != owner_id or item.status == ItemStatus.UPLOADING:
                continue
            try:
                await self.discard(item.id)
                purged += 1
            except (ItemNotFoundError, ItemBusyError) as e:
                logger.warning("Could not purge item %s: %s", item.id, e)
        if purged:
            logger.info("Purged %d queued item(s) for %s", purged, owner_id)
        return purged

    # ── Internals ──

    @asynccontextmanager
    async def _session(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._db.session() as db:
                yield db
        except DatabaseError as e:
            raise StorageError(f"Queue store error: {e}") from e

    async def _insert(self, item_id: str, created_at: datetime, payload: dict) -> None:
        record = QueuedMediaRecord(
            id=item_id,
            status=ItemStatus.PENDING.value,
            retry_count=0,
            created_at=created_at,
            requires_attention=0,
            payload=self._cipher.seal(payload, item_id),
        )
        async with self._db.session() as db:
            db.add(record)
            await db.commit()

    async def _require(self, db: AsyncSession, item_id: str) -> QueuedMediaRecord:
        record = await db.get(QueuedMediaRecord, item_id)
        if record is None:
            raise ItemNotFoundError(f"No queued item {item_id}")
        return record

    def _decode(self, record: QueuedMediaRecord) -> QueuedMediaItem:
        data = self._cipher.open(record.payload, record.id)
        try:
            return QueuedMediaItem(
                id=record.id,
                local_file_path=Path(data["path"]),
                media_type=MediaType(data["media_type"]),
                owner_id=data["owner_id"],
                created_at=record.created_at,
                caption=data.get("caption"),
                filter_type=FilterType(data["filter_type"]) if data.get("filter_type") else None,
                status=ItemStatus(record.status),
                retry_count=record.retry_count,
                last_attempt_at=record.last_attempt_at,
                requires_attention=bool(record.requires_attention),
                error_kind=ErrorKind(record.error_kind) if record.error_kind else None,
                last_error=record.last_error,
            )
        except (KeyError, ValueError) as e:
            raise RecordDecryptError(f"Record {record.id} has a malformed payload: {e}") from e

    async def _decode_one(self, record: QueuedMediaRecord) -> QueuedMediaItem:
        """Decode one record; an unreadable one is dropped and reported as missing."""
        try:
            return self._decode(record)
        except RecordDecryptError as e:
            logger.error("Discarding unreadable queue record: %s", e)
            await self._drop_records([record.id])
            raise ItemNotFoundError(f"Queued item {record.id} is unreadable") from e

    async def _decode_all(self, records) -> list[QueuedMediaItem]:
        items: list[QueuedMediaItem] = []
        broken: list[str] = []
        for record in records:
            try:
                items.append(self._decode(record))
            except RecordDecryptError as e:
                logger.error("Discarding unreadable queue record: %s", e)
                broken.append(record.id)
        if broken:
            await self._drop_records(broken)
        return items

    async def _drop_unreadable_records(self) -> None:
        async with self._session() as db:
            result = await db.execute(select(QueuedMediaRecord))
            records = result.scalars().all()
        await self._decode_all(records)

    async def _drop_records(self, item_ids: list[str]) -> None:
        async with self._session() as db:
            await db.execute(delete(QueuedMediaRecord).where(QueuedMediaRecord.id.in_(item_ids)))
            await db.commit()
        for item_id in item_ids:
            for path in self._quarantine.glob(f"{item_id}*"):
                path.unlink(missing_ok=True)
        self._count_lost(len(item_ids))
        await self._notify()

    async def _known_ids(self) -> set[str]:
        async with self._session() as db:
            result = await db.execute(select(QueuedMediaRecord.id))
            return set(result.scalars().all())

    def _remove_orphan_files(self, known_ids: set[str]) -> int:
        """Delete quarantine files whose record is gone. Returns how many."""
        if not self._quarantine.exists():
            return 0
        removed = 0
        for path in self._quarantine.iterdir():
            if not path.is_file():
                continue
            if path.name.partition(".")[0] not in known_ids:
                logger.info("Removing orphaned quarantine file %s", path.name)
                path.unlink(missing_ok=True)
                removed += 1
        return removed

    def _count_lost(self, count: int) -> None:
        if count:
            self.lost_items += count
            logger.warning("Lost %d queued item(s) to store corruption", count)

    def _path_of(self, record: QueuedMediaRecord) -> Path | None:
        try:
            return Path(self._cipher.open(record.payload, record.id)["path"])
        except (RecordDecryptError, KeyError) as e:
            logger.warning("Cannot resolve file for %s: %s", record.id, e)
            return None

    def _assert_quarantined(self, path: Path) -> None:
        if path.resolve().parent != self._quarantine.resolve():
            raise StorageError(f"{path} is outside the quarantine directory")

    async def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = await self.status()
        for queue in list(self._listeners):
            # Only the latest counts matter to a slow reader.
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(snapshot)
