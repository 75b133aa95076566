"""Tests for the queue store — quarantine, ordering, transitions, recovery."""

import errno
import sqlite3
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select, update
from sqlalchemy.exc import DatabaseError, OperationalError

from marketsnap.database import Database
from marketsnap.errors import (
    CapacityError,
    InvalidMediaError,
    ItemBusyError,
    ItemNotFoundError,
    StorageError,
)
from marketsnap.models.queued_media import (
    ErrorKind,
    FilterType,
    ItemStatus,
    MediaType,
    QueuedMediaRecord,
)
from marketsnap.services.queue_store import QueueStore
from marketsnap.utils.crypto import RecordCipher

VENDOR = "vendor-1"


class TestEnqueue:
    @pytest.mark.asyncio
    async def test_enqueue_quarantines_copy(self, store, media_file):
        source = media_file("IMG_0001.JPG")
        item_id = await store.enqueue(source, MediaType.PHOTO, VENDOR)

        item = await store.get(item_id)
        assert item.local_file_path.parent == store.quarantine_dir
        assert item.local_file_path.name == f"{item_id}.jpg"
        assert item.local_file_path.read_bytes() == source.read_bytes()
        assert source.exists()  # caller keeps its own file

    @pytest.mark.asyncio
    async def test_enqueue_sets_initial_bookkeeping(self, store, media_file, clock):
        item_id = await store.enqueue(
            media_file(), MediaType.PHOTO, VENDOR,
            caption="Fresh tomatoes", filter_type=FilterType.WARM,
        )
        item = await store.get(item_id)
        assert item.status == ItemStatus.PENDING
        assert item.retry_count == 0
        assert item.last_attempt_at is None
        assert item.created_at == clock.now
        assert item.caption == "Fresh tomatoes"
        assert item.filter_type == FilterType.WARM
        assert item.display_state == "queued"

    @pytest.mark.asyncio
    async def test_enqueue_missing_file(self, store, tmp_path):
        with pytest.raises(InvalidMediaError):
            await store.enqueue(tmp_path / "nope.jpg", MediaType.PHOTO, VENDOR)
        assert (await store.status()).total == 0

    @pytest.mark.asyncio
    async def test_enqueue_requires_owner(self, store, media_file):
        with pytest.raises(InvalidMediaError):
            await store.enqueue(media_file(), MediaType.PHOTO, "")

    @pytest.mark.asyncio
    async def test_enqueue_refuses_when_disk_is_full(self, store, media_file):
        with patch("marketsnap.services.queue_store.has_room_for", return_value=False):
            with pytest.raises(CapacityError):
                await store.enqueue(media_file(), MediaType.VIDEO, VENDOR)
        assert list(store.quarantine_dir.iterdir()) == []
        assert (await store.status()).total == 0

    @pytest.mark.asyncio
    async def test_payload_is_encrypted_at_rest(self, store, database, media_file):
        item_id = await store.enqueue(
            media_file(), MediaType.PHOTO, VENDOR, caption="secret-caption-123"
        )
        async with database.session() as db:
            record = (await db.execute(select(QueuedMediaRecord))).scalar_one()
        assert record.id == item_id
        assert b"secret-caption-123" not in record.payload
        assert VENDOR.encode() not in record.payload


class TestOrdering:
    @pytest.mark.asyncio
    async def test_list_pending_oldest_first(self, store, media_file, clock):
        ids = []
        for n in range(3):
            ids.append(await store.enqueue(media_file(f"s{n}.jpg"), MediaType.PHOTO, VENDOR))
            clock.advance(1)
        pending = await store.list_pending()
        assert [item.id for item in pending] == ids

    @pytest.mark.asyncio
    async def test_backoff_hides_recently_failed_items(self, store, media_file, clock):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        await store.mark_uploading(item_id)
        await store.mark_failed(item_id, "timeout")

        assert await store.list_pending() == []
        clock.advance(10)
        assert [item.id for item in await store.list_pending()] == [item_id]

    @pytest.mark.asyncio
    async def test_attention_items_are_not_pending(self, store, media_file, clock):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        await store.mark_uploading(item_id)
        await store.mark_failed(item_id, "rejected", ErrorKind.PERMANENT, requires_attention=True)
        clock.advance(3600)

        assert await store.list_pending() == []
        item = await store.get(item_id)
        assert item.display_state == "failed"
        assert (await store.status()).attention_count == 1


class TestTransitions:
    @pytest.mark.asyncio
    async def test_mark_uploading_claims_once(self, store, media_file):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        assert await store.mark_uploading(item_id) is True
        assert await store.mark_uploading(item_id) is False
        assert (await store.get(item_id)).display_state == "uploading"

    @pytest.mark.asyncio
    async def test_mark_done_removes_record_and_file(self, store, media_file):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        path = (await store.get(item_id)).local_file_path
        await store.mark_uploading(item_id)
        await store.mark_done(item_id)

        assert not path.exists()
        with pytest.raises(ItemNotFoundError):
            await store.get(item_id)

    @pytest.mark.asyncio
    async def test_mark_failed_counts_attempts(self, store, media_file, clock):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        for expected in (1, 2):
            await store.mark_uploading(item_id)
            clock.advance(1)
            item = await store.mark_failed(item_id, "HTTP 503")
            assert item.retry_count == expected
            assert item.status == ItemStatus.FAILED
            assert item.last_attempt_at == clock.now
            assert item.error_kind == ErrorKind.TRANSIENT
            assert item.display_state == "queued"

    @pytest.mark.asyncio
    async def test_last_attempt_never_moves_backwards(self, store, media_file, clock):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        clock.advance(60)
        first = await store.mark_failed(item_id, "timeout")
        clock.advance(-30)  # wall clock stepped back
        second = await store.mark_failed(item_id, "timeout")
        assert second.last_attempt_at == first.last_attempt_at

    @pytest.mark.asyncio
    async def test_release_keeps_retry_count(self, store, media_file):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        await store.mark_uploading(item_id)
        await store.release(item_id, "Credentials expired")

        item = await store.get(item_id)
        assert item.status == ItemStatus.FAILED
        assert item.retry_count == 0
        assert item.error_kind == ErrorKind.AUTH


class TestUserActions:
    @pytest.mark.asyncio
    async def test_retry_resets_bookkeeping(self, store, media_file):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        await store.mark_failed(item_id, "rejected", ErrorKind.PERMANENT, requires_attention=True)

        item = await store.retry(item_id)
        assert item.status == ItemStatus.PENDING
        assert item.retry_count == 0
        assert item.last_attempt_at is None
        assert item.requires_attention is False
        assert [i.id for i in await store.list_pending()] == [item_id]

    @pytest.mark.asyncio
    async def test_discard_removes_file(self, store, media_file):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        path = (await store.get(item_id)).local_file_path
        await store.discard(item_id)
        assert not path.exists()
        assert (await store.status()).total == 0

    @pytest.mark.asyncio
    async def test_uploading_item_is_busy(self, store, media_file):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        await store.mark_uploading(item_id)
        with pytest.raises(ItemBusyError):
            await store.discard(item_id)
        with pytest.raises(ItemBusyError):
            await store.retry(item_id)

    @pytest.mark.asyncio
    async def test_unknown_item(self, store):
        with pytest.raises(ItemNotFoundError):
            await store.retry("does-not-exist")

    @pytest.mark.asyncio
    async def test_purge_owner_only_touches_that_owner(self, store, media_file):
        mine = await store.enqueue(media_file("a.jpg"), MediaType.PHOTO, VENDOR)
        theirs = await store.enqueue(media_file("b.jpg"), MediaType.PHOTO, "vendor-2")

        assert await store.purge_owner(VENDOR) == 1
        remaining = [item.id for item in await store.list_items()]
        assert remaining == [theirs]
        assert mine not in remaining


class TestStatus:
    @pytest.mark.asyncio
    async def test_counts(self, store, media_file):
        a = await store.enqueue(media_file("a.jpg"), MediaType.PHOTO, VENDOR)
        b = await store.enqueue(media_file("b.jpg"), MediaType.PHOTO, VENDOR)
        await store.enqueue(media_file("c.mp4"), MediaType.VIDEO, VENDOR)
        await store.mark_uploading(a)
        await store.mark_failed(b, "timeout")

        status = await store.status()
        assert status.pending_count == 1
        assert status.uploading_count == 1
        assert status.failed_count == 1
        assert status.total == 3

    @pytest.mark.asyncio
    async def test_observe_status_streams_updates(self, store, media_file):
        stream = store.observe_status()
        try:
            first = await anext(stream)
            assert first.total == 0
            await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
            second = await anext(stream)
            assert second.pending_count == 1
        finally:
            await stream.aclose()


class TestRecovery:
    @pytest.mark.asyncio
    async def test_uploading_items_reset_on_open(self, database, cipher, tmp_path, media_file, clock):
        first = QueueStore(database, cipher, tmp_path / "quarantine", clock=clock)
        await first.open()
        item_id = await first.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        await first.mark_uploading(item_id)
        await first.close()  # process "killed" mid-upload

        second = QueueStore(Database(database.path), cipher, tmp_path / "quarantine", clock=clock)
        assert await second.open() == 1
        item = await second.get(item_id)
        assert item.status == ItemStatus.FAILED
        assert item.retry_count == 0
        assert item.local_file_path.exists()
        await second.close()

    @pytest.mark.asyncio
    async def test_orphan_files_removed_on_open(self, database, cipher, tmp_path, clock):
        quarantine = tmp_path / "quarantine"
        quarantine.mkdir()
        orphan = quarantine / "0b6f3c1e-orphan.jpg"
        orphan.write_bytes(b"left over from a crash")

        queue_store = QueueStore(database, cipher, quarantine, clock=clock)
        await queue_store.open()
        assert not orphan.exists()
        await queue_store.close()

    @pytest.mark.asyncio
    async def test_corrupt_database_is_rebuilt(self, tmp_path, cipher, clock, media_file):
        db_path = tmp_path / "queue.db"
        db_path.write_bytes(b"definitely not sqlite" * 200)

        queue_store = QueueStore(Database(db_path), cipher, tmp_path / "quarantine", clock=clock)
        await queue_store.open()
        assert queue_store.recovered_from_corruption is True
        assert list(tmp_path.glob("queue.db.corrupt-*"))

        # The rebuilt store is fully usable.
        item_id = await queue_store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        assert (await queue_store.get(item_id)).status == ItemStatus.PENDING
        await queue_store.close()

    @pytest.mark.asyncio
    async def test_records_sealed_with_another_key_are_dropped(
        self, database, cipher, tmp_path, media_file, clock
    ):
        first = QueueStore(database, cipher, tmp_path / "quarantine", clock=clock)
        await first.open()
        item_id = await first.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        await first.close()

        other_key = RecordCipher(b"\x01" * 32)
        second = QueueStore(Database(database.path), other_key, tmp_path / "quarantine", clock=clock)
        await second.open()
        assert second.lost_items == 1
        assert await second.list_items() == []
        assert not list((tmp_path / "quarantine").glob(f"{item_id}*"))
        await second.close()


def _sqlite_failure(cls, message):
    return cls("INSERT INTO pending_media_queue", {}, sqlite3.OperationalError(message))


class TestEnqueueFailures:
    @pytest.mark.asyncio
    async def test_disk_full_during_copy(self, store, media_file):
        def _partial_copy(src, dst):
            Path(dst).write_bytes(b"half a jpeg")
            raise OSError(errno.ENOSPC, "No space left on device")

        with patch("marketsnap.services.queue_store.shutil.copy2", side_effect=_partial_copy):
            with pytest.raises(CapacityError):
                await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)

        assert list(store.quarantine_dir.iterdir()) == []
        assert await store.list_items() == []

    @pytest.mark.asyncio
    async def test_locked_store_keeps_existing_items(self, store, media_file, tmp_path):
        kept = await store.enqueue(media_file("a.jpg"), MediaType.PHOTO, VENDOR)
        locked = _sqlite_failure(OperationalError, "database is locked")

        with patch.object(store, "_insert", AsyncMock(side_effect=locked)):
            with pytest.raises(StorageError):
                await store.enqueue(media_file("b.jpg"), MediaType.PHOTO, VENDOR)

        assert [item.id for item in await store.list_items()] == [kept]
        assert [p.name for p in store.quarantine_dir.iterdir()] == [f"{kept}.jpg"]
        assert store.lost_items == 0
        assert store.recovered_from_corruption is False
        assert not list(tmp_path.glob("queue.db.corrupt-*"))

    @pytest.mark.asyncio
    async def test_full_database_is_capacity_error(self, store, media_file):
        kept = await store.enqueue(media_file("a.jpg"), MediaType.PHOTO, VENDOR)
        full = _sqlite_failure(OperationalError, "database or disk is full")

        with patch.object(store, "_insert", AsyncMock(side_effect=full)):
            with pytest.raises(CapacityError):
                await store.enqueue(media_file("b.jpg"), MediaType.PHOTO, VENDOR)

        assert [item.id for item in await store.list_items()] == [kept]
        assert len(list(store.quarantine_dir.iterdir())) == 1

    @pytest.mark.asyncio
    async def test_corrupt_store_is_rebuilt_and_loss_counted(self, store, media_file, tmp_path):
        lost = await store.enqueue(media_file("a.jpg"), MediaType.PHOTO, VENDOR)
        real_insert = store._insert
        failures = [_sqlite_failure(DatabaseError, "database disk image is malformed")]

        async def _insert_once_corrupt(*args):
            if failures:
                raise failures.pop()
            return await real_insert(*args)

        with patch.object(store, "_insert", _insert_once_corrupt):
            new_id = await store.enqueue(media_file("b.jpg"), MediaType.PHOTO, VENDOR)

        assert [item.id for item in await store.list_items()] == [new_id]
        assert not list(store.quarantine_dir.glob(f"{lost}*"))
        assert store.lost_items == 1
        assert store.recovered_from_corruption is True
        assert list(tmp_path.glob("queue.db.corrupt-*"))


class TestOpenFailures:
    @pytest.mark.asyncio
    async def test_locked_file_is_not_rebuilt(self, tmp_path):
        db_path = tmp_path / "queue.db"
        healthy = Database(db_path)
        await healthy.open()
        await healthy.close()

        database = Database(db_path)
        locked = OperationalError("PRAGMA quick_check", {}, sqlite3.OperationalError("database is locked"))
        with patch.object(database, "_connect", AsyncMock(side_effect=locked)):
            with pytest.raises(StorageError):
                await database.open()

        assert db_path.exists()
        assert database.recovered_from_corruption is False
        assert not list(tmp_path.glob("queue.db.corrupt-*"))

    @pytest.mark.asyncio
    async def test_reopening_corrupt_file_counts_lost_items(self, database, cipher, tmp_path, media_file, clock):
        first = QueueStore(database, cipher, tmp_path / "quarantine", clock=clock)
        await first.open()
        await first.enqueue(media_file("a.jpg"), MediaType.PHOTO, VENDOR)
        await first.enqueue(media_file("b.jpg"), MediaType.PHOTO, VENDOR)
        await first.close()
        database.path.write_bytes(b"scrambled" * 500)
        for suffix in ("-wal", "-shm"):
            Path(f"{database.path}{suffix}").unlink(missing_ok=True)

        second = QueueStore(Database(database.path), cipher, tmp_path / "quarantine", clock=clock)
        await second.open()
        assert second.recovered_from_corruption is True
        assert second.lost_items == 2
        assert list((tmp_path / "quarantine").iterdir()) == []
        await second.close()


class TestUnreadableRecords:
    @pytest.mark.asyncio
    async def test_get_drops_unreadable_record(self, store, database, media_file):
        item_id = await store.enqueue(media_file(), MediaType.PHOTO, VENDOR)
        async with database.session() as db:
            await db.execute(
                update(QueuedMediaRecord)
                .where(QueuedMediaRecord.id == item_id)
                .values(payload=b"\x00" * 48)
            )
            await db.commit()

        with pytest.raises(ItemNotFoundError):
            await store.get(item_id)
        assert store.lost_items == 1
        assert list(store.quarantine_dir.iterdir()) == []


class TestStatusStream:
    @pytest.mark.asyncio
    async def test_slow_reader_only_keeps_latest_counts(self, store, media_file):
        stream = store.observe_status()
        try:
            await anext(stream)
            for n in range(3):
                await store.enqueue(media_file(f"s{n}.jpg"), MediaType.PHOTO, VENDOR)
            assert all(queue.qsize() <= 1 for queue in store._listeners)
            latest = await anext(stream)
            assert latest.pending_count == 3
        finally:
            await stream.aclose()
