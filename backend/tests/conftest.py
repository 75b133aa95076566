"""Test fixtures — temp-dir queue store, fake clock, in-memory remote and API client."""

from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from httpx import ASGITransport, AsyncClient

from marketsnap.config import Settings
from marketsnap.database import Database
from marketsnap.remote.base import BlobInfo
from marketsnap.services.connectivity import ConnectivityMonitor
from marketsnap.services.credentials import Credentials
from marketsnap.services.queue_store import QueueStore
from marketsnap.utils.crypto import RecordCipher
from marketsnap.utils.hashing import md5_base64

VENDOR = "vendor-1"


class FakeClock:
    """Wall clock and monotonic clock that only move when told to."""

    def __init__(self, start: datetime | None = None):
        self.start = start or datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)
        self.now = self.start

    def __call__(self) -> datetime:
        return self.now

    def monotonic(self) -> float:
        return (self.now - self.start).total_seconds()

    def advance(self, seconds: float) -> datetime:
        self.now += timedelta(seconds=seconds)
        return self.now


class FakeRemote:
    """In-memory storage bucket + document collection with failure injection."""

    def __init__(self, bucket: str = "marketsnap-test"):
        self.bucket = bucket
        self.blobs: dict[str, tuple[bytes, str]] = {}
        self.documents: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, str]] = []
        self.put_errors: list[Exception] = []
        self.upsert_errors: list[Exception] = []
        self.put_delay = 0.0
        self.drop_document_field: str | None = None

    def uploads_for(self, item_id: str) -> list[str]:
        return [target for op, target in self.calls if op == "put" and item_id in target]

    async def stat_blob(self, path: str, credentials: Credentials) -> BlobInfo | None:
        self.calls.append(("stat", path))
        if path not in self.blobs:
            return None
        content, md5 = self.blobs[path]
        return BlobInfo(path=path, bucket=self.bucket, md5_hash=md5, size=len(content))

    async def put_blob(
        self, path: str, source: Path, content_type: str, credentials: Credentials
    ) -> BlobInfo:
        self.calls.append(("put", path))
        if self.put_delay:
            await asyncio.sleep(self.put_delay)
        if self.put_errors:
            raise self.put_errors.pop(0)
        content = source.read_bytes()
        md5 = md5_base64(source)
        self.blobs[path] = (content, md5)
        return BlobInfo(path=path, bucket=self.bucket, md5_hash=md5, size=len(content))

    async def upsert_document(
        self, doc_id: str, fields: dict[str, Any], credentials: Credentials
    ) -> dict[str, Any]:
        self.calls.append(("upsert", doc_id))
        if self.upsert_errors:
            raise self.upsert_errors.pop(0)
        stored = dict(fields)
        if self.drop_document_field:
            stored.pop(self.drop_document_field, None)
        self.documents[doc_id] = stored
        return dict(stored)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cipher():
    return RecordCipher(AESGCM.generate_key(bit_length=256))


@pytest.fixture
def media_file(tmp_path):
    """Factory writing a fake capture outside the quarantine directory."""
    capture_dir = tmp_path / "captures"
    capture_dir.mkdir()

    def _make(name: str = "snap.jpg", content: bytes = b"\xff\xd8fake-jpeg") -> Path:
        path = capture_dir / name
        path.write_bytes(content)
        return path

    return _make


@pytest.fixture
def database(tmp_path):
    return Database(tmp_path / "queue.db")


@pytest_asyncio.fixture
async def store(database, cipher, tmp_path, clock):
    """Opened queue store on a temp directory."""
    queue_store = QueueStore(database, cipher, tmp_path / "quarantine", clock=clock)
    await queue_store.open()
    yield queue_store
    await queue_store.close()


@pytest.fixture
def remote():
    return FakeRemote()


@pytest.fixture
def credentials():
    return Credentials(user_id=VENDOR, id_token="test-token")


@pytest_asyncio.fixture
async def online(clock):
    """Connectivity monitor already committed to online."""
    monitor = ConnectivityMonitor(None, clock=clock.monotonic)
    await monitor.observe(True)
    return monitor


@pytest.fixture
def settings(tmp_path):
    data = tmp_path / "data"
    return Settings(
        data_dir=str(data),
        database_path=str(data / "marketsnap.db"),
        quarantine_dir=str(data / "quarantine"),
        state_dir=str(data / "state"),
        key_path=str(data / "queue.key"),
        encryption_key=base64.b64encode(AESGCM.generate_key(bit_length=256)).decode(),
        firebase_project_id="marketsnap-test",
        firebase_storage_bucket="marketsnap-test",
    )


@pytest_asyncio.fixture
async def runtime(settings, remote, online):
    """Fully wired runtime without background triggers."""
    from marketsnap.services import SyncRuntime

    rt = SyncRuntime.build(settings, remote=remote, connectivity=online)
    await rt.start(background=False)
    yield rt
    await rt.shutdown()


@pytest_asyncio.fixture
async def client(runtime):
    """Async test client bound to the test runtime."""
    from marketsnap.main import create_app

    app = create_app(runtime)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c
