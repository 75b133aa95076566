"""Firebase Storage + Cloud Firestore over their REST APIs (httpx)."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any
from urllib.parse import quote

import httpx

from marketsnap.errors import TransientNetworkError
from marketsnap.remote.base import BlobInfo, classify_status
from marketsnap.services.credentials import Credentials

logger = logging.getLogger(__name__)


class FirebaseRemoteStore:
    """Blob uploads to Cloud Storage and document upserts to Firestore.

    Uploads go to a fixed object name, so a retry overwrites the same object.
    Documents are written with ``PATCH`` on a fixed id, which creates or
    replaces — repeating it never produces a second feed entry.
    """

    def __init__(
        self,
        project_id: str,
        bucket: str,
        *,
        collection: str = "snaps",
        storage_api_url: str = "https://firebasestorage.googleapis.com/v0",
        firestore_api_url: str = "https://firestore.googleapis.com/v1",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._project_id = project_id
        self._bucket = bucket
        self._collection = collection
        self._storage_url = storage_api_url.rstrip("/")
        self._firestore_url = firestore_api_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = client is None

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ── Cloud Storage ──

    def _object_url(self, path: str) -> str:
        return f"{self._storage_url}/b/{self._bucket}/o/{quote(path, safe='')}"

    async def stat_blob(self, path: str, credentials: Credentials) -> BlobInfo | None:
        resp = await self._send("GET", self._object_url(path), credentials)
        if resp.status_code == 404:
            return None
        self._raise_for_status(resp, f"stat {path}")
        return self._blob_info(resp.json())

    async def put_blob(
        self, path: str, source: Path, content_type: str, credentials: Credentials
    ) -> BlobInfo:
        content = await asyncio.to_thread(source.read_bytes)
        resp = await self._send(
            "POST",
            f"{self._storage_url}/b/{self._bucket}/o",
            credentials,
            params={"uploadType": "media", "name": path},
            content=content,
            headers={"Content-Type": content_type},
        )
        self._raise_for_status(resp, f"upload {path}")
        info = self._blob_info(resp.json())
        if info.path != path:
            raise TransientNetworkError(f"Upload of {path} not confirmed (got {info.path!r})")
        logger.debug("Uploaded %d bytes to %s", len(content), info.ref)
        return info

    def _blob_info(self, data: dict[str, Any]) -> BlobInfo:
        size = data.get("size")
        return BlobInfo(
            path=data.get("name", ""),
            bucket=data.get("bucket", self._bucket),
            md5_hash=data.get("md5Hash"),
            size=int(size) if size is not None else None,
        )

    # ── Firestore ──

    def _document_url(self, doc_id: str) -> str:
        return (
            f"{self._firestore_url}/projects/{self._project_id}/databases/(default)"
            f"/documents/{self._collection}/{quote(doc_id, safe='')}"
        )

    async def upsert_document(
        self, doc_id: str, fields: dict[str, Any], credentials: Credentials
    ) -> dict[str, Any]:
        resp = await self._send(
            "PATCH",
            self._document_url(doc_id),
            credentials,
            json={"fields": {k: encode_value(v) for k, v in fields.items()}},
        )
        self._raise_for_status(resp, f"write document {doc_id}")
        data = resp.json()
        name = data.get("name", "")
        if not name.endswith(f"/{self._collection}/{doc_id}"):
            raise TransientNetworkError(f"Document write for {doc_id} not confirmed")
        return {k: decode_value(v) for k, v in data.get("fields", {}).items()}

    # ── HTTP plumbing ──

    async def _send(
        self,
        method: str,
        url: str,
        credentials: Credentials,
        *,
        headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        all_headers = {"Authorization": f"Bearer {credentials.id_token}"}
        if headers:
            all_headers.update(headers)
        try:
            return await self._client.request(method, url, headers=all_headers, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientNetworkError(f"{method} {url} timed out") from e
        except httpx.TransportError as e:
            raise TransientNetworkError(f"{method} {url} failed: {e}") from e

    @staticmethod
    def _raise_for_status(resp: httpx.Response, action: str) -> None:
        if resp.is_success:
            return
        raise classify_status(resp.status_code, f"Failed to {action}: HTTP {resp.status_code}")


def encode_value(value: Any) -> dict[str, Any]:
    """Python value -> Firestore REST typed value."""
    if value is None:
        return {"nullValue": None}
    if isinstance(value, Enum):
        return encode_value(value.value)
    if isinstance(value, bool):
        return {"booleanValue": value}
    if isinstance(value, int):
        return {"integerValue": str(value)}
    if isinstance(value, float):
        return {"doubleValue": value}
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        stamp = value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return {"timestampValue": stamp}
    if isinstance(value, dict):
        return {"mapValue": {"fields": {k: encode_value(v) for k, v in value.items()}}}
    if isinstance(value, (list, tuple)):
        return {"arrayValue": {"values": [encode_value(v) for v in value]}}
    return {"stringValue": str(value)}


def decode_value(typed: dict[str, Any]) -> Any:
    """Firestore REST typed value -> Python value."""
    if "nullValue" in typed:
        return None
    if "booleanValue" in typed:
        return typed["booleanValue"]
    if "integerValue" in typed:
        return int(typed["integerValue"])
    if "doubleValue" in typed:
        return float(typed["doubleValue"])
    if "timestampValue" in typed:
        return datetime.fromisoformat(typed["timestampValue"].replace("Z", "+00:00"))
    if "mapValue" in typed:
        return {k: decode_value(v) for k, v in typed["mapValue"].get("fields", {}).items()}
    if "arrayValue" in typed:
        return [decode_value(v) for v in typed["arrayValue"].get("values", [])]
    return typed.get("stringValue")
