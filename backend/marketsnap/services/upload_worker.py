"""Two-phase upload of one queued snap: blob first, then its feed document."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from marketsnap.errors import AuthError, PermanentError, TransientNetworkError
from marketsnap.models.base import utcnow
from marketsnap.models.queued_media import MediaType, QueuedMediaItem
from marketsnap.remote.base import BlobInfo, RemoteStore
from marketsnap.services.credentials import Credentials
from marketsnap.utils.hashing import md5_base64

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPES = {
    MediaType.PHOTO: "image/jpeg",
    MediaType.VIDEO: "video/mp4",
}


@dataclass(frozen=True)
class UploadReceipt:
    item_id: str
    blob_ref: str
    blob_reused: bool
    document: dict[str, Any] = field(default_factory=dict)


class UploadWorker:
    """Uploads a single item; success means both writes were confirmed."""

    def __init__(
        self,
        remote: RemoteStore,
        *,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._remote = remote
        self._timeout = timeout
        self._clock = clock

    @staticmethod
    def blob_path(item: QueuedMediaItem) -> str:
        """Deterministic object name, so retries overwrite instead of duplicating."""
        return f"vendors/{item.owner_id}/snaps/{item.id}{item.local_file_path.suffix.lower()}"

    @staticmethod
    def content_type(item: QueuedMediaItem) -> str:
        guessed, _ = mimetypes.guess_type(item.local_file_path.name)
        return guessed or DEFAULT_CONTENT_TYPES[item.media_type]

    async def upload(
        self,
        item: QueuedMediaItem,
        credentials: Credentials | None,
        timeout: float | None = None,
    ) -> UploadReceipt:
        """Run both phases under one deadline.

        Raises ``AuthError`` before any network call when the credentials
        cannot succeed, ``PermanentError`` when the quarantined file is gone,
        and ``TransientNetworkError`` when the deadline passes.
        """
        self._check_credentials(item, credentials)

        if not item.local_file_path.is_file():
            logger.error(
                "DATA LOSS: quarantined file for %s is missing (%s)",
                item.id, item.local_file_path,
            )
            raise PermanentError(
                f"Local media for {item.id} is missing", data_loss=True
            )

        limit = timeout if timeout is not None else self._timeout
        try:
            return await asyncio.wait_for(self._two_phase(item, credentials), limit)
        except asyncio.TimeoutError as e:
            raise TransientNetworkError(f"Upload of {item.id} timed out after {limit:.0f}s") from e

    def _check_credentials(self, item: QueuedMediaItem, credentials: Credentials | None) -> None:
        if credentials is None:
            raise AuthError("Not signed in")
        if credentials.user_id != item.owner_id:
            raise AuthError(f"Signed in as {credentials.user_id}, item belongs to {item.owner_id}")
        if credentials.is_expired(self._clock()):
            raise AuthError("Credentials expired")

    async def _two_phase(self, item: QueuedMediaItem, credentials: Credentials) -> UploadReceipt:
        path = self.blob_path(item)
        local_md5 = await asyncio.to_thread(md5_base64, item.local_file_path)

        # Phase 1: blob. A previous attempt may have stored it already.
        existing = await self._remote.stat_blob(path, credentials)
        if existing is not None and existing.md5_hash == local_md5:
            blob = existing
            reused = True
            logger.info("Blob for %s already present — skipping re-upload", item.id)
        else:
            blob = await self._remote.put_blob(
                path, item.local_file_path, self.content_type(item), credentials
            )
            reused = False
            if blob.md5_hash and blob.md5_hash != local_md5:
                raise TransientNetworkError(f"Checksum mismatch after uploading {item.id}")

        # Phase 2: metadata document keyed by item id.
        fields = self.document_fields(item, blob)
        stored = await self._remote.upsert_document(item.id, fields, credentials)
        for key in ("ownerId", "blobRef", "filterType", "mediaType"):
            if stored.get(key) != fields[key]:
                raise TransientNetworkError(
                    f"Document for {item.id} not confirmed: {key}={stored.get(key)!r}"
                )

        logger.info("Uploaded %s -> %s (reused_blob=%s)", item.id, blob.ref, reused)
        return UploadReceipt(item_id=item.id, blob_ref=blob.ref, blob_reused=reused, document=stored)

    def document_fields(self, item: QueuedMediaItem, blob: BlobInfo) -> dict[str, Any]:
        return {
            "ownerId": item.owner_id,
            "mediaType": item.media_type.value,
            "caption": item.caption,
            "filterType": item.filter_type.value if item.filter_type else None,
            "createdAt": item.created_at,
            "blobRef": blob.ref,
            "uploadedAt": self._clock(),
        }
