"""Contract of the remote storage/database the queue uploads into."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from marketsnap.errors import AuthError, PermanentError, TransientNetworkError, UploadError
from marketsnap.services.credentials import Credentials

AUTH_STATUSES = {401, 403}
TRANSIENT_STATUSES = {408, 425, 429}


@dataclass(frozen=True)
class BlobInfo:
    path: str
    bucket: str
    md5_hash: str | None = None
    size: int | None = None

    @property
    def ref(self) -> str:
        return f"gs://{self.bucket}/{self.path}"


class RemoteStore(Protocol):
    """Both writes must be idempotent under the same path / document id."""

    async def stat_blob(self, path: str, credentials: Credentials) -> BlobInfo | None:
        ...

    async def put_blob(
        self, path: str, source: Path, content_type: str, credentials: Credentials
    ) -> BlobInfo:
        ...

    async def upsert_document(
        self, doc_id: str, fields: dict[str, Any], credentials: Credentials
    ) -> dict[str, Any]:
        ...


def classify_status(status_code: int, message: str) -> UploadError:
    """Map an HTTP status onto the upload error taxonomy."""
    if status_code in AUTH_STATUSES:
        return AuthError(message, status_code=status_code)
    if status_code in TRANSIENT_STATUSES or status_code >= 500:
        return TransientNetworkError(message, status_code=status_code)
    return PermanentError(message, status_code=status_code)
