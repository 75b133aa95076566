"""Error taxonomy for the media queue and the sync pipeline."""

from __future__ import annotations


class QueueError(Exception):
    """Base class for local queue failures."""


class StorageError(QueueError):
    """Local persistence is unavailable or corrupt and could not be repaired."""


class CorruptStoreError(StorageError):
    """The database file itself is damaged; only a rebuild gets it working again."""


class CapacityError(QueueError):
    """Not enough local disk space to quarantine a new item."""


class InvalidMediaError(QueueError):
    """The media file handed to the queue does not exist or is unusable."""


class ItemNotFoundError(QueueError):
    """No queued item with the requested id."""


class UploadError(Exception):
    """Base class for upload failures, classified by retry behaviour."""

    kind = "transient"

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransientNetworkError(UploadError):
    """Timeout, connection reset or 5xx — retried with backoff forever."""

    kind = "transient"


class AuthError(UploadError):
    """Credentials missing, expired or rejected — sync pauses until re-auth."""

    kind = "auth"


class PermanentError(UploadError):
    """Payload rejected or quota exceeded — bounded retries, then user action."""

    kind = "permanent"

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        data_loss: bool = False,
    ):
        super().__init__(message, status_code=status_code)
        self.data_loss = data_loss


class ItemBusyError(QueueError):
    """The item is held by an upload worker and cannot be changed right now."""
