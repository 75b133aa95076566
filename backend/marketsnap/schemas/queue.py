"""Queue schemas — the UI's only write path plus read-only status."""

from datetime import datetime

from pydantic import BaseModel, Field

from marketsnap.models.queued_media import FilterType, ItemStatus, MediaType


class EnqueueRequest(BaseModel):
    local_file_path: str
    media_type: MediaType
    owner_id: str = Field(min_length=1)
    caption: str | None = Field(default=None, max_length=500)
    filter_type: FilterType | None = None


class EnqueueResponse(BaseModel):
    id: str


class QueueItemOut(BaseModel):
    """Queued item as shown on the queue screen."""
    id: str
    media_type: MediaType
    owner_id: str
    caption: str | None = None
    filter_type: FilterType | None = None
    created_at: datetime
    status: ItemStatus
    display_state: str
    retry_count: int = 0
    last_attempt_at: datetime | None = None
    requires_attention: bool = False
    last_error: str | None = None


class QueueStatusOut(BaseModel):
    """Badge counts."""
    pending_count: int = 0
    failed_count: int = 0
    uploading_count: int = 0
    attention_count: int = 0
    quarantine_bytes: int = 0
    free_bytes: int = 0
