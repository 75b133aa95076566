"""Sync status schemas."""

from typing import Any

from pydantic import BaseModel


class SyncStatus(BaseModel):
    """Current sync status."""
    is_syncing: bool = False
    online: bool = False
    auth_paused: bool = False
    pause_reason: str | None = None
    last_execution: dict[str, Any] = {}


class SyncRunResponse(BaseModel):
    """Outcome of an immediate sync request."""
    completed: bool
    report: dict[str, Any] | None = None
