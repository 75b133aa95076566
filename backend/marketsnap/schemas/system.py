"""Health schemas."""

from pydantic import BaseModel


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = "ok"
    version: str
    service: str = "marketsnap-sync"
    online: bool = False
    store_recovered: bool = False
