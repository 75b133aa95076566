"""FastAPI dependency injection — access to the sync runtime."""

from __future__ import annotations

from fastapi import HTTPException, Request, status

from marketsnap.services import SyncRuntime


def get_runtime(request: Request) -> SyncRuntime:
    """The runtime built in the app lifespan."""
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Sync runtime not initialized",
        )
    return runtime
