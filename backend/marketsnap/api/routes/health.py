"""Health check."""

from fastapi import APIRouter, Depends

from marketsnap import __version__
from marketsnap.api.deps import get_runtime
from marketsnap.schemas.system import HealthResponse
from marketsnap.services import SyncRuntime

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check(runtime: SyncRuntime = Depends(get_runtime)):
    """Liveness plus the two facts the UI cares about at start-up."""
    return HealthResponse(
        version=__version__,
        online=runtime.connectivity.is_online,
        store_recovered=runtime.store.recovered_from_corruption,
    )


@router.get("/ping")
async def ping():
    """Ultra-lightweight ping."""
    return {"status": "ok"}
