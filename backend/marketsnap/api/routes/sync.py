"""Sync routes — immediate sync and diagnostics."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from marketsnap.api.deps import get_runtime
from marketsnap.schemas.sync import SyncRunResponse, SyncStatus
from marketsnap.services import SyncRuntime
from marketsnap.services.sync_coordinator import SyncTrigger

router = APIRouter()


@router.get("", response_model=SyncStatus)
async def sync_status(runtime: SyncRuntime = Depends(get_runtime)):
    coordinator = runtime.coordinator
    return SyncStatus(
        is_syncing=coordinator.in_flight,
        online=runtime.connectivity.is_online,
        auth_paused=coordinator.auth_paused,
        pause_reason=coordinator.pause_reason,
        last_execution=runtime.scheduler.last_execution_info(),
    )


@router.post("", response_model=SyncRunResponse)
async def sync_now(
    trigger: SyncTrigger = SyncTrigger.MANUAL,
    runtime: SyncRuntime = Depends(get_runtime),
):
    """Sweep now; after the timeout the sweep finishes in the background."""
    report = await runtime.scheduler.run_now(
        trigger, timeout=runtime.settings.immediate_sync_timeout_seconds
    )
    if report is None:
        return SyncRunResponse(completed=False)
    return SyncRunResponse(completed=True, report=report.to_dict())
