"""Session routes — sign-in hands over credentials, sign-out clears them."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, status

from marketsnap.api.deps import get_runtime
from marketsnap.schemas.session import SessionOut, SignInRequest, SignOutResponse
from marketsnap.services import SyncRuntime
from marketsnap.services.credentials import Credentials
from marketsnap.services.sync_coordinator import SyncTrigger

router = APIRouter()


@router.put("", response_model=SessionOut)
async def sign_in(body: SignInRequest, runtime: SyncRuntime = Depends(get_runtime)):
    session = await runtime.sign_in(
        Credentials(user_id=body.user_id, id_token=body.id_token, expires_at=body.expires_at),
        display_name=body.display_name,
        avatar_ref=body.avatar_ref,
    )
    if runtime.scheduler.running:
        runtime.scheduler.trigger(SyncTrigger.FOREGROUND)
    return SessionOut(
        user_id=session.user_id,
        display_name=session.display_name,
        avatar_ref=session.avatar_ref,
        cached_at=session.cached_at,
    )


@router.get("", response_model=SessionOut)
async def get_session(runtime: SyncRuntime = Depends(get_runtime)):
    """Cached session for offline start — display only."""
    session = await runtime.auth_cache.load()
    if session is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "No cached session")
    return SessionOut(
        user_id=session.user_id,
        display_name=session.display_name,
        avatar_ref=session.avatar_ref,
        cached_at=session.cached_at,
    )


@router.delete("", response_model=SignOutResponse)
async def sign_out(purge_queue: bool = False, runtime: SyncRuntime = Depends(get_runtime)):
    purged = await runtime.sign_out(purge_queue=purge_queue)
    return SignOutResponse(purged_items=purged)
