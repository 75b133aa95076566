"""Queue routes — enqueue, list, status, retry and discard."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from marketsnap.api.deps import get_runtime
from marketsnap.errors import (
    CapacityError,
    InvalidMediaError,
    ItemBusyError,
    ItemNotFoundError,
    StorageError,
)
from marketsnap.models.queued_media import QueuedMediaItem
from marketsnap.schemas.queue import (
    EnqueueRequest,
    EnqueueResponse,
    QueueItemOut,
    QueueStatusOut,
)
from marketsnap.services import SyncRuntime
from marketsnap.services.sync_coordinator import SyncTrigger
from marketsnap.utils.storage import get_directory_size, get_disk_usage

logger = logging.getLogger(__name__)
router = APIRouter()


def _item_out(item: QueuedMediaItem) -> QueueItemOut:
    return QueueItemOut(
        id=item.id,
        media_type=item.media_type,
        owner_id=item.owner_id,
        caption=item.caption,
        filter_type=item.filter_type,
        created_at=item.created_at,
        status=item.status,
        display_state=item.display_state,
        retry_count=item.retry_count,
        last_attempt_at=item.last_attempt_at,
        requires_attention=item.requires_attention,
        last_error=item.last_error,
    )


@router.post("", response_model=EnqueueResponse, status_code=status.HTTP_201_CREATED)
async def enqueue(body: EnqueueRequest, runtime: SyncRuntime = Depends(get_runtime)):
    """Queue a captured snap; upload happens whenever the sync engine can."""
    try:
        item_id = await runtime.store.enqueue(
            body.local_file_path,
            body.media_type,
            body.owner_id,
            caption=body.caption,
            filter_type=body.filter_type,
        )
    except InvalidMediaError as e:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, str(e))
    except CapacityError as e:
        raise HTTPException(status.HTTP_507_INSUFFICIENT_STORAGE, str(e))
    except StorageError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(e))

    if runtime.connectivity.is_online and runtime.scheduler.running:
        runtime.scheduler.trigger(SyncTrigger.MANUAL)
    return EnqueueResponse(id=item_id)


@router.get("", response_model=list[QueueItemOut])
async def list_queue(runtime: SyncRuntime = Depends(get_runtime)):
    try:
        items = await runtime.store.list_items()
    except StorageError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(e))
    return [_item_out(item) for item in items]


@router.get("/status", response_model=QueueStatusOut)
async def queue_status(runtime: SyncRuntime = Depends(get_runtime)):
    try:
        counts = await runtime.store.status()
    except StorageError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(e))
    return QueueStatusOut(
        pending_count=counts.pending_count,
        failed_count=counts.failed_count,
        uploading_count=counts.uploading_count,
        attention_count=counts.attention_count,
        quarantine_bytes=get_directory_size(runtime.store.quarantine_dir),
        free_bytes=get_disk_usage(runtime.store.quarantine_dir)["free_bytes"],
    )


@router.post("/{item_id}/retry", response_model=QueueItemOut)
async def retry_item(item_id: str, runtime: SyncRuntime = Depends(get_runtime)):
    """Manual re-queue of a failed item — resets its retry counter."""
    try:
        item = await runtime.store.retry(item_id)
    except ItemNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Queue item not found")
    except ItemBusyError as e:
        raise HTTPException(status.HTTP_409_CONFLICT, str(e))
    except StorageError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(e))
    if runtime.scheduler.running:
        runtime.scheduler.trigger(SyncTrigger.MANUAL)
    return _item_out(item)


@router.delete("/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_item(item_id: str, runtime: SyncRuntime = Depends(get_runtime)):
    """Manual discard — the snap and its local copy are gone for good."""
    try:
        await runtime.store.discard(item_id)
    except ItemNotFoundError:
        raise HTTPException(status.HTTP_404_NOT_FOUND, "Queue item not found")
    except ItemBusyError as e:
        raise HTTPException(status.HTTP_409_CONFLICT, str(e))
    except StorageError as e:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, str(e))
