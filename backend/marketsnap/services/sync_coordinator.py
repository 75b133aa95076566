"""Sync coordinator — decides when and which queued items get uploaded."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from marketsnap.errors import AuthError, PermanentError, TransientNetworkError
from marketsnap.models.base import utcnow
from marketsnap.models.queued_media import ErrorKind, QueuedMediaItem
from marketsnap.services.connectivity import ConnectivityMonitor
from marketsnap.services.credentials import Credentials
from marketsnap.services.queue_store import QueueStore
from marketsnap.services.retry_policy import RetryPolicy
from marketsnap.services.upload_worker import UploadWorker

logger = logging.getLogger(__name__)


class SyncTrigger(str, Enum):
    STARTUP = "startup"
    FOREGROUND = "app_foreground"
    CONNECTIVITY = "connectivity"
    PERIODIC = "periodic"
    MANUAL = "manual"


@dataclass
class SweepReport:
    trigger: SyncTrigger
    started_at: datetime
    finished_at: datetime | None = None
    skipped: str | None = None  # in_flight | offline | auth_paused
    attempted: int = 0
    uploaded: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    needs_attention: list[str] = field(default_factory=list)
    auth_paused: bool = False
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["trigger"] = self.trigger.value
        data["started_at"] = self.started_at.isoformat()
        data["finished_at"] = self.finished_at.isoformat() if self.finished_at else None
        return data


class SyncCoordinator:
    """Single-flight sweeps over the queue, one upload at a time.

    Safe to call redundantly: a sweep requested while another one runs is
    dropped, not queued. ``sweep`` never raises.
    """

    def __init__(
        self,
        store: QueueStore,
        worker: UploadWorker,
        connectivity: ConnectivityMonitor,
        credentials: Callable[[], Credentials | None],
        policy: RetryPolicy | None = None,
        *,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._store = store
        self._worker = worker
        self._connectivity = connectivity
        self._credentials = credentials
        self._policy = policy or RetryPolicy()
        self._clock = clock
        self._lock = asyncio.Lock()
        self._auth_paused = False
        self._pause_reason: str | None = None
        self._last_report: SweepReport | None = None

    @property
    def in_flight(self) -> bool:
        return self._lock.locked()

    @property
    def auth_paused(self) -> bool:
        return self._auth_paused

    @property
    def pause_reason(self) -> str | None:
        return self._pause_reason

    @property
    def last_report(self) -> SweepReport | None:
        return self._last_report

    def resume(self) -> None:
        """Lift the auth pause once the user has signed in again."""
        if self._auth_paused:
            logger.info("Sync resumed after re-authentication")
        self._auth_paused = False
        self._pause_reason = None

    async def sweep(self, trigger: SyncTrigger = SyncTrigger.MANUAL) -> SweepReport:
        report = SweepReport(trigger=trigger, started_at=self._clock())
        if self._lock.locked():
            logger.debug("Sweep (%s) dropped — another sweep is running", trigger.value)
            report.skipped = "in_flight"
            return report

        async with self._lock:
            try:
                await self._sweep(report)
            except Exception as e:
                logger.exception("Sync sweep aborted: %s", e)
                report.error = str(e)
            report.finished_at = self._clock()

        self._last_report = report
        if report.attempted:
            logger.info(
                "Sweep (%s): %d attempted, %d uploaded, %d failed",
                trigger.value, report.attempted, len(report.uploaded), len(report.failed),
            )
        return report

    async def _sweep(self, report: SweepReport) -> None:
        if self._auth_paused:
            report.skipped = "auth_paused"
            report.auth_paused = True
            return
        if not self._connectivity.is_online:
            report.skipped = "offline"
            return

        credentials = self._credentials()
        for item in await self._store.list_pending(self._clock()):
            if not self._connectivity.is_online:
                logger.info("Connectivity lost mid-sweep — remaining items wait")
                break
            if credentials is not None and item.owner_id != credentials.user_id:
                # Another account's snap waits until its owner signs in.
                continue
            if not await self._store.mark_uploading(item.id):
                continue

            report.attempted += 1
            try:
                await self._attempt(item, credentials, report)
            except Exception as e:
                logger.exception("Bookkeeping for %s failed: %s", item.id, e)
                report.failed.append(item.id)
            if self._auth_paused:
                break

    async def _attempt(
        self,
        item: QueuedMediaItem,
        credentials: Credentials | None,
        report: SweepReport,
    ) -> None:
        try:
            await self._worker.upload(item, credentials)
        except AuthError as e:
            # Not the item's fault: hand it back without charging a retry.
            await self._store.release(item.id, str(e))
            self._pause(str(e))
            report.auth_paused = True
            return
        except PermanentError as e:
            give_up = e.data_loss or self._policy.should_give_up(item.retry_count + 1)
            await self._store.mark_failed(
                item.id, str(e), ErrorKind.PERMANENT, requires_attention=give_up
            )
            report.failed.append(item.id)
            if give_up:
                report.needs_attention.append(item.id)
            return
        except Exception as e:
            if not isinstance(e, TransientNetworkError):
                logger.exception("Unexpected upload error for %s", item.id)
            else:
                logger.info("Transient failure for %s: %s", item.id, e)
            await self._store.mark_failed(item.id, str(e) or type(e).__name__, ErrorKind.TRANSIENT)
            report.failed.append(item.id)
            return

        await self._store.mark_done(item.id)
        report.uploaded.append(item.id)

    def _pause(self, reason: str) -> None:
        self._auth_paused = True
        self._pause_reason = reason
        logger.warning("Sync paused until re-authentication: %s", reason)
