"""APScheduler-based background sync — best-effort, at-least-once sweeps."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from marketsnap.models.base import utcnow
from marketsnap.services.connectivity import ConnectivityState
from marketsnap.services.sync_coordinator import SweepReport, SyncTrigger

if TYPE_CHECKING:
    from marketsnap.services.connectivity import ConnectivityMonitor
    from marketsnap.services.sync_coordinator import SyncCoordinator

logger = logging.getLogger(__name__)

PERIODIC_JOB_ID = "periodic_sync"
ONEOFF_JOB_ID = "oneoff_sync"


class SyncScheduler:
    """Invokes ``SyncCoordinator.sweep`` from timers and external events."""

    def __init__(
        self,
        coordinator: SyncCoordinator,
        connectivity: ConnectivityMonitor,
        *,
        state_dir: str | Path,
        interval_minutes: int = 15,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._coordinator = coordinator
        self._connectivity = connectivity
        self._interval_minutes = interval_minutes
        self._clock = clock
        self._state_file = Path(state_dir) / "last_sync.json"
        self._scheduler = AsyncIOScheduler(
            job_defaults={"coalesce": True, "max_instances": 1}
        )
        self._unsubscribe: Callable[[], None] | None = None
        self._background: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """Register the periodic sweep and the connectivity trigger."""
        self._scheduler.add_job(
            self._run_sweep,
            "interval",
            minutes=self._interval_minutes,
            args=[SyncTrigger.PERIODIC],
            id=PERIODIC_JOB_ID,
            name="Periodic media sync",
            replace_existing=True,
        )
        self._unsubscribe = self._connectivity.subscribe(self._on_connectivity)
        self._scheduler.start()
        logger.info("Sync scheduler started — sweeping every %d min", self._interval_minutes)

    async def stop(self) -> None:
        if self._unsubscribe:
            self._unsubscribe()
            self._unsubscribe = None
        if self._scheduler.running:
            self._scheduler.shutdown(wait=False)
            logger.info("Sync scheduler stopped")
        for task in list(self._background):
            try:
                await task
            except Exception as e:
                logger.error("Background sweep failed during shutdown: %s", e)

    def cancel_all(self) -> None:
        """Drop every scheduled sweep (periodic and pending one-offs)."""
        self._scheduler.remove_all_jobs()
        logger.info("All scheduled sync jobs cancelled")

    def trigger(self, reason: SyncTrigger) -> None:
        """Ask for a sweep soon. Repeated requests collapse into one pending job."""
        self._scheduler.add_job(
            self._run_sweep,
            "date",
            args=[reason],
            id=ONEOFF_JOB_ID,
            name=f"One-off media sync ({reason.value})",
            replace_existing=True,
            misfire_grace_time=None,
        )
        logger.debug("One-off sync scheduled (%s)", reason.value)

    async def run_now(
        self, reason: SyncTrigger = SyncTrigger.MANUAL, timeout: float | None = None
    ) -> SweepReport | None:
        """Sweep immediately and wait up to ``timeout`` seconds.

        On timeout the sweep keeps running in the background and None is
        returned; cancelling it mid-upload would only strand the item.
        """
        task = asyncio.create_task(self._run_sweep(reason))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except asyncio.TimeoutError:
            logger.info("Immediate sync still running after %.0fs — continuing in background", timeout)
            return None

    async def _on_connectivity(self, state: ConnectivityState) -> None:
        if state == ConnectivityState.ONLINE:
            self.trigger(SyncTrigger.CONNECTIVITY)

    async def _run_sweep(self, reason: SyncTrigger) -> SweepReport | None:
        try:
            report = await self._coordinator.sweep(reason)
        except Exception as e:
            logger.error("Sync sweep (%s) crashed: %s", reason.value, e)
            self._record_execution(reason, "crashed", {"error": str(e)})
            return None
        if report.skipped != "in_flight":
            self._record_execution(reason, report.skipped or "completed", report.to_dict())
        return report

    # ── Execution record ──

    def _record_execution(self, reason: SyncTrigger, outcome: str, details: dict[str, Any]) -> None:
        data = {
            "timestamp": self._clock().isoformat(),
            "trigger": reason.value,
            "outcome": outcome,
            "attempted": details.get("attempted", 0),
            "uploaded": len(details.get("uploaded", [])),
            "failed": len(details.get("failed", [])),
            "error": details.get("error"),
        }
        try:
            self._state_file.parent.mkdir(parents=True, exist_ok=True)
            self._state_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
        except OSError as e:
            logger.warning("Failed to record sync execution: %s", e)

    def last_execution_info(self) -> dict[str, Any]:
        """When the last sweep ran and how it went (for diagnostics screens)."""
        if not self._state_file.exists():
            return {"executed": False}
        try:
            data = json.loads(self._state_file.read_text(encoding="utf-8"))
            executed_at = datetime.fromisoformat(data["timestamp"])
        except (json.JSONDecodeError, KeyError, ValueError) as e:
            logger.warning("Failed to load last sync record: %s", e)
            return {"executed": False, "error": str(e)}
        if executed_at.tzinfo is None:
            executed_at = executed_at.replace(tzinfo=timezone.utc)
        minutes_ago = int((self._clock() - executed_at).total_seconds() // 60)
        return {"executed": True, **data, "minutes_ago": minutes_ago}
