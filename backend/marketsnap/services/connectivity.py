"""Connectivity monitor — debounced online/offline signal with HTTP probing."""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from enum import Enum
from typing import Awaitable, Callable, Union

import httpx

logger = logging.getLogger(__name__)


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


Listener = Callable[[ConnectivityState], Union[Awaitable[None], None]]


class ConnectivityMonitor:
    """Turns raw reachability observations into a stable two-state signal.

    A change only becomes the current state after it has been observed
    continuously for ``stability_seconds``. Consumers should query
    ``is_online`` rather than rely on seeing every transition.
    """

    def __init__(
        self,
        probe_url: str | None = None,
        *,
        stability_seconds: float = 2.0,
        poll_interval: float = 15.0,
        fast_poll_interval: float = 1.0,
        probe_timeout: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._probe_url = probe_url
        self._stability = stability_seconds
        self._poll_interval = poll_interval
        self._fast_poll_interval = fast_poll_interval
        self._probe_timeout = probe_timeout
        self._clock = clock

        self._state = ConnectivityState.OFFLINE
        self._initialized = False
        self._candidate: ConnectivityState | None = None
        self._candidate_since = 0.0
        self._listeners: list[Listener] = []
        self._task: asyncio.Task | None = None
        self._running = False

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._state == ConnectivityState.ONLINE

    @property
    def transition_pending(self) -> bool:
        return self._candidate is not None

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register for committed transitions. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def observe(self, reachable: bool) -> ConnectivityState:
        """Feed one raw observation (from the probe or a platform callback)."""
        observed = ConnectivityState.ONLINE if reachable else ConnectivityState.OFFLINE
        now = self._clock()

        if not self._initialized:
            # Nothing to flap from yet: take the first reading as-is.
            self._initialized = True
            await self._commit(observed)
            return self._state

        if observed == self._state:
            if self._candidate is not None:
                logger.debug("Connectivity flap to %s discarded", self._candidate.value)
            self._candidate = None
            return self._state

        if self._candidate != observed:
            self._candidate = observed
            self._candidate_since = now
            return self._state

        if now - self._candidate_since >= self._stability:
            await self._commit(observed)
        return self._state

    async def _commit(self, new_state: ConnectivityState) -> None:
        self._candidate = None
        old_state = self._state
        self._state = new_state
        logger.info("Connectivity: %s -> %s", old_state.value, new_state.value)
        for listener in list(self._listeners):
            try:
                result = listener(new_state)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error("Connectivity listener failed: %s", e)

    # ── Probing loop ──

    async def probe(self) -> bool:
        """True if the probe URL answers at all (any HTTP status)."""
        if not self._probe_url:
            return True
        try:
            async with httpx.AsyncClient(timeout=self._probe_timeout) as client:
                await client.head(self._probe_url)
            return True
        except (httpx.HTTPError, OSError):
            return False

    def start(self) -> None:
        """Start the background probing loop."""
        if self._task is not None:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Connectivity monitor started (probe=%s)", self._probe_url)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Connectivity monitor stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                await self.observe(await self.probe())
            except Exception as e:
                logger.error("Connectivity probe error: %s", e)

            # Poll fast while a transition is waiting to be confirmed.
            interval = self._fast_poll_interval if self.transition_pending else self._poll_interval
            try:
                await asyncio.sleep(interval)
            except asyncio.CancelledError:
                break
