"""Exponential backoff with per-item jitter."""

from __future__ import annotations

import random
from dataclasses import dataclass
from datetime import datetime, timedelta

from marketsnap.config import Settings


@dataclass(frozen=True)
class RetryPolicy:
    base_seconds: float = 2.0
    cap_seconds: float = 300.0
    jitter: float = 0.2
    permanent_threshold: int = 5

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            base_seconds=settings.backoff_base_seconds,
            cap_seconds=settings.backoff_cap_seconds,
            jitter=settings.backoff_jitter,
            permanent_threshold=settings.permanent_failure_threshold,
        )

    def backoff(self, retry_count: int, key: str = "") -> float:
        """Seconds to wait after ``retry_count`` failures.

        The jitter factor is derived from ``key`` (the item id), so one item
        always gets the same factor and its waits never shrink.
        """
        if retry_count <= 0:
            return 0.0
        factor = 1.0 + random.Random(key).uniform(-self.jitter, self.jitter)
        # Cap the exponent before multiplying so huge counts cannot overflow.
        exponent = min(retry_count, 32)
        return min(self.cap_seconds, self.base_seconds * (2 ** exponent) * factor)

    def next_attempt_at(
        self, retry_count: int, last_attempt_at: datetime | None, key: str = ""
    ) -> datetime | None:
        if last_attempt_at is None:
            return None
        return last_attempt_at + timedelta(seconds=self.backoff(retry_count, key))

    def is_eligible(
        self,
        retry_count: int,
        last_attempt_at: datetime | None,
        now: datetime,
        key: str = "",
    ) -> bool:
        due = self.next_attempt_at(retry_count, last_attempt_at, key)
        return due is None or now >= due

    def should_give_up(self, retry_count: int) -> bool:
        """Permanent failures stop auto-retrying once this many attempts failed."""
        return retry_count >= self.permanent_threshold
