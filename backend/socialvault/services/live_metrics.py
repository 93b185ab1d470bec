"""Throttled persistence of live scrape metrics.

Provider callbacks can fire thousands of times per second. Each event
updates the in-memory snapshot; a ledger write only happens when

- the write is forced (new provider run id, explicit checkpoint),
- the lifecycle phase changed,
- a counter crossed its step or the cost moved by a cent, at least
  ``MIN_PERSIST_SECONDS`` after the previous write,
- or nothing was written for ``MAX_SILENCE_SECONDS``.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Optional

from socialvault.schemas.backup_jobs import LiveMetrics
from socialvault.services.pricing import round_usd, to_decimal


TIMELINE_STEP = 10
SOCIAL_STEP = 50
MEDIA_STEP = 25
COST_STEP_USD = 0.01
MIN_PERSIST_SECONDS = 0.5
MAX_SILENCE_SECONDS = 1.5

PHASE_PROGRESS = {
    "preparing": 8,
    "scraping": 20,
    "saving": 60,
    "finalizing": 94,
}
MEDIA_PROGRESS_START = 72
MEDIA_PROGRESS_SPAN = 20
DEFAULT_PHASE_PROGRESS = 25


def progress_for_phase(phase: str, media_processed: int = 0, media_total: int = 0) -> int:
    if phase == "media":
        if media_total <= 0:
            return MEDIA_PROGRESS_START
        ratio = max(0.0, min(1.0, media_processed / media_total))
        return MEDIA_PROGRESS_START + round(ratio * MEDIA_PROGRESS_SPAN)
    return PHASE_PROGRESS.get(phase, DEFAULT_PHASE_PROGRESS)


def live_message(metrics: LiveMetrics) -> str:
    return f"In progress ({metrics.phase or 'running'})"


PersistCallback = Callable[[LiveMetrics], Awaitable[None]]


class LiveMetricsSync:
    def __init__(
        self,
        persist: PersistCallback,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._persist = persist
        self._clock = clock
        self.metrics = LiveMetrics()
        self.last_persisted = self.metrics.model_copy()
        self.last_persisted_at: Optional[float] = None
        self.writes = 0

    def _crossed_step(self) -> bool:
        now, last = self.metrics, self.last_persisted
        timeline_moved = (
            abs(now.tweets_fetched - last.tweets_fetched) >= TIMELINE_STEP
            or abs(now.replies_fetched - last.replies_fetched) >= TIMELINE_STEP
        )
        social_moved = (
            abs(now.followers_fetched - last.followers_fetched) >= SOCIAL_STEP
            or abs(now.following_fetched - last.following_fetched) >= SOCIAL_STEP
        )
        media_moved = (
            abs(now.media_processed - last.media_processed) >= MEDIA_STEP
            or abs(now.media_total - last.media_total) >= MEDIA_STEP
        )
        first_non_zero = any(
            getattr(last, name) == 0 and getattr(now, name) > 0
            for name in ("tweets_fetched", "replies_fetched", "followers_fetched", "following_fetched")
        )
        return timeline_moved or social_moved or media_moved or first_non_zero

    def should_persist(self, *, force: bool = False) -> bool:
        if force or self.last_persisted_at is None:
            return True
        if self.metrics.phase != self.last_persisted.phase:
            return True

        elapsed = self._clock() - self.last_persisted_at
        if elapsed >= MIN_PERSIST_SECONDS:
            if self._crossed_step():
                return True
            cost_delta = to_decimal(self.metrics.api_cost_usd) - to_decimal(self.last_persisted.api_cost_usd)
            if abs(cost_delta) >= to_decimal(COST_STEP_USD):
                return True
        return elapsed >= MAX_SILENCE_SECONDS

    def update(self, **patch: Any) -> None:
        for key, value in patch.items():
            if value is not None:
                setattr(self.metrics, key, value)
        self.metrics.api_cost_usd = round_usd(self.metrics.api_cost_usd or 0)

    async def sync(self, *, force: bool = False, **patch: Any) -> bool:
        """Apply ``patch`` and write through when the throttle allows; True if written."""
        self.update(**patch)
        if not self.should_persist(force=force):
            return False
        snapshot = self.metrics.model_copy()
        await self._persist(snapshot)
        self.last_persisted = snapshot
        self.last_persisted_at = self._clock()
        self.writes += 1
        return True

    @property
    def progress(self) -> int:
        return progress_for_phase(self.metrics.phase, self.metrics.media_processed, self.metrics.media_total)
