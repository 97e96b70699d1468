from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from registry_discovery.services.queue import DiscoveryQueue

logger = logging.getLogger(__name__)


def claim_expired(claimed_at: Any, *, threshold_seconds: float, now: datetime | None = None) -> bool:
    now = now or datetime.now(timezone.utc)
    if not claimed_at:
        return False

    if isinstance(claimed_at, str):
        claimed_at = datetime.fromisoformat(claimed_at.replace("Z", "+00:00"))

    return claimed_at <= now - timedelta(seconds=threshold_seconds)


def should_requeue(candidate: Any, *, threshold_seconds: float, now: datetime | None = None) -> bool:
    status = getattr(candidate, "status", None)
    claimed_at = getattr(candidate, "claimed_at", None)
    if isinstance(candidate, dict):
        status = candidate.get("status")
        claimed_at = candidate.get("claimed_at")
    return status == "processing" and claim_expired(claimed_at, threshold_seconds=threshold_seconds, now=now)


class StaleSweeper:
    """Runs the staleness sweep at most once per interval."""

    def __init__(
        self,
        queue: DiscoveryQueue,
        *,
        threshold_seconds: float,
        interval_seconds: float,
        batch_size: int = 100,
    ) -> None:
        self.queue = queue
        self.threshold_seconds = threshold_seconds
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._last_run_at: float | None = None

    def due(self, now: float) -> bool:
        return self._last_run_at is None or now - self._last_run_at >= self.interval_seconds

    async def run(self, now: float) -> int:
        self._last_run_at = now
        requeued = await self.queue.requeue_stale(threshold_seconds=self.threshold_seconds, limit=self.batch_size)
        if requeued:
            logger.warning("requeued stale processing candidates: %s", requeued)
        return requeued
