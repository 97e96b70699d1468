from __future__ import annotations

import logging
from datetime import date
from fractions import Fraction

from registry_discovery.services.contracts import StatsStore
from registry_discovery.services.models import DailyCounters, DailyStats
from registry_discovery.services.validation import round_half_up

logger = logging.getLogger(__name__)


def summarize_counters(counters: DailyCounters) -> DailyStats:
    decided = counters.added + counters.rejected
    pass_rate = round(100.0 * counters.added / decided, 2) if decided else None
    avg_latency = (
        round_half_up(Fraction(counters.validation_duration_ms_total, counters.validation_runs))
        if counters.validation_runs
        else None
    )
    return DailyStats(
        date=counters.day,
        discovered=counters.discovered,
        validated=counters.validated,
        added=counters.added,
        rejected=counters.rejected,
        pass_rate=pass_rate,
        avg_validation_latency_ms=avg_latency,
        source_breakdown=dict(sorted(counters.source_breakdown.items())),
    )


class DailyStatsAggregator:
    def __init__(self, store: StatsStore) -> None:
        self.store = store

    async def refresh(self, day: date) -> DailyStats:
        counters = await self.store.fetch_daily_counters(day)
        stats = await self.store.upsert_daily_stats(summarize_counters(counters))
        logger.info(
            "daily stats refreshed date=%s discovered=%s validated=%s added=%s rejected=%s",
            stats.date.isoformat(),
            stats.discovered,
            stats.validated,
            stats.added,
            stats.rejected,
        )
        return stats
