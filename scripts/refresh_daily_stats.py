#!/usr/bin/env python3
"""Recompute and upsert DailyStats for one or more UTC dates."""

from __future__ import annotations

import argparse
import asyncio
from datetime import date, datetime, timedelta, timezone

from registry_discovery.core.telemetry import configure_logging
from registry_discovery.services.repository import get_repository
from registry_discovery.services.stats import DailyStatsAggregator


def resolve_days(*, day: str | None, days_back: int) -> list[date]:
    end = date.fromisoformat(day) if day else datetime.now(timezone.utc).date()
    return [end - timedelta(days=offset) for offset in range(days_back - 1, -1, -1)]


async def _refresh(days: list[date]) -> None:
    repository = get_repository()
    aggregator = DailyStatsAggregator(repository)
    try:
        for day in days:
            stats = await aggregator.refresh(day)
            print(
                f"{stats.date.isoformat()} discovered={stats.discovered} validated={stats.validated} "
                f"added={stats.added} rejected={stats.rejected} pass_rate={stats.pass_rate}"
            )
    finally:
        await repository.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Refresh daily discovery statistics.")
    parser.add_argument("--date", help="UTC date (YYYY-MM-DD); defaults to today")
    parser.add_argument("--days-back", type=int, default=1, help="Number of days ending at --date to refresh")
    args = parser.parse_args()
    if args.days_back < 1:
        parser.error("--days-back must be at least 1")

    configure_logging()
    asyncio.run(_refresh(resolve_days(day=args.date, days_back=args.days_back)))


if __name__ == "__main__":
    main()
