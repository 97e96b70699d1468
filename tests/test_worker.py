from __future__ import annotations

import asyncio
from datetime import date, datetime, timezone
from typing import Any

from registry_discovery.core.config import Settings
from registry_discovery.services.checkers import CheckerRegistry, CheckOutcome
from registry_discovery.services.models import CandidateEntry
from registry_discovery.services.queue import DiscoveryQueue
from registry_discovery.services.store import InMemoryRepository
from registry_discovery.worker import refresh_daily_stats, run_worker


class AlwaysPassChecker:
    async def check(self, criteria: dict[str, Any], candidate: CandidateEntry) -> CheckOutcome:
        return CheckOutcome(passed=True)


def test_run_worker_drains_queue_and_stops_on_event() -> None:
    store = InMemoryRepository()
    settings = Settings(otel_enabled=False, worker_id="test-worker", stats_refresh_interval_seconds=0.0)
    checkers = CheckerRegistry({"fileStructure": AlwaysPassChecker()})

    async def scenario() -> list[str]:
        await store.create_rule(name="has_package_json", kind="fileStructure")
        queue = DiscoveryQueue(store)
        ids = [await queue.enqueue(f"github.com/acme/tool-{index}", "automatedSearch") for index in range(3)]

        stop_event = asyncio.Event()
        task = asyncio.create_task(
            run_worker(
                5,
                600_000,
                stop_event=stop_event,
                repository=store,
                checkers=checkers,
                settings=settings,
            )
        )
        for _ in range(400):
            if all(store.candidates[candidate_id].status == "completed" for candidate_id in ids):
                break
            await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)
        return ids

    ids = asyncio.run(scenario())

    assert [store.candidates[candidate_id].status for candidate_id in ids] == ["completed"] * 3
    assert len(store.registry) == 3
    assert {record.discovered_by for record in store.provenance} == {"test-worker"}
    assert datetime.now(timezone.utc).date() in store.daily_stats


def test_run_worker_recovers_abandoned_claims() -> None:
    store = InMemoryRepository()
    settings = Settings(otel_enabled=False, stats_refresh_interval_seconds=3600.0)

    async def scenario() -> str:
        queue = DiscoveryQueue(store)
        candidate_id = await queue.enqueue("github.com/acme/abandoned", "automatedSearch")
        await queue.dequeue_next("worker-that-died")

        stop_event = asyncio.Event()
        task = asyncio.create_task(
            run_worker(
                5,
                0,
                stop_event=stop_event,
                repository=store,
                checkers=CheckerRegistry(),
                settings=settings,
            )
        )
        for _ in range(400):
            if store.candidates[candidate_id].status == "completed":
                break
            await asyncio.sleep(0.01)
        stop_event.set()
        await asyncio.wait_for(task, timeout=5)
        return candidate_id

    candidate_id = asyncio.run(scenario())

    row = store.candidates[candidate_id]
    assert row.status == "completed"
    assert row.attempt_count == 1
    assert [record.candidate_id for record in store.provenance] == [candidate_id]


class RecordingAggregator:
    def __init__(self) -> None:
        self.days: list[date] = []

    async def refresh(self, day: date) -> None:
        self.days.append(day)


def test_stats_refresh_closes_out_the_previous_day_after_midnight() -> None:
    aggregator = RecordingAggregator()

    async def scenario() -> date:
        last_day = await refresh_daily_stats(aggregator, date(2026, 3, 1), None)
        last_day = await refresh_daily_stats(aggregator, date(2026, 3, 1), last_day)
        last_day = await refresh_daily_stats(aggregator, date(2026, 3, 2), last_day)
        return last_day

    assert asyncio.run(scenario()) == date(2026, 3, 2)
    assert aggregator.days == [date(2026, 3, 1), date(2026, 3, 1), date(2026, 3, 1), date(2026, 3, 2)]
