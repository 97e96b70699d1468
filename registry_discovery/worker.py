from __future__ import annotations

import asyncio
import logging
import random
import time
from datetime import date, datetime, timezone

import httpx
from opentelemetry import trace

from registry_discovery.core.config import Settings, get_settings
from registry_discovery.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from registry_discovery.jobs.coordinator import PipelineCoordinator
from registry_discovery.jobs.stale_sweep import StaleSweeper
from registry_discovery.services.checkers import CheckerRegistry, build_checker_registry
from registry_discovery.services.queue import DiscoveryQueue
from registry_discovery.services.relationships import RelationshipDetector
from registry_discovery.services.repository import get_repository
from registry_discovery.services.stats import DailyStatsAggregator
from registry_discovery.services.validation import ValidationEngine

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def build_coordinator(repository, settings: Settings, *, checkers: CheckerRegistry) -> PipelineCoordinator:
    return PipelineCoordinator(
        queue=DiscoveryQueue(repository),
        engine=ValidationEngine(
            rule_store=repository,
            result_store=repository,
            checkers=checkers,
            default_timeout_seconds=settings.checker_timeout_seconds,
        ),
        detector=RelationshipDetector(),
        registry=repository,
        duplicate_confidence_threshold=settings.duplicate_confidence_threshold,
    )


async def refresh_daily_stats(aggregator: DailyStatsAggregator, today: date, last_day: date | None) -> date:
    """Refresh today's row; the first pass after midnight also closes out the previous day."""
    if last_day is not None and last_day < today:
        await aggregator.refresh(last_day)
    await aggregator.refresh(today)
    return today


async def _pause(stop_event: asyncio.Event, seconds: float) -> None:
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


async def run_worker(
    poll_interval_ms: int | None = None,
    stale_processing_threshold_ms: int | None = None,
    *,
    stop_event: asyncio.Event | None = None,
    repository=None,
    checkers: CheckerRegistry | None = None,
    settings: Settings | None = None,
) -> None:
    settings = settings or get_settings()
    configure_logging(settings)
    telemetry_runtime = setup_telemetry(settings, service_suffix="worker")

    poll_interval_seconds = (poll_interval_ms if poll_interval_ms is not None else settings.poll_interval_ms) / 1000.0
    threshold_seconds = (
        stale_processing_threshold_ms
        if stale_processing_threshold_ms is not None
        else settings.stale_processing_threshold_ms
    ) / 1000.0
    stop_event = stop_event or asyncio.Event()
    owns_repository = repository is None
    repository = repository or get_repository()

    client: httpx.AsyncClient | None = None
    if checkers is None:
        client = httpx.AsyncClient(timeout=settings.checker_timeout_seconds)
        checkers = build_checker_registry(
            settings.checker_endpoints_json,
            timeout_seconds=settings.checker_timeout_seconds,
            client=client,
        )
    if not checkers.kinds():
        logger.warning("no rule checkers configured; every enabled rule will fail")

    coordinator = build_coordinator(repository, settings, checkers=checkers)
    sweeper = StaleSweeper(
        coordinator.queue,
        threshold_seconds=threshold_seconds,
        interval_seconds=settings.stale_sweep_interval_seconds,
        batch_size=settings.stale_sweep_batch_size,
    )
    aggregator = DailyStatsAggregator(repository)

    logger.info(
        "worker started worker_id=%s poll_interval_seconds=%.3f stale_threshold_seconds=%.1f checkers=%s",
        settings.worker_id,
        poll_interval_seconds,
        threshold_seconds,
        ",".join(checkers.kinds()) or "-",
    )

    backoff = poll_interval_seconds
    last_stats_refresh_at = 0.0
    last_stats_day: date | None = None

    try:
        while not stop_event.is_set():
            try:
                with tracer.start_as_current_span("worker.poll_cycle"):
                    now = time.monotonic()
                    if sweeper.due(now):
                        await sweeper.run(now)

                    if now - last_stats_refresh_at >= settings.stats_refresh_interval_seconds:
                        last_stats_day = await refresh_daily_stats(
                            aggregator,
                            datetime.now(timezone.utc).date(),
                            last_stats_day,
                        )
                        last_stats_refresh_at = now

                    with tracer.start_as_current_span("worker.process_candidate") as candidate_span:
                        outcome = await coordinator.process_next(settings.worker_id)
                        if outcome is not None:
                            candidate_span.set_attribute("candidate.id", outcome.candidate_id)
                            candidate_span.set_attribute("pipeline.decision", outcome.decision)

                backoff = poll_interval_seconds
                if outcome is None:
                    await _pause(stop_event, poll_interval_seconds)
            except Exception as exc:  # pragma: no cover - loop robustness
                jitter = random.uniform(0.0, 0.5)
                sleep_for = min(max(backoff, 0.1) * (2.0 + jitter), settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await _pause(stop_event, sleep_for)
                backoff = sleep_for
    finally:
        logger.info("worker stopping worker_id=%s", settings.worker_id)
        if client is not None:
            await client.aclose()
        if owns_repository:
            await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
