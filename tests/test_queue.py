from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from registry_discovery.services.queue import DiscoveryQueue, QueueValidationError
from registry_discovery.services.repository import RepositoryConflictError, compute_retry_delay_seconds
from registry_discovery.services.store import InMemoryRepository


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


def _queue(clock: FakeClock | None = None) -> tuple[DiscoveryQueue, InMemoryRepository]:
    store = InMemoryRepository(clock=clock or FakeClock())
    return DiscoveryQueue(store), store


def test_enqueue_same_url_twice_merges_metadata_and_returns_same_id() -> None:
    queue, store = _queue()

    async def scenario() -> tuple[str, str]:
        first = await queue.enqueue("github.com/a/b", "automatedSearch", 5, {"x": 1})
        second = await queue.enqueue("github.com/a/b", "automatedSearch", 5, {"y": 2})
        return first, second

    first, second = asyncio.run(scenario())

    assert first == second
    assert len(store.candidates) == 1
    row = store.candidates[first]
    assert row.repository_url == "https://github.com/a/b"
    assert row.repository_full_name == "a/b"
    assert row.priority == 5
    assert row.metadata == {"x": 1, "y": 2}
    assert row.status == "pending"


def test_enqueue_keeps_highest_priority_and_new_keys_overwrite() -> None:
    queue, store = _queue()

    async def scenario() -> str:
        candidate_id = await queue.enqueue("https://github.com/acme/tool", "curatedList", 3, {"stars": 10})
        await queue.enqueue("https://GitHub.com/acme/tool.git", "webhook", 8, {"stars": 12})
        await queue.enqueue("github.com/acme/tool/", "manual", 2)
        return candidate_id

    candidate_id = asyncio.run(scenario())

    row = store.candidates[candidate_id]
    assert len(store.candidates) == 1
    assert row.priority == 8
    assert row.metadata == {"stars": 12}
    assert row.source_type == "curatedList"


@pytest.mark.parametrize(
    ("url", "source_type", "priority", "metadata"),
    [
        ("not a url", "automatedSearch", 5, None),
        ("https://github.com/solo", "automatedSearch", 5, None),
        ("ftp://github.com/a/b", "automatedSearch", 5, None),
        ("github.com/a/b", "crawler", 5, None),
        ("github.com/a/b", "automatedSearch", 0, None),
        ("github.com/a/b", "automatedSearch", 11, None),
        ("github.com/a/b", "automatedSearch", True, None),
        ("github.com/a/b", "automatedSearch", 5, ["x"]),
    ],
)
def test_enqueue_rejects_malformed_input_without_storing(url, source_type, priority, metadata) -> None:
    queue, store = _queue()

    with pytest.raises(QueueValidationError):
        asyncio.run(queue.enqueue(url, source_type, priority, metadata))

    assert store.candidates == {}


def test_dequeue_orders_by_priority_then_age() -> None:
    clock = FakeClock()
    queue, _ = _queue(clock)

    async def scenario() -> list[str]:
        await queue.enqueue("github.com/acme/low", "automatedSearch", 2)
        clock.advance(seconds=1)
        await queue.enqueue("github.com/acme/high-old", "automatedSearch", 9)
        clock.advance(seconds=1)
        await queue.enqueue("github.com/acme/high-new", "automatedSearch", 9)
        claimed = []
        while (candidate := await queue.dequeue_next("worker-1")) is not None:
            claimed.append(candidate.repository_full_name)
        return claimed

    assert asyncio.run(scenario()) == ["acme/high-old", "acme/high-new", "acme/low"]


def test_dequeue_marks_processing_and_returns_none_when_empty() -> None:
    clock = FakeClock()
    queue, store = _queue(clock)

    async def scenario():
        candidate_id = await queue.enqueue("github.com/acme/tool", "manual")
        claimed = await queue.dequeue_next("worker-7")
        again = await queue.dequeue_next("worker-8")
        return candidate_id, claimed, again

    candidate_id, claimed, again = asyncio.run(scenario())

    assert claimed is not None
    assert claimed.id == candidate_id
    assert again is None
    row = store.candidates[candidate_id]
    assert row.status == "processing"
    assert row.claimed_by == "worker-7"
    assert row.claimed_at == clock.now


def test_concurrent_dequeue_never_hands_out_a_row_twice() -> None:
    queue, _ = _queue()

    async def scenario():
        for index in range(12):
            await queue.enqueue(f"github.com/acme/tool-{index}", "automatedSearch", 1 + index % 10)
        return await asyncio.gather(*(queue.dequeue_next(f"worker-{index}") for index in range(40)))

    claimed = asyncio.run(scenario())

    winners = [candidate.id for candidate in claimed if candidate is not None]
    assert len(winners) == 12
    assert len(set(winners)) == 12
    assert claimed.count(None) == 28


def test_complete_failure_backs_off_then_exhausts_budget() -> None:
    clock = FakeClock()
    queue, store = _queue(clock)

    async def scenario() -> str:
        candidate_id = await queue.enqueue("github.com/acme/flaky", "automatedSearch")
        await queue.dequeue_next("worker-1")

        first = await queue.complete_failure(candidate_id, "install timed out")
        assert first.status == "failed"
        assert first.attempt_count == 1
        assert first.next_retry_at == clock.now + timedelta(seconds=30)
        assert await queue.dequeue_next("worker-1") is None

        clock.advance(seconds=30)
        assert (await queue.dequeue_next("worker-1")).id == candidate_id
        second = await queue.complete_failure(candidate_id, "install timed out")
        assert second.next_retry_at == clock.now + timedelta(seconds=60)

        clock.advance(seconds=60)
        assert (await queue.dequeue_next("worker-1")).id == candidate_id
        third = await queue.complete_failure(candidate_id, "install timed out again")
        assert third.status == "failed"
        assert third.attempt_count == 3
        assert third.next_retry_at is None

        clock.advance(days=2)
        assert await queue.dequeue_next("worker-1") is None
        return candidate_id

    candidate_id = asyncio.run(scenario())

    assert store.candidates[candidate_id].last_error == "install timed out again"


def test_complete_failure_max_attempts_times_without_claims_is_terminal() -> None:
    queue, store = _queue()

    async def scenario() -> str:
        candidate_id = await queue.enqueue("github.com/acme/broken", "webhook")
        for _ in range(store.queue_max_attempts):
            await queue.complete_failure(candidate_id, "boom")
        with pytest.raises(RepositoryConflictError):
            await queue.complete_failure(candidate_id, "boom")
        return candidate_id

    candidate_id = asyncio.run(scenario())

    row = store.candidates[candidate_id]
    assert row.status == "failed"
    assert row.attempt_count == 3
    assert row.next_retry_at is None


def test_retry_delay_doubles_and_caps() -> None:
    delays = [compute_retry_delay_seconds(attempt=attempt, base_seconds=30, max_seconds=3600) for attempt in range(1, 10)]

    assert delays[:4] == [30, 60, 120, 240]
    assert delays[-1] == 3600
    assert all(later >= earlier for earlier, later in zip(delays, delays[1:]))


def test_skip_is_terminal_and_keeps_attempt_count() -> None:
    queue, store = _queue()

    async def scenario() -> str:
        candidate_id = await queue.enqueue("github.com/acme/no-manifest", "manual")
        await queue.dequeue_next("worker-1")
        await queue.skip(candidate_id, "failed required validations: has_package_json")
        with pytest.raises(RepositoryConflictError):
            await queue.complete_success(candidate_id)
        return candidate_id

    candidate_id = asyncio.run(scenario())

    row = store.candidates[candidate_id]
    assert row.status == "skipped"
    assert row.attempt_count == 0
    assert row.last_error == "failed required validations: has_package_json"
    assert row.claimed_by is None


def test_complete_success_clears_claim() -> None:
    clock = FakeClock()
    queue, store = _queue(clock)

    async def scenario() -> str:
        candidate_id = await queue.enqueue("github.com/acme/good", "manual")
        await queue.dequeue_next("worker-1")
        clock.advance(seconds=5)
        await queue.complete_success(candidate_id)
        return candidate_id

    candidate_id = asyncio.run(scenario())

    row = store.candidates[candidate_id]
    assert row.status == "completed"
    assert row.processed_at == clock.now
    assert row.claimed_by is None
    assert row.claimed_at is None


def test_submit_records_submission_and_enqueues_without_email_in_metadata() -> None:
    queue, store = _queue()

    async def scenario():
        return await queue.submit(
            "https://github.com/Acme/Weather",
            submitter_name="Robin",
            submitter_email="robin@example.org",
            submitter_github="robin-gh",
            description="Weather lookups",
            suggested_tags=["weather", " ", "api"],
        )

    submission = asyncio.run(scenario())

    assert submission.repository_url == "https://github.com/acme/weather"
    assert submission.submitter_email == "robin@example.org"
    assert submission.suggested_tags == ["weather", "api"]
    candidate = store.candidates[submission.candidate_id]
    assert candidate.source_type == "communitySubmission"
    assert candidate.metadata == {
        "submitter_name": "Robin",
        "submitter_github": "robin-gh",
        "description": "Weather lookups",
        "suggested_tags": ["weather", "api"],
    }
    assert store.submissions == [submission]


def test_reclaimed_row_rejects_transitions_from_the_previous_claimant() -> None:
    clock = FakeClock()
    queue, store = _queue(clock)

    async def scenario() -> str:
        candidate_id = await queue.enqueue("github.com/acme/slow", "automatedSearch")
        await queue.dequeue_next("worker-A")
        clock.advance(minutes=11)
        assert await queue.requeue_stale(threshold_seconds=600) == 1
        assert (await queue.dequeue_next("worker-B")).id == candidate_id

        with pytest.raises(RepositoryConflictError):
            await queue.complete_failure(candidate_id, "install timed out", worker_id="worker-A")
        with pytest.raises(RepositoryConflictError):
            await queue.skip(candidate_id, "no manifest", worker_id="worker-A")
        with pytest.raises(RepositoryConflictError):
            await queue.complete_success(candidate_id, worker_id="worker-A")

        row = store.candidates[candidate_id]
        assert (row.status, row.claimed_by, row.attempt_count) == ("processing", "worker-B", 1)

        clock.advance(hours=2)
        assert await queue.dequeue_next("worker-C") is None
        await queue.complete_success(candidate_id, worker_id="worker-B")
        return candidate_id

    candidate_id = asyncio.run(scenario())

    assert store.candidates[candidate_id].status == "completed"


def test_claim_token_requires_a_processing_row() -> None:
    queue, _ = _queue()

    async def scenario() -> None:
        candidate_id = await queue.enqueue("github.com/acme/idle", "manual")
        with pytest.raises(RepositoryConflictError):
            await queue.complete_failure(candidate_id, "boom", worker_id="worker-1")
        await queue.complete_failure(candidate_id, "boom")

    asyncio.run(scenario())


def test_each_distinct_source_is_recorded_once_in_first_seen_order() -> None:
    clock = FakeClock()
    queue, store = _queue(clock)

    async def scenario() -> str:
        candidate_id = await queue.enqueue("github.com/acme/x", "automatedSearch", 5, {"query": "mcp"})
        clock.advance(minutes=5)
        await queue.enqueue("github.com/acme/x", "curatedList", 5, {"list": "awesome"})
        await queue.enqueue("github.com/acme/x", "automatedSearch", 5, {"query": "server"})
        return candidate_id

    candidate_id = asyncio.run(scenario())

    sources = store.candidates[candidate_id].sources
    assert [source["source_type"] for source in sources] == ["automatedSearch", "curatedList"]
    assert sources[0]["metadata"] == {"query": "mcp"}
    assert sources[1]["discovered_at"] == clock.now.isoformat()
    assert store.candidates[candidate_id].source_type == "automatedSearch"
