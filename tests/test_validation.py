from __future__ import annotations

import asyncio
from fractions import Fraction
from typing import Any

from registry_discovery.services.checkers import CheckerError, CheckerRegistry, CheckOutcome, TransientCheckerError
from registry_discovery.services.models import CandidateEntry
from registry_discovery.services.queue import DiscoveryQueue
from registry_discovery.services.store import InMemoryRepository
from registry_discovery.services.validation import ValidationEngine, compute_score, round_half_up


class CriteriaChecker:
    """Answers from the rule criteria so each test can script outcomes per rule."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []

    async def check(self, criteria: dict[str, Any], candidate: CandidateEntry) -> CheckOutcome:
        self.calls.append(criteria)
        if criteria.get("sleep"):
            await asyncio.sleep(criteria["sleep"])
        if criteria.get("raise") == "transient":
            raise TransientCheckerError("checker service returned 503")
        if criteria.get("raise") == "checker":
            raise CheckerError("bad criteria")
        if criteria.get("raise") == "crash":
            raise RuntimeError("kaboom")
        return CheckOutcome(passed=bool(criteria.get("pass")), details={"seen": candidate.repository_full_name})


def _setup(*kinds: str) -> tuple[InMemoryRepository, CriteriaChecker, ValidationEngine]:
    store = InMemoryRepository()
    checker = CriteriaChecker()
    registry = CheckerRegistry({kind: checker for kind in kinds or ("fileStructure", "dependency", "installTest")})
    engine = ValidationEngine(rule_store=store, result_store=store, checkers=registry, default_timeout_seconds=0.5)
    return store, checker, engine


async def _claimed_candidate(store: InMemoryRepository) -> CandidateEntry:
    queue = DiscoveryQueue(store)
    await queue.enqueue("github.com/acme/weather", "automatedSearch")
    return await queue.dequeue_next("worker-1")


def test_required_pass_optional_fail_scores_67_and_passes() -> None:
    store, _, engine = _setup()

    async def scenario():
        await store.create_rule(name="r1", kind="fileStructure", required=True, weight=10, criteria={"pass": True})
        await store.create_rule(name="r2", kind="dependency", required=False, weight=5, criteria={"pass": False})
        return await engine.evaluate(await _claimed_candidate(store))

    evaluation = asyncio.run(scenario())

    assert evaluation.passed is True
    assert evaluation.score == 67
    assert evaluation.failed_required == []
    assert [(result.rule_name, result.passed, result.score) for result in evaluation.results] == [
        ("r1", True, 100),
        ("r2", False, 0),
    ]


def test_failing_required_rule_gates_regardless_of_score() -> None:
    store, _, engine = _setup()

    async def scenario():
        await store.create_rule(name="big", kind="fileStructure", required=False, weight=95, criteria={"pass": True})
        await store.create_rule(name="small", kind="dependency", required=True, weight=5, criteria={"pass": False})
        return await engine.evaluate(await _claimed_candidate(store))

    evaluation = asyncio.run(scenario())

    assert evaluation.score == 95
    assert evaluation.passed is False
    assert [result.rule_name for result in evaluation.failed_required] == ["small"]


def test_zero_enabled_rules_pass_with_score_zero() -> None:
    store, checker, engine = _setup()

    async def scenario():
        rule = await store.create_rule(name="off", kind="fileStructure", criteria={"pass": False})
        await store.update_rule(rule.id, {"enabled": False})
        return await engine.evaluate(await _claimed_candidate(store))

    evaluation = asyncio.run(scenario())

    assert evaluation.passed is True
    assert evaluation.score == 0
    assert evaluation.results == []
    assert checker.calls == []


def test_timeout_fails_only_that_rule() -> None:
    store, _, engine = _setup()

    async def scenario():
        await store.create_rule(name="slow", kind="installTest", required=True, criteria={"sleep": 1, "timeout": 20})
        await store.create_rule(name="fast", kind="fileStructure", required=False, criteria={"pass": True})
        return await engine.evaluate(await _claimed_candidate(store))

    evaluation = asyncio.run(scenario())

    by_name = {result.rule_name: result for result in evaluation.results}
    assert by_name["fast"].passed is True
    assert by_name["slow"].passed is False
    assert by_name["slow"].details["error_class"] == "transient"
    assert "timed out" in by_name["slow"].error_message
    assert evaluation.passed is False


def test_checker_errors_and_missing_checker_fail_closed() -> None:
    store, _, engine = _setup("fileStructure", "dependency", "installTest")

    async def scenario():
        await store.create_rule(name="a-transient", kind="installTest", required=False, criteria={"raise": "transient"})
        await store.create_rule(name="b-checker", kind="dependency", required=False, criteria={"raise": "checker"})
        await store.create_rule(name="c-crash", kind="fileStructure", required=False, criteria={"raise": "crash"})
        await store.create_rule(name="d-unchecked", kind="functionalTest", required=False, criteria={"pass": True})
        await store.create_rule(name="e-ok", kind="fileStructure", required=False, weight=4, criteria={"pass": True})
        return await engine.evaluate(await _claimed_candidate(store))

    evaluation = asyncio.run(scenario())

    classes = {result.rule_name: result.details.get("error_class") for result in evaluation.results}
    assert classes == {
        "a-transient": "transient",
        "b-checker": "checker_error",
        "c-crash": "unexpected",
        "d-unchecked": "no_checker",
        "e-ok": None,
    }
    assert evaluation.passed is True
    assert evaluation.score == 50


def test_every_execution_is_appended_with_one_run_id() -> None:
    store, _, engine = _setup()

    async def scenario():
        await store.create_rule(name="r1", kind="fileStructure", criteria={"pass": True})
        await store.create_rule(name="r2", kind="dependency", criteria={"pass": False})
        candidate = await _claimed_candidate(store)
        first = await engine.evaluate(candidate)
        second = await engine.evaluate(candidate)
        return candidate, first, second

    candidate, first, second = asyncio.run(scenario())

    stored = asyncio.run(store.list_validation_results(candidate.id))
    assert len(stored) == 4
    assert {result.run_id for result in stored} == {first.run_id, second.run_id}
    assert first.run_id != second.run_id
    assert all(result.id for result in stored)


def test_score_rounds_half_up() -> None:
    assert round_half_up(Fraction(101, 2)) == 51
    assert round_half_up(Fraction(201, 2)) == 101
    assert compute_score([(2, True), (1, False)]) == 67
    assert compute_score([(1, True), (1, False)]) == 50
    assert compute_score([]) == 0
