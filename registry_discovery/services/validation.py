from __future__ import annotations

import asyncio
import logging
import math
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from fractions import Fraction
from typing import Any
from uuid import uuid4

from opentelemetry import trace

from registry_discovery.services.checkers import CheckerError, CheckerRegistry, CheckOutcome, TransientCheckerError
from registry_discovery.services.contracts import ResultStore, RuleStore
from registry_discovery.services.models import CandidateEntry, ValidationResult, ValidationRule

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


@dataclass(slots=True)
class Evaluation:
    run_id: str
    passed: bool
    score: int
    results: list[ValidationResult] = field(default_factory=list)
    failed_required: list[ValidationResult] = field(default_factory=list)


def round_half_up(value: Fraction) -> int:
    return math.floor(value + Fraction(1, 2))


def compute_score(weighted_outcomes: Iterable[tuple[int, bool]]) -> int:
    """Weighted pass percentage over every enabled rule; 0 when nothing is weighted."""
    total = 0
    passed_weight = 0
    for weight, passed in weighted_outcomes:
        total += weight
        if passed:
            passed_weight += weight
    if total <= 0:
        return 0
    return round_half_up(Fraction(100 * passed_weight, total))


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ValidationEngine:
    def __init__(
        self,
        *,
        rule_store: RuleStore,
        result_store: ResultStore,
        checkers: CheckerRegistry,
        default_timeout_seconds: float = 60.0,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.rule_store = rule_store
        self.result_store = result_store
        self.checkers = checkers
        self.default_timeout_seconds = default_timeout_seconds
        self.clock = clock

    async def evaluate(self, candidate: CandidateEntry) -> Evaluation:
        with tracer.start_as_current_span("validation.evaluate") as span:
            span.set_attribute("candidate.id", candidate.id)
            rules = [rule for rule in await self.rule_store.list_rules(enabled_only=True) if rule.enabled]
            run_id = str(uuid4())

            results: list[ValidationResult] = []
            for rule in rules:
                results.append(await self._run_rule(rule=rule, candidate=candidate, run_id=run_id))
            await self.result_store.append_validation_results(results)

            failed_required = [
                result for rule, result in zip(rules, results, strict=True) if rule.required and not result.passed
            ]
            evaluation = Evaluation(
                run_id=run_id,
                passed=not failed_required,
                score=compute_score((rule.weight, result.passed) for rule, result in zip(rules, results, strict=True)),
                results=results,
                failed_required=failed_required,
            )
            span.set_attribute("validation.passed", evaluation.passed)
            span.set_attribute("validation.score", evaluation.score)
            logger.info(
                "candidate evaluated id=%s rules=%s passed=%s score=%s",
                candidate.id,
                len(rules),
                evaluation.passed,
                evaluation.score,
            )
            return evaluation

    async def _run_rule(self, *, rule: ValidationRule, candidate: CandidateEntry, run_id: str) -> ValidationResult:
        timeout_seconds = self._timeout_for(rule)
        started_at = time.perf_counter()
        checker = self.checkers.get(rule.kind)

        if checker is None:
            outcome = CheckOutcome(
                passed=False,
                details={"error_class": "no_checker"},
                error=f"no checker registered for kind {rule.kind}",
            )
        else:
            outcome = await self._invoke(checker, rule=rule, candidate=candidate, timeout_seconds=timeout_seconds)

        duration_ms = int((time.perf_counter() - started_at) * 1000)
        return ValidationResult(
            candidate_id=candidate.id,
            run_id=run_id,
            rule_id=rule.id,
            rule_name=rule.name,
            kind=rule.kind,
            passed=outcome.passed,
            score=100 if outcome.passed else 0,
            details=outcome.details,
            error_message=outcome.error,
            duration_ms=duration_ms,
            validated_at=self.clock(),
        )

    async def _invoke(
        self,
        checker: Any,
        *,
        rule: ValidationRule,
        candidate: CandidateEntry,
        timeout_seconds: float,
    ) -> CheckOutcome:
        try:
            outcome = await asyncio.wait_for(checker.check(dict(rule.criteria), candidate), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            logger.warning("checker timed out rule=%s candidate=%s timeout_s=%.1f", rule.name, candidate.id, timeout_seconds)
            return CheckOutcome(
                passed=False,
                details={"error_class": "transient", "timeout_seconds": timeout_seconds},
                error=f"checker timed out after {timeout_seconds:g}s",
            )
        except TransientCheckerError as exc:
            logger.warning("transient checker failure rule=%s candidate=%s: %s", rule.name, candidate.id, exc)
            return CheckOutcome(passed=False, details={"error_class": "transient"}, error=str(exc))
        except CheckerError as exc:
            logger.warning("checker failure rule=%s candidate=%s: %s", rule.name, candidate.id, exc)
            return CheckOutcome(passed=False, details={"error_class": "checker_error"}, error=str(exc))
        except Exception as exc:
            logger.exception("checker crashed rule=%s candidate=%s", rule.name, candidate.id)
            return CheckOutcome(passed=False, details={"error_class": "unexpected"}, error=str(exc) or type(exc).__name__)

        if not isinstance(outcome, CheckOutcome):
            return CheckOutcome(
                passed=False,
                details={"error_class": "checker_error"},
                error=f"checker returned {type(outcome).__name__}",
            )
        return outcome

    def _timeout_for(self, rule: ValidationRule) -> float:
        raw = rule.criteria.get("timeout")
        if isinstance(raw, (int, float)) and not isinstance(raw, bool) and raw > 0:
            return float(raw) / 1000.0
        return self.default_timeout_seconds
