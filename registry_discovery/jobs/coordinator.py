from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from opentelemetry import trace

from registry_discovery.services.contracts import RegistryStore
from registry_discovery.services.models import TRANSIENT_RULE_KINDS, CandidateEntry, RelationshipCandidate
from registry_discovery.services.queue import DiscoveryQueue
from registry_discovery.services.relationships import RelationshipDetector
from registry_discovery.services.repository import RepositoryError
from registry_discovery.services.validation import Evaluation, ValidationEngine

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

Decision = Literal["promoted", "rediscovered", "duplicate", "retry", "rejected", "system_failure"]


@dataclass(slots=True)
class ProcessOutcome:
    candidate_id: str
    repository_url: str
    decision: Decision
    score: int | None = None
    registry_entry_id: str | None = None
    reason: str | None = None


@dataclass(slots=True)
class BatchSummary:
    processed: int = 0
    added: int = 0
    skipped: int = 0
    failed: int = 0
    outcomes: list[ProcessOutcome] = field(default_factory=list)


class PipelineCoordinator:
    def __init__(
        self,
        *,
        queue: DiscoveryQueue,
        engine: ValidationEngine,
        detector: RelationshipDetector,
        registry: RegistryStore,
        duplicate_confidence_threshold: float = 0.9,
    ) -> None:
        self.queue = queue
        self.engine = engine
        self.detector = detector
        self.registry = registry
        self.duplicate_confidence_threshold = duplicate_confidence_threshold

    async def process_next(self, worker_id: str) -> ProcessOutcome | None:
        candidate = await self.queue.dequeue_next(worker_id)
        if candidate is None:
            return None
        return await self.process_candidate(candidate, worker_id=worker_id)

    async def process_batch(self, worker_id: str, *, limit: int = 10) -> BatchSummary:
        summary = BatchSummary()
        for _ in range(max(0, limit)):
            outcome = await self.process_next(worker_id)
            if outcome is None:
                break
            summary.processed += 1
            summary.outcomes.append(outcome)
            if outcome.decision in {"promoted", "rediscovered"}:
                summary.added += 1
            elif outcome.decision in {"duplicate", "rejected"}:
                summary.skipped += 1
            else:
                summary.failed += 1
        logger.info(
            "batch processed worker=%s processed=%s added=%s skipped=%s failed=%s",
            worker_id,
            summary.processed,
            summary.added,
            summary.skipped,
            summary.failed,
        )
        return summary

    async def process_candidate(self, candidate: CandidateEntry, *, worker_id: str) -> ProcessOutcome:
        with tracer.start_as_current_span("pipeline.process_candidate") as span:
            span.set_attribute("candidate.id", candidate.id)
            span.set_attribute("candidate.attempt_count", candidate.attempt_count)

            evaluation = await self.engine.evaluate(candidate)
            try:
                if not evaluation.passed:
                    outcome = await self._handle_failed_validation(candidate, evaluation, worker_id=worker_id)
                else:
                    outcome = await self._admit(candidate, evaluation, worker_id=worker_id)
            except RepositoryError as exc:
                logger.exception(
                    "candidate transition failed id=%s url=%s worker=%s; candidate left for staleness sweep",
                    candidate.id,
                    candidate.repository_url,
                    worker_id,
                )
                outcome = ProcessOutcome(
                    candidate_id=candidate.id,
                    repository_url=candidate.repository_url,
                    decision="system_failure",
                    score=evaluation.score,
                    reason=str(exc),
                )

            span.set_attribute("pipeline.decision", outcome.decision)
            return outcome

    async def _handle_failed_validation(
        self,
        candidate: CandidateEntry,
        evaluation: Evaluation,
        *,
        worker_id: str,
    ) -> ProcessOutcome:
        failed_names = ", ".join(result.rule_name for result in evaluation.failed_required)
        reason = f"failed required validations: {failed_names}"
        failed_kinds = {result.kind for result in evaluation.failed_required}

        # A structural failure cannot be fixed by retrying, even alongside a transient one.
        if failed_kinds <= TRANSIENT_RULE_KINDS:
            await self.queue.complete_failure(candidate.id, reason, worker_id=worker_id)
            decision: Decision = "retry"
        else:
            await self.queue.skip(candidate.id, reason, worker_id=worker_id)
            decision = "rejected"

        return ProcessOutcome(
            candidate_id=candidate.id,
            repository_url=candidate.repository_url,
            decision=decision,
            score=evaluation.score,
            reason=reason,
        )

    async def _admit(self, candidate: CandidateEntry, evaluation: Evaluation, *, worker_id: str) -> ProcessOutcome:
        index = await self.registry.list_registry_index()
        relationships = self.detector.classify(candidate, index)

        duplicate = self._strongest_duplicate(relationships)
        if duplicate is not None:
            reason = f"duplicate of {duplicate.parent_id}"
            await self.registry.skip_duplicate_candidate(
                candidate_id=candidate.id,
                relationship=duplicate,
                reason=reason,
                worker_id=worker_id,
            )
            logger.info(
                "candidate suppressed as duplicate id=%s parent=%s confidence=%.2f",
                candidate.id,
                duplicate.parent_id,
                duplicate.confidence,
            )
            return ProcessOutcome(
                candidate_id=candidate.id,
                repository_url=candidate.repository_url,
                decision="duplicate",
                score=evaluation.score,
                registry_entry_id=duplicate.parent_id,
                reason=reason,
            )

        weak_duplicates = [relationship for relationship in relationships if relationship.type == "duplicate"]
        if weak_duplicates:
            logger.info(
                "duplicate signals below threshold ignored id=%s parents=%s",
                candidate.id,
                ",".join(relationship.parent_id for relationship in weak_duplicates),
            )
        promotion = await self.registry.promote_candidate(
            candidate_id=candidate.id,
            relationships=[relationship for relationship in relationships if relationship.type != "duplicate"],
            discovered_by=worker_id,
            worker_id=worker_id,
        )

        logger.info(
            "candidate promoted id=%s entry=%s slug=%s created=%s score=%s relationships=%s",
            candidate.id,
            promotion.entry.id,
            promotion.entry.slug,
            promotion.created,
            evaluation.score,
            len(promotion.relationships),
        )
        return ProcessOutcome(
            candidate_id=candidate.id,
            repository_url=candidate.repository_url,
            decision="promoted" if promotion.created else "rediscovered",
            score=evaluation.score,
            registry_entry_id=promotion.entry.id,
        )

    def _strongest_duplicate(self, relationships: list[RelationshipCandidate]) -> RelationshipCandidate | None:
        duplicates = [
            relationship
            for relationship in relationships
            if relationship.type == "duplicate" and relationship.confidence >= self.duplicate_confidence_threshold
        ]
        if not duplicates:
            return None
        return max(duplicates, key=lambda relationship: relationship.confidence)
