from __future__ import annotations

from datetime import date
from typing import Any, Protocol

from registry_discovery.services.models import (
    CandidateEntry,
    CommunitySubmission,
    DailyCounters,
    DailyStats,
    PromotionResult,
    RegistryEntry,
    RelationshipCandidate,
    RelationshipRecord,
    ValidationResult,
    ValidationRule,
)


class QueueStore(Protocol):
    async def enqueue_candidate(
        self,
        *,
        repository_url: str,
        repository_full_name: str,
        source_type: str,
        priority: int,
        metadata: dict[str, Any],
    ) -> str: ...

    async def claim_next_candidate(self, *, worker_id: str) -> CandidateEntry | None: ...

    async def mark_candidate_completed(self, candidate_id: str, *, worker_id: str | None = None) -> CandidateEntry: ...

    async def mark_candidate_failed(
        self,
        candidate_id: str,
        *,
        error: str,
        worker_id: str | None = None,
    ) -> CandidateEntry: ...

    async def mark_candidate_skipped(
        self,
        candidate_id: str,
        *,
        reason: str,
        worker_id: str | None = None,
    ) -> CandidateEntry: ...

    async def requeue_stale_candidates(self, *, threshold_seconds: float, limit: int) -> int: ...

    async def get_candidate(self, candidate_id: str) -> CandidateEntry: ...

    async def record_community_submission(
        self,
        *,
        repository_url: str,
        repository_full_name: str,
        priority: int,
        metadata: dict[str, Any],
        submitter_name: str | None,
        submitter_email: str | None,
        submitter_github: str | None,
        description: str | None,
        suggested_category: str | None,
        suggested_tags: list[str],
    ) -> CommunitySubmission: ...

    async def get_submission(self, submission_id: str) -> CommunitySubmission: ...


class RuleStore(Protocol):
    async def list_rules(self, *, enabled_only: bool = False) -> list[ValidationRule]: ...


class ResultStore(Protocol):
    async def append_validation_results(self, results: list[ValidationResult]) -> None: ...


class RegistryStore(Protocol):
    async def list_registry_index(self) -> list[RegistryEntry]: ...

    async def promote_candidate(
        self,
        *,
        candidate_id: str,
        relationships: list[RelationshipCandidate],
        discovered_by: str | None,
        worker_id: str | None = None,
    ) -> PromotionResult: ...

    async def skip_duplicate_candidate(
        self,
        *,
        candidate_id: str,
        relationship: RelationshipCandidate,
        reason: str,
        worker_id: str | None = None,
    ) -> RelationshipRecord | None: ...


class StatsStore(Protocol):
    async def fetch_daily_counters(self, day: date) -> DailyCounters: ...

    async def upsert_daily_stats(self, stats: DailyStats) -> DailyStats: ...
