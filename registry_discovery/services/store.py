from __future__ import annotations

import asyncio
import copy
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import date, datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from registry_discovery.core.urls import repository_name, slugify
from registry_discovery.jobs.stale_sweep import should_requeue
from registry_discovery.services.models import (
    CANDIDATE_STATUSES,
    CandidateEntry,
    CommunitySubmission,
    DailyCounters,
    DailyStats,
    PromotionResult,
    ProvenanceRecord,
    RegistryEntry,
    RelationshipCandidate,
    RelationshipRecord,
    ValidationResult,
    ValidationRule,
)
from registry_discovery.services.repository import (
    RULE_MUTABLE_FIELDS,
    STALE_PROCESSING_ERROR,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
    compute_retry_delay_seconds,
    contributing_sources,
    day_bounds,
    merge_sources,
    next_free_slug,
    require_open,
    require_processing,
    sighting_time,
    source_sighting,
    submission_status_for,
    validate_rule_fields,
)
from registry_discovery.services.schema import DEFAULT_RULES


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryRepository:
    """Process-local implementation of the repository interface.

    A single asyncio lock serializes every mutation, which gives the claim the
    same one-winner guarantee that ``for update skip locked`` gives in Postgres.
    Multi-step writes snapshot state first and restore it on error.
    """

    def __init__(
        self,
        *,
        queue_max_attempts: int = 3,
        queue_retry_base_seconds: int = 30,
        queue_retry_max_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.queue_max_attempts = max(1, queue_max_attempts)
        self.queue_retry_base_seconds = max(0, queue_retry_base_seconds)
        self.queue_retry_max_seconds = max(0, queue_retry_max_seconds)
        self.clock = clock
        self._lock = asyncio.Lock()
        self._sequence = 0
        self.candidates: dict[str, CandidateEntry] = {}
        self.candidate_order: dict[str, int] = {}
        self.url_index: dict[str, str] = {}
        self.rules: dict[str, ValidationRule] = {}
        self.validation_results: list[ValidationResult] = []
        self.registry: dict[str, RegistryEntry] = {}
        self.provenance: list[ProvenanceRecord] = []
        self.relationships: list[RelationshipRecord] = []
        self.submissions: list[CommunitySubmission] = []
        self.daily_stats: dict[date, DailyStats] = {}

    async def close(self) -> None:
        return None

    async def ensure_schema(self) -> None:
        return None

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[None]:
        async with self._lock:
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise

    def _snapshot(self) -> dict[str, Any]:
        return {
            "sequence": self._sequence,
            "candidates": copy.deepcopy(self.candidates),
            "candidate_order": dict(self.candidate_order),
            "url_index": dict(self.url_index),
            "registry": copy.deepcopy(self.registry),
            "provenance": list(self.provenance),
            "relationships": list(self.relationships),
            "submissions": copy.deepcopy(self.submissions),
        }

    def _restore(self, snapshot: dict[str, Any]) -> None:
        self._sequence = snapshot["sequence"]
        self.candidates = snapshot["candidates"]
        self.candidate_order = snapshot["candidate_order"]
        self.url_index = snapshot["url_index"]
        self.registry = snapshot["registry"]
        self.provenance = snapshot["provenance"]
        self.relationships = snapshot["relationships"]
        self.submissions = snapshot["submissions"]

    async def enqueue_candidate(
        self,
        *,
        repository_url: str,
        repository_full_name: str,
        source_type: str,
        priority: int,
        metadata: dict[str, Any],
    ) -> str:
        async with self._transaction():
            candidate = self._upsert_candidate(
                repository_url=repository_url,
                repository_full_name=repository_full_name,
                source_type=source_type,
                priority=priority,
                metadata=metadata,
            )
            return candidate.id

    def _upsert_candidate(
        self,
        *,
        repository_url: str,
        repository_full_name: str,
        source_type: str,
        priority: int,
        metadata: dict[str, Any],
    ) -> CandidateEntry:
        now = self.clock()
        sighting = source_sighting(source_type, metadata, now)
        existing_id = self.url_index.get(repository_url)
        if existing_id is not None:
            existing = self.candidates[existing_id]
            existing.priority = max(existing.priority, priority)
            existing.metadata = {**existing.metadata, **metadata}
            existing.sources, new_source = merge_sources(existing.sources, sighting)
            if new_source and existing.status == "completed":
                entry = self._entry_for_url(existing.repository_url)
                if entry is not None:
                    self._append_provenance(entry.id, existing, sighting, discovered_by=None)
            return existing

        candidate_id = str(uuid4())
        self._sequence += 1
        candidate = CandidateEntry(
            id=candidate_id,
            repository_url=repository_url,
            repository_full_name=repository_full_name,
            source_type=source_type,
            priority=priority,
            status="pending",
            attempt_count=0,
            max_attempts=self.queue_max_attempts,
            last_error=None,
            metadata=dict(metadata),
            created_at=now,
            sources=[sighting],
        )
        self.candidates[candidate_id] = candidate
        self.candidate_order[candidate_id] = self._sequence
        self.url_index[repository_url] = candidate_id
        return candidate

    async def claim_next_candidate(self, *, worker_id: str) -> CandidateEntry | None:
        async with self._transaction():
            now = self.clock()
            eligible = [candidate for candidate in self.candidates.values() if self._is_eligible(candidate, now)]
            if not eligible:
                return None
            eligible.sort(
                key=lambda row: (-row.priority, row.created_at, self.candidate_order[row.id]),
            )
            chosen = eligible[0]
            chosen.status = "processing"
            chosen.claimed_by = worker_id
            chosen.claimed_at = now
            return copy.deepcopy(chosen)

    @staticmethod
    def _is_eligible(candidate: CandidateEntry, now: datetime) -> bool:
        if candidate.status == "pending":
            return True
        return (
            candidate.status == "failed"
            and candidate.attempt_count < candidate.max_attempts
            and candidate.next_retry_at is not None
            and candidate.next_retry_at <= now
        )

    async def mark_candidate_completed(self, candidate_id: str, *, worker_id: str | None = None) -> CandidateEntry:
        async with self._transaction():
            require_open(self._candidate(candidate_id), worker_id=worker_id)
            return self._complete_candidate(candidate_id)

    def _complete_candidate(self, candidate_id: str) -> CandidateEntry:
        candidate = self._candidate(candidate_id)
        candidate.status = "completed"
        candidate.processed_at = self.clock()
        candidate.next_retry_at = None
        candidate.claimed_by = None
        candidate.claimed_at = None
        return replace(candidate)

    async def mark_candidate_failed(
        self,
        candidate_id: str,
        *,
        error: str,
        worker_id: str | None = None,
    ) -> CandidateEntry:
        async with self._transaction():
            candidate = self._candidate(candidate_id)
            require_open(candidate, worker_id=worker_id)
            now = self.clock()
            candidate.attempt_count += 1
            candidate.status = "failed"
            candidate.last_error = error
            candidate.processed_at = now
            candidate.claimed_by = None
            candidate.claimed_at = None
            if candidate.attempt_count < candidate.max_attempts:
                delay = compute_retry_delay_seconds(
                    attempt=candidate.attempt_count,
                    base_seconds=self.queue_retry_base_seconds,
                    max_seconds=self.queue_retry_max_seconds,
                )
                candidate.next_retry_at = now + timedelta(seconds=delay)
            else:
                candidate.next_retry_at = None
                self._settle_submissions(candidate.id, "rejected")
            return replace(candidate)

    async def mark_candidate_skipped(
        self,
        candidate_id: str,
        *,
        reason: str,
        worker_id: str | None = None,
    ) -> CandidateEntry:
        async with self._transaction():
            require_open(self._candidate(candidate_id), worker_id=worker_id)
            self._settle_submissions(candidate_id, "rejected")
            return self._skip_candidate(candidate_id, reason=reason)

    def _skip_candidate(self, candidate_id: str, *, reason: str) -> CandidateEntry:
        candidate = self._candidate(candidate_id)
        candidate.status = "skipped"
        candidate.last_error = reason
        candidate.processed_at = self.clock()
        candidate.next_retry_at = None
        candidate.claimed_by = None
        candidate.claimed_at = None
        return replace(candidate)

    async def requeue_stale_candidates(self, *, threshold_seconds: float, limit: int) -> int:
        async with self._transaction():
            now = self.clock()
            stale = sorted(
                (
                    candidate
                    for candidate in self.candidates.values()
                    if should_requeue(candidate, threshold_seconds=threshold_seconds, now=now)
                ),
                key=lambda row: row.claimed_at,
            )[: max(1, min(limit, 1000))]
            for candidate in stale:
                candidate.attempt_count += 1
                candidate.status = "failed"
                candidate.last_error = STALE_PROCESSING_ERROR
                candidate.processed_at = now
                candidate.claimed_by = None
                candidate.claimed_at = None
                if candidate.attempt_count < candidate.max_attempts:
                    candidate.next_retry_at = now
                else:
                    candidate.next_retry_at = None
                    self._settle_submissions(candidate.id, "rejected")
            return len(stale)

    async def get_candidate(self, candidate_id: str) -> CandidateEntry:
        return copy.deepcopy(self._candidate(candidate_id))

    async def list_candidates(self, *, status: str | None, limit: int, offset: int) -> list[CandidateEntry]:
        if status is not None and status not in CANDIDATE_STATUSES:
            raise RepositoryValidationError(f"unsupported candidate status: {status}")
        rows = [
            candidate
            for candidate in self.candidates.values()
            if status is None or candidate.status == status
        ]
        rows.sort(key=lambda row: (-row.priority, row.created_at, self.candidate_order[row.id]))
        bounded_offset = max(0, offset)
        return [replace(row) for row in rows[bounded_offset : bounded_offset + max(1, min(limit, 500))]]

    async def summarize_queue(self) -> dict[str, Any]:
        by_status = {status: 0 for status in sorted(CANDIDATE_STATUSES)}
        by_source: dict[str, int] = {}
        for candidate in self.candidates.values():
            by_status[candidate.status] += 1
            by_source[candidate.source_type] = by_source.get(candidate.source_type, 0) + 1
        return {"total": len(self.candidates), "by_status": by_status, "by_source": by_source}

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
    ) -> CommunitySubmission:
        async with self._transaction():
            candidate = self._upsert_candidate(
                repository_url=repository_url,
                repository_full_name=repository_full_name,
                source_type="communitySubmission",
                priority=priority,
                metadata=metadata,
            )
            status = submission_status_for(candidate)
            entry = self._entry_for_url(repository_url) if status == "duplicate" else None
            now = self.clock()
            submission = CommunitySubmission(
                id=str(uuid4()),
                repository_url=repository_url,
                candidate_id=candidate.id,
                submitter_name=submitter_name,
                submitter_email=submitter_email,
                submitter_github=submitter_github,
                description=description,
                suggested_category=suggested_category,
                suggested_tags=list(suggested_tags),
                created_at=now,
                status=status,
                registry_entry_id=entry.id if entry is not None else None,
                updated_at=now,
            )
            self.submissions.append(submission)
            return replace(submission)

    async def get_submission(self, submission_id: str) -> CommunitySubmission:
        for submission in self.submissions:
            if submission.id == submission_id:
                return replace(submission, suggested_tags=list(submission.suggested_tags))
        raise RepositoryNotFoundError("submission not found")

    async def list_rules(self, *, enabled_only: bool = False) -> list[ValidationRule]:
        rules = [rule for rule in self.rules.values() if rule.enabled or not enabled_only]
        return [replace(rule) for rule in sorted(rules, key=lambda rule: rule.name)]

    async def get_rule(self, rule_id: str) -> ValidationRule:
        rule = self.rules.get(rule_id)
        if rule is None:
            raise RepositoryNotFoundError("rule not found")
        return replace(rule)

    async def create_rule(self, **fields: Any) -> ValidationRule:
        normalized = validate_rule_fields(fields, partial=False)
        async with self._lock:
            self._ensure_unique_rule_name(normalized["name"], exclude_id=None)
            now = self.clock()
            rule = ValidationRule(id=str(uuid4()), created_at=now, updated_at=now, **normalized)
            self.rules[rule.id] = rule
            return replace(rule)

    async def update_rule(self, rule_id: str, changes: dict[str, Any]) -> ValidationRule:
        normalized = validate_rule_fields(changes, partial=True)
        async with self._lock:
            rule = self.rules.get(rule_id)
            if rule is None:
                raise RepositoryNotFoundError("rule not found")
            if "name" in normalized:
                self._ensure_unique_rule_name(normalized["name"], exclude_id=rule_id)
            for key in RULE_MUTABLE_FIELDS:
                if key in normalized:
                    setattr(rule, key, normalized[key])
            if normalized:
                rule.updated_at = self.clock()
            return replace(rule)

    async def delete_rule(self, rule_id: str) -> None:
        async with self._lock:
            if self.rules.pop(rule_id, None) is None:
                raise RepositoryNotFoundError("rule not found")

    async def seed_default_rules(self) -> int:
        inserted = 0
        async with self._lock:
            names = {rule.name for rule in self.rules.values()}
            now = self.clock()
            for default in DEFAULT_RULES:
                if default["name"] in names:
                    continue
                rule = ValidationRule(
                    id=str(uuid4()),
                    name=default["name"],
                    kind=default["kind"],
                    enabled=True,
                    required=default["required"],
                    criteria=dict(default["criteria"]),
                    weight=default["weight"],
                    created_at=now,
                    updated_at=now,
                )
                self.rules[rule.id] = rule
                inserted += 1
        return inserted

    def _ensure_unique_rule_name(self, name: str, *, exclude_id: str | None) -> None:
        for rule in self.rules.values():
            if rule.name == name and rule.id != exclude_id:
                raise RepositoryConflictError(f"rule name already exists: {name}")

    async def append_validation_results(self, results: list[ValidationResult]) -> None:
        async with self._lock:
            for result in results:
                self.validation_results.append(replace(result, id=result.id or str(uuid4())))

    async def list_validation_results(self, candidate_id: str) -> list[ValidationResult]:
        return [replace(result) for result in self.validation_results if result.candidate_id == candidate_id]

    async def list_registry_index(self) -> list[RegistryEntry]:
        return [replace(entry) for entry in self.registry.values()]

    async def promote_candidate(
        self,
        *,
        candidate_id: str,
        relationships: list[RelationshipCandidate],
        discovered_by: str | None,
        worker_id: str | None = None,
    ) -> PromotionResult:
        async with self._transaction():
            candidate = self._candidate(candidate_id)
            require_processing(candidate, worker_id=worker_id)
            now = self.clock()

            entry = self._entry_for_url(candidate.repository_url)
            created = entry is None
            if entry is None:
                name = repository_name(candidate.repository_url)
                slug = next_free_slug(slugify(name), {row.slug for row in self.registry.values()})
                entry = RegistryEntry(
                    id=str(uuid4()),
                    slug=slug,
                    repository_url=candidate.repository_url,
                    name=name,
                    verified=False,
                    created_at=now,
                )
                self.registry[entry.id] = entry

            for source in contributing_sources(candidate):
                self._append_provenance(entry.id, candidate, source, discovered_by=discovered_by)

            records: list[RelationshipRecord] = []
            for relationship in relationships:
                if relationship.parent_id == entry.id:
                    continue
                record = self._insert_relationship(
                    candidate_id=candidate.id,
                    registry_entry_id=entry.id,
                    relationship=relationship,
                )
                if record is not None:
                    records.append(record)

            self._settle_submissions(candidate.id, "auto_added", registry_entry_id=entry.id)
            self._complete_candidate(candidate.id)
            return PromotionResult(entry=replace(entry), created=created, relationships=records)

    async def skip_duplicate_candidate(
        self,
        *,
        candidate_id: str,
        relationship: RelationshipCandidate,
        reason: str,
        worker_id: str | None = None,
    ) -> RelationshipRecord | None:
        async with self._transaction():
            candidate = self._candidate(candidate_id)
            require_processing(candidate, worker_id=worker_id)
            record = self._insert_relationship(
                candidate_id=candidate.id,
                registry_entry_id=None,
                relationship=relationship,
            )
            self._settle_submissions(candidate.id, "duplicate", registry_entry_id=relationship.parent_id)
            self._skip_candidate(candidate.id, reason=reason)
            return record

    async def list_provenance(self, registry_entry_id: str) -> list[ProvenanceRecord]:
        return [replace(record) for record in self.provenance if record.registry_entry_id == registry_entry_id]

    async def list_relationships(
        self,
        *,
        candidate_id: str | None = None,
        registry_entry_id: str | None = None,
    ) -> list[RelationshipRecord]:
        return [
            replace(record)
            for record in self.relationships
            if (candidate_id is None or record.candidate_id == candidate_id)
            and (registry_entry_id is None or record.registry_entry_id == registry_entry_id)
        ]

    async def fetch_daily_counters(self, day: date) -> DailyCounters:
        start, end = day_bounds(day)

        def within(value: datetime | None) -> bool:
            return value is not None and start <= value < end

        created_today = [row for row in self.candidates.values() if within(row.created_at)]
        results_today = [row for row in self.validation_results if within(row.validated_at)]
        run_totals: dict[str, int] = {}
        for result in results_today:
            run_totals[result.run_id] = run_totals.get(result.run_id, 0) + result.duration_ms
        source_breakdown: dict[str, int] = {}
        for row in created_today:
            source_breakdown[row.source_type] = source_breakdown.get(row.source_type, 0) + 1

        return DailyCounters(
            day=day,
            discovered=len(created_today),
            validated=len({row.candidate_id for row in results_today}),
            added=sum(1 for entry in self.registry.values() if within(entry.created_at)),
            rejected=sum(
                1
                for row in self.candidates.values()
                if within(row.processed_at)
                and (row.status == "skipped" or (row.status == "failed" and row.attempt_count >= row.max_attempts))
            ),
            validation_runs=len(run_totals),
            validation_duration_ms_total=sum(run_totals.values()),
            source_breakdown=source_breakdown,
        )

    async def upsert_daily_stats(self, stats: DailyStats) -> DailyStats:
        async with self._lock:
            stored = replace(stats, source_breakdown=dict(stats.source_breakdown), updated_at=self.clock())
            self.daily_stats[stats.date] = stored
            return replace(stored)

    async def get_daily_stats(self, day: date) -> DailyStats:
        stats = self.daily_stats.get(day)
        if stats is None:
            raise RepositoryNotFoundError("daily stats not found")
        return replace(stats)

    def _candidate(self, candidate_id: str) -> CandidateEntry:
        candidate = self.candidates.get(candidate_id)
        if candidate is None:
            raise RepositoryNotFoundError("candidate not found")
        return candidate

    def _entry_for_url(self, repository_url: str) -> RegistryEntry | None:
        return next((row for row in self.registry.values() if row.repository_url == repository_url), None)

    def _append_provenance(
        self,
        registry_entry_id: str,
        candidate: CandidateEntry,
        source: dict[str, Any],
        *,
        discovered_by: str | None,
    ) -> None:
        self.provenance.append(
            ProvenanceRecord(
                id=str(uuid4()),
                registry_entry_id=registry_entry_id,
                candidate_id=candidate.id,
                source_type=source.get("source_type") or candidate.source_type,
                source_metadata=dict(source.get("metadata") or {}),
                discovered_at=sighting_time(source, candidate.created_at),
                discovered_by=discovered_by,
            )
        )

    def _settle_submissions(self, candidate_id: str, status: str, *, registry_entry_id: str | None = None) -> None:
        for submission in self.submissions:
            if submission.candidate_id == candidate_id and submission.status == "pending":
                submission.status = status
                submission.registry_entry_id = registry_entry_id
                submission.updated_at = self.clock()

    def _insert_relationship(
        self,
        *,
        candidate_id: str,
        registry_entry_id: str | None,
        relationship: RelationshipCandidate,
    ) -> RelationshipRecord | None:
        if registry_entry_id is None:
            key = ("candidate", candidate_id, relationship.parent_id, relationship.type)
        else:
            key = ("entry", registry_entry_id, relationship.parent_id, relationship.type)
        for existing in self.relationships:
            if existing.registry_entry_id is None:
                existing_key = ("candidate", existing.candidate_id, existing.parent_entry_id, existing.relationship_type)
            else:
                existing_key = (
                    "entry",
                    existing.registry_entry_id,
                    existing.parent_entry_id,
                    existing.relationship_type,
                )
            if existing_key == key:
                return None
        if relationship.parent_id is not None and relationship.parent_id not in self.registry:
            raise RepositoryConflictError(f"parent registry entry not found: {relationship.parent_id}")

        record = RelationshipRecord(
            id=str(uuid4()),
            candidate_id=candidate_id,
            registry_entry_id=registry_entry_id,
            parent_entry_id=relationship.parent_id,
            relationship_type=relationship.type,
            confidence_score=round(relationship.confidence, 2),
            metadata=dict(relationship.metadata),
            detected_at=self.clock(),
        )
        self.relationships.append(record)
        return record
