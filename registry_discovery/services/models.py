from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Literal

SourceType = Literal["automatedSearch", "communitySubmission", "curatedList", "webhook", "manual"]
CandidateStatus = Literal["pending", "processing", "failed", "completed", "skipped"]
RuleKind = Literal["fileStructure", "dependency", "installTest", "functionalTest"]
RelationshipType = Literal["fork", "duplicate", "template", "related"]
SubmissionStatus = Literal["pending", "auto_added", "duplicate", "rejected"]

SOURCE_TYPES: frozenset[str] = frozenset(
    {"automatedSearch", "communitySubmission", "curatedList", "webhook", "manual"}
)
CANDIDATE_STATUSES: frozenset[str] = frozenset({"pending", "processing", "failed", "completed", "skipped"})
RULE_KINDS: frozenset[str] = frozenset({"fileStructure", "dependency", "installTest", "functionalTest"})
RELATIONSHIP_TYPES: frozenset[str] = frozenset({"fork", "duplicate", "template", "related"})

# Failures of these kinds are environmental and worth retrying; the rest are structural.
TRANSIENT_RULE_KINDS: frozenset[str] = frozenset({"installTest", "functionalTest"})

MIN_PRIORITY = 1
MAX_PRIORITY = 10
DEFAULT_PRIORITY = 5


@dataclass(slots=True)
class CandidateEntry:
    id: str
    repository_url: str
    repository_full_name: str
    source_type: str
    priority: int
    status: str
    attempt_count: int
    max_attempts: int
    last_error: str | None
    metadata: dict[str, Any]
    created_at: datetime
    processed_at: datetime | None = None
    next_retry_at: datetime | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    # One entry per distinct source type that enqueued this URL, first sighting wins.
    sources: list[dict[str, Any]] = field(default_factory=list)


@dataclass(slots=True)
class ValidationRule:
    id: str
    name: str
    kind: str
    enabled: bool
    required: bool
    criteria: dict[str, Any]
    weight: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class ValidationResult:
    candidate_id: str
    run_id: str
    rule_id: str
    rule_name: str
    kind: str
    passed: bool
    score: int
    details: dict[str, Any]
    error_message: str | None
    duration_ms: int
    validated_at: datetime
    id: str | None = None


@dataclass(slots=True)
class RegistryEntry:
    id: str
    slug: str
    repository_url: str
    name: str
    verified: bool = False
    created_at: datetime | None = None


@dataclass(slots=True)
class ProvenanceRecord:
    registry_entry_id: str
    candidate_id: str
    source_type: str
    source_metadata: dict[str, Any]
    discovered_at: datetime
    discovered_by: str | None = None
    id: str | None = None


@dataclass(slots=True)
class RelationshipCandidate:
    parent_id: str
    type: str
    confidence: float
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class RelationshipRecord:
    candidate_id: str
    registry_entry_id: str | None
    parent_entry_id: str | None
    relationship_type: str
    confidence_score: float
    metadata: dict[str, Any]
    detected_at: datetime | None = None
    id: str | None = None


@dataclass(slots=True)
class CommunitySubmission:
    id: str
    repository_url: str
    candidate_id: str
    submitter_name: str | None
    submitter_email: str | None
    submitter_github: str | None
    description: str | None
    suggested_category: str | None
    suggested_tags: list[str]
    created_at: datetime
    status: str = "pending"
    registry_entry_id: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class DailyCounters:
    """Raw per-day aggregates read back from the queue, result and registry tables."""

    day: date
    discovered: int
    validated: int
    added: int
    rejected: int
    validation_runs: int
    validation_duration_ms_total: int
    source_breakdown: dict[str, int]


@dataclass(slots=True)
class PromotionResult:
    entry: RegistryEntry
    created: bool
    relationships: list[RelationshipRecord] = field(default_factory=list)


@dataclass(slots=True)
class DailyStats:
    date: date
    discovered: int
    validated: int
    added: int
    rejected: int
    pass_rate: float | None
    avg_validation_latency_ms: int | None
    source_breakdown: dict[str, int]
    updated_at: datetime | None = None
