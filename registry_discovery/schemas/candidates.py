from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from registry_discovery.services.models import DEFAULT_PRIORITY, MAX_PRIORITY, MIN_PRIORITY, CandidateStatus, SourceType


class CandidateEnqueueRequest(BaseModel):
    repository_url: str = Field(min_length=1)
    source_type: SourceType
    priority: int = Field(default=DEFAULT_PRIORITY, ge=MIN_PRIORITY, le=MAX_PRIORITY)
    metadata: dict[str, Any] = Field(default_factory=dict)


class CandidateEnqueueResponse(BaseModel):
    candidate_id: str
    repository_url: str


class CandidateOut(BaseModel):
    id: str
    repository_url: str
    repository_full_name: str
    source_type: str
    priority: int
    status: CandidateStatus
    attempt_count: int
    max_attempts: int
    last_error: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime
    processed_at: datetime | None = None
    next_retry_at: datetime | None = None
    claimed_by: str | None = None
    claimed_at: datetime | None = None
    sources: list[dict[str, Any]] = Field(default_factory=list)


class QueueSummaryOut(BaseModel):
    total: int
    by_status: dict[str, int] = Field(default_factory=dict)
    by_source: dict[str, int] = Field(default_factory=dict)
