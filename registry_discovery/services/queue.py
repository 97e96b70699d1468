from __future__ import annotations

import logging
from typing import Any

from registry_discovery.core.urls import normalize_repository_url, repository_full_name
from registry_discovery.services.contracts import QueueStore
from registry_discovery.services.models import (
    DEFAULT_PRIORITY,
    MAX_PRIORITY,
    MIN_PRIORITY,
    SOURCE_TYPES,
    CandidateEntry,
    CommunitySubmission,
)

logger = logging.getLogger(__name__)


class QueueValidationError(ValueError):
    """Raised when an enqueue request is malformed; nothing is stored."""


def validate_enqueue_request(
    url: str,
    source_type: str,
    priority: int,
    metadata: dict[str, Any] | None,
) -> tuple[str, dict[str, Any]]:
    try:
        normalized = normalize_repository_url(url)
    except ValueError as exc:
        raise QueueValidationError(str(exc)) from exc
    if source_type not in SOURCE_TYPES:
        raise QueueValidationError(f"unsupported source type: {source_type}")
    if isinstance(priority, bool) or not isinstance(priority, int) or not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise QueueValidationError(f"priority must be an integer between {MIN_PRIORITY} and {MAX_PRIORITY}")
    if metadata is None:
        metadata = {}
    if not isinstance(metadata, dict):
        raise QueueValidationError("metadata must be a JSON object")
    return normalized, metadata


class DiscoveryQueue:
    def __init__(self, store: QueueStore) -> None:
        self.store = store

    async def enqueue(
        self,
        url: str,
        source_type: str,
        priority: int = DEFAULT_PRIORITY,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        normalized, payload = validate_enqueue_request(url, source_type, priority, metadata)
        candidate_id = await self.store.enqueue_candidate(
            repository_url=normalized,
            repository_full_name=repository_full_name(normalized),
            source_type=source_type,
            priority=priority,
            metadata=payload,
        )
        logger.info(
            "candidate enqueued id=%s url=%s source=%s priority=%s",
            candidate_id,
            normalized,
            source_type,
            priority,
        )
        return candidate_id

    async def dequeue_next(self, worker_id: str) -> CandidateEntry | None:
        return await self.store.claim_next_candidate(worker_id=worker_id)

    async def complete_success(self, candidate_id: str, *, worker_id: str | None = None) -> CandidateEntry:
        return await self.store.mark_candidate_completed(candidate_id, worker_id=worker_id)

    async def complete_failure(self, candidate_id: str, error: str, *, worker_id: str | None = None) -> CandidateEntry:
        candidate = await self.store.mark_candidate_failed(candidate_id, error=error, worker_id=worker_id)
        if candidate.next_retry_at is None:
            logger.warning(
                "candidate retries exhausted id=%s attempts=%s error=%s",
                candidate.id,
                candidate.attempt_count,
                error,
            )
        else:
            logger.info(
                "candidate retry scheduled id=%s attempt=%s next_retry_at=%s",
                candidate.id,
                candidate.attempt_count,
                candidate.next_retry_at.isoformat(),
            )
        return candidate

    async def skip(self, candidate_id: str, reason: str, *, worker_id: str | None = None) -> CandidateEntry:
        candidate = await self.store.mark_candidate_skipped(candidate_id, reason=reason, worker_id=worker_id)
        logger.info("candidate skipped id=%s reason=%s", candidate.id, reason)
        return candidate

    async def requeue_stale(self, *, threshold_seconds: float, limit: int = 100) -> int:
        return await self.store.requeue_stale_candidates(threshold_seconds=threshold_seconds, limit=limit)

    async def submit(
        self,
        url: str,
        *,
        submitter_name: str | None = None,
        submitter_email: str | None = None,
        submitter_github: str | None = None,
        description: str | None = None,
        suggested_category: str | None = None,
        suggested_tags: list[str] | None = None,
        priority: int = DEFAULT_PRIORITY,
    ) -> CommunitySubmission:
        normalized, _ = validate_enqueue_request(url, "communitySubmission", priority, None)
        tags = [tag.strip() for tag in suggested_tags or [] if tag and tag.strip()]
        # The submitter email stays on the submission row and never reaches provenance.
        metadata = {
            key: value
            for key, value in {
                "submitter_name": submitter_name,
                "submitter_github": submitter_github,
                "description": description,
                "suggested_category": suggested_category,
                "suggested_tags": tags,
            }.items()
            if value
        }
        submission = await self.store.record_community_submission(
            repository_url=normalized,
            repository_full_name=repository_full_name(normalized),
            priority=priority,
            metadata=metadata,
            submitter_name=submitter_name,
            submitter_email=submitter_email,
            submitter_github=submitter_github,
            description=description,
            suggested_category=suggested_category,
            suggested_tags=tags,
        )
        logger.info(
            "community submission recorded id=%s candidate=%s url=%s status=%s",
            submission.id,
            submission.candidate_id,
            normalized,
            submission.status,
        )
        return submission
