from __future__ import annotations

import asyncio
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from functools import lru_cache
import json
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from registry_discovery.core.config import get_settings
from registry_discovery.core.urls import repository_name, slugify
from registry_discovery.services.models import (
    CANDIDATE_STATUSES,
    RULE_KINDS,
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
from registry_discovery.services.schema import DEFAULT_RULES, apply_schema


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates uniqueness or state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


RULE_MUTABLE_FIELDS = ("name", "kind", "enabled", "required", "criteria", "weight")
STALE_PROCESSING_ERROR = "stale processing claim"
CANDIDATE_COLUMNS = """
  id::text as id,
  repository_url,
  repository_full_name,
  source_type,
  priority,
  status,
  attempt_count,
  max_attempts,
  last_error,
  metadata,
  created_at,
  processed_at,
  next_retry_at,
  claimed_by,
  claimed_at,
  sources
"""
RULE_COLUMNS = """
  id::text as id,
  name,
  kind,
  enabled,
  required,
  criteria,
  weight,
  created_at,
  updated_at
"""
SUBMISSION_COLUMNS = """
  id::text as id,
  repository_url,
  candidate_id::text as candidate_id,
  submitter_name,
  submitter_email,
  submitter_github,
  description,
  suggested_category,
  suggested_tags,
  status,
  registry_entry_id::text as registry_entry_id,
  created_at,
  updated_at
"""


def require_processing(candidate: CandidateEntry, *, worker_id: str | None) -> None:
    if candidate.status != "processing":
        raise RepositoryConflictError("candidate is not in processing state")
    if worker_id is not None and candidate.claimed_by != worker_id:
        raise RepositoryConflictError(f"candidate is claimed by {candidate.claimed_by}, not {worker_id}")


def require_open(candidate: CandidateEntry, *, worker_id: str | None) -> None:
    """A claim token pins the row to its claimant; without one any non-terminal row may move."""
    if worker_id is not None:
        require_processing(candidate, worker_id=worker_id)
        return
    if not _is_open(candidate.status, candidate.attempt_count, candidate.max_attempts):
        raise RepositoryConflictError("candidate is in a terminal state")


def source_sighting(source_type: str, metadata: dict[str, Any], discovered_at: datetime) -> dict[str, Any]:
    return {"source_type": source_type, "metadata": dict(metadata), "discovered_at": discovered_at.isoformat()}


def merge_sources(sources: list[dict[str, Any]], sighting: dict[str, Any]) -> tuple[list[dict[str, Any]], bool]:
    if any(source.get("source_type") == sighting["source_type"] for source in sources):
        return list(sources), False
    return [*sources, sighting], True


def contributing_sources(candidate: CandidateEntry) -> list[dict[str, Any]]:
    if candidate.sources:
        return candidate.sources
    return [source_sighting(candidate.source_type, candidate.metadata, candidate.created_at)]


def sighting_time(source: dict[str, Any], fallback: datetime) -> datetime:
    value = source.get("discovered_at")
    if isinstance(value, datetime):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value)
        except ValueError:
            return fallback
    return fallback


def submission_status_for(candidate: CandidateEntry) -> str:
    """Status a new submission starts in when its URL was already settled by the pipeline."""
    if candidate.status == "completed":
        return "duplicate"
    if candidate.status == "skipped":
        return "rejected"
    if candidate.status == "failed" and candidate.attempt_count >= candidate.max_attempts:
        return "rejected"
    return "pending"


def compute_retry_delay_seconds(*, attempt: int, base_seconds: int, max_seconds: int) -> int:
    if base_seconds <= 0:
        return 0
    multiplier = max(0, attempt - 1)
    delay = base_seconds * (2**multiplier)
    return min(delay, max_seconds)


def validate_rule_fields(fields: dict[str, Any], *, partial: bool) -> dict[str, Any]:
    unknown = sorted(set(fields) - set(RULE_MUTABLE_FIELDS))
    if unknown:
        raise RepositoryValidationError(f"unsupported rule fields: {', '.join(unknown)}")
    if not partial:
        missing = [key for key in ("name", "kind") if key not in fields]
        if missing:
            raise RepositoryValidationError(f"missing rule fields: {', '.join(missing)}")

    normalized: dict[str, Any] = {}
    if "name" in fields:
        name = fields["name"]
        if not isinstance(name, str) or not name.strip():
            raise RepositoryValidationError("rule name must be a non-empty string")
        normalized["name"] = name.strip()
    if "kind" in fields:
        if fields["kind"] not in RULE_KINDS:
            raise RepositoryValidationError(f"unsupported rule kind: {fields['kind']}")
        normalized["kind"] = fields["kind"]
    for flag in ("enabled", "required"):
        if flag in fields:
            if not isinstance(fields[flag], bool):
                raise RepositoryValidationError(f"rule {flag} must be a boolean")
            normalized[flag] = fields[flag]
    if "criteria" in fields:
        criteria = fields["criteria"]
        if criteria is None:
            criteria = {}
        if not isinstance(criteria, dict):
            raise RepositoryValidationError("rule criteria must be a JSON object")
        normalized["criteria"] = criteria
    if "weight" in fields:
        weight = fields["weight"]
        if isinstance(weight, bool) or not isinstance(weight, int) or weight <= 0:
            raise RepositoryValidationError("rule weight must be a positive integer")
        normalized["weight"] = weight

    if not partial:
        normalized.setdefault("enabled", True)
        normalized.setdefault("required", True)
        normalized.setdefault("criteria", {})
        normalized.setdefault("weight", 1)
    return normalized


def day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        queue_max_attempts: int,
        queue_retry_base_seconds: int,
        queue_retry_max_seconds: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.queue_max_attempts = max(1, queue_max_attempts)
        self.queue_retry_base_seconds = max(0, queue_retry_base_seconds)
        self.queue_retry_max_seconds = max(0, queue_retry_max_seconds)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def ensure_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await apply_schema(conn)

    async def enqueue_candidate(
        self,
        *,
        repository_url: str,
        repository_full_name: str,
        source_type: str,
        priority: int,
        metadata: dict[str, Any],
    ) -> str:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                candidate = await self._upsert_candidate(
                    conn=conn,
                    repository_url=repository_url,
                    repository_full_name=repository_full_name,
                    source_type=source_type,
                    priority=priority,
                    metadata=metadata,
                )
        return candidate.id

    async def _upsert_candidate(
        self,
        *,
        conn: asyncpg.Connection,
        repository_url: str,
        repository_full_name: str,
        source_type: str,
        priority: int,
        metadata: dict[str, Any],
    ) -> CandidateEntry:
        sighting = source_sighting(source_type, metadata, datetime.now(timezone.utc))
        inserted = await conn.fetchrow(
            f"""
            insert into discovery_queue (
              repository_url,
              repository_full_name,
              source_type,
              priority,
              metadata,
              max_attempts,
              sources
            )
            values ($1, $2, $3, $4, $5::jsonb, $6, $7::jsonb)
            on conflict (repository_url) do nothing
            returning {CANDIDATE_COLUMNS}
            """,
            repository_url,
            repository_full_name,
            source_type,
            priority,
            json.dumps(metadata),
            self.queue_max_attempts,
            json.dumps([sighting], default=str),
        )
        if inserted is not None:
            return self._candidate_row_to_entry(inserted)

        current = await self._lock_candidate(conn=conn, repository_url=repository_url)
        sources, new_source = merge_sources(current.sources, sighting)
        row = await conn.fetchrow(
            f"""
            update discovery_queue
            set
              priority = greatest(priority, $2),
              metadata = metadata || $3::jsonb,
              sources = $4::jsonb
            where id = $1::uuid
            returning {CANDIDATE_COLUMNS}
            """,
            current.id,
            priority,
            json.dumps(metadata),
            json.dumps(sources, default=str),
        )
        candidate = self._candidate_row_to_entry(row)
        if new_source and candidate.status == "completed":
            entry_id = await conn.fetchval(
                "select id::text from registry_entries where repository_url = $1",
                candidate.repository_url,
            )
            if entry_id is not None:
                await self._insert_provenance(
                    conn=conn,
                    registry_entry_id=entry_id,
                    candidate=candidate,
                    source=sighting,
                    discovered_by=None,
                )
        return candidate

    async def claim_next_candidate(self, *, worker_id: str) -> CandidateEntry | None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    with next_candidate as (
                      select id
                      from discovery_queue
                      where status = 'pending'
                         or (
                           status = 'failed'
                           and attempt_count < max_attempts
                           and next_retry_at is not null
                           and next_retry_at <= now()
                         )
                      order by priority desc, created_at asc
                      limit 1
                      for update skip locked
                    )
                    update discovery_queue q
                    set
                      status = 'processing',
                      claimed_by = $1,
                      claimed_at = now()
                    from next_candidate n
                    where q.id = n.id
                    returning {_qualified(CANDIDATE_COLUMNS, "q")}
                    """,
                    worker_id,
                )
        if row is None:
            return None
        return self._candidate_row_to_entry(row)

    async def mark_candidate_completed(self, candidate_id: str, *, worker_id: str | None = None) -> CandidateEntry:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await self._lock_candidate(conn=conn, candidate_id=candidate_id)
                    require_open(current, worker_id=worker_id)
                    return await self._complete_candidate(conn=conn, candidate_id=candidate_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("candidate not found") from exc

    async def _complete_candidate(self, *, conn: asyncpg.Connection, candidate_id: str) -> CandidateEntry:
        row = await conn.fetchrow(
            f"""
            update discovery_queue
            set
              status = 'completed',
              processed_at = now(),
              next_retry_at = null,
              claimed_by = null,
              claimed_at = null
            where id = $1::uuid
            returning {CANDIDATE_COLUMNS}
            """,
            candidate_id,
        )
        return self._candidate_row_to_entry(row)

    async def mark_candidate_failed(
        self,
        candidate_id: str,
        *,
        error: str,
        worker_id: str | None = None,
    ) -> CandidateEntry:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await self._lock_candidate(conn=conn, candidate_id=candidate_id)
                    require_open(current, worker_id=worker_id)

                    attempt = current.attempt_count + 1
                    next_retry_at: datetime | None = None
                    if attempt < current.max_attempts:
                        delay = compute_retry_delay_seconds(
                            attempt=attempt,
                            base_seconds=self.queue_retry_base_seconds,
                            max_seconds=self.queue_retry_max_seconds,
                        )
                        next_retry_at = datetime.now(timezone.utc) + timedelta(seconds=delay)

                    row = await conn.fetchrow(
                        f"""
                        update discovery_queue
                        set
                          status = 'failed',
                          attempt_count = $2,
                          last_error = $3,
                          next_retry_at = $4::timestamptz,
                          processed_at = now(),
                          claimed_by = null,
                          claimed_at = null
                        where id = $1::uuid
                        returning {CANDIDATE_COLUMNS}
                        """,
                        candidate_id,
                        attempt,
                        error,
                        next_retry_at,
                    )
                    if next_retry_at is None:
                        await self._settle_submissions(conn=conn, candidate_ids=[candidate_id], status="rejected")
                    return self._candidate_row_to_entry(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("candidate not found") from exc

    async def mark_candidate_skipped(
        self,
        candidate_id: str,
        *,
        reason: str,
        worker_id: str | None = None,
    ) -> CandidateEntry:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    current = await self._lock_candidate(conn=conn, candidate_id=candidate_id)
                    require_open(current, worker_id=worker_id)
                    skipped = await self._skip_candidate(conn=conn, candidate_id=candidate_id, reason=reason)
                    await self._settle_submissions(conn=conn, candidate_ids=[candidate_id], status="rejected")
                    return skipped
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("candidate not found") from exc

    async def _skip_candidate(self, *, conn: asyncpg.Connection, candidate_id: str, reason: str) -> CandidateEntry:
        row = await conn.fetchrow(
            f"""
            update discovery_queue
            set
              status = 'skipped',
              last_error = $2,
              processed_at = now(),
              next_retry_at = null,
              claimed_by = null,
              claimed_at = null
            where id = $1::uuid
            returning {CANDIDATE_COLUMNS}
            """,
            candidate_id,
            reason,
        )
        return self._candidate_row_to_entry(row)

    async def requeue_stale_candidates(self, *, threshold_seconds: float, limit: int) -> int:
        pool = await self._get_pool()
        bounded_limit = max(1, min(limit, 1000))

        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with stale as (
                      select id
                      from discovery_queue
                      where status = 'processing'
                        and claimed_at is not null
                        and claimed_at <= now() - ($1::double precision * interval '1 second')
                      order by claimed_at asc
                      limit $2
                      for update skip locked
                    )
                    update discovery_queue q
                    set
                      status = 'failed',
                      attempt_count = q.attempt_count + 1,
                      last_error = $3,
                      processed_at = now(),
                      next_retry_at = case when q.attempt_count + 1 < q.max_attempts then now() else null end,
                      claimed_by = null,
                      claimed_at = null
                    from stale s
                    where q.id = s.id
                    returning q.id::text as id, q.next_retry_at
                    """,
                    float(threshold_seconds),
                    bounded_limit,
                    STALE_PROCESSING_ERROR,
                )
                exhausted = [row["id"] for row in rows if row["next_retry_at"] is None]
                if exhausted:
                    await self._settle_submissions(conn=conn, candidate_ids=exhausted, status="rejected")
                return len(rows)

    async def get_candidate(self, candidate_id: str) -> CandidateEntry:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {CANDIDATE_COLUMNS} from discovery_queue where id = $1::uuid",
                candidate_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("candidate not found") from exc
        if row is None:
            raise RepositoryNotFoundError("candidate not found")
        return self._candidate_row_to_entry(row)

    async def list_candidates(self, *, status: str | None, limit: int, offset: int) -> list[CandidateEntry]:
        if status is not None and status not in CANDIDATE_STATUSES:
            raise RepositoryValidationError(f"unsupported candidate status: {status}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {CANDIDATE_COLUMNS}
            from discovery_queue
            where ($1::text is null or status = $1)
            order by priority desc, created_at asc
            limit $2 offset $3
            """,
            status,
            max(1, min(limit, 500)),
            max(0, offset),
        )
        return [self._candidate_row_to_entry(row) for row in rows]

    async def summarize_queue(self) -> dict[str, Any]:
        pool = await self._get_pool()
        status_rows = await pool.fetch("select status, count(*) as count from discovery_queue group by status")
        source_rows = await pool.fetch(
            "select source_type, count(*) as count from discovery_queue group by source_type"
        )
        by_status = {status: 0 for status in sorted(CANDIDATE_STATUSES)}
        by_status.update({row["status"]: int(row["count"]) for row in status_rows})
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "by_source": {row["source_type"]: int(row["count"]) for row in source_rows},
        }

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
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                candidate = await self._upsert_candidate(
                    conn=conn,
                    repository_url=repository_url,
                    repository_full_name=repository_full_name,
                    source_type="communitySubmission",
                    priority=priority,
                    metadata=metadata,
                )
                status = submission_status_for(candidate)
                entry_id = None
                if status == "duplicate":
                    entry_id = await conn.fetchval(
                        "select id::text from registry_entries where repository_url = $1",
                        repository_url,
                    )
                row = await conn.fetchrow(
                    f"""
                    insert into community_submissions (
                      repository_url,
                      candidate_id,
                      submitter_name,
                      submitter_email,
                      submitter_github,
                      description,
                      suggested_category,
                      suggested_tags,
                      status,
                      registry_entry_id
                    )
                    values ($1, $2::uuid, $3, $4, $5, $6, $7, $8::text[], $9, $10::uuid)
                    returning {SUBMISSION_COLUMNS}
                    """,
                    repository_url,
                    candidate.id,
                    submitter_name,
                    submitter_email,
                    submitter_github,
                    description,
                    suggested_category,
                    suggested_tags,
                    status,
                    entry_id,
                )
        return self._submission_row_to_submission(row)

    async def get_submission(self, submission_id: str) -> CommunitySubmission:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {SUBMISSION_COLUMNS} from community_submissions where id = $1::uuid",
                submission_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("submission not found") from exc
        if row is None:
            raise RepositoryNotFoundError("submission not found")
        return self._submission_row_to_submission(row)

    async def list_rules(self, *, enabled_only: bool = False) -> list[ValidationRule]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {RULE_COLUMNS}
            from validation_rules
            where ($1::boolean = false or enabled = true)
            order by name asc
            """,
            enabled_only,
        )
        return [self._rule_row_to_rule(row) for row in rows]

    async def get_rule(self, rule_id: str) -> ValidationRule:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {RULE_COLUMNS} from validation_rules where id = $1::uuid", rule_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("rule not found") from exc
        if row is None:
            raise RepositoryNotFoundError("rule not found")
        return self._rule_row_to_rule(row)

    async def create_rule(self, **fields: Any) -> ValidationRule:
        normalized = validate_rule_fields(fields, partial=False)
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into validation_rules (name, kind, enabled, required, criteria, weight)
                values ($1, $2, $3, $4, $5::jsonb, $6)
                returning {RULE_COLUMNS}
                """,
                normalized["name"],
                normalized["kind"],
                normalized["enabled"],
                normalized["required"],
                json.dumps(normalized["criteria"]),
                normalized["weight"],
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"rule name already exists: {normalized['name']}") from exc
        return self._rule_row_to_rule(row)

    async def update_rule(self, rule_id: str, changes: dict[str, Any]) -> ValidationRule:
        normalized = validate_rule_fields(changes, partial=True)
        if not normalized:
            return await self.get_rule(rule_id)

        assignments: list[str] = []
        params: list[Any] = [rule_id]

        def bind(value: Any) -> str:
            params.append(value)
            return f"${len(params)}"

        for key in RULE_MUTABLE_FIELDS:
            if key not in normalized:
                continue
            if key == "criteria":
                assignments.append(f"criteria = {bind(json.dumps(normalized[key]))}::jsonb")
            else:
                assignments.append(f"{key} = {bind(normalized[key])}")

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update validation_rules
                set {", ".join(assignments)}, updated_at = now()
                where id = $1::uuid
                returning {RULE_COLUMNS}
                """,
                *params,
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError(f"rule name already exists: {normalized.get('name')}") from exc
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("rule not found") from exc
        if row is None:
            raise RepositoryNotFoundError("rule not found")
        return self._rule_row_to_rule(row)

    async def delete_rule(self, rule_id: str) -> None:
        pool = await self._get_pool()
        try:
            deleted = await pool.fetchval(
                "delete from validation_rules where id = $1::uuid returning id::text",
                rule_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("rule not found") from exc
        if deleted is None:
            raise RepositoryNotFoundError("rule not found")

    async def seed_default_rules(self) -> int:
        pool = await self._get_pool()
        inserted = 0
        async with pool.acquire() as conn:
            async with conn.transaction():
                for rule in DEFAULT_RULES:
                    row = await conn.fetchrow(
                        """
                        insert into validation_rules (name, kind, enabled, required, criteria, weight)
                        values ($1, $2, true, $3, $4::jsonb, $5)
                        on conflict (name) do nothing
                        returning id
                        """,
                        rule["name"],
                        rule["kind"],
                        rule["required"],
                        json.dumps(rule["criteria"]),
                        rule["weight"],
                    )
                    if row is not None:
                        inserted += 1
        return inserted

    async def append_validation_results(self, results: list[ValidationResult]) -> None:
        if not results:
            return
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                await conn.executemany(
                    """
                    insert into validation_results (
                      candidate_id,
                      run_id,
                      rule_id,
                      rule_name,
                      kind,
                      passed,
                      score,
                      details,
                      error_message,
                      duration_ms,
                      validated_at
                    )
                    values ($1::uuid, $2::uuid, $3::uuid, $4, $5, $6, $7, $8::jsonb, $9, $10, $11)
                    """,
                    [
                        (
                            result.candidate_id,
                            result.run_id,
                            result.rule_id,
                            result.rule_name,
                            result.kind,
                            result.passed,
                            result.score,
                            json.dumps(result.details, default=str),
                            result.error_message,
                            result.duration_ms,
                            result.validated_at,
                        )
                        for result in results
                    ],
                )

    async def list_validation_results(self, candidate_id: str) -> list[ValidationResult]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              candidate_id::text as candidate_id,
              run_id::text as run_id,
              rule_id::text as rule_id,
              rule_name,
              kind,
              passed,
              score,
              details,
              error_message,
              duration_ms,
              validated_at
            from validation_results
            where candidate_id = $1::uuid
            order by validated_at asc, rule_name asc
            """,
            candidate_id,
        )
        return [
            ValidationResult(
                id=row["id"],
                candidate_id=row["candidate_id"],
                run_id=row["run_id"],
                rule_id=row["rule_id"],
                rule_name=row["rule_name"],
                kind=row["kind"],
                passed=row["passed"],
                score=int(row["score"]),
                details=self._coerce_json_dict(row["details"]),
                error_message=row["error_message"],
                duration_ms=int(row["duration_ms"]),
                validated_at=row["validated_at"],
            )
            for row in rows
        ]

    async def list_registry_index(self) -> list[RegistryEntry]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select id::text as id, slug, repository_url, name, verified, created_at
            from registry_entries
            order by created_at asc
            """
        )
        return [self._entry_row_to_entry(row) for row in rows]

    async def promote_candidate(
        self,
        *,
        candidate_id: str,
        relationships: list[RelationshipCandidate],
        discovered_by: str | None,
        worker_id: str | None = None,
    ) -> PromotionResult:
        pool = await self._get_pool()
        with _mapped_write_errors("promotion"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    candidate = await self._lock_candidate(conn=conn, candidate_id=candidate_id)
                    require_processing(candidate, worker_id=worker_id)

                    existing = await conn.fetchrow(
                        """
                        select id::text as id, slug, repository_url, name, verified, created_at
                        from registry_entries
                        where repository_url = $1
                        """,
                        candidate.repository_url,
                    )
                    created = existing is None
                    if existing is not None:
                        entry = self._entry_row_to_entry(existing)
                    else:
                        name = repository_name(candidate.repository_url)
                        slug = await self._resolve_free_slug(conn=conn, base=slugify(name))
                        inserted = await conn.fetchrow(
                            """
                            insert into registry_entries (slug, repository_url, name, verified)
                            values ($1, $2, $3, false)
                            returning id::text as id, slug, repository_url, name, verified, created_at
                            """,
                            slug,
                            candidate.repository_url,
                            name,
                        )
                        entry = self._entry_row_to_entry(inserted)

                    for source in contributing_sources(candidate):
                        await self._insert_provenance(
                            conn=conn,
                            registry_entry_id=entry.id,
                            candidate=candidate,
                            source=source,
                            discovered_by=discovered_by,
                        )

                    records: list[RelationshipRecord] = []
                    for relationship in relationships:
                        if relationship.parent_id == entry.id:
                            continue
                        record = await self._insert_relationship(
                            conn=conn,
                            candidate_id=candidate.id,
                            registry_entry_id=entry.id,
                            relationship=relationship,
                        )
                        if record is not None:
                            records.append(record)

                    await self._settle_submissions(
                        conn=conn,
                        candidate_ids=[candidate.id],
                        status="auto_added",
                        registry_entry_id=entry.id,
                    )
                    await self._complete_candidate(conn=conn, candidate_id=candidate.id)
                    return PromotionResult(entry=entry, created=created, relationships=records)

    async def skip_duplicate_candidate(
        self,
        *,
        candidate_id: str,
        relationship: RelationshipCandidate,
        reason: str,
        worker_id: str | None = None,
    ) -> RelationshipRecord | None:
        pool = await self._get_pool()
        with _mapped_write_errors("duplicate suppression"):
            async with pool.acquire() as conn:
                async with conn.transaction():
                    candidate = await self._lock_candidate(conn=conn, candidate_id=candidate_id)
                    require_processing(candidate, worker_id=worker_id)
                    record = await self._insert_relationship(
                        conn=conn,
                        candidate_id=candidate.id,
                        registry_entry_id=None,
                        relationship=relationship,
                    )
                    await self._settle_submissions(
                        conn=conn,
                        candidate_ids=[candidate.id],
                        status="duplicate",
                        registry_entry_id=relationship.parent_id,
                    )
                    await self._skip_candidate(conn=conn, candidate_id=candidate.id, reason=reason)
                    return record

    async def list_provenance(self, registry_entry_id: str) -> list[ProvenanceRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              registry_entry_id::text as registry_entry_id,
              candidate_id::text as candidate_id,
              source_type,
              source_metadata,
              discovered_at,
              discovered_by
            from provenance_records
            where registry_entry_id = $1::uuid
            order by discovered_at asc
            """,
            registry_entry_id,
        )
        return [
            ProvenanceRecord(
                id=row["id"],
                registry_entry_id=row["registry_entry_id"],
                candidate_id=row["candidate_id"],
                source_type=row["source_type"],
                source_metadata=self._coerce_json_dict(row["source_metadata"]),
                discovered_at=row["discovered_at"],
                discovered_by=row["discovered_by"],
            )
            for row in rows
        ]

    async def list_relationships(
        self,
        *,
        candidate_id: str | None = None,
        registry_entry_id: str | None = None,
    ) -> list[RelationshipRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              candidate_id::text as candidate_id,
              registry_entry_id::text as registry_entry_id,
              parent_entry_id::text as parent_entry_id,
              relationship_type,
              confidence_score,
              metadata,
              detected_at
            from repository_relationships
            where ($1::uuid is null or candidate_id = $1::uuid)
              and ($2::uuid is null or registry_entry_id = $2::uuid)
            order by detected_at asc
            """,
            candidate_id,
            registry_entry_id,
        )
        return [self._relationship_row_to_record(row) for row in rows]

    async def fetch_daily_counters(self, day: date) -> DailyCounters:
        start, end = day_bounds(day)
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            discovered = await conn.fetchval(
                "select count(*) from discovery_queue where created_at >= $1 and created_at < $2",
                start,
                end,
            )
            validated = await conn.fetchval(
                """
                select count(distinct candidate_id)
                from validation_results
                where validated_at >= $1 and validated_at < $2
                """,
                start,
                end,
            )
            added = await conn.fetchval(
                "select count(*) from registry_entries where created_at >= $1 and created_at < $2",
                start,
                end,
            )
            rejected = await conn.fetchval(
                """
                select count(*)
                from discovery_queue
                where processed_at >= $1 and processed_at < $2
                  and (status = 'skipped' or (status = 'failed' and attempt_count >= max_attempts))
                """,
                start,
                end,
            )
            runs = await conn.fetchrow(
                """
                select count(*) as runs, coalesce(sum(total_ms), 0) as total_ms
                from (
                  select run_id, sum(duration_ms) as total_ms
                  from validation_results
                  where validated_at >= $1 and validated_at < $2
                  group by run_id
                ) per_run
                """,
                start,
                end,
            )
            sources = await conn.fetch(
                """
                select source_type, count(*) as count
                from discovery_queue
                where created_at >= $1 and created_at < $2
                group by source_type
                """,
                start,
                end,
            )
        return DailyCounters(
            day=day,
            discovered=int(discovered or 0),
            validated=int(validated or 0),
            added=int(added or 0),
            rejected=int(rejected or 0),
            validation_runs=int(runs["runs"] or 0),
            validation_duration_ms_total=int(runs["total_ms"] or 0),
            source_breakdown={row["source_type"]: int(row["count"]) for row in sources},
        )

    async def upsert_daily_stats(self, stats: DailyStats) -> DailyStats:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            insert into daily_stats (
              date,
              discovered,
              validated,
              added,
              rejected,
              pass_rate,
              avg_validation_latency_ms,
              source_breakdown,
              updated_at
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, now())
            on conflict (date) do update
            set
              discovered = excluded.discovered,
              validated = excluded.validated,
              added = excluded.added,
              rejected = excluded.rejected,
              pass_rate = excluded.pass_rate,
              avg_validation_latency_ms = excluded.avg_validation_latency_ms,
              source_breakdown = excluded.source_breakdown,
              updated_at = now()
            returning *
            """,
            stats.date,
            stats.discovered,
            stats.validated,
            stats.added,
            stats.rejected,
            stats.pass_rate,
            stats.avg_validation_latency_ms,
            json.dumps(stats.source_breakdown),
        )
        return self._stats_row_to_stats(row)

    async def get_daily_stats(self, day: date) -> DailyStats:
        pool = await self._get_pool()
        row = await pool.fetchrow("select * from daily_stats where date = $1", day)
        if row is None:
            raise RepositoryNotFoundError("daily stats not found")
        return self._stats_row_to_stats(row)

    async def _lock_candidate(
        self,
        *,
        conn: asyncpg.Connection,
        candidate_id: str | None = None,
        repository_url: str | None = None,
    ) -> CandidateEntry:
        if candidate_id is not None:
            where, key = "id = $1::uuid", candidate_id
        else:
            where, key = "repository_url = $1", repository_url
        row = await conn.fetchrow(f"select {CANDIDATE_COLUMNS} from discovery_queue where {where} for update", key)
        if row is None:
            raise RepositoryNotFoundError("candidate not found")
        return self._candidate_row_to_entry(row)

    async def _insert_provenance(
        self,
        *,
        conn: asyncpg.Connection,
        registry_entry_id: str,
        candidate: CandidateEntry,
        source: dict[str, Any],
        discovered_by: str | None,
    ) -> None:
        await conn.execute(
            """
            insert into provenance_records (
              registry_entry_id,
              candidate_id,
              source_type,
              source_metadata,
              discovered_at,
              discovered_by
            )
            values ($1::uuid, $2::uuid, $3, $4::jsonb, $5, $6)
            """,
            registry_entry_id,
            candidate.id,
            source.get("source_type") or candidate.source_type,
            json.dumps(source.get("metadata") or {}, default=str),
            sighting_time(source, candidate.created_at),
            discovered_by,
        )

    async def _settle_submissions(
        self,
        *,
        conn: asyncpg.Connection,
        candidate_ids: list[str],
        status: str,
        registry_entry_id: str | None = None,
    ) -> None:
        await conn.execute(
            """
            update community_submissions
            set status = $2, registry_entry_id = $3::uuid, updated_at = now()
            where candidate_id = any($1::uuid[]) and status = 'pending'
            """,
            candidate_ids,
            status,
            registry_entry_id,
        )

    async def _resolve_free_slug(self, *, conn: asyncpg.Connection, base: str) -> str:
        rows = await conn.fetch(
            "select slug from registry_entries where slug = $1 or slug like $2",
            base,
            f"{base}-%",
        )
        taken = {row["slug"] for row in rows}
        return next_free_slug(base, taken)

    async def _insert_relationship(
        self,
        *,
        conn: asyncpg.Connection,
        candidate_id: str,
        registry_entry_id: str | None,
        relationship: RelationshipCandidate,
    ) -> RelationshipRecord | None:
        row = await conn.fetchrow(
            """
            insert into repository_relationships (
              candidate_id,
              registry_entry_id,
              parent_entry_id,
              relationship_type,
              confidence_score,
              metadata
            )
            values ($1::uuid, $2::uuid, $3::uuid, $4, $5, $6::jsonb)
            on conflict do nothing
            returning
              id::text as id,
              candidate_id::text as candidate_id,
              registry_entry_id::text as registry_entry_id,
              parent_entry_id::text as parent_entry_id,
              relationship_type,
              confidence_score,
              metadata,
              detected_at
            """,
            candidate_id,
            registry_entry_id,
            relationship.parent_id,
            relationship.type,
            round(relationship.confidence, 2),
            json.dumps(relationship.metadata, default=str),
        )
        if row is None:
            return None
        return self._relationship_row_to_record(row)

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("RD_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise RepositoryUnavailableError("database unavailable") from exc

    @classmethod
    def _candidate_row_to_entry(cls, row: asyncpg.Record) -> CandidateEntry:
        return CandidateEntry(
            id=row["id"],
            repository_url=row["repository_url"],
            repository_full_name=row["repository_full_name"] or "",
            source_type=row["source_type"],
            priority=int(row["priority"]),
            status=row["status"],
            attempt_count=int(row["attempt_count"]),
            max_attempts=int(row["max_attempts"]),
            last_error=row["last_error"],
            metadata=cls._coerce_json_dict(row["metadata"]),
            created_at=row["created_at"],
            processed_at=row["processed_at"],
            next_retry_at=row["next_retry_at"],
            claimed_by=row["claimed_by"],
            claimed_at=row["claimed_at"],
            sources=cls._coerce_json_list(row["sources"]),
        )

    @staticmethod
    def _submission_row_to_submission(row: asyncpg.Record) -> CommunitySubmission:
        return CommunitySubmission(
            id=row["id"],
            repository_url=row["repository_url"],
            candidate_id=row["candidate_id"],
            submitter_name=row["submitter_name"],
            submitter_email=row["submitter_email"],
            submitter_github=row["submitter_github"],
            description=row["description"],
            suggested_category=row["suggested_category"],
            suggested_tags=list(row["suggested_tags"] or []),
            created_at=row["created_at"],
            status=row["status"],
            registry_entry_id=row["registry_entry_id"],
            updated_at=row["updated_at"],
        )

    @classmethod
    def _rule_row_to_rule(cls, row: asyncpg.Record) -> ValidationRule:
        return ValidationRule(
            id=row["id"],
            name=row["name"],
            kind=row["kind"],
            enabled=row["enabled"],
            required=row["required"],
            criteria=cls._coerce_json_dict(row["criteria"]),
            weight=int(row["weight"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _entry_row_to_entry(row: asyncpg.Record) -> RegistryEntry:
        return RegistryEntry(
            id=row["id"],
            slug=row["slug"],
            repository_url=row["repository_url"],
            name=row["name"],
            verified=row["verified"],
            created_at=row["created_at"],
        )

    @classmethod
    def _relationship_row_to_record(cls, row: asyncpg.Record) -> RelationshipRecord:
        return RelationshipRecord(
            id=row["id"],
            candidate_id=row["candidate_id"],
            registry_entry_id=row["registry_entry_id"],
            parent_entry_id=row["parent_entry_id"],
            relationship_type=row["relationship_type"],
            confidence_score=float(row["confidence_score"]),
            metadata=cls._coerce_json_dict(row["metadata"]),
            detected_at=row["detected_at"],
        )

    @classmethod
    def _stats_row_to_stats(cls, row: asyncpg.Record) -> DailyStats:
        breakdown = cls._coerce_json_dict(row["source_breakdown"])
        return DailyStats(
            date=row["date"],
            discovered=int(row["discovered"]),
            validated=int(row["validated"]),
            added=int(row["added"]),
            rejected=int(row["rejected"]),
            pass_rate=float(row["pass_rate"]) if row["pass_rate"] is not None else None,
            avg_validation_latency_ms=row["avg_validation_latency_ms"],
            source_breakdown={str(key): int(value) for key, value in breakdown.items()},
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _coerce_json_dict(value: Any) -> dict[str, Any]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return {}
        if isinstance(value, dict):
            return value
        return {}

    @staticmethod
    def _coerce_json_list(value: Any) -> list[dict[str, Any]]:
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return []
        if isinstance(value, list):
            return [item for item in value if isinstance(item, dict)]
        return []


def next_free_slug(base: str, taken: set[str]) -> str:
    if base not in taken:
        return base
    suffix = 2
    while f"{base}-{suffix}" in taken:
        suffix += 1
    return f"{base}-{suffix}"


@contextmanager
def _mapped_write_errors(operation: str) -> Iterator[None]:
    """Translate driver failures inside a write transaction into repository errors."""
    try:
        yield
    except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
        raise RepositoryNotFoundError("candidate not found") from exc
    except (pg_exc.IntegrityConstraintViolationError, pg_exc.TransactionRollbackError) as exc:
        raise RepositoryConflictError(f"{operation} rejected by database: {exc}") from exc
    except (asyncio.TimeoutError, OSError, asyncpg.InterfaceError, asyncpg.PostgresError) as exc:
        raise RepositoryUnavailableError(f"database unavailable during {operation}") from exc


def _is_open(status: str, attempt_count: int, max_attempts: int) -> bool:
    if status in {"pending", "processing"}:
        return True
    return status == "failed" and attempt_count < max_attempts


def _qualified(columns: str, alias: str) -> str:
    qualified: list[str] = []
    for line in columns.strip().splitlines():
        column = line.strip().rstrip(",")
        if not column:
            continue
        qualified.append(f"{alias}.{column}")
    return ",\n  ".join(qualified)


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        queue_max_attempts=settings.queue_max_attempts,
        queue_retry_base_seconds=settings.queue_retry_base_seconds,
        queue_retry_max_seconds=settings.queue_retry_max_seconds,
    )
