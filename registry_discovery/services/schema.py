from __future__ import annotations

import json
from typing import Any

import asyncpg  # type: ignore[import-untyped]

SCHEMA_SQL = """
create table if not exists discovery_queue (
  id uuid primary key default gen_random_uuid(),
  repository_url text not null unique,
  repository_full_name text,
  source_type text not null check (
    source_type in ('automatedSearch', 'communitySubmission', 'curatedList', 'webhook', 'manual')
  ),
  priority integer not null default 5 check (priority between 1 and 10),
  status text not null default 'pending' check (
    status in ('pending', 'processing', 'failed', 'completed', 'skipped')
  ),
  attempt_count integer not null default 0,
  max_attempts integer not null default 3 check (max_attempts >= 1),
  last_error text,
  metadata jsonb not null default '{}'::jsonb,
  created_at timestamptz not null default now(),
  processed_at timestamptz,
  next_retry_at timestamptz,
  claimed_by text,
  claimed_at timestamptz,
  sources jsonb not null default '[]'::jsonb
);

create index if not exists idx_discovery_queue_pending
  on discovery_queue (priority desc, created_at asc)
  where status = 'pending';
create index if not exists idx_discovery_queue_retry
  on discovery_queue (next_retry_at)
  where status = 'failed' and attempt_count < max_attempts;
create index if not exists idx_discovery_queue_processing
  on discovery_queue (claimed_at)
  where status = 'processing';
create index if not exists idx_discovery_queue_source
  on discovery_queue (source_type, created_at desc);

create table if not exists validation_rules (
  id uuid primary key default gen_random_uuid(),
  name text not null unique,
  kind text not null check (kind in ('fileStructure', 'dependency', 'installTest', 'functionalTest')),
  enabled boolean not null default true,
  required boolean not null default true,
  criteria jsonb not null default '{}'::jsonb,
  weight integer not null default 1 check (weight > 0),
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create table if not exists validation_results (
  id uuid primary key default gen_random_uuid(),
  candidate_id uuid not null references discovery_queue(id),
  run_id uuid not null,
  rule_id uuid,
  rule_name text not null,
  kind text not null,
  passed boolean not null,
  score integer not null check (score between 0 and 100),
  details jsonb not null default '{}'::jsonb,
  error_message text,
  duration_ms integer not null default 0,
  validated_at timestamptz not null default now()
);

create index if not exists idx_validation_results_candidate
  on validation_results (candidate_id, validated_at desc);
create index if not exists idx_validation_results_validated_at
  on validation_results (validated_at);

create table if not exists registry_entries (
  id uuid primary key default gen_random_uuid(),
  slug text not null unique,
  repository_url text not null unique,
  name text not null,
  verified boolean not null default false,
  created_at timestamptz not null default now()
);

create table if not exists provenance_records (
  id uuid primary key default gen_random_uuid(),
  registry_entry_id uuid not null references registry_entries(id),
  candidate_id uuid not null references discovery_queue(id),
  source_type text not null,
  source_metadata jsonb not null default '{}'::jsonb,
  discovered_at timestamptz not null,
  discovered_by text
);

create index if not exists idx_provenance_records_entry
  on provenance_records (registry_entry_id);

create table if not exists repository_relationships (
  id uuid primary key default gen_random_uuid(),
  candidate_id uuid not null references discovery_queue(id),
  registry_entry_id uuid references registry_entries(id),
  parent_entry_id uuid references registry_entries(id),
  relationship_type text not null check (relationship_type in ('fork', 'duplicate', 'template', 'related')),
  confidence_score numeric(3, 2) not null check (confidence_score between 0 and 1),
  metadata jsonb not null default '{}'::jsonb,
  detected_at timestamptz not null default now()
);

create unique index if not exists uq_repository_relationships_entry
  on repository_relationships (registry_entry_id, parent_entry_id, relationship_type)
  nulls not distinct
  where registry_entry_id is not null;
create unique index if not exists uq_repository_relationships_candidate
  on repository_relationships (candidate_id, parent_entry_id, relationship_type)
  nulls not distinct
  where registry_entry_id is null;
create index if not exists idx_repository_relationships_parent
  on repository_relationships (parent_entry_id);

create table if not exists community_submissions (
  id uuid primary key default gen_random_uuid(),
  repository_url text not null,
  candidate_id uuid not null references discovery_queue(id),
  submitter_name text,
  submitter_email text,
  submitter_github text,
  description text,
  suggested_category text,
  suggested_tags text[] not null default '{}',
  status text not null default 'pending' check (status in ('pending', 'auto_added', 'duplicate', 'rejected')),
  registry_entry_id uuid references registry_entries(id),
  created_at timestamptz not null default now(),
  updated_at timestamptz not null default now()
);

create index if not exists idx_community_submissions_candidate
  on community_submissions (candidate_id)
  where status = 'pending';

create table if not exists daily_stats (
  date date primary key,
  discovered integer not null default 0,
  validated integer not null default 0,
  added integer not null default 0,
  rejected integer not null default 0,
  pass_rate numeric(5, 2),
  avg_validation_latency_ms integer,
  source_breakdown jsonb not null default '{}'::jsonb,
  updated_at timestamptz not null default now()
);
"""

DEFAULT_RULES: list[dict[str, Any]] = [
    {
        "name": "has_package_json",
        "kind": "fileStructure",
        "required": True,
        "criteria": {"files": ["package.json"]},
        "weight": 10,
    },
    {
        "name": "has_mcp_sdk",
        "kind": "dependency",
        "required": True,
        "criteria": {"package": "@modelcontextprotocol/sdk", "minVersion": "0.1.0"},
        "weight": 20,
    },
    {
        "name": "npm_install_works",
        "kind": "installTest",
        "required": True,
        "criteria": {"timeout": 60000, "allowedExitCodes": [0]},
        "weight": 15,
    },
    {
        "name": "has_readme",
        "kind": "fileStructure",
        "required": False,
        "criteria": {"files": ["README.md", "readme.md"]},
        "weight": 5,
    },
    {
        "name": "has_typescript",
        "kind": "fileStructure",
        "required": False,
        "criteria": {"files": ["tsconfig.json"]},
        "weight": 3,
    },
    {
        "name": "has_tests",
        "kind": "fileStructure",
        "required": False,
        "criteria": {"patterns": ["**/*.test.ts", "**/*.spec.ts", "test/**"]},
        "weight": 5,
    },
    {
        "name": "functional_test",
        "kind": "functionalTest",
        "required": False,
        "criteria": {"timeout": 30000},
        "weight": 10,
    },
]


async def apply_schema(conn: asyncpg.Connection) -> None:
    await conn.execute(SCHEMA_SQL)


def _quote_sql(value: str) -> str:
    escaped = value.replace("'", "''")
    return f"'{escaped}'"


def render_seed_sql() -> str:
    statements = []
    for rule in DEFAULT_RULES:
        statements.append(
            "insert into validation_rules (name, kind, enabled, required, criteria, weight)\n"
            f"values ({_quote_sql(rule['name'])}, {_quote_sql(rule['kind'])}, true, "
            f"{'true' if rule['required'] else 'false'}, "
            f"{_quote_sql(json.dumps(rule['criteria']))}::jsonb, {rule['weight']})\n"
            "on conflict (name) do nothing;"
        )
    return "\n\n".join(statements) + "\n"
