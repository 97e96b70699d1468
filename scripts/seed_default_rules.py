#!/usr/bin/env python3
"""Create the pipeline schema and seed the default validation rules."""

from __future__ import annotations

import argparse
import asyncio

from registry_discovery.core.config import get_settings
from registry_discovery.services.repository import PostgresRepository
from registry_discovery.services.schema import SCHEMA_SQL, render_seed_sql


async def _seed(database_url: str | None, *, apply_schema: bool) -> int:
    settings = get_settings()
    repository = PostgresRepository(
        database_url=database_url or settings.database_url,
        min_pool_size=1,
        max_pool_size=2,
        queue_max_attempts=settings.queue_max_attempts,
        queue_retry_base_seconds=settings.queue_retry_base_seconds,
        queue_retry_max_seconds=settings.queue_retry_max_seconds,
    )
    try:
        if apply_schema:
            await repository.ensure_schema()
        return await repository.seed_default_rules()
    finally:
        await repository.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed the default validation rules (idempotent).")
    parser.add_argument("--database-url", help="Postgres DSN; defaults to RD_DATABASE_URL")
    parser.add_argument(
        "--skip-schema",
        action="store_true",
        help="Do not run the create-if-missing schema DDL before seeding",
    )
    parser.add_argument(
        "--print-sql",
        action="store_true",
        help="Print the schema and seed SQL instead of executing it",
    )
    args = parser.parse_args()

    if args.print_sql:
        if not args.skip_schema:
            print(SCHEMA_SQL.strip() + "\n")
        print(render_seed_sql(), end="")
        return

    inserted = asyncio.run(_seed(args.database_url, apply_schema=not args.skip_schema))
    print(f"seeded default rules: {inserted}")


if __name__ == "__main__":
    main()
