from __future__ import annotations

import logging

import asyncpg  # type: ignore[import-untyped]

logger = logging.getLogger("feedsync.migrations")

MIGRATION_LOCK_KEY = 0x66656564  # "feed"

MIGRATIONS: tuple[tuple[str, str], ...] = (
    (
        "001_core_schema",
        """
        create table sources (
          id uuid primary key default gen_random_uuid(),
          kind text not null default 'feed',
          url text unique,
          title text,
          description text,
          site_url text,
          etag text,
          last_modified text,
          last_fetched_at timestamptz,
          next_fetch_at timestamptz,
          consecutive_failures integer not null default 0 check (consecutive_failures >= 0),
          last_error text,
          redirect_candidate_url text,
          redirect_seen_count integer not null default 0,
          learned_interval_seconds integer,
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now()
        );

        create table subscriptions (
          id uuid primary key default gen_random_uuid(),
          user_id text not null,
          source_id uuid not null references sources (id) on delete cascade,
          active boolean not null default true,
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now(),
          unique (user_id, source_id)
        );
        create index subscriptions_active_source_idx on subscriptions (source_id) where active;

        create table jobs (
          id uuid primary key default gen_random_uuid(),
          type text not null,
          payload jsonb not null default '{}'::jsonb,
          enabled boolean not null default true,
          next_run_at timestamptz,
          running_since timestamptz,
          last_run_at timestamptz,
          last_error text,
          consecutive_failures integer not null default 0 check (consecutive_failures >= 0),
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now()
        );
        create unique index jobs_type_source_uidx on jobs (type, (payload->>'source_id'));
        create index jobs_due_idx on jobs (next_run_at) where enabled;
        """,
    ),
    (
        "002_items_and_states",
        """
        create table items (
          id uuid primary key default gen_random_uuid(),
          source_id uuid not null references sources (id) on delete cascade,
          dedupe_key text not null,
          external_id text,
          url text,
          title text,
          author text,
          content text,
          summary text,
          published_at timestamptz,
          content_hash text not null,
          version integer not null default 1 check (version >= 1),
          first_seen_at timestamptz not null default now(),
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now(),
          unique (source_id, dedupe_key)
        );

        create table item_versions (
          id bigserial primary key,
          item_id uuid not null references items (id) on delete cascade,
          version integer not null,
          title text,
          content text,
          summary text,
          content_hash text not null,
          archived_at timestamptz not null default now(),
          unique (item_id, version)
        );

        create table user_item_states (
          user_id text not null,
          item_id uuid not null references items (id) on delete cascade,
          read boolean not null default false,
          starred boolean not null default false,
          read_changed_at timestamptz not null default now(),
          starred_changed_at timestamptz not null default now(),
          created_at timestamptz not null default now(),
          updated_at timestamptz not null default now(),
          primary key (user_id, item_id)
        );
        """,
    ),
    (
        "003_origin_rate_limits",
        """
        create table origin_rate_limits (
          origin text primary key,
          next_slot_at timestamptz not null
        );
        """,
    ),
)


async def apply_migrations(conn: asyncpg.Connection) -> list[str]:
    """Apply pending migrations in order, serialized across processes by an advisory lock."""
    await conn.execute("select pg_advisory_lock($1)", MIGRATION_LOCK_KEY)
    try:
        await conn.execute(
            """
            create table if not exists schema_migrations (
              version text primary key,
              applied_at timestamptz not null default now()
            )
            """
        )
        applied = {row["version"] for row in await conn.fetch("select version from schema_migrations")}
        newly_applied: list[str] = []
        for version, statements in MIGRATIONS:
            if version in applied:
                continue
            async with conn.transaction():
                await conn.execute(statements)
                await conn.execute("insert into schema_migrations (version) values ($1)", version)
            logger.info("migration_applied version=%s", version)
            newly_applied.append(version)
        return newly_applied
    finally:
        await conn.execute("select pg_advisory_unlock($1)", MIGRATION_LOCK_KEY)
