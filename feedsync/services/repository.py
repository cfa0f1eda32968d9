from __future__ import annotations

from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
import json
import logging
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from feedsync.core.config import get_settings
from feedsync.schemas.feeds import ParsedItem
from feedsync.schemas.jobs import FETCH_SOURCE_JOB
from feedsync.schemas.states import STATE_FIELDS, ItemState
from feedsync.services.migrations import apply_migrations

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates a uniqueness or state rule."""


class RepositoryValidationError(RepositoryError):
    """Raised when input validation fails before persistence."""


@dataclass(slots=True)
class JobRecord:
    id: str
    type: str
    payload: dict[str, Any]
    enabled: bool
    next_run_at: datetime | None
    running_since: datetime | None
    last_run_at: datetime | None
    last_error: str | None
    consecutive_failures: int


@dataclass(slots=True)
class SourceRecord:
    id: str
    kind: str
    url: str | None
    title: str | None
    description: str | None
    site_url: str | None
    etag: str | None
    last_modified: str | None
    last_fetched_at: datetime | None
    next_fetch_at: datetime | None
    consecutive_failures: int
    last_error: str | None
    redirect_candidate_url: str | None
    redirect_seen_count: int
    learned_interval_seconds: int | None


@dataclass(slots=True)
class ItemRecord:
    id: str
    source_id: str
    dedupe_key: str
    external_id: str | None
    url: str | None
    title: str | None
    author: str | None
    content: str | None
    summary: str | None
    published_at: datetime | None
    content_hash: str
    version: int
    first_seen_at: datetime


@dataclass(slots=True)
class ItemVersionRecord:
    item_id: str
    version: int
    title: str | None
    content: str | None
    summary: str | None
    content_hash: str
    archived_at: datetime


@dataclass(slots=True)
class SyncResult:
    enabled: bool
    previous_enabled: bool
    next_run_at: datetime | None

    @property
    def changed(self) -> bool:
        return self.enabled != self.previous_enabled


_JOB_COLUMNS = """
  id::text as id,
  type,
  payload,
  enabled,
  next_run_at,
  running_since,
  last_run_at,
  last_error,
  consecutive_failures
"""

_SOURCE_COLUMNS = """
  id::text as id,
  kind,
  url,
  title,
  description,
  site_url,
  etag,
  last_modified,
  last_fetched_at,
  next_fetch_at,
  consecutive_failures,
  last_error,
  redirect_candidate_url,
  redirect_seen_count,
  learned_interval_seconds
"""

_ITEM_COLUMNS = """
  id::text as id,
  source_id::text as source_id,
  dedupe_key,
  external_id,
  url,
  title,
  author,
  content,
  summary,
  published_at,
  content_hash,
  version,
  first_seen_at
"""

_STATE_COLUMNS = """
  item_id::text as item_id,
  read,
  starred,
  read_changed_at,
  starred_changed_at
"""


class PostgresRepository:
    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = max(1, min_pool_size)
        self.max_pool_size = max(self.min_pool_size, max_pool_size)
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def apply_migrations(self) -> list[str]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            return await apply_migrations(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    # jobs

    async def claim_next_job(
        self,
        *,
        stale_after_seconds: int,
        job_types: Sequence[str] | None = None,
    ) -> JobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update jobs j
            set running_since = now(), updated_at = now()
            where j.id = (
              select id
              from jobs
              where enabled = true
                and next_run_at is not null
                and next_run_at <= now()
                and (
                  running_since is null
                  or running_since < now() - ($1::int * interval '1 second')
                )
                and ($2::text[] is null or type = any($2::text[]))
              order by next_run_at asc
              limit 1
              for update skip locked
            )
            returning {_JOB_COLUMNS}
            """,
            max(1, int(stale_after_seconds)),
            list(job_types) if job_types else None,
        )
        if row is None:
            return None
        return self._job_from_row(row)

    async def finish_job(
        self,
        job_id: str,
        *,
        success: bool,
        next_run_at: datetime,
        error: str | None = None,
    ) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update jobs
                set
                  running_since = null,
                  last_run_at = now(),
                  next_run_at = $2,
                  last_error = case when $3::boolean then null else $4::text end,
                  consecutive_failures = case when $3::boolean then 0 else consecutive_failures + 1 end,
                  updated_at = now()
                where id = $1::uuid
                returning {_JOB_COLUMNS}
                """,
                job_id,
                next_run_at,
                success,
                None if success else (error or "job failed"),
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_from_row(row)

    async def ensure_fetch_job(
        self,
        source_id: str,
        *,
        next_run_at: datetime | None = None,
        enable: bool = True,
        conn: asyncpg.Connection | None = None,
    ) -> JobRecord:
        """Find-or-create-and-enable the fetch job for a source in one statement.

        With ``enable=False`` a missing job is created disabled and an existing
        job keeps its flag, leaving the decision to the subscription sync.
        """
        try:
            async with self._connection(conn) as active:
                row = await active.fetchrow(
                    f"""
                    insert into jobs (type, payload, enabled, next_run_at)
                    select $1, jsonb_build_object('source_id', s.id::text), $4::boolean, coalesce($3, now())
                    from sources s
                    where s.id = $2::uuid
                    on conflict (type, (payload->>'source_id')) do update
                    set
                      enabled = jobs.enabled or $4::boolean,
                      next_run_at = coalesce(jobs.next_run_at, excluded.next_run_at),
                      updated_at = now()
                    returning {_JOB_COLUMNS}
                    """,
                    FETCH_SOURCE_JOB,
                    source_id,
                    next_run_at,
                    enable,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        if row is None:
            raise RepositoryNotFoundError("source not found")
        return self._job_from_row(row)

    async def get_job(self, job_id: str) -> JobRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_JOB_COLUMNS} from jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if row is None:
            raise RepositoryNotFoundError("job not found")
        return self._job_from_row(row)

    async def get_fetch_job(self, source_id: str) -> JobRecord | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where type = $1 and payload->>'source_id' = $2
            """,
            FETCH_SOURCE_JOB,
            source_id,
        )
        return self._job_from_row(row) if row is not None else None

    async def list_jobs(self, *, job_type: str | None = None, limit: int = 100) -> list[JobRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from jobs
            where ($1::text is null or type = $1)
            order by next_run_at asc nulls last, created_at asc
            limit $2
            """,
            job_type,
            max(1, min(limit, 1000)),
        )
        return [self._job_from_row(row) for row in rows]

    # lifecycle

    async def lock_fetch_job(self, conn: asyncpg.Connection, source_id: str) -> str | None:
        return await conn.fetchval(
            """
            select id::text
            from jobs
            where type = $1 and payload->>'source_id' = $2
            for update
            """,
            FETCH_SOURCE_JOB,
            source_id,
        )

    async def sync_fetch_job_enabled(
        self,
        source_id: str,
        *,
        conn: asyncpg.Connection | None = None,
    ) -> SyncResult | None:
        """Set ``enabled`` to whether an active subscription exists, in one update.

        Also mirrors the resulting schedule onto ``sources.next_fetch_at`` so
        disabled sources show no upcoming fetch.
        """
        try:
            async with self._transaction(conn) as active:
                await self.lock_fetch_job(active, source_id)
                row = await active.fetchrow(
                    """
                    with prior as (
                      select id, enabled
                      from jobs
                      where type = $1 and payload->>'source_id' = $2::text
                      for update
                    ),
                    interest as (
                      select exists (
                        select 1
                        from subscriptions s
                        where s.source_id = $2::text::uuid and s.active = true
                      ) as has_subscribers
                    ),
                    synced as (
                      update jobs j
                      set
                        enabled = i.has_subscribers,
                        next_run_at = case
                          when i.has_subscribers and j.next_run_at is null then now()
                          else j.next_run_at
                        end,
                        updated_at = now()
                      from prior p, interest i
                      where j.id = p.id
                      returning j.enabled, p.enabled as previous_enabled, j.next_run_at
                    ),
                    mirrored as (
                      update sources s
                      set
                        next_fetch_at = case when sy.enabled then sy.next_run_at else null end,
                        updated_at = now()
                      from synced sy
                      where s.id = $2::text::uuid
                      returning s.id
                    )
                    select enabled, previous_enabled, next_run_at from synced
                    """,
                    FETCH_SOURCE_JOB,
                    source_id,
                )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        if row is None:
            return None
        return SyncResult(
            enabled=bool(row["enabled"]),
            previous_enabled=bool(row["previous_enabled"]),
            next_run_at=row["next_run_at"],
        )

    async def set_subscription_active(
        self,
        conn: asyncpg.Connection,
        *,
        user_id: str,
        source_id: str,
        active: bool,
    ) -> None:
        if not user_id.strip():
            raise RepositoryValidationError("user_id must be a non-empty string")
        try:
            await conn.execute(
                """
                insert into subscriptions (user_id, source_id, active)
                values ($1, $2::uuid, $3)
                on conflict (user_id, source_id) do update
                set active = excluded.active, updated_at = now()
                """,
                user_id,
                source_id,
                active,
            )
        except (pg_exc.ForeignKeyViolationError, pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc

    # sources

    async def create_source(self, url: str, *, kind: str = "feed", title: str | None = None) -> SourceRecord:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            insert into sources (url, kind, title)
            values ($1, $2, $3)
            on conflict (url) do update
            set title = coalesce(sources.title, excluded.title), updated_at = now()
            returning {_SOURCE_COLUMNS}
            """,
            url,
            kind,
            title,
        )
        return self._source_from_row(row)

    async def get_source(self, source_id: str) -> SourceRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_SOURCE_COLUMNS} from sources where id = $1::uuid", source_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("source not found") from exc
        if row is None:
            raise RepositoryNotFoundError("source not found")
        return self._source_from_row(row)

    async def list_broken_sources(self, *, min_failures: int = 1, limit: int = 100) -> list[SourceRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SOURCE_COLUMNS}
            from sources
            where consecutive_failures >= $1
            order by consecutive_failures desc, last_fetched_at asc nulls first
            limit $2
            """,
            max(1, min_failures),
            max(1, min(limit, 1000)),
        )
        return [self._source_from_row(row) for row in rows]

    async def record_fetch_success(
        self,
        source_id: str,
        *,
        etag: str | None,
        last_modified: str | None,
        next_fetch_at: datetime,
        title: str | None = None,
        description: str | None = None,
        site_url: str | None = None,
        learned_interval_seconds: int | None = None,
    ) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update sources
            set
              etag = coalesce($2, etag),
              last_modified = coalesce($3, last_modified),
              next_fetch_at = $4,
              title = coalesce($5, title),
              description = coalesce($6, description),
              site_url = coalesce($7, site_url),
              learned_interval_seconds = coalesce($8, learned_interval_seconds),
              last_fetched_at = now(),
              consecutive_failures = 0,
              last_error = null,
              updated_at = now()
            where id = $1::uuid
            """,
            source_id,
            etag,
            last_modified,
            next_fetch_at,
            title,
            description,
            site_url,
            learned_interval_seconds,
        )

    async def record_fetch_failure(self, source_id: str, *, error: str, next_fetch_at: datetime) -> int:
        pool = await self._get_pool()
        failures = await pool.fetchval(
            """
            update sources
            set
              consecutive_failures = consecutive_failures + 1,
              last_error = $2,
              next_fetch_at = $3,
              last_fetched_at = now(),
              updated_at = now()
            where id = $1::uuid
            returning consecutive_failures
            """,
            source_id,
            error,
            next_fetch_at,
        )
        return int(failures or 0)

    async def record_redirect_observation(self, source_id: str, target_url: str | None) -> int:
        """Track consecutive sightings of one permanent redirect target.

        A different target restarts the count at 1; ``None`` clears the candidate.
        Returns the resulting count.
        """
        pool = await self._get_pool()
        seen = await pool.fetchval(
            """
            update sources
            set
              redirect_seen_count = case
                when $2::text is null then 0
                when redirect_candidate_url = $2::text then redirect_seen_count + 1
                else 1
              end,
              redirect_candidate_url = $2::text,
              updated_at = now()
            where id = $1::uuid
            returning redirect_seen_count
            """,
            source_id,
            target_url,
        )
        return int(seen or 0)

    async def adopt_redirect(self, source_id: str, new_url: str) -> bool:
        pool = await self._get_pool()
        try:
            result = await pool.execute(
                """
                update sources
                set
                  url = $2,
                  redirect_candidate_url = null,
                  redirect_seen_count = 0,
                  updated_at = now()
                where id = $1::uuid
                """,
                source_id,
                new_url,
            )
        except pg_exc.UniqueViolationError:
            logger.warning("redirect target already owned by another source source_id=%s url=%s", source_id, new_url)
            await self.record_redirect_observation(source_id, None)
            return False
        return result.endswith(" 1")

    # items

    async def lock_item(self, conn: asyncpg.Connection, source_id: str, dedupe_key: str) -> ItemRecord | None:
        row = await conn.fetchrow(
            f"""
            select {_ITEM_COLUMNS}
            from items
            where source_id = $1::uuid and dedupe_key = $2
            for update
            """,
            source_id,
            dedupe_key,
        )
        return self._item_from_row(row) if row is not None else None

    async def insert_item(
        self,
        conn: asyncpg.Connection,
        *,
        source_id: str,
        dedupe_key: str,
        item: ParsedItem,
        content_hash: str,
    ) -> ItemRecord | None:
        """Insert version 1 of an item; ``None`` when a concurrent writer got there first."""
        try:
            row = await conn.fetchrow(
                f"""
                insert into items (
                  source_id, dedupe_key, external_id, url, title, author,
                  content, summary, published_at, content_hash, version
                )
                values ($1::uuid, $2, $3, $4, $5, $6, $7, $8, $9, $10, 1)
                on conflict (source_id, dedupe_key) do nothing
                returning {_ITEM_COLUMNS}
                """,
                source_id,
                dedupe_key,
                item.guid,
                item.link,
                item.title,
                item.author,
                item.content,
                item.summary,
                item.published_at,
                content_hash,
            )
        except pg_exc.ForeignKeyViolationError as exc:
            raise RepositoryNotFoundError("source not found") from exc
        return self._item_from_row(row) if row is not None else None

    async def replace_item_content(
        self,
        conn: asyncpg.Connection,
        *,
        existing: ItemRecord,
        item: ParsedItem,
        content_hash: str,
    ) -> ItemRecord:
        """Archive the current content as a version record and bump ``version`` by one."""
        await conn.execute(
            """
            insert into item_versions (item_id, version, title, content, summary, content_hash)
            values ($1::uuid, $2, $3, $4, $5, $6)
            """,
            existing.id,
            existing.version,
            existing.title,
            existing.content,
            existing.summary,
            existing.content_hash,
        )
        row = await conn.fetchrow(
            f"""
            update items
            set
              external_id = coalesce($2, external_id),
              url = coalesce($3, url),
              title = $4,
              author = coalesce($5, author),
              content = $6,
              summary = $7,
              published_at = coalesce($8, published_at),
              content_hash = $9,
              version = version + 1,
              updated_at = now()
            where id = $1::uuid and version = $10
            returning {_ITEM_COLUMNS}
            """,
            existing.id,
            item.guid,
            item.link,
            item.title,
            item.author,
            item.content,
            item.summary,
            item.published_at,
            content_hash,
            existing.version,
        )
        if row is None:
            raise RepositoryConflictError(f"item {existing.id} changed concurrently")
        return self._item_from_row(row)

    async def seed_subscriber_states(self, conn: asyncpg.Connection, *, item_id: str, source_id: str) -> int:
        result = await conn.execute(
            """
            insert into user_item_states (user_id, item_id)
            select s.user_id, $1::uuid
            from subscriptions s
            where s.source_id = $2::uuid and s.active = true
            on conflict (user_id, item_id) do nothing
            """,
            item_id,
            source_id,
        )
        return _affected_rows(result)

    async def get_item(self, item_id: str) -> ItemRecord:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(f"select {_ITEM_COLUMNS} from items where id = $1::uuid", item_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("item not found") from exc
        if row is None:
            raise RepositoryNotFoundError("item not found")
        return self._item_from_row(row)

    async def list_item_versions(self, item_id: str) -> list[ItemVersionRecord]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select item_id::text as item_id, version, title, content, summary, content_hash, archived_at
            from item_versions
            where item_id = $1::uuid
            order by version asc
            """,
            item_id,
        )
        return [
            ItemVersionRecord(
                item_id=row["item_id"],
                version=int(row["version"]),
                title=row["title"],
                content=row["content"],
                summary=row["summary"],
                content_hash=row["content_hash"],
                archived_at=row["archived_at"],
            )
            for row in rows
        ]

    # user item state

    async def apply_item_state(
        self,
        *,
        user_id: str,
        item_id: str,
        field: str,
        value: bool,
        changed_at: datetime,
    ) -> ItemState:
        column = self._state_column(field)
        other = "starred" if column == "read" else "read"
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    applied = await conn.fetchval(
                        f"""
                        insert into user_item_states as s (
                          user_id, item_id, {column}, {column}_changed_at, {other}, {other}_changed_at
                        )
                        select $1, i.id, $3, $4, false, now()
                        from items i
                        where i.id = $2::uuid
                        on conflict (user_id, item_id) do update
                        set
                          {column} = excluded.{column},
                          {column}_changed_at = excluded.{column}_changed_at,
                          updated_at = now()
                        where s.{column}_changed_at < excluded.{column}_changed_at
                        returning true
                        """,
                        user_id,
                        item_id,
                        value,
                        changed_at,
                    )
                    row = await conn.fetchrow(
                        f"""
                        select {_STATE_COLUMNS}
                        from user_item_states
                        where user_id = $1 and item_id = $2::uuid
                        """,
                        user_id,
                        item_id,
                    )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("item not found") from exc
        if row is None:
            raise RepositoryNotFoundError("item not found")
        return self._state_from_row(row, applied=bool(applied))

    async def apply_item_states(
        self,
        *,
        user_id: str,
        field: str,
        value: bool,
        entries: Sequence[tuple[str, datetime]],
    ) -> list[ItemState]:
        column = self._state_column(field)
        other = "starred" if column == "read" else "read"
        if not entries:
            return []
        item_ids = [item_id for item_id, _ in entries]
        changed_ats = [changed_at for _, changed_at in entries]

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                applied_rows = await conn.fetch(
                    f"""
                    insert into user_item_states as s (
                      user_id, item_id, {column}, {column}_changed_at, {other}, {other}_changed_at
                    )
                    select $1, i.id, $4, r.changed_at, false, now()
                    from unnest($2::uuid[], $3::timestamptz[]) as r(item_id, changed_at)
                    join items i on i.id = r.item_id
                    on conflict (user_id, item_id) do update
                    set
                      {column} = excluded.{column},
                      {column}_changed_at = excluded.{column}_changed_at,
                      updated_at = now()
                    where s.{column}_changed_at < excluded.{column}_changed_at
                    returning item_id::text as item_id
                    """,
                    user_id,
                    item_ids,
                    changed_ats,
                    value,
                )
                rows = await conn.fetch(
                    f"""
                    select {_STATE_COLUMNS}
                    from user_item_states
                    where user_id = $1 and item_id = any($2::uuid[])
                    """,
                    user_id,
                    item_ids,
                )
        applied_ids = {row["item_id"] for row in applied_rows}
        by_id = {row["item_id"]: row for row in rows}
        return [
            self._state_from_row(by_id[item_id], applied=item_id in applied_ids)
            for item_id in item_ids
            if item_id in by_id
        ]

    async def observe_items(self, *, user_id: str, item_ids: Sequence[str]) -> int:
        if not item_ids:
            return 0
        pool = await self._get_pool()
        result = await pool.execute(
            """
            insert into user_item_states (user_id, item_id)
            select $1, i.id
            from items i
            where i.id = any($2::uuid[])
            on conflict (user_id, item_id) do nothing
            """,
            user_id,
            list(item_ids),
        )
        return _affected_rows(result)

    async def get_item_states(self, *, user_id: str, item_ids: Sequence[str]) -> list[ItemState]:
        if not item_ids:
            return []
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_STATE_COLUMNS}
            from user_item_states
            where user_id = $1 and item_id = any($2::uuid[])
            """,
            user_id,
            list(item_ids),
        )
        return [self._state_from_row(row, applied=False) for row in rows]

    # rate limiting and notifications

    async def reserve_origin_slot(self, origin: str, interval_seconds: float) -> float:
        """Reserve the next request slot for ``origin``; returns seconds to wait for it."""
        pool = await self._get_pool()
        wait = await pool.fetchval(
            """
            insert into origin_rate_limits as r (origin, next_slot_at)
            values ($1, now() + ($2::float8 * interval '1 second'))
            on conflict (origin) do update
            set next_slot_at = greatest(r.next_slot_at, now()) + ($2::float8 * interval '1 second')
            returning extract(epoch from (r.next_slot_at - now()))::float8 - $2::float8
            """,
            origin,
            float(interval_seconds),
        )
        return max(0.0, float(wait or 0.0))

    async def notify(self, channel: str, payload: str) -> None:
        pool = await self._get_pool()
        await pool.execute("select pg_notify($1, $2)", channel, payload)

    @asynccontextmanager
    async def _connection(self, conn: asyncpg.Connection | None) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        pool = await self._get_pool()
        async with pool.acquire() as acquired:
            yield acquired

    @asynccontextmanager
    async def _transaction(self, conn: asyncpg.Connection | None) -> AsyncIterator[asyncpg.Connection]:
        if conn is not None:
            yield conn
            return
        async with self.transaction() as acquired:
            yield acquired

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("FEEDSYNC_DATABASE_URL is required")

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

    @staticmethod
    def _state_column(field: str) -> str:
        if field not in STATE_FIELDS:
            raise RepositoryValidationError(f"unsupported state field: {field!r}")
        return field

    @staticmethod
    def _job_from_row(row: asyncpg.Record) -> JobRecord:
        return JobRecord(
            id=row["id"],
            type=row["type"],
            payload=_coerce_json_dict(row["payload"]),
            enabled=bool(row["enabled"]),
            next_run_at=row["next_run_at"],
            running_since=row["running_since"],
            last_run_at=row["last_run_at"],
            last_error=row["last_error"],
            consecutive_failures=int(row["consecutive_failures"] or 0),
        )

    @staticmethod
    def _source_from_row(row: asyncpg.Record) -> SourceRecord:
        return SourceRecord(
            id=row["id"],
            kind=row["kind"],
            url=row["url"],
            title=row["title"],
            description=row["description"],
            site_url=row["site_url"],
            etag=row["etag"],
            last_modified=row["last_modified"],
            last_fetched_at=row["last_fetched_at"],
            next_fetch_at=row["next_fetch_at"],
            consecutive_failures=int(row["consecutive_failures"] or 0),
            last_error=row["last_error"],
            redirect_candidate_url=row["redirect_candidate_url"],
            redirect_seen_count=int(row["redirect_seen_count"] or 0),
            learned_interval_seconds=row["learned_interval_seconds"],
        )

    @staticmethod
    def _item_from_row(row: asyncpg.Record) -> ItemRecord:
        return ItemRecord(
            id=row["id"],
            source_id=row["source_id"],
            dedupe_key=row["dedupe_key"],
            external_id=row["external_id"],
            url=row["url"],
            title=row["title"],
            author=row["author"],
            content=row["content"],
            summary=row["summary"],
            published_at=row["published_at"],
            content_hash=row["content_hash"],
            version=int(row["version"]),
            first_seen_at=row["first_seen_at"],
        )

    @staticmethod
    def _state_from_row(row: asyncpg.Record, *, applied: bool) -> ItemState:
        return ItemState(
            item_id=row["item_id"],
            read=bool(row["read"]),
            starred=bool(row["starred"]),
            read_changed_at=row["read_changed_at"],
            starred_changed_at=row["starred_changed_at"],
            applied=applied,
        )


def _coerce_json_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return {}
    return value if isinstance(value, dict) else {}


def _affected_rows(status: str) -> int:
    try:
        return int(status.rsplit(" ", maxsplit=1)[-1])
    except (AttributeError, ValueError):
        return 0


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
