from __future__ import annotations

import asyncio
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from link_health.core.config import get_settings
from link_health.core.scopes import entity_type_for_scope, scopes_to_walk
from link_health.jobs.classifier import ClassificationResult
from link_health.services.candidates import ENTITY_URL_SOURCES, CandidateLink, candidate_links_from_row


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


JOB_STATUSES = {"pending", "running", "completed", "cancelled", "failed"}
ACTIVE_JOB_STATUSES = ("pending", "running")
CHECK_HEALTH_STATUSES = {"valid", "redirected", "parked", "expired", "unreachable", "unknown", "pending"}
COMPLETED_PROCESSING_STATE = "completed"

_JOB_COLUMNS = """
  id::text as id,
  entity_scope,
  status::text as status,
  total_records,
  processed_records,
  valid_urls,
  broken_urls,
  include_auto_fix,
  confidence_threshold,
  started_by,
  started_at,
  completed_at,
  error_message,
  created_at
"""

_CHECK_COLUMNS = """
  id::text as id,
  entity_type,
  entity_id,
  field_name,
  original_url,
  canonical_url,
  http_status,
  redirect_chain,
  health_status::text as health_status,
  confidence,
  is_parked_domain,
  is_expired,
  has_login_only,
  content_length,
  page_title,
  last_checked_at,
  check_count,
  error_message,
  processing_state,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def create_job(
        self,
        *,
        entity_scope: str,
        started_by: str | None,
        include_auto_fix: bool,
        confidence_threshold: float,
    ) -> dict[str, Any]:
        self._validate_scope(entity_scope)
        if not 0.0 <= confidence_threshold <= 1.0:
            raise RepositoryValidationError("confidence_threshold must be between 0 and 1")

        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into url_health_jobs (
                  entity_scope,
                  status,
                  include_auto_fix,
                  confidence_threshold,
                  started_by
                )
                values ($1, 'pending', $2, $3, $4)
                returning {_JOB_COLUMNS}
                """,
                entity_scope,
                include_auto_fix,
                confidence_threshold,
                self._coerce_text(started_by),
            )
        except pg_exc.UniqueViolationError as exc:
            raise RepositoryConflictError("a url health job is already active") from exc
        return self._job_row_to_dict(row)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"select {_JOB_COLUMNS} from url_health_jobs where id = $1::uuid",
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def get_job_status(self, job_id: str) -> str:
        pool = await self._get_pool()
        try:
            status = await pool.fetchval("select status::text from url_health_jobs where id = $1::uuid", job_id)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        if status is None:
            raise RepositoryNotFoundError("job not found")
        return status

    async def get_active_job(self) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            select {_JOB_COLUMNS}
            from url_health_jobs
            where status in ('pending', 'running')
            order by created_at desc
            limit 1
            """
        )
        return self._job_row_to_dict(row) if row else None

    async def list_jobs(self, *, limit: int, offset: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_JOB_COLUMNS}
            from url_health_jobs
            order by created_at desc, id desc
            limit $1
            offset $2
            """,
            limit,
            offset,
        )
        return [self._job_row_to_dict(row) for row in rows]

    async def mark_job_running(self, job_id: str) -> dict[str, Any] | None:
        """Move a pending job to running. ``None`` when the job is no longer pending."""
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                update url_health_jobs
                set status = 'running', started_at = now()
                where id = $1::uuid and status = 'pending'
                returning {_JOB_COLUMNS}
                """,
                job_id,
            )
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc
        return self._job_row_to_dict(row) if row else None

    async def set_job_total(self, job_id: str, total_records: int) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update url_health_jobs set total_records = $2 where id = $1::uuid",
            job_id,
            total_records,
        )

    async def update_job_progress(self, job_id: str, *, processed: int, valid: int, broken: int) -> None:
        pool = await self._get_pool()
        await pool.execute(
            """
            update url_health_jobs
            set processed_records = $2, valid_urls = $3, broken_urls = $4
            where id = $1::uuid
            """,
            job_id,
            processed,
            valid,
            broken,
        )

    async def finish_job(
        self,
        job_id: str,
        *,
        status: str,
        processed: int,
        valid: int,
        broken: int,
        error_message: str | None = None,
    ) -> dict[str, Any]:
        if status not in JOB_STATUSES - set(ACTIVE_JOB_STATUSES):
            raise RepositoryValidationError("status must be one of: completed, cancelled, failed")

        pool = await self._get_pool()
        # A terminal status written elsewhere (cancel) is kept; counters are always flushed.
        row = await pool.fetchrow(
            f"""
            update url_health_jobs
            set
              processed_records = $3,
              valid_urls = $4,
              broken_urls = $5,
              error_message = case when status in ('pending', 'running') then $6 else error_message end,
              status = case when status in ('pending', 'running') then $2::url_health_job_status else status end,
              completed_at = now()
            where id = $1::uuid
            returning {_JOB_COLUMNS}
            """,
            job_id,
            status,
            processed,
            valid,
            broken,
            error_message,
        )
        if not row:
            raise RepositoryNotFoundError("job not found")
        return self._job_row_to_dict(row)

    async def cancel_job(self, job_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        update url_health_jobs
                        set status = 'cancelled', completed_at = now()
                        where id = $1::uuid and status in ('pending', 'running')
                        returning {_JOB_COLUMNS}
                        """,
                        job_id,
                    )
                    if not row:
                        exists = await conn.fetchval("select 1 from url_health_jobs where id = $1::uuid", job_id)
                        if not exists:
                            raise RepositoryNotFoundError("job not found")
                        raise RepositoryConflictError("job is not active")
                    return self._job_row_to_dict(row)
        except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
            raise RepositoryNotFoundError("job not found") from exc

    async def upsert_check(
        self,
        *,
        entity_type: str,
        entity_id: str,
        field_name: str,
        original_url: str,
        result: ClassificationResult,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                f"""
                insert into url_health_checks (
                  entity_type,
                  entity_id,
                  field_name,
                  original_url,
                  canonical_url,
                  http_status,
                  redirect_chain,
                  health_status,
                  confidence,
                  is_parked_domain,
                  is_expired,
                  has_login_only,
                  content_length,
                  page_title,
                  last_checked_at,
                  check_count,
                  error_message,
                  processing_state
                )
                values (
                  $1, $2, $3, $4, $5, $6, $7::text[], $8::url_health_status, $9, $10, $11, $12, $13, $14,
                  clock_timestamp(), 1, $15, 'completed'
                )
                on conflict (entity_type, entity_id, field_name) do update
                set
                  original_url = excluded.original_url,
                  canonical_url = excluded.canonical_url,
                  http_status = excluded.http_status,
                  redirect_chain = excluded.redirect_chain,
                  health_status = excluded.health_status,
                  confidence = excluded.confidence,
                  is_parked_domain = excluded.is_parked_domain,
                  is_expired = excluded.is_expired,
                  has_login_only = excluded.has_login_only,
                  content_length = excluded.content_length,
                  page_title = excluded.page_title,
                  last_checked_at = greatest(
                    clock_timestamp(),
                    url_health_checks.last_checked_at + interval '1 microsecond'
                  ),
                  check_count = url_health_checks.check_count + 1,
                  error_message = excluded.error_message,
                  processing_state = 'completed',
                  updated_at = now()
                returning {_CHECK_COLUMNS}
                """,
                entity_type,
                entity_id,
                field_name,
                original_url,
                result.canonical_url,
                result.http_status,
                list(result.redirect_chain),
                result.health_status,
                float(result.confidence),
                result.is_parked_domain,
                result.is_expired,
                result.has_login_only,
                result.content_length,
                result.page_title,
                result.error_message,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, asyncio.TimeoutError, OSError) as exc:
            raise RepositoryError(f"failed to store url health check: {exc!r}") from exc
        return self._check_row_to_dict(row)

    async def list_checks(
        self,
        *,
        scope: str,
        health_status: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        entity_type = self._validate_scope(scope)
        normalized_status = self._coerce_text(health_status)
        if normalized_status and normalized_status not in CHECK_HEALTH_STATUSES:
            raise RepositoryValidationError(
                "status must be one of: valid, redirected, parked, expired, unreachable, unknown, pending",
            )

        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_CHECK_COLUMNS}
            from url_health_checks
            where ($1::text is null or entity_type = $1)
              and ($2::text is null or health_status::text = $2)
            order by last_checked_at desc nulls last, id asc
            limit $3
            offset $4
            """,
            entity_type,
            normalized_status,
            limit,
            offset,
        )
        return [self._check_row_to_dict(row) for row in rows]

    async def count_checks(self, *, scope: str) -> list[dict[str, Any]]:
        entity_type = self._validate_scope(scope)
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              health_status::text as health_status,
              processing_state,
              count(*)::int as count
            from url_health_checks
            where ($1::text is null or entity_type = $1)
            group by health_status, processing_state
            """,
            entity_type,
        )
        return [
            {
                "health_status": row["health_status"],
                "processing_state": row["processing_state"],
                "count": int(row["count"]),
            }
            for row in rows
        ]

    async def get_candidates(self, scope: str, limit: int) -> list[CandidateLink]:
        try:
            scope_names = scopes_to_walk(scope)
        except ValueError as exc:
            raise RepositoryValidationError(str(exc)) from exc

        pool = await self._get_pool()
        candidates: list[CandidateLink] = []
        for scope_name in scope_names:
            remaining = limit - len(candidates)
            if remaining <= 0:
                break
            source = ENTITY_URL_SOURCES[scope_name]
            url_columns = [column for _, column in source.url_fields]
            selected = ", ".join(["id", *source.name_columns, *url_columns])
            has_url = " or ".join(f"coalesce(btrim({column}), '') <> ''" for column in url_columns)
            rows = await pool.fetch(
                f"""
                select {selected}
                from {source.table}
                where {has_url}
                order by id asc
                limit $1
                """,
                remaining,
            )
            for row in rows:
                candidates.extend(candidate_links_from_row(source, row))
        return candidates[:limit]

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("LH_DATABASE_URL is required")

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
    def _validate_scope(scope: str) -> str | None:
        try:
            return entity_type_for_scope(scope)
        except ValueError as exc:
            raise RepositoryValidationError(str(exc)) from exc

    @staticmethod
    def _job_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "entity_scope": row["entity_scope"],
            "status": row["status"],
            "total_records": int(row["total_records"]),
            "processed_records": int(row["processed_records"]),
            "valid_urls": int(row["valid_urls"]),
            "broken_urls": int(row["broken_urls"]),
            "include_auto_fix": bool(row["include_auto_fix"]),
            "confidence_threshold": float(row["confidence_threshold"]),
            "started_by": row["started_by"],
            "started_at": row["started_at"],
            "completed_at": row["completed_at"],
            "error_message": row["error_message"],
            "created_at": row["created_at"],
        }

    @staticmethod
    def _check_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        return {
            "id": row["id"],
            "entity_type": row["entity_type"],
            "entity_id": row["entity_id"],
            "field_name": row["field_name"],
            "original_url": row["original_url"],
            "canonical_url": row["canonical_url"],
            "http_status": row["http_status"],
            "redirect_chain": list(row["redirect_chain"] or []),
            "health_status": row["health_status"],
            "confidence": float(row["confidence"]),
            "is_parked_domain": bool(row["is_parked_domain"]),
            "is_expired": bool(row["is_expired"]),
            "has_login_only": bool(row["has_login_only"]),
            "content_length": row["content_length"],
            "page_title": row["page_title"],
            "last_checked_at": row["last_checked_at"],
            "check_count": int(row["check_count"]),
            "error_message": row["error_message"],
            "processing_state": row["processing_state"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    @staticmethod
    def _coerce_text(value: Any) -> str | None:
        if value is None:
            return None
        if isinstance(value, str):
            stripped = value.strip()
            return stripped or None
        return str(value)


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
