from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import uuid4

from link_health.core.scopes import entity_type_for_scope
from link_health.jobs.classifier import ClassificationResult
from link_health.services.candidates import CandidateLink
from link_health.services.repository import (
    ACTIVE_JOB_STATUSES,
    CHECK_HEALTH_STATUSES,
    JOB_STATUSES,
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryValidationError,
)

_ONE_MICROSECOND = timedelta(microseconds=1)


class InMemoryRepository:
    """Process-local store with the same async surface as ``PostgresRepository``.

    Used by tests and for running the service without a database. Methods never
    await between reading and writing shared state, so each call is atomic with
    respect to other tasks on the same event loop.
    """

    def __init__(self, candidates: list[CandidateLink] | None = None) -> None:
        self.jobs: dict[str, dict[str, Any]] = {}
        self.checks: dict[tuple[str, str, str], dict[str, Any]] = {}
        self.candidates: list[CandidateLink] = list(candidates or [])
        # last_checked_at values are strictly increasing across the whole store
        self._last_checked_at: datetime | None = None

    async def close(self) -> None:
        return None

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
        if self._active_job() is not None:
            raise RepositoryConflictError("a url health job is already active")

        job_id = str(uuid4())
        job = {
            "id": job_id,
            "entity_scope": entity_scope,
            "status": "pending",
            "total_records": 0,
            "processed_records": 0,
            "valid_urls": 0,
            "broken_urls": 0,
            "include_auto_fix": include_auto_fix,
            "confidence_threshold": confidence_threshold,
            "started_by": started_by,
            "started_at": None,
            "completed_at": None,
            "error_message": None,
            "created_at": _now(),
        }
        self.jobs[job_id] = job
        return dict(job)

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return dict(self._require_job(job_id))

    async def get_job_status(self, job_id: str) -> str:
        return self._require_job(job_id)["status"]

    async def get_active_job(self) -> dict[str, Any] | None:
        job = self._active_job()
        return dict(job) if job else None

    async def list_jobs(self, *, limit: int, offset: int) -> list[dict[str, Any]]:
        rows = sorted(self.jobs.values(), key=lambda job: job["created_at"], reverse=True)
        return [dict(job) for job in rows[offset : offset + limit]]

    async def mark_job_running(self, job_id: str) -> dict[str, Any] | None:
        job = self._require_job(job_id)
        if job["status"] != "pending":
            return None
        job["status"] = "running"
        job["started_at"] = _now()
        return dict(job)

    async def set_job_total(self, job_id: str, total_records: int) -> None:
        self._require_job(job_id)["total_records"] = total_records

    async def update_job_progress(self, job_id: str, *, processed: int, valid: int, broken: int) -> None:
        job = self._require_job(job_id)
        job["processed_records"] = processed
        job["valid_urls"] = valid
        job["broken_urls"] = broken

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
        job = self._require_job(job_id)
        job["processed_records"] = processed
        job["valid_urls"] = valid
        job["broken_urls"] = broken
        if job["status"] in ACTIVE_JOB_STATUSES:
            job["status"] = status
            job["error_message"] = error_message
        job["completed_at"] = _now()
        return dict(job)

    async def cancel_job(self, job_id: str) -> dict[str, Any]:
        job = self._require_job(job_id)
        if job["status"] not in ACTIVE_JOB_STATUSES:
            raise RepositoryConflictError("job is not active")
        job["status"] = "cancelled"
        job["completed_at"] = _now()
        return dict(job)

    async def upsert_check(
        self,
        *,
        entity_type: str,
        entity_id: str,
        field_name: str,
        original_url: str,
        result: ClassificationResult,
    ) -> dict[str, Any]:
        key = (entity_type, entity_id, field_name)
        now = _now()
        existing = self.checks.get(key)
        if existing is None:
            existing = {
                "id": str(uuid4()),
                "entity_type": entity_type,
                "entity_id": entity_id,
                "field_name": field_name,
                "last_checked_at": None,
                "check_count": 0,
                "created_at": now,
            }
            self.checks[key] = existing

        checked_at = now
        if self._last_checked_at is not None and checked_at <= self._last_checked_at:
            checked_at = self._last_checked_at + _ONE_MICROSECOND
        self._last_checked_at = checked_at

        existing.update(
            {
                "original_url": original_url,
                "canonical_url": result.canonical_url,
                "http_status": result.http_status,
                "redirect_chain": list(result.redirect_chain),
                "health_status": result.health_status,
                "confidence": float(result.confidence),
                "is_parked_domain": result.is_parked_domain,
                "is_expired": result.is_expired,
                "has_login_only": result.has_login_only,
                "content_length": result.content_length,
                "page_title": result.page_title,
                "last_checked_at": checked_at,
                "check_count": existing["check_count"] + 1,
                "error_message": result.error_message,
                "processing_state": "completed",
                "updated_at": now,
            }
        )
        return dict(existing)

    async def list_checks(
        self,
        *,
        scope: str,
        health_status: str | None,
        limit: int,
        offset: int,
    ) -> list[dict[str, Any]]:
        entity_type = self._validate_scope(scope)
        if health_status and health_status not in CHECK_HEALTH_STATUSES:
            raise RepositoryValidationError(
                "status must be one of: valid, redirected, parked, expired, unreachable, unknown, pending",
            )
        rows = [
            row
            for row in self.checks.values()
            if (entity_type is None or row["entity_type"] == entity_type)
            and (not health_status or row["health_status"] == health_status)
        ]
        rows.sort(key=lambda row: row["id"])
        rows.sort(key=lambda row: row["last_checked_at"] or datetime.min.replace(tzinfo=timezone.utc), reverse=True)
        rows.sort(key=lambda row: row["last_checked_at"] is None)
        return [dict(row) for row in rows[offset : offset + limit]]

    async def count_checks(self, *, scope: str) -> list[dict[str, Any]]:
        entity_type = self._validate_scope(scope)
        counts: dict[tuple[str, str], int] = {}
        for row in self.checks.values():
            if entity_type is not None and row["entity_type"] != entity_type:
                continue
            key = (row["health_status"], row["processing_state"])
            counts[key] = counts.get(key, 0) + 1
        return [
            {"health_status": health_status, "processing_state": processing_state, "count": count}
            for (health_status, processing_state), count in counts.items()
        ]

    async def get_candidates(self, scope: str, limit: int) -> list[CandidateLink]:
        entity_type = self._validate_scope(scope)
        rows = [link for link in self.candidates if entity_type is None or link.entity_type == entity_type]
        return rows[:limit]

    def _active_job(self) -> dict[str, Any] | None:
        return next((job for job in self.jobs.values() if job["status"] in ACTIVE_JOB_STATUSES), None)

    def _require_job(self, job_id: str) -> dict[str, Any]:
        job = self.jobs.get(job_id)
        if job is None:
            raise RepositoryNotFoundError("job not found")
        return job

    @staticmethod
    def _validate_scope(scope: str) -> str | None:
        try:
            return entity_type_for_scope(scope)
        except ValueError as exc:
            raise RepositoryValidationError(str(exc)) from exc


def _now() -> datetime:
    return datetime.now(timezone.utc)
