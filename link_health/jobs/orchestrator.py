"""URL health job lifecycle: create, process, cancel.

A job walks its candidate links strictly one at a time. Before each candidate
the job row is re-read; once it is no longer ``running`` (an admin cancelled it)
the loop stops. Cancellation is therefore cooperative and its latency is bounded
by one classifier timeout plus one pacing interval.

Check records are written as soon as a link is classified. Job counters are only
flushed every ``progress_flush_every`` items and once more when the job ends.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import lru_cache, partial
from typing import Any

from opentelemetry import trace

from link_health.core.config import Settings, get_settings
from link_health.jobs.classifier import ClassificationResult, is_broken, is_reachable
from link_health.jobs.pacing import RateLimiter
from link_health.jobs.probe import ProbeOptions, classify
from link_health.services.candidates import CandidateLink, CandidateSource
from link_health.services.repository import RepositoryError, RepositoryNotFoundError, get_repository

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LinkClassifier = Callable[[str], Awaitable[ClassificationResult]]


@dataclass(slots=True)
class JobCounters:
    processed: int = 0
    valid: int = 0
    broken: int = 0

    def record(self, health_status: str) -> None:
        self.processed += 1
        if is_reachable(health_status):
            self.valid += 1
        elif is_broken(health_status):
            self.broken += 1


class UrlHealthOrchestrator:
    def __init__(
        self,
        repository: Any,
        *,
        candidate_source: CandidateSource | None = None,
        classify_link: LinkClassifier | None = None,
        rate_limiter_factory: Callable[[], RateLimiter] | None = None,
        candidate_limit: int = 1000,
        progress_flush_every: int = 10,
        default_include_auto_fix: bool = True,
        default_confidence_threshold: float = 0.85,
    ) -> None:
        self.repository = repository
        self.candidate_source: CandidateSource = candidate_source or repository
        self.classify_link: LinkClassifier = classify_link or classify
        self.rate_limiter_factory = rate_limiter_factory or partial(RateLimiter, 5.0, 1)
        self.candidate_limit = max(1, candidate_limit)
        self.progress_flush_every = max(1, progress_flush_every)
        self.default_include_auto_fix = default_include_auto_fix
        self.default_confidence_threshold = default_confidence_threshold
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_settings(cls, repository: Any, settings: Settings) -> "UrlHealthOrchestrator":
        return cls(
            repository,
            classify_link=partial(classify, options=ProbeOptions.from_settings(settings)),
            rate_limiter_factory=partial(
                RateLimiter,
                settings.job_requests_per_second,
                settings.job_request_burst,
            ),
            candidate_limit=settings.job_candidate_limit,
            progress_flush_every=settings.job_progress_flush_every,
            default_include_auto_fix=settings.job_default_include_auto_fix,
            default_confidence_threshold=settings.job_default_confidence_threshold,
        )

    async def create(
        self,
        scope: str,
        *,
        started_by: str | None,
        include_auto_fix: bool | None = None,
        confidence_threshold: float | None = None,
    ) -> dict[str, Any]:
        """Persist a pending job. Processing starts only via ``dispatch``/``process``.

        Raises ``RepositoryConflictError`` while another job is pending or running.
        """
        job = await self.repository.create_job(
            entity_scope=scope,
            started_by=started_by,
            include_auto_fix=self.default_include_auto_fix if include_auto_fix is None else include_auto_fix,
            confidence_threshold=(
                self.default_confidence_threshold if confidence_threshold is None else confidence_threshold
            ),
        )
        logger.info("url health job created id=%s scope=%s started_by=%s", job["id"], scope, started_by)
        return job

    async def get_active(self) -> dict[str, Any] | None:
        return await self.repository.get_active_job()

    async def cancel(self, job_id: str) -> dict[str, Any]:
        job = await self.repository.cancel_job(job_id)
        logger.info("url health job cancel requested id=%s", job_id)
        return job

    def dispatch(self, job_id: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(self.process(job_id), name=f"url-health-job-{job_id}")
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    async def shutdown(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def process(self, job_id: str) -> dict[str, Any] | None:
        with tracer.start_as_current_span("url_health.process_job") as job_span:
            job_span.set_attribute("job.id", job_id)
            try:
                job = await self.repository.mark_job_running(job_id)
            except RepositoryNotFoundError:
                logger.warning("url health job not found id=%s", job_id)
                return None
            if job is None:
                logger.info("url health job is no longer pending id=%s", job_id)
                return None

            counters = JobCounters()
            limiter = self.rate_limiter_factory()
            try:
                candidates = await self.candidate_source.get_candidates(job["entity_scope"], self.candidate_limit)
                await self.repository.set_job_total(job_id, len(candidates))
                job_span.set_attribute("job.total_records", len(candidates))
                logger.info("url health job running id=%s candidates=%s", job_id, len(candidates))

                for index, candidate in enumerate(candidates):
                    status = await self.repository.get_job_status(job_id)
                    if status != "running":
                        logger.info(
                            "url health job stopped id=%s status=%s processed=%s",
                            job_id,
                            status,
                            counters.processed,
                        )
                        return await self._finish(job_id, "cancelled", counters)

                    result = await self._check_link(job_id, candidate)
                    counters.record(result.health_status)

                    if counters.processed % self.progress_flush_every == 0:
                        await self.repository.update_job_progress(
                            job_id,
                            processed=counters.processed,
                            valid=counters.valid,
                            broken=counters.broken,
                        )

                    if index < len(candidates) - 1:
                        await limiter.acquire()
            except asyncio.CancelledError:
                logger.warning("url health job interrupted id=%s processed=%s", job_id, counters.processed)
                await self._finish(job_id, "failed", counters, error_message="Job interrupted")
                raise
            except Exception as exc:
                logger.exception("url health job failed id=%s processed=%s", job_id, counters.processed)
                return await self._finish(job_id, "failed", counters, error_message=str(exc) or type(exc).__name__)

            return await self._finish(job_id, "completed", counters)

    async def _check_link(self, job_id: str, candidate: CandidateLink) -> ClassificationResult:
        with tracer.start_as_current_span("url_health.check_link") as link_span:
            link_span.set_attribute("link.entity_type", candidate.entity_type)
            link_span.set_attribute("link.field_name", candidate.field_name)
            result = await self.classify_link(candidate.url)
            link_span.set_attribute("link.health_status", result.health_status)

            try:
                await self.repository.upsert_check(
                    entity_type=candidate.entity_type,
                    entity_id=candidate.entity_id,
                    field_name=candidate.field_name,
                    original_url=candidate.url,
                    result=result,
                )
            except RepositoryError:
                logger.exception(
                    "failed to store url health check job=%s entity_type=%s entity_id=%s field=%s",
                    job_id,
                    candidate.entity_type,
                    candidate.entity_id,
                    candidate.field_name,
                )
            return result

    async def _finish(
        self,
        job_id: str,
        status: str,
        counters: JobCounters,
        *,
        error_message: str | None = None,
    ) -> dict[str, Any] | None:
        try:
            job = await self.repository.finish_job(
                job_id,
                status=status,
                processed=counters.processed,
                valid=counters.valid,
                broken=counters.broken,
                error_message=error_message,
            )
        except RepositoryError:
            logger.exception("failed to finalize url health job id=%s status=%s", job_id, status)
            return None

        logger.info(
            "url health job finished id=%s status=%s processed=%s valid=%s broken=%s",
            job_id,
            job["status"],
            job["processed_records"],
            job["valid_urls"],
            job["broken_urls"],
        )
        return job

    def _on_task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("url health job task crashed name=%s", task.get_name(), exc_info=exc)


@lru_cache
def get_orchestrator() -> UrlHealthOrchestrator:
    return UrlHealthOrchestrator.from_settings(get_repository(), get_settings())
