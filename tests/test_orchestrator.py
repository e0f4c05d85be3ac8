from __future__ import annotations

import asyncio
from functools import partial
from typing import Any

import httpx
import pytest

from link_health.jobs.classifier import ClassificationResult
from link_health.jobs.orchestrator import UrlHealthOrchestrator
from link_health.jobs.pacing import RateLimiter
from link_health.jobs.probe import ProbeOptions, classify
from link_health.services.candidates import CandidateLink
from link_health.services.repository import PostgresRepository, RepositoryConflictError, RepositoryError
from link_health.services.store import InMemoryRepository


def _candidates(count: int, entity_type: str = "investmentFirm") -> list[CandidateLink]:
    return [
        CandidateLink(
            entity_type=entity_type,
            entity_id=str(index),
            field_name="website",
            url=f"https://firm{index}.example",
            entity_name=f"Firm {index}",
        )
        for index in range(1, count + 1)
    ]


def _no_pacing() -> RateLimiter:
    return RateLimiter(0)


class CountingClassifier:
    def __init__(self, health_status: str = "valid", delay: float = 0.0) -> None:
        self.health_status = health_status
        self.delay = delay
        self.urls: list[str] = []
        self.started: dict[int, asyncio.Event] = {}

    def started_event(self, call_number: int) -> asyncio.Event:
        return self.started.setdefault(call_number, asyncio.Event())

    async def __call__(self, url: str) -> ClassificationResult:
        self.urls.append(url)
        self.started_event(len(self.urls)).set()
        if self.delay:
            await asyncio.sleep(self.delay)
        return ClassificationResult(url=url, health_status=self.health_status, confidence=0.95)


def _orchestrator(repository: Any, classifier: Any, **kwargs: Any) -> UrlHealthOrchestrator:
    return UrlHealthOrchestrator(
        repository,
        classify_link=classifier,
        rate_limiter_factory=_no_pacing,
        **kwargs,
    )


def test_create_persists_pending_job_with_defaults() -> None:
    repository = InMemoryRepository()
    orchestrator = _orchestrator(repository, CountingClassifier())

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("investors", started_by="admin-1")
        assert (await orchestrator.get_active())["id"] == job["id"]
        return job

    job = asyncio.run(run())

    assert job["status"] == "pending"
    assert job["entity_scope"] == "investors"
    assert job["include_auto_fix"] is True
    assert job["confidence_threshold"] == 0.85
    assert job["started_by"] == "admin-1"
    assert job["started_at"] is None


def test_create_refuses_second_active_job() -> None:
    repository = InMemoryRepository()
    orchestrator = _orchestrator(repository, CountingClassifier())

    async def run() -> None:
        await orchestrator.create("all", started_by="admin-1")
        with pytest.raises(RepositoryConflictError):
            await orchestrator.create("all", started_by="admin-2")

    asyncio.run(run())


def test_end_to_end_job_with_valid_not_found_and_timeout() -> None:
    candidates = [
        CandidateLink("investmentFirm", "1", "website", "https://a.example/", "Alpha"),
        CandidateLink("investmentFirm", "2", "website", "https://b.example/", "Beta"),
        CandidateLink("investmentFirm", "3", "website", "https://c.example/", "Gamma"),
    ]
    repository = InMemoryRepository(candidates)

    async def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "a.example":
            return httpx.Response(status_code=200, text="<title>Alpha Ventures</title><p>Our portfolio</p>", request=request)
        if request.url.host == "b.example":
            return httpx.Response(status_code=404, request=request)
        await asyncio.sleep(1.0)
        return httpx.Response(status_code=200, request=request)

    async def run() -> dict[str, Any]:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            orchestrator = _orchestrator(
                repository,
                partial(classify, client=client, options=ProbeOptions(timeout_seconds=0.05)),
            )
            job = await orchestrator.create("all", started_by="admin-1")
            return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "completed"
    assert finished["total_records"] == 3
    assert finished["processed_records"] == 3
    assert finished["valid_urls"] == 1
    assert finished["broken_urls"] == 2
    assert finished["started_at"] is not None
    assert finished["completed_at"] is not None

    checks = {key[1]: row for key, row in repository.checks.items()}
    assert checks["1"]["health_status"] == "valid"
    assert checks["1"]["page_title"] == "Alpha Ventures"
    assert checks["2"]["health_status"] == "unreachable"
    assert checks["2"]["error_message"] == "HTTP 404"
    assert checks["3"]["health_status"] == "unreachable"
    assert checks["3"]["error_message"] == "Request timeout"


def test_cancellation_stops_before_next_candidate() -> None:
    repository = InMemoryRepository(_candidates(10))
    classifier = CountingClassifier(delay=0.05)
    orchestrator = _orchestrator(repository, classifier)

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        task = asyncio.create_task(orchestrator.process(job["id"]))
        await asyncio.wait_for(classifier.started_event(3).wait(), timeout=5)
        await orchestrator.cancel(job["id"])
        await task
        return await repository.get_job(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "cancelled"
    assert finished["processed_records"] in {3, 4}
    assert finished["completed_at"] is not None
    assert len(classifier.urls) == 3
    assert "https://firm5.example" not in classifier.urls
    assert len(repository.checks) == 3


def test_job_cancelled_before_processing_is_not_run() -> None:
    repository = InMemoryRepository(_candidates(3))
    classifier = CountingClassifier()
    orchestrator = _orchestrator(repository, classifier)

    async def run() -> Any:
        job = await orchestrator.create("all", started_by="admin-1")
        await orchestrator.cancel(job["id"])
        return await orchestrator.process(job["id"])

    assert asyncio.run(run()) is None
    assert classifier.urls == []


def test_progress_is_flushed_in_batches() -> None:
    class RecordingRepository(InMemoryRepository):
        def __init__(self, candidates: list[CandidateLink]) -> None:
            super().__init__(candidates)
            self.progress_updates: list[int] = []

        async def update_job_progress(self, job_id: str, *, processed: int, valid: int, broken: int) -> None:
            self.progress_updates.append(processed)
            await super().update_job_progress(job_id, processed=processed, valid=valid, broken=broken)

    repository = RecordingRepository(_candidates(25))
    orchestrator = _orchestrator(repository, CountingClassifier(health_status="parked"), progress_flush_every=10)

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert repository.progress_updates == [10, 20]
    assert finished["processed_records"] == 25
    assert finished["broken_urls"] == 25
    assert finished["valid_urls"] == 0
    assert len(repository.checks) == 25


def test_persistence_failure_does_not_abort_job() -> None:
    class FlakyRepository(InMemoryRepository):
        async def upsert_check(self, **kwargs: Any) -> dict[str, Any]:
            if kwargs["entity_id"] == "2":
                raise RepositoryError("disk full")
            return await super().upsert_check(**kwargs)

    repository = FlakyRepository(_candidates(3))
    orchestrator = _orchestrator(repository, CountingClassifier())

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "completed"
    assert finished["processed_records"] == 3
    assert sorted(key[1] for key in repository.checks) == ["1", "3"]


def test_unhandled_fault_marks_job_failed_and_keeps_counters() -> None:
    class BrokenStatusRepository(InMemoryRepository):
        def __init__(self, candidates: list[CandidateLink]) -> None:
            super().__init__(candidates)
            self.status_reads = 0

        async def get_job_status(self, job_id: str) -> str:
            self.status_reads += 1
            if self.status_reads > 2:
                raise RuntimeError("lost connection to job table")
            return await super().get_job_status(job_id)

    repository = BrokenStatusRepository(_candidates(5))
    orchestrator = _orchestrator(repository, CountingClassifier())

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "failed"
    assert finished["error_message"] == "lost connection to job table"
    assert finished["processed_records"] == 2
    assert finished["valid_urls"] == 2
    assert finished["completed_at"] is not None
    assert len(repository.checks) == 2


def test_candidate_source_failure_marks_job_failed() -> None:
    class OfflineSource:
        async def get_candidates(self, scope: str, limit: int) -> list[CandidateLink]:
            raise RuntimeError("catalog offline")

    repository = InMemoryRepository()
    orchestrator = UrlHealthOrchestrator(
        repository,
        candidate_source=OfflineSource(),
        classify_link=CountingClassifier(),
        rate_limiter_factory=_no_pacing,
    )

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "failed"
    assert finished["error_message"] == "catalog offline"
    assert finished["processed_records"] == 0


def test_candidate_limit_bounds_the_batch() -> None:
    repository = InMemoryRepository(_candidates(8))
    classifier = CountingClassifier()
    orchestrator = _orchestrator(repository, classifier, candidate_limit=5)

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert finished["total_records"] == 5
    assert len(classifier.urls) == 5


def test_dispatch_runs_job_in_background() -> None:
    repository = InMemoryRepository(_candidates(2))
    orchestrator = _orchestrator(repository, CountingClassifier(health_status="redirected"))

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        task = orchestrator.dispatch(job["id"])
        assert (await repository.get_job(job["id"]))["status"] == "pending"
        await task
        return await repository.get_job(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "completed"
    assert finished["valid_urls"] == 2


def test_shutdown_marks_running_job_interrupted() -> None:
    repository = InMemoryRepository(_candidates(3))
    classifier = CountingClassifier(delay=30.0)
    orchestrator = _orchestrator(repository, classifier)

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        orchestrator.dispatch(job["id"])
        await asyncio.wait_for(classifier.started_event(1).wait(), timeout=5)
        await orchestrator.shutdown()
        return await repository.get_job(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "failed"
    assert finished["error_message"] == "Job interrupted"
    assert finished["processed_records"] == 0


class RecordingLimiter:
    def __init__(self, classifier: CountingClassifier) -> None:
        self.classifier = classifier
        self.calls_seen_at_acquire: list[int] = []

    async def acquire(self) -> float:
        self.calls_seen_at_acquire.append(len(self.classifier.urls))
        return 0.0


def test_requests_are_paced_between_candidates_only() -> None:
    repository = InMemoryRepository(_candidates(4))
    classifier = CountingClassifier()
    limiter = RecordingLimiter(classifier)
    orchestrator = UrlHealthOrchestrator(
        repository,
        classify_link=classifier,
        rate_limiter_factory=lambda: limiter,
    )

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert finished["processed_records"] == 4
    assert limiter.calls_seen_at_acquire == [1, 2, 3]


def test_default_rate_spaces_requests_by_interval() -> None:
    class FakeClock:
        def __init__(self) -> None:
            self.now = 50.0
            self.sleeps: list[float] = []

        def __call__(self) -> float:
            return self.now

        async def sleep(self, seconds: float) -> None:
            self.sleeps.append(seconds)
            self.now += seconds

    clock = FakeClock()
    repository = InMemoryRepository(_candidates(4))
    orchestrator = UrlHealthOrchestrator(
        repository,
        classify_link=CountingClassifier(),
        rate_limiter_factory=lambda: RateLimiter(5.0, 1, clock=clock, sleep=clock.sleep),
    )

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "completed"
    assert clock.sleeps == pytest.approx([0.2, 0.2, 0.2])


def test_timed_out_check_write_does_not_fail_job() -> None:
    class TimingOutPool:
        async def fetchrow(self, *args: Any, **kwargs: Any) -> Any:
            raise asyncio.TimeoutError()

    postgres = PostgresRepository("postgresql://localhost/link_health", 1, 1)
    postgres._pool = TimingOutPool()

    class PostgresChecksRepository(InMemoryRepository):
        async def upsert_check(self, **kwargs: Any) -> dict[str, Any]:
            return await postgres.upsert_check(**kwargs)

    repository = PostgresChecksRepository(_candidates(3))
    orchestrator = _orchestrator(repository, CountingClassifier())

    async def run() -> dict[str, Any]:
        job = await orchestrator.create("all", started_by="admin-1")
        return await orchestrator.process(job["id"])

    finished = asyncio.run(run())

    assert finished["status"] == "completed"
    assert finished["processed_records"] == 3
    assert finished["valid_urls"] == 3
    assert finished["error_message"] is None
