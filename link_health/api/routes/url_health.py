from fastapi import APIRouter, Depends, HTTPException, Query, status

from link_health.core.auth import URL_HEALTH_READ_SCOPE, URL_HEALTH_WRITE_SCOPE
from link_health.core.security import get_human_principal
from link_health.jobs.orchestrator import UrlHealthOrchestrator, get_orchestrator
from link_health.schemas.url_health import (
    CheckHealthStatus,
    EntityScope,
    UrlClassificationOut,
    UrlHealthCheckOut,
    UrlHealthJobOut,
    UrlHealthJobStartRequest,
    UrlHealthStatsOut,
    UrlValidateRequest,
)
from link_health.services.repository import (
    RepositoryConflictError,
    RepositoryNotFoundError,
    RepositoryUnavailableError,
    RepositoryValidationError,
)
from link_health.services.stats import compute_stats

router = APIRouter()


@router.post("/jobs", response_model=UrlHealthJobOut, status_code=status.HTTP_202_ACCEPTED)
async def start_job(
    payload: UrlHealthJobStartRequest,
    principal=Depends(get_human_principal),
    orchestrator: UrlHealthOrchestrator = Depends(get_orchestrator),
) -> UrlHealthJobOut:
    try:
        principal.require_scopes({URL_HEALTH_WRITE_SCOPE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job = await orchestrator.create(
            payload.entity_scope,
            started_by=principal.actor_id,
            include_auto_fix=payload.include_auto_fix,
            confidence_threshold=payload.confidence_threshold,
        )
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    orchestrator.dispatch(job["id"])
    return UrlHealthJobOut(**job)


@router.get("/jobs/active", response_model=UrlHealthJobOut | None)
async def get_active_job(
    principal=Depends(get_human_principal),
    orchestrator: UrlHealthOrchestrator = Depends(get_orchestrator),
) -> UrlHealthJobOut | None:
    try:
        principal.require_scopes({URL_HEALTH_READ_SCOPE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job = await orchestrator.get_active()
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UrlHealthJobOut(**job) if job else None


@router.get("/jobs", response_model=list[UrlHealthJobOut])
async def list_jobs(
    principal=Depends(get_human_principal),
    orchestrator: UrlHealthOrchestrator = Depends(get_orchestrator),
    limit: int = Query(default=20, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[UrlHealthJobOut]:
    try:
        principal.require_scopes({URL_HEALTH_READ_SCOPE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await orchestrator.repository.list_jobs(limit=limit, offset=offset)
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [UrlHealthJobOut(**row) for row in rows]


@router.get("/jobs/{job_id}", response_model=UrlHealthJobOut)
async def get_job(
    job_id: str,
    principal=Depends(get_human_principal),
    orchestrator: UrlHealthOrchestrator = Depends(get_orchestrator),
) -> UrlHealthJobOut:
    try:
        principal.require_scopes({URL_HEALTH_READ_SCOPE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job = await orchestrator.repository.get_job(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UrlHealthJobOut(**job)


@router.post("/jobs/{job_id}/cancel", response_model=UrlHealthJobOut)
async def cancel_job(
    job_id: str,
    principal=Depends(get_human_principal),
    orchestrator: UrlHealthOrchestrator = Depends(get_orchestrator),
) -> UrlHealthJobOut:
    try:
        principal.require_scopes({URL_HEALTH_WRITE_SCOPE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        job = await orchestrator.cancel(job_id)
    except RepositoryNotFoundError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except RepositoryConflictError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UrlHealthJobOut(**job)


@router.get("/stats", response_model=UrlHealthStatsOut)
async def get_stats(
    principal=Depends(get_human_principal),
    orchestrator: UrlHealthOrchestrator = Depends(get_orchestrator),
    scope: EntityScope = Query(default="all"),
) -> UrlHealthStatsOut:
    try:
        principal.require_scopes({URL_HEALTH_READ_SCOPE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        stats = await compute_stats(orchestrator.repository, scope)
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return UrlHealthStatsOut(**stats)


@router.get("/checks", response_model=list[UrlHealthCheckOut])
async def list_checks(
    principal=Depends(get_human_principal),
    orchestrator: UrlHealthOrchestrator = Depends(get_orchestrator),
    scope: EntityScope = Query(default="all"),
    health_status: CheckHealthStatus | None = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> list[UrlHealthCheckOut]:
    try:
        principal.require_scopes({URL_HEALTH_READ_SCOPE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    try:
        rows = await orchestrator.repository.list_checks(
            scope=scope,
            health_status=health_status,
            limit=limit,
            offset=offset,
        )
    except RepositoryValidationError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_CONTENT, detail=str(exc)) from exc
    except RepositoryUnavailableError as exc:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc)) from exc

    return [UrlHealthCheckOut(**row) for row in rows]


@router.post("/validate", response_model=UrlClassificationOut)
async def validate_url(
    payload: UrlValidateRequest,
    principal=Depends(get_human_principal),
    orchestrator: UrlHealthOrchestrator = Depends(get_orchestrator),
) -> UrlClassificationOut:
    try:
        principal.require_scopes({URL_HEALTH_READ_SCOPE})
    except PermissionError as exc:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(exc)) from exc

    result = await orchestrator.classify_link(payload.url)
    return UrlClassificationOut(**result.as_dict())
