"""
Sync queue API endpoints.

Producer, consumer and operator endpoints. Consumer endpoints (claim and
outcome reports) are reserved for the service role.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from api.config.settings import Settings, SettingsDep
from api.infra.database import get_session
from api.v1.core.exceptions import (
    ConflictError,
    NotFoundError,
    create_success_response,
)
from api.v1.core.security import (
    Principal,
    PrincipalDep,
    is_service_role,
    require_org_admin,
    require_service_role,
    resolve_org_id,
)
from api.v1.infra.jobs.models import Job, JobStatus
from api.v1.infra.jobs.schemas import (
    ClaimRequest,
    ClaimResponse,
    HeartbeatRequest,
    HeartbeatResponse,
    JobActionRequest,
    JobActionResponse,
    JobEnqueueRequest,
    JobListFilters,
    JobListResponse,
    JobResponse,
    ReportFailureRequest,
    ReportSuccessRequest,
)
from api.v1.infra.jobs.service import JobService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def _read_scope(principal: Principal, org_id: UUID | None) -> UUID | None:
    """Org filter for reads; the service role may read across all orgs."""
    if org_id is None and is_service_role(principal):
        return None
    return resolve_org_id(principal, org_id)


def _list_payload(jobs: list[Job], total: int, limit: int, offset: int) -> dict:
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        total=total,
        limit=limit,
        offset=offset,
    ).model_dump(mode="json")


async def _require_job(
    job_service: JobService, session: AsyncSession, job_id: int
) -> Job:
    job = await job_service.get_job_by_id(session, job_id)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": job_id})
    return job


@router.post("", response_model=dict)
async def enqueue_job(
    job_request: JobEnqueueRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Enqueue a job, or refresh the pending job with the same dedupe key."""
    job_service = JobService(settings)
    result = await job_service.enqueue_job(
        session, job_request, principal, org_id=job_request.org_id
    )

    logger.info(
        "Job enqueued via API",
        extra={
            "job_id": result.job_id,
            "type": job_request.job_type,
            "user_id": principal.user_id,
            "deduplicated": result.deduplicated,
        },
    )

    return create_success_response(data=result.model_dump())


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    job_type: str | None = Query(default=None, description="Filter by job type"),
    org_id: UUID | None = Query(default=None, description="Organization scope"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """List jobs with filtering and pagination."""
    scope = _read_scope(principal, org_id)
    filters = JobListFilters(
        status=status, job_type=job_type, limit=limit, offset=offset
    )

    jobs, total = await JobService(settings).list_jobs(session, scope, filters)
    return create_success_response(data=_list_payload(jobs, total, limit, offset))


@router.get("/failed", response_model=dict)
async def list_failed_jobs(
    org_id: UUID | None = Query(default=None, description="Organization scope"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Terminally failed jobs, with their last error, for manual remediation."""
    scope = _read_scope(principal, org_id)
    jobs, total = await JobService(settings).list_failed_jobs(
        session, scope, limit=limit, offset=offset
    )
    return create_success_response(data=_list_payload(jobs, total, limit, offset))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    org_id: UUID | None = Query(default=None, description="Organization scope"),
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get job statistics for the organization."""
    scope = _read_scope(principal, org_id)
    stats = await JobService(settings).get_job_stats(session, scope)

    return create_success_response(data=stats.model_dump())


@router.post("/claim", response_model=dict)
async def claim_jobs(
    request: ClaimRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Claim due jobs for an external dispatcher."""
    require_service_role(principal)

    jobs = await JobService(settings).claim_batch(
        session,
        request.max_n,
        worker_id=request.worker_id,
        claim_timeout_s=request.claim_timeout_s,
    )
    response = ClaimResponse(jobs=[JobResponse.model_validate(job) for job in jobs])

    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/heartbeat", response_model=dict)
async def heartbeat(
    request: HeartbeatRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Extend the claims a dispatcher still holds on long-running jobs."""
    require_service_role(principal)

    extended = await JobService(settings).extend_claims(
        session,
        request.job_ids,
        worker_id=request.worker_id,
        claim_timeout_s=request.claim_timeout_s,
    )
    response = HeartbeatResponse(requested=len(request.job_ids), extended=extended)

    return create_success_response(data=response.model_dump())


@router.get("/{job_id:int}", response_model=dict)
async def get_job(
    job_id: int,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job_service = JobService(settings)
    scope = None if is_service_role(principal) else principal.org_uuid
    job = await job_service.get_job_by_id(session, job_id, scope)

    if not job:
        raise NotFoundError("Job not found", details={"job_id": job_id})

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/{job_id:int}/success", response_model=dict)
async def report_success(
    job_id: int,
    request: ReportSuccessRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Report that a claimed job's side effect succeeded."""
    require_service_role(principal)
    job_service = JobService(settings)

    success = await job_service.report_success(
        session, job_id, worker_id=request.worker_id, result=request.result
    )
    if not success:
        job = await _require_job(job_service, session, job_id)
        raise ConflictError(
            "Job is not held by this worker",
            details={"job_id": job_id, "status": job.status},
        )

    return create_success_response(data={"success": True, "job_id": job_id})


@router.post("/{job_id:int}/failure", response_model=dict)
async def report_failure(
    job_id: int,
    request: ReportFailureRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Report that a claimed job failed; it is retried or failed terminally."""
    require_service_role(principal)
    job_service = JobService(settings)

    job = await job_service.report_failure(
        session,
        job_id,
        request.error_message,
        worker_id=request.worker_id,
        permanent=request.permanent,
    )
    if job is None:
        current = await _require_job(job_service, session, job_id)
        raise ConflictError(
            "Job is not held by this worker",
            details={"job_id": job_id, "status": current.status},
        )

    return create_success_response(
        data=JobResponse.model_validate(job).model_dump(mode="json")
    )


@router.post("/batch/retry", response_model=dict)
async def retry_jobs_batch(
    request: JobActionRequest,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Retry multiple failed jobs of the caller's organization."""
    job_service = JobService(settings)
    scope = None if is_service_role(principal) else principal.org_uuid
    if scope is not None:
        require_org_admin(principal, scope)

    success_ids = []
    failed_ids = []
    errors = {}

    for job_id in request.job_ids:
        if await job_service.retry_job(session, job_id, scope):
            success_ids.append(job_id)
        else:
            failed_ids.append(job_id)
            errors[str(job_id)] = "Job not found or not eligible for retry"

    logger.info(
        "Batch job retry via API",
        extra={
            "success_count": len(success_ids),
            "failed_count": len(failed_ids),
            "user_id": principal.user_id,
        },
    )

    response = JobActionResponse(
        success_ids=success_ids, failed_ids=failed_ids, errors=errors
    )

    return create_success_response(data=response.model_dump())


@router.post("/{job_id:int}/retry", response_model=dict)
async def retry_job(
    job_id: int,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    settings: Settings = SettingsDep,
) -> dict[str, Any]:
    """Re-drive a terminally failed job."""
    job_service = JobService(settings)
    scope = None if is_service_role(principal) else principal.org_uuid
    job = await job_service.get_job_by_id(session, job_id, scope)
    if not job:
        raise NotFoundError("Job not found", details={"job_id": job_id})
    require_org_admin(principal, job.org_id)

    success = await job_service.retry_job(session, job_id, job.org_id)
    if not success:
        raise ConflictError(
            "Only failed jobs can be retried",
            details={"job_id": job_id, "status": job.status},
        )

    logger.info(
        "Job retried via API",
        extra={
            "job_id": job_id,
            "org_id": str(job.org_id),
            "user_id": principal.user_id,
        },
    )

    return create_success_response(data={"success": True, "job_id": job_id})
