from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Query, status

from harvester.api.errors import http_error, require_scopes
from harvester.core.auth import JOBS_LEASE, JOBS_REPORT, JOBS_WRITE
from harvester.core.security import get_human_principal, get_machine_principal
from harvester.schemas.jobs import (
    JobCreateRequest,
    JobDeleteResponse,
    JobOut,
    LeaseRequest,
    LeaseResponse,
    ReapResponse,
    StatusUpdateRequest,
    StatusUpdateResponse,
)
from harvester.services.dependencies import get_lifecycle_manager, get_scheduler
from harvester.services.errors import HarvesterError

router = APIRouter()


@router.post("", response_model=JobOut, status_code=status.HTTP_201_CREATED)
async def create_job(
    payload: JobCreateRequest,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle_manager),
) -> JobOut:
    require_scopes(principal, {JOBS_WRITE})

    try:
        job = await lifecycle.create_job(
            payload.keyword_id,
            payload.job_type,
            payload.priority,
            payload.job_config,
            principal.subject,
            expected_results=payload.expected_results,
            estimated_duration=payload.estimated_duration,
            max_retries=payload.max_retries,
        )
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return JobOut(**asdict(job))


@router.post("/lease", response_model=LeaseResponse)
async def lease_job(
    payload: LeaseRequest | None = None,
    principal=Depends(get_machine_principal),
    scheduler=Depends(get_scheduler),
) -> LeaseResponse:
    require_scopes(principal, {JOBS_LEASE})

    worker_id = payload.worker_id if payload and payload.worker_id else principal.subject
    try:
        job = await scheduler.lease_next_job(worker_id)
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return LeaseResponse(job=JobOut(**asdict(job)) if job else None)


@router.post("/reap-expired", response_model=ReapResponse)
async def reap_expired_jobs(
    principal=Depends(get_machine_principal),
    scheduler=Depends(get_scheduler),
    limit: int = Query(default=100, ge=1, le=1000),
) -> ReapResponse:
    require_scopes(principal, {JOBS_LEASE})

    try:
        requeued = await scheduler.reap_expired_leases(limit=limit)
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return ReapResponse(requeued=requeued)


@router.post("/{job_id}/status", response_model=StatusUpdateResponse)
async def update_job_status(
    job_id: int,
    payload: StatusUpdateRequest,
    principal=Depends(get_machine_principal),
    lifecycle=Depends(get_lifecycle_manager),
) -> StatusUpdateResponse:
    require_scopes(principal, {JOBS_REPORT})

    try:
        updated = await lifecycle.update_status(
            job_id,
            payload.status,
            results_count=payload.results_count,
            error=payload.error_message,
            error_code=payload.error_code,
            job_results=payload.job_results,
            actor=principal.subject,
            worker_id=payload.worker_id or principal.subject,
        )
    except HarvesterError as exc:
        raise http_error(exc) from exc

    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return StatusUpdateResponse(job_id=job_id, status=payload.status, updated=True)


@router.post("/{job_id}/retry", response_model=JobOut)
async def retry_job(
    job_id: int,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle_manager),
) -> JobOut:
    require_scopes(principal, {JOBS_WRITE})

    try:
        job = await lifecycle.retry_job(job_id, principal.subject)
    except HarvesterError as exc:
        raise http_error(exc) from exc

    return JobOut(**asdict(job))


@router.delete("/{job_id}", response_model=JobDeleteResponse)
async def delete_job(
    job_id: int,
    principal=Depends(get_human_principal),
    lifecycle=Depends(get_lifecycle_manager),
) -> JobDeleteResponse:
    require_scopes(principal, {JOBS_WRITE})

    try:
        deleted = await lifecycle.retire_job(job_id, principal.subject)
    except HarvesterError as exc:
        raise http_error(exc) from exc

    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="job not found")
    return JobDeleteResponse(job_id=job_id, deleted=True)
