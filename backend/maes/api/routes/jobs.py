"""
Job submission, listing, cancellation, logs and progress routes
"""
import uuid
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from maes.api.auth import Principal, ensure_org_access, get_principal
from maes.api.schemas.jobs import (
    JobCreate,
    JobListResponse,
    JobLogsResponse,
    JobResponse,
    JobStatsResponse,
    LogEntryResponse,
    ProgressResponse,
)
from maes.db import get_db
from maes.db.models import JobStatus, JobType
from maes.services import job_store, progress
from maes.services.dispatcher import JobDispatcher, get_dispatcher
from maes.utils import to_naive_utc

router = APIRouter()


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    organization_id: uuid.UUID,
    data: JobCreate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """
    Create a job and admit it if the organization has a free slot.
    The response carries the job id immediately; poll progress for completion.
    """
    ensure_org_access(principal, organization_id, "analyst")
    if data.job_type == JobType.OFFBOARD:
        raise HTTPException(status_code=400, detail="Offboard jobs are created through the offboard endpoints")

    job = await job_store.create_job(
        db,
        organization_id,
        data.job_type,
        parameters=data.parameters,
        priority=data.priority,
        created_by=principal.user_id,
    )
    return await dispatcher.enqueue(db, job)


@router.get("", response_model=JobListResponse)
async def list_jobs(
    organization_id: uuid.UUID,
    status: Optional[JobStatus] = None,
    job_type: Optional[JobType] = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    ensure_org_access(principal, organization_id)
    items, total = await job_store.query_jobs(
        db, organization_id, status=status, job_type=job_type, limit=limit, offset=offset
    )
    return JobListResponse(
        items=[JobResponse.model_validate(job) for job in items],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats", response_model=JobStatsResponse)
async def job_stats(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    ensure_org_access(principal, organization_id)
    return await job_store.job_stats(db, organization_id)


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    organization_id: uuid.UUID,
    job_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    ensure_org_access(principal, organization_id)
    return await job_store.get_job(db, job_id, organization_id)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    organization_id: uuid.UUID,
    job_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """Cancel a pending or running job. Cancelling a finished job is a no-op."""
    ensure_org_access(principal, organization_id, "analyst")
    job = await job_store.get_job(db, job_id, organization_id)
    if job.job_type == JobType.OFFBOARD:
        raise HTTPException(status_code=400, detail="Use the restore endpoint to cancel an offboard")
    return await dispatcher.cancel(db, job_id, organization_id, reason=f"Cancelled by {principal.user_id}")


@router.get("/{job_id}/logs", response_model=JobLogsResponse)
async def get_job_logs(
    organization_id: uuid.UUID,
    job_id: uuid.UUID,
    since: Optional[datetime] = Query(None, description="Only entries at or after this time"),
    after: Optional[int] = Query(None, ge=0, description="Only entries after this entry id"),
    limit: int = Query(500, ge=1, le=progress.MAX_LOG_PAGE),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    ensure_org_access(principal, organization_id)
    await job_store.get_job(db, job_id, organization_id)
    entries = await progress.get_logs(db, job_id, since=to_naive_utc(since), after=after, limit=limit)
    return JobLogsResponse(
        job_id=job_id,
        entries=[LogEntryResponse.model_validate(entry) for entry in entries],
        next_after=entries[-1].id if entries else after,
    )


@router.get("/{job_id}/progress", response_model=ProgressResponse)
async def get_job_progress(
    organization_id: uuid.UUID,
    job_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    ensure_org_access(principal, organization_id)
    return await progress.get_progress(db, job_id, organization_id)
