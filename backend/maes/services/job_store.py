"""
Job store and state machine.

    pending -> running -> {completed, failed, cancelled}
    pending -> cancelled

Every status change is a compare-and-set UPDATE on the current status, so a
terminal event can be applied at most once even if two writers race.
"""
import logging
import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from maes.core import metrics
from maes.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from maes.db.models import (
    ACTIVE_STATUSES,
    Job,
    JobPriority,
    JobStatus,
    JobType,
    Organization,
)
from maes.services import credential_vault
from maes.services.job_parameters import validate_parameters
from maes.utils import utcnow

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.RUNNING, JobStatus.CANCELLED}),
    JobStatus.RUNNING: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
    JobStatus.CANCELLED: frozenset(),
}


def can_transition(current: JobStatus, new: JobStatus) -> bool:
    return new in ALLOWED_TRANSITIONS[current]


async def _check_preconditions(db: AsyncSession, org: Organization, job_type: JobType, parameters: dict) -> None:
    if job_type == JobType.OFFBOARD:
        return

    if not org.is_active or org.is_offboarding:
        raise ConflictError(
            f"Organization '{org.name}' is inactive or scheduled for offboarding",
            {"organization_id": str(org.id), "offboard_scheduled_at": _iso(org.offboard_scheduled_at)},
        )

    if job_type in (JobType.EXTRACTION, JobType.CONNECTION_TEST):
        if not credential_vault.has_usable_credentials(org):
            raise ConflictError(
                f"Organization '{org.name}' is not properly configured: "
                "applicationId and either clientSecret or certificateThumbprint are required",
                {"organization_id": str(org.id)},
            )

    if job_type == JobType.ANALYSIS:
        extraction_id = uuid.UUID(parameters["extraction_id"])
        extraction = await db.get(Job, extraction_id)
        if (
            not extraction
            or extraction.organization_id != org.id
            or extraction.job_type != JobType.EXTRACTION
        ):
            raise ValidationError(
                "extraction_id does not reference an extraction job of this organization",
                {"extraction_id": str(extraction_id)},
            )
        if extraction.status != JobStatus.COMPLETED:
            raise ConflictError(
                "Analysis requires a completed extraction",
                {"extraction_id": str(extraction_id), "extraction_status": extraction.status.value},
            )


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


async def create_job(
    db: AsyncSession,
    organization_id: uuid.UUID,
    job_type: JobType,
    parameters: Optional[dict] = None,
    priority: JobPriority = JobPriority.MEDIUM,
    created_by: Optional[str] = None,
    scheduled_for: Optional[datetime] = None,
    commit: bool = True,
) -> Job:
    """Validate and persist a new pending job."""
    org = await db.get(Organization, organization_id)
    if not org:
        raise NotFoundError("Organization not found", {"organization_id": str(organization_id)})

    clean_parameters = validate_parameters(job_type, parameters)
    await _check_preconditions(db, org, job_type, clean_parameters)

    job = Job(
        organization_id=organization_id,
        job_type=job_type,
        status=JobStatus.PENDING,
        priority=priority,
        progress=0,
        parameters=clean_parameters,
        status_flags={},
        created_by=created_by,
        scheduled_for=scheduled_for,
    )
    db.add(job)
    if commit:
        await db.commit()
    else:
        await db.flush()

    metrics.record_created(job_type)
    logger.info(f"Job {job.id} created: type={job_type.value} org={organization_id} priority={priority.value}")
    return job


async def get_job(db: AsyncSession, job_id: uuid.UUID, organization_id: Optional[uuid.UUID] = None) -> Job:
    """Load a job; a job of another organization is reported as not found."""
    job = await db.get(Job, job_id, populate_existing=True)
    if not job or (organization_id is not None and job.organization_id != organization_id):
        raise NotFoundError("Job not found", {"job_id": str(job_id)})
    return job


async def transition(
    db: AsyncSession,
    job_id: uuid.UUID,
    new_status: JobStatus,
    progress: Optional[int] = None,
    message: Optional[str] = None,
    result: Optional[dict[str, Any]] = None,
) -> Job:
    """
    Apply one edge of the state machine.

    Raises InvalidTransitionError for any edge not in ALLOWED_TRANSITIONS,
    including every attempt to leave a terminal state.
    """
    job = await get_job(db, job_id)
    current = job.status
    if not can_transition(current, new_status):
        raise InvalidTransitionError(
            f"Job {job_id} cannot move from {current.value} to {new_status.value}",
            {"job_id": str(job_id), "from": current.value, "to": new_status.value},
        )

    now = utcnow()
    values: dict[str, Any] = {"status": new_status, "updated_at": now}
    if progress is not None:
        values["progress"] = _check_percent(progress)
    if message is not None:
        values["current_message"] = message

    if new_status == JobStatus.RUNNING:
        values["started_at"] = now
    else:
        values["completed_at"] = now
        values["duration"] = (now - job.started_at).total_seconds() if job.started_at else 0.0
        if new_status == JobStatus.COMPLETED:
            values["progress"] = 100
            values["result"] = result or {}
        elif new_status == JobStatus.FAILED:
            values["error_message"] = message or "Job failed"
            if result is not None:
                values["result"] = result
        elif new_status == JobStatus.CANCELLED and message is None:
            values["current_message"] = "Cancelled"

    res = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 0:
        await db.refresh(job)
        raise InvalidTransitionError(
            f"Job {job_id} changed concurrently (now {job.status.value})",
            {"job_id": str(job_id), "from": job.status.value, "to": new_status.value},
        )
    await db.commit()
    await db.refresh(job)

    metrics.record_transition(job, new_status)
    logger.info(f"Job {job_id}: {current.value} -> {new_status.value}")
    return job


def _check_percent(percent: int) -> int:
    if not 0 <= percent <= 100:
        raise ValidationError("progress must be between 0 and 100", {"progress": percent})
    return percent


async def record_progress(
    db: AsyncSession,
    job_id: uuid.UUID,
    percent: int,
    message: Optional[str] = None,
) -> Job:
    """Update progress of a running job (no status change)."""
    percent = _check_percent(percent)
    values: dict[str, Any] = {"progress": percent, "updated_at": utcnow()}
    if message is not None:
        values["current_message"] = message

    res = await db.execute(
        update(Job)
        .where(Job.id == job_id, Job.status == JobStatus.RUNNING)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    job = await get_job(db, job_id)
    if res.rowcount == 0:
        await db.refresh(job)
        raise InvalidTransitionError(
            f"Progress for job {job_id} rejected in state {job.status.value}",
            {"job_id": str(job_id), "status": job.status.value},
        )
    await db.commit()
    await db.refresh(job)
    return job


async def cancel_job(
    db: AsyncSession,
    job_id: uuid.UUID,
    organization_id: Optional[uuid.UUID] = None,
    reason: Optional[str] = None,
) -> tuple[Job, bool]:
    """
    Cancel a pending or running job.

    Idempotent: a job already in a terminal state is returned unchanged.
    Returns (job, changed) where changed tells whether this call cancelled it.
    """
    job = await get_job(db, job_id, organization_id)
    if job.status.is_terminal:
        return job, False
    try:
        job = await transition(db, job_id, JobStatus.CANCELLED, message=reason or "Cancelled")
    except InvalidTransitionError:
        # Reached a terminal state between the read and the update.
        job = await get_job(db, job_id)
        return job, False
    return job, True


async def query_jobs(
    db: AsyncSession,
    organization_id: uuid.UUID,
    status: Optional[JobStatus] = None,
    job_type: Optional[JobType] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[Job], int]:
    """Paginated job list, newest first. Returns (items, total)."""
    conditions = [Job.organization_id == organization_id]
    if status is not None:
        conditions.append(Job.status == status)
    if job_type is not None:
        conditions.append(Job.job_type == job_type)

    total = (await db.execute(select(func.count(Job.id)).where(*conditions))).scalar_one()
    result = await db.execute(
        select(Job)
        .where(*conditions)
        .order_by(Job.created_at.desc(), Job.id)
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all()), total


async def count_running(db: AsyncSession, organization_id: uuid.UUID) -> int:
    result = await db.execute(
        select(func.count(Job.id)).where(
            Job.organization_id == organization_id,
            Job.status == JobStatus.RUNNING,
            Job.job_type != JobType.OFFBOARD,
        )
    )
    return result.scalar_one()


async def list_pending(db: AsyncSession, organization_id: uuid.UUID) -> list[Job]:
    """Pending executor-bound jobs of an organization (offboard jobs are timer-driven)."""
    result = await db.execute(
        select(Job).where(
            Job.organization_id == organization_id,
            Job.status == JobStatus.PENDING,
            Job.job_type != JobType.OFFBOARD,
        )
    )
    return list(result.scalars().all())


async def count_pending_by_organization(db: AsyncSession) -> dict[str, int]:
    """Queue depth of every organization with executor-bound work waiting."""
    result = await db.execute(
        select(Job.organization_id, func.count(Job.id))
        .where(Job.status == JobStatus.PENDING, Job.job_type != JobType.OFFBOARD)
        .group_by(Job.organization_id)
    )
    return {str(organization_id): count for organization_id, count in result.all()}


async def list_active(
    db: AsyncSession,
    organization_id: uuid.UUID,
    job_types: Optional[tuple[JobType, ...]] = None,
) -> list[Job]:
    conditions = [Job.organization_id == organization_id, Job.status.in_(list(ACTIVE_STATUSES))]
    if job_types:
        conditions.append(Job.job_type.in_(list(job_types)))
    result = await db.execute(select(Job).where(*conditions).order_by(Job.created_at))
    return list(result.scalars().all())


async def list_running(db: AsyncSession, started_before: Optional[datetime] = None) -> list[Job]:
    """Running executor-bound jobs across all organizations."""
    conditions = [Job.status == JobStatus.RUNNING, Job.job_type != JobType.OFFBOARD]
    if started_before is not None:
        conditions.append(Job.started_at < started_before)
    result = await db.execute(select(Job).where(*conditions))
    return list(result.scalars().all())


async def job_stats(db: AsyncSession, organization_id: uuid.UUID) -> dict:
    """Counts by status and by type for one organization."""
    by_status = {status.value: 0 for status in JobStatus}
    rows = await db.execute(
        select(Job.status, func.count(Job.id))
        .where(Job.organization_id == organization_id)
        .group_by(Job.status)
    )
    for status, count in rows.all():
        by_status[status.value] = count

    by_type = {job_type.value: 0 for job_type in JobType}
    rows = await db.execute(
        select(Job.job_type, func.count(Job.id))
        .where(Job.organization_id == organization_id)
        .group_by(Job.job_type)
    )
    for job_type, count in rows.all():
        by_type[job_type.value] = count

    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_type": by_type,
    }
