"""
Organization lifecycle manager.

    active <-> offboarding(scheduled, grace days) -> purged

Purging walks a fixed ordered list of cleanup steps (primary store, cache,
then each cooperating executor service). Every step has its own timeout and
its outcome is written to a CleanupRecord; a failed step never stops the
following ones. A retry only re-runs steps that have not succeeded yet, and
purging an organization that no longer exists is a no-op success.
"""
import asyncio
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Optional

from kombu.exceptions import OperationalError
from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from maes.core.config import settings
from maes.core.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    OrchestrationError,
    PermissionDeniedError,
    ValidationError,
)
from maes.db.models import (
    Alert,
    CleanupRecord,
    CleanupStatus,
    Job,
    JobLog,
    JobPriority,
    JobStatus,
    JobType,
    Organization,
    Report,
)
from maes.services import job_store
from maes.services.cache import OrganizationCache, organization_cache
from maes.services.dispatcher import JobDispatcher, dispatcher as default_dispatcher
from maes.services.executors import CooperatingServiceClient, get_cooperating_services
from maes.utils import utcnow

logger = logging.getLogger(__name__)

DEFAULT_ORGANIZATION_ID = uuid.UUID(settings.DEFAULT_ORGANIZATION_ID)
DEFAULT_ORGANIZATION_NAME = "Default Organization"

PRIMARY_STORE_STEP = "primary_store"
CACHE_STEP = "cache"
STEP_SUCCEEDED = "succeeded"
STEP_FAILED = "failed"

# A delayed purge message may be delivered slightly before its eta.
SCHEDULE_SKEW = timedelta(minutes=1)


@dataclass
class CleanupStep:
    name: str
    run: Callable[[AsyncSession, uuid.UUID], Awaitable[Optional[dict]]]
    # Failure of a non-critical step is a warning, not an overall failure.
    critical: bool = False


class PurgeScheduler:
    """Delivers purge jobs to the orchestration worker queue."""

    def schedule(self, job_id: uuid.UUID, eta: Optional[datetime] = None) -> None:
        from maes.workers.tasks import purge_organization_task

        try:
            purge_organization_task.apply_async(args=[str(job_id)], eta=eta, task_id=str(job_id))
        except (OperationalError, OSError) as e:
            # The due-offboard sweep purges anything whose message never arrived.
            logger.warning(f"Purge job {job_id} not queued ({e}); the offboard sweep will pick it up")

    def revoke(self, job_id: uuid.UUID) -> None:
        from maes.workers.celery_app import celery_app

        try:
            celery_app.control.revoke(str(job_id))
        except (OperationalError, OSError) as e:
            logger.warning(f"Revoke of purge job {job_id} not delivered: {e}")


def is_protected(organization_id: uuid.UUID) -> bool:
    return organization_id == DEFAULT_ORGANIZATION_ID


def _protect_default(organization_id: uuid.UUID, action: str) -> None:
    if is_protected(organization_id):
        raise PermissionDeniedError(
            f"The default organization cannot be {action}",
            {"organization_id": str(organization_id)},
        )


def summarize_record(record: CleanupRecord) -> dict:
    return {
        "cleanup_record_id": str(record.id),
        "status": record.status.value,
        "attempts": record.attempts,
        "steps": dict(record.steps or {}),
        "failed_steps": record.failed_steps(),
    }


class LifecycleManager:
    def __init__(
        self,
        dispatcher: Optional[JobDispatcher] = None,
        cache: Optional[OrganizationCache] = None,
        services: Optional[list[CooperatingServiceClient]] = None,
        scheduler: Optional[PurgeScheduler] = None,
        step_timeout: Optional[float] = None,
    ):
        self.dispatcher = dispatcher or default_dispatcher
        self.cache = cache or organization_cache
        self.services = services if services is not None else get_cooperating_services()
        self.scheduler = scheduler or PurgeScheduler()
        self.step_timeout = step_timeout or settings.CLEANUP_STEP_TIMEOUT_SEC

    # === REGISTRATION ===

    async def register(
        self,
        db: AsyncSession,
        name: str,
        domain: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Organization:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Organization name is required", {"field": "name"})
        org = Organization(name=name, domain=domain, tenant_id=tenant_id, is_active=True)
        db.add(org)
        await db.commit()
        logger.info(f"Organization {org.id} registered: {name}")
        return org

    async def ensure_default_organization(self, db: AsyncSession) -> Organization:
        org = await db.get(Organization, DEFAULT_ORGANIZATION_ID)
        if org is None:
            org = Organization(id=DEFAULT_ORGANIZATION_ID, name=DEFAULT_ORGANIZATION_NAME, is_active=True)
            db.add(org)
            await db.commit()
            logger.info("Default organization created")
        return org

    async def get_organization(self, db: AsyncSession, organization_id: uuid.UUID) -> Organization:
        org = await db.get(Organization, organization_id)
        if not org:
            raise NotFoundError("Organization not found", {"organization_id": str(organization_id)})
        return org

    # === OFFBOARDING ===

    async def _pending_offboard_job(self, db: AsyncSession, organization_id: uuid.UUID) -> Optional[Job]:
        result = await db.execute(
            select(Job)
            .where(
                Job.organization_id == organization_id,
                Job.job_type == JobType.OFFBOARD,
                Job.status.in_([JobStatus.PENDING, JobStatus.RUNNING]),
            )
            .order_by(Job.created_at.desc())
        )
        return result.scalars().first()

    async def schedule_offboard(
        self,
        db: AsyncSession,
        organization_id: uuid.UUID,
        grace_days: Optional[int] = None,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
    ) -> tuple[Organization, Job]:
        """Deactivate the organization and schedule its purge after the grace period."""
        _protect_default(organization_id, "offboarded")
        org = await self.get_organization(db, organization_id)

        if org.offboard_scheduled_at is not None:
            existing = await self._pending_offboard_job(db, organization_id)
            raise ConflictError(
                "Organization is already scheduled for offboarding",
                {
                    "offboard_scheduled_at": org.offboard_scheduled_at.isoformat(),
                    "grace_period_days": org.offboard_grace_period_days,
                    "job_id": str(existing.id) if existing else None,
                },
            )

        if grace_days is None:
            grace_days = settings.OFFBOARD_DEFAULT_GRACE_DAYS
        if not 0 <= grace_days <= settings.OFFBOARD_MAX_GRACE_DAYS:
            raise ValidationError(
                f"grace_days must be between 0 and {settings.OFFBOARD_MAX_GRACE_DAYS}",
                {"grace_days": grace_days},
            )

        offboard_at = utcnow() + timedelta(days=grace_days)
        org.is_active = False
        org.offboard_scheduled_at = offboard_at
        org.offboard_reason = reason
        org.offboard_grace_period_days = grace_days

        job = await job_store.create_job(
            db,
            organization_id,
            JobType.OFFBOARD,
            parameters={"reason": reason, "scheduled_for": offboard_at, "force": True},
            priority=JobPriority.HIGH,
            created_by=requested_by,
            scheduled_for=offboard_at,
            commit=False,
        )
        await db.commit()

        self.scheduler.schedule(job.id, eta=offboard_at)
        logger.info(f"Organization {organization_id} offboarding scheduled for {offboard_at.isoformat()} (job {job.id})")
        return org, job

    async def restore(self, db: AsyncSession, organization_id: uuid.UUID) -> Organization:
        """Cancel a scheduled offboard and reactivate the organization."""
        org = await self.get_organization(db, organization_id)
        if org.offboard_scheduled_at is None:
            raise ConflictError(
                "Organization is not scheduled for offboarding",
                {"organization_id": str(organization_id)},
            )

        offboard_job = await self._pending_offboard_job(db, organization_id)
        if offboard_job is not None and offboard_job.status == JobStatus.RUNNING:
            raise ConflictError(
                "Purge is already running and cannot be undone",
                {"job_id": str(offboard_job.id)},
            )
        if offboard_job is not None:
            await job_store.cancel_job(db, offboard_job.id, reason="Offboarding cancelled by restore")
            self.scheduler.revoke(offboard_job.id)

        org = await self.get_organization(db, organization_id)
        org.is_active = True
        org.offboard_scheduled_at = None
        org.offboard_reason = None
        org.offboard_grace_period_days = None
        await db.commit()

        logger.info(f"Organization {organization_id} restored")
        await self.dispatcher.admit_next(db, organization_id)
        return org

    # === PURGE ===

    def cleanup_steps(self) -> list[CleanupStep]:
        steps = [
            CleanupStep(PRIMARY_STORE_STEP, self._purge_primary_store, critical=True),
            CleanupStep(CACHE_STEP, self._purge_cache),
        ]
        for service in self.services:
            steps.append(CleanupStep(service.name, _service_step(service)))
        return steps

    async def _purge_primary_store(self, db: AsyncSession, organization_id: uuid.UUID) -> dict:
        """Delete organization-scoped rows, children before parents."""
        # Offboard jobs and their logs stay behind as the audit trail.
        owned_jobs = select(Job.id).where(
            Job.organization_id == organization_id,
            Job.job_type != JobType.OFFBOARD,
        )
        statements = [
            ("job_logs", delete(JobLog).where(JobLog.job_id.in_(owned_jobs))),
            ("alerts", delete(Alert).where(Alert.organization_id == organization_id)),
            ("reports", delete(Report).where(Report.organization_id == organization_id)),
            (
                "jobs",
                delete(Job).where(Job.organization_id == organization_id, Job.job_type != JobType.OFFBOARD),
            ),
        ]
        counts = {}
        for table, statement in statements:
            result = await db.execute(statement.execution_options(synchronize_session=False))
            counts[table] = result.rowcount
        await db.commit()
        return counts

    async def _purge_cache(self, db: AsyncSession, organization_id: uuid.UUID) -> dict:
        return {"keys_deleted": await self.cache.purge(organization_id)}

    async def _open_record(self, db: AsyncSession, organization_id: uuid.UUID) -> Optional[CleanupRecord]:
        result = await db.execute(
            select(CleanupRecord)
            .where(
                CleanupRecord.organization_id == organization_id,
                CleanupRecord.status != CleanupStatus.COMPLETED,
            )
            .order_by(CleanupRecord.created_at.desc())
        )
        return result.scalars().first()

    async def _stop_active_work(
        self, db: AsyncSession, organization_id: uuid.UUID, keep_job_id: Optional[uuid.UUID]
    ) -> list[str]:
        cancelled = []
        for job in await job_store.list_active(db, organization_id):
            if job.id == keep_job_id:
                continue
            await self.dispatcher.cancel(db, job.id, reason="Organization is being purged")
            cancelled.append(str(job.id))
        if cancelled:
            logger.info(f"Cancelled {len(cancelled)} active job(s) of organization {organization_id} before purge")
        return cancelled

    async def _run_step(self, db: AsyncSession, step: CleanupStep, organization_id: uuid.UUID) -> dict:
        attempted_at = utcnow().isoformat()
        try:
            detail = await asyncio.wait_for(step.run(db, organization_id), timeout=self.step_timeout)
        except asyncio.TimeoutError:
            reason = f"timed out after {self.step_timeout}s"
        except OrchestrationError as e:
            reason = e.message
        except Exception as e:
            reason = f"{e.__class__.__name__}: {e}"
        else:
            logger.info(f"Cleanup step '{step.name}' succeeded for organization {organization_id}")
            return {"status": STEP_SUCCEEDED, "reason": None, "attempted_at": attempted_at, "detail": detail}

        await db.rollback()
        if step.critical:
            logger.error(f"Cleanup step '{step.name}' failed for organization {organization_id}: {reason}")
        else:
            logger.warning(f"Cleanup step '{step.name}' failed for organization {organization_id}: {reason}")
        return {"status": STEP_FAILED, "reason": reason, "attempted_at": attempted_at}

    async def purge_now(
        self,
        db: AsyncSession,
        organization_id: uuid.UUID,
        force: bool = False,
        job_id: Optional[uuid.UUID] = None,
    ) -> Optional[CleanupRecord]:
        """
        Irreversibly delete the organization and everything derived from it.

        Returns the CleanupRecord of this attempt, or None when the organization
        is already gone and nothing is left to retry.
        """
        _protect_default(organization_id, "purged")

        org = await db.get(Organization, organization_id, populate_existing=True)
        record = await self._open_record(db, organization_id)

        if org is None and record is None:
            logger.info(f"Organization {organization_id} already purged; nothing to do")
            return None

        if org is not None:
            if not force:
                blocking = await job_store.list_active(db, organization_id, (JobType.EXTRACTION,))
                if blocking:
                    raise ConflictError(
                        "Organization has active extraction jobs",
                        {"blocking_job_ids": [str(job.id) for job in blocking]},
                    )
            # No new admissions from here on.
            org.is_active = False
            await db.commit()
            await self._stop_active_work(db, organization_id, keep_job_id=job_id)

            if record is None:
                record = CleanupRecord(
                    organization_id=organization_id,
                    organization_name=org.name,
                    job_id=job_id,
                    steps={},
                    status=CleanupStatus.IN_PROGRESS,
                    attempts=0,
                    forced=force,
                )
                db.add(record)

        record.attempts += 1
        if job_id is not None:
            record.job_id = job_id
        await db.commit()

        done = {name for name, outcome in (record.steps or {}).items() if outcome.get("status") == STEP_SUCCEEDED}
        steps = {**(record.steps or {})}
        for step in self.cleanup_steps():
            if step.name in done:
                continue
            if org is None and step.name == PRIMARY_STORE_STEP:
                # Row already deleted, which only happens after this step succeeded.
                continue
            steps[step.name] = await self._run_step(db, step, organization_id)
            # Failed steps roll the session back, which expires the record.
            await db.refresh(record)

        record.steps = steps
        primary_ok = steps.get(PRIMARY_STORE_STEP, {}).get("status") == STEP_SUCCEEDED
        if org is not None and primary_ok:
            await db.execute(
                delete(Organization)
                .where(Organization.id == organization_id)
                .execution_options(synchronize_session=False)
            )
            db.expunge(org)
            logger.info(f"Organization {organization_id} row deleted")

        if all(outcome.get("status") == STEP_SUCCEEDED for outcome in steps.values()):
            record.status = CleanupStatus.COMPLETED
            record.completed_at = utcnow()
        else:
            record.status = CleanupStatus.PARTIAL
        await db.commit()

        logger.info(
            f"Purge of organization {organization_id} finished: {record.status.value}"
            f" (attempt {record.attempts}, failed: {record.failed_steps() or 'none'})"
        )
        return record

    async def request_purge(
        self,
        db: AsyncSession,
        organization_id: uuid.UUID,
        force: bool = False,
        requested_by: Optional[str] = None,
    ) -> Job:
        """
        Validate a delete request and queue the purge job.

        Blocking-job conflicts are reported synchronously so the caller can
        decide whether to force.
        """
        _protect_default(organization_id, "purged")
        org = await self.get_organization(db, organization_id)

        running_purge = await self._pending_offboard_job(db, organization_id)
        if running_purge is not None and running_purge.status == JobStatus.RUNNING:
            raise ConflictError("Purge is already running", {"job_id": str(running_purge.id)})

        if not force:
            blocking = await job_store.list_active(db, organization_id, (JobType.EXTRACTION,))
            if blocking:
                raise ConflictError(
                    "Organization has active extraction jobs; retry with force=true to cancel them",
                    {"blocking_job_ids": [str(job.id) for job in blocking]},
                )

        job = await job_store.create_job(
            db,
            org.id,
            JobType.OFFBOARD,
            parameters={"reason": "Immediate deletion", "force": force},
            priority=JobPriority.CRITICAL,
            created_by=requested_by,
        )
        self.scheduler.schedule(job.id)
        logger.info(f"Immediate purge of organization {organization_id} queued (job {job.id}, force={force})")
        return job

    async def run_purge_job(self, db: AsyncSession, job_id: uuid.UUID) -> Job:
        """
        Worker entry point for scheduled and immediate purge jobs.

        A job that is already running was interrupted (worker crash, broker
        redelivery, task retry) and is resumed: the CleanupRecord makes the
        purge pick up at the first step that has not succeeded.
        """
        job = await job_store.get_job(db, job_id)
        if job.status == JobStatus.RUNNING:
            logger.warning(f"Resuming interrupted purge job {job_id}")
        elif job.status != JobStatus.PENDING:
            logger.info(f"Purge job {job_id} is {job.status.value}; skipping")
            return job
        else:
            if job.scheduled_for is not None:
                org = await db.get(Organization, job.organization_id, populate_existing=True)
                if org is not None and org.offboard_scheduled_at is None:
                    job, _ = await job_store.cancel_job(db, job_id, reason="Organization was restored")
                    return job
                if org is not None and org.offboard_scheduled_at > utcnow() + SCHEDULE_SKEW:
                    # Early delivery; the due-offboard sweep runs it once the grace period ends.
                    logger.info(
                        f"Purge job {job_id} delivered before {org.offboard_scheduled_at.isoformat()}; leaving pending"
                    )
                    return job

            try:
                await job_store.transition(
                    db, job_id, JobStatus.RUNNING, progress=0, message="Purging organization data"
                )
            except InvalidTransitionError as e:
                logger.info(f"Purge job {job_id} not started: {e.message}")
                return await job_store.get_job(db, job_id)

        force = bool((job.parameters or {}).get("force", True))
        try:
            record = await self.purge_now(db, job.organization_id, force=force, job_id=job_id)
        except OrchestrationError as e:
            return await job_store.transition(db, job_id, JobStatus.FAILED, message=e.message, result=e.details)
        except (SQLAlchemyError, OSError):
            # Infrastructure trouble: the job stays running so a retry or the sweep resumes it.
            await db.rollback()
            raise
        except Exception as e:
            logger.exception(f"Purge job {job_id} aborted")
            await db.rollback()
            return await job_store.transition(
                db, job_id, JobStatus.FAILED, message=f"Purge aborted: {e.__class__.__name__}: {e}"
            )

        if record is None:
            return await job_store.transition(
                db, job_id, JobStatus.COMPLETED, message="Organization already purged", result={"already_purged": True}
            )

        summary = summarize_record(record)
        primary = record.steps.get(PRIMARY_STORE_STEP, {})
        if primary.get("status") == STEP_FAILED:
            return await job_store.transition(
                db,
                job_id,
                JobStatus.FAILED,
                message=f"Primary store cleanup failed: {primary.get('reason')}",
                result=summary,
            )
        message = "Organization purged" if record.status == CleanupStatus.COMPLETED else (
            f"Organization purged; pending retry for {', '.join(record.failed_steps())}"
        )
        return await job_store.transition(db, job_id, JobStatus.COMPLETED, message=message, result=summary)

    async def resume_stalled_purges(self, db: AsyncSession) -> int:
        """Resume purge jobs left running past PURGE_JOB_STALL_SEC. Returns jobs resumed."""
        cutoff = utcnow() - timedelta(seconds=settings.PURGE_JOB_STALL_SEC)
        result = await db.execute(
            select(Job.id).where(
                Job.job_type == JobType.OFFBOARD,
                Job.status == JobStatus.RUNNING,
                Job.started_at < cutoff,
            )
        )
        stalled = list(result.scalars().all())
        for job_id in stalled:
            logger.warning(f"Purge job {job_id} running since before {cutoff.isoformat()}; resuming")
            await self.run_purge_job(db, job_id)
        return len(stalled)

    async def sweep_due_offboards(self, db: AsyncSession) -> int:
        """
        Purge organizations whose grace period elapsed and resume stalled
        purges. Returns purges run.
        """
        count = await self.resume_stalled_purges(db)
        result = await db.execute(
            select(Organization.id).where(
                Organization.offboard_scheduled_at.is_not(None),
                Organization.offboard_scheduled_at <= utcnow(),
            )
        )
        for organization_id in result.scalars().all():
            if is_protected(organization_id):
                continue
            job = await self._pending_offboard_job(db, organization_id)
            if job is not None and job.status == JobStatus.RUNNING:
                continue
            if job is None:
                org = await db.get(Organization, organization_id)
                job = await job_store.create_job(
                    db,
                    organization_id,
                    JobType.OFFBOARD,
                    parameters={"reason": org.offboard_reason, "scheduled_for": org.offboard_scheduled_at, "force": True},
                    priority=JobPriority.HIGH,
                    scheduled_for=org.offboard_scheduled_at,
                )
            logger.info(f"Offboard sweep purging organization {organization_id} (job {job.id})")
            await self.run_purge_job(db, job.id)
            count += 1
        return count

    async def list_cleanup_records(self, db: AsyncSession, organization_id: uuid.UUID) -> list[CleanupRecord]:
        result = await db.execute(
            select(CleanupRecord)
            .where(CleanupRecord.organization_id == organization_id)
            .order_by(CleanupRecord.created_at.desc())
        )
        return list(result.scalars().all())


def _service_step(service: CooperatingServiceClient):
    async def run(db: AsyncSession, organization_id: uuid.UUID) -> dict:
        return await service.delete_organization_data(organization_id)

    return run


lifecycle_manager = LifecycleManager()


def get_lifecycle_manager() -> LifecycleManager:
    return lifecycle_manager
