"""
Job queue & dispatcher.

Admission is the only place the per-organization running count changes
upward. Each admission step (count running, pick the next pending job, mark
it running) runs under a per-organization asyncio.Lock and, on databases that
support it, a row lock on the organization, so concurrent enqueues can never
push an organization past its limit.

Executor callbacks arrive as typed events and are applied through the job
store's edge table; a terminal event frees a slot and admits the next job.
"""
import asyncio
import logging
import uuid
from collections import defaultdict
from datetime import timedelta
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from maes.core.config import settings
from maes.core.errors import ExecutorUnavailableError, InvalidTransitionError
from maes.db.models import PRIORITY_RANK, Job, JobStatus, JobType, Organization
from maes.services import job_store
from maes.services.executors import ExecutorClient, executor_client
from maes.utils import utcnow

logger = logging.getLogger(__name__)

RESTART_REASON = "Interrupted by service restart"


# === EXECUTOR EVENTS ===

class StartedEvent(BaseModel):
    kind: Literal["started"] = "started"
    message: Optional[str] = None


class ProgressEvent(BaseModel):
    kind: Literal["progress"] = "progress"
    percent: int = Field(ge=0, le=100)
    message: Optional[str] = None


class CompletedEvent(BaseModel):
    kind: Literal["completed"] = "completed"
    result: dict = Field(default_factory=dict)
    message: Optional[str] = None


class FailedEvent(BaseModel):
    kind: Literal["failed"] = "failed"
    reason: str


class CancelledAckEvent(BaseModel):
    kind: Literal["cancelled_ack"] = "cancelled_ack"
    message: Optional[str] = None


ExecutorEvent = Annotated[
    Union[StartedEvent, ProgressEvent, CompletedEvent, FailedEvent, CancelledAckEvent],
    Field(discriminator="kind"),
]


def admission_key(job: Job):
    """critical > high > medium > low, then earliest created."""
    return (PRIORITY_RANK[job.priority], job.created_at, str(job.id))


class JobDispatcher:
    def __init__(self, executor: Optional[ExecutorClient] = None, concurrency_limit: Optional[int] = None):
        self.executor = executor or executor_client
        self.concurrency_limit = concurrency_limit or settings.JOB_CONCURRENCY_PER_ORG
        self._locks: defaultdict[uuid.UUID, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def enqueue(self, db: AsyncSession, job: Job) -> Job:
        """Admit a freshly created pending job if its organization has a free slot."""
        await self.admit_next(db, job.organization_id)
        await db.refresh(job)
        return job

    async def admit_next(self, db: AsyncSession, organization_id: uuid.UUID) -> list[Job]:
        """Fill the organization's free slots from its pending queue. Returns admitted jobs."""
        admitted: list[Job] = []
        async with self._locks[organization_id]:
            while True:
                job = await self._claim_next(db, organization_id)
                if job is None:
                    break
                if await self._hand_off(db, job):
                    admitted.append(job)
        return admitted

    async def _claim_next(self, db: AsyncSession, organization_id: uuid.UUID) -> Optional[Job]:
        """Check-and-increment: mark the next pending job running if below the limit."""
        org = (
            await db.execute(
                select(Organization).where(Organization.id == organization_id).with_for_update()
            )
        ).scalar_one_or_none()
        if org is None or not org.is_active or org.is_offboarding:
            await db.commit()
            return None

        running = await job_store.count_running(db, organization_id)
        if running >= self.concurrency_limit:
            await db.commit()
            return None

        pending = await job_store.list_pending(db, organization_id)
        if not pending:
            await db.commit()
            return None

        job = min(pending, key=admission_key)
        try:
            return await job_store.transition(
                db, job.id, JobStatus.RUNNING, progress=0, message="Dispatched to executor"
            )
        except InvalidTransitionError:
            # Cancelled between the read and the update; try the next one.
            logger.info(f"Job {job.id} left pending before admission")
            return await self._claim_next(db, organization_id)

    async def _hand_off(self, db: AsyncSession, job: Job) -> bool:
        org = await db.get(Organization, job.organization_id)
        context = {
            "organizationName": org.name if org else None,
            "tenantId": org.tenant_id if org else None,
            "domain": org.domain if org else None,
        }
        try:
            await self.executor.dispatch(job, context)
        except ExecutorUnavailableError as e:
            logger.error(f"Dispatch of job {job.id} failed: {e.message}")
            await job_store.transition(
                db, job.id, JobStatus.FAILED, message=f"Executor unavailable: {e.message}"
            )
            return False
        return True

    async def on_executor_event(self, db: AsyncSession, job_id: uuid.UUID, event: ExecutorEvent) -> bool:
        """
        Apply one executor callback.

        Returns False when the event was rejected by the state machine (e.g. a
        late `completed` after the job was cancelled); such events are logged
        and dropped, never raised to the executor.
        """
        job = await job_store.get_job(db, job_id)
        try:
            if isinstance(event, StartedEvent):
                # Only admission moves a job to running; executors merely confirm it.
                if job.status != JobStatus.RUNNING:
                    raise InvalidTransitionError(
                        f"Job {job_id} is {job.status.value}, not admitted",
                        {"job_id": str(job_id), "status": job.status.value},
                    )
                if event.message:
                    await job_store.record_progress(db, job_id, job.progress, event.message)
                return True

            if isinstance(event, ProgressEvent):
                await job_store.record_progress(db, job_id, event.percent, event.message)
                return True

            if isinstance(event, CompletedEvent):
                await job_store.transition(
                    db, job_id, JobStatus.COMPLETED, message=event.message or "Completed", result=event.result
                )
            elif isinstance(event, FailedEvent):
                await job_store.transition(db, job_id, JobStatus.FAILED, message=event.reason)
            elif isinstance(event, CancelledAckEvent):
                if job.status == JobStatus.CANCELLED:
                    return True
                await job_store.transition(db, job_id, JobStatus.CANCELLED, message=event.message or "Cancelled by executor")
        except InvalidTransitionError as e:
            logger.warning(f"Rejected '{event.kind}' event for job {job_id}: {e.message}")
            return False

        await self.admit_next(db, job.organization_id)
        return True

    async def cancel(
        self,
        db: AsyncSession,
        job_id: uuid.UUID,
        organization_id: Optional[uuid.UUID] = None,
        reason: Optional[str] = None,
    ) -> Job:
        """Cancel a job (idempotent), ask its executor to stop, refill the slot."""
        job, changed = await job_store.cancel_job(db, job_id, organization_id, reason)
        if not changed:
            return job
        if job.started_at is not None and job.job_type != JobType.OFFBOARD:
            await self.executor.request_stop(job.id)
        await self.admit_next(db, job.organization_id)
        return job

    async def recover(self, db: AsyncSession) -> int:
        """
        Startup recovery: jobs still `running` have lost their admission and
        are failed with a clear reason, then every organization's queue is
        drained again. Returns the number of jobs failed.
        """
        stale = await job_store.list_running(db)
        for job in stale:
            try:
                await job_store.transition(db, job.id, JobStatus.FAILED, message=RESTART_REASON)
            except InvalidTransitionError as e:
                logger.info(f"Recovery skipped job {job.id}: {e.message}")
        if stale:
            logger.warning(f"Failed {len(stale)} job(s) interrupted by restart")

        await self.drain_all(db)
        return len(stale)

    async def drain_all(self, db: AsyncSession) -> None:
        result = await db.execute(
            select(Job.organization_id)
            .where(Job.status == JobStatus.PENDING, Job.job_type != JobType.OFFBOARD)
            .distinct()
        )
        for organization_id in result.scalars().all():
            await self.admit_next(db, organization_id)

    async def expire_overdue(self, db: AsyncSession) -> int:
        """Fail running jobs past their timeout and admit queued work. Returns jobs expired."""
        now = utcnow()
        expired = 0
        organizations = set()
        for job in await job_store.list_running(db):
            limit = (
                settings.CONNECTION_TEST_TIMEOUT_SEC
                if job.job_type == JobType.CONNECTION_TEST
                else settings.JOB_RUNNING_TIMEOUT_SEC
            )
            if job.started_at is None or job.started_at + timedelta(seconds=limit) > now:
                continue
            try:
                await job_store.transition(
                    db, job.id, JobStatus.FAILED, message=f"Timed out after {limit}s without completion"
                )
            except InvalidTransitionError:
                continue
            await self.executor.request_stop(job.id)
            organizations.add(job.organization_id)
            expired += 1

        for organization_id in organizations:
            await self.admit_next(db, organization_id)
        if expired:
            logger.warning(f"Expired {expired} overdue job(s)")
        return expired


dispatcher = JobDispatcher()


def get_dispatcher() -> JobDispatcher:
    return dispatcher
