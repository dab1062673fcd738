"""
Celery background tasks for the orchestration queue.

Note on async handling:
Celery workers are sync by default (prefork pool). Each task runs its
coroutine on a fresh event loop, so loop-bound resources (asyncio locks,
Redis pools, DB connections) are created per task and never shared.
"""
import asyncio
import logging
import uuid
from datetime import timedelta

from celery.signals import worker_process_init, worker_process_shutdown
from sqlalchemy.exc import SQLAlchemyError

from maes.core.config import settings
from maes.core.logging import configure_logging
from maes.db.database import dispose_worker_engine, get_worker_db
from maes.services import progress
from maes.services.cache import OrganizationCache
from maes.services.dispatcher import JobDispatcher
from maes.services.lifecycle import LifecycleManager
from maes.utils import utcnow
from maes.workers.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """
    Run async code in the sync Celery context on a dedicated loop.
    The loop is closed after use, cancelling anything left pending.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        try:
            pending = asyncio.all_tasks(loop)
            for task in pending:
                task.cancel()
            if pending:
                loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
            loop.run_until_complete(loop.shutdown_asyncgens())
        finally:
            loop.close()
            asyncio.set_event_loop(None)


@worker_process_init.connect
def _init_worker_logging(**kwargs):
    configure_logging()


@worker_process_shutdown.connect
def _dispose_engine(**kwargs):
    run_async(dispose_worker_engine())


async def _with_lifecycle(action):
    cache = OrganizationCache()
    lifecycle = LifecycleManager(dispatcher=JobDispatcher(), cache=cache)
    try:
        async with get_worker_db() as db:
            return await action(lifecycle, db)
    finally:
        await cache.close()


# === Organization purge ===

@celery_app.task(bind=True, name="maes.workers.tasks.purge_organization_task")
def purge_organization_task(self, job_id: str):
    """Run a scheduled or immediate organization purge job."""

    async def _purge(lifecycle: LifecycleManager, db):
        job = await lifecycle.run_purge_job(db, uuid.UUID(job_id))
        return {"job_id": str(job.id), "status": job.status.value, "result": job.result}

    logger.info(f"Purge task received for job {job_id}")
    try:
        return run_async(_with_lifecycle(_purge))
    except (SQLAlchemyError, OSError) as exc:
        # The job is left running; the retry resumes it from its CleanupRecord.
        logger.warning(f"Purge job {job_id} interrupted ({exc.__class__.__name__}); retry {self.request.retries + 1}")
        raise self.retry(exc=exc)


# === Periodic sweeps ===

@celery_app.task(name="maes.workers.tasks.sweep_due_offboards_task")
def sweep_due_offboards_task():
    """Purge organizations whose grace period elapsed; resume stalled purge jobs."""

    async def _sweep(lifecycle: LifecycleManager, db):
        return await lifecycle.sweep_due_offboards(db)

    purged = run_async(_with_lifecycle(_sweep))
    if purged:
        logger.info(f"Offboard sweep purged {purged} organization(s)")
    return {"purged": purged}


@celery_app.task(name="maes.workers.tasks.expire_overdue_jobs_task")
def expire_overdue_jobs_task():
    """Fail running jobs that exceeded their time limit and free their slots."""

    async def _expire():
        async with get_worker_db() as db:
            return await JobDispatcher().expire_overdue(db)

    expired = run_async(_expire())
    return {"expired": expired}


@celery_app.task(name="maes.workers.tasks.prune_job_logs_task")
def prune_job_logs_task():
    cutoff = utcnow() - timedelta(days=settings.LOG_RETENTION_DAYS)

    async def _prune():
        async with get_worker_db() as db:
            return await progress.prune_logs(db, cutoff)

    removed = run_async(_prune())
    logger.info(f"Pruned {removed} job log entries older than {cutoff.isoformat()}")
    return {"removed": removed}
