"""
Progress & log channel.

Log lines are append-only rows ordered by their autoincrement id. Readers poll
with either a timestamp (`since`) or the last id they saw (`after`); both are
re-queryable and never reorder entries already returned.

Status flags are derived from log text when a line is appended and stored on
the job, so reading progress never rescans history.
"""
import logging
import re
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from maes.db.models import Job, JobLog, LogLevel
from maes.services.job_store import get_job
from maes.utils import utcnow

logger = logging.getLogger(__name__)

UAL_STATUS_PATTERN = re.compile(r"UAL_STATUS:(ENABLED|DISABLED|ERROR)", re.IGNORECASE)
UAL_NOT_ENABLED_PATTERN = re.compile(r"Unified\s+Audit\s+Log\s+is\s+not\s+enabled", re.IGNORECASE)
AUTH_ERROR_PATTERN = re.compile(r"\b(AADSTS\d+)", re.IGNORECASE)
ERROR_PATTERNS = [
    re.compile(r"Error:", re.IGNORECASE),
    re.compile(r"Exception:", re.IGNORECASE),
    re.compile(r"Failed\s+to", re.IGNORECASE),
    re.compile(r"Cannot\s+connect", re.IGNORECASE),
    re.compile(r"Authentication\s+failed", re.IGNORECASE),
    re.compile(r"Access\s+denied", re.IGNORECASE),
]

MAX_LOG_PAGE = 1000


def derive_status_flags(message: str, current: Optional[dict] = None) -> dict:
    """
    Return updated flags for one log line.

    Flags not mentioned by the line keep their previous value.
    """
    flags = dict(current or {})

    match = UAL_STATUS_PATTERN.search(message)
    if match:
        status = match.group(1).lower()
        flags["source_logging_status"] = status
        if status != "error":
            flags["source_logging_disabled"] = status == "disabled"
    elif UAL_NOT_ENABLED_PATTERN.search(message):
        flags["source_logging_status"] = "disabled"
        flags["source_logging_disabled"] = True

    match = AUTH_ERROR_PATTERN.search(message)
    if match:
        flags["auth_error_code"] = match.group(1).upper()

    if any(pattern.search(message) for pattern in ERROR_PATTERNS):
        flags["last_error"] = message.strip()[:500]

    return flags


async def append_log(
    db: AsyncSession,
    job_id: uuid.UUID,
    level: LogLevel,
    message: str,
    timestamp: Optional[datetime] = None,
) -> JobLog:
    """Append one entry. Flags are only updated while the job is not terminal."""
    job = await get_job(db, job_id)

    entry = JobLog(job_id=job.id, level=level, message=message, timestamp=timestamp or utcnow())
    db.add(entry)

    if not job.status.is_terminal:
        flags = derive_status_flags(message, job.status_flags)
        if flags != (job.status_flags or {}):
            job.status_flags = flags

    await db.commit()
    return entry


async def get_logs(
    db: AsyncSession,
    job_id: uuid.UUID,
    since: Optional[datetime] = None,
    after: Optional[int] = None,
    limit: int = MAX_LOG_PAGE,
) -> list[JobLog]:
    """
    Entries in append order.

    `since` is inclusive so an entry sharing the boundary timestamp is never
    skipped; `after` is an exclusive id cursor for exact incremental polling.
    """
    await get_job(db, job_id)

    stmt = select(JobLog).where(JobLog.job_id == job_id)
    if since is not None:
        stmt = stmt.where(JobLog.timestamp >= since)
    if after is not None:
        stmt = stmt.where(JobLog.id > after)
    stmt = stmt.order_by(JobLog.id).limit(min(limit, MAX_LOG_PAGE))

    result = await db.execute(stmt)
    return list(result.scalars().all())


def progress_snapshot(job: Job) -> dict:
    return {
        "job_id": str(job.id),
        "status": job.status.value,
        "percent": job.progress,
        "message": job.current_message,
        "status_flags": dict(job.status_flags or {}),
        "updated_at": job.updated_at,
    }


async def get_progress(db: AsyncSession, job_id: uuid.UUID, organization_id: Optional[uuid.UUID] = None) -> dict:
    job = await get_job(db, job_id, organization_id)
    return progress_snapshot(job)


async def prune_logs(db: AsyncSession, older_than: datetime) -> int:
    """Retention pruning: the only path that removes log entries."""
    result = await db.execute(delete(JobLog).where(JobLog.timestamp < older_than))
    await db.commit()
    count = result.rowcount or 0
    if count:
        logger.info(f"Pruned {count} job log entries older than {older_than.isoformat()}")
    return count
