"""
Internal routes used by the executor services (service-token protected)
"""
import uuid

from fastapi import APIRouter, Body, Depends, HTTPException
from pydantic import TypeAdapter
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from maes.api.schemas.jobs import EventAck, LogAppend
from maes.api.schemas.organizations import CredentialView
from maes.db import get_db
from maes.services import credential_vault, job_store, progress
from maes.services.dispatcher import ExecutorEvent, JobDispatcher, get_dispatcher
from maes.utils import to_naive_utc

router = APIRouter()

_event_adapter = TypeAdapter(ExecutorEvent)


@router.post("/jobs/{job_id}/events", response_model=EventAck)
async def post_executor_event(
    job_id: uuid.UUID,
    payload: dict = Body(...),
    db: AsyncSession = Depends(get_db),
    dispatcher: JobDispatcher = Depends(get_dispatcher),
):
    """
    Executor status callback: started | progress | completed | failed | cancelled_ack.

    Events the state machine rejects (e.g. `completed` after cancellation)
    are acknowledged with accepted=false so the executor does not retry them.
    """
    try:
        event = _event_adapter.validate_python(payload)
    except PydanticValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False, include_context=False))

    accepted = await dispatcher.on_executor_event(db, job_id, event)
    job = await job_store.get_job(db, job_id)
    return EventAck(job_id=job.id, accepted=accepted, status=job.status)


@router.post("/jobs/{job_id}/logs", status_code=201)
async def append_job_log(
    job_id: uuid.UUID,
    data: LogAppend,
    db: AsyncSession = Depends(get_db),
):
    entry = await progress.append_log(db, job_id, data.level, data.message, timestamp=to_naive_utc(data.timestamp))
    return {"id": entry.id, "job_id": str(job_id)}


@router.get("/organizations/{organization_id}/credentials", response_model=CredentialView)
async def fetch_credentials(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
):
    """Decrypted credentials for the executor running a job of this organization."""
    return await credential_vault.retrieve(db, organization_id, reveal=True)
