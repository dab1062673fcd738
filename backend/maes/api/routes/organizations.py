"""
Organization, credential and lifecycle routes
"""
import uuid
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from sqlalchemy.ext.asyncio import AsyncSession

from maes.api.auth import Principal, ensure_org_access, get_principal
from maes.api.schemas.organizations import (
    CleanupRecordResponse,
    CredentialsUpdate,
    CredentialView,
    OffboardRequest,
    OffboardResponse,
    OrganizationCreate,
    OrganizationResponse,
    PurgeResponse,
)
from maes.core.errors import PermissionDeniedError
from maes.db import get_db
from maes.db.models import Organization
from maes.services import credential_vault
from maes.services.lifecycle import LifecycleManager, get_lifecycle_manager, is_protected

router = APIRouter()


@router.post("", response_model=OrganizationResponse, status_code=201)
async def register_organization(
    data: OrganizationCreate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    """Register a new tenant organization"""
    if not principal.is_superadmin:
        raise HTTPException(status_code=403, detail="Only superadmins can register organizations")
    return await lifecycle.register(db, data.name, domain=data.domain, tenant_id=data.tenant_id)


@router.get("/{organization_id}", response_model=OrganizationResponse)
async def get_organization(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    ensure_org_access(principal, organization_id)
    return await lifecycle.get_organization(db, organization_id)


# === Credentials ===

@router.put("/{organization_id}/credentials", response_model=CredentialView)
async def replace_credentials(
    organization_id: uuid.UUID,
    data: CredentialsUpdate,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    """
    Replace the whole credential bundle.
    Returns the masked view only; secrets are never echoed back.
    """
    ensure_org_access(principal, organization_id, "admin")
    return await credential_vault.store(db, organization_id, data.model_dump())


@router.get("/{organization_id}/credentials", response_model=CredentialView)
async def get_credentials(
    organization_id: uuid.UUID,
    reveal: bool = Query(False, description="Return decrypted values (admin only)"),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
):
    ensure_org_access(principal, organization_id, "admin" if reveal else "viewer")
    return await credential_vault.retrieve(db, organization_id, reveal=reveal)


# === Lifecycle ===

@router.post("/{organization_id}/offboard", response_model=OffboardResponse, status_code=202)
async def schedule_offboard(
    organization_id: uuid.UUID,
    data: OffboardRequest,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    """Deactivate the organization and schedule its purge after a grace period (reversible)."""
    ensure_org_access(principal, organization_id, "admin")
    org, job = await lifecycle.schedule_offboard(
        db,
        organization_id,
        grace_days=data.grace_days,
        reason=data.reason,
        requested_by=principal.user_id,
    )
    return OffboardResponse(
        organization_id=org.id,
        offboard_scheduled_at=org.offboard_scheduled_at,
        grace_period_days=org.offboard_grace_period_days,
        reason=org.offboard_reason,
        job_id=job.id,
    )


@router.post("/{organization_id}/restore", response_model=OrganizationResponse)
async def restore_organization(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    ensure_org_access(principal, organization_id, "admin")
    return await lifecycle.restore(db, organization_id)


@router.delete("/{organization_id}", response_model=PurgeResponse)
async def purge_organization(
    organization_id: uuid.UUID,
    response: Response,
    force: bool = Query(False, description="Cancel active jobs instead of refusing"),
    confirm: Optional[str] = Query(None, description="Organization name, required to confirm"),
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    """
    Irreversibly delete the organization and all derived data.

    Returns 202 with the purge job id. If the organization is already gone,
    any failed cleanup steps are retried inline and 200 `already_purged` is returned.
    """
    ensure_org_access(principal, organization_id, "admin")

    if is_protected(organization_id):
        raise PermissionDeniedError("The default organization cannot be purged")

    org = await db.get(Organization, organization_id)
    if org is None:
        record = await lifecycle.purge_now(db, organization_id, force=force)
        return PurgeResponse(
            status="already_purged",
            organization_id=organization_id,
            cleanup_records=[CleanupRecordResponse.model_validate(record)] if record else [],
        )

    if confirm != org.name:
        raise HTTPException(
            status_code=400,
            detail="Deletion must be confirmed by passing the organization name as ?confirm=",
        )

    job = await lifecycle.request_purge(db, organization_id, force=force, requested_by=principal.user_id)
    response.status_code = 202
    return PurgeResponse(status="queued", organization_id=organization_id, job_id=job.id)


@router.get("/{organization_id}/cleanup-records", response_model=List[CleanupRecordResponse])
async def list_cleanup_records(
    organization_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    principal: Principal = Depends(get_principal),
    lifecycle: LifecycleManager = Depends(get_lifecycle_manager),
):
    """Per-step outcome of every purge attempt; kept after the organization is gone."""
    ensure_org_access(principal, organization_id, "admin")
    return await lifecycle.list_cleanup_records(db, organization_id)
