"""
Pydantic schemas for organizations, credentials and lifecycle
"""
from datetime import datetime
from typing import Optional, Dict, List
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from maes.db.models import CleanupStatus


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    domain: Optional[str] = Field(default=None, max_length=255)
    tenant_id: Optional[str] = Field(default=None, max_length=255)


class OrganizationResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    domain: Optional[str] = None
    tenant_id: Optional[str] = None
    is_active: bool
    offboard_scheduled_at: Optional[datetime] = None
    offboard_reason: Optional[str] = None
    offboard_grace_period_days: Optional[int] = None
    credentials_updated_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


# === Credentials ===

class CredentialsUpdate(BaseModel):
    """Wholesale replacement; omitted secrets are cleared, not kept."""
    applicationId: str = Field(min_length=1)
    clientSecret: Optional[str] = None
    certificateThumbprint: Optional[str] = None


class CredentialView(BaseModel):
    applicationId: Optional[str] = None
    clientSecret: Optional[str] = None
    certificateThumbprint: Optional[str] = None
    configured: bool = False


# === Lifecycle ===

class OffboardRequest(BaseModel):
    grace_days: Optional[int] = Field(default=None, ge=0)
    reason: Optional[str] = Field(default=None, max_length=2000)


class OffboardResponse(BaseModel):
    organization_id: UUID
    offboard_scheduled_at: datetime
    grace_period_days: int
    reason: Optional[str] = None
    job_id: UUID


class CleanupStepOutcome(BaseModel):
    status: str
    reason: Optional[str] = None
    attempted_at: Optional[str] = None
    detail: Optional[dict] = None


class CleanupRecordResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    organization_name: Optional[str] = None
    job_id: Optional[UUID] = None
    status: CleanupStatus
    attempts: int
    forced: bool
    steps: Dict[str, CleanupStepOutcome] = Field(default_factory=dict)
    created_at: datetime
    completed_at: Optional[datetime] = None


class PurgeResponse(BaseModel):
    status: str  # "queued" | "already_purged"
    organization_id: UUID
    job_id: Optional[UUID] = None
    cleanup_records: List[CleanupRecordResponse] = Field(default_factory=list)
