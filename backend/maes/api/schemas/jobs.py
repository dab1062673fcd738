"""
Pydantic schemas for jobs, logs and progress
"""
from datetime import datetime
from typing import Optional, Dict, List, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from maes.db.models import JobPriority, JobStatus, JobType, LogLevel


class JobCreate(BaseModel):
    # Offboard jobs are created only through the lifecycle endpoints.
    job_type: JobType
    priority: JobPriority = JobPriority.MEDIUM
    parameters: Dict[str, Any] = Field(default_factory=dict)


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    organization_id: UUID
    job_type: JobType
    status: JobStatus
    priority: JobPriority
    progress: int
    current_message: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    status_flags: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    scheduled_for: Optional[datetime] = None


class JobListResponse(BaseModel):
    items: List[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    total: int
    by_status: Dict[str, int]
    by_type: Dict[str, int]


class LogEntryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    timestamp: datetime
    level: LogLevel
    message: str


class JobLogsResponse(BaseModel):
    job_id: UUID
    entries: List[LogEntryResponse]
    # Pass back as ?after= to fetch only newer entries.
    next_after: Optional[int] = None


class ProgressResponse(BaseModel):
    job_id: UUID
    status: JobStatus
    percent: int
    message: Optional[str] = None
    status_flags: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[datetime] = None


class LogAppend(BaseModel):
    level: LogLevel = LogLevel.INFO
    message: str = Field(min_length=1)
    timestamp: Optional[datetime] = None


class EventAck(BaseModel):
    job_id: UUID
    accepted: bool
    status: JobStatus
