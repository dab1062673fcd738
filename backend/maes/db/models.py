"""
Database models for organizations, jobs, job logs and cleanup records
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Optional, List

from sqlalchemy import (
    String, Text, Integer, Float, Boolean, DateTime, ForeignKey, JSON, Enum as SQLEnum
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.dialects.postgresql import UUID

from maes.db.database import Base
from maes.utils import utcnow


def _enum_column(enum_cls, name: str) -> SQLEnum:
    # Persist lowercase values ("pending"), not member names ("PENDING").
    return SQLEnum(
        enum_cls,
        name=name,
        values_callable=lambda cls: [e.value for e in cls],
    )


# === ENUMS ===

class JobType(str, Enum):
    EXTRACTION = "extraction"
    ANALYSIS = "analysis"
    CONNECTION_TEST = "connection_test"
    OFFBOARD = "offboard"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING})


class JobPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# Admission order and broker priority: lower rank is served first.
PRIORITY_RANK = {
    JobPriority.CRITICAL: 1,
    JobPriority.HIGH: 2,
    JobPriority.MEDIUM: 3,
    JobPriority.LOW: 4,
}


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"
    SUCCESS = "success"


class CleanupStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    PARTIAL = "partial"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


# === MODELS ===

class Organization(Base):
    """Tenant boundary owning jobs, credentials and derived data"""
    __tablename__ = "organizations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    # Cloud directory tenant the executors authenticate against
    tenant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # Fernet token of the whole credential bundle; replaced wholesale on update
    credentials_blob: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    credentials_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    offboard_scheduled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    offboard_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    offboard_grace_period_days: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    # Relationships
    alerts: Mapped[List["Alert"]] = relationship(back_populates="organization")
    reports: Mapped[List["Report"]] = relationship(back_populates="organization")

    @property
    def is_offboarding(self) -> bool:
        return self.offboard_scheduled_at is not None


class Job(Base):
    """Extraction, analysis, connection-test or offboard unit of work"""
    __tablename__ = "jobs"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    # No FK: offboard jobs outlive the organization row as an audit trail.
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    job_type: Mapped[JobType] = mapped_column(_enum_column(JobType, "jobtype"), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        _enum_column(JobStatus, "jobstatus"), default=JobStatus.PENDING, nullable=False, index=True
    )
    priority: Mapped[JobPriority] = mapped_column(
        _enum_column(JobPriority, "jobpriority"), default=JobPriority.MEDIUM, nullable=False
    )
    progress: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    current_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    parameters: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # Latest flags derived from log content, e.g. {"source_logging_disabled": true}
    status_flags: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration: Mapped[Optional[float]] = mapped_column(Float, nullable=True)  # seconds
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Relationships
    logs: Mapped[List["JobLog"]] = relationship(
        back_populates="job", cascade="all, delete-orphan", order_by="JobLog.id"
    )


class JobLog(Base):
    """Append-only log line; id gives the total order within a job"""
    __tablename__ = "job_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    timestamp: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    level: Mapped[LogLevel] = mapped_column(_enum_column(LogLevel, "loglevel"), default=LogLevel.INFO)
    message: Mapped[str] = mapped_column(Text, nullable=False)

    # Relationships
    job: Mapped["Job"] = relationship(back_populates="logs")


class CleanupRecord(Base):
    """Per-service outcome ledger of one purge; survives the organization row"""
    __tablename__ = "cleanup_records"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    organization_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    # {service_name: {"status": "succeeded"|"failed", "reason": str|None, "attempted_at": iso}}
    steps: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    status: Mapped[CleanupStatus] = mapped_column(
        _enum_column(CleanupStatus, "cleanupstatus"), default=CleanupStatus.IN_PROGRESS, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    forced: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    def failed_steps(self) -> list[str]:
        return [name for name, outcome in (self.steps or {}).items() if outcome.get("status") != "succeeded"]


class Alert(Base):
    """Finding produced by an analysis job"""
    __tablename__ = "alerts"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    severity: Mapped[AlertSeverity] = mapped_column(
        _enum_column(AlertSeverity, "alertseverity"), default=AlertSeverity.MEDIUM
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    details: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Relationships
    organization: Mapped["Organization"] = relationship(back_populates="alerts")


class Report(Base):
    """Generated report metadata (file contents live elsewhere)"""
    __tablename__ = "reports"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    organization_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True
    )
    job_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    report_type: Mapped[str] = mapped_column(String(50), nullable=False)
    file_path: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    # Relationships
    organization: Mapped["Organization"] = relationship(back_populates="reports")
