"""
Type-specific parameter schemas for jobs.

Parameters are stored as an opaque JSON document on the job; these schemas
only guard what goes in at creation time.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import AbstractSet, Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

from maes.core.errors import ValidationError
from maes.db.models import JobType
from maes.utils import to_naive_utc

EXTRACTION_TYPES: AbstractSet[str] = frozenset(
    [
        "unified_audit_log",
        "azure_signin_logs",
        "azure_audit_logs",
        "mailbox_audit",
        "message_trace",
        "emails",
        "oauth_permissions",
        "mfa_status",
        "risky_users",
        "risky_detections",
        "devices",
        "full_extraction",
    ]
)

ANALYSIS_TYPES: AbstractSet[str] = frozenset(
    [
        "ual_analysis",
        "signin_analysis",
        "audit_analysis",
        "mfa_analysis",
        "oauth_analysis",
        "risky_detection_analysis",
        "risky_user_analysis",
        "message_trace_analysis",
        "device_analysis",
        "comprehensive_analysis",
    ]
)


class ExtractionParameters(BaseModel):
    # Source-specific knobs (e.g. user filters) pass through untouched.
    model_config = ConfigDict(extra="allow")

    extraction_type: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @field_validator("extraction_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in EXTRACTION_TYPES:
            raise ValueError(f"Unsupported extraction type: {value}")
        return value

    @field_validator("start_date", "end_date")
    @classmethod
    def _utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _date_range(self) -> "ExtractionParameters":
        if self.start_date and self.end_date and self.start_date > self.end_date:
            raise ValueError("start_date must not be after end_date")
        return self


class AnalysisParameters(BaseModel):
    model_config = ConfigDict(extra="allow")

    extraction_id: uuid.UUID
    analysis_type: str = "comprehensive_analysis"
    settings: dict[str, Any] = Field(default_factory=dict)

    @field_validator("analysis_type")
    @classmethod
    def _known_type(cls, value: str) -> str:
        if value not in ANALYSIS_TYPES:
            raise ValueError(f"Unsupported analysis type: {value}")
        return value


class ConnectionTestParameters(BaseModel):
    model_config = ConfigDict(extra="forbid")


class OffboardParameters(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: Optional[str] = None
    scheduled_for: Optional[datetime] = None
    force: bool = True


PARAMETER_SCHEMAS: dict[JobType, type[BaseModel]] = {
    JobType.EXTRACTION: ExtractionParameters,
    JobType.ANALYSIS: AnalysisParameters,
    JobType.CONNECTION_TEST: ConnectionTestParameters,
    JobType.OFFBOARD: OffboardParameters,
}


def _format_errors(exc: PydanticValidationError) -> list[dict]:
    return [
        {"field": ".".join(str(part) for part in err["loc"]) or None, "message": err["msg"]}
        for err in exc.errors()
    ]


def validate_parameters(job_type: JobType, parameters: Optional[dict]) -> dict:
    """Validate parameters for a job type; returns a JSON-safe document."""
    schema = PARAMETER_SCHEMAS[job_type]
    try:
        model = schema.model_validate(parameters or {})
    except PydanticValidationError as exc:
        raise ValidationError(
            f"Invalid parameters for {job_type.value} job",
            {"errors": _format_errors(exc)},
        )
    return model.model_dump(mode="json", exclude_none=True)
