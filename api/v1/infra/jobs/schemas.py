"""
Sync queue Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, field_validator

from api.v1.infra.jobs.models import JobStatus


class JobCreate(BaseModel):
    """Schema for creating or re-enqueueing a job."""

    job_type: str = Field(..., min_length=1, description="Job type identifier")
    dedupe_key: str = Field(..., description="Deduplication key, unique per org")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    priority: int | None = Field(
        default=None, ge=0, le=100, description="Priority (higher runs first)"
    )
    run_after: datetime | None = Field(
        default=None, description="Earliest time to run job"
    )
    max_attempts: int | None = Field(
        default=None, ge=1, le=100, description="Attempts before terminal failure"
    )


class JobEnqueueRequest(JobCreate):
    """Schema for enqueueing jobs via API."""

    org_id: UUID | None = Field(
        default=None, description="Target org (service role only)"
    )


class JobEnqueueResponse(BaseModel):
    """Schema for job enqueue response."""

    job_id: int
    status: str
    deduplicated: bool = Field(
        default=False, description="Whether an existing job was updated"
    )


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    org_id: UUID
    dedupe_key: str
    job_type: str
    payload: dict[str, Any]
    status: str
    priority: int
    run_after: datetime
    attempts: int
    max_attempts: int
    last_error: str | None = None

    locked_by: str | None = None
    locked_at: datetime | None = None
    locked_until: datetime | None = None

    result: dict[str, Any] | None = None
    completed_at: datetime | None = None
    enqueue_count: int
    created_at: datetime
    updated_at: datetime


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + running
    failed_last_hour: int
    expired_claims: int


class ClaimRequest(BaseModel):
    """Schema for a consumer claiming due jobs."""

    max_n: int = Field(default=10, ge=1, le=500, description="Maximum jobs to claim")
    worker_id: str = Field(..., min_length=1, description="Claiming worker identity")
    claim_timeout_s: int | None = Field(
        default=None, ge=1, description="Claim lifetime override"
    )


class ClaimResponse(BaseModel):
    jobs: list[JobResponse]


class HeartbeatRequest(BaseModel):
    """Schema for a consumer extending its claims."""

    worker_id: str = Field(..., min_length=1, description="Claim holder identity")
    job_ids: list[int] = Field(..., min_length=1, description="Jobs still in flight")
    claim_timeout_s: int | None = Field(
        default=None, ge=1, description="Claim lifetime override"
    )


class HeartbeatResponse(BaseModel):
    requested: int
    extended: int = Field(..., description="Claims still held and pushed forward")


class ReportSuccessRequest(BaseModel):
    worker_id: str | None = Field(
        default=None, description="Claiming worker; stale claims are rejected"
    )
    result: dict[str, Any] | None = Field(default=None, description="Job result data")


class ReportFailureRequest(BaseModel):
    error_message: str = Field(..., description="Human-readable failure reason")
    worker_id: str | None = Field(
        default=None, description="Claiming worker; stale claims are rejected"
    )
    permanent: bool = Field(
        default=False, description="Fail terminally without further retries"
    )

    @field_validator("error_message")
    @classmethod
    def error_message_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("error_message must not be blank")
        return value


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    job_type: str | None = Field(default=None, description="Filter by job type")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobActionRequest(BaseModel):
    """Schema for bulk operator actions."""

    job_ids: list[int] = Field(..., min_length=1, description="Job IDs to act upon")


class JobActionResponse(BaseModel):
    """Schema for bulk operator action responses."""

    success_ids: list[int]
    failed_ids: list[int]
    errors: dict[str, str]  # job_id -> error message
