from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

JobType = Literal["instagram", "google_maps", "tiktok", "youtube"]
JobStatus = Literal["pending", "queued", "running", "completed", "failed", "cancelled"]


class JobOut(BaseModel):
    id: int
    keyword_id: int
    job_type: str
    priority: int
    status: str
    user_id: str
    results_count: int = 0
    expected_results: int | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    estimated_duration: int | None = None
    actual_duration: int | None = None
    error_message: str | None = None
    error_code: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    job_config: dict[str, Any] = Field(default_factory=dict)
    job_results: dict[str, Any] = Field(default_factory=dict)
    lease_owner: str | None = None
    lease_expires_at: datetime | None = None
    created_by: str | None = None
    updated_by: str | None = None
    created_at: datetime
    updated_at: datetime


class JobCreateRequest(BaseModel):
    keyword_id: int
    job_type: JobType
    priority: int | None = None
    job_config: dict[str, Any] = Field(default_factory=dict)
    expected_results: int | None = Field(default=None, ge=0)
    estimated_duration: int | None = Field(default=None, ge=0)
    max_retries: int | None = Field(default=None, ge=0)


class LeaseRequest(BaseModel):
    worker_id: str | None = None


class LeaseResponse(BaseModel):
    job: JobOut | None = None


class StatusUpdateRequest(BaseModel):
    status: JobStatus
    results_count: int | None = Field(default=None, ge=0)
    error_message: str | None = None
    error_code: str | None = None
    job_results: dict[str, Any] | None = None
    worker_id: str | None = None


class StatusUpdateResponse(BaseModel):
    job_id: int
    status: str
    updated: bool


class JobDeleteResponse(BaseModel):
    job_id: int
    deleted: bool


class ReapResponse(BaseModel):
    requeued: int
