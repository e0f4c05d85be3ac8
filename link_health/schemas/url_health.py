from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

EntityScope = Literal["all", "investmentFirms", "investors", "businessmen"]
JobStatus = Literal["pending", "running", "completed", "cancelled", "failed"]
HealthStatus = Literal["valid", "redirected", "parked", "expired", "unreachable", "unknown"]
CheckHealthStatus = Literal["valid", "redirected", "parked", "expired", "unreachable", "unknown", "pending"]


class UrlHealthJobStartRequest(BaseModel):
    entity_scope: EntityScope = "all"
    include_auto_fix: bool | None = None
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class UrlHealthJobOut(BaseModel):
    id: str
    entity_scope: str
    status: JobStatus
    total_records: int
    processed_records: int
    valid_urls: int
    broken_urls: int
    include_auto_fix: bool
    confidence_threshold: float
    started_by: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error_message: str | None = None
    created_at: datetime


class UrlHealthCheckOut(BaseModel):
    id: str
    entity_type: str
    entity_id: str
    field_name: str
    original_url: str
    canonical_url: str | None = None
    http_status: int | None = None
    redirect_chain: list[str] = Field(default_factory=list)
    health_status: CheckHealthStatus
    confidence: float
    is_parked_domain: bool
    is_expired: bool
    has_login_only: bool
    content_length: int | None = None
    page_title: str | None = None
    last_checked_at: datetime | None = None
    check_count: int
    error_message: str | None = None
    processing_state: str
    created_at: datetime
    updated_at: datetime


class UrlHealthStatsOut(BaseModel):
    total: int
    valid: int
    redirected: int
    broken: int
    pending: int


class UrlValidateRequest(BaseModel):
    url: str


class UrlClassificationOut(BaseModel):
    url: str
    health_status: HealthStatus
    confidence: float
    http_status: int | None = None
    canonical_url: str | None = None
    redirect_chain: list[str] = Field(default_factory=list)
    is_parked_domain: bool
    is_expired: bool
    has_login_only: bool
    content_length: int | None = None
    page_title: str | None = None
    error_message: str | None = None
