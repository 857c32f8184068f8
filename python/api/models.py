"""
Pydantic request/response schemas for the KYC Screening & Escalation API

Engine results are plain dictionaries (to_dict()); these models validate
requests and document the response shapes.
"""

import re
from typing import List, Optional, Dict, Any

from pydantic import BaseModel, Field, field_validator

from database.models import CaseStatus, EntityKind


def _validate_dob(v: Optional[str]) -> Optional[str]:
    if v is None:
        return v
    if not re.match(r'^\d{4}(-\d{2}(-\d{2})?)?$', v):
        raise ValueError(
            "DOB must be in ISO 8601 format: YYYY, YYYY-MM, or YYYY-MM-DD"
        )
    return v


# ============================================
# ENTITIES
# ============================================

class EntityCreateRequest(BaseModel):
    """Request schema for onboarding an entity.

    Individuals need full_name; organisations need legal_name.
    """
    kind: EntityKind = Field(default=EntityKind.INDIVIDUAL, description="INDIVIDUAL or ORGANISATION")
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=300)
    legal_name: Optional[str] = Field(default=None, min_length=2, max_length=300)
    date_of_birth: Optional[str] = Field(
        default=None,
        description="Date of birth in ISO 8601 format (YYYY, YYYY-MM, or YYYY-MM-DD)"
    )
    country: Optional[str] = Field(default=None, max_length=100)
    org_identifier: Optional[str] = Field(
        default=None, max_length=50, description="Organisation identifier (e.g. ABN/ACN)"
    )
    industry: Optional[str] = Field(default=None, max_length=100)
    jurisdiction: Optional[str] = Field(default=None, max_length=100)

    @field_validator('date_of_birth')
    @classmethod
    def validate_dob_format(cls, v: Optional[str]) -> Optional[str]:
        """Validate DOB is in ISO 8601 format."""
        return _validate_dob(v)

    def require_name(self) -> None:
        if self.kind == EntityKind.INDIVIDUAL and not self.full_name:
            raise ValueError("full_name is required for individuals")
        if self.kind == EntityKind.ORGANISATION and not self.legal_name:
            raise ValueError("legal_name is required for organisations")


class EntityUpdateRequest(BaseModel):
    """Partial update; only fields present in the body are applied."""
    full_name: Optional[str] = Field(default=None, min_length=2, max_length=300)
    legal_name: Optional[str] = Field(default=None, min_length=2, max_length=300)
    date_of_birth: Optional[str] = None
    country: Optional[str] = Field(default=None, max_length=100)
    org_identifier: Optional[str] = Field(default=None, max_length=50)
    industry: Optional[str] = Field(default=None, max_length=100)
    jurisdiction: Optional[str] = Field(default=None, max_length=100)

    @field_validator('date_of_birth')
    @classmethod
    def validate_dob_format(cls, v: Optional[str]) -> Optional[str]:
        return _validate_dob(v)


class ScreeningOutcomeResponse(BaseModel):
    """One screening attempt."""
    entity_id: str
    trigger: str
    success: bool
    screening_id: Optional[str] = None
    result: Optional[Dict[str, Any]] = Field(
        default=None, description="requiresReview, tier, category, findings"
    )
    previous_tier: Optional[str] = None
    tier_changed: bool = False
    escalation: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    skipped: bool = False


class EntityResponse(BaseModel):
    """Entity with the screening triggered by the request, if any."""
    entity: Dict[str, Any]
    changed_fields: List[str] = Field(default_factory=list)
    screening: Optional[ScreeningOutcomeResponse] = None


# ============================================
# KYC
# ============================================

class KycStatusResponse(BaseModel):
    """Reuse/refresh status of an entity's verification."""
    has_valid_kyc: bool
    last_kyc_date: Optional[str] = None
    days_ago: Optional[int] = None
    can_reuse: bool
    refresh_required: bool
    should_refresh: bool = Field(..., description="Tier-dependent refresh check")
    kyc_source: str
    kyc_record_id: Optional[str] = None
    deal_address: Optional[str] = None
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    risk_tier: Optional[str] = None


class DealKycStatusResponse(BaseModel):
    deal_id: str
    parties: Dict[str, KycStatusResponse] = Field(default_factory=dict)


class RefreshQueueResponse(BaseModel):
    total: int = Field(..., ge=0)
    items: List[Dict[str, Any]] = Field(default_factory=list)


# ============================================
# AUTOMATION
# ============================================

class BatchSummaryResponse(BaseModel):
    """Counters for one batch sweep."""
    selected: int = Field(..., ge=0)
    screened: int = Field(..., ge=0)
    failed: int = Field(..., ge=0)
    flagged: int = Field(..., ge=0)
    cases_opened: int = Field(..., ge=0)
    cases_updated: int = Field(..., ge=0)
    skipped: int = Field(0, ge=0)
    cancelled: bool = False
    started_at: str
    finished_at: Optional[str] = None


class AutomationSettingsResponse(BaseModel):
    auto_screen_on_create: bool
    auto_screen_on_update: bool
    batch_interval_hours: Optional[float] = None
    batch_size: int
    batch_delay_seconds: float
    provider_timeout_seconds: float
    adverse_media_threshold: int
    key_attributes: List[str]


class AutomationSettingsUpdate(BaseModel):
    """Fields to change; omitted fields keep their current value.

    Send batch_interval_hours: null explicitly to disable batch sweeps.
    """
    auto_screen_on_create: Optional[bool] = None
    auto_screen_on_update: Optional[bool] = None
    batch_interval_hours: Optional[float] = Field(default=None, gt=0)
    batch_size: Optional[int] = Field(default=None, ge=1, le=1000)
    batch_delay_seconds: Optional[float] = Field(default=None, ge=0)
    provider_timeout_seconds: Optional[float] = Field(default=None, gt=0)
    adverse_media_threshold: Optional[int] = Field(default=None, ge=0)


# ============================================
# CASES
# ============================================

class CaseStatusRequest(BaseModel):
    status: CaseStatus = Field(..., description="UNDER_REVIEW, SUBMITTED or CLOSED")
    reason: Optional[str] = Field(default=None, max_length=500)


class CaseNoteRequest(BaseModel):
    text: str = Field(..., min_length=1, max_length=5000)


class CaseListResponse(BaseModel):
    cases: List[Dict[str, Any]] = Field(default_factory=list)
    total: int = Field(..., ge=0)
    limit: int
    offset: int


# ============================================
# AUDIT
# ============================================

class PaginationInfo(BaseModel):
    total: int = Field(..., ge=0)
    limit: int
    offset: int
    has_more: bool


class AuditListResponse(BaseModel):
    events: List[Dict[str, Any]] = Field(default_factory=list)
    pagination: PaginationInfo


# ============================================
# HEALTH / ERRORS
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: Dict[str, Any] = Field(default_factory=dict, description="Database health")
    audit_queue_depth: int = Field(default=0, ge=0)
    audit_events_dropped: int = Field(default=0, ge=0)
    batch_worker_running: bool = False
    uptime_seconds: Optional[int] = Field(
        default=None,
        description="Server uptime in seconds"
    )
    error_message: Optional[str] = None


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
