"""
Guard Output Schemas

Pydantic V2 response models. Built from the domain dataclasses with
`model_validate(obj)` (from_attributes).
"""

from datetime import date, datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from guard.models import (
    AlertKind,
    AlertSeverity,
    ConsentPurpose,
    ConsentStatus,
    SessionStatus,
)


class _FromDomain(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# =============================================================================
# Login
# =============================================================================

class ThrottleDecisionResponse(_FromDomain):
    allowed: bool = Field(..., description="Whether credentials may be submitted now")
    wait_seconds: int = Field(..., ge=0, description="Seconds until the next attempt is allowed")
    remaining_attempts: int = Field(..., ge=0, description="Failures left before lockout")


class LoginResponse(BaseModel):
    allowed: bool
    success: bool
    wait_seconds: int = Field(0, ge=0)
    subject_id: Optional[str] = None
    session_id: Optional[str] = None


# =============================================================================
# Sessions
# =============================================================================

class SessionResponse(_FromDomain):
    session_id: str
    subject_id: str
    status: SessionStatus
    created_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None


# =============================================================================
# Consent
# =============================================================================

class ConsentRecordResponse(_FromDomain):
    id: str
    subject_id: str
    purpose: ConsentPurpose
    granted: bool
    granted_at: datetime
    revoked_at: Optional[datetime] = None
    version: str


class ConsentStateResponse(BaseModel):
    purpose: ConsentPurpose
    status: ConsentStatus
    active: bool
    record: Optional[ConsentRecordResponse] = None


# =============================================================================
# Alerts & Summary
# =============================================================================

class SecurityAlertResponse(_FromDomain):
    id: str
    kind: AlertKind
    severity: AlertSeverity
    subject_id: str
    raised_on: date
    raised_at: datetime
    evidence: List[str] = Field(default_factory=list, description="AuditEvent ids")
    message: str = ""
    resolved: bool
    resolved_at: Optional[datetime] = None


class SecuritySummaryResponse(_FromDomain):
    total_events: int = Field(..., ge=0)
    failed_logins: int = Field(..., ge=0)
    open_alerts: int = Field(..., ge=0)
    high_severity_alerts: int = Field(..., ge=0)
    active_sessions: int = Field(..., ge=0)
    unique_ips: int = Field(..., ge=0)
