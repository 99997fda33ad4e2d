"""
Guard Input Schemas

Pydantic V2 request bodies for the HTTP boundary.
"""

from typing import Optional

from pydantic import BaseModel, Field

from guard.models import ConsentPurpose


# =============================================================================
# Login
# =============================================================================

class LoginCheckPayload(BaseModel):
    """Advisory gate before credentials are submitted."""
    identifier: str = Field(..., min_length=1, max_length=254, description="Email or account handle")


class LoginRecordPayload(BaseModel):
    """Outcome reported after the identity provider answered."""
    identifier: str = Field(..., min_length=1, max_length=254, description="Email or account handle")
    success: bool = Field(..., description="Whether the credentials were accepted")
    subject_id: Optional[str] = Field(None, description="Authenticated subject, when known")


class LoginPayload(BaseModel):
    """Full throttled login through the configured identity provider."""
    identifier: str = Field(..., min_length=1, max_length=254)
    credential: str = Field(..., min_length=1, max_length=1024)


# =============================================================================
# Sessions
# =============================================================================

class SessionActivityPayload(BaseModel):
    session_id: str = Field(..., min_length=1, description="Active session identifier")
    signal: str = Field("pointer", description="Activity signal (pointer, key, scroll, touch)")


class SessionLogoutPayload(BaseModel):
    session_id: str = Field(..., min_length=1)


# =============================================================================
# Consent
# =============================================================================

class ConsentGrantPayload(BaseModel):
    subject_id: str = Field(..., min_length=1)
    purpose: ConsentPurpose = Field(..., description="Consent purpose")
    version: str = Field("1.0", min_length=1, max_length=32, description="Policy version consented to")


class ConsentRevokePayload(BaseModel):
    subject_id: str = Field(..., min_length=1)
    purpose: ConsentPurpose = Field(..., description="Consent purpose")
