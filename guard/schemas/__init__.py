"""
Guard Schemas

Public exports for input and output Pydantic models.
"""

from guard.schemas.inputs import (
    ConsentGrantPayload,
    ConsentRevokePayload,
    LoginCheckPayload,
    LoginPayload,
    LoginRecordPayload,
    SessionActivityPayload,
    SessionLogoutPayload,
)

from guard.schemas.outputs import (
    ConsentRecordResponse,
    ConsentStateResponse,
    LoginResponse,
    SecurityAlertResponse,
    SecuritySummaryResponse,
    SessionResponse,
    ThrottleDecisionResponse,
)

__all__ = [
    # Input
    "LoginCheckPayload",
    "LoginRecordPayload",
    "LoginPayload",
    "SessionActivityPayload",
    "SessionLogoutPayload",
    "ConsentGrantPayload",
    "ConsentRevokePayload",
    # Output
    "ThrottleDecisionResponse",
    "LoginResponse",
    "SessionResponse",
    "ConsentRecordResponse",
    "ConsentStateResponse",
    "SecurityAlertResponse",
    "SecuritySummaryResponse",
]
