"""
Guard Domain Records

Dataclasses for the state owned by each component:

    LoginAttemptRecord  → LoginThrottleGuard
    SessionActivity     → SessionActivityMonitor
    ConsentRecord       → ConsentTracker (immutable, append-only)
    AuditEvent          → audit sink (immutable, append-only)
    SecurityAlert       → AnomalyEngine
"""

from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional, Tuple


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    """Default clock: timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


# =============================================================================
# Enums
# =============================================================================

class AuditAction(str, Enum):
    """Security-relevant actions recorded in the audit log."""
    LOGIN_SUCCEEDED = "login_succeeded"
    LOGIN_FAILED = "login_failed"
    ACCOUNT_LOCKED = "account_locked"
    SESSION_STARTED = "session_started"
    SESSION_ACTIVITY = "session_activity"
    SESSION_WARNING = "session_warning"
    SESSION_TIMEOUT = "session_timeout"
    LOGOUT = "logout"
    SESSION_TERMINATED = "session_terminated"
    CONSENT_GRANTED = "consent_granted"
    CONSENT_REVOKED = "consent_revoked"
    ROLE_CHANGED = "role_changed"
    ALERT_RAISED = "alert_raised"
    ALERT_RESOLVED = "alert_resolved"


class ConsentPurpose(str, Enum):
    """Named categories of data use tracked independently."""
    DATA_PROCESSING = "data_processing"
    MARKETING = "marketing"
    ANALYTICS = "analytics"
    COOKIES = "cookies"
    COMMUNICATIONS = "communications"
    THIRD_PARTY_SHARING = "third_party_sharing"


class ConsentStatus(str, Enum):
    NONE = "NONE"
    GRANTED = "GRANTED"
    REVOKED = "REVOKED"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    EXPIRED = "EXPIRED"
    ENDED = "ENDED"


class AlertKind(str, Enum):
    FAILED_LOGIN_BURST = "failed_login_burst"
    MULTI_DEVICE_ACTIVITY = "multi_device_activity"
    SESSION_ANOMALY = "session_anomaly"


class AlertSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {
    AlertSeverity.LOW: 0,
    AlertSeverity.MEDIUM: 1,
    AlertSeverity.HIGH: 2,
    AlertSeverity.CRITICAL: 3,
}


# =============================================================================
# Login Throttle
# =============================================================================

@dataclass
class LoginAttemptRecord:
    """Failed-attempt counter for one normalized identifier."""
    identifier: str
    attempt_count: int
    first_attempt_at: datetime
    last_attempt_at: datetime
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and now < self.locked_until

    def to_dict(self) -> Dict[str, Any]:
        return {
            "identifier": self.identifier,
            "attempt_count": self.attempt_count,
            "first_attempt_at": self.first_attempt_at.isoformat(),
            "last_attempt_at": self.last_attempt_at.isoformat(),
            "locked_until": self.locked_until.isoformat() if self.locked_until else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> LoginAttemptRecord:
        locked_until = data.get("locked_until")
        return cls(
            identifier=data["identifier"],
            attempt_count=int(data["attempt_count"]),
            first_attempt_at=datetime.fromisoformat(data["first_attempt_at"]),
            last_attempt_at=datetime.fromisoformat(data["last_attempt_at"]),
            locked_until=datetime.fromisoformat(locked_until) if locked_until else None,
        )


@dataclass(frozen=True)
class ThrottleDecision:
    """Advisory result of LoginThrottleGuard.check()."""
    allowed: bool
    wait_seconds: int = 0
    remaining_attempts: int = 0


# =============================================================================
# Sessions
# =============================================================================

@dataclass
class SessionActivity:
    """Activity tracking for one authenticated session."""
    session_id: str
    subject_id: str
    created_at: datetime
    last_activity_at: datetime
    idle_timeout: timedelta
    status: SessionStatus = SessionStatus.ACTIVE
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    warned: bool = False
    ended_at: Optional[datetime] = None

    @property
    def expires_at(self) -> datetime:
        return self.last_activity_at + self.idle_timeout

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


# =============================================================================
# Consent
# =============================================================================

@dataclass(frozen=True)
class ConsentRecord:
    """One immutable entry in a subject's consent history."""
    id: str
    subject_id: str
    purpose: ConsentPurpose
    granted: bool
    granted_at: datetime
    version: str
    revoked_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.granted and self.revoked_at is None


@dataclass(frozen=True)
class ConsentState:
    """Current state for one (subject, purpose)."""
    status: ConsentStatus
    record: Optional[ConsentRecord] = None

    @property
    def active(self) -> bool:
        return self.status == ConsentStatus.GRANTED


# =============================================================================
# Audit
# =============================================================================

@dataclass(frozen=True)
class AuditEvent:
    """Append-only security event."""
    action: AuditAction
    subject_id: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
    source_ip: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=utc_now)
    id: str = field(default_factory=lambda: new_id("evt"))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = self.action.value
        data["metadata"] = dict(self.metadata)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> AuditEvent:
        created_at = data["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at.replace("Z", "+00:00"))
        return cls(
            id=data["id"],
            action=AuditAction(data["action"]),
            subject_id=data.get("subject_id"),
            metadata={str(k): str(v) for k, v in (data.get("metadata") or {}).items()},
            source_ip=data.get("source_ip"),
            user_agent=data.get("user_agent"),
            created_at=created_at,
        )


# =============================================================================
# Alerts
# =============================================================================

@dataclass
class SecurityAlert:
    """Alert derived from audit events; resolved only by an operator."""
    kind: AlertKind
    severity: AlertSeverity
    subject_id: str
    raised_on: date
    raised_at: datetime
    evidence: Tuple[str, ...] = ()
    message: str = ""
    resolved: bool = False
    resolved_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: new_id("alert"))

    @property
    def natural_key(self) -> Tuple[AlertKind, str, date]:
        return (self.kind, self.subject_id, self.raised_on)
