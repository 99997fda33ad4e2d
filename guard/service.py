"""
Access Guard Service

Wires the throttle guard, session monitor, consent tracker and anomaly
engine to one audit writer and one configuration, and owns the background
tasks:

    throttle-sweep   → LoginThrottleGuard.sweep()
    anomaly-pass     → AnomalyEngine.run_pass()
    audit-flush      → AuditWriter.flush()
    session-monitor-* (one per session, started by open_session)

Usage:
    service = AccessGuardService.from_config(GuardConfig.from_env())
    service.start()
    decision = service.check_login("a@b.com")
    ...
    service.stop()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol

from guard.anomaly import AnomalyEngine
from guard.audit import AuditSink, AuditWriter
from guard.config import GuardConfig
from guard.consent import ConsentTracker
from guard.models import (
    AlertSeverity,
    AuditAction,
    AuditEvent,
    Clock,
    LoginAttemptRecord,
    SessionActivity,
    ThrottleDecision,
    utc_now,
)
from guard.scheduling import PeriodicTask
from guard.sessions import SessionActivityMonitor, TimeoutCallback
from guard.throttle import LoginThrottleGuard, normalize_identifier
from persistence.attempt_store import AttemptStore, InMemoryAttemptStore, RedisAttemptStore
from persistence.audit_sink import InMemoryAuditSink


logger = logging.getLogger(__name__)


# =============================================================================
# Collaborators
# =============================================================================

@dataclass(frozen=True)
class AuthenticationResult:
    success: bool
    subject_id: Optional[str] = None


class IdentityProvider(Protocol):
    """Issues/validates credentials. Authoritative over correctness."""

    def authenticate(self, identifier: str, credential: str) -> AuthenticationResult:
        ...


@dataclass(frozen=True)
class LoginOutcome:
    """Result of a full throttled login."""
    allowed: bool
    success: bool = False
    wait_seconds: int = 0
    subject_id: Optional[str] = None
    session: Optional[SessionActivity] = None


@dataclass(frozen=True)
class SecuritySummary:
    """Dashboard feed input: counts over the anomaly window."""
    total_events: int
    failed_logins: int
    open_alerts: int
    high_severity_alerts: int
    active_sessions: int
    unique_ips: int


# =============================================================================
# Service
# =============================================================================

class AccessGuardService:
    """Facade used by the HTTP layer."""

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        sink: Optional[AuditSink] = None,
        attempt_store: Optional[AttemptStore] = None,
        identity_provider: Optional[IdentityProvider] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or GuardConfig()
        self.clock = clock
        self.identity_provider = identity_provider

        self.audit = AuditWriter(
            sink if sink is not None else InMemoryAuditSink(),
            self.config,
            clock=clock,
        )
        self.throttle = LoginThrottleGuard(
            self.config,
            attempt_store if attempt_store is not None else InMemoryAttemptStore(),
            clock=clock,
        )
        self.sessions = SessionActivityMonitor(self.config, self.audit, clock=clock)
        self.consent = ConsentTracker(self.audit, clock=clock)
        self.anomaly = AnomalyEngine(self.config, audit=self.audit, clock=clock)

        self._tasks: List[PeriodicTask] = []

    @classmethod
    def from_config(
        cls,
        config: GuardConfig,
        sink: Optional[AuditSink] = None,
        identity_provider: Optional[IdentityProvider] = None,
    ) -> AccessGuardService:
        """Pick backends from config: Redis attempt store when configured."""
        attempt_store: AttemptStore
        if config.attempt_store == "redis":
            retention = max(config.attempt_window, config.max_delay)
            attempt_store = RedisAttemptStore(retention=retention)
        else:
            attempt_store = InMemoryAttemptStore()
        return cls(
            config,
            sink=sink,
            attempt_store=attempt_store,
            identity_provider=identity_provider,
        )

    # -------------------------------------------------------------------------
    # Background Tasks
    # -------------------------------------------------------------------------

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            PeriodicTask("throttle-sweep", self.config.throttle_sweep_ms / 1000.0, self.throttle.sweep),
            PeriodicTask("session-sweep", self.config.activity_poll_ms / 1000.0, self.sessions.sweep),
            PeriodicTask("anomaly-pass", self.config.anomaly_poll_ms / 1000.0, self.anomaly.run_pass),
            PeriodicTask("audit-flush", self.config.audit_flush_ms / 1000.0, self.audit.flush),
        ]
        for task in self._tasks:
            task.start()
        logger.info("Access guard background tasks started")

    def stop(self) -> None:
        """Cancel every timer, then deliver what the audit buffer still holds."""
        for task in self._tasks:
            task.cancel(wait=True, timeout=1.0)
        self._tasks = []
        self.sessions.shutdown()
        self.audit.flush()
        logger.info("Access guard stopped")

    @property
    def running(self) -> bool:
        return any(task.alive for task in self._tasks)

    # -------------------------------------------------------------------------
    # Login
    # -------------------------------------------------------------------------

    def check_login(self, identifier: str) -> ThrottleDecision:
        return self.throttle.check(identifier)

    def record_login(
        self,
        identifier: str,
        success: bool,
        subject_id: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Optional[LoginAttemptRecord]:
        """
        Record an attempt outcome and audit it.

        The throttle decision is made first; the audit write is best-effort
        and never blocks it.
        """
        key = normalize_identifier(identifier)
        record = self.throttle.record(key, success)

        metadata: Dict[str, str] = {"identifier": key}
        if record is not None:
            metadata["attempt_count"] = str(record.attempt_count)
        self.audit.record(AuditEvent(
            action=AuditAction.LOGIN_SUCCEEDED if success else AuditAction.LOGIN_FAILED,
            subject_id=subject_id,
            metadata=metadata,
            source_ip=source_ip,
            user_agent=user_agent,
            created_at=self.clock(),
        ))

        if record is not None and record.attempt_count == self.config.lockout_threshold:
            self.audit.record(AuditEvent(
                action=AuditAction.ACCOUNT_LOCKED,
                subject_id=subject_id,
                metadata={
                    "identifier": key,
                    "attempt_count": str(record.attempt_count),
                    "locked_until": record.locked_until.isoformat(),
                },
                source_ip=source_ip,
                user_agent=user_agent,
                created_at=self.clock(),
            ))
        return record

    def authenticate(
        self,
        identifier: str,
        credential: str,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        on_timeout: Optional[TimeoutCallback] = None,
    ) -> LoginOutcome:
        """
        Throttle check → identity provider → record → open session.

        Raises:
            RuntimeError: no identity provider configured.
        """
        if self.identity_provider is None:
            raise RuntimeError("no identity provider configured")

        decision = self.throttle.check(identifier)
        if not decision.allowed:
            return LoginOutcome(allowed=False, wait_seconds=decision.wait_seconds)

        result = self.identity_provider.authenticate(normalize_identifier(identifier), credential)
        self.record_login(
            identifier,
            result.success,
            subject_id=result.subject_id,
            source_ip=source_ip,
            user_agent=user_agent,
        )
        if not result.success or not result.subject_id:
            after = self.throttle.check(identifier)
            return LoginOutcome(allowed=True, success=False, wait_seconds=after.wait_seconds)

        session = self.open_session(
            result.subject_id,
            source_ip=source_ip,
            user_agent=user_agent,
            on_timeout=on_timeout,
        )
        return LoginOutcome(
            allowed=True,
            success=True,
            subject_id=result.subject_id,
            session=session,
        )

    # -------------------------------------------------------------------------
    # Sessions
    # -------------------------------------------------------------------------

    def open_session(
        self,
        subject_id: str,
        session_id: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
        on_timeout: Optional[TimeoutCallback] = None,
    ) -> SessionActivity:
        """Open a session and start its idle monitor."""
        session = self.sessions.open_session(
            subject_id,
            session_id=session_id,
            source_ip=source_ip,
            user_agent=user_agent,
        )
        self.sessions.start_monitor(session.session_id, on_timeout or self._signed_out)
        return session

    def logout(self, session_id: str) -> SessionActivity:
        return self.sessions.end_session(session_id)

    def _signed_out(self, session: SessionActivity) -> None:
        logger.info(
            f"Forcing sign-out of {session.subject_id} (session {session.session_id})"
        )

    # -------------------------------------------------------------------------
    # Dashboard Feed
    # -------------------------------------------------------------------------

    def summary(self) -> SecuritySummary:
        now = self.clock()
        events = self.audit.sink.query(since=now - self.config.anomaly_window, until=now)
        open_alerts = self.anomaly.alerts(resolved=False)
        return SecuritySummary(
            total_events=len(events),
            failed_logins=sum(1 for e in events if e.action == AuditAction.LOGIN_FAILED),
            open_alerts=len(open_alerts),
            high_severity_alerts=sum(
                1 for a in open_alerts if a.severity.rank >= AlertSeverity.HIGH.rank
            ),
            active_sessions=len(self.sessions.active_sessions()),
            unique_ips=len({e.source_ip for e in events if e.source_ip}),
        )
