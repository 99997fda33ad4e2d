"""
Session Activity Monitor

Tracks last activity per authenticated session and enforces the idle
timeout:

    ACTIVE ──(idle > session_timeout)──▶ EXPIRED   (terminal)
    ACTIVE ──(logout / terminate)──────▶ ENDED     (terminal)

Each monitored session gets its own PeriodicTask polling every
activity_poll_ms. Expiry appends a `session_timeout` audit event and calls
the session's on_timeout callback exactly once.
"""

from __future__ import annotations

import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import timedelta
from typing import Callable, Dict, List, Optional, Tuple

from guard.audit import AuditWriter
from guard.config import GuardConfig
from guard.errors import SessionExpired, UnknownSession
from guard.models import (
    AuditAction,
    AuditEvent,
    Clock,
    SessionActivity,
    SessionStatus,
    utc_now,
)
from guard.scheduling import PeriodicTask


logger = logging.getLogger(__name__)


TimeoutCallback = Callable[[SessionActivity], None]
WarningCallback = Callable[[SessionActivity, timedelta], None]


@dataclass
class _Monitor:
    task: PeriodicTask
    on_timeout: TimeoutCallback
    on_warning: Optional[WarningCallback] = None


class SessionActivityMonitor:
    """
    Owns SessionActivity state. Updates to one session are serialized by a
    per-session lock; audit writes and callbacks run outside it.
    """

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        audit: Optional[AuditWriter] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or GuardConfig()
        self.audit = audit
        self._clock = clock
        self._sessions: Dict[str, SessionActivity] = {}
        self._session_locks: Dict[str, threading.Lock] = {}
        self._monitors: Dict[str, _Monitor] = {}
        self._guard = threading.Lock()  # Protects the three dicts above

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def open_session(
        self,
        subject_id: str,
        session_id: Optional[str] = None,
        source_ip: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> SessionActivity:
        """Enter ACTIVE after a successful authentication."""
        now = self._clock()
        session = SessionActivity(
            session_id=session_id or f"sess_{uuid.uuid4().hex}",
            subject_id=subject_id,
            created_at=now,
            last_activity_at=now,
            idle_timeout=self.config.session_timeout,
            source_ip=source_ip,
            user_agent=user_agent,
        )
        with self._guard:
            existing = self._sessions.get(session.session_id)
            if existing is not None and existing.is_active:
                raise ValueError(f"session {session.session_id} is already active")
            self._sessions[session.session_id] = session
            self._session_locks.setdefault(session.session_id, threading.Lock())
            snapshot = replace(session)

        logger.info(f"Session {session.session_id} opened for {subject_id}")
        self._audit(AuditAction.SESSION_STARTED, snapshot)
        return snapshot

    def end_session(
        self,
        session_id: str,
        action: AuditAction = AuditAction.LOGOUT,
    ) -> SessionActivity:
        """Move an ACTIVE session to ENDED. No-op for terminal sessions."""
        with self._lock_for(session_id):
            session = self._require(session_id)
            ended = session.is_active
            if ended:
                session.status = SessionStatus.ENDED
                session.ended_at = self._clock()
            snapshot = replace(session)

        self.stop_monitor(session_id)
        if ended:
            logger.info(f"Session {session_id} ended ({action.value})")
            self._audit(action, snapshot)
        return snapshot

    def terminate_session(self, session_id: str) -> SessionActivity:
        """Operator-initiated sign-out."""
        return self.end_session(session_id, action=AuditAction.SESSION_TERMINATED)

    def terminate_other_sessions(self, subject_id: str, keep_session_id: str) -> List[str]:
        """End every active session of `subject_id` except `keep_session_id`."""
        terminated = []
        for session in self.active_sessions(subject_id):
            if session.session_id == keep_session_id:
                continue
            self.terminate_session(session.session_id)
            terminated.append(session.session_id)
        return terminated

    # -------------------------------------------------------------------------
    # Activity
    # -------------------------------------------------------------------------

    def track_activity(self, session_id: str, signal: str = "pointer") -> SessionActivity:
        """
        Record user activity for a session.

        Signals outside config.activity_signals are ignored. Activity that
        arrives after the idle timeout has already elapsed cannot revive the
        session: it is expired instead.

        Raises:
            UnknownSession: the session id is not tracked.
            SessionExpired: the session is (or just became) terminal.
        """
        with self._lock_for(session_id):
            session = self._require(session_id)
            if not session.is_active:
                raise SessionExpired(f"session {session_id} is {session.status.value}")

            if signal not in self.config.activity_signals:
                logger.debug(f"Ignoring activity signal {signal!r} for {session_id}")
                return replace(session)

            now = self._clock()
            if now - session.last_activity_at <= self.config.session_timeout:
                session.last_activity_at = now
                session.warned = False
                return replace(session)

        # Idle limit passed before this activity arrived
        self.check_session(session_id)
        raise SessionExpired(f"session {session_id} is EXPIRED")

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def start_monitor(
        self,
        session_id: str,
        on_timeout: TimeoutCallback,
        on_warning: Optional[WarningCallback] = None,
    ) -> None:
        """
        Poll the session every activity_poll_ms until it expires or
        stop_monitor() is called. Restarting replaces the callbacks.
        """
        # Session lock held through registration so end_session sees the monitor
        with self._lock_for(session_id):
            session = self._require(session_id)
            if not session.is_active:
                raise SessionExpired(f"session {session_id} is {session.status.value}")

            with self._guard:
                current = self._monitors.get(session_id)
                if current is not None and not current.task.cancelled:
                    current.on_timeout = on_timeout
                    current.on_warning = on_warning
                    return
                task = PeriodicTask(
                    name=f"session-monitor-{session_id}",
                    interval_seconds=self.config.activity_poll_ms / 1000.0,
                    fn=lambda: self.check_session(session_id),
                )
                self._monitors[session_id] = _Monitor(task, on_timeout, on_warning)
            task.start()

    def stop_monitor(self, session_id: str) -> None:
        """Cancel the session's task. Idempotent; unknown ids are ignored."""
        with self._guard:
            monitor = self._monitors.pop(session_id, None)
        if monitor is not None:
            monitor.task.cancel()
            logger.debug(f"Monitor stopped for {session_id}")

    def check_session(self, session_id: str) -> SessionStatus:
        """
        Compare idle time against the timeout and transition if exceeded.

        Safe to call from any thread; only the caller that performs the
        ACTIVE → EXPIRED transition fires the timeout callback.
        """
        status, _ = self._check(session_id)
        return status

    def _check(self, session_id: str) -> Tuple[SessionStatus, bool]:
        expired = warned = False
        try:
            lock = self._lock_for(session_id)
        except UnknownSession:
            return SessionStatus.ENDED, False

        with lock:
            session = self._sessions.get(session_id)
            if session is None:
                return SessionStatus.ENDED, False
            if not session.is_active:
                # Leftover monitor on a terminal session
                self.stop_monitor(session_id)
                return session.status, False

            now = self._clock()
            idle = now - session.last_activity_at
            remaining = self.config.session_timeout - idle
            if idle > self.config.session_timeout:
                session.status = SessionStatus.EXPIRED
                session.ended_at = now
                expired = True
            elif (
                self.config.session_warning_ms > 0
                and not session.warned
                and remaining <= self.config.session_warning
            ):
                session.warned = True
                warned = True
            snapshot = replace(session)

        if expired:
            with self._guard:
                monitor = self._monitors.pop(session_id, None)
            if monitor is not None:
                monitor.task.cancel()
            logger.info(f"Session {session_id} expired after {idle} idle")
            self._audit(
                AuditAction.SESSION_TIMEOUT,
                snapshot,
                {"idle_seconds": str(int(idle.total_seconds()))},
            )
            if monitor is not None:
                self._invoke(monitor.on_timeout, snapshot)
        elif warned:
            with self._guard:
                monitor = self._monitors.get(session_id)
            self._audit(
                AuditAction.SESSION_WARNING,
                snapshot,
                {"seconds_left": str(max(0, int(remaining.total_seconds())))},
            )
            if monitor is not None and monitor.on_warning is not None:
                self._invoke(monitor.on_warning, snapshot, remaining)

        return snapshot.status, expired

    def sweep(self) -> List[str]:
        """
        Check every active session once and forget terminal sessions that
        ended more than one timeout ago. Returns ids that expired.
        """
        with self._guard:
            ids = list(self._sessions)
        expired = [sid for sid in ids if self._check(sid)[1]]

        horizon = self._clock() - self.config.session_timeout
        with self._guard:
            for sid in [
                sid for sid, s in self._sessions.items()
                if not s.is_active and s.ended_at is not None and s.ended_at < horizon
            ]:
                del self._sessions[sid]
                self._session_locks.pop(sid, None)
        return expired

    def shutdown(self) -> None:
        """Cancel every outstanding monitor task and wait for the threads."""
        with self._guard:
            monitors = list(self._monitors.values())
            self._monitors.clear()
        for monitor in monitors:
            monitor.task.cancel(wait=True, timeout=1.0)
        if monitors:
            logger.info(f"Stopped {len(monitors)} session monitor(s)")

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def get_session(self, session_id: str) -> SessionActivity:
        with self._lock_for(session_id):
            return replace(self._require(session_id))

    def active_sessions(self, subject_id: Optional[str] = None) -> List[SessionActivity]:
        with self._guard:
            sessions = [
                replace(s) for s in self._sessions.values()
                if s.is_active and (subject_id is None or s.subject_id == subject_id)
            ]
        return sorted(sessions, key=lambda s: s.created_at)

    def is_monitored(self, session_id: str) -> bool:
        with self._guard:
            monitor = self._monitors.get(session_id)
        return monitor is not None and monitor.task.alive

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _lock_for(self, session_id: str) -> threading.Lock:
        """Lock of a tracked session. Unknown ids get no lock."""
        with self._guard:
            if session_id not in self._sessions:
                raise UnknownSession(f"unknown session {session_id}")
            return self._session_locks.setdefault(session_id, threading.Lock())

    def _require(self, session_id: str) -> SessionActivity:
        session = self._sessions.get(session_id)
        if session is None:
            raise UnknownSession(f"unknown session {session_id}")
        return session

    def _audit(
        self,
        action: AuditAction,
        session: SessionActivity,
        extra: Optional[Dict[str, str]] = None,
    ) -> None:
        if self.audit is None:
            return
        metadata = {"session_id": session.session_id}
        if extra:
            metadata.update(extra)
        self.audit.record(AuditEvent(
            action=action,
            subject_id=session.subject_id,
            metadata=metadata,
            source_ip=session.source_ip,
            user_agent=session.user_agent,
            created_at=self._clock(),
        ))

    def _invoke(self, callback: Callable, *args) -> None:
        try:
            callback(*args)
        except Exception as e:
            logger.error(f"Session callback {getattr(callback, '__name__', callback)} failed: {e}")
