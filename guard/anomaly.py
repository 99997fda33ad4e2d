"""
Anomaly Heuristics Engine

Derives SecurityAlerts from a window of AuditEvents. Deterministic rules:

    failed_login_burst     login_failed per subject/identifier
                           >= failed_login_burst_medium → medium
                           >= failed_login_burst_high   → high
    multi_device_activity  distinct user agents per subject
                           > multi_device_threshold     → high
    session_anomaly        session_timeout with no login_succeeded for the
                           same subject within the grace period → low

Alerts are keyed by (kind, subject_id, date). While an alert with that key
is unresolved, re-evaluation never creates another one; a stronger signal
escalates the open alert's severity instead. Once resolved, the same
evidence never raises the alert again; only new matching events do. Evaluation works on a sorted
snapshot of the window, so arrival order does not matter.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, replace
from datetime import date
from typing import Dict, Iterable, List, Optional, Set, Tuple

from user_agents import parse as parse_user_agent

from guard.audit import AuditSink, AuditWriter
from guard.config import GuardConfig
from guard.errors import AlertNotFound
from guard.models import (
    AlertKind,
    AlertSeverity,
    AuditAction,
    AuditEvent,
    Clock,
    SecurityAlert,
    utc_now,
)


logger = logging.getLogger(__name__)


NaturalKey = Tuple[AlertKind, str, date]


@dataclass(frozen=True)
class _Finding:
    """A rule match before it is reconciled with stored alerts."""
    kind: AlertKind
    severity: AlertSeverity
    subject_id: str
    raised_on: date
    evidence: Tuple[str, ...]
    message: str

    @property
    def natural_key(self) -> NaturalKey:
        return (self.kind, self.subject_id, self.raised_on)


class AnomalyEngine:
    """Owns SecurityAlerts; reads audit events only."""

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        sink: Optional[AuditSink] = None,
        audit: Optional[AuditWriter] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or GuardConfig()
        self.sink = sink if sink is not None else (audit.sink if audit is not None else None)
        self.audit = audit
        self._clock = clock
        self._alerts: Dict[str, SecurityAlert] = {}
        self._open: Dict[NaturalKey, str] = {}
        self._resolved_evidence: Dict[NaturalKey, Set[str]] = {}
        self._lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate(self, window: Iterable[AuditEvent]) -> List[SecurityAlert]:
        """
        Apply every heuristic to `window`.

        Returns alerts created or escalated by this call; re-running on the
        same window returns an empty list.
        """
        events = sorted(tuple(window), key=lambda e: e.created_at)
        now = self._clock()

        findings: List[_Finding] = []
        findings.extend(self._failed_login_bursts(events))
        findings.extend(self._multi_device_activity(events))
        findings.extend(self._session_anomalies(events, now))

        changed: List[SecurityAlert] = []
        with self._lock:
            self._forget_resolved_before((now - self.config.anomaly_window).date())
            for finding in findings:
                alert = self._reconcile(finding, now)
                if alert is not None:
                    changed.append(replace(alert))

        for alert in changed:
            logger.warning(
                f"Security alert {alert.kind.value} ({alert.severity.value}) "
                f"for {alert.subject_id}: {alert.message}"
            )
            self._audit(AuditAction.ALERT_RAISED, alert)
        return changed

    def run_pass(self) -> List[SecurityAlert]:
        """
        Evaluate the last anomaly_window_hours of events from the sink.

        Runs in the background; failures are logged, never raised.
        """
        if self.sink is None:
            logger.error("Anomaly pass skipped: no audit sink configured")
            return []
        now = self._clock()
        try:
            window = self.sink.query(since=now - self.config.anomaly_window, until=now)
            return self.evaluate(window)
        except Exception as e:
            logger.error(f"Anomaly evaluation pass failed: {e}")
            return []

    # -------------------------------------------------------------------------
    # Operator Actions & Queries
    # -------------------------------------------------------------------------

    def resolve(self, alert_id: str) -> SecurityAlert:
        """Mark an alert resolved. Irreversible; resolving twice is a no-op."""
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFound(f"unknown alert {alert_id}")
            newly_resolved = not alert.resolved
            if newly_resolved:
                alert.resolved = True
                alert.resolved_at = self._clock()
                if self._open.get(alert.natural_key) == alert.id:
                    del self._open[alert.natural_key]
                self._resolved_evidence.setdefault(alert.natural_key, set()).update(alert.evidence)
            snapshot = replace(alert)

        if newly_resolved:
            logger.info(f"Alert {alert_id} resolved")
            self._audit(AuditAction.ALERT_RESOLVED, snapshot)
        return snapshot

    def get_alert(self, alert_id: str) -> SecurityAlert:
        with self._lock:
            alert = self._alerts.get(alert_id)
            if alert is None:
                raise AlertNotFound(f"unknown alert {alert_id}")
            return replace(alert)

    def alerts(self, resolved: Optional[bool] = None) -> List[SecurityAlert]:
        """Alerts newest first, optionally filtered by resolution state."""
        with self._lock:
            selected = [
                replace(a) for a in self._alerts.values()
                if resolved is None or a.resolved == resolved
            ]
        return sorted(selected, key=lambda a: a.raised_at, reverse=True)

    # -------------------------------------------------------------------------
    # Heuristics
    # -------------------------------------------------------------------------

    def _failed_login_bursts(self, events: List[AuditEvent]) -> List[_Finding]:
        failures: Dict[str, List[AuditEvent]] = defaultdict(list)
        for event in events:
            if event.action != AuditAction.LOGIN_FAILED:
                continue
            key = event.subject_id or event.metadata.get("identifier")
            if key:
                failures[key].append(event)

        findings = []
        for subject, matched in failures.items():
            count = len(matched)
            if count >= self.config.failed_login_burst_high:
                severity = AlertSeverity.HIGH
            elif count >= self.config.failed_login_burst_medium:
                severity = AlertSeverity.MEDIUM
            else:
                continue
            findings.append(_Finding(
                kind=AlertKind.FAILED_LOGIN_BURST,
                severity=severity,
                subject_id=subject,
                raised_on=matched[-1].created_at.date(),
                evidence=tuple(e.id for e in matched),
                message=f"{count} failed login attempts in the last {self.config.anomaly_window_hours}h",
            ))
        return findings

    def _multi_device_activity(self, events: List[AuditEvent]) -> List[_Finding]:
        devices: Dict[str, Dict[str, AuditEvent]] = defaultdict(dict)
        last_seen: Dict[str, AuditEvent] = {}
        for event in events:
            if not event.subject_id or not event.user_agent:
                continue
            device = self._normalize_user_agent(event.user_agent)
            devices[event.subject_id].setdefault(device, event)
            last_seen[event.subject_id] = event

        findings = []
        for subject, seen in devices.items():
            if len(seen) <= self.config.multi_device_threshold:
                continue
            findings.append(_Finding(
                kind=AlertKind.MULTI_DEVICE_ACTIVITY,
                severity=AlertSeverity.HIGH,
                subject_id=subject,
                raised_on=last_seen[subject].created_at.date(),
                evidence=tuple(e.id for e in seen.values()),
                message=f"Activity from {len(seen)} different devices/browsers",
            ))
        return findings

    def _session_anomalies(self, events: List[AuditEvent], now) -> List[_Finding]:
        grace = self.config.session_anomaly_grace
        logins: Dict[str, List[AuditEvent]] = defaultdict(list)
        for event in events:
            if event.action == AuditAction.LOGIN_SUCCEEDED and event.subject_id:
                logins[event.subject_id].append(event)

        unmatched: Dict[Tuple[str, date], List[AuditEvent]] = defaultdict(list)
        for event in events:
            if event.action != AuditAction.SESSION_TIMEOUT or not event.subject_id:
                continue
            deadline = event.created_at + grace
            if now < deadline:
                # Grace period still running; judge on a later pass
                continue
            relogged = any(
                event.created_at < login.created_at <= deadline
                for login in logins[event.subject_id]
            )
            if not relogged:
                unmatched[(event.subject_id, event.created_at.date())].append(event)

        return [
            _Finding(
                kind=AlertKind.SESSION_ANOMALY,
                severity=AlertSeverity.LOW,
                subject_id=subject,
                raised_on=day,
                evidence=tuple(e.id for e in matched),
                message=f"{len(matched)} session timeout(s) without a subsequent login",
            )
            for (subject, day), matched in unmatched.items()
        ]

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _normalize_user_agent(self, user_agent: str) -> str:
        """
        Device key for the multi-device rule.

        `raw` compares exact strings, so browser updates count as new
        devices. `family` collapses versions to browser/OS/device families.
        """
        if self.config.user_agent_normalization == "family":
            ua = parse_user_agent(user_agent)
            return f"{ua.browser.family}|{ua.os.family}|{ua.device.family}"
        return user_agent.strip()

    def _reconcile(self, finding: _Finding, now) -> Optional[SecurityAlert]:
        """Create or escalate the alert for a finding. Caller holds _lock."""
        open_id = self._open.get(finding.natural_key)
        if open_id is not None:
            alert = self._alerts[open_id]
            if finding.severity.rank <= alert.severity.rank:
                return None
            alert.severity = finding.severity
            alert.evidence = tuple(dict.fromkeys(alert.evidence + finding.evidence))
            alert.message = finding.message
            return alert

        covered = self._resolved_evidence.get(finding.natural_key)
        if covered is not None and covered.issuperset(finding.evidence):
            return None

        alert = SecurityAlert(
            kind=finding.kind,
            severity=finding.severity,
            subject_id=finding.subject_id,
            raised_on=finding.raised_on,
            raised_at=now,
            evidence=finding.evidence,
            message=finding.message,
        )
        self._alerts[alert.id] = alert
        self._open[alert.natural_key] = alert.id
        return alert

    def _forget_resolved_before(self, day: date) -> None:
        """Drop resolved evidence for days no window can reach. Caller holds _lock."""
        for key in [k for k in self._resolved_evidence if k[2] < day]:
            del self._resolved_evidence[key]

    def _audit(self, action: AuditAction, alert: SecurityAlert) -> None:
        if self.audit is None:
            return
        self.audit.record(AuditEvent(
            action=action,
            subject_id=alert.subject_id,
            metadata={
                "alert_id": alert.id,
                "kind": alert.kind.value,
                "severity": alert.severity.value,
            },
            created_at=self._clock(),
        ))
