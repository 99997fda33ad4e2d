"""
Consent Lifecycle Tracker

Per (subject, purpose) state machine with append-only history:

    NONE → GRANTED → REVOKED → GRANTED → ...

Every transition appends a new ConsentRecord; existing records are never
modified. A transition is only appended after its audit event has been
durably recorded, so a sink outage refuses the change instead of leaving
an unaudited consent.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from guard.audit import AuditWriter
from guard.locks import KeyedLock
from guard.models import (
    AuditAction,
    AuditEvent,
    Clock,
    ConsentPurpose,
    ConsentRecord,
    ConsentState,
    ConsentStatus,
    new_id,
    utc_now,
)


logger = logging.getLogger(__name__)


DEFAULT_CONSENT_VERSION = "1.0"


class ConsentTracker:
    """Owns consent history for every subject."""

    def __init__(self, audit: AuditWriter, clock: Clock = utc_now) -> None:
        self.audit = audit
        self._clock = clock
        self._history: Dict[str, List[ConsentRecord]] = defaultdict(list)
        self._key_locks = KeyedLock()
        self._guard = threading.Lock()  # Protects _history lists

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def grant(
        self,
        subject_id: str,
        purpose: ConsentPurpose,
        version: str = DEFAULT_CONSENT_VERSION,
    ) -> ConsentRecord:
        """
        Grant consent for a purpose.

        Granting an already-active purpose is a no-op that returns the
        existing record.

        Raises:
            SinkUnavailable: the audit event could not be recorded; history
                is unchanged and the caller should retry.
        """
        purpose = ConsentPurpose(purpose)
        with self._key_locks.hold((subject_id, purpose)):
            current = self._latest(subject_id, purpose)
            if current is not None and current.is_active:
                logger.info(
                    f"Consent {purpose.value} already active for {subject_id} "
                    f"(version {current.version}), grant ignored"
                )
                return current

            now = self._clock()
            record = ConsentRecord(
                id=new_id("consent"),
                subject_id=subject_id,
                purpose=purpose,
                granted=True,
                granted_at=now,
                version=version,
            )
            self.audit.record_durable(self._event(AuditAction.CONSENT_GRANTED, record))
            self._append(record)

        logger.info(f"Consent {purpose.value} granted by {subject_id} (version {version})")
        return record

    def revoke(self, subject_id: str, purpose: ConsentPurpose) -> Optional[ConsentRecord]:
        """
        Revoke consent for a purpose.

        Only a GRANTED purpose produces a new record. Otherwise this is an
        idempotent no-op returning the current terminal record, or None when
        the subject never granted the purpose.

        Raises:
            SinkUnavailable: the audit event could not be recorded.
        """
        purpose = ConsentPurpose(purpose)
        with self._key_locks.hold((subject_id, purpose)):
            current = self._latest(subject_id, purpose)
            if current is None or not current.is_active:
                logger.debug(f"Consent {purpose.value} not active for {subject_id}, revoke ignored")
                return current

            now = self._clock()
            record = ConsentRecord(
                id=new_id("consent"),
                subject_id=subject_id,
                purpose=purpose,
                granted=False,
                granted_at=now,
                version=current.version,
                revoked_at=now,
            )
            self.audit.record_durable(self._event(AuditAction.CONSENT_REVOKED, record))
            self._append(record)

        logger.info(f"Consent {purpose.value} revoked by {subject_id}")
        return record

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def current_state(self, subject_id: str, purpose: ConsentPurpose) -> ConsentState:
        record = self._latest(subject_id, ConsentPurpose(purpose))
        if record is None:
            return ConsentState(status=ConsentStatus.NONE)
        status = ConsentStatus.GRANTED if record.is_active else ConsentStatus.REVOKED
        return ConsentState(status=status, record=record)

    def current_states(self, subject_id: str) -> Dict[ConsentPurpose, ConsentState]:
        """State of every known purpose for a subject."""
        return {purpose: self.current_state(subject_id, purpose) for purpose in ConsentPurpose}

    def history(
        self,
        subject_id: str,
        purpose: Optional[ConsentPurpose] = None,
    ) -> Tuple[ConsentRecord, ...]:
        """
        Records in insertion order.

        The returned tuple is a snapshot: later transitions never change it,
        and it can be iterated any number of times.
        """
        with self._guard:
            records = tuple(self._history.get(subject_id, ()))
        if purpose is not None:
            purpose = ConsentPurpose(purpose)
            records = tuple(r for r in records if r.purpose == purpose)
        return records

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _latest(self, subject_id: str, purpose: ConsentPurpose) -> Optional[ConsentRecord]:
        """Most recent record by granted_at; later insertion wins ties."""
        latest: Optional[ConsentRecord] = None
        for record in self.history(subject_id, purpose):
            if latest is None or record.granted_at >= latest.granted_at:
                latest = record
        return latest

    def _append(self, record: ConsentRecord) -> None:
        with self._guard:
            self._history[record.subject_id].append(record)

    def _event(self, action: AuditAction, record: ConsentRecord) -> AuditEvent:
        return AuditEvent(
            action=action,
            subject_id=record.subject_id,
            metadata={
                "consent_id": record.id,
                "purpose": record.purpose.value,
                "version": record.version,
            },
            created_at=record.granted_at,
        )
