"""
Guard Audit Writer

Narrow interface to the external audit-event sink plus the retry policy
every component writes through.

Two write paths:
- record():         best-effort. One attempt; on failure the event is kept
                    in a bounded local buffer and retried by flush() with
                    exponential backoff. Never raises.
- record_durable(): synchronous bounded retries; raises SinkUnavailable.
                    Used where the caller's decision depends on the audit
                    trail (consent).
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Deque, List, Optional

from guard.config import GuardConfig
from guard.errors import SinkUnavailable
from guard.models import AuditAction, AuditEvent, Clock, utc_now


logger = logging.getLogger(__name__)


# =============================================================================
# Sink Interface
# =============================================================================

class AuditSink(ABC):
    """Append-only store of security events (external collaborator)."""

    @abstractmethod
    def append(self, event: AuditEvent) -> None:
        """Persist one event. Raises SinkUnavailable on failure."""

    @abstractmethod
    def query(
        self,
        since: datetime,
        until: datetime,
        subject_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
    ) -> List[AuditEvent]:
        """Events with since <= created_at <= until, oldest first."""


# =============================================================================
# Writer
# =============================================================================

@dataclass
class _PendingEvent:
    event: AuditEvent
    attempts: int
    next_attempt_at: datetime


class AuditWriter:
    """
    Retry/buffer policy in front of an AuditSink.

    Sink calls never happen while the buffer lock is held.
    """

    def __init__(
        self,
        sink: AuditSink,
        config: Optional[GuardConfig] = None,
        clock: Clock = utc_now,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.sink = sink
        self.config = config or GuardConfig()
        self._clock = clock
        self._sleep = sleep
        self._buffer: Deque[_PendingEvent] = deque()
        self._lock = threading.Lock()
        self.dropped_count = 0

    # -------------------------------------------------------------------------
    # Write Paths
    # -------------------------------------------------------------------------

    def record(self, event: AuditEvent) -> bool:
        """Append best-effort. Returns True if the sink accepted it now."""
        try:
            self.sink.append(event)
            return True
        except SinkUnavailable as e:
            logger.warning(f"Audit sink unavailable, buffering {event.action.value}: {e}")
            self._enqueue(_PendingEvent(event, 1, self._clock() + self._backoff(1)))
            return False

    def record_durable(self, event: AuditEvent) -> None:
        """Append with bounded retries, raising SinkUnavailable if all fail."""
        attempts = max(1, self.config.audit_retry_attempts)
        last_error: Optional[Exception] = None
        for attempt in range(1, attempts + 1):
            try:
                self.sink.append(event)
                return
            except SinkUnavailable as e:
                last_error = e
                logger.debug(f"Durable audit write failed, attempt {attempt}/{attempts}: {e}")
                if attempt < attempts:
                    self._sleep(self._backoff(attempt).total_seconds())
        logger.error(f"Durable audit write gave up for {event.action.value}: {last_error}")
        raise SinkUnavailable(f"audit event {event.id} could not be recorded") from last_error

    # -------------------------------------------------------------------------
    # Buffer
    # -------------------------------------------------------------------------

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._buffer)

    def flush(self) -> int:
        """
        Retry buffered events whose backoff has elapsed.

        Returns the number delivered. Events that exhaust the retry budget
        are dropped with a warning.
        """
        now = self._clock()
        with self._lock:
            due = [p for p in self._buffer if p.next_attempt_at <= now]
            self._buffer = deque(p for p in self._buffer if p.next_attempt_at > now)

        delivered = 0
        retry: List[_PendingEvent] = []
        for pending in due:
            try:
                self.sink.append(pending.event)
                delivered += 1
            except SinkUnavailable as e:
                pending.attempts += 1
                if pending.attempts >= self.config.audit_retry_attempts:
                    self.dropped_count += 1
                    logger.warning(
                        f"Dropping audit event {pending.event.id} "
                        f"({pending.event.action.value}) after {pending.attempts} attempts: {e}"
                    )
                    continue
                pending.next_attempt_at = now + self._backoff(pending.attempts)
                retry.append(pending)

        for pending in retry:
            self._enqueue(pending)
        if delivered:
            logger.info(f"Flushed {delivered} buffered audit event(s)")
        return delivered

    def _enqueue(self, pending: _PendingEvent) -> None:
        if self.config.audit_buffer_size == 0:
            self.dropped_count += 1
            logger.warning(f"Audit buffering disabled, dropping event {pending.event.id}")
            return
        with self._lock:
            if len(self._buffer) >= self.config.audit_buffer_size:
                oldest = self._buffer.popleft()
                self.dropped_count += 1
                logger.warning(
                    f"Audit buffer full, dropping oldest event {oldest.event.id} "
                    f"({oldest.event.action.value})"
                )
            self._buffer.append(pending)

    def _backoff(self, attempt: int) -> timedelta:
        delay_ms = min(
            (2 ** attempt) * self.config.audit_retry_base_ms,
            self.config.max_delay_ms,
        )
        return timedelta(milliseconds=delay_ms)
