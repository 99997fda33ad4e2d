"""
Login Throttle Guard

Per-identifier failed-attempt counter with exponential backoff:

    attempt_count >= lockout_threshold
        → locked_until = now + min(2^attempt_count * base_delay, max_delay)

The guard is advisory. It never errors on backend trouble; the identity
provider stays authoritative over credential correctness.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta
from typing import Optional

from guard.config import GuardConfig
from guard.errors import InvalidIdentifier
from guard.models import Clock, LoginAttemptRecord, ThrottleDecision, utc_now
from persistence.attempt_store import AttemptStore, InMemoryAttemptStore


logger = logging.getLogger(__name__)


MAX_IDENTIFIER_LENGTH = 254
IDENTIFIER_PATTERN = re.compile(r"^[a-z0-9._%+\-@]+$")


def normalize_identifier(identifier: str) -> str:
    """
    Canonical form of a login identifier (email or account handle).

    Raises:
        InvalidIdentifier: empty, too long, or containing characters
            outside [a-z0-9._%+-@].
    """
    if not isinstance(identifier, str):
        raise InvalidIdentifier("identifier must be a string")
    normalized = identifier.strip().lower()
    if not normalized:
        raise InvalidIdentifier("identifier must not be empty")
    if len(normalized) > MAX_IDENTIFIER_LENGTH:
        raise InvalidIdentifier(f"identifier longer than {MAX_IDENTIFIER_LENGTH} characters")
    if not IDENTIFIER_PATTERN.match(normalized):
        raise InvalidIdentifier("identifier contains invalid characters")
    return normalized


class LoginThrottleGuard:
    """Advisory allow/deny gate in front of the identity provider."""

    def __init__(
        self,
        config: Optional[GuardConfig] = None,
        store: Optional[AttemptStore] = None,
        clock: Clock = utc_now,
    ) -> None:
        self.config = config or GuardConfig()
        self.store = store if store is not None else InMemoryAttemptStore()
        self._clock = clock

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def check(self, identifier: str) -> ThrottleDecision:
        """Return allowed=False with the remaining wait while locked."""
        key = normalize_identifier(identifier)
        now = self._clock()
        record = self.store.get(key)

        if record is not None and record.is_locked(now):
            remaining = (record.locked_until - now).total_seconds()
            return ThrottleDecision(
                allowed=False,
                wait_seconds=max(1, math.ceil(remaining)),
                remaining_attempts=0,
            )

        count = 0 if record is None or self._is_stale(record, now) else record.attempt_count
        return ThrottleDecision(
            allowed=True,
            wait_seconds=0,
            remaining_attempts=max(0, self.config.lockout_threshold - count),
        )

    def record(self, identifier: str, success: bool) -> Optional[LoginAttemptRecord]:
        """
        Record the outcome of a login attempt.

        Returns the updated record after a failure, None after a success
        (the record is reset and dropped).
        """
        key = normalize_identifier(identifier)
        now = self._clock()

        if success:
            self.store.update(key, lambda _current: None)
            logger.debug(f"Attempt counter reset for {key}")
            return None

        def apply_failure(current: Optional[LoginAttemptRecord]) -> LoginAttemptRecord:
            if current is None or self._is_stale(current, now):
                updated = LoginAttemptRecord(
                    identifier=key,
                    attempt_count=1,
                    first_attempt_at=now,
                    last_attempt_at=now,
                )
            else:
                updated = LoginAttemptRecord(
                    identifier=key,
                    attempt_count=current.attempt_count + 1,
                    first_attempt_at=current.first_attempt_at,
                    last_attempt_at=now,
                )
            if updated.attempt_count >= self.config.lockout_threshold:
                updated.locked_until = now + self.backoff(updated.attempt_count)
            return updated

        record = self.store.update(key, apply_failure)
        if record is not None and record.locked_until is not None:
            logger.warning(
                f"Login locked for {key}: {record.attempt_count} failures, "
                f"retry after {record.locked_until.isoformat()}"
            )
        return record

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def backoff(self, attempt_count: int) -> timedelta:
        delay_ms = min((2 ** attempt_count) * self.config.base_delay_ms, self.config.max_delay_ms)
        return timedelta(milliseconds=delay_ms)

    def attempt_count(self, identifier: str) -> int:
        record = self.store.get(normalize_identifier(identifier))
        if record is None or self._is_stale(record, self._clock()):
            return 0
        return record.attempt_count

    def sweep(self) -> int:
        """Drop records that are unlocked and idle past the attempt window."""
        now = self._clock()
        purged = self.store.purge(lambda record: self._is_stale(record, now))
        if purged:
            logger.info(f"Throttle sweep purged {purged} idle record(s)")
        return purged

    def _is_stale(self, record: LoginAttemptRecord, now: datetime) -> bool:
        return (
            not record.is_locked(now)
            and now - record.last_attempt_at > self.config.attempt_window
        )
