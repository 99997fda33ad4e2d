"""
Guard Configuration

Runtime options for the access-security service. Every option has a default
and can be overridden through a GUARD_* environment variable, e.g.:

    GUARD_LOCKOUT_THRESHOLD=5
    GUARD_SESSION_TIMEOUT_MS=1800000
    GUARD_ACTIVITY_SIGNALS=pointer,key
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple


ENV_PREFIX = "GUARD_"

UA_NORMALIZATION_MODES = ("raw", "family")
ATTEMPT_STORES = ("memory", "redis")


@dataclass(frozen=True)
class GuardConfig:
    """Recognized configuration options (durations in milliseconds)."""

    # Login throttle
    lockout_threshold: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    attempt_window_ms: int = 900000
    throttle_sweep_ms: int = 300000
    attempt_store: str = "memory"

    # Session activity
    session_timeout_ms: int = 28800000
    session_warning_ms: int = 300000
    activity_poll_ms: int = 60000
    activity_signals: Tuple[str, ...] = ("pointer", "key", "scroll", "touch")

    # Anomaly heuristics
    anomaly_window_hours: int = 24
    anomaly_poll_ms: int = 60000
    failed_login_burst_medium: int = 3
    failed_login_burst_high: int = 5
    multi_device_threshold: int = 3
    user_agent_normalization: str = "raw"
    session_anomaly_grace_ms: int = 300000

    # Audit writer
    audit_retry_attempts: int = 5
    audit_retry_base_ms: int = 100
    audit_buffer_size: int = 1000
    audit_flush_ms: int = 5000

    def __post_init__(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, int) and value < 0:
                raise ValueError(f"{f.name} must be >= 0, got {value}")
        if self.lockout_threshold < 1:
            raise ValueError("lockout_threshold must be >= 1")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.failed_login_burst_high < self.failed_login_burst_medium:
            raise ValueError("failed_login_burst_high must be >= failed_login_burst_medium")
        for name in ("activity_poll_ms", "anomaly_poll_ms", "audit_flush_ms", "throttle_sweep_ms"):
            if getattr(self, name) == 0:
                raise ValueError(f"{name} must be > 0")
        if self.user_agent_normalization not in UA_NORMALIZATION_MODES:
            raise ValueError(
                f"user_agent_normalization must be one of {UA_NORMALIZATION_MODES}"
            )
        if self.attempt_store not in ATTEMPT_STORES:
            raise ValueError(f"attempt_store must be one of {ATTEMPT_STORES}")

    # -------------------------------------------------------------------------
    # Derived durations
    # -------------------------------------------------------------------------

    @property
    def base_delay(self) -> timedelta:
        return timedelta(milliseconds=self.base_delay_ms)

    @property
    def max_delay(self) -> timedelta:
        return timedelta(milliseconds=self.max_delay_ms)

    @property
    def attempt_window(self) -> timedelta:
        return timedelta(milliseconds=self.attempt_window_ms)

    @property
    def session_timeout(self) -> timedelta:
        return timedelta(milliseconds=self.session_timeout_ms)

    @property
    def session_warning(self) -> timedelta:
        return timedelta(milliseconds=self.session_warning_ms)

    @property
    def anomaly_window(self) -> timedelta:
        return timedelta(hours=self.anomaly_window_hours)

    @property
    def session_anomaly_grace(self) -> timedelta:
        return timedelta(milliseconds=self.session_anomaly_grace_ms)

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None) -> GuardConfig:
        """
        Build a config from GUARD_* environment variables.

        Unset variables keep their defaults. Raises ValueError on values
        that cannot be parsed or fail validation.
        """
        environ = os.environ if environ is None else environ
        overrides: Dict[str, Any] = {}

        for f in fields(cls):
            raw = environ.get(f"{ENV_PREFIX}{f.name.upper()}")
            if raw is None or raw.strip() == "":
                continue
            default = f.default
            if isinstance(default, tuple):
                overrides[f.name] = tuple(
                    part.strip().lower() for part in raw.split(",") if part.strip()
                )
            elif isinstance(default, int):
                try:
                    overrides[f.name] = int(raw)
                except ValueError:
                    raise ValueError(
                        f"{ENV_PREFIX}{f.name.upper()} must be an integer, got {raw!r}"
                    ) from None
            else:
                overrides[f.name] = raw.strip().lower()

        return cls(**overrides)
