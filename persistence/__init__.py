"""
Guard Persistence Layer

Public exports for the Redis connection, login attempt stores and audit
event sinks.
"""

from .connection import RedisSettings, get_redis_client
from .attempt_store import (
    AttemptStore,
    InMemoryAttemptStore,
    RedisAttemptStore,
)
from .audit_sink import InMemoryAuditSink, SupabaseAuditSink

__all__ = [
    "RedisSettings",
    "get_redis_client",
    "AttemptStore",
    "InMemoryAttemptStore",
    "RedisAttemptStore",
    "InMemoryAuditSink",
    "SupabaseAuditSink",
]
