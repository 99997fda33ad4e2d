"""
Login Attempt Stores

Keyed storage for LoginAttemptRecord with single-writer-per-key updates.

    InMemoryAttemptStore  → dict + KeyedLock per identifier (single process)
    RedisAttemptStore     → WATCH/MULTI/EXEC retry loop (shared by workers)

Key Schema (Redis):
    LOGIN_ATTEMPT:{identifier}  → LoginAttemptRecord JSON (TTL = retention)
"""

from __future__ import annotations

import json
import logging
import math
from abc import ABC, abstractmethod
from datetime import timedelta
from typing import Callable, Dict, Optional

from redis.exceptions import RedisError, WatchError

from guard.locks import KeyedLock
from guard.models import LoginAttemptRecord


logger = logging.getLogger(__name__)


UpdateFn = Callable[[Optional[LoginAttemptRecord]], Optional[LoginAttemptRecord]]


class AttemptStore(ABC):
    """Storage contract used by LoginThrottleGuard."""

    @abstractmethod
    def get(self, identifier: str) -> Optional[LoginAttemptRecord]:
        ...

    @abstractmethod
    def update(self, identifier: str, update_fn: UpdateFn) -> Optional[LoginAttemptRecord]:
        """
        Atomically apply `update_fn` to the record for `identifier`.

        `update_fn` receives the current record (or None) and returns the
        new record, or None to delete it. Returns what was stored.
        """

    @abstractmethod
    def purge(self, is_stale: Callable[[LoginAttemptRecord], bool]) -> int:
        """Delete records for which `is_stale` is true. Returns the count."""


# =============================================================================
# In-Memory
# =============================================================================

class InMemoryAttemptStore(AttemptStore):
    """Process-local store; different identifiers never contend."""

    def __init__(self) -> None:
        self._records: Dict[str, LoginAttemptRecord] = {}
        self._key_locks = KeyedLock()

    def get(self, identifier: str) -> Optional[LoginAttemptRecord]:
        record = self._records.get(identifier)
        if record is None:
            return None
        # Callers get a copy; only update() mutates stored state
        return LoginAttemptRecord(**vars(record))

    def update(self, identifier: str, update_fn: UpdateFn) -> Optional[LoginAttemptRecord]:
        with self._key_locks.hold(identifier):
            current = self.get(identifier)
            updated = update_fn(current)
            if updated is None:
                self._records.pop(identifier, None)
                return None
            self._records[identifier] = updated
            return LoginAttemptRecord(**vars(updated))

    def purge(self, is_stale: Callable[[LoginAttemptRecord], bool]) -> int:
        purged = 0
        for identifier in list(self._records):
            with self._key_locks.hold(identifier):
                record = self._records.get(identifier)
                if record is not None and is_stale(record):
                    del self._records[identifier]
                    purged += 1
        return purged

    def __len__(self) -> int:
        return len(self._records)


# =============================================================================
# Redis
# =============================================================================

class RedisAttemptStore(AttemptStore):
    """
    Redis-backed store with optimistic per-key transactions.

    Records expire on their own after `retention`, so purge() only needs
    to handle records that became stale before their TTL.
    """

    KEY_PREFIX = "LOGIN_ATTEMPT"
    MAX_RETRIES = 5

    def __init__(self, client=None, retention: timedelta = timedelta(minutes=15)) -> None:
        if client is None:
            from persistence.connection import get_redis_client
            client = get_redis_client()
        self.client = client
        self.ttl_seconds = max(1, math.ceil(retention.total_seconds()))

    def _key(self, identifier: str) -> str:
        return f"{self.KEY_PREFIX}:{identifier}"

    def _decode(self, raw: Optional[str]) -> Optional[LoginAttemptRecord]:
        if raw is None:
            return None
        return LoginAttemptRecord.from_dict(json.loads(raw))

    def get(self, identifier: str) -> Optional[LoginAttemptRecord]:
        try:
            return self._decode(self.client.get(self._key(identifier)))
        except (RedisError, json.JSONDecodeError, KeyError) as e:
            logger.error(f"Failed to read attempt record {identifier}: {e}")
            return None

    def update(self, identifier: str, update_fn: UpdateFn) -> Optional[LoginAttemptRecord]:
        key = self._key(identifier)

        for attempt in range(self.MAX_RETRIES):
            try:
                pipe = self.client.pipeline(True)
                pipe.watch(key)

                current = self._decode(pipe.get(key))
                updated = update_fn(current)

                pipe.multi()
                if updated is None:
                    pipe.delete(key)
                else:
                    pipe.setex(key, self.ttl_seconds, json.dumps(updated.to_dict()))
                pipe.execute()
                return updated

            except WatchError:
                logger.debug(f"Watch conflict on attempt record {identifier}, attempt {attempt + 1}")
                continue
            except (RedisError, json.JSONDecodeError, KeyError) as e:
                logger.error(f"Redis error updating attempt record {identifier}: {e}")
                return None

        logger.warning(f"Max retries exceeded for attempt record {identifier}")
        return None

    def purge(self, is_stale: Callable[[LoginAttemptRecord], bool]) -> int:
        purged = 0
        try:
            for key in self.client.scan_iter(match=f"{self.KEY_PREFIX}:*", count=100):
                identifier = key.split(":", 1)[1]
                record = self.get(identifier)
                if record is not None and is_stale(record):
                    self.client.delete(key)
                    purged += 1
        except RedisError as e:
            logger.warning(f"Attempt store purge failed: {e}")
        return purged
