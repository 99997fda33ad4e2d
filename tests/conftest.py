"""
Access Guard Test Suite - Shared Pytest Fixtures

This conftest.py provides fixtures for all test categories including:
- A controllable clock for throttle, session and anomaly tests
- In-memory and failure-injecting audit sinks
- Redis connection and cleanup for the Redis attempt store
- GeoIP mocking utilities

Usage:
    pytest tests/ -v -s
"""

import os
import pytest
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict
from unittest.mock import patch, MagicMock

from guard.errors import SinkUnavailable
from persistence.audit_sink import InMemoryAuditSink


T0 = datetime(2024, 5, 1, 9, 0, 0, tzinfo=timezone.utc)


# =============================================================================
# Clock
# =============================================================================

class FakeClock:
    """Manually advanced clock; call it to read the current time."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now

    def set(self, offset_seconds: float) -> datetime:
        """Jump to T0 + offset_seconds."""
        self.now = T0 + timedelta(seconds=offset_seconds)
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# =============================================================================
# Audit Sink Fixtures
# =============================================================================

class FlakySink(InMemoryAuditSink):
    """InMemoryAuditSink that rejects appends while `down` is set."""

    def __init__(self, down: bool = False):
        super().__init__()
        self.down = down
        self.append_calls = 0

    def append(self, event):
        self.append_calls += 1
        if self.down:
            raise SinkUnavailable("sink offline")
        super().append(event)


@pytest.fixture
def sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def flaky_sink() -> FlakySink:
    return FlakySink()


def no_sleep(_seconds: float) -> None:
    """Replacement for time.sleep in retry loops."""
    return None


# =============================================================================
# Redis Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def redis_client():
    """
    Session-scoped Redis client for the Redis attempt store tests.

    Requires a Redis server (REDIS_HOST / REDIS_PORT / REDIS_PASSWORD).
    """
    import redis

    host = os.environ.get("REDIS_HOST", "localhost")
    port = int(os.environ.get("REDIS_PORT", "6379"))
    password = os.environ.get("REDIS_PASSWORD", "PASS")

    try:
        client = redis.Redis(
            host=host,
            port=port,
            password=password,
            decode_responses=True,
        )
        client.ping()
    except redis.RedisError:
        pytest.skip(f"Redis not available at {host}:{port}")
    yield client
    client.close()


@pytest.fixture
def clean_redis(redis_client):
    """
    Function-scoped fixture that provides a clean Redis state.
    Removes every login attempt key after each test.
    """
    yield redis_client
    for key in redis_client.scan_iter(match="LOGIN_ATTEMPT:*"):
        redis_client.delete(key)


# =============================================================================
# GeoIP Fixtures
# =============================================================================

@pytest.fixture
def mock_geoip():
    """
    Fixture that returns a context manager for mocking GeoIP responses.

    Usage:
        def test_example(mock_geoip):
            with mock_geoip({"8.8.8.8": {"city_name": "Mountain View", "country_iso": "US"}}):
                ...
    """
    @contextmanager
    def _mock_geoip(ip_responses: Dict[str, dict]):
        def create_mock_response(ip: str):
            if ip not in ip_responses:
                raise Exception(f"IP {ip} not in mock database")

            data = ip_responses[ip]
            mock_response = MagicMock()
            mock_response.city.name = data.get("city_name", "MockCity")
            mock_response.country.iso_code = data.get("country_iso", "US")
            return mock_response

        mock_reader = MagicMock()
        mock_reader.city.side_effect = create_mock_response

        with patch("geoip2.database.Reader") as MockReader:
            MockReader.return_value = mock_reader
            yield mock_reader

    return _mock_geoip
