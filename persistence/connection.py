"""
Redis Connection

Process-wide Redis client for the shared login attempt store.

REDIS_URL wins when set; otherwise REDIS_HOST, REDIS_PORT and REDIS_DB
build the address. A password is mandatory, either inside the URL or in
REDIS_PASSWORD.
"""

import os
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Mapping, Optional
from urllib.parse import urlparse

import redis
from redis.exceptions import RedisError, AuthenticationError


logger = logging.getLogger(__name__)


MAX_CONNECTIONS = 50
SOCKET_TIMEOUT_S = 5.0


@dataclass(frozen=True)
class RedisSettings:
    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    url: Optional[str] = None

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "RedisSettings":
        env = os.environ if env is None else env
        return cls(
            host=env.get("REDIS_HOST", "localhost"),
            port=int(env.get("REDIS_PORT", 6379)),
            db=int(env.get("REDIS_DB", 0)),
            password=env.get("REDIS_PASSWORD") or None,
            url=env.get("REDIS_URL") or None,
        )

    @property
    def has_password(self) -> bool:
        if self.password:
            return True
        return bool(self.url and urlparse(self.url).password)

    @property
    def address(self) -> str:
        """host:port/db for log lines. Never carries credentials."""
        if self.url:
            parsed = urlparse(self.url)
            db = parsed.path.lstrip("/") or "0"
            return f"{parsed.hostname}:{parsed.port or 6379}/{db}"
        return f"{self.host}:{self.port}/{self.db}"


def build_pool(settings: RedisSettings) -> redis.ConnectionPool:
    """Connection pool for `settings`. Connects lazily."""
    if not settings.has_password:
        logger.critical("No Redis password configured (REDIS_PASSWORD or REDIS_URL).")
        raise ValueError("A Redis password is required for the redis attempt store.")

    options = {
        "decode_responses": True,
        "max_connections": MAX_CONNECTIONS,
        "socket_timeout": SOCKET_TIMEOUT_S,
    }
    if settings.url:
        if settings.password:
            options["password"] = settings.password
        return redis.ConnectionPool.from_url(settings.url, **options)

    return redis.ConnectionPool(
        host=settings.host,
        port=settings.port,
        db=settings.db,
        password=settings.password,
        **options,
    )


@lru_cache(maxsize=1)
def get_redis_client() -> redis.Redis:
    """
    Singleton client for the redis attempt store.

    Pings once so a bad address or password fails at startup, not on the
    first login attempt.
    """
    settings = RedisSettings.from_env()
    client = redis.Redis(connection_pool=build_pool(settings))
    try:
        client.ping()
    except AuthenticationError:
        logger.critical(f"Redis at {settings.address} rejected the configured password.")
        raise
    except RedisError as e:
        logger.critical(f"Could not connect to Redis at {settings.address}: {e}")
        raise

    logger.info(f"Attempt store connected to Redis at {settings.address}")
    return client
