"""Courier Redis Client - async key/value cache with TTL."""
from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from enum import Enum
from typing import Any, Protocol

import redis.asyncio as redis
import structlog
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from courier_common.clock import Clock, SystemClock
from courier_common.exceptions import CacheError

logger = structlog.get_logger(__name__)


class KeyValueCache(Protocol):
    """Minimal cache contract used by the pipeline."""

    async def get(self, key: str) -> Any | None: ...

    async def set(self, key: str, value: Any, ttl: int | timedelta | None = None) -> bool: ...


class RedisMode(str, Enum):
    """Redis deployment modes."""
    STANDALONE = "standalone"
    SENTINEL = "sentinel"
    CLUSTER = "cluster"


class RedisSettings(BaseSettings):
    """Redis connection settings from environment."""
    host: str = Field(default="localhost")
    port: int = Field(default=6379, ge=1, le=65535)
    password: SecretStr | None = Field(default=None)
    db: int = Field(default=0, ge=0, le=15)
    mode: RedisMode = Field(default=RedisMode.STANDALONE)
    sentinel_master: str = Field(default="mymaster")
    sentinel_nodes: str = Field(default="")
    cluster_nodes: str = Field(default="")
    ssl: bool = Field(default=False)
    max_connections: int = Field(default=50, ge=1, le=1000)
    socket_timeout: float = Field(default=5.0, gt=0)
    socket_connect_timeout: float = Field(default=5.0, gt=0)
    retry_on_timeout: bool = Field(default=True)
    health_check_interval: int = Field(default=30, ge=0)
    decode_responses: bool = Field(default=True)
    key_prefix: str = Field(default="courier:")
    model_config = SettingsConfigDict(env_prefix="REDIS_", env_file=".env", extra="ignore")

    def get_url(self) -> str:
        """Build Redis connection URL."""
        scheme = "rediss" if self.ssl else "redis"
        auth = f":{self.password.get_secret_value()}@" if self.password else ""
        return f"{scheme}://{auth}{self.host}:{self.port}/{self.db}"


class RedisClient:
    """Async Redis client for TTL-bound caching."""

    def __init__(self, settings: RedisSettings | None = None) -> None:
        self._settings = settings or RedisSettings()
        self._client: redis.Redis | None = None

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    @property
    def key_prefix(self) -> str:
        return self._settings.key_prefix

    def _make_key(self, key: str) -> str:
        """Apply key prefix for namespace isolation."""
        if key.startswith(self._settings.key_prefix):
            return key
        return f"{self._settings.key_prefix}{key}"

    async def connect(self, max_retries: int = 3, base_delay: float = 1.0) -> None:
        """Initialize Redis connection with retry on transient errors."""
        if self._client is not None:
            return
        last_error: Exception | None = None
        for attempt in range(max_retries):
            try:
                if self._settings.mode == RedisMode.CLUSTER:
                    self._client = self._create_cluster_client()
                elif self._settings.mode == RedisMode.SENTINEL:
                    self._client = self._create_sentinel_client()
                else:
                    self._client = self._create_standalone_client()
                await self._client.ping()
                logger.info("redis_connected", host=self._settings.host, mode=self._settings.mode.value)
                return
            except (TimeoutError, redis.RedisError, OSError) as e:
                last_error = e
                self._client = None
                if attempt < max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "redis_connect_retry",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
        raise CacheError(
            f"Failed to connect to Redis after {max_retries} attempts: {last_error}",
            cause=last_error,
        )

    def _create_standalone_client(self) -> redis.Redis:
        return redis.Redis(
            host=self._settings.host, port=self._settings.port,
            password=self._settings.password.get_secret_value() if self._settings.password else None,
            db=self._settings.db, decode_responses=self._settings.decode_responses,
            socket_timeout=self._settings.socket_timeout,
            socket_connect_timeout=self._settings.socket_connect_timeout,
            retry_on_timeout=self._settings.retry_on_timeout,
            health_check_interval=self._settings.health_check_interval,
            max_connections=self._settings.max_connections,
        )

    def _create_cluster_client(self) -> redis.Redis:
        from redis.asyncio.cluster import RedisCluster
        nodes = self._settings.cluster_nodes.split(",")
        startup_nodes = [{"host": n.split(":")[0], "port": int(n.split(":")[1])} for n in nodes if n]
        return RedisCluster(startup_nodes=startup_nodes, decode_responses=self._settings.decode_responses)

    def _create_sentinel_client(self) -> redis.Redis:
        from redis.asyncio.sentinel import Sentinel
        nodes = self._settings.sentinel_nodes.split(",")
        sentinel_list = [(n.split(":")[0], int(n.split(":")[1])) for n in nodes if n]
        sentinel = Sentinel(sentinel_list, socket_timeout=self._settings.socket_timeout)
        return sentinel.master_for(self._settings.sentinel_master, decode_responses=self._settings.decode_responses)

    async def disconnect(self) -> None:
        """Close Redis connection gracefully."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("redis_disconnected")

    async def __aenter__(self) -> RedisClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.disconnect()

    def _ensure_connected(self) -> redis.Redis:
        if not self._client:
            raise CacheError("Redis client not connected")
        return self._client

    async def get(self, key: str) -> Any | None:
        """Get value from cache."""
        client = self._ensure_connected()
        try:
            value = await client.get(self._make_key(key))
            if value is None:
                return None
            return self._deserialize(value)
        except redis.RedisError as e:
            logger.warning("redis_get_error", key=key, error=str(e))
            raise CacheError(f"Failed to get key: {e}", cause=e) from e

    async def set(self, key: str, value: Any, ttl: int | timedelta | None = None) -> bool:
        """Set value in cache with optional TTL."""
        client = self._ensure_connected()
        try:
            serialized = self._serialize(value)
            if isinstance(ttl, timedelta):
                ttl = int(ttl.total_seconds())
            await client.set(self._make_key(key), serialized, ex=ttl)
            return True
        except redis.RedisError as e:
            logger.warning("redis_set_error", key=key, error=str(e))
            raise CacheError(f"Failed to set key: {e}", cause=e) from e

    async def check_health(self) -> dict[str, Any]:
        """Check Redis health status."""
        try:
            client = self._ensure_connected()
            info = await client.info("server")
            return {"status": "healthy", "redis_version": info.get("redis_version"),
                    "mode": self._settings.mode.value}
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}

    def _serialize(self, value: Any) -> str:
        if isinstance(value, str):
            return value
        return json.dumps(value, default=str)

    def _deserialize(self, value: str | bytes) -> Any:
        if isinstance(value, bytes):
            value = value.decode("utf-8")
        try:
            return json.loads(value)
        except (json.JSONDecodeError, TypeError):
            return value


class InMemoryCache:
    """Process-local TTL cache for tests and development."""

    def __init__(self, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._entries: dict[str, tuple[Any, float | None]] = {}

    async def get(self, key: str) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and self._clock.now() >= expires_at:
            del self._entries[key]
            return None
        return value

    async def set(self, key: str, value: Any, ttl: int | timedelta | None = None) -> bool:
        if isinstance(ttl, timedelta):
            ttl = int(ttl.total_seconds())
        expires_at = self._clock.now() + ttl if ttl else None
        self._entries[key] = (value, expires_at)
        return True

    def ttl_of(self, key: str) -> float | None:
        """Seconds left before ``key`` expires, None when absent or unbounded."""
        entry = self._entries.get(key)
        if entry is None or entry[1] is None:
            return None
        return entry[1] - self._clock.now()


async def create_redis_client(settings: RedisSettings | None = None) -> RedisClient:
    """Factory function to create and connect a Redis client."""
    client = RedisClient(settings)
    await client.connect()
    return client
