"""Courier infrastructure clients."""

from courier_infrastructure.postgres import (
    PostgresClient,
    PostgresSettings,
    create_postgres_client,
    qualified_table,
)
from courier_infrastructure.redis import (
    InMemoryCache,
    KeyValueCache,
    RedisClient,
    RedisMode,
    RedisSettings,
    create_redis_client,
)

__all__ = [
    "PostgresClient",
    "PostgresSettings",
    "create_postgres_client",
    "qualified_table",
    "InMemoryCache",
    "KeyValueCache",
    "RedisClient",
    "RedisMode",
    "RedisSettings",
    "create_redis_client",
]
