"""Courier PostgreSQL Client - async access to the notification tables."""

from __future__ import annotations

import asyncio
import json
import re
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import asyncpg
import structlog
from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict

from courier_common.exceptions import DatabaseError

logger = structlog.get_logger(__name__)

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{0,62}$")


class PostgresSettings(BaseSettings):
    """PostgreSQL connection settings from environment."""

    host: str = Field(default="localhost")
    port: int = Field(default=5432, ge=1, le=65535)
    database: str = Field(default="courier")
    user: str = Field(default="courier")
    password: SecretStr = Field(description="PostgreSQL password (required via POSTGRES_PASSWORD env var)")
    min_pool_size: int = Field(default=2, ge=1, le=100)
    max_pool_size: int = Field(default=10, ge=1, le=200)
    command_timeout: float = Field(default=30.0, gt=0)
    db_schema: str = Field(default="public")
    model_config = SettingsConfigDict(
        env_prefix="POSTGRES_", env_file=".env", extra="ignore"
    )

    def get_dsn(self) -> str:
        """Build PostgreSQL DSN connection string."""
        return (
            f"postgresql://{self.user}:{self.password.get_secret_value()}"
            f"@{self.host}:{self.port}/{self.database}"
        )


class PostgresClient:
    """Async PostgreSQL client with connection pooling."""

    def __init__(self, settings: PostgresSettings | None = None) -> None:
        self._settings = settings or PostgresSettings()
        self._pool: asyncpg.Pool | None = None

    @property
    def is_connected(self) -> bool:
        return self._pool is not None

    @property
    def schema(self) -> str:
        return self._settings.db_schema

    async def connect(self, max_retries: int = 3, base_delay: float = 1.0) -> None:
        """Initialize connection pool with retry on transient errors."""
        if self._pool is not None:
            return
        last_error: Exception | None = None
        for attempt in range(max_retries):
            try:
                self._pool = await asyncpg.create_pool(
                    dsn=self._settings.get_dsn(),
                    min_size=self._settings.min_pool_size,
                    max_size=self._settings.max_pool_size,
                    command_timeout=self._settings.command_timeout,
                    init=self._init_connection,
                )
                logger.info(
                    "postgres_pool_connected",
                    host=self._settings.host,
                    database=self._settings.database,
                )
                return
            except (TimeoutError, asyncpg.PostgresError, OSError) as e:
                last_error = e
                if attempt < max_retries - 1:
                    delay = base_delay * (2 ** attempt)
                    logger.warning(
                        "postgres_connect_retry",
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay=delay,
                        error=str(e),
                    )
                    await asyncio.sleep(delay)
        raise DatabaseError(
            f"Failed to connect to PostgreSQL after {max_retries} attempts: {last_error}",
            operation="connect",
            cause=last_error,
        )

    async def _init_connection(self, conn: asyncpg.Connection) -> None:
        """Initialize each connection with JSON codecs."""
        await conn.set_type_codec(
            "jsonb", encoder=_json_encoder, decoder=_json_decoder, schema="pg_catalog"
        )

    async def disconnect(self) -> None:
        """Close connection pool gracefully."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("postgres_pool_disconnected")

    async def __aenter__(self) -> PostgresClient:
        await self.connect()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.disconnect()

    def _ensure_connected(self) -> asyncpg.Pool:
        if not self._pool:
            raise DatabaseError(
                "PostgreSQL client not connected", operation="check_connection"
            )
        return self._pool

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a connection from the pool."""
        pool = self._ensure_connected()
        async with pool.acquire() as conn:
            yield conn

    async def execute(self, query: str, *args: Any, timeout: float | None = None) -> str:
        """Execute a query that doesn't return rows."""
        async with self.acquire() as conn:
            try:
                result = await conn.execute(query, *args, timeout=timeout)
                logger.debug("postgres_execute", query=_truncate_query(query))
                return result
            except asyncpg.PostgresError as e:
                raise DatabaseError(
                    f"Query execution failed: {e}", operation="execute", cause=e
                ) from e

    async def fetch_one(
        self, query: str, *args: Any, timeout: float | None = None
    ) -> dict[str, Any] | None:
        """Execute query and fetch single row."""
        async with self.acquire() as conn:
            try:
                row = await conn.fetchrow(query, *args, timeout=timeout)
                return dict(row) if row else None
            except asyncpg.PostgresError as e:
                raise DatabaseError(
                    f"Query fetch_one failed: {e}", operation="fetch_one", cause=e
                ) from e

    async def check_health(self) -> dict[str, Any]:
        """Check database connectivity and return health status."""
        try:
            await self.fetch_one("SELECT 1 as health")
            pool = self._ensure_connected()
            return {
                "status": "healthy",
                "pool_size": pool.get_size(),
                "pool_free": pool.get_idle_size(),
            }
        except Exception as e:
            return {"status": "unhealthy", "error": str(e)}


def qualified_table(schema: str, table: str) -> str:
    """Schema-qualify a table name after validating both identifiers."""
    for name in (schema, table):
        if not _IDENTIFIER.match(name):
            raise ValueError(f"Invalid SQL identifier: {name}")
    return f"{schema}.{table}"


def _json_encoder(value: Any) -> str:
    return json.dumps(value, default=str)


def _json_decoder(value: str) -> Any:
    return json.loads(value)


def _truncate_query(query: str, max_length: int = 200) -> str:
    """Truncate query for logging purposes."""
    query = " ".join(query.split())
    return query[:max_length] + "..." if len(query) > max_length else query


async def create_postgres_client(
    settings: PostgresSettings | None = None,
) -> PostgresClient:
    """Factory function to create and connect a PostgreSQL client."""
    client = PostgresClient(settings)
    await client.connect()
    return client
