"""
Courier Pipeline - Persistence.

Store contracts for templates, users, notifications and delivery logs,
with PostgreSQL-backed and in-memory implementations.
"""
from __future__ import annotations

from itertools import count
from typing import Any, Protocol

import structlog

from courier_events.topology import Channel
from courier_infrastructure.postgres import PostgresClient, qualified_table

from .models import DeliveryLog, Notification, NotificationStatus, Template, User

logger = structlog.get_logger(__name__)

# SQL for creating tables (run during migration or startup); {schema} is filled in per client
SCHEMA_DDL = """
CREATE SCHEMA IF NOT EXISTS {schema};
CREATE TABLE IF NOT EXISTS {schema}.templates (
    name VARCHAR(255) PRIMARY KEY,
    priority INT NOT NULL,
    body TEXT
);
CREATE TABLE IF NOT EXISTS {schema}.users (
    id VARCHAR(255) PRIMARY KEY,
    name VARCHAR(255),
    email VARCHAR(320),
    phone VARCHAR(32)
);
CREATE TABLE IF NOT EXISTS {schema}.notifications (
    id BIGSERIAL PRIMARY KEY,
    user_id VARCHAR(255) NOT NULL,
    channel VARCHAR(16) NOT NULL,
    status VARCHAR(16) NOT NULL DEFAULT 'pending',
    message TEXT NOT NULL,
    hash CHAR(64) NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_notifications_hash ON {schema}.notifications (hash);
CREATE TABLE IF NOT EXISTS {schema}.delivery_logs (
    id BIGSERIAL PRIMARY KEY,
    notification_id BIGINT NOT NULL REFERENCES {schema}.notifications (id),
    channel VARCHAR(16) NOT NULL,
    status VARCHAR(16) NOT NULL,
    error_message TEXT NOT NULL DEFAULT '',
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_delivery_logs_notification ON {schema}.delivery_logs (notification_id);
"""


class TemplateStore(Protocol):
    async def find_by_name(self, name: str) -> Template | None: ...


class UserStore(Protocol):
    async def find_by_id(self, user_id: str) -> User | None: ...


class NotificationStore(Protocol):
    async def find_by_id(self, notification_id: int) -> Notification | None: ...

    async def find_by_hash(self, notification_hash: str) -> Notification | None: ...

    async def save(self, notification: Notification) -> Notification:
        """Insert when ``id`` is None, otherwise update; returns the stored row."""
        ...


class DeliveryLogStore(Protocol):
    async def append(self, log: DeliveryLog) -> DeliveryLog: ...


def schema_ddl(schema: str) -> str:
    """DDL for ``schema``; raises ValueError for an invalid schema name."""
    qualified_table(schema, "notifications")
    return SCHEMA_DDL.format(schema=schema)


async def ensure_schema(client: PostgresClient) -> None:
    """Create the pipeline tables in the client's schema if they don't exist."""
    await client.execute(schema_ddl(client.schema))
    logger.info("courier_schema_ensured", schema=client.schema)


class PostgresTemplateStore:
    def __init__(self, client: PostgresClient) -> None:
        self._client = client
        self._table = qualified_table(client.schema, "templates")

    async def find_by_name(self, name: str) -> Template | None:
        row = await self._client.fetch_one(
            f"SELECT name, priority, body FROM {self._table} WHERE name = $1", name
        )
        return Template(**row) if row else None


class PostgresUserStore:
    def __init__(self, client: PostgresClient) -> None:
        self._client = client
        self._table = qualified_table(client.schema, "users")

    async def find_by_id(self, user_id: str) -> User | None:
        row = await self._client.fetch_one(
            f"SELECT id, name, email, phone FROM {self._table} WHERE id = $1", user_id
        )
        return User(**row) if row else None


class PostgresNotificationStore:
    """Notification rows keyed by a database-generated id."""

    _COLUMNS = "id, user_id, channel, status, message, hash, created_at, updated_at"

    def __init__(self, client: PostgresClient) -> None:
        self._client = client
        self._table = qualified_table(client.schema, "notifications")

    async def find_by_id(self, notification_id: int) -> Notification | None:
        row = await self._client.fetch_one(
            f"SELECT {self._COLUMNS} FROM {self._table} WHERE id = $1", notification_id
        )
        return self._row_to_notification(row) if row else None

    async def find_by_hash(self, notification_hash: str) -> Notification | None:
        row = await self._client.fetch_one(
            f"SELECT {self._COLUMNS} FROM {self._table} WHERE hash = $1 ORDER BY id LIMIT 1",
            notification_hash,
        )
        return self._row_to_notification(row) if row else None

    async def save(self, notification: Notification) -> Notification:
        if notification.id is None:
            row = await self._client.fetch_one(
                f"""INSERT INTO {self._table} (user_id, channel, status, message, hash, created_at, updated_at)
                   VALUES ($1, $2, $3, $4, $5, $6, $7)
                   RETURNING {self._COLUMNS}""",
                notification.user_id, notification.channel.value, notification.status.value,
                notification.message, notification.hash,
                notification.created_at, notification.updated_at,
            )
        else:
            row = await self._client.fetch_one(
                f"""UPDATE {self._table} SET status = $2, message = $3, updated_at = $4
                   WHERE id = $1
                   RETURNING {self._COLUMNS}""",
                notification.id, notification.status.value, notification.message,
                notification.updated_at,
            )
        if row is None:
            return notification
        stored = self._row_to_notification(row)
        logger.debug("notification_saved", notification_id=stored.id, status=stored.status.value)
        return stored

    @staticmethod
    def _row_to_notification(row: dict[str, Any]) -> Notification:
        return Notification(
            id=row["id"], user_id=row["user_id"], channel=Channel(row["channel"]),
            status=NotificationStatus(row["status"]), message=row["message"],
            hash=row["hash"].strip(), created_at=row["created_at"], updated_at=row["updated_at"],
        )


class PostgresDeliveryLogStore:
    def __init__(self, client: PostgresClient) -> None:
        self._client = client
        self._table = qualified_table(client.schema, "delivery_logs")

    async def append(self, log: DeliveryLog) -> DeliveryLog:
        row = await self._client.fetch_one(
            f"""INSERT INTO {self._table} (notification_id, channel, status, error_message, created_at)
               VALUES ($1, $2, $3, $4, $5)
               RETURNING id""",
            log.notification_id, log.channel.value, log.status.value,
            log.error_message, log.created_at,
        )
        return log.model_copy(update={"id": row["id"]}) if row else log


class InMemoryTemplateStore:
    def __init__(self, templates: list[Template] | None = None) -> None:
        self._templates = {t.name: t for t in templates or []}

    def add(self, template: Template) -> None:
        self._templates[template.name] = template

    async def find_by_name(self, name: str) -> Template | None:
        return self._templates.get(name)


class InMemoryUserStore:
    def __init__(self, users: list[User] | None = None) -> None:
        self._users = {u.id: u for u in users or []}

    def add(self, user: User) -> None:
        self._users[user.id] = user

    async def find_by_id(self, user_id: str) -> User | None:
        return self._users.get(user_id)


class InMemoryNotificationStore:
    """Dict-backed store; saved rows are copies so callers can't mutate them in place."""

    def __init__(self) -> None:
        self._rows: dict[int, Notification] = {}
        self._ids = count(1)

    async def find_by_id(self, notification_id: int) -> Notification | None:
        row = self._rows.get(notification_id)
        return row.model_copy() if row else None

    async def find_by_hash(self, notification_hash: str) -> Notification | None:
        for row in self._rows.values():
            if row.hash == notification_hash:
                return row.model_copy()
        return None

    async def save(self, notification: Notification) -> Notification:
        if notification.id is None:
            notification = notification.model_copy(update={"id": next(self._ids)})
        self._rows[notification.id] = notification.model_copy()
        return notification

    def all(self) -> list[Notification]:
        return [r.model_copy() for r in self._rows.values()]


class InMemoryDeliveryLogStore:
    def __init__(self) -> None:
        self.logs: list[DeliveryLog] = []

    async def append(self, log: DeliveryLog) -> DeliveryLog:
        log = log.model_copy(update={"id": len(self.logs) + 1})
        self.logs.append(log)
        return log

    def for_notification(self, notification_id: int) -> list[DeliveryLog]:
        return [log for log in self.logs if log.notification_id == notification_id]
