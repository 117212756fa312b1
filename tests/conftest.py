"""
Pytest configuration and fixtures for the Courier test suite.

Everything runs against the in-memory broker, cache and stores; no
Kafka, Redis or Postgres is needed.
"""
from __future__ import annotations

import os

import pytest
import pytest_asyncio

# Keep a developer's .env and shell from leaking into settings under test
os.environ.setdefault("COURIER_ENV", "development")
os.environ.setdefault("COURIER_USE_MOCK", "true")
os.environ.setdefault("POSTGRES_PASSWORD", "test_password_for_pytest_only")

from courier_common.clock import ManualClock
from courier_events.broker import InMemoryBroker
from courier_events.publisher import MockLogProducer
from courier_events.topics import provision_memory_topics
from courier_events.topology import all_streams
from courier_infrastructure.redis import InMemoryCache
from courier_pipeline.bootstrap import PipelineResources, dead_letter_streams
from courier_pipeline.models import NotificationRequest
from courier_pipeline.settings import ServiceSettings
from courier_pipeline.stores import (
    InMemoryDeliveryLogStore,
    InMemoryNotificationStore,
    InMemoryTemplateStore,
    InMemoryUserStore,
)


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1_000.0)


@pytest.fixture
def broker() -> InMemoryBroker:
    """Broker with every pipeline topic, dead-letter topics included."""
    broker = InMemoryBroker()
    provision_memory_topics(broker, all_streams() + dead_letter_streams())
    return broker


@pytest_asyncio.fixture
async def producer(broker):
    producer = MockLogProducer(broker)
    await producer.start()
    yield producer
    await producer.stop()


@pytest.fixture
def cache(clock) -> InMemoryCache:
    return InMemoryCache(clock)


@pytest.fixture
def template_store() -> InMemoryTemplateStore:
    return InMemoryTemplateStore()


@pytest.fixture
def user_store() -> InMemoryUserStore:
    return InMemoryUserStore()


@pytest.fixture
def notification_store() -> InMemoryNotificationStore:
    return InMemoryNotificationStore()


@pytest.fixture
def delivery_log_store() -> InMemoryDeliveryLogStore:
    return InMemoryDeliveryLogStore()


@pytest.fixture
def service_settings() -> ServiceSettings:
    return ServiceSettings(use_mock=True, transient_backoff_seconds=1.0, poll_timeout_ms=10)


@pytest_asyncio.fixture
async def resources(service_settings, clock):
    """Fully in-memory pipeline resources."""
    async with PipelineResources(service_settings, broker=InMemoryBroker(), clock=clock) as res:
        yield res


def make_request(
    channels: list[str] | None = None,
    priority: int = -1,
    message: str | None = "Your code is 1234",
    template_name: str | None = None,
    user_id: str = "user-1",
    email: str | None = "user1@example.com",
    phone: str | None = "+15550001111",
    **content,
) -> NotificationRequest:
    """Build a notification request the way a client would send it."""
    body = {
        "notificationPriority": priority,
        "channels": channels or ["email"],
        "recipient": {"userId": user_id, "userEmail": email, "userPhone": phone},
        "content": {"message": message, "templateName": template_name, **content},
    }
    return NotificationRequest.model_validate(body)


@pytest.fixture
def request_factory():
    return make_request
