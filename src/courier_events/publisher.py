"""Courier Log Producer - publishing with explicit partition placement."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from aiokafka.errors import KafkaError
import structlog

from courier_common.exceptions import PublishError

from .broker import InMemoryBroker
from .config import KafkaSettings, ProducerSettings

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PublishedRecord:
    """Where a published record landed."""

    topic: str
    partition: int
    offset: int


class LogProducer(ABC):
    """Abstract producer over a partitioned log."""

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    async def send(
        self,
        topic: str,
        value: str,
        key: str | None = None,
        partition: int | None = None,
    ) -> PublishedRecord:
        """Publish ``value``; ``partition=None`` leaves placement to the log."""


class AIOKafkaLogProducer(LogProducer):
    """aiokafka producer implementation."""

    def __init__(
        self, kafka_settings: KafkaSettings, producer_settings: ProducerSettings
    ) -> None:
        self._kafka_settings = kafka_settings
        self._producer_settings = producer_settings
        self._producer: Any = None

    async def start(self) -> None:
        """Start the producer."""
        from aiokafka import AIOKafkaProducer

        params = {
            **self._kafka_settings.get_connection_params(),
            **self._producer_settings.to_producer_params(),
            "value_serializer": lambda v: v.encode("utf-8") if isinstance(v, str) else v,
            "key_serializer": lambda k: k.encode("utf-8") if k else None,
        }
        self._producer = AIOKafkaProducer(**params)
        await self._producer.start()
        logger.info(
            "kafka_producer_started", bootstrap=self._kafka_settings.bootstrap_servers
        )

    async def stop(self) -> None:
        """Stop the producer."""
        if self._producer:
            await self._producer.stop()
            self._producer = None
            logger.info("kafka_producer_stopped")

    async def send(
        self,
        topic: str,
        value: str,
        key: str | None = None,
        partition: int | None = None,
    ) -> PublishedRecord:
        """Send message to topic and wait for the broker acknowledgement."""
        if not self._producer:
            raise PublishError("Producer not started", topic=topic)
        try:
            metadata = await self._producer.send_and_wait(
                topic, value=value, key=key, partition=partition
            )
        except KafkaError as e:
            raise PublishError(f"Failed to publish to {topic}: {e}", topic=topic, cause=e) from e
        logger.debug("message_sent", topic=topic, partition=metadata.partition, offset=metadata.offset)
        return PublishedRecord(topic=topic, partition=metadata.partition, offset=metadata.offset)


class MockLogProducer(LogProducer):
    """Producer that appends to an ``InMemoryBroker``."""

    def __init__(self, broker: InMemoryBroker) -> None:
        self._broker = broker
        self._started = False

    async def start(self) -> None:
        self._started = True
        logger.info("mock_producer_started")

    async def stop(self) -> None:
        self._started = False
        logger.info("mock_producer_stopped")

    async def send(
        self,
        topic: str,
        value: str,
        key: str | None = None,
        partition: int | None = None,
    ) -> PublishedRecord:
        if not self._started:
            raise PublishError("Producer not started", topic=topic)
        try:
            record = self._broker.append(topic, value, key=key, partition=partition)
        except ValueError as e:
            raise PublishError(str(e), topic=topic, cause=e) from e
        logger.debug("mock_message_sent", topic=topic, partition=record.partition)
        return PublishedRecord(topic=topic, partition=record.partition, offset=record.offset)


def create_log_producer(
    kafka_settings: KafkaSettings | None = None,
    producer_settings: ProducerSettings | None = None,
    broker: InMemoryBroker | None = None,
) -> LogProducer:
    """Factory: an in-memory producer when a broker is given, aiokafka otherwise."""
    if broker is not None:
        return MockLogProducer(broker)
    return AIOKafkaLogProducer(
        kafka_settings or KafkaSettings(),
        producer_settings or ProducerSettings(),
    )
