"""Courier Log Consumer - partition-level consumer adapters with pause/resume."""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any

from aiokafka.errors import (
    ClusterAuthorizationFailedError,
    GroupAuthorizationFailedError,
    IllegalStateError,
    KafkaError,
    TopicAuthorizationFailedError,
)
import structlog

from courier_common.exceptions import FatalTransportError, TransportError

from .broker import InMemoryBroker, LogRecord, TopicPartition
from .config import ConsumerSettings, KafkaSettings

logger = structlog.get_logger(__name__)

_FATAL_KAFKA_ERRORS = (
    IllegalStateError,
    TopicAuthorizationFailedError,
    GroupAuthorizationFailedError,
    ClusterAuthorizationFailedError,
)


def translate_kafka_error(error: Exception, operation: str) -> TransportError:
    """Map an aiokafka error onto the transient/fatal transport split."""
    if isinstance(error, _FATAL_KAFKA_ERRORS):
        return FatalTransportError(f"Kafka {operation} failed: {error}", cause=error)
    return TransportError(f"Kafka {operation} failed: {error}", cause=error)


class LogConsumer(ABC):
    """Abstract consumer over a partitioned log.

    Partitions are addressed as ``(topic, partition)`` tuples.
    """

    @abstractmethod
    async def start(self) -> None: ...

    @abstractmethod
    async def stop(self) -> None: ...

    @abstractmethod
    def assign(self, partitions: list[TopicPartition]) -> None: ...

    @abstractmethod
    def subscribe(self, topics: list[str]) -> None: ...

    @abstractmethod
    def assignment(self) -> list[TopicPartition]: ...

    @abstractmethod
    async def end_offsets(self, partitions: list[TopicPartition]) -> dict[TopicPartition, int]: ...

    @abstractmethod
    async def position(self, partition: TopicPartition) -> int: ...

    @abstractmethod
    def pause(self, partitions: list[TopicPartition]) -> None: ...

    @abstractmethod
    def resume(self, partitions: list[TopicPartition]) -> None: ...

    @abstractmethod
    def paused(self) -> set[TopicPartition]: ...

    @abstractmethod
    async def poll(self, timeout_ms: int = 500) -> list[LogRecord]: ...

    @abstractmethod
    async def commit(self, offsets: dict[TopicPartition, int]) -> None: ...

    @abstractmethod
    def seek(self, partition: TopicPartition, offset: int) -> None: ...


class AIOKafkaLogConsumer(LogConsumer):
    """aiokafka consumer implementation."""

    def __init__(
        self, kafka_settings: KafkaSettings, consumer_settings: ConsumerSettings
    ) -> None:
        self._kafka_settings = kafka_settings
        self._consumer_settings = consumer_settings
        self._consumer: Any = None

    async def start(self) -> None:
        """Start the consumer."""
        from aiokafka import AIOKafkaConsumer

        params = {
            **self._kafka_settings.get_connection_params(),
            **self._consumer_settings.to_consumer_params(),
        }
        self._consumer = AIOKafkaConsumer(**params)
        try:
            await self._consumer.start()
        except KafkaError as e:
            raise translate_kafka_error(e, "start") from e
        logger.info("kafka_consumer_started", group_id=self._consumer_settings.group_id)

    async def stop(self) -> None:
        """Stop the consumer and release its assignment."""
        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
            logger.info("kafka_consumer_stopped", group_id=self._consumer_settings.group_id)

    def _ensure_started(self) -> Any:
        if self._consumer is None:
            raise FatalTransportError("Consumer not started")
        return self._consumer

    @staticmethod
    def _tps(partitions: list[TopicPartition]) -> list[Any]:
        from aiokafka import TopicPartition as KafkaTopicPartition
        return [KafkaTopicPartition(topic, p) for topic, p in partitions]

    def assign(self, partitions: list[TopicPartition]) -> None:
        self._ensure_started().assign(self._tps(partitions))
        logger.info("kafka_partitions_assigned", partitions=partitions)

    def subscribe(self, topics: list[str]) -> None:
        self._ensure_started().subscribe(topics)
        logger.info("kafka_topics_subscribed", topics=topics)

    def assignment(self) -> list[TopicPartition]:
        return sorted((tp.topic, tp.partition) for tp in self._ensure_started().assignment())

    async def end_offsets(self, partitions: list[TopicPartition]) -> dict[TopicPartition, int]:
        consumer = self._ensure_started()
        try:
            offsets = await consumer.end_offsets(self._tps(partitions))
        except KafkaError as e:
            raise translate_kafka_error(e, "end_offsets") from e
        return {(tp.topic, tp.partition): offset for tp, offset in offsets.items()}

    async def position(self, partition: TopicPartition) -> int:
        consumer = self._ensure_started()
        try:
            return await consumer.position(self._tps([partition])[0])
        except KafkaError as e:
            raise translate_kafka_error(e, "position") from e

    def pause(self, partitions: list[TopicPartition]) -> None:
        if partitions:
            self._ensure_started().pause(*self._tps(partitions))

    def resume(self, partitions: list[TopicPartition]) -> None:
        if partitions:
            self._ensure_started().resume(*self._tps(partitions))

    def paused(self) -> set[TopicPartition]:
        return {(tp.topic, tp.partition) for tp in self._ensure_started().paused()}

    async def poll(self, timeout_ms: int = 500) -> list[LogRecord]:
        consumer = self._ensure_started()
        try:
            data = await consumer.getmany(timeout_ms=timeout_ms)
        except KafkaError as e:
            raise translate_kafka_error(e, "poll") from e
        records: list[LogRecord] = []
        for tp, batch in data.items():
            for record in batch:
                key = record.key.decode("utf-8") if isinstance(record.key, bytes) else record.key
                records.append(
                    LogRecord(topic=tp.topic, partition=tp.partition, offset=record.offset,
                              key=key, value=record.value)
                )
        return records

    async def commit(self, offsets: dict[TopicPartition, int]) -> None:
        if not offsets:
            return
        consumer = self._ensure_started()
        from aiokafka import TopicPartition as KafkaTopicPartition

        try:
            await consumer.commit({KafkaTopicPartition(t, p): o for (t, p), o in offsets.items()})
        except KafkaError as e:
            raise translate_kafka_error(e, "commit") from e
        logger.debug("offsets_committed", count=len(offsets))

    def seek(self, partition: TopicPartition, offset: int) -> None:
        self._ensure_started().seek(self._tps([partition])[0], offset)


class MockLogConsumer(LogConsumer):
    """Consumer over an ``InMemoryBroker`` for tests and local runs.

    Every poll is recorded in ``poll_history`` as the set of partitions that
    were active for that poll, so tests can assert on pause/resume behaviour.
    """

    def __init__(
        self, broker: InMemoryBroker, group_id: str, max_poll_records: int = 100
    ) -> None:
        self._broker = broker
        self._group_id = group_id
        self._max_poll_records = max_poll_records
        self._assigned: list[TopicPartition] = []
        self._positions: dict[TopicPartition, int] = {}
        self._paused: set[TopicPartition] = set()
        self._started = False
        self.poll_history: list[frozenset[TopicPartition]] = []

    async def start(self) -> None:
        self._started = True
        logger.info("mock_consumer_started", group_id=self._group_id)

    async def stop(self) -> None:
        self._started = False
        self._assigned = []
        self._paused.clear()
        logger.info("mock_consumer_stopped", group_id=self._group_id)

    def assign(self, partitions: list[TopicPartition]) -> None:
        self._assigned = list(partitions)
        for tp in partitions:
            self._positions.setdefault(tp, self._broker.committed(self._group_id, tp) or 0)
        self._paused &= set(partitions)

    def subscribe(self, topics: list[str]) -> None:
        self.assign([(t, p) for t in topics for p in range(self._broker.partition_count(t))])

    def assignment(self) -> list[TopicPartition]:
        return list(self._assigned)

    async def end_offsets(self, partitions: list[TopicPartition]) -> dict[TopicPartition, int]:
        return {tp: self._broker.end_offset(tp) for tp in partitions}

    async def position(self, partition: TopicPartition) -> int:
        return self._positions[partition]

    def pause(self, partitions: list[TopicPartition]) -> None:
        self._paused.update(partitions)

    def resume(self, partitions: list[TopicPartition]) -> None:
        self._paused.difference_update(partitions)

    def paused(self) -> set[TopicPartition]:
        return set(self._paused)

    async def poll(self, timeout_ms: int = 500) -> list[LogRecord]:
        if not self._started:
            raise FatalTransportError("Consumer not started")
        active = [tp for tp in self._assigned if tp not in self._paused]
        self.poll_history.append(frozenset(active))
        records: list[LogRecord] = []
        for tp in active:
            remaining = self._max_poll_records - len(records)
            if remaining <= 0:
                break
            batch = self._broker.read(tp, self._positions[tp], remaining)
            if batch:
                self._positions[tp] = batch[-1].offset + 1
                records.extend(batch)
        await asyncio.sleep(0)
        return records

    async def commit(self, offsets: dict[TopicPartition, int]) -> None:
        self._broker.commit(self._group_id, offsets)

    def seek(self, partition: TopicPartition, offset: int) -> None:
        self._positions[partition] = offset


def create_log_consumer(
    group_id: str,
    kafka_settings: KafkaSettings | None = None,
    consumer_settings: ConsumerSettings | None = None,
    broker: InMemoryBroker | None = None,
) -> LogConsumer:
    """Factory: an in-memory consumer when a broker is given, aiokafka otherwise."""
    if broker is not None:
        return MockLogConsumer(broker, group_id)
    settings = consumer_settings or ConsumerSettings(group_id=group_id)
    return AIOKafkaLogConsumer(kafka_settings or KafkaSettings(), settings)
