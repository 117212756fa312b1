"""Courier in-memory broker - partitioned log used by the mock adapters."""

from __future__ import annotations

from dataclasses import dataclass
from itertools import count
from typing import Any

import structlog

logger = structlog.get_logger(__name__)

TopicPartition = tuple[str, int]


@dataclass(frozen=True)
class LogRecord:
    """A record read from a topic partition."""

    topic: str
    partition: int
    offset: int
    key: str | None
    value: Any

    @property
    def topic_partition(self) -> TopicPartition:
        return (self.topic, self.partition)


class InMemoryBroker:
    """Append-only partitioned log with per-group committed offsets.

    Implements just enough of Kafka for the pipeline: fixed partition
    counts, explicit or round-robin partition selection, end offsets and
    committed offsets per consumer group.
    """

    def __init__(self, auto_create_partitions: int = 1) -> None:
        self._logs: dict[str, list[list[LogRecord]]] = {}
        self._committed: dict[tuple[str, TopicPartition], int] = {}
        self._round_robin: dict[str, count] = {}
        self._auto_create_partitions = auto_create_partitions

    def create_topic(self, topic: str, partitions: int) -> bool:
        """Create a topic; returns False if it already exists."""
        if topic in self._logs:
            return False
        self._logs[topic] = [[] for _ in range(partitions)]
        self._round_robin[topic] = count()
        logger.debug("memory_topic_created", topic=topic, partitions=partitions)
        return True

    def has_topic(self, topic: str) -> bool:
        return topic in self._logs

    def partition_count(self, topic: str) -> int:
        self._ensure_topic(topic)
        return len(self._logs[topic])

    def _ensure_topic(self, topic: str) -> None:
        if topic not in self._logs:
            self.create_topic(topic, self._auto_create_partitions)

    def append(
        self, topic: str, value: Any, key: str | None = None, partition: int | None = None
    ) -> LogRecord:
        """Append a record and return it with its assigned offset."""
        self._ensure_topic(topic)
        partitions = self._logs[topic]
        if partition is None:
            partition = next(self._round_robin[topic]) % len(partitions)
        if not 0 <= partition < len(partitions):
            raise ValueError(f"Partition {partition} out of range for topic {topic}")
        log = partitions[partition]
        record = LogRecord(topic=topic, partition=partition, offset=len(log), key=key, value=value)
        log.append(record)
        return record

    def end_offset(self, tp: TopicPartition) -> int:
        topic, partition = tp
        self._ensure_topic(topic)
        return len(self._logs[topic][partition])

    def read(self, tp: TopicPartition, offset: int, limit: int) -> list[LogRecord]:
        topic, partition = tp
        self._ensure_topic(topic)
        return self._logs[topic][partition][offset:offset + limit]

    def records(self, topic: str, partition: int | None = None) -> list[LogRecord]:
        """All records of a topic, or of one of its partitions."""
        self._ensure_topic(topic)
        if partition is not None:
            return list(self._logs[topic][partition])
        return [r for log in self._logs[topic] for r in log]

    def commit(self, group_id: str, offsets: dict[TopicPartition, int]) -> None:
        for tp, offset in offsets.items():
            self._committed[(group_id, tp)] = offset

    def committed(self, group_id: str, tp: TopicPartition) -> int | None:
        return self._committed.get((group_id, tp))
