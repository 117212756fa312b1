"""
Courier stream topology.

Topic names, consumer groups and the partition-to-priority map shared by
every hop of the pipeline. Tier processors place a message on partition
``priority - 1`` of a channel topic and channel schedulers read priority
back from the partition index, so both sides must go through this module.
"""
from __future__ import annotations

from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field


class Priority(IntEnum):
    """Notification priority tier; lower value is more urgent."""
    HIGH = 1
    MEDIUM = 2
    LOW = 3


UNASSIGNED_PRIORITY = -1
DEFAULT_PRIORITY = Priority.MEDIUM
CHANNEL_PARTITIONS = len(Priority)


class Channel(str, Enum):
    """Delivery channels, each backed by its own stream."""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"


def partition_for_priority(priority: int) -> int:
    """Channel-topic partition that carries messages of ``priority``."""
    return int(Priority(priority)) - 1


def priority_for_partition(partition: int) -> Priority:
    """Priority tier encoded by a channel-topic partition index."""
    return Priority(partition + 1)


def tier_topic(priority: int) -> str:
    return f"priority-{int(Priority(priority))}"


def dead_letter_topic(topic: str) -> str:
    return f"{topic}.dlq"


class StreamDefinition(BaseModel):
    """A topic together with the consumer group that owns it."""

    topic: str = Field(..., min_length=1, max_length=249)
    group_id: str = Field(..., min_length=1)
    partitions: int = Field(default=CHANNEL_PARTITIONS, ge=1, le=256)
    exact_partitions: bool = False

    model_config = ConfigDict(frozen=True)

    def topic_partitions(self) -> list[tuple[str, int]]:
        """All partitions of the topic, highest priority first."""
        return [(self.topic, p) for p in range(self.partitions)]


TIER_STREAMS: dict[Priority, StreamDefinition] = {
    p: StreamDefinition(topic=tier_topic(p), group_id=f"priority-{int(p)}-processor")
    for p in Priority
}

CHANNEL_STREAMS: dict[Channel, StreamDefinition] = {
    Channel.EMAIL: StreamDefinition(topic="email-topic", group_id="email-consumer", exact_partitions=True),
    Channel.SMS: StreamDefinition(topic="sms-topic", group_id="sms-consumer", exact_partitions=True),
    Channel.PUSH: StreamDefinition(topic="push-topic", group_id="push-consumer", exact_partitions=True),
}


def channel_topic(channel: Channel | str) -> str:
    return CHANNEL_STREAMS[Channel(channel)].topic


def all_streams() -> list[StreamDefinition]:
    """Every stream the pipeline reads or writes, tier streams first."""
    return [*TIER_STREAMS.values(), *CHANNEL_STREAMS.values()]
