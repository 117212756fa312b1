"""
Courier Events Library.

Partitioned-log plumbing for the notification pipeline:
- Kafka settings and producer/consumer tuning
- Stream topology and the partition-to-priority map
- Consumer and producer adapters (aiokafka and in-memory)
- Topic provisioning
"""

from .broker import InMemoryBroker, LogRecord, TopicPartition
from .config import (
    CompressionType,
    ConsumerSettings,
    KafkaSettings,
    ProducerSettings,
    SaslMechanism,
    SecurityProtocol,
)
from .consumer import (
    AIOKafkaLogConsumer,
    LogConsumer,
    MockLogConsumer,
    create_log_consumer,
    translate_kafka_error,
)
from .publisher import (
    AIOKafkaLogProducer,
    LogProducer,
    MockLogProducer,
    PublishedRecord,
    create_log_producer,
)
from .topics import TopicProvisioner, provision_memory_topics
from .topology import (
    CHANNEL_PARTITIONS,
    CHANNEL_STREAMS,
    DEFAULT_PRIORITY,
    TIER_STREAMS,
    UNASSIGNED_PRIORITY,
    Channel,
    Priority,
    StreamDefinition,
    all_streams,
    channel_topic,
    dead_letter_topic,
    partition_for_priority,
    priority_for_partition,
    tier_topic,
)

__all__ = [
    # Broker
    "InMemoryBroker",
    "LogRecord",
    "TopicPartition",
    # Config
    "KafkaSettings",
    "ProducerSettings",
    "ConsumerSettings",
    "SecurityProtocol",
    "SaslMechanism",
    "CompressionType",
    # Consumer
    "LogConsumer",
    "AIOKafkaLogConsumer",
    "MockLogConsumer",
    "create_log_consumer",
    "translate_kafka_error",
    # Producer
    "LogProducer",
    "AIOKafkaLogProducer",
    "MockLogProducer",
    "PublishedRecord",
    "create_log_producer",
    # Topics
    "TopicProvisioner",
    "provision_memory_topics",
    # Topology
    "Priority",
    "Channel",
    "StreamDefinition",
    "UNASSIGNED_PRIORITY",
    "DEFAULT_PRIORITY",
    "CHANNEL_PARTITIONS",
    "TIER_STREAMS",
    "CHANNEL_STREAMS",
    "partition_for_priority",
    "priority_for_partition",
    "tier_topic",
    "channel_topic",
    "dead_letter_topic",
    "all_streams",
]
