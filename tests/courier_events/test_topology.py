"""Unit tests for stream topology, Kafka settings and topic provisioning."""
from __future__ import annotations

import pytest
from pydantic import ValidationError

from courier_events.broker import InMemoryBroker
from courier_events.config import ConsumerSettings, KafkaSettings, SaslMechanism, SecurityProtocol
from courier_common.exceptions import FatalTransportError
from courier_events.topics import check_partition_counts, provision_memory_topics
from courier_events.topology import (
    CHANNEL_STREAMS,
    TIER_STREAMS,
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


class TestPartitionMap:
    """Tests for the priority/partition correspondence."""

    @pytest.mark.parametrize("priority,partition", [(1, 0), (2, 1), (3, 2)])
    def test_partition_for_priority(self, priority: int, partition: int) -> None:
        assert partition_for_priority(priority) == partition
        assert priority_for_partition(partition) == Priority(priority)

    def test_invalid_priority_rejected(self) -> None:
        with pytest.raises(ValueError):
            partition_for_priority(4)


class TestTopicNames:
    """Tests for topic naming."""

    def test_tier_topics(self) -> None:
        assert [tier_topic(p) for p in Priority] == ["priority-1", "priority-2", "priority-3"]

    def test_channel_topics(self) -> None:
        assert channel_topic(Channel.EMAIL) == "email-topic"
        assert channel_topic("sms") == "sms-topic"
        assert channel_topic(Channel.PUSH) == "push-topic"

    def test_dead_letter_topic(self) -> None:
        assert dead_letter_topic("sms-topic") == "sms-topic.dlq"

    def test_consumer_groups(self) -> None:
        assert TIER_STREAMS[Priority.HIGH].group_id == "priority-1-processor"
        assert CHANNEL_STREAMS[Channel.EMAIL].group_id == "email-consumer"

    def test_channel_streams_have_one_partition_per_tier(self) -> None:
        assert all(s.partitions == len(Priority) for s in CHANNEL_STREAMS.values())

    def test_all_streams_lists_tiers_first(self) -> None:
        topics = [s.topic for s in all_streams()]

        assert topics[:3] == ["priority-1", "priority-2", "priority-3"]
        assert len(topics) == 6


class TestStreamDefinition:
    """Tests for StreamDefinition."""

    def test_topic_partitions_in_priority_order(self) -> None:
        stream = StreamDefinition(topic="sms-topic", group_id="sms-consumer")

        assert stream.topic_partitions() == [("sms-topic", 0), ("sms-topic", 1), ("sms-topic", 2)]

    def test_empty_topic_rejected(self) -> None:
        with pytest.raises(ValidationError):
            StreamDefinition(topic="", group_id="g")


class TestKafkaSettings:
    """Tests for Kafka connection settings."""

    def test_plaintext_params(self) -> None:
        params = KafkaSettings(bootstrap_servers="kafka:9092").get_connection_params()

        assert params["bootstrap_servers"] == "kafka:9092"
        assert "security_protocol" not in params

    def test_sasl_params(self) -> None:
        settings = KafkaSettings(
            security_protocol=SecurityProtocol.SASL_PLAINTEXT,
            sasl_mechanism=SaslMechanism.PLAIN,
            sasl_username="courier",
            sasl_password="secret",
        )

        params = settings.get_connection_params()

        assert params["sasl_plain_username"] == "courier"
        assert params["sasl_plain_password"] == "secret"

    def test_admin_params_drop_metadata_age(self) -> None:
        assert "metadata_max_age_ms" not in KafkaSettings().get_admin_params()

    def test_consumer_never_auto_commits(self) -> None:
        params = ConsumerSettings(group_id="sms-consumer").to_consumer_params()

        assert params["enable_auto_commit"] is False

    def test_group_id_validation(self) -> None:
        with pytest.raises(ValidationError):
            ConsumerSettings(group_id="bad group!")


class TestProvisionMemoryTopics:
    """Tests for in-memory topic provisioning."""

    def test_creates_missing_topics_once(self) -> None:
        broker = InMemoryBroker()

        created = provision_memory_topics(broker)
        again = provision_memory_topics(broker)

        assert len(created) == 6
        assert again == []
        assert broker.partition_count("email-topic") == 3


class TestPartitionCountCheck:
    """Tests for check_partition_counts."""

    @pytest.mark.parametrize("actual", [2, 4])
    def test_channel_topic_needs_exactly_three(self, actual: int) -> None:
        with pytest.raises(FatalTransportError):
            check_partition_counts([CHANNEL_STREAMS[Channel.SMS]], {"sms-topic": actual})

    def test_matching_counts_pass(self) -> None:
        check_partition_counts(all_streams(), {s.topic: s.partitions for s in all_streams()})

    def test_tier_topic_may_have_more_partitions(self) -> None:
        check_partition_counts([TIER_STREAMS[Priority.HIGH]], {"priority-1": 6})

    def test_tier_topic_with_fewer_partitions_fails(self) -> None:
        with pytest.raises(FatalTransportError):
            check_partition_counts([TIER_STREAMS[Priority.HIGH]], {"priority-1": 1})

    def test_unknown_topics_are_skipped(self) -> None:
        check_partition_counts(all_streams(), {})
