"""
Courier Topic Provisioning - idempotent creation of the pipeline topics.

Channel topics must exist with exactly one partition per priority tier
before producers write to them; the broker's auto-create default would
give them a single partition and silently collapse every tier into one.
"""
from __future__ import annotations

from aiokafka.errors import KafkaError, TopicAlreadyExistsError
import structlog

from courier_common.exceptions import FatalTransportError, TransportError

from .broker import InMemoryBroker
from .config import KafkaSettings
from .topology import StreamDefinition, all_streams

logger = structlog.get_logger(__name__)


class TopicProvisioner:
    """Creates pipeline topics through the Kafka admin API."""

    def __init__(self, settings: KafkaSettings | None = None) -> None:
        self._settings = settings or KafkaSettings()

    async def ensure_topics(self, streams: list[StreamDefinition] | None = None) -> list[str]:
        """Create missing topics and return the names that were created."""
        from aiokafka.admin import AIOKafkaAdminClient, NewTopic

        streams = streams or all_streams()
        admin = AIOKafkaAdminClient(**self._settings.get_admin_params())
        created: list[str] = []
        try:
            await admin.start()
            existing = set(await admin.list_topics())
            missing = [s for s in streams if s.topic not in existing]
            for stream in missing:
                try:
                    await admin.create_topics([
                        NewTopic(
                            name=stream.topic,
                            num_partitions=stream.partitions,
                            replication_factor=self._settings.replication_factor,
                        )
                    ])
                    created.append(stream.topic)
                except TopicAlreadyExistsError:
                    logger.debug("topic_already_exists", topic=stream.topic)
        except KafkaError as e:
            raise TransportError(f"Topic provisioning failed: {e}", cause=e) from e
        finally:
            await admin.close()
        await self._verify_partitions(streams)
        logger.info("topics_ensured", created=created, total=len(streams))
        return created

    async def _verify_partitions(self, streams: list[StreamDefinition]) -> None:
        """Refuse to run against a topic whose partition count breaks the priority map."""
        from aiokafka.admin import AIOKafkaAdminClient

        admin = AIOKafkaAdminClient(**self._settings.get_admin_params())
        try:
            await admin.start()
            descriptions = await admin.describe_topics([s.topic for s in streams])
        except KafkaError as e:
            raise TransportError(f"Topic verification failed: {e}", cause=e) from e
        finally:
            await admin.close()
        check_partition_counts(streams, {d["topic"]: len(d["partitions"]) for d in descriptions})


def check_partition_counts(streams: list[StreamDefinition], counts: dict[str, int]) -> None:
    """Raise FatalTransportError for a topic with the wrong partition count.

    Channel topics need exactly one partition per tier; other topics may
    have more than they were declared with.
    """
    for stream in streams:
        actual = counts.get(stream.topic)
        if actual is None:
            continue
        wrong = actual != stream.partitions if stream.exact_partitions else actual < stream.partitions
        if wrong:
            raise FatalTransportError(
                f"Topic {stream.topic} has {actual} partitions, expected {stream.partitions}",
                topic=stream.topic,
            )


def provision_memory_topics(
    broker: InMemoryBroker, streams: list[StreamDefinition] | None = None
) -> list[str]:
    """Create the pipeline topics on an in-memory broker."""
    created = [
        s.topic for s in (streams or all_streams())
        if broker.create_topic(s.topic, s.partitions)
    ]
    logger.info("memory_topics_ensured", created=created)
    return created
