"""
Courier Pipeline - Component Wiring.

Builds the shared clients of a pipeline process (log producer, cache,
stores) and assembles the ingress, tier workers and channel schedulers
from them. With ``use_mock`` every collaborator is in-memory, which is
also how the test suite drives the whole pipeline.
"""
from __future__ import annotations

from typing import Any

import structlog

from courier_common.clock import Clock
from courier_events.broker import InMemoryBroker
from courier_events.consumer import LogConsumer, create_log_consumer
from courier_events.publisher import LogProducer, create_log_producer
from courier_events.topics import TopicProvisioner, provision_memory_topics
from courier_events.topology import (
    CHANNEL_STREAMS,
    TIER_STREAMS,
    Channel,
    Priority,
    StreamDefinition,
    all_streams,
    dead_letter_topic,
)
from courier_infrastructure.postgres import PostgresClient, create_postgres_client
from courier_infrastructure.redis import InMemoryCache, KeyValueCache, RedisClient, create_redis_client

from .delivery import DeliveryHandler
from .failure import create_failure_path
from .ingress import NotificationIngress
from .pacer import RatePacer
from .resolver import PriorityResolver
from .router import TierRouter
from .scheduler import PartitionPriorityScheduler
from .settings import FailureMode, PacerSettings, ServiceSettings
from .stores import (
    DeliveryLogStore,
    InMemoryDeliveryLogStore,
    InMemoryNotificationStore,
    InMemoryTemplateStore,
    InMemoryUserStore,
    NotificationStore,
    PostgresDeliveryLogStore,
    PostgresNotificationStore,
    PostgresTemplateStore,
    PostgresUserStore,
    TemplateStore,
    UserStore,
    ensure_schema,
)
from .tier_processor import TierProcessor, TierStreamWorker
from .vendors import VendorAdapter, create_vendor_adapter

logger = structlog.get_logger(__name__)


def dead_letter_streams() -> list[StreamDefinition]:
    return [
        StreamDefinition(topic=dead_letter_topic(s.topic), group_id=f"{s.group_id}-dlq", partitions=1)
        for s in CHANNEL_STREAMS.values()
    ]


class PipelineResources:
    """Clients shared by the components of one process."""

    def __init__(
        self,
        settings: ServiceSettings | None = None,
        broker: InMemoryBroker | None = None,
        clock: Clock | None = None,
    ) -> None:
        self.settings = settings or ServiceSettings()
        self.clock = clock
        self.broker = broker if broker is not None else (
            InMemoryBroker() if self.settings.use_mock else None
        )
        self.producer: LogProducer | None = None
        self.cache: KeyValueCache | None = None
        self.templates: TemplateStore | None = None
        self.users: UserStore | None = None
        self.notifications: NotificationStore | None = None
        self.delivery_logs: DeliveryLogStore | None = None
        self._redis: RedisClient | None = None
        self._postgres: PostgresClient | None = None

    @property
    def in_memory(self) -> bool:
        return self.broker is not None

    def _streams(self) -> list[StreamDefinition]:
        streams = all_streams()
        if self.settings.failure_mode == FailureMode.DEAD_LETTER:
            streams += dead_letter_streams()
        return streams

    async def open(self) -> PipelineResources:
        if self.in_memory:
            provision_memory_topics(self.broker, self._streams())
            self.cache = InMemoryCache(self.clock)
            self.templates = InMemoryTemplateStore()
            self.users = InMemoryUserStore()
            self.notifications = InMemoryNotificationStore()
            self.delivery_logs = InMemoryDeliveryLogStore()
        else:
            if self.settings.provision_topics:
                await TopicProvisioner().ensure_topics(self._streams())
            self._redis = await create_redis_client()
            self._postgres = await create_postgres_client()
            await ensure_schema(self._postgres)
            self.cache = self._redis
            self.templates = PostgresTemplateStore(self._postgres)
            self.users = PostgresUserStore(self._postgres)
            self.notifications = PostgresNotificationStore(self._postgres)
            self.delivery_logs = PostgresDeliveryLogStore(self._postgres)

        self.producer = create_log_producer(broker=self.broker)
        await self.producer.start()
        logger.info("pipeline_resources_opened", in_memory=self.in_memory)
        return self

    async def close(self) -> None:
        if self.producer is not None:
            await self.producer.stop()
        if self._redis is not None:
            await self._redis.disconnect()
        if self._postgres is not None:
            await self._postgres.disconnect()
        logger.info("pipeline_resources_closed")

    async def __aenter__(self) -> PipelineResources:
        return await self.open()

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.close()

    def consumer(self, group_id: str) -> LogConsumer:
        return create_log_consumer(group_id, broker=self.broker)

    async def check_health(self) -> dict[str, Any]:
        health: dict[str, Any] = {"broker": "memory" if self.in_memory else "kafka"}
        if self._redis is not None:
            health["redis"] = await self._redis.check_health()
        if self._postgres is not None:
            health["postgres"] = await self._postgres.check_health()
        return health


def build_ingress(resources: PipelineResources) -> NotificationIngress:
    resolver = PriorityResolver(
        resources.cache,
        resources.templates,
        ttl_seconds=resources.settings.template_priority_ttl_seconds,
    )
    return NotificationIngress(resolver, TierRouter(resources.producer))


def build_tier_worker(resources: PipelineResources, priority: Priority | int) -> TierStreamWorker:
    priority = Priority(priority)
    stream = TIER_STREAMS[priority]
    processor = TierProcessor(
        priority,
        resources.producer,
        resources.notifications,
        resources.templates,
        resources.users,
        dedup_enabled=resources.settings.dedup_enabled,
    )
    return TierStreamWorker(
        resources.consumer(stream.group_id),
        stream,
        processor,
        clock=resources.clock,
        poll_timeout_ms=resources.settings.poll_timeout_ms,
        transient_backoff_seconds=resources.settings.transient_backoff_seconds,
    )


def build_channel_scheduler(
    resources: PipelineResources,
    channel: Channel | str,
    vendor: VendorAdapter | None = None,
    pacer_settings: PacerSettings | None = None,
) -> PartitionPriorityScheduler:
    """Scheduler for one channel stream with its pacer, vendor and outcome handler."""
    channel = Channel(channel)
    stream = CHANNEL_STREAMS[channel]
    pacer_settings = pacer_settings or PacerSettings()
    pacer = RatePacer(
        limit=pacer_settings.limit_for(channel),
        window_seconds=pacer_settings.window_seconds,
        clock=resources.clock,
        name=channel.value,
    )
    vendor = vendor or create_vendor_adapter(channel, use_mock=resources.in_memory)
    handler = DeliveryHandler(
        channel,
        vendor,
        resources.notifications,
        resources.delivery_logs,
        create_failure_path(resources.settings.failure_mode, resources.producer),
        pacer=pacer,
    )
    return PartitionPriorityScheduler(
        resources.consumer(stream.group_id),
        stream,
        handler.handle_record,
        clock=resources.clock,
        poll_timeout_ms=resources.settings.poll_timeout_ms,
        transient_backoff_seconds=resources.settings.transient_backoff_seconds,
        close_hooks=[vendor.close],
    )
