"""Courier Pipeline - Tier Router: places a resolved request on its tier stream."""
from __future__ import annotations

import structlog

from courier_common.exceptions import InvalidPriorityError
from courier_events.publisher import LogProducer, PublishedRecord
from courier_events.topology import Priority, tier_topic

from .models import NotificationRequest

logger = structlog.get_logger(__name__)


class TierRouter:
    def __init__(self, producer: LogProducer) -> None:
        self._producer = producer

    async def route(self, request: NotificationRequest) -> PublishedRecord:
        """Publish to ``priority-{tier}``; PublishError propagates to the caller."""
        try:
            priority = Priority(request.notification_priority)
        except ValueError:
            raise InvalidPriorityError(request.notification_priority) from None
        record = await self._producer.send(tier_topic(priority), request.to_json())
        logger.info(
            "notification_routed",
            priority=int(priority),
            topic=record.topic,
            partition=record.partition,
            offset=record.offset,
        )
        return record
