"""
Courier Pipeline - Failure Path.

Where rejected deliveries go. The delivery handler only sees the
``FailurePath`` contract; which implementation runs is a configuration
choice.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

import structlog

from courier_common.exceptions import ConfigurationError
from courier_events.publisher import LogProducer
from courier_events.topology import Channel, channel_topic, dead_letter_topic

from .models import ChannelRequest
from .settings import FailureMode

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class FailedDelivery:
    channel: Channel
    request: ChannelRequest
    status_code: int
    message: str
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class FailurePath(Protocol):
    async def handle(self, failure: FailedDelivery) -> None: ...


class LoggingFailurePath:
    """Records the failure in the log and nothing else."""

    def __init__(self) -> None:
        self.handled = 0

    async def handle(self, failure: FailedDelivery) -> None:
        self.handled += 1
        logger.error(
            "delivery_failed",
            channel=failure.channel.value,
            notification_id=failure.request.notification_id,
            status_code=failure.status_code,
            vendor_message=failure.message,
        )


class DeadLetterFailurePath:
    """Republishes the failed request to ``{channel-topic}.dlq`` for later replay."""

    def __init__(self, producer: LogProducer) -> None:
        self._producer = producer

    async def handle(self, failure: FailedDelivery) -> None:
        topic = dead_letter_topic(channel_topic(failure.channel))
        payload = json.dumps({
            "channel": failure.channel.value,
            "statusCode": failure.status_code,
            "message": failure.message,
            "failedAt": failure.failed_at.isoformat(),
            "request": failure.request.model_dump(mode="json", by_alias=True),
        })
        try:
            await self._producer.send(topic, payload, key=str(failure.request.notification_id))
        except Exception as e:
            logger.error(
                "dead_letter_publish_failed",
                topic=topic,
                notification_id=failure.request.notification_id,
                error=str(e),
            )
            return
        logger.warning(
            "delivery_dead_lettered",
            topic=topic,
            notification_id=failure.request.notification_id,
            status_code=failure.status_code,
        )


def create_failure_path(mode: FailureMode, producer: LogProducer | None = None) -> FailurePath:
    """Factory for the configured failure path."""
    if mode == FailureMode.DEAD_LETTER:
        if producer is None:
            raise ConfigurationError("dead_letter failure mode needs a producer",
                                     config_key="COURIER_FAILURE_MODE")
        return DeadLetterFailurePath(producer)
    return LoggingFailurePath()
