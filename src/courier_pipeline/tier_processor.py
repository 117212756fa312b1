"""
Courier Pipeline - Tier Processor.

Consumes one tier stream and fans each request out to its channel
streams. Every channel gets a pending notification row and a channel
request published on the partition that encodes the tier, so the
channel schedulers can recover the priority from the partition index.
"""
from __future__ import annotations

import asyncio
import hashlib
from typing import Any

from jinja2 import BaseLoader, Environment, StrictUndefined, TemplateError
import pydantic
import structlog

from courier_common.clock import Clock, SystemClock
from courier_common.exceptions import DuplicateNotificationError, FatalTransportError, TransportError
from courier_events.broker import LogRecord, TopicPartition
from courier_events.consumer import LogConsumer
from courier_events.publisher import LogProducer, PublishedRecord
from courier_events.topology import (
    Channel,
    Priority,
    StreamDefinition,
    channel_topic,
    partition_for_priority,
)

from .models import (
    ChannelRequest,
    EmailRequest,
    Notification,
    NotificationRequest,
    PushRequest,
    SmsRequest,
    User,
)
from .stores import NotificationStore, TemplateStore, UserStore

logger = structlog.get_logger(__name__)


def notification_hash(user_id: str, channel: Channel | str, message: str) -> str:
    """Dedup key for a notification: same user, channel and text hash alike."""
    raw = f"{user_id}:{Channel(channel).value}:{message}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class MessageRenderer:
    """Renders template bodies; ``{{ name }}`` markers come from the placeholders."""

    def __init__(self) -> None:
        self._env = Environment(loader=BaseLoader(), autoescape=False, undefined=StrictUndefined)

    def render(self, body: str, placeholders: dict[str, Any]) -> str:
        return self._env.from_string(body).render(**placeholders)


class TierProcessor:
    """Persists and fans out the requests of one priority tier."""

    def __init__(
        self,
        priority: Priority | int,
        producer: LogProducer,
        notifications: NotificationStore,
        templates: TemplateStore,
        users: UserStore,
        dedup_enabled: bool = True,
    ) -> None:
        self._priority = Priority(priority)
        self._partition = partition_for_priority(self._priority)
        self._producer = producer
        self._notifications = notifications
        self._templates = templates
        self._users = users
        self._dedup_enabled = dedup_enabled
        self._renderer = MessageRenderer()

    @property
    def priority(self) -> Priority:
        return self._priority

    async def handle_record(self, record: LogRecord) -> None:
        await self.on_message(record.value)

    async def on_message(self, payload: str | bytes) -> list[PublishedRecord]:
        """Process one serialized request; never raises for bad input."""
        try:
            request = NotificationRequest.from_json(payload)
        except pydantic.ValidationError as e:
            logger.error("tier_message_invalid", priority=int(self._priority),
                         errors=e.error_count(), error=str(e))
            return []

        if request.notification_priority != int(self._priority):
            logger.warning("tier_priority_mismatch", stream_priority=int(self._priority),
                           request_priority=request.notification_priority)

        message = await self._resolve_message(request)
        if message is None:
            return []

        published: list[PublishedRecord] = []
        user_lookup = _UserLookup(self._users, request.recipient.user_id)
        for channel in request.channels:
            try:
                record = await self._process_channel(request, channel, message, user_lookup)
            except DuplicateNotificationError:
                logger.info("duplicate_notification_skipped", channel=channel.value,
                            user_id=request.recipient.user_id)
                continue
            except Exception as e:
                logger.error("channel_fanout_failed", channel=channel.value,
                             user_id=request.recipient.user_id, error=str(e))
                continue
            if record is not None:
                published.append(record)
        return published

    async def _resolve_message(self, request: NotificationRequest) -> str | None:
        content = request.content
        if content.message:
            return content.message
        try:
            template = await self._templates.find_by_name(content.template_name or "")
        except Exception as e:
            logger.error("template_lookup_failed", template=content.template_name, error=str(e))
            return None
        if template is None or not template.body:
            logger.error("template_body_unavailable", template=content.template_name)
            return None
        try:
            return self._renderer.render(template.body, content.placeholders)
        except TemplateError as e:
            logger.error("template_render_failed", template=content.template_name, error=str(e))
            return None

    async def _process_channel(
        self,
        request: NotificationRequest,
        channel: Channel,
        message: str,
        user_lookup: _UserLookup,
    ) -> PublishedRecord | None:
        address = await self._contact_for(request, channel, user_lookup)
        if channel != Channel.PUSH and not address:
            logger.error("recipient_contact_missing", channel=channel.value,
                         user_id=request.recipient.user_id)
            return None

        digest = notification_hash(request.recipient.user_id, channel, message)
        if self._dedup_enabled:
            existing = await self._notifications.find_by_hash(digest)
            if existing is not None:
                raise DuplicateNotificationError(digest, existing_id=existing.id)

        notification = await self._notifications.save(Notification(
            user_id=request.recipient.user_id,
            channel=channel,
            message=message,
            hash=digest,
        ))
        channel_request = self._build_channel_request(
            request, channel, message, notification.id, address
        )
        record = await self._producer.send(
            channel_topic(channel),
            channel_request.to_json(),
            key=str(notification.id),
            partition=self._partition,
        )
        logger.info("notification_fanned_out", channel=channel.value,
                    notification_id=notification.id, topic=record.topic,
                    partition=record.partition)
        return record

    @staticmethod
    async def _contact_for(
        request: NotificationRequest, channel: Channel, user_lookup: _UserLookup
    ) -> str | None:
        recipient = request.recipient
        if channel == Channel.EMAIL:
            if recipient.user_email:
                return recipient.user_email
            user = await user_lookup.get()
            return user.email if user else None
        if channel == Channel.SMS:
            if recipient.user_phone:
                return recipient.user_phone
            user = await user_lookup.get()
            return user.phone if user else None
        return recipient.user_id

    @staticmethod
    def _build_channel_request(
        request: NotificationRequest,
        channel: Channel,
        message: str,
        notification_id: int,
        address: str | None,
    ) -> ChannelRequest:
        content = request.content
        if channel == Channel.EMAIL:
            return EmailRequest(
                email_id=address,
                email_subject=content.email_subject or "",
                message=message,
                email_attachments=content.email_attachments,
                notification_id=notification_id,
            )
        if channel == Channel.SMS:
            return SmsRequest(mobile_number=address, message=message,
                              notification_id=notification_id)
        return PushRequest(
            title=content.push_notification.title,
            action=content.push_notification.action,
            message=message,
            user_id=request.recipient.user_id,
            notification_id=notification_id,
        )


class _UserLookup:
    """Fetches the recipient's user row at most once per request."""

    def __init__(self, users: UserStore, user_id: str) -> None:
        self._users = users
        self._user_id = user_id
        self._loaded = False
        self._user: User | None = None

    async def get(self) -> User | None:
        if not self._loaded:
            self._user = await self._users.find_by_id(self._user_id)
            self._loaded = True
        return self._user


class TierStreamWorker:
    """Poll, process, commit loop over one tier stream."""

    def __init__(
        self,
        consumer: LogConsumer,
        stream: StreamDefinition,
        processor: TierProcessor,
        clock: Clock | None = None,
        poll_timeout_ms: int = 500,
        transient_backoff_seconds: float = 1.0,
    ) -> None:
        self._consumer = consumer
        self._stream = stream
        self._processor = processor
        self._clock = clock or SystemClock()
        self._poll_timeout_ms = poll_timeout_ms
        self._backoff = transient_backoff_seconds
        self._stop_requested = asyncio.Event()
        self.processed = 0

    async def start(self) -> None:
        await self._consumer.start()
        self._consumer.subscribe([self._stream.topic])
        logger.info("tier_worker_started", topic=self._stream.topic, group_id=self._stream.group_id)

    async def close(self) -> None:
        await self._consumer.stop()
        logger.info("tier_worker_closed", topic=self._stream.topic)

    async def __aenter__(self) -> TierStreamWorker:
        await self.start()
        return self

    async def __aexit__(self, exc_type: type | None, exc_val: BaseException | None, exc_tb: Any) -> None:
        await self.close()

    def stop(self) -> None:
        self._stop_requested.set()

    async def run_once(self) -> int:
        records = await self._consumer.poll(timeout_ms=self._poll_timeout_ms)
        offsets: dict[TopicPartition, int] = {}
        for record in records:
            await self._processor.handle_record(record)
            offsets[record.topic_partition] = record.offset + 1
        if offsets:
            await self._consumer.commit(offsets)
        self.processed += len(records)
        return len(records)

    async def run(self, max_cycles: int | None = None) -> None:
        cycles = 0
        while not self._stop_requested.is_set():
            if max_cycles is not None and cycles >= max_cycles:
                break
            cycles += 1
            try:
                await self.run_once()
            except FatalTransportError:
                logger.error("tier_worker_fatal_error", topic=self._stream.topic)
                raise
            except TransportError as e:
                logger.warning("tier_worker_transient_error", topic=self._stream.topic,
                               error=e.message)
                await self._clock.sleep(self._backoff)
            except Exception as e:
                logger.error("tier_worker_unexpected_error", topic=self._stream.topic,
                             error=str(e), exc_info=True)
                await self._clock.sleep(self._backoff)
        logger.info("tier_worker_stopped", topic=self._stream.topic, processed=self.processed)
