"""Unit tests for delivery outcome handling and failure paths."""
from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest

from courier_common.exceptions import ConfigurationError
from courier_events.broker import LogRecord
from courier_events.topology import Channel
from courier_pipeline.delivery import DeliveryHandler
from courier_pipeline.failure import (
    DeadLetterFailurePath,
    FailedDelivery,
    LoggingFailurePath,
    create_failure_path,
)
from courier_pipeline.models import Notification, NotificationStatus, SmsRequest
from courier_pipeline.pacer import RatePacer
from courier_pipeline.settings import FailureMode
from courier_pipeline.vendors import MockVendorAdapter


@pytest.fixture
def vendor() -> MockVendorAdapter:
    return MockVendorAdapter(Channel.SMS)


@pytest.fixture
def failure_path() -> LoggingFailurePath:
    return LoggingFailurePath()


@pytest.fixture
def handler(vendor, notification_store, delivery_log_store, failure_path) -> DeliveryHandler:
    return DeliveryHandler(Channel.SMS, vendor, notification_store, delivery_log_store, failure_path)


async def _pending(store) -> Notification:
    return await store.save(Notification(user_id="u1", channel=Channel.SMS, message="hi", hash="h"))


def _sms(notification_id: int) -> str:
    return SmsRequest(mobile_number="+15550001111", message="hi", notification_id=notification_id).to_json()


class TestDeliveryHandler:
    """Tests for DeliveryHandler."""

    @pytest.mark.asyncio
    async def test_success_marks_sent_and_logs_once(
        self, handler, vendor, notification_store, delivery_log_store
    ) -> None:
        notification = await _pending(notification_store)

        await handler.deliver(_sms(notification.id))

        stored = await notification_store.find_by_id(notification.id)
        assert stored.status == NotificationStatus.SENT
        logs = delivery_log_store.for_notification(notification.id)
        assert len(logs) == 1
        assert logs[0].status == NotificationStatus.SENT
        assert logs[0].error_message == ""
        assert len(vendor.requests) == 1
        assert handler.delivered == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [400, 429, 500, 503])
    async def test_rejection_leaves_state_untouched(
        self, handler, vendor, notification_store, delivery_log_store, failure_path, status_code
    ) -> None:
        vendor.status_code = status_code
        notification = await _pending(notification_store)

        await handler.deliver(_sms(notification.id))

        stored = await notification_store.find_by_id(notification.id)
        assert stored.status == NotificationStatus.PENDING
        assert delivery_log_store.logs == []
        assert failure_path.handled == 1
        assert handler.failed == 1

    @pytest.mark.asyncio
    async def test_vendor_exception_is_a_failure(
        self, handler, vendor, notification_store, delivery_log_store, failure_path
    ) -> None:
        vendor.error = ConnectionError("gateway unreachable")
        notification = await _pending(notification_store)

        await handler.deliver(_sms(notification.id))

        assert delivery_log_store.logs == []
        assert failure_path.handled == 1

    @pytest.mark.asyncio
    async def test_unknown_notification_writes_nothing(self, handler, delivery_log_store) -> None:
        await handler.deliver(_sms(999))

        assert delivery_log_store.logs == []
        assert handler.delivered == 1

    @pytest.mark.asyncio
    async def test_invalid_payload_is_dropped(self, handler, vendor) -> None:
        await handler.deliver('{"message": "no number"}')
        await handler.deliver(b"not json")

        assert vendor.requests == []

    @pytest.mark.asyncio
    async def test_accepts_dict_payload(self, handler, vendor, notification_store) -> None:
        notification = await _pending(notification_store)

        await handler.deliver({"mobileNumber": "+1555", "message": "hi", "notificationId": notification.id})

        assert vendor.requests[0].mobile_number == "+1555"

    @pytest.mark.asyncio
    async def test_store_failure_does_not_raise(self, vendor, delivery_log_store, failure_path) -> None:
        notifications = AsyncMock()
        notifications.find_by_id.side_effect = RuntimeError("db down")
        handler = DeliveryHandler(Channel.SMS, vendor, notifications, delivery_log_store, failure_path)

        await handler.deliver(_sms(1))

        assert delivery_log_store.logs == []

    @pytest.mark.asyncio
    async def test_failure_path_errors_are_contained(self, vendor, notification_store, delivery_log_store) -> None:
        vendor.status_code = 500
        failing_path = AsyncMock()
        failing_path.handle.side_effect = RuntimeError("dlq down")
        handler = DeliveryHandler(Channel.SMS, vendor, notification_store, delivery_log_store, failing_path)

        await handler.deliver(_sms(1))

        failing_path.handle.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pacer_gates_vendor_calls(
        self, vendor, notification_store, delivery_log_store, failure_path, clock
    ) -> None:
        pacer = RatePacer(limit=2, window_seconds=60, clock=clock)
        handler = DeliveryHandler(Channel.SMS, vendor, notification_store, delivery_log_store,
                                  failure_path, pacer=pacer)

        for i in range(3):
            await handler.deliver(_sms(i + 1))

        assert len(vendor.requests) == 3
        assert clock.sleeps == [60.0]

    @pytest.mark.asyncio
    async def test_handle_record_reads_value(self, handler, vendor, notification_store) -> None:
        notification = await _pending(notification_store)
        record = LogRecord(topic="sms-topic", partition=0, offset=0,
                           key=str(notification.id), value=_sms(notification.id))

        await handler.handle_record(record)

        assert len(vendor.requests) == 1


class TestFailurePaths:
    """Tests for the failure path implementations."""

    @pytest.mark.asyncio
    async def test_dead_letter_publishes_request(self, producer, broker) -> None:
        request = SmsRequest(mobile_number="+1555", message="hi", notification_id=7)

        await DeadLetterFailurePath(producer).handle(
            FailedDelivery(channel=Channel.SMS, request=request, status_code=503, message="busy"))

        records = broker.records("sms-topic.dlq")
        assert len(records) == 1
        assert records[0].key == "7"
        payload = json.loads(records[0].value)
        assert payload["statusCode"] == 503
        assert payload["request"]["mobileNumber"] == "+1555"

    @pytest.mark.asyncio
    async def test_dead_letter_publish_error_is_logged(self) -> None:
        producer = AsyncMock()
        producer.send.side_effect = RuntimeError("down")
        request = SmsRequest(mobile_number="+1555", message="hi", notification_id=7)

        await DeadLetterFailurePath(producer).handle(
            FailedDelivery(channel=Channel.SMS, request=request, status_code=500, message="x"))

        producer.send.assert_awaited_once()

    def test_factory(self, producer) -> None:
        assert isinstance(create_failure_path(FailureMode.LOG), LoggingFailurePath)
        assert isinstance(create_failure_path(FailureMode.DEAD_LETTER, producer), DeadLetterFailurePath)
        with pytest.raises(ConfigurationError):
            create_failure_path(FailureMode.DEAD_LETTER)
