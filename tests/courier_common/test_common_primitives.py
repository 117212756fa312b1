"""Unit tests for the Courier exception hierarchy and clocks."""
from __future__ import annotations

import pytest

from courier_common.clock import ManualClock, SystemClock
from courier_common.exceptions import (
    CacheError,
    CourierError,
    DuplicateNotificationError,
    ErrorCategory,
    FatalTransportError,
    InfrastructureError,
    InvalidPriorityError,
    PublishError,
    TransportError,
    ValidationError,
)


class TestExceptionHierarchy:
    """Tests for the error classes the pipeline branches on."""

    def test_publish_and_fatal_are_transport_errors(self) -> None:
        assert issubclass(PublishError, TransportError)
        assert issubclass(FatalTransportError, TransportError)
        assert issubclass(TransportError, InfrastructureError)
        assert issubclass(CacheError, InfrastructureError)

    def test_fatal_is_not_a_publish_error(self) -> None:
        assert not issubclass(FatalTransportError, PublishError)

    def test_invalid_priority_is_validation_error(self) -> None:
        error = InvalidPriorityError(7)

        assert isinstance(error, ValidationError)
        assert error.http_status == 400
        assert error.value == 7
        assert error.field == "notificationPriority"
        assert error.details["priority"] == 7

    def test_duplicate_notification_carries_hash(self) -> None:
        error = DuplicateNotificationError("abc123", existing_id=42)

        assert isinstance(error, CourierError)
        assert error.notification_hash == "abc123"
        assert error.details == {"hash": "abc123", "existing_id": 42}
        assert error.http_status == 409

    def test_transport_error_records_topic(self) -> None:
        error = TransportError("broker unreachable", topic="sms-topic")

        assert error.category == ErrorCategory.TRANSPORT
        assert error.details["topic"] == "sms-topic"

    def test_cause_is_kept(self) -> None:
        cause = RuntimeError("boom")
        error = PublishError("publish failed", topic="priority-1", cause=cause)

        assert error.cause is cause

    def test_to_dict_hides_internal_message(self) -> None:
        error = CourierError("internal detail")

        payload = error.to_dict()

        assert payload["error"]["code"] == "COURIER_ERROR"
        assert "internal detail" not in payload["error"]["message"]
        assert payload["error"]["correlation_id"] == error.context.correlation_id


class TestManualClock:
    """Tests for the test clock."""

    def test_advance(self) -> None:
        clock = ManualClock(start=10.0)

        clock.advance(5.5)

        assert clock.now() == 15.5

    @pytest.mark.asyncio
    async def test_sleep_moves_time_and_is_recorded(self) -> None:
        clock = ManualClock()

        await clock.sleep(3.0)
        await clock.sleep(0.0)

        assert clock.now() == 3.0
        assert clock.sleeps == [3.0, 0.0]


class TestSystemClock:
    """Tests for the wall clock."""

    @pytest.mark.asyncio
    async def test_now_is_monotonic(self) -> None:
        clock = SystemClock()

        first = clock.now()
        await clock.sleep(0)

        assert clock.now() >= first
