"""
Courier Pipeline - Delivery Outcome Handler.

Sends one channel request to its vendor and records the outcome. A 2xx
response marks the notification sent and appends exactly one delivery
log row; anything else goes to the failure path and leaves the stored
state untouched. The handler never raises, so a bad record cannot stall
the channel scheduler.
"""
from __future__ import annotations

from typing import Any

import pydantic
import structlog

from courier_events.broker import LogRecord
from courier_events.topology import Channel

from .failure import FailedDelivery, FailurePath
from .models import (
    CHANNEL_REQUEST_TYPES,
    ChannelRequest,
    DeliveryLog,
    NotificationStatus,
    VendorResponse,
)
from .pacer import RatePacer
from .stores import DeliveryLogStore, NotificationStore
from .vendors import VendorAdapter

logger = structlog.get_logger(__name__)


class DeliveryHandler:
    def __init__(
        self,
        channel: Channel,
        vendor: VendorAdapter,
        notifications: NotificationStore,
        delivery_logs: DeliveryLogStore,
        failure_path: FailurePath,
        pacer: RatePacer | None = None,
    ) -> None:
        self._channel = Channel(channel)
        self._request_type = CHANNEL_REQUEST_TYPES[self._channel]
        self._vendor = vendor
        self._notifications = notifications
        self._delivery_logs = delivery_logs
        self._failure_path = failure_path
        self._pacer = pacer
        self.delivered = 0
        self.failed = 0

    @property
    def channel(self) -> Channel:
        return self._channel

    async def handle_record(self, record: LogRecord) -> None:
        """Scheduler entry point."""
        await self.deliver(record.value)

    async def deliver(self, payload: str | bytes | dict[str, Any]) -> None:
        request = self._parse(payload)
        if request is None:
            return
        if self._pacer is not None:
            response = await self._pacer.pace(lambda: self._send(request))
        else:
            response = await self._send(request)

        if response.is_success:
            self.delivered += 1
            await self._record_success(request)
        else:
            self.failed += 1
            await self._record_failure(request, response)

    def _parse(self, payload: str | bytes | dict[str, Any]) -> ChannelRequest | None:
        try:
            if isinstance(payload, dict):
                return self._request_type.model_validate(payload)
            return self._request_type.model_validate_json(payload)
        except pydantic.ValidationError as e:
            logger.error("channel_request_invalid", channel=self._channel.value,
                         errors=e.error_count(), error=str(e))
            return None

    async def _send(self, request: ChannelRequest) -> VendorResponse:
        try:
            response = await self._vendor.send(request)
        except Exception as e:
            logger.error("vendor_send_raised", channel=self._channel.value,
                         notification_id=request.notification_id, error=str(e))
            return VendorResponse(status_code=500, message=str(e))
        if response.is_success:
            logger.info("vendor_send_succeeded", channel=self._channel.value,
                        notification_id=request.notification_id, status_code=response.status_code)
        else:
            logger.warning("vendor_send_rejected", channel=self._channel.value,
                           notification_id=request.notification_id,
                           status_code=response.status_code, vendor_message=response.message)
        return response

    async def _record_success(self, request: ChannelRequest) -> None:
        notification_id = request.notification_id
        try:
            notification = await self._notifications.find_by_id(notification_id)
        except Exception as e:
            logger.error("notification_lookup_failed", notification_id=notification_id, error=str(e))
            return
        if notification is None:
            logger.error("notification_not_found", notification_id=notification_id,
                         channel=self._channel.value)
            return

        notification.mark_sent()
        try:
            await self._notifications.save(notification)
            logger.info("notification_marked_sent", notification_id=notification_id)
        except Exception as e:
            logger.error("notification_status_update_failed",
                         notification_id=notification_id, error=str(e))

        try:
            await self._delivery_logs.append(DeliveryLog(
                notification_id=notification_id,
                channel=self._channel,
                status=NotificationStatus.SENT,
                error_message="",
            ))
        except Exception as e:
            logger.error("delivery_log_append_failed",
                         notification_id=notification_id, error=str(e))

    async def _record_failure(self, request: ChannelRequest, response: VendorResponse) -> None:
        failure = FailedDelivery(
            channel=self._channel,
            request=request,
            status_code=response.status_code,
            message=response.message,
        )
        try:
            await self._failure_path.handle(failure)
        except Exception as e:
            logger.error("failure_path_raised", notification_id=request.notification_id,
                         error=str(e))
