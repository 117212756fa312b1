"""Courier Pipeline - Ingress: resolve a validated request's tier and route it."""
from __future__ import annotations

from dataclasses import dataclass

import structlog

from courier_events.publisher import PublishedRecord

from .models import NotificationRequest
from .resolver import PriorityResolver
from .router import TierRouter

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class AcceptedNotification:
    priority: int
    record: PublishedRecord


class NotificationIngress:
    def __init__(self, resolver: PriorityResolver, router: TierRouter) -> None:
        self._resolver = resolver
        self._router = router

    async def accept(self, request: NotificationRequest) -> AcceptedNotification:
        """Resolve and route; InvalidPriorityError and PublishError propagate."""
        resolved = await self._resolver.resolve_request(request)
        record = await self._router.route(resolved)
        logger.info(
            "notification_accepted",
            user_id=resolved.recipient.user_id,
            channels=[c.value for c in resolved.channels],
            priority=resolved.notification_priority,
        )
        return AcceptedNotification(priority=resolved.notification_priority, record=record)
