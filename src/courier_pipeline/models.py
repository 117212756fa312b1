"""
Courier Pipeline - Domain Models.

Wire messages that travel between pipeline hops and the persisted
entities the delivery stage updates. Wire messages are JSON with
camelCase field names.
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel
import structlog

from courier_events.topology import UNASSIGNED_PRIORITY, Channel, Priority

logger = structlog.get_logger(__name__)

_ALLOWED_PRIORITIES = {UNASSIGNED_PRIORITY, *(int(p) for p in Priority)}


class WireModel(BaseModel):
    """Base for JSON messages exchanged over the log."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)


class Recipient(WireModel):
    user_id: str = Field(..., min_length=1)
    user_email: str | None = None
    user_phone: str | None = None


class PushContent(WireModel):
    title: str | None = None
    action: str | None = None


class Content(WireModel):
    template_name: str | None = None
    placeholders: dict[str, Any] = Field(default_factory=dict)
    message: str | None = None
    email_subject: str | None = None
    email_attachments: list[str] = Field(default_factory=list)
    push_notification: PushContent = Field(default_factory=PushContent)


class NotificationRequest(WireModel):
    """
    Notification submitted at ingress and carried on the tier streams.

    ``notification_priority`` is -1 until the resolver assigns a tier.
    """

    notification_priority: int = Field(default=UNASSIGNED_PRIORITY)
    channels: list[Channel] = Field(..., min_length=1)
    recipient: Recipient
    content: Content

    @field_validator("notification_priority")
    @classmethod
    def validate_priority(cls, v: int) -> int:
        if v not in _ALLOWED_PRIORITIES:
            raise ValueError(f"notificationPriority must be one of {sorted(_ALLOWED_PRIORITIES)}")
        return v

    @field_validator("channels", mode="before")
    @classmethod
    def normalize_channels(cls, v: Any) -> Any:
        if isinstance(v, (list, tuple)):
            return [c.lower() if isinstance(c, str) else c for c in v]
        return v

    @model_validator(mode="after")
    def require_body_source(self) -> NotificationRequest:
        if not self.content.message and not self.content.template_name:
            raise ValueError("content needs either a message or a templateName")
        return self

    @property
    def is_unassigned(self) -> bool:
        return self.notification_priority == UNASSIGNED_PRIORITY

    def with_priority(self, priority: int) -> NotificationRequest:
        """Copy of this request with the tier filled in."""
        return self.model_copy(update={"notification_priority": int(priority)})

    @classmethod
    def from_json(cls, payload: str | bytes) -> NotificationRequest:
        return cls.model_validate_json(payload)


class NotificationStatus(str, Enum):
    """Lifecycle state of a persisted notification."""
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class Notification(BaseModel):
    """One notification row per (request, channel)."""

    id: int | None = None
    user_id: str
    channel: Channel
    status: NotificationStatus = Field(default=NotificationStatus.PENDING)
    message: str
    hash: str
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def mark_sent(self) -> None:
        self.status = NotificationStatus.SENT
        self.updated_at = datetime.now(timezone.utc)


class DeliveryLog(BaseModel):
    """Append-only record of a delivery outcome."""

    id: int | None = None
    notification_id: int
    channel: Channel
    status: NotificationStatus
    error_message: str = ""
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class Template(BaseModel):
    name: str = Field(..., min_length=1)
    priority: int
    body: str | None = None


class User(BaseModel):
    id: str
    name: str | None = None
    email: str | None = None
    phone: str | None = None


class ChannelRequest(WireModel):
    """Base for the per-channel messages consumed by the delivery stage."""

    message: str
    notification_id: int


class EmailRequest(ChannelRequest):
    email_id: str = Field(..., min_length=1)
    email_subject: str = ""
    email_attachments: list[str] = Field(default_factory=list)


class SmsRequest(ChannelRequest):
    mobile_number: str = Field(..., min_length=1)


class PushRequest(ChannelRequest):
    title: str | None = None
    action: str | None = None
    user_id: str | None = None


CHANNEL_REQUEST_TYPES: dict[Channel, type[ChannelRequest]] = {
    Channel.EMAIL: EmailRequest,
    Channel.SMS: SmsRequest,
    Channel.PUSH: PushRequest,
}


class VendorResponse(BaseModel):
    """Outcome of a vendor send; any 2xx status counts as delivered."""

    status_code: int
    message: str = ""

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300
