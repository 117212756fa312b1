"""
Courier Pipeline - Vendor Adapters.

One adapter per channel turns a channel request into a third-party
call and reports the outcome as a ``VendorResponse``. Adapters report
vendor rejections through the status code; transport problems may
raise and are treated as a 500 by the delivery handler.
"""
from __future__ import annotations

import re
from abc import ABC, abstractmethod
from email.header import Header
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr
from typing import TypeVar

import aiosmtplib
import httpx
import structlog

from courier_events.topology import Channel

from .models import ChannelRequest, EmailRequest, PushRequest, SmsRequest, VendorResponse
from .settings import EmailVendorSettings, PushVendorSettings, SmsVendorSettings

logger = structlog.get_logger(__name__)

T = TypeVar("T", bound=ChannelRequest)

# Newlines and control characters that would allow header injection
_HEADER_INJECTION_PATTERN = re.compile(r"[\r\n\x00\x0b\x0c]")
_EMAIL_PATTERN = re.compile(r"^[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")


def _sanitize_header(value: str, max_length: int = 998) -> str:
    """Strip characters that could inject extra email headers."""
    if not value:
        return ""
    return _HEADER_INJECTION_PATTERN.sub("", value)[:max_length].strip()


def _expect(request: ChannelRequest, kind: type[T]) -> T:
    if not isinstance(request, kind):
        raise TypeError(f"{kind.__name__} expected, got {type(request).__name__}")
    return request


class VendorAdapter(ABC):
    """Sends one channel request to a third-party provider."""

    channel: Channel

    @abstractmethod
    async def send(self, request: ChannelRequest) -> VendorResponse: ...

    async def close(self) -> None:
        """Release any pooled connections."""


class SmtpEmailAdapter(VendorAdapter):
    """Email over SMTP."""

    channel = Channel.EMAIL

    def __init__(self, settings: EmailVendorSettings | None = None) -> None:
        self._settings = settings or EmailVendorSettings()

    def _build_message(self, request: EmailRequest) -> MIMEMultipart:
        recipient = _sanitize_header(request.email_id)
        message = MIMEMultipart()
        message["Subject"] = Header(_sanitize_header(request.email_subject, max_length=200), "utf-8")
        message["From"] = formataddr((
            _sanitize_header(self._settings.from_name, max_length=100),
            _sanitize_header(self._settings.from_email),
        ))
        message["To"] = recipient
        message["X-Notification-Id"] = str(request.notification_id)
        message.attach(MIMEText(request.message, "plain", "utf-8"))
        for link in request.email_attachments:
            message.attach(MIMEText(f"Attachment: {link}", "plain", "utf-8"))
        return message

    async def send(self, request: ChannelRequest) -> VendorResponse:
        request = _expect(request, EmailRequest)
        if not _EMAIL_PATTERN.match(_sanitize_header(request.email_id)):
            return VendorResponse(status_code=400, message="Invalid email address")
        message = self._build_message(request)
        try:
            await aiosmtplib.send(
                message,
                hostname=self._settings.smtp_host,
                port=self._settings.smtp_port,
                username=self._settings.smtp_username or None,
                password=self._settings.smtp_password.get_secret_value() or None,
                use_tls=self._settings.use_tls,
                start_tls=self._settings.start_tls and not self._settings.use_tls,
                timeout=self._settings.timeout_seconds,
            )
        except aiosmtplib.SMTPResponseException as e:
            logger.warning("smtp_rejected", notification_id=request.notification_id, code=e.code)
            return VendorResponse(status_code=502, message=e.message)
        except aiosmtplib.SMTPException as e:
            logger.warning("smtp_failed", notification_id=request.notification_id, error=str(e))
            return VendorResponse(status_code=503, message=str(e))
        return VendorResponse(status_code=202, message="Email sent")


class TwilioSmsAdapter(VendorAdapter):
    """SMS through a Twilio-compatible REST API."""

    channel = Channel.SMS

    def __init__(
        self, settings: SmsVendorSettings | None = None, client: httpx.AsyncClient | None = None
    ) -> None:
        self._settings = settings or SmsVendorSettings()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._settings.timeout_seconds)
        return self._client

    async def send(self, request: ChannelRequest) -> VendorResponse:
        request = _expect(request, SmsRequest)
        url = f"{self._settings.provider_url}/Accounts/{self._settings.account_sid}/Messages.json"
        client = await self._get_client()
        response = await client.post(
            url,
            auth=(self._settings.account_sid, self._settings.auth_token.get_secret_value()),
            data={
                "From": self._settings.from_number,
                "To": request.mobile_number,
                "Body": request.message[: self._settings.max_message_length],
            },
        )
        if response.is_success:
            return VendorResponse(status_code=response.status_code,
                                  message=str(_json_body(response).get("sid", "")))
        return VendorResponse(status_code=response.status_code, message=response.text[:200])

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


class FcmPushAdapter(VendorAdapter):
    """Push through Firebase Cloud Messaging, addressed to a per-user topic."""

    channel = Channel.PUSH

    def __init__(
        self, settings: PushVendorSettings | None = None, client: httpx.AsyncClient | None = None
    ) -> None:
        self._settings = settings or PushVendorSettings()
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(timeout=self._settings.timeout_seconds)
        return self._client

    def _payload(self, request: PushRequest) -> dict:
        return {
            "to": f"/topics/{self._settings.topic_prefix}{request.user_id or 'all'}",
            "time_to_live": self._settings.ttl_seconds,
            "notification": {"title": request.title or "", "body": request.message[:4096]},
            "data": {
                "notificationId": str(request.notification_id),
                "action": request.action or "",
            },
        }

    async def send(self, request: ChannelRequest) -> VendorResponse:
        request = _expect(request, PushRequest)
        client = await self._get_client()
        response = await client.post(
            self._settings.firebase_url,
            json=self._payload(request),
            headers={
                "Authorization": f"key={self._settings.server_key.get_secret_value()}",
                "Content-Type": "application/json",
            },
        )
        if not response.is_success:
            return VendorResponse(status_code=response.status_code, message=response.text[:200])
        data = _json_body(response)
        if data.get("failure", 0) and not data.get("message_id"):
            return VendorResponse(status_code=502, message="Push provider reported failure")
        return VendorResponse(status_code=response.status_code, message="Push notification sent")

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()


def _json_body(response: httpx.Response) -> dict:
    """Decoded JSON object body, empty when the provider sent something else."""
    try:
        data = response.json()
    except ValueError:
        logger.warning("vendor_response_not_json", status_code=response.status_code)
        return {}
    return data if isinstance(data, dict) else {}


class MockVendorAdapter(VendorAdapter):
    """Records every request and answers with a configurable status."""

    def __init__(self, channel: Channel, status_code: int = 202, message: str = "ok") -> None:
        self.channel = channel
        self.status_code = status_code
        self.message = message
        self.requests: list[ChannelRequest] = []
        self.error: Exception | None = None

    async def send(self, request: ChannelRequest) -> VendorResponse:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        logger.info("mock_vendor_send", channel=self.channel.value,
                    notification_id=request.notification_id, status_code=self.status_code)
        return VendorResponse(status_code=self.status_code, message=self.message)


def create_vendor_adapter(channel: Channel, use_mock: bool = False) -> VendorAdapter:
    """Factory: the channel's real vendor, or a recording mock."""
    channel = Channel(channel)
    if use_mock:
        return MockVendorAdapter(channel)
    if channel == Channel.EMAIL:
        return SmtpEmailAdapter()
    if channel == Channel.SMS:
        return TwilioSmsAdapter()
    return FcmPushAdapter()
