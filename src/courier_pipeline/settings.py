"""
Courier Pipeline - Configuration.

Environment-driven settings for the ingress, tier workers, channel
workers and vendor adapters.
"""
from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

from courier_events.topology import Channel

logger = structlog.get_logger(__name__)


class Environment(str, Enum):
    """Deployment environment."""
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class FailureMode(str, Enum):
    """What happens to a request the vendor rejected."""
    LOG = "log"
    DEAD_LETTER = "dead_letter"


class ServiceSettings(BaseSettings):
    """Core service configuration shared by every pipeline process."""
    name: str = Field(default="courier")
    env: Environment = Field(default=Environment.DEVELOPMENT)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8080, ge=1, le=65535)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO")
    poll_timeout_ms: int = Field(default=500, ge=1, le=60000)
    transient_backoff_seconds: float = Field(default=1.0, ge=0.0, le=60.0)
    template_priority_ttl_seconds: int = Field(default=86400, ge=1)
    failure_mode: FailureMode = Field(default=FailureMode.LOG)
    dedup_enabled: bool = Field(default=True)
    use_mock: bool = Field(default=False)
    provision_topics: bool = Field(default=True)

    model_config = SettingsConfigDict(
        env_prefix="COURIER_",
        env_file=".env",
        extra="ignore",
    )


class PacerSettings(BaseSettings):
    """Per-channel vendor budgets, in dispatches per window."""
    email_per_minute: int = Field(default=600, ge=1)
    sms_per_minute: int = Field(default=600, ge=1)
    push_per_minute: int = Field(default=600, ge=1)
    window_seconds: float = Field(default=60.0, gt=0)

    model_config = SettingsConfigDict(
        env_prefix="COURIER_RATE_",
        env_file=".env",
        extra="ignore",
    )

    def limit_for(self, channel: Channel | str) -> int:
        return getattr(self, f"{Channel(channel).value}_per_minute")


class EmailVendorSettings(BaseSettings):
    """SMTP vendor configuration."""
    smtp_host: str = Field(default="localhost")
    smtp_port: int = Field(default=587, ge=1, le=65535)
    smtp_username: str = Field(default="")
    smtp_password: SecretStr = Field(default=SecretStr(""))
    use_tls: bool = Field(default=False)
    start_tls: bool = Field(default=True)
    from_email: str = Field(default="noreply@courier.local")
    from_name: str = Field(default="Courier")
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)

    model_config = SettingsConfigDict(
        env_prefix="EMAIL_",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("from_email", mode="before")
    @classmethod
    def validate_from_email(cls, v: str) -> str:
        """Validate from email format."""
        if v and "@" not in v:
            raise ValueError("Invalid email format")
        return v.strip().lower() if v else v


class SmsVendorSettings(BaseSettings):
    """SMS vendor configuration (Twilio-compatible)."""
    provider_url: str = Field(default="https://api.twilio.com/2010-04-01")
    account_sid: str = Field(default="")
    auth_token: SecretStr = Field(default=SecretStr(""))
    from_number: str = Field(default="")
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    max_message_length: int = Field(default=1600, ge=160, le=1600)

    model_config = SettingsConfigDict(
        env_prefix="SMS_",
        env_file=".env",
        extra="ignore",
    )


class PushVendorSettings(BaseSettings):
    """Push vendor configuration (Firebase-compatible)."""
    firebase_url: str = Field(default="https://fcm.googleapis.com/fcm/send")
    server_key: SecretStr = Field(default=SecretStr(""))
    topic_prefix: str = Field(default="user-")
    timeout_seconds: float = Field(default=30.0, ge=1.0, le=300.0)
    ttl_seconds: int = Field(default=86400, ge=0, le=2419200)

    model_config = SettingsConfigDict(
        env_prefix="PUSH_",
        env_file=".env",
        extra="ignore",
    )
