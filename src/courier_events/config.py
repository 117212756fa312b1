"""Courier Events Configuration - Kafka connection, producer and consumer settings."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
import structlog

logger = structlog.get_logger(__name__)


class SecurityProtocol(str, Enum):
    """Kafka security protocols."""
    PLAINTEXT = "PLAINTEXT"
    SSL = "SSL"
    SASL_PLAINTEXT = "SASL_PLAINTEXT"
    SASL_SSL = "SASL_SSL"


class SaslMechanism(str, Enum):
    """SASL authentication mechanisms."""
    PLAIN = "PLAIN"
    SCRAM_SHA_256 = "SCRAM-SHA-256"
    SCRAM_SHA_512 = "SCRAM-SHA-512"


class CompressionType(str, Enum):
    """Kafka message compression types."""
    NONE = "none"
    GZIP = "gzip"
    SNAPPY = "snappy"
    LZ4 = "lz4"
    ZSTD = "zstd"


class KafkaSettings(BaseSettings):
    """Kafka connection and behavior settings loaded from environment."""

    bootstrap_servers: str = Field(default="localhost:9092")
    security_protocol: SecurityProtocol = Field(default=SecurityProtocol.PLAINTEXT)
    sasl_mechanism: SaslMechanism | None = Field(default=None)
    sasl_username: str | None = Field(default=None)
    sasl_password: SecretStr | None = Field(default=None)
    ssl_cafile: str | None = Field(default=None)
    ssl_certfile: str | None = Field(default=None)
    ssl_keyfile: str | None = Field(default=None)
    client_id: str = Field(default="courier")
    request_timeout_ms: int = Field(default=30000, ge=1000)
    metadata_max_age_ms: int = Field(default=300000, ge=1000)
    replication_factor: int = Field(default=1, ge=1, le=5)

    model_config = SettingsConfigDict(
        env_prefix="KAFKA_",
        env_file=".env",
        extra="ignore",
    )

    def get_connection_params(self) -> dict[str, Any]:
        """Get connection parameters for aiokafka."""
        params: dict[str, Any] = {
            "bootstrap_servers": self.bootstrap_servers,
            "client_id": self.client_id,
            "request_timeout_ms": self.request_timeout_ms,
            "metadata_max_age_ms": self.metadata_max_age_ms,
        }
        if self.security_protocol != SecurityProtocol.PLAINTEXT:
            params["security_protocol"] = self.security_protocol.value
        if self.sasl_mechanism:
            params["sasl_mechanism"] = self.sasl_mechanism.value
            params["sasl_plain_username"] = self.sasl_username
            params["sasl_plain_password"] = self.sasl_password.get_secret_value() if self.sasl_password else None
        if self.ssl_cafile:
            params["ssl_context"] = self._create_ssl_context()
        return params

    def get_admin_params(self) -> dict[str, Any]:
        """Connection parameters accepted by the aiokafka admin client."""
        params = self.get_connection_params()
        params.pop("metadata_max_age_ms", None)
        return params

    def _create_ssl_context(self) -> Any:
        """Create SSL context for secure connections."""
        import ssl
        ctx = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
        if self.ssl_cafile:
            ctx.load_verify_locations(self.ssl_cafile)
        if self.ssl_certfile and self.ssl_keyfile:
            ctx.load_cert_chain(self.ssl_certfile, self.ssl_keyfile)
        return ctx


class ProducerSettings(BaseModel):
    """Kafka producer-specific settings."""

    acks: str = Field(default="all")
    compression_type: CompressionType = Field(default=CompressionType.GZIP)
    max_batch_size: int = Field(default=16384, ge=0)
    linger_ms: int = Field(default=5, ge=0)
    enable_idempotence: bool = Field(default=True)

    model_config = ConfigDict(frozen=True)

    def to_producer_params(self) -> dict[str, Any]:
        """Convert to aiokafka producer parameters."""
        return {
            "acks": self.acks,
            "compression_type": self.compression_type.value,
            "max_batch_size": self.max_batch_size,
            "linger_ms": self.linger_ms,
            "max_request_size": 1048576,
            "enable_idempotence": self.enable_idempotence,
        }


class ConsumerSettings(BaseModel):
    """Kafka consumer-specific settings.

    Auto-commit is always off: offsets are committed by the consuming loop
    after records are handled.
    """

    group_id: str = Field(..., min_length=1)
    auto_offset_reset: str = Field(default="earliest")
    max_poll_records: int = Field(default=100, ge=1, le=1000)
    session_timeout_ms: int = Field(default=10000, ge=6000)
    heartbeat_interval_ms: int = Field(default=3000, ge=1000)
    max_poll_interval_ms: int = Field(default=300000, ge=1000)

    model_config = ConfigDict(frozen=True)

    @field_validator("group_id")
    @classmethod
    def validate_group_id(cls, v: str) -> str:
        """Validate consumer group ID."""
        if not v.replace("-", "").replace("_", "").isalnum():
            raise ValueError("Group ID contains invalid characters")
        return v

    def to_consumer_params(self) -> dict[str, Any]:
        """Convert to aiokafka consumer parameters."""
        return {
            "group_id": self.group_id,
            "auto_offset_reset": self.auto_offset_reset,
            "enable_auto_commit": False,
            "max_poll_records": self.max_poll_records,
            "session_timeout_ms": self.session_timeout_ms,
            "heartbeat_interval_ms": self.heartbeat_interval_ms,
            "max_poll_interval_ms": self.max_poll_interval_ms,
        }
