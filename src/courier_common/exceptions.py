"""
Courier Exception Hierarchy.
Structured exception handling with correlation tracking.
"""
from __future__ import annotations
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any
from pydantic import BaseModel, Field
import structlog

logger = structlog.get_logger(__name__)


class ErrorSeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    CONFLICT = "conflict"
    EXTERNAL_SERVICE = "external_service"
    DATABASE = "database"
    CACHE = "cache"
    TRANSPORT = "transport"
    CONFIGURATION = "configuration"
    INTERNAL = "internal"


class ErrorContext(BaseModel):
    """Structured context for error tracking."""
    correlation_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    service_name: str = Field(default="courier")
    operation: str | None = None
    additional_data: dict[str, Any] = Field(default_factory=dict)
    model_config = {"frozen": True}


class CourierError(Exception):
    """Base exception for all Courier errors with structured tracking."""
    error_code: str = "COURIER_ERROR"
    category: ErrorCategory = ErrorCategory.INTERNAL
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    http_status: int = 500

    def __init__(self, message: str, *, user_message: str | None = None,
                 context: ErrorContext | None = None, cause: Exception | None = None,
                 details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.user_message = user_message or "An error occurred. Please try again."
        self.context = context or ErrorContext()
        self.cause = cause
        self.details = details or {}
        self._log_error()

    def _log_error(self) -> None:
        log_data = {
            "error_code": self.error_code, "category": self.category.value,
            "severity": self.severity.value, "correlation_id": self.context.correlation_id,
            "operation": self.context.operation, "details": self.details,
        }
        if self.cause:
            log_data["cause_type"] = type(self.cause).__name__
            log_data["cause_message"] = str(self.cause)
        if self.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            logger.error(self.message, **log_data)
        else:
            logger.warning(self.message, **log_data)

    def to_dict(self) -> dict[str, Any]:
        return {"error": {"code": self.error_code, "message": self.user_message,
                         "correlation_id": self.context.correlation_id,
                         "timestamp": self.context.timestamp.isoformat()}}


# Domain Layer Exceptions
class DomainError(CourierError):
    error_code = "DOMAIN_ERROR"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.MEDIUM
    http_status = 422


class ValidationError(DomainError):
    error_code = "VALIDATION_ERROR"
    category = ErrorCategory.VALIDATION
    severity = ErrorSeverity.LOW
    http_status = 400

    def __init__(self, message: str, *, field: str | None = None, value: Any = None,
                 **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        super().__init__(message, user_message=message, details=details, **kwargs)
        self.field, self.value = field, value


class InvalidPriorityError(ValidationError):
    error_code = "INVALID_PRIORITY"

    def __init__(self, priority: Any, **kwargs: Any) -> None:
        super().__init__("Invalid priority value", field="notificationPriority",
                         value=priority, details={"priority": priority}, **kwargs)


class DuplicateNotificationError(DomainError):
    error_code = "DUPLICATE_NOTIFICATION"
    category = ErrorCategory.CONFLICT
    severity = ErrorSeverity.LOW
    http_status = 409

    def __init__(self, notification_hash: str, existing_id: int | None = None,
                 **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        details.update({"hash": notification_hash, "existing_id": existing_id})
        super().__init__("Duplicate notification found", details=details, **kwargs)
        self.notification_hash, self.existing_id = notification_hash, existing_id


# Infrastructure Layer Exceptions
class InfrastructureError(CourierError):
    error_code = "INFRASTRUCTURE_ERROR"
    category = ErrorCategory.EXTERNAL_SERVICE
    severity = ErrorSeverity.HIGH
    http_status = 503


class DatabaseError(InfrastructureError):
    error_code = "DATABASE_ERROR"
    category = ErrorCategory.DATABASE

    def __init__(self, message: str, *, operation: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if operation:
            details["db_operation"] = operation
        super().__init__(message, user_message="A database error occurred",
                         details=details, **kwargs)


class CacheError(InfrastructureError):
    error_code = "CACHE_ERROR"
    category = ErrorCategory.CACHE
    severity = ErrorSeverity.MEDIUM


class TransportError(InfrastructureError):
    """Broker interaction failed; the consuming loop may retry on the next cycle."""
    error_code = "TRANSPORT_ERROR"
    category = ErrorCategory.TRANSPORT
    severity = ErrorSeverity.MEDIUM

    def __init__(self, message: str, *, topic: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if topic:
            details["topic"] = topic
        super().__init__(message, user_message="Error processing notification.",
                         details=details, **kwargs)
        self.topic = topic


class PublishError(TransportError):
    error_code = "PUBLISH_ERROR"
    severity = ErrorSeverity.HIGH


class FatalTransportError(TransportError):
    """Broker error that no amount of re-polling will fix."""
    error_code = "FATAL_TRANSPORT_ERROR"
    severity = ErrorSeverity.CRITICAL


class ConfigurationError(InfrastructureError):
    error_code = "CONFIGURATION_ERROR"
    category = ErrorCategory.CONFIGURATION
    severity = ErrorSeverity.CRITICAL
    http_status = 500

    def __init__(self, message: str, *, config_key: str | None = None, **kwargs: Any) -> None:
        details = kwargs.pop("details", {})
        if config_key:
            details["config_key"] = config_key
        super().__init__(message, user_message="Service configuration error",
                         details=details, **kwargs)
