"""
Courier Common Library.

Shared primitives for the notification pipeline:
- Structured exception hierarchy with correlation tracking
- structlog configuration
- Clock abstraction for time-dependent components
"""

from .clock import Clock, ManualClock, SystemClock
from .exceptions import (
    CacheError,
    ConfigurationError,
    CourierError,
    DatabaseError,
    DomainError,
    DuplicateNotificationError,
    ErrorCategory,
    ErrorContext,
    ErrorSeverity,
    FatalTransportError,
    InfrastructureError,
    InvalidPriorityError,
    PublishError,
    TransportError,
    ValidationError,
)
from .logging import configure_logging

__version__ = "0.1.0"

__all__ = [
    # Clock
    "Clock",
    "ManualClock",
    "SystemClock",
    # Exceptions
    "CourierError",
    "ErrorSeverity",
    "ErrorCategory",
    "ErrorContext",
    "DomainError",
    "ValidationError",
    "InvalidPriorityError",
    "DuplicateNotificationError",
    "InfrastructureError",
    "DatabaseError",
    "CacheError",
    "TransportError",
    "PublishError",
    "FatalTransportError",
    "ConfigurationError",
    # Logging
    "configure_logging",
]
