"""
Courier Pipeline.

Priority-aware notification delivery: ingress, tier fan-out, per-channel
partition-priority scheduling, vendor pacing and delivery outcomes.
"""

from .bootstrap import (
    PipelineResources,
    build_channel_scheduler,
    build_ingress,
    build_tier_worker,
)
from .delivery import DeliveryHandler
from .failure import DeadLetterFailurePath, FailedDelivery, LoggingFailurePath, create_failure_path
from .ingress import AcceptedNotification, NotificationIngress
from .models import (
    ChannelRequest,
    DeliveryLog,
    EmailRequest,
    Notification,
    NotificationRequest,
    NotificationStatus,
    PushRequest,
    SmsRequest,
    Template,
    User,
    VendorResponse,
)
from .pacer import RatePacer
from .resolver import PriorityResolver
from .router import TierRouter
from .scheduler import PartitionPriorityScheduler, SchedulerMetrics, plan_partitions
from .settings import FailureMode, PacerSettings, ServiceSettings
from .tier_processor import TierProcessor, TierStreamWorker, notification_hash
from .vendors import MockVendorAdapter, VendorAdapter, create_vendor_adapter

__version__ = "0.1.0"

__all__ = [
    "PipelineResources",
    "build_ingress",
    "build_tier_worker",
    "build_channel_scheduler",
    "NotificationIngress",
    "AcceptedNotification",
    "PriorityResolver",
    "TierRouter",
    "TierProcessor",
    "TierStreamWorker",
    "notification_hash",
    "PartitionPriorityScheduler",
    "SchedulerMetrics",
    "plan_partitions",
    "RatePacer",
    "DeliveryHandler",
    "FailedDelivery",
    "LoggingFailurePath",
    "DeadLetterFailurePath",
    "create_failure_path",
    "VendorAdapter",
    "MockVendorAdapter",
    "create_vendor_adapter",
    "NotificationRequest",
    "ChannelRequest",
    "EmailRequest",
    "SmsRequest",
    "PushRequest",
    "Notification",
    "NotificationStatus",
    "DeliveryLog",
    "Template",
    "User",
    "VendorResponse",
    "ServiceSettings",
    "PacerSettings",
    "FailureMode",
]
