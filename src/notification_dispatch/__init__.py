"""
Notification Dispatch Pipeline
Prioritized, deduplicated, rate-limited multi-channel notification delivery
"""

from .core.batch_processor import BatchProcessor
from .core.deduplication import DeduplicationEngine
from .core.delivery_engine import ChannelHandler, DeliveryEngine
from .core.notification_engine import NotificationEngine
from .core.priority_queue import PriorityQueue
from .events import EventEmitter
from .exceptions import (
    ChannelNotRegisteredError,
    ConfigurationError,
    DeliveryError,
    DeliveryTimeoutError,
    EngineStateError,
    NotificationError,
    ProcessorNotConfiguredError,
    QueueFullError,
    ValidationError,
)
from .models import (
    ChannelType,
    DeliveryAttempt,
    DeliveryReceipt,
    DeliveryResult,
    DeliveryStatus,
    Notification,
    NotificationPriority,
    NotificationStatus,
    ReceiptEvent,
    Recipient,
    Rejected,
    RejectionReason,
    Sent,
)

__version__ = '1.0.0'

__all__ = [
    'BatchProcessor',
    'ChannelHandler',
    'ChannelNotRegisteredError',
    'ChannelType',
    'ConfigurationError',
    'DeduplicationEngine',
    'DeliveryAttempt',
    'DeliveryEngine',
    'DeliveryError',
    'DeliveryReceipt',
    'DeliveryResult',
    'DeliveryStatus',
    'DeliveryTimeoutError',
    'EngineStateError',
    'EventEmitter',
    'Notification',
    'NotificationEngine',
    'NotificationError',
    'NotificationPriority',
    'NotificationStatus',
    'PriorityQueue',
    'ProcessorNotConfiguredError',
    'QueueFullError',
    'ReceiptEvent',
    'Recipient',
    'Rejected',
    'RejectionReason',
    'Sent',
    'ValidationError',
]
