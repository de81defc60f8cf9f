"""
Core Dispatch Components
Queueing, deduplication, batching and delivery
"""

from .batch_processor import BatchProcessor
from .deduplication import DeduplicationEngine
from .delivery_engine import ChannelHandler, DeliveryEngine
from .notification_engine import NotificationEngine
from .priority_queue import PriorityQueue
from .rate_limiting import CircuitBreaker, TokenBucket
from .statistics import DispatchStatistics

__all__ = [
    'BatchProcessor',
    'ChannelHandler',
    'CircuitBreaker',
    'DeduplicationEngine',
    'DeliveryEngine',
    'DispatchStatistics',
    'NotificationEngine',
    'PriorityQueue',
    'TokenBucket',
]
