"""
Data Model for the Notification Dispatch Pipeline
Enums and dataclasses shared by the queue, deduplication, batch and delivery components
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Union


class NotificationPriority(Enum):
    """Notification priority levels"""
    CRITICAL = "critical"
    URGENT = "urgent"
    HIGH = "high"
    NORMAL = "normal"
    LOW = "low"

    @property
    def rank(self) -> int:
        """Position in the dispatch ladder, 0 is served first"""
        return PRIORITY_ORDER.index(self)


# Strict dispatch order, highest first
PRIORITY_ORDER = [
    NotificationPriority.CRITICAL,
    NotificationPriority.URGENT,
    NotificationPriority.HIGH,
    NotificationPriority.NORMAL,
    NotificationPriority.LOW,
]


class NotificationStatus(Enum):
    """Notification lifecycle status"""
    PENDING = "pending"
    QUEUED = "queued"
    PROCESSING = "processing"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ChannelType(Enum):
    """Notification delivery channels"""
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    SLACK = "slack"
    TEAMS = "teams"
    WEBHOOK = "webhook"
    IN_APP = "in_app"


class DeliveryStatus(Enum):
    """Status of a single delivery attempt"""
    PENDING = "pending"
    SENT = "sent"
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ReceiptEvent(Enum):
    """Out-of-band provider signals"""
    DELIVERED = "delivered"
    BOUNCED = "bounced"
    FAILED = "failed"
    READ = "read"
    CLICKED = "clicked"


class JobStatus(Enum):
    """Batch job status"""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RejectionReason(Enum):
    """Why a send request was not accepted"""
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    QUEUE_FULL = "queue_full"


class DeduplicationStrategy(Enum):
    """How a notification fingerprint is derived"""
    FINGERPRINT = "fingerprint"
    KEY = "key"
    CONTENT_HASH = "content-hash"
    TIME_WINDOW = "time-window"


def generate_id(prefix: str = "") -> str:
    """Generate a unique identifier"""
    token = uuid.uuid4().hex
    return f"{prefix}_{token}" if prefix else token


def coerce_priority(value: Union[str, NotificationPriority, None],
                    default: NotificationPriority = NotificationPriority.NORMAL) -> NotificationPriority:
    """Accept enum members or their string values"""
    if value is None:
        return default
    if isinstance(value, NotificationPriority):
        return value
    return NotificationPriority(str(value).lower())


def coerce_channel(value: Union[str, ChannelType]) -> ChannelType:
    """Accept enum members or their string values"""
    if isinstance(value, ChannelType):
        return value
    return ChannelType(str(value).lower())


@dataclass
class Recipient:
    """Opaque recipient with a channel-specific identifier"""
    id: str
    identifier: str
    type: str = "user"
    name: Optional[str] = None
    locale: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'identifier': self.identifier,
            'type': self.type,
            'name': self.name,
            'locale': self.locale,
        }


@dataclass
class Notification:
    """Canonical notification record"""
    id: str
    tenant_id: str
    title: str = ""
    message: str = ""
    user_id: Optional[str] = None
    type: str = "default"
    category: Optional[str] = None
    priority: NotificationPriority = NotificationPriority.NORMAL
    status: NotificationStatus = NotificationStatus.PENDING

    # Content
    html: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    # Delivery
    channels: List[ChannelType] = field(default_factory=list)
    recipients: List[Recipient] = field(default_factory=list)
    scheduled_for: Optional[datetime] = None
    expires_at: Optional[datetime] = None

    # Tracking
    attempts: int = 0
    max_attempts: int = 3
    last_attempt_at: Optional[datetime] = None
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    last_error: Optional[str] = None

    # Deduplication
    deduplication_key: Optional[str] = None
    group_key: Optional[str] = None

    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def touch(self, now: Optional[datetime] = None):
        self.updated_at = now or datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary"""
        return {
            'id': self.id,
            'tenant_id': self.tenant_id,
            'user_id': self.user_id,
            'type': self.type,
            'category': self.category,
            'priority': self.priority.value,
            'status': self.status.value,
            'title': self.title,
            'message': self.message,
            'channels': [c.value for c in self.channels],
            'recipients': [r.to_dict() for r in self.recipients],
            'scheduled_for': self.scheduled_for.isoformat() if self.scheduled_for else None,
            'expires_at': self.expires_at.isoformat() if self.expires_at else None,
            'attempts': self.attempts,
            'max_attempts': self.max_attempts,
            'sent_at': self.sent_at.isoformat() if self.sent_at else None,
            'delivered_at': self.delivered_at.isoformat() if self.delivered_at else None,
            'last_error': self.last_error,
            'deduplication_key': self.deduplication_key,
            'group_key': self.group_key,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
        }


@dataclass(eq=False)
class QueuedNotification:
    """Queue entry wrapping a payload with scheduling metadata, compared by identity"""
    id: str
    payload: Any
    priority: NotificationPriority = NotificationPriority.NORMAL
    scheduled_for: Optional[datetime] = None
    attempts: int = 0
    next_retry_at: Optional[datetime] = None
    enqueued_at: Optional[datetime] = None


@dataclass
class DeliveryResult:
    """What a channel handler reports for one send"""
    success: bool
    external_id: Optional[str] = None
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


@dataclass
class DeliveryAttempt:
    """One (notification, channel, recipient) delivery try"""
    id: str
    notification_id: str
    channel: ChannelType
    recipient_id: str
    recipient_identifier: Optional[str] = None
    attempt_number: int = 1
    status: DeliveryStatus = DeliveryStatus.PENDING
    scheduled_for: datetime = field(default_factory=datetime.now)
    sent_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    external_id: Optional[str] = None
    response: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    previous_attempt_id: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    @property
    def is_terminal(self) -> bool:
        return self.status in (DeliveryStatus.DELIVERED, DeliveryStatus.BOUNCED,
                               DeliveryStatus.FAILED, DeliveryStatus.CANCELLED)

    @property
    def is_settled(self) -> bool:
        """Terminal, or sent and only waiting on an optional receipt"""
        return self.is_terminal or self.status == DeliveryStatus.SENT

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'notification_id': self.notification_id,
            'channel': self.channel.value,
            'recipient_id': self.recipient_id,
            'recipient_identifier': self.recipient_identifier,
            'attempt_number': self.attempt_number,
            'status': self.status.value,
            'external_id': self.external_id,
            'error': self.error,
            'created_at': self.created_at.isoformat(),
        }


@dataclass
class DeliveryReceipt:
    """Provider callback correlated to a delivery attempt"""
    notification_id: str
    delivery_attempt_id: str
    channel: ChannelType
    event: ReceiptEvent
    timestamp: datetime = field(default_factory=datetime.now)
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: generate_id("rcpt"))


@dataclass
class DeduplicationEntry:
    """Cached sighting of a fingerprint"""
    fingerprint: str
    first_seen_at: datetime
    last_seen_at: datetime
    count: int = 1
    notification_ids: List[str] = field(default_factory=list)
    group_key: Optional[str] = None
    group_keys: Set[str] = field(default_factory=set)


@dataclass
class JobProgress:
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0


@dataclass
class JobError:
    item_index: int
    item_id: Optional[str]
    error: str


@dataclass
class BatchJob:
    """Bounded slice of items processed as one unit"""
    id: str
    items: List[Any]
    priority: NotificationPriority = NotificationPriority.NORMAL
    status: JobStatus = JobStatus.PENDING
    progress: JobProgress = field(default_factory=JobProgress)
    errors: List[JobError] = field(default_factory=list)
    batch_key: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Sent:
    """Accepted send request"""
    notification: Notification
    accepted: bool = field(default=True, init=False)


@dataclass(frozen=True)
class Rejected:
    """Send request that was not queued"""
    notification: Notification
    reason: RejectionReason
    detail: Optional[str] = None
    accepted: bool = field(default=False, init=False)


SendResult = Union[Sent, Rejected]
