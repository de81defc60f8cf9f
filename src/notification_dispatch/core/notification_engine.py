"""
Notification Engine Module
Public entry point: validation, deduplication, prioritized queueing and dispatch
"""

import asyncio
import inspect
import logging
from collections.abc import Mapping
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from ..config.settings import (
    EngineConfig,
    HistoryStoreConfig,
    QueueConfig,
    Settings,
    get_settings,
)
from ..events import EventEmitter
from ..exceptions import ChannelNotRegisteredError, EngineStateError, ValidationError
from ..models import (
    DeliveryAttempt,
    DeliveryReceipt,
    DeliveryStatus,
    Notification,
    NotificationStatus,
    QueuedNotification,
    ReceiptEvent,
    Recipient,
    Rejected,
    RejectionReason,
    Sent,
    SendResult,
    coerce_channel,
    coerce_priority,
    generate_id,
)
from ..storage.history_store import HistoryStore, InMemoryHistoryStore, create_history_store, retention_cutoff
from ..utils.logger import LogContext
from .deduplication import DeduplicationEngine
from .delivery_engine import ChannelHandler, DeliveryEngine
from .priority_queue import PriorityQueue
from .statistics import DispatchStatistics

logger = logging.getLogger(__name__)

NotificationRequest = Union[Notification, Mapping]

# Statuses eligible for retention cleanup; sent may never see a receipt
SETTLED_STATUSES = (NotificationStatus.SENT, NotificationStatus.DELIVERED,
                    NotificationStatus.FAILED, NotificationStatus.CANCELLED)


class NotificationEngine(EventEmitter):
    """Accepts notifications and drives them through delivery

    ``send`` is synchronous: it validates, deduplicates and enqueues, then
    returns. Everything after acceptance is reported through lifecycle events
    and ``get_notification``.
    """

    def __init__(self, config: Optional[EngineConfig] = None,
                 delivery_engine: Optional[DeliveryEngine] = None,
                 history_store: Optional[HistoryStore] = None,
                 queue_config: Optional[QueueConfig] = None,
                 history_config: Optional[HistoryStoreConfig] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """Initialize Notification Engine

        Args:
            config: Engine configuration
            delivery_engine: Delivery engine, created with defaults if omitted
            history_store: Terminal notification history
            queue_config: Queue settings; ``max_size`` follows ``config.max_queue_size``
            history_config: Retention settings for the cleanup tick
            clock: Time source shared by queue, deduplication and delivery
        """
        super().__init__()
        self.config = config or EngineConfig()
        self._clock = clock

        queue_config = replace(queue_config or QueueConfig(), max_size=self.config.max_queue_size)
        self.queue = PriorityQueue(queue_config, clock=clock)
        self.deduplication = DeduplicationEngine(self.config.deduplication, clock=clock)
        self.delivery = delivery_engine or DeliveryEngine(clock=clock)
        self.history = history_store or InMemoryHistoryStore()
        self.history_config = history_config or HistoryStoreConfig()

        self._notifications: Dict[str, Notification] = {}
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._ticks: List[asyncio.Task] = []
        self.is_running = False

        self.stats = DispatchStatistics()

        self.delivery.on('receipt:recorded', self._on_receipt)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "NotificationEngine":
        """Build an engine and its collaborators from settings"""
        settings = settings or get_settings()
        history_config = settings.get_history_store_config()
        return cls(
            config=settings.get_engine_config(),
            delivery_engine=DeliveryEngine(settings.get_delivery_config()),
            history_store=create_history_store(history_config),
            queue_config=settings.get_queue_config(),
            history_config=history_config,
        )

    # Channels

    def register_channel(self, handler: ChannelHandler):
        self.delivery.register_handler(handler)
        self.emit('channel:registered', coerce_channel(handler.channel))

    def unregister_channel(self, channel) -> bool:
        removed = self.delivery.unregister_handler(channel)
        if removed:
            self.emit('channel:unregistered', coerce_channel(channel))
        return removed

    # Ingress

    def send(self, request: NotificationRequest) -> SendResult:
        """Validate, deduplicate and enqueue a notification

        Args:
            request: Notification, or a mapping of its fields

        Returns:
            ``Sent`` when queued, ``Rejected`` for duplicates or a full queue

        Raises:
            ValidationError: If the request is malformed
        """
        try:
            notification = self._build_notification(request)
            self._validate(notification)
        except ValidationError as e:
            self.stats.increment('invalid')
            logger.warning(f"Rejected invalid notification: {str(e)}")
            self.emit('notification:invalid', request, e)
            raise

        with LogContext(tenant_id=notification.tenant_id, notification_id=notification.id):
            return self._submit(notification)

    def send_batch(self, requests: Iterable[NotificationRequest]) -> List[SendResult]:
        """Send many notifications, reporting failures per item

        Returns:
            One result per request, in order
        """
        results: List[SendResult] = []
        for index, request in enumerate(requests):
            try:
                results.append(self.send(request))
            except ValidationError as e:
                notification = self._rejected_record(request, str(e))
                logger.debug(f"Batch item {index} invalid: {str(e)}")
                results.append(Rejected(notification, RejectionReason.INVALID, str(e)))

        accepted = sum(1 for r in results if r.accepted)
        logger.info(f"Batch of {len(results)} notifications: {accepted} queued")
        self.emit('batch:queued', results)
        return results

    def cancel(self, notification_id: str) -> bool:
        """Cancel a notification that is still waiting in the queue"""
        item = self.queue.remove(notification_id)
        if item is None:
            return False

        notification: Notification = item.payload
        notification.status = NotificationStatus.CANCELLED
        notification.touch(self._clock())
        self._record_terminal(notification)

        logger.info(f"Notification {notification_id} cancelled")
        self.emit('notification:cancelled', notification)
        return True

    def get_notification(self, notification_id: str) -> Optional[Notification]:
        return self._notifications.get(notification_id)

    def _submit(self, notification: Notification) -> SendResult:
        dedup = self.config.enable_deduplication
        if dedup and self.deduplication.is_duplicate(notification):
            self.deduplication.record(notification)
            self.stats.increment('deduplicated')
            logger.info(f"Notification {notification.id} suppressed as duplicate")
            self.emit('notification:deduplicated', notification)
            return Rejected(notification, RejectionReason.DUPLICATE)

        item = QueuedNotification(
            id=notification.id,
            payload=notification,
            priority=notification.priority,
            scheduled_for=notification.scheduled_for,
        )
        if not self.queue.enqueue(item):
            self.stats.increment('queue_full')
            self.emit('notification:rejected', notification, RejectionReason.QUEUE_FULL)
            return Rejected(notification, RejectionReason.QUEUE_FULL,
                            f"Queue is at capacity ({self.queue.config.max_size})")

        if dedup:
            self.deduplication.record(notification)

        notification.status = NotificationStatus.QUEUED
        notification.touch(self._clock())
        self._notifications[notification.id] = notification

        self.stats.increment('queued')
        logger.debug(f"Notification {notification.id} queued with priority {notification.priority.value}")
        self.emit('notification:queued', notification)
        return Sent(notification)

    def _build_notification(self, request: NotificationRequest) -> Notification:
        if isinstance(request, Notification):
            return request

        if not isinstance(request, Mapping):
            raise ValidationError(f"Unsupported notification request: {type(request).__name__}")

        try:
            recipients = [
                r if isinstance(r, Recipient) else Recipient(**r)
                for r in request.get('recipients') or []
            ]
            channels = [coerce_channel(c) for c in request.get('channels') or []]
            priority = coerce_priority(request.get('priority'), self.config.default_priority)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Malformed notification request: {str(e)}") from e

        now = self._clock()
        return Notification(
            id=request.get('id') or generate_id("ntf"),
            tenant_id=request.get('tenant_id') or '',
            title=request.get('title') or '',
            message=request.get('message') or '',
            user_id=request.get('user_id'),
            type=request.get('type') or 'default',
            category=request.get('category'),
            priority=priority,
            html=request.get('html'),
            data=dict(request.get('data') or {}),
            metadata=dict(request.get('metadata') or {}),
            channels=channels,
            recipients=recipients,
            scheduled_for=request.get('scheduled_for'),
            expires_at=request.get('expires_at'),
            max_attempts=request.get('max_attempts') or self.config.retry_attempts,
            deduplication_key=request.get('deduplication_key'),
            group_key=request.get('group_key'),
            created_at=now,
            updated_at=now,
        )

    def _validate(self, notification: Notification):
        if not notification.tenant_id:
            raise ValidationError("tenantId is required")

        if not notification.title and not notification.message:
            raise ValidationError("Either title or message is required")

        if not notification.recipients:
            raise ValidationError("At least one recipient is required")

        if not notification.channels:
            raise ValidationError("At least one channel is required")

        for channel in notification.channels:
            if not self.delivery.has_handler(channel):
                raise ChannelNotRegisteredError(channel)

        if notification.id in self._notifications or notification.id in self.queue:
            raise ValidationError(f"Notification {notification.id} was already submitted")

    def _rejected_record(self, request: Any, error: str) -> Notification:
        if isinstance(request, Notification):
            notification = request
        else:
            fields = request if isinstance(request, Mapping) else {}
            notification = Notification(
                id=fields.get('id') or generate_id("ntf"),
                tenant_id=fields.get('tenant_id') or '',
                title=fields.get('title') or '',
                message=fields.get('message') or '',
            )
        notification.status = NotificationStatus.FAILED
        notification.last_error = error
        return notification

    # Dispatch

    def process_queue(self) -> int:
        """Run one drain tick

        Dequeues in priority order until the queue is empty or
        ``max_concurrent`` notifications are in flight.

        Returns:
            Number of notifications started
        """
        started = 0
        deferred = []

        while len(self._in_flight) < self.config.max_concurrent:
            item = self.queue.dequeue()
            if item is None:
                break

            notification: Notification = item.payload
            if notification.scheduled_for and notification.scheduled_for > self._clock():
                deferred.append(item)
                continue

            self._start_processing(item)
            started += 1

        for item in deferred:
            self.queue.enqueue(item)

        return started

    async def drain(self):
        """Process until nothing is in flight and nothing is due"""
        while True:
            self.process_queue()
            if not self._in_flight:
                if self.queue.live_size() == 0:
                    return
                await asyncio.sleep(0)
                continue
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

    def _start_processing(self, item: QueuedNotification):
        notification: Notification = item.payload
        notification.status = NotificationStatus.PROCESSING
        notification.touch(self._clock())

        task = asyncio.create_task(self._process(item))
        self._in_flight[notification.id] = task

        def _done(t: asyncio.Task, notification_id: str = notification.id):
            self._in_flight.pop(notification_id, None)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Processing of {notification_id} crashed: {t.exception()}")
                self._mark_failed(self._notifications[notification_id], str(t.exception()))
                self.emit('error', t.exception())

        task.add_done_callback(_done)

    async def _process(self, item: QueuedNotification):
        notification: Notification = item.payload

        with LogContext(tenant_id=notification.tenant_id, notification_id=notification.id):
            now = self._clock()
            if notification.expires_at and notification.expires_at <= now:
                notification.last_error = "Notification expired"
                logger.warning(f"Notification {notification.id} expired before delivery")
                self.emit('notification:expired', notification)
                self._mark_failed(notification, "Notification expired")
                return

            notification.attempts += 1
            notification.last_attempt_at = now
            self.emit('notification:processing', notification)

            channels = await self._healthy_channels(notification)
            attempts: List[DeliveryAttempt] = []
            if channels:
                attempts = await self.delivery.deliver(notification, channels=channels)

            # Receipts may already have moved a sent attempt on to delivered or bounced
            if any(a.sent_at is not None for a in attempts):
                self._mark_sent(notification, attempts)
                return

            # Per-attempt retries are superseded by the notification retry
            self.delivery.cancel_retries(notification.id)

            errors = [f"{a.channel.value}: {a.error}" for a in attempts if a.error]
            self._handle_failure(item, notification, "; ".join(errors) or "No healthy channel available")

    async def _healthy_channels(self, notification: Notification) -> List:
        healthy = []
        for channel in notification.channels:
            handler = self.delivery.get_handler(channel)
            if handler is None:
                logger.warning(f"Channel {channel.value} was unregistered, skipping")
                continue

            supports = getattr(handler, 'supports', None)
            if supports is not None and not supports(notification):
                logger.info(f"Channel {channel.value} does not support {notification.id}")
                continue

            if not self.delivery.is_channel_available(channel):
                logger.warning(f"Channel {channel.value} circuit is open, skipping")
                self.stats.increment('channels_skipped')
                continue

            if not await self._probe(handler):
                logger.warning(f"Channel {channel.value} is unhealthy, skipping")
                self.stats.increment('channels_skipped')
                continue

            healthy.append(channel)
        return healthy

    @staticmethod
    async def _probe(handler) -> bool:
        is_healthy = getattr(handler, 'is_healthy', None)
        if is_healthy is None:
            return True
        try:
            healthy = is_healthy()
            if inspect.isawaitable(healthy):
                healthy = await healthy
            return bool(healthy)
        except Exception as e:
            logger.warning(f"Health probe failed: {str(e)}")
            return False

    def _handle_failure(self, item: QueuedNotification, notification: Notification, error: str):
        notification.last_error = error

        if notification.attempts >= notification.max_attempts:
            logger.error(f"Notification {notification.id} failed after {notification.attempts} attempts: {error}")
            self._mark_failed(notification, error)
            return

        delay = self.config.retry_delay * (self.config.retry_backoff ** (notification.attempts - 1))
        item.attempts = notification.attempts
        item.next_retry_at = self._clock() + timedelta(seconds=delay)

        notification.status = NotificationStatus.PENDING
        notification.touch(self._clock())

        if not self.queue.enqueue(item):
            self._mark_failed(notification, f"Could not reschedule: {error}")
            return

        self.stats.increment('retries')
        logger.warning(f"Notification {notification.id} attempt {notification.attempts} failed, "
                       f"retrying in {delay:.2f}s: {error}")
        self.emit('notification:retry', notification, delay)

    def _mark_sent(self, notification: Notification, attempts: List[DeliveryAttempt]):
        now = self._clock()
        notification.status = NotificationStatus.SENT
        notification.sent_at = now
        notification.last_error = None
        notification.touch(now)

        if self.config.enable_deduplication:
            self.deduplication.record(notification)

        self.stats.increment('sent')
        self.stats.record_timing('time_to_send', (now - notification.created_at).total_seconds())
        self.history.record(notification)

        sent = sum(1 for a in attempts if a.sent_at is not None)
        logger.info(f"Notification {notification.id} sent ({sent}/{len(attempts)} attempts succeeded)")
        self.emit('notification:sent', notification, attempts)

        delivered = next((a for a in attempts if a.status == DeliveryStatus.DELIVERED), None)
        if delivered is not None:
            receipt = next((r for r in reversed(self.delivery.get_receipts(delivered.id))
                            if r.event == ReceiptEvent.DELIVERED), None)
            self._mark_delivered(notification, delivered.channel, delivered.delivered_at, receipt)

    def _mark_failed(self, notification: Notification, error: str):
        notification.status = NotificationStatus.FAILED
        notification.last_error = error
        notification.touch(self._clock())

        self.stats.increment('failed')
        self._record_terminal(notification)
        self.emit('notification:failed', notification, error)

    def _record_terminal(self, notification: Notification):
        self._notifications[notification.id] = notification
        self.history.record(notification)

    def _on_receipt(self, receipt: DeliveryReceipt, attempt: Optional[DeliveryAttempt]):
        if attempt is None or attempt.status != DeliveryStatus.DELIVERED:
            return

        notification = self._notifications.get(receipt.notification_id)
        # While still processing, _mark_sent picks the delivered attempt up
        if notification is None or notification.status != NotificationStatus.SENT:
            return

        self._mark_delivered(notification, receipt.channel, receipt.timestamp, receipt)

    def _mark_delivered(self, notification: Notification, channel, delivered_at: Optional[datetime],
                        receipt: Optional[DeliveryReceipt] = None):
        notification.status = NotificationStatus.DELIVERED
        notification.delivered_at = delivered_at or self._clock()
        notification.touch(self._clock())
        self.history.record(notification)

        self.stats.increment('delivered')
        logger.info(f"Notification {notification.id} delivered via {channel.value}")
        self.emit('notification:delivered', notification, receipt)

    # Lifecycle

    async def start(self):
        """Start the drain and cleanup ticks"""
        if self.is_running:
            raise EngineStateError("NotificationEngine is already running")

        self.is_running = True
        await self.delivery.start()
        self._ticks = [
            asyncio.create_task(self._drain_loop()),
            asyncio.create_task(self._cleanup_loop()),
        ]

        logger.info(f"Notification engine started: max_concurrent={self.config.max_concurrent}, "
                    f"channels={[c.value for c in self.delivery.channels]}")
        self.emit('engine:started')

    async def stop(self):
        """Stop ticking and wait for in-flight notifications"""
        if not self.is_running:
            return

        self.is_running = False
        for task in self._ticks:
            task.cancel()
        await asyncio.gather(*self._ticks, return_exceptions=True)
        self._ticks = []

        while self._in_flight:
            await asyncio.gather(*list(self._in_flight.values()), return_exceptions=True)

        await self.delivery.stop()

        logger.info("Notification engine stopped")
        self.emit('engine:stopped')

    async def _drain_loop(self):
        while self.is_running:
            try:
                self.process_queue()
            except Exception as e:
                logger.error(f"Drain tick failed: {str(e)}", exc_info=True)
                self.emit('error', e)
            await asyncio.sleep(self.config.process_interval)

    async def _cleanup_loop(self):
        while self.is_running:
            await asyncio.sleep(self.config.deduplication.cleanup_interval)
            try:
                self.cleanup()
            except Exception as e:
                logger.error(f"Cleanup tick failed: {str(e)}", exc_info=True)
                self.emit('error', e)

    def cleanup(self) -> Dict[str, int]:
        """Sweep expired dedup entries and settled records past retention"""
        cutoff = retention_cutoff(self.history_config, self._clock())

        forgotten = 0
        for notification_id, notification in list(self._notifications.items()):
            if notification.status in SETTLED_STATUSES and notification.updated_at < cutoff:
                del self._notifications[notification_id]
                forgotten += 1

        return {
            'deduplication': self.deduplication.clear_expired(),
            'attempts': self.delivery.trim_history(cutoff),
            'history': self.history.purge(cutoff),
            'notifications': forgotten,
        }

    # Introspection

    def get_stats(self) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in NotificationStatus}
        for notification in self._notifications.values():
            by_status[notification.status.value] += 1

        return {
            'is_running': self.is_running,
            'queue': {
                'size': self.queue.size(),
                'scheduled': self.queue.scheduled_size(),
                'by_priority': self.queue.depth_by_priority(),
            },
            'in_flight': len(self._in_flight),
            'notifications': by_status,
            'deduplication': self.deduplication.get_stats(),
            'delivery': self.delivery.get_stats(),
            'history': self.history.count(),
            'counters': self.stats.get_stats(),
        }
