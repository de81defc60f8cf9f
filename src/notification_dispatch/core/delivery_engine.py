"""
Delivery Engine Module
Fans a notification out to channel handlers with timeouts, retries and receipt tracking
"""

import asyncio
import inspect
import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

import pandas as pd

from ..config.settings import DeliveryConfig
from ..events import EventEmitter
from ..exceptions import DeliveryError, DeliveryTimeoutError
from ..models import (
    ChannelType,
    DeliveryAttempt,
    DeliveryReceipt,
    DeliveryResult,
    DeliveryStatus,
    Notification,
    ReceiptEvent,
    Recipient,
    coerce_channel,
    generate_id,
)
from .rate_limiting import CircuitBreaker
from .statistics import DispatchStatistics

logger = logging.getLogger(__name__)


class ChannelHandler(ABC):
    """Base channel handler

    Subclasses set ``channel`` and implement ``send``. Handlers may also
    define ``cancel(external_id)`` and ``get_status(external_id)``; the engine
    uses them only when present.
    """

    channel: ChannelType

    @abstractmethod
    async def send(self, notification: Notification, recipient: Recipient) -> DeliveryResult:
        """Send notification to one recipient

        Args:
            notification: Notification to send
            recipient: Target recipient

        Returns:
            Delivery result
        """

    def supports(self, notification: Notification) -> bool:
        return True

    async def is_healthy(self) -> bool:
        return True


class DeliveryEngine(EventEmitter):
    """Per-attempt delivery with independent retry timelines

    Every (channel, recipient) cell of a notification becomes its own
    DeliveryAttempt. A retry is a new attempt record linked to the failed one
    through ``previous_attempt_id``.

    A send that loses the race against ``timeout`` is abandoned, not
    cancelled: the provider may still complete it after the attempt has been
    marked failed.
    """

    def __init__(self, config: Optional[DeliveryConfig] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """Initialize Delivery Engine

        Args:
            config: Delivery configuration
            clock: Time source for attempt timestamps
        """
        super().__init__()
        self.config = config or DeliveryConfig()
        self._clock = clock

        self._handlers: Dict[ChannelType, ChannelHandler] = {}
        self._breakers: Dict[ChannelType, CircuitBreaker] = {}

        self._attempts: Dict[str, DeliveryAttempt] = {}
        self._by_notification: Dict[str, List[str]] = {}
        self._receipts: List[DeliveryReceipt] = []

        self._in_flight: Set[str] = set()
        self._retry_handles: Dict[str, asyncio.TimerHandle] = {}
        self._retry_tasks: Set[asyncio.Task] = set()
        self._poll_task: Optional[asyncio.Task] = None

        self.stats = DispatchStatistics()

    # Handler registry

    def register_handler(self, handler: ChannelHandler):
        """Register handler for its channel, replacing any previous one"""
        channel = coerce_channel(handler.channel)
        self._handlers[channel] = handler
        self._breakers[channel] = CircuitBreaker(
            failure_threshold=self.config.circuit_failure_threshold,
            recovery_timeout=self.config.circuit_recovery_timeout,
        )
        logger.info(f"Registered handler for channel {channel.value}")
        self.emit('channel:registered', channel)

    def unregister_handler(self, channel) -> bool:
        channel = coerce_channel(channel)
        if self._handlers.pop(channel, None) is None:
            return False
        self._breakers.pop(channel, None)
        logger.info(f"Unregistered handler for channel {channel.value}")
        self.emit('channel:unregistered', channel)
        return True

    def has_handler(self, channel) -> bool:
        return coerce_channel(channel) in self._handlers

    def get_handler(self, channel) -> Optional[ChannelHandler]:
        return self._handlers.get(coerce_channel(channel))

    @property
    def channels(self) -> List[ChannelType]:
        return list(self._handlers.keys())

    def is_channel_available(self, channel) -> bool:
        """False while the channel circuit breaker is open"""
        breaker = self._breakers.get(coerce_channel(channel))
        return breaker is None or breaker.can_proceed()

    # Lifecycle

    async def start(self):
        """Start the optional receipt polling tick"""
        if self.config.status_poll_interval and self._poll_task is None:
            self._poll_task = asyncio.create_task(self._poll_loop())
            logger.info(f"Receipt polling every {self.config.status_poll_interval}s")

    async def stop(self):
        """Stop polling, drop scheduled retries, wait for running retries"""
        if self._poll_task is not None:
            self._poll_task.cancel()
            await asyncio.gather(self._poll_task, return_exceptions=True)
            self._poll_task = None

        for attempt_id in list(self._retry_handles):
            self._cancel_scheduled(attempt_id, reason="Delivery engine stopped")

        if self._retry_tasks:
            await asyncio.gather(*list(self._retry_tasks), return_exceptions=True)

    # Delivery

    async def deliver(self, notification: Notification,
                      channels: Optional[Iterable] = None) -> List[DeliveryAttempt]:
        """Deliver notification to every recipient on every channel

        Args:
            notification: Notification to deliver
            channels: Subset of channels, defaults to all requested channels

        Returns:
            First-round attempts, settled as sent or failed. Failed cells with
            retry budget left have a follow-up attempt scheduled.
        """
        channels = [coerce_channel(c) for c in (channels if channels is not None else notification.channels)]

        cells = []
        for channel in channels:
            for recipient in notification.recipients:
                cells.append((self._create_attempt(notification.id, channel, recipient), recipient))

        if cells:
            await asyncio.gather(*[
                self._execute(attempt, notification, recipient)
                for attempt, recipient in cells
            ])

        return [attempt for attempt, _ in cells]

    async def _execute(self, attempt: DeliveryAttempt, notification: Notification,
                       recipient: Recipient):
        if attempt.status != DeliveryStatus.PENDING:
            return

        handler = self._handlers.get(attempt.channel)
        if handler is None:
            self._mark_failed(attempt, f"No handler registered for {attempt.channel.value}")
            self.emit('delivery:failed:final', attempt)
            return

        self._in_flight.add(attempt.id)
        self.emit('delivery:started', attempt)
        started = time.monotonic()

        result: Optional[DeliveryResult] = None
        error: Optional[str] = None
        try:
            result = await self._send_with_timeout(handler, notification, recipient)
        except DeliveryTimeoutError as e:
            error = str(e)
        except Exception as e:
            error = str(e) or e.__class__.__name__
        finally:
            self._in_flight.discard(attempt.id)
            self.stats.record_timing('send_latency', time.monotonic() - started)

        breaker = self._breakers.get(attempt.channel)
        if result is not None and result.success:
            if breaker:
                breaker.record_success()
            self._mark_sent(attempt, result)
            return

        if breaker:
            breaker.record_failure()

        if error is None:
            error = (result.error if result else None) or "Delivery failed"
            if result is not None:
                attempt.response = result.response
        self._handle_failure(attempt, notification, recipient, error)

    async def _send_with_timeout(self, handler: ChannelHandler, notification: Notification,
                                 recipient: Recipient) -> DeliveryResult:
        outcome = handler.send(notification, recipient)
        if not inspect.isawaitable(outcome):
            return self._normalize_result(outcome)

        task = asyncio.ensure_future(outcome)
        try:
            # shield keeps the send running if the timeout wins
            value = await asyncio.wait_for(asyncio.shield(task), timeout=self.config.timeout)
        except asyncio.TimeoutError:
            task.add_done_callback(self._log_abandoned)
            raise DeliveryTimeoutError(f"Timed out after {self.config.timeout}s") from None
        return self._normalize_result(value)

    @staticmethod
    def _normalize_result(value: Any) -> DeliveryResult:
        if isinstance(value, DeliveryResult):
            return value
        if isinstance(value, bool):
            return DeliveryResult(success=value)
        raise DeliveryError(f"Handler returned {type(value).__name__}, expected DeliveryResult")

    @staticmethod
    def _log_abandoned(task: asyncio.Task):
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.debug(f"Abandoned send failed late: {task.exception()}")
        else:
            logger.info("Abandoned send completed after its attempt timed out")

    def _mark_sent(self, attempt: DeliveryAttempt, result: DeliveryResult):
        now = self._clock()
        attempt.status = DeliveryStatus.SENT
        attempt.sent_at = now
        attempt.updated_at = now
        attempt.external_id = result.external_id
        attempt.response = result.response
        attempt.error = None

        self.stats.increment('attempts_sent')
        self.stats.increment(f'sent_{attempt.channel.value}')
        logger.debug(f"Attempt {attempt.id} sent via {attempt.channel.value}")
        self.emit('delivery:sent', attempt)

    def _mark_failed(self, attempt: DeliveryAttempt, error: str):
        now = self._clock()
        attempt.status = DeliveryStatus.FAILED
        attempt.failed_at = now
        attempt.updated_at = now
        attempt.error = error

        self.stats.increment('attempts_failed')
        self.stats.increment(f'failed_{attempt.channel.value}')
        logger.warning(f"Attempt {attempt.id} via {attempt.channel.value} failed: {error}")
        self.emit('delivery:failed', attempt, error)

    def _handle_failure(self, attempt: DeliveryAttempt, notification: Notification,
                        recipient: Recipient, error: str):
        self._mark_failed(attempt, error)

        if attempt.attempt_number >= self.config.max_retries:
            logger.error(f"Attempt {attempt.id} exhausted {self.config.max_retries} tries")
            self.emit('delivery:failed:final', attempt)
            return

        delay = self.config.retry_delay * (self.config.retry_backoff ** attempt.attempt_number)
        retry = self._create_attempt(
            notification.id,
            attempt.channel,
            recipient,
            attempt_number=attempt.attempt_number + 1,
            previous_attempt_id=attempt.id,
            scheduled_for=self._clock() + timedelta(seconds=delay),
        )

        loop = asyncio.get_running_loop()
        self._retry_handles[retry.id] = loop.call_later(
            delay, self._launch_retry, retry.id, notification, recipient
        )
        self.stats.increment('retries_scheduled')
        logger.info(f"Retry {retry.attempt_number} for {attempt.channel.value}/{recipient.id} in {delay:.2f}s")
        self.emit('delivery:retry', retry, delay)

    def _launch_retry(self, attempt_id: str, notification: Notification, recipient: Recipient):
        self._retry_handles.pop(attempt_id, None)
        attempt = self._attempts.get(attempt_id)
        if attempt is None or attempt.status != DeliveryStatus.PENDING:
            return

        task = asyncio.ensure_future(self._execute(attempt, notification, recipient))
        self._retry_tasks.add(task)

        def _done(t: asyncio.Task):
            self._retry_tasks.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Retry {attempt_id} crashed: {t.exception()}")
                self.emit('error', t.exception())

        task.add_done_callback(_done)

    # Cancellation

    async def cancel_delivery(self, attempt_id: str) -> bool:
        """Cancel a pending attempt through its handler's cancel capability

        In-flight sends cannot be aborted; only attempts that have not been
        handed to the handler yet can be cancelled.
        """
        attempt = self._attempts.get(attempt_id)
        if attempt is None or attempt.status != DeliveryStatus.PENDING:
            return False
        if attempt_id in self._in_flight:
            return False

        handler = self._handlers.get(attempt.channel)
        cancel = getattr(handler, 'cancel', None)
        if cancel is None:
            return False

        outcome = cancel(attempt.external_id or attempt.id)
        if inspect.isawaitable(outcome):
            outcome = await outcome
        if outcome is False:
            return False

        self._cancel_scheduled(attempt_id, reason="Cancelled by caller")
        return True

    def cancel_retries(self, notification_id: str) -> int:
        """Drop every scheduled retry of a notification

        Returns:
            Number of attempts cancelled
        """
        cancelled = 0
        for attempt_id in self._by_notification.get(notification_id, []):
            if attempt_id in self._retry_handles:
                self._cancel_scheduled(attempt_id, reason="Superseded by notification retry")
                cancelled += 1
        return cancelled

    def _cancel_scheduled(self, attempt_id: str, reason: str):
        handle = self._retry_handles.pop(attempt_id, None)
        if handle is not None:
            handle.cancel()

        attempt = self._attempts[attempt_id]
        attempt.status = DeliveryStatus.CANCELLED
        attempt.error = reason
        attempt.updated_at = self._clock()
        self.stats.increment('attempts_cancelled')
        logger.info(f"Attempt {attempt_id} cancelled: {reason}")
        self.emit('delivery:cancelled', attempt)

    # Receipts

    def record_receipt(self, receipt: DeliveryReceipt) -> bool:
        """Apply a provider receipt to its attempt

        This is the only path from ``sent`` to ``delivered`` or ``bounced``.

        Returns:
            True if the receipt changed the attempt status
        """
        self._receipts.append(receipt)
        self.stats.increment(f'receipts_{receipt.event.value}')

        attempt = self._attempts.get(receipt.delivery_attempt_id)
        if attempt is None:
            logger.warning(f"Receipt {receipt.id} references unknown attempt {receipt.delivery_attempt_id}")
            self.emit('receipt:recorded', receipt, None)
            return False

        transitioned = False
        if receipt.event == ReceiptEvent.DELIVERED and attempt.status == DeliveryStatus.SENT:
            attempt.status = DeliveryStatus.DELIVERED
            attempt.delivered_at = receipt.timestamp
            transitioned = True
        elif receipt.event == ReceiptEvent.BOUNCED and attempt.status in (DeliveryStatus.SENT,
                                                                         DeliveryStatus.DELIVERED):
            attempt.status = DeliveryStatus.BOUNCED
            attempt.failed_at = receipt.timestamp
            attempt.error = str(receipt.details.get('reason', 'bounced'))
            transitioned = True
        elif receipt.event == ReceiptEvent.FAILED and attempt.status == DeliveryStatus.SENT:
            attempt.status = DeliveryStatus.FAILED
            attempt.failed_at = receipt.timestamp
            attempt.error = str(receipt.details.get('reason', 'failed after send'))
            transitioned = True

        if transitioned:
            attempt.updated_at = self._clock()
            logger.info(f"Attempt {attempt.id} is now {attempt.status.value} by receipt")

        self.emit('receipt:recorded', receipt, attempt)
        return transitioned

    async def poll_statuses(self) -> int:
        """Ask handlers with ``get_status`` about attempts still marked sent

        Returns:
            Number of attempts whose status changed
        """
        changed = 0
        for attempt in [a for a in self._attempts.values() if a.status == DeliveryStatus.SENT]:
            handler = self._handlers.get(attempt.channel)
            get_status = getattr(handler, 'get_status', None)
            if get_status is None or attempt.external_id is None:
                continue

            try:
                event = get_status(attempt.external_id)
                if inspect.isawaitable(event):
                    event = await event
            except Exception as e:
                logger.warning(f"Status poll for attempt {attempt.id} failed: {str(e)}")
                continue

            if event is None:
                continue

            receipt = DeliveryReceipt(
                notification_id=attempt.notification_id,
                delivery_attempt_id=attempt.id,
                channel=attempt.channel,
                event=ReceiptEvent(getattr(event, 'value', event)),
                timestamp=self._clock(),
                details={'source': 'poll'},
            )
            if self.record_receipt(receipt):
                changed += 1

        return changed

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.config.status_poll_interval)
            try:
                await self.poll_statuses()
            except Exception as e:
                logger.error(f"Status poll tick failed: {str(e)}", exc_info=True)
                self.emit('error', e)

    # Introspection

    def get_delivery_status(self, attempt_id: str) -> Optional[DeliveryAttempt]:
        return self._attempts.get(attempt_id)

    def get_attempts(self, notification_id: str) -> List[DeliveryAttempt]:
        return [self._attempts[a] for a in self._by_notification.get(notification_id, [])
                if a in self._attempts]

    def find_by_external_id(self, external_id: str) -> Optional[DeliveryAttempt]:
        for attempt in self._attempts.values():
            if attempt.external_id == external_id:
                return attempt
        return None

    def get_receipts(self, attempt_id: Optional[str] = None) -> List[DeliveryReceipt]:
        if attempt_id is None:
            return list(self._receipts)
        return [r for r in self._receipts if r.delivery_attempt_id == attempt_id]

    def trim_history(self, older_than: datetime) -> int:
        """Delete settled attempts and receipts last updated before a cutoff

        Sent attempts count as settled here: a receipt arriving after the
        cutoff no longer finds its attempt.
        """
        removed = 0
        for attempt_id, attempt in list(self._attempts.items()):
            if not attempt.is_settled:
                continue
            if attempt.updated_at < older_than:
                self._forget(attempt_id)
                removed += 1

        self._receipts = [r for r in self._receipts if r.timestamp >= older_than]

        if removed:
            logger.info(f"Trimmed {removed} delivery attempts")
        return removed

    def get_stats(self) -> Dict[str, Any]:
        by_status = {status.value: 0 for status in DeliveryStatus}
        for attempt in self._attempts.values():
            by_status[attempt.status.value] += 1

        return {
            'attempts': len(self._attempts),
            'by_status': by_status,
            'in_flight': len(self._in_flight),
            'scheduled_retries': len(self._retry_handles),
            'receipts': len(self._receipts),
            'circuit_breakers': {
                channel.value: breaker.get_status()
                for channel, breaker in self._breakers.items()
            },
            'counters': self.stats.get_stats(),
        }

    def get_delivery_report(self) -> pd.DataFrame:
        """Attempt counts per channel (rows) and status (columns)"""
        columns = [status.value for status in DeliveryStatus]
        if not self._attempts:
            return pd.DataFrame(columns=columns, dtype=int)

        frame = pd.DataFrame([a.to_dict() for a in self._attempts.values()])
        report = frame.groupby(['channel', 'status']).size().unstack(fill_value=0)
        return report.reindex(columns=columns, fill_value=0)

    # Internals

    def _create_attempt(self, notification_id: str, channel: ChannelType, recipient: Recipient,
                        attempt_number: int = 1, previous_attempt_id: Optional[str] = None,
                        scheduled_for: Optional[datetime] = None) -> DeliveryAttempt:
        now = self._clock()
        attempt = DeliveryAttempt(
            id=generate_id("att"),
            notification_id=notification_id,
            channel=channel,
            recipient_id=recipient.id,
            recipient_identifier=recipient.identifier,
            attempt_number=attempt_number,
            scheduled_for=scheduled_for or now,
            previous_attempt_id=previous_attempt_id,
            created_at=now,
            updated_at=now,
        )
        self._attempts[attempt.id] = attempt
        self._by_notification.setdefault(notification_id, []).append(attempt.id)

        if len(self._attempts) > self.config.max_history:
            self._evict_settled()
        return attempt

    def _evict_settled(self):
        # Terminal attempts go first, then sent attempts still awaiting receipts
        for settled in (lambda a: a.is_terminal, lambda a: a.is_settled):
            for attempt_id, attempt in list(self._attempts.items()):
                if len(self._attempts) <= self.config.max_history:
                    return
                if settled(attempt):
                    self._forget(attempt_id)

    def _forget(self, attempt_id: str):
        attempt = self._attempts.pop(attempt_id)
        ids = self._by_notification.get(attempt.notification_id)
        if ids is not None:
            ids.remove(attempt_id)
            if not ids:
                del self._by_notification[attempt.notification_id]
