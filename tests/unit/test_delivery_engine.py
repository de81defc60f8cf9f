"""
Unit Tests for Delivery Engine
Tests for fan-out, timeouts, per-attempt retries, cancellation and receipts
"""

import asyncio
import unittest
from datetime import timedelta

import pandas as pd

from helpers import CancellableHandler, FakeClock, RecordingHandler, make_notification, make_recipient, wait_for

from notification_dispatch.config.settings import DeliveryConfig
from notification_dispatch.core.delivery_engine import DeliveryEngine
from notification_dispatch.models import (
    ChannelType,
    DeliveryReceipt,
    DeliveryStatus,
    ReceiptEvent,
    Recipient,
)


def fast_config(**overrides):
    fields = {'timeout': 1.0, 'max_retries': 3, 'retry_delay': 0.01, 'retry_backoff': 1.0}
    fields.update(overrides)
    return DeliveryConfig(**fields)


class TestFanOut(unittest.IsolatedAsyncioTestCase):
    """Test cases for channel x recipient fan-out"""

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.engine = DeliveryEngine(fast_config(max_retries=1), clock=self.clock)
        self.email = RecordingHandler(ChannelType.EMAIL)
        self.sms = RecordingHandler(ChannelType.SMS, fail=True)
        self.engine.register_handler(self.email)
        self.engine.register_handler(self.sms)

    async def test_one_attempt_per_cell(self):
        notification = make_notification(
            channels=[ChannelType.EMAIL, ChannelType.SMS],
            recipients=[make_recipient(1), make_recipient(2)],
        )

        attempts = await self.engine.deliver(notification)

        self.assertEqual(len(attempts), 4)
        self.assertEqual(len(self.email.calls), 2)
        self.assertEqual(len(self.sms.calls), 2)
        cells = {(a.channel, a.recipient_id) for a in attempts}
        self.assertEqual(len(cells), 4)

    async def test_cells_fail_independently(self):
        notification = make_notification(channels=[ChannelType.EMAIL, ChannelType.SMS])

        attempts = await self.engine.deliver(notification)

        by_channel = {a.channel: a for a in attempts}
        self.assertEqual(by_channel[ChannelType.EMAIL].status, DeliveryStatus.SENT)
        self.assertEqual(by_channel[ChannelType.EMAIL].external_id, 'email-1')
        self.assertEqual(by_channel[ChannelType.SMS].status, DeliveryStatus.FAILED)
        self.assertIn('provider unavailable', by_channel[ChannelType.SMS].error)

    async def test_channel_subset(self):
        notification = make_notification(channels=[ChannelType.EMAIL, ChannelType.SMS])

        attempts = await self.engine.deliver(notification, channels=[ChannelType.EMAIL])

        self.assertEqual([a.channel for a in attempts], [ChannelType.EMAIL])
        self.assertEqual(self.sms.calls, [])

    async def test_missing_handler_is_final(self):
        final = []
        self.engine.on('delivery:failed:final', final.append)

        attempts = await self.engine.deliver(make_notification(channels=[ChannelType.PUSH]))

        self.assertEqual(attempts[0].status, DeliveryStatus.FAILED)
        self.assertEqual(final, attempts)

    async def test_recipients_sharing_an_id_keep_their_identifiers(self):
        notification = make_notification(recipients=[
            Recipient(id='user-1', identifier='work@example.com'),
            Recipient(id='user-1', identifier='home@example.com'),
        ])

        attempts = await self.engine.deliver(notification)

        self.assertEqual(self.email.identifiers, ['work@example.com', 'home@example.com'])
        self.assertEqual([a.recipient_identifier for a in attempts],
                         ['work@example.com', 'home@example.com'])

    async def test_boolean_results_are_accepted(self):
        class LegacyHandler(RecordingHandler):
            async def send(self, notification, recipient):
                return True

        self.engine.register_handler(LegacyHandler(ChannelType.WEBHOOK))

        attempts = await self.engine.deliver(make_notification(channels=[ChannelType.WEBHOOK]))

        self.assertEqual(attempts[0].status, DeliveryStatus.SENT)

    async def test_registry(self):
        self.assertTrue(self.engine.has_handler('email'))
        self.assertIs(self.engine.get_handler(ChannelType.SMS), self.sms)

        self.assertTrue(self.engine.unregister_handler('sms'))
        self.assertFalse(self.engine.unregister_handler('sms'))
        self.assertEqual(self.engine.channels, [ChannelType.EMAIL])


class TestTimeoutsAndRetries(unittest.IsolatedAsyncioTestCase):
    """Test cases for attempt timeouts and retry timelines"""

    async def test_timed_out_send_is_abandoned_not_cancelled(self):
        engine = DeliveryEngine(fast_config(timeout=0.05, max_retries=1))
        slow = RecordingHandler(ChannelType.EMAIL, delay=0.2)
        engine.register_handler(slow)

        attempts = await engine.deliver(make_notification())

        self.assertEqual(attempts[0].status, DeliveryStatus.FAILED)
        self.assertIn('Timed out', attempts[0].error)
        self.assertEqual(slow.completed, 0)

        # The provider call keeps running after the attempt gave up
        await wait_for(lambda: slow.completed == 1)
        self.assertEqual(attempts[0].status, DeliveryStatus.FAILED)

    async def test_retry_creates_linked_attempt(self):
        engine = DeliveryEngine(fast_config(max_retries=3))
        flaky = RecordingHandler(ChannelType.EMAIL, fail_times=1)
        engine.register_handler(flaky)
        retries = []
        engine.on('delivery:retry', lambda attempt, delay: retries.append((attempt, delay)))
        notification = make_notification()

        first = (await engine.deliver(notification))[0]
        self.assertEqual(first.status, DeliveryStatus.FAILED)

        retry, delay = retries[0]
        self.assertEqual(retry.attempt_number, 2)
        self.assertEqual(retry.previous_attempt_id, first.id)
        self.assertAlmostEqual(delay, 0.01)

        await wait_for(lambda: retry.status == DeliveryStatus.SENT)
        self.assertEqual(len(flaky.calls), 2)
        self.assertEqual([a.id for a in engine.get_attempts(notification.id)], [first.id, retry.id])

    async def test_retry_targets_the_same_identifier(self):
        engine = DeliveryEngine(fast_config(max_retries=2))
        flaky = RecordingHandler(ChannelType.EMAIL, fail_times=2)
        engine.register_handler(flaky)
        notification = make_notification(recipients=[
            Recipient(id='user-1', identifier='work@example.com'),
            Recipient(id='user-1', identifier='home@example.com'),
        ])

        await engine.deliver(notification)
        await wait_for(lambda: len(flaky.calls) == 4)

        self.assertEqual(sorted(flaky.identifiers[2:]), ['home@example.com', 'work@example.com'])
        sent = [a for a in engine.get_attempts(notification.id) if a.status == DeliveryStatus.SENT]
        self.assertEqual(sorted(a.recipient_identifier for a in sent), ['home@example.com', 'work@example.com'])

    async def test_backoff_grows_with_attempt_number(self):
        engine = DeliveryEngine(fast_config(retry_delay=0.01, retry_backoff=2.0, max_retries=3))
        engine.register_handler(RecordingHandler(ChannelType.EMAIL, fail=True))
        delays = []
        engine.on('delivery:retry', lambda attempt, delay: delays.append(delay))

        await engine.deliver(make_notification())
        await wait_for(lambda: len(delays) == 2)

        self.assertAlmostEqual(delays[0], 0.02)
        self.assertAlmostEqual(delays[1], 0.04)

    async def test_retries_stop_at_max(self):
        engine = DeliveryEngine(fast_config(max_retries=3))
        failing = RecordingHandler(ChannelType.EMAIL, fail=True)
        engine.register_handler(failing)
        final = []
        engine.on('delivery:failed:final', final.append)
        notification = make_notification()

        await engine.deliver(notification)
        await wait_for(lambda: len(final) == 1)
        await asyncio.sleep(0.05)

        self.assertEqual(len(failing.calls), 3)
        self.assertEqual(final[0].attempt_number, 3)
        self.assertTrue(all(a.status == DeliveryStatus.FAILED for a in engine.get_attempts(notification.id)))

    async def test_cancel_retries(self):
        engine = DeliveryEngine(fast_config(retry_delay=0.05))
        failing = RecordingHandler(ChannelType.EMAIL, fail=True)
        engine.register_handler(failing)
        notification = make_notification()

        await engine.deliver(notification)
        cancelled = engine.cancel_retries(notification.id)
        await asyncio.sleep(0.1)

        self.assertEqual(cancelled, 1)
        self.assertEqual(len(failing.calls), 1)
        statuses = [a.status for a in engine.get_attempts(notification.id)]
        self.assertEqual(statuses, [DeliveryStatus.FAILED, DeliveryStatus.CANCELLED])

    async def test_circuit_opens_after_failures(self):
        engine = DeliveryEngine(fast_config(max_retries=1, circuit_failure_threshold=2))
        engine.register_handler(RecordingHandler(ChannelType.EMAIL, fail=True))

        await engine.deliver(make_notification())
        self.assertTrue(engine.is_channel_available(ChannelType.EMAIL))
        await engine.deliver(make_notification(title='again'))

        self.assertFalse(engine.is_channel_available(ChannelType.EMAIL))
        self.assertEqual(engine.get_stats()['circuit_breakers']['email']['state'], 'open')


class TestCancelDelivery(unittest.IsolatedAsyncioTestCase):
    """Test cases for cancelling pending attempts"""

    async def test_cancel_scheduled_retry_through_handler(self):
        engine = DeliveryEngine(fast_config(retry_delay=1.0))
        handler = CancellableHandler(ChannelType.EMAIL, fail=True)
        engine.register_handler(handler)
        notification = make_notification()
        cancelled = []
        engine.on('delivery:cancelled', cancelled.append)

        first = (await engine.deliver(notification))[0]
        retry = engine.get_attempts(notification.id)[1]

        self.assertTrue(await engine.cancel_delivery(retry.id))
        self.assertEqual(retry.status, DeliveryStatus.CANCELLED)
        self.assertEqual(handler.cancelled, [retry.id])
        self.assertEqual(cancelled, [retry])

        self.assertFalse(await engine.cancel_delivery(first.id))
        self.assertFalse(await engine.cancel_delivery('missing'))

    async def test_cancel_requires_handler_capability(self):
        engine = DeliveryEngine(fast_config(retry_delay=1.0))
        engine.register_handler(RecordingHandler(ChannelType.EMAIL, fail=True))
        notification = make_notification()

        await engine.deliver(notification)
        retry = engine.get_attempts(notification.id)[1]

        self.assertFalse(await engine.cancel_delivery(retry.id))
        self.assertEqual(retry.status, DeliveryStatus.PENDING)
        engine.cancel_retries(notification.id)


class TestReceipts(unittest.IsolatedAsyncioTestCase):
    """Test cases for receipt-driven status changes"""

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.engine = DeliveryEngine(fast_config(), clock=self.clock)
        self.handler = CancellableHandler(ChannelType.EMAIL)
        self.engine.register_handler(self.handler)
        self.notification = make_notification()
        self.attempt = (await self.engine.deliver(self.notification))[0]

    def receipt(self, event, attempt_id=None, **details):
        return DeliveryReceipt(
            notification_id=self.notification.id,
            delivery_attempt_id=attempt_id or self.attempt.id,
            channel=ChannelType.EMAIL,
            event=event,
            timestamp=self.clock(),
            details=details,
        )

    async def test_delivered_receipt(self):
        recorded = []
        self.engine.on('receipt:recorded', lambda receipt, attempt: recorded.append(attempt))

        self.assertTrue(self.engine.record_receipt(self.receipt(ReceiptEvent.DELIVERED)))

        self.assertEqual(self.attempt.status, DeliveryStatus.DELIVERED)
        self.assertEqual(self.attempt.delivered_at, self.clock())
        self.assertEqual(recorded, [self.attempt])
        self.assertFalse(self.engine.record_receipt(self.receipt(ReceiptEvent.DELIVERED)))

    async def test_bounce_after_delivery(self):
        self.engine.record_receipt(self.receipt(ReceiptEvent.DELIVERED))

        self.assertTrue(self.engine.record_receipt(self.receipt(ReceiptEvent.BOUNCED, reason='mailbox full')))

        self.assertEqual(self.attempt.status, DeliveryStatus.BOUNCED)
        self.assertEqual(self.attempt.error, 'mailbox full')

    async def test_engagement_receipts_only_record(self):
        self.assertFalse(self.engine.record_receipt(self.receipt(ReceiptEvent.READ)))
        self.assertFalse(self.engine.record_receipt(self.receipt(ReceiptEvent.CLICKED)))

        self.assertEqual(self.attempt.status, DeliveryStatus.SENT)
        self.assertEqual(len(self.engine.get_receipts(self.attempt.id)), 2)

    async def test_unknown_attempt(self):
        self.assertFalse(self.engine.record_receipt(self.receipt(ReceiptEvent.DELIVERED, attempt_id='att_missing')))
        self.assertEqual(len(self.engine.get_receipts()), 1)

    async def test_sent_stays_sent_without_receipt(self):
        self.clock.advance(86400)

        self.assertEqual(self.engine.get_delivery_status(self.attempt.id).status, DeliveryStatus.SENT)

    async def test_poll_statuses(self):
        self.handler.status = ReceiptEvent.DELIVERED

        changed = await self.engine.poll_statuses()

        self.assertEqual(changed, 1)
        self.assertEqual(self.attempt.status, DeliveryStatus.DELIVERED)
        self.assertEqual(self.engine.get_receipts()[0].details['source'], 'poll')
        self.assertEqual(await self.engine.poll_statuses(), 0)

    async def test_find_by_external_id(self):
        self.assertIs(self.engine.find_by_external_id(self.attempt.external_id), self.attempt)
        self.assertIsNone(self.engine.find_by_external_id('nope'))


class TestHistoryAndReporting(unittest.IsolatedAsyncioTestCase):
    """Test cases for reporting and trimming"""

    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.engine = DeliveryEngine(fast_config(max_retries=1), clock=self.clock)
        self.engine.register_handler(RecordingHandler(ChannelType.EMAIL))
        self.engine.register_handler(RecordingHandler(ChannelType.SMS, fail=True))

    async def test_delivery_report(self):
        empty = self.engine.get_delivery_report()
        self.assertTrue(empty.empty)

        await self.engine.deliver(make_notification(channels=[ChannelType.EMAIL, ChannelType.SMS],
                                                    recipients=[make_recipient(1), make_recipient(2)]))

        report = self.engine.get_delivery_report()

        self.assertIsInstance(report, pd.DataFrame)
        self.assertEqual(report.loc['email', 'sent'], 2)
        self.assertEqual(report.loc['sms', 'failed'], 2)
        self.assertEqual(report.loc['sms', 'delivered'], 0)

    async def test_trim_history_keeps_pending_retries(self):
        engine = DeliveryEngine(fast_config(max_retries=2, retry_delay=60), clock=self.clock)
        engine.register_handler(RecordingHandler(ChannelType.EMAIL))
        engine.register_handler(RecordingHandler(ChannelType.SMS, fail=True))
        notification = make_notification(channels=[ChannelType.EMAIL, ChannelType.SMS])
        await engine.deliver(notification)
        self.clock.advance(3600)

        removed = engine.trim_history(self.clock() - timedelta(minutes=1))

        # Sent without a receipt and failed are both settled past the cutoff
        self.assertEqual(removed, 2)
        remaining = engine.get_attempts(notification.id)
        self.assertEqual([a.status for a in remaining], [DeliveryStatus.PENDING])
        await engine.stop()

    async def test_max_history_evicts_sent_attempts(self):
        engine = DeliveryEngine(fast_config(max_history=5), clock=self.clock)
        engine.register_handler(RecordingHandler(ChannelType.EMAIL))

        notifications = [make_notification() for _ in range(10)]
        for notification in notifications:
            await engine.deliver(notification)

        self.assertLessEqual(engine.get_stats()['attempts'], 5)
        self.assertEqual(engine.get_attempts(notifications[0].id), [])
        self.assertEqual(len(engine.get_attempts(notifications[-1].id)), 1)

    async def test_stats(self):
        await self.engine.deliver(make_notification(channels=[ChannelType.EMAIL, ChannelType.SMS]))

        stats = self.engine.get_stats()

        self.assertEqual(stats['attempts'], 2)
        self.assertEqual(stats['by_status']['sent'], 1)
        self.assertEqual(stats['by_status']['failed'], 1)
        self.assertEqual(stats['counters']['attempts_sent'], 1)
        self.assertIn('send_latency_avg', stats['counters'])


if __name__ == '__main__':
    unittest.main()
