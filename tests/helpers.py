"""
Test doubles shared across the unit and integration suites
"""

import asyncio
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from notification_dispatch.core.delivery_engine import ChannelHandler
from notification_dispatch.models import (
    ChannelType,
    DeliveryResult,
    Notification,
    ReceiptEvent,
    Recipient,
    generate_id,
)


class FakeClock:
    """Wall clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float):
        self.now += timedelta(seconds=seconds)


class FakeMonotonic:
    """Monotonic seconds that only move when told to"""

    def __init__(self):
        self.value = 0.0

    def __call__(self) -> float:
        return self.value

    def advance(self, seconds: float):
        self.value += seconds


class RecordingHandler(ChannelHandler):
    """Handler that records calls and fails on demand"""

    def __init__(self, channel=ChannelType.EMAIL, fail: bool = False, delay: float = 0.0,
                 healthy: bool = True, fail_times: int = 0):
        self.channel = channel
        self.fail = fail
        self.fail_times = fail_times
        self.delay = delay
        self.healthy = healthy
        self.calls: List[tuple] = []
        self.identifiers: List[str] = []
        self.completed = 0

    async def send(self, notification: Notification, recipient: Recipient) -> DeliveryResult:
        self.calls.append((notification.id, recipient.id))
        self.identifiers.append(recipient.identifier)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.completed += 1

        if self.fail or len(self.calls) <= self.fail_times:
            raise RuntimeError(f"{self.channel.value} provider unavailable")

        return DeliveryResult(success=True, external_id=f"{self.channel.value}-{len(self.calls)}",
                              response={'accepted': True})

    async def is_healthy(self) -> bool:
        return self.healthy


class CancellableHandler(RecordingHandler):
    """Handler exposing cancel and status lookups"""

    def __init__(self, *args, status: Optional[ReceiptEvent] = None, **kwargs):
        super().__init__(*args, **kwargs)
        self.status = status
        self.cancelled: List[str] = []

    async def cancel(self, external_id: str) -> bool:
        self.cancelled.append(external_id)
        return True

    async def get_status(self, external_id: str) -> Optional[ReceiptEvent]:
        return self.status


class BlockingHandler(ChannelHandler):
    """Handler whose sends wait until released, tracking peak concurrency"""

    def __init__(self, channel=ChannelType.EMAIL):
        self.channel = channel
        self.active = 0
        self.max_active = 0
        self.started: List[str] = []
        self._gates: Dict[str, asyncio.Event] = {}

    def _gate(self, notification_id: str) -> asyncio.Event:
        return self._gates.setdefault(notification_id, asyncio.Event())

    def release(self, notification_id: str):
        self._gate(notification_id).set()

    def release_all(self):
        for notification_id in self.started:
            self.release(notification_id)

    async def send(self, notification: Notification, recipient: Recipient) -> DeliveryResult:
        self.started.append(notification.id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await self._gate(notification.id).wait()
        finally:
            self.active -= 1
        return DeliveryResult(success=True, external_id=f"blk-{notification.id}")


def make_recipient(index: int = 1) -> Recipient:
    return Recipient(id=f"user-{index}", identifier=f"user{index}@example.com", name=f"User {index}")


def make_notification(**overrides) -> Notification:
    """Notification with sensible defaults, any field overridable"""
    fields = {
        'id': generate_id("ntf"),
        'tenant_id': 'tenant-1',
        'title': 'Disk usage high',
        'message': 'Volume /data is above 90%',
        'user_id': 'user-1',
        'channels': [ChannelType.EMAIL],
        'recipients': [make_recipient(1)],
    }
    fields.update(overrides)
    return Notification(**fields)


def make_request(**overrides) -> dict:
    """Send request mapping with sensible defaults"""
    request = {
        'tenant_id': 'tenant-1',
        'title': 'Build finished',
        'message': 'Pipeline #42 succeeded',
        'channels': ['email'],
        'recipients': [{'id': 'user-1', 'identifier': 'user1@example.com'}],
    }
    request.update(overrides)
    return request


async def wait_for(predicate, timeout: float = 2.0, interval: float = 0.01):
    """Poll until predicate is true, failing after timeout"""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition not met before timeout")
        await asyncio.sleep(interval)
