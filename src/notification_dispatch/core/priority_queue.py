"""
Priority Queue Module
Five-class strict priority queue with scheduled insertion and retry scheduling
"""

import heapq
import itertools
import logging
from collections import deque
from datetime import datetime, timedelta
from typing import Callable, Deque, Dict, List, Optional, Tuple

from ..config.settings import QueueConfig
from ..exceptions import QueueFullError
from ..models import PRIORITY_ORDER, NotificationPriority, QueuedNotification

logger = logging.getLogger(__name__)


class PriorityQueue:
    """Strict priority queue with FIFO ordering inside each class

    Items whose ``scheduled_for`` lies in the future wait in a scheduled heap
    and move into their live class once due. Promotion happens on every read,
    so an item never becomes eligible before its target time.
    """

    def __init__(self, config: Optional[QueueConfig] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """Initialize Priority Queue

        Args:
            config: Queue configuration
            clock: Time source, injectable for tests
        """
        self.config = config or QueueConfig()
        self._clock = clock

        self._classes: Dict[NotificationPriority, Deque[QueuedNotification]] = {
            priority: deque() for priority in PRIORITY_ORDER
        }
        # (due time, sequence, item)
        self._scheduled: List[Tuple[datetime, int, QueuedNotification]] = []
        self._sequence = itertools.count()
        self._index: Dict[str, QueuedNotification] = {}

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, item_id: str) -> bool:
        return item_id in self._index

    def enqueue(self, item: QueuedNotification) -> bool:
        """Add item to the queue

        Args:
            item: Queue entry

        Returns:
            False when the queue is at capacity or already holds the id
        """
        if item.id in self._index:
            logger.warning(f"Item {item.id} is already queued")
            return False

        if len(self._index) >= self.config.max_size:
            logger.warning(f"Queue full ({self.config.max_size}), rejected {item.id}")
            return False

        now = self._clock()
        item.enqueued_at = now
        self._index[item.id] = item

        due = item.next_retry_at or item.scheduled_for
        if due is not None and due > now:
            heapq.heappush(self._scheduled, (due, next(self._sequence), item))
            logger.debug(f"Item {item.id} scheduled for {due.isoformat()}")
        else:
            self._classes[item.priority].append(item)
            logger.debug(f"Item {item.id} queued with priority {item.priority.value}")

        return True

    def enqueue_or_raise(self, item: QueuedNotification):
        """Enqueue, raising QueueFullError on rejection"""
        if not self.enqueue(item):
            raise QueueFullError(f"Queue rejected item {item.id}")

    def dequeue(self) -> Optional[QueuedNotification]:
        """Remove and return the oldest item of the highest non-empty class"""
        self._promote_due()
        for priority in PRIORITY_ORDER:
            bucket = self._classes[priority]
            if bucket:
                item = bucket.popleft()
                del self._index[item.id]
                return item
        return None

    def peek(self) -> Optional[QueuedNotification]:
        """Return the next item without removing it"""
        self._promote_due()
        for priority in PRIORITY_ORDER:
            bucket = self._classes[priority]
            if bucket:
                return bucket[0]
        return None

    def dequeue_batch(self, max_items: int) -> List[QueuedNotification]:
        """Dequeue up to max_items in priority order"""
        items = []
        while len(items) < max_items:
            item = self.dequeue()
            if item is None:
                break
            items.append(item)
        return items

    def remove(self, item_id: str) -> Optional[QueuedNotification]:
        """Remove item from its live class or the scheduled set

        Returns:
            The removed item, or None if it was not queued
        """
        item = self._index.pop(item_id, None)
        if item is None:
            return None

        bucket = self._classes[item.priority]
        try:
            bucket.remove(item)
        except ValueError:
            self._scheduled = [entry for entry in self._scheduled if entry[2].id != item_id]
            heapq.heapify(self._scheduled)

        return item

    def find(self, item_id: str) -> Optional[QueuedNotification]:
        return self._index.get(item_id)

    def update_priority(self, item_id: str, new_priority: NotificationPriority) -> bool:
        """Move item to another class, joining it at the tail"""
        item = self._index.get(item_id)
        if item is None:
            return False

        if item.priority == new_priority:
            return True

        bucket = self._classes[item.priority]
        if item in bucket:
            bucket.remove(item)
            self._classes[new_priority].append(item)
        item.priority = new_priority
        return True

    def retry(self, item: QueuedNotification) -> bool:
        """Re-enter item through the scheduled path with exponential backoff

        Returns:
            False when retries are exhausted or the queue rejects the item
        """
        item.attempts += 1
        if item.attempts > self.config.max_retries:
            logger.warning(f"Item {item.id} exceeded {self.config.max_retries} retries")
            return False

        delay = min(self.config.max_retry_delay,
                    (2 ** item.attempts) * self.config.retry_base_delay)
        item.next_retry_at = self._clock() + timedelta(seconds=delay)

        if item.id in self._index:
            self.remove(item.id)

        logger.info(f"Item {item.id} retry {item.attempts} at {item.next_retry_at.isoformat()}")
        return self.enqueue(item)

    def clear(self):
        for bucket in self._classes.values():
            bucket.clear()
        self._scheduled.clear()
        self._index.clear()

    def size(self) -> int:
        self._promote_due()
        return len(self._index)

    def is_empty(self) -> bool:
        return not self._index

    def live_size(self) -> int:
        """Number of items eligible for dequeue right now"""
        self._promote_due()
        return sum(len(bucket) for bucket in self._classes.values())

    def scheduled_size(self) -> int:
        self._promote_due()
        return len(self._scheduled)

    def depth_by_priority(self) -> Dict[str, int]:
        """Live queue depth per priority class"""
        self._promote_due()
        return {priority.value: len(self._classes[priority]) for priority in PRIORITY_ORDER}

    def next_scheduled_at(self) -> Optional[datetime]:
        """Due time of the earliest scheduled item"""
        return self._scheduled[0][0] if self._scheduled else None

    def _promote_due(self) -> int:
        """Move due scheduled items into their live class"""
        now = self._clock()
        promoted = 0
        while self._scheduled and self._scheduled[0][0] <= now:
            _, _, item = heapq.heappop(self._scheduled)
            item.next_retry_at = None
            self._classes[item.priority].append(item)
            promoted += 1

        if promoted:
            logger.debug(f"Promoted {promoted} scheduled items")
        return promoted
