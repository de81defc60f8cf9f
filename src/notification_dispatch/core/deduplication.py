"""
Deduplication Engine Module
Fingerprints notifications and suppresses repeats inside a sliding time window
"""

import hashlib
import json
import logging
from collections import OrderedDict, defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from ..config.settings import DeduplicationConfig
from ..models import DeduplicationEntry, DeduplicationStrategy, Notification

logger = logging.getLogger(__name__)


class DeduplicationEngine:
    """Window-based duplicate detection with LRU-by-recency eviction

    Entries are kept in recency order, so the least recently seen entry is
    always at the front and eviction is O(1).
    """

    def __init__(self, config: Optional[DeduplicationConfig] = None,
                 clock: Callable[[], datetime] = datetime.now):
        """Initialize Deduplication Engine

        Args:
            config: Deduplication configuration
            clock: Time source, injectable for tests
        """
        self.config = config or DeduplicationConfig()
        self._clock = clock
        self._entries: "OrderedDict[str, DeduplicationEntry]" = OrderedDict()
        self._groups: Dict[str, Set[str]] = defaultdict(set)

        self.checks = 0
        self.duplicates = 0
        self.evictions = 0

    @property
    def window_seconds(self) -> float:
        return self.config.window

    def fingerprint(self, notification: Notification) -> str:
        """Derive the fingerprint for the configured strategy"""
        strategy = self.config.strategy

        if strategy == DeduplicationStrategy.KEY:
            if notification.deduplication_key:
                return f"key:{notification.deduplication_key}"
            return f"content:{self._content_hash(notification)}"

        if strategy == DeduplicationStrategy.CONTENT_HASH:
            return f"content:{self._content_hash(notification)}"

        if strategy == DeduplicationStrategy.TIME_WINDOW:
            bucket = int(self._clock().timestamp() // self.config.window)
            return f"window:{bucket}:{self._content_hash(notification)}"

        return f"fp:{self._message_hash(notification)}"

    def is_duplicate(self, notification: Notification) -> bool:
        """Check whether a matching notification was seen inside the window

        Expired entries count as unseen even if still cached.
        """
        self.checks += 1
        entry = self._entries.get(self.fingerprint(notification))
        if entry is None:
            return False

        elapsed = (self._clock() - entry.last_seen_at).total_seconds()
        if elapsed < self.config.window:
            self.duplicates += 1
            return True
        return False

    def record(self, notification: Notification) -> DeduplicationEntry:
        """Record a sighting, refreshing the window for the fingerprint

        Recording the same notification id twice refreshes ``last_seen_at``
        without counting a new occurrence.
        """
        now = self._clock()
        key = self.fingerprint(notification)
        entry = self._entries.get(key)

        if entry is None:
            while len(self._entries) >= self.config.max_entries:
                self._evict_oldest()

            entry = DeduplicationEntry(
                fingerprint=key,
                first_seen_at=now,
                last_seen_at=now,
                count=1,
                notification_ids=[notification.id],
                group_key=notification.group_key,
            )
            self._entries[key] = entry
        else:
            entry.last_seen_at = now
            if notification.id not in entry.notification_ids:
                entry.count += 1
                entry.notification_ids.append(notification.id)
            self._entries.move_to_end(key)

        if notification.group_key:
            entry.group_key = entry.group_key or notification.group_key
            entry.group_keys.add(notification.group_key)
            self._groups[notification.group_key].add(key)

        return entry

    def get_entry(self, notification: Notification) -> Optional[DeduplicationEntry]:
        return self._entries.get(self.fingerprint(notification))

    def get_group(self, group_key: str) -> List[str]:
        """Notification ids collapsed into active entries of a group"""
        ids = []
        for entry in self._active_group_entries(group_key):
            ids.extend(entry.notification_ids)
        return ids

    def get_group_stats(self, group_key: str) -> Dict[str, int]:
        """Distinct fingerprints and total occurrences active for a group"""
        entries = self._active_group_entries(group_key)
        return {
            'fingerprints': len(entries),
            'occurrences': sum(entry.count for entry in entries),
        }

    def clear_expired(self) -> int:
        """Drop entries whose window has elapsed

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if (now - entry.last_seen_at).total_seconds() >= self.config.window
        ]

        for key in expired:
            self._drop(key)

        if expired:
            logger.debug(f"Cleared {len(expired)} expired deduplication entries")
        return len(expired)

    def clear(self):
        self._entries.clear()
        self._groups.clear()

    def get_stats(self) -> Dict[str, float]:
        return {
            'size': len(self._entries),
            'groups': len(self._groups),
            'checks': self.checks,
            'duplicates': self.duplicates,
            'evictions': self.evictions,
            'duplicate_ratio': self.duplicates / self.checks if self.checks else 0.0,
        }

    def __len__(self) -> int:
        return len(self._entries)

    def _active_group_entries(self, group_key: str) -> List[DeduplicationEntry]:
        now = self._clock()
        entries = []
        for key in self._groups.get(group_key, ()):
            entry = self._entries.get(key)
            if entry and (now - entry.last_seen_at).total_seconds() < self.config.window:
                entries.append(entry)
        return entries

    def _evict_oldest(self):
        key = next(iter(self._entries))
        self._drop(key)
        self.evictions += 1
        logger.debug(f"Evicted deduplication entry {key}")

    def _drop(self, key: str):
        entry = self._entries.pop(key, None)
        if entry is None:
            return

        for group_key in entry.group_keys:
            members = self._groups.get(group_key)
            if members is not None:
                members.discard(key)
                if not members:
                    del self._groups[group_key]

    @staticmethod
    def _message_hash(notification: Notification) -> str:
        channels = ','.join(sorted(c.value for c in notification.channels))
        content = ':'.join([
            notification.tenant_id or '',
            notification.user_id or '',
            notification.type or '',
            notification.title or '',
            notification.message or '',
            channels,
        ])
        return hashlib.md5(content.encode()).hexdigest()

    @staticmethod
    def _content_hash(notification: Notification) -> str:
        data = json.dumps(notification.data or {}, sort_keys=True, default=str)
        content = ':'.join([
            notification.title or '',
            notification.message or '',
            notification.type or '',
            notification.category or '',
            data,
        ])
        return hashlib.md5(content.encode()).hexdigest()
