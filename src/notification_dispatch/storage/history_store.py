"""
Notification History Store
Terminal notification records kept in memory or persisted to Redis
"""

import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import redis

from ..config.settings import HistoryStoreConfig
from ..models import Notification

logger = logging.getLogger(__name__)


class HistoryStore(ABC):
    """Keyed store of notifications that reached a terminal status"""

    @abstractmethod
    def record(self, notification: Notification):
        """Record or overwrite the latest snapshot of a notification"""

    @abstractmethod
    def get(self, notification_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored snapshot, or None"""

    @abstractmethod
    def list(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent snapshots first, optionally filtered by status"""

    @abstractmethod
    def purge(self, older_than: datetime) -> int:
        """Delete snapshots recorded before a cutoff"""

    @abstractmethod
    def count(self) -> int:
        pass


class InMemoryHistoryStore(HistoryStore):
    """Bounded in-process history"""

    def __init__(self, max_records: int = 10000):
        self.max_records = max_records
        self._records: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
        self._recorded_at: Dict[str, datetime] = {}

    def record(self, notification: Notification):
        self._records[notification.id] = notification.to_dict()
        self._records.move_to_end(notification.id)
        self._recorded_at[notification.id] = notification.updated_at

        while len(self._records) > self.max_records:
            oldest, _ = self._records.popitem(last=False)
            self._recorded_at.pop(oldest, None)

    def get(self, notification_id: str) -> Optional[Dict[str, Any]]:
        return self._records.get(notification_id)

    def list(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        records = []
        for record in reversed(self._records.values()):
            if status is None or record['status'] == status:
                records.append(record)
                if len(records) >= limit:
                    break
        return records

    def purge(self, older_than: datetime) -> int:
        expired = [nid for nid, at in self._recorded_at.items() if at < older_than]
        for notification_id in expired:
            self._records.pop(notification_id, None)
            del self._recorded_at[notification_id]
        return len(expired)

    def count(self) -> int:
        return len(self._records)


class RedisHistoryStore(HistoryStore):
    """History persisted to a Redis hash, with a sorted-set time index

    Failed notifications are also pushed to a dead-letter list. Redis errors
    are logged and never propagate into the dispatch path.
    """

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "notification_history"):
        """Initialize Redis History Store

        Args:
            redis_client: Redis client
            key_prefix: Prefix for every key written
        """
        self.redis = redis_client
        self.history_key = key_prefix
        self.index_key = f"{key_prefix}:index"
        self.dead_letter_key = f"{key_prefix}:dead_letter"

    @classmethod
    def from_url(cls, url: str, key_prefix: str = "notification_history") -> "RedisHistoryStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), key_prefix)

    def record(self, notification: Notification):
        payload = json.dumps(notification.to_dict())
        try:
            pipe = self.redis.pipeline()
            pipe.hset(self.history_key, notification.id, payload)
            pipe.zadd(self.index_key, {notification.id: notification.updated_at.timestamp()})
            if notification.status.value == 'failed':
                pipe.rpush(self.dead_letter_key, payload)
            pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Failed to persist notification history: {str(e)}")

    def get(self, notification_id: str) -> Optional[Dict[str, Any]]:
        try:
            data = self.redis.hget(self.history_key, notification_id)
        except redis.RedisError as e:
            logger.error(f"Failed to read notification history: {str(e)}")
            return None
        return json.loads(data) if data else None

    def list(self, status: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        try:
            ids = self.redis.zrevrange(self.index_key, 0, -1)
            records = []
            for notification_id in ids:
                data = self.redis.hget(self.history_key, notification_id)
                if not data:
                    continue
                record = json.loads(data)
                if status is None or record['status'] == status:
                    records.append(record)
                    if len(records) >= limit:
                        break
            return records
        except redis.RedisError as e:
            logger.error(f"Failed to list notification history: {str(e)}")
            return []

    def purge(self, older_than: datetime) -> int:
        try:
            ids = self.redis.zrangebyscore(self.index_key, '-inf', older_than.timestamp())
            if not ids:
                return 0
            pipe = self.redis.pipeline()
            pipe.hdel(self.history_key, *ids)
            pipe.zrem(self.index_key, *ids)
            pipe.execute()
            logger.info(f"Purged {len(ids)} history records")
            return len(ids)
        except redis.RedisError as e:
            logger.error(f"Failed to purge notification history: {str(e)}")
            return 0

    def count(self) -> int:
        try:
            return self.redis.hlen(self.history_key)
        except redis.RedisError as e:
            logger.error(f"Failed to count notification history: {str(e)}")
            return 0

    def dead_letters(self, limit: int = 100) -> List[Dict[str, Any]]:
        """Failed notification snapshots, oldest first"""
        try:
            return [json.loads(data) for data in self.redis.lrange(self.dead_letter_key, 0, limit - 1)]
        except redis.RedisError as e:
            logger.error(f"Failed to read dead letters: {str(e)}")
            return []


def create_history_store(config: Optional[HistoryStoreConfig] = None) -> HistoryStore:
    """Build the store selected by ``storage.history.backend``"""
    config = config or HistoryStoreConfig()

    if config.backend == 'redis':
        logger.info(f"Using Redis history store at {config.redis_url}")
        return RedisHistoryStore.from_url(config.redis_url, config.key_prefix)

    return InMemoryHistoryStore()


def retention_cutoff(config: HistoryStoreConfig, now: Optional[datetime] = None) -> datetime:
    return (now or datetime.now()) - timedelta(days=config.retention_days)
