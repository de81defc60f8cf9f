"""
Storage Module
Persistence backends for notification history
"""

from .history_store import (
    HistoryStore,
    InMemoryHistoryStore,
    RedisHistoryStore,
    create_history_store,
)

__all__ = [
    'HistoryStore',
    'InMemoryHistoryStore',
    'RedisHistoryStore',
    'create_history_store',
]
