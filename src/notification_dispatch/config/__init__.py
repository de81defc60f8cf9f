"""
Configuration Module
YAML-backed settings and per-component configuration objects
"""

from .settings import (
    BatchConfig,
    DeduplicationConfig,
    DeliveryConfig,
    EngineConfig,
    HistoryStoreConfig,
    QueueConfig,
    Settings,
    get_config,
    get_settings,
)

__all__ = [
    'BatchConfig',
    'DeduplicationConfig',
    'DeliveryConfig',
    'EngineConfig',
    'HistoryStoreConfig',
    'QueueConfig',
    'Settings',
    'get_config',
    'get_settings',
]
