"""
Settings Manager for the Notification Dispatch Pipeline
Handles configuration loading, validation, and environment variable management
"""

import os
import copy
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field
import logging

import yaml
from dotenv import load_dotenv

from ..exceptions import ConfigurationError
from ..models import DeduplicationStrategy, NotificationPriority, coerce_priority

# Load environment variables from .env file if it exists
load_dotenv()

logger = logging.getLogger(__name__)

CONFIG_DIR = Path(__file__).parent
DEFAULT_CONFIG_FILE = CONFIG_DIR / "default.yaml"


@dataclass
class QueueConfig:
    """Priority queue settings"""
    max_size: int = 10000
    max_retries: int = 5
    retry_base_delay: float = 1.0
    max_retry_delay: float = 30.0


@dataclass
class DeduplicationConfig:
    """Deduplication cache settings"""
    strategy: DeduplicationStrategy = DeduplicationStrategy.FINGERPRINT
    window: float = 300.0  # seconds
    max_entries: int = 10000
    cleanup_interval: float = 60.0


@dataclass
class BatchConfig:
    """Batch processor settings"""
    max_batch_size: int = 1000
    processing_interval: float = 1.0
    max_concurrent: int = 5
    auto_flush_interval: float = 30.0
    enable_rate_limit: bool = True
    rate_limit: int = 100  # items per second
    run_sync_in_executor: bool = False


@dataclass
class DeliveryConfig:
    """Delivery engine settings"""
    timeout: float = 30.0
    max_retries: int = 3
    retry_delay: float = 1.0
    retry_backoff: float = 2.0
    status_poll_interval: Optional[float] = None
    max_history: int = 100000
    circuit_failure_threshold: int = 5
    circuit_recovery_timeout: float = 60.0


@dataclass
class EngineConfig:
    """Notification engine settings"""
    max_concurrent: int = 10
    retry_attempts: int = 3
    retry_delay: float = 1.0
    retry_backoff: float = 2.0
    default_priority: NotificationPriority = NotificationPriority.NORMAL
    enable_deduplication: bool = True
    process_interval: float = 0.1
    max_queue_size: int = 10000
    deduplication: DeduplicationConfig = field(default_factory=DeduplicationConfig)


@dataclass
class HistoryStoreConfig:
    """Terminal notification history settings"""
    backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = "notification_history"
    retention_days: int = 30


class Settings:
    """
    Central configuration management class
    Loads YAML, applies environment overrides and validates values
    """

    def __init__(self, config_file: Optional[Path] = None):
        """Initialize settings from configuration file"""
        env_file = os.getenv('NOTIFY_CONFIG_FILE')
        self.config_file = Path(config_file or env_file or DEFAULT_CONFIG_FILE)
        self._config: Dict[str, Any] = {}
        self._load_config()
        self._override_with_env()
        self._validate_config()

    def _load_config(self):
        """Load configuration from YAML file"""
        try:
            with open(self.config_file, 'r') as f:
                self._config = yaml.safe_load(f) or {}
            logger.debug(f"Configuration loaded from {self.config_file}")
        except FileNotFoundError:
            logger.warning(f"Configuration file not found: {self.config_file}, using defaults")
            self._config = self._get_default_config()
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Error parsing configuration file {self.config_file}: {e}") from e

    def _get_default_config(self) -> Dict[str, Any]:
        """Return default configuration if config file not found"""
        return {
            'environment': 'development',
            'system': {
                'project_name': 'Notification Dispatch Pipeline',
                'log_level': 'INFO',
            },
            'queue': {},
            'deduplication': {},
            'batch': {},
            'delivery': {},
            'engine': {},
            'storage': {'history': {'backend': 'memory'}},
        }

    def _override_with_env(self):
        """Override configuration with environment variables"""
        if 'NOTIFY_ENVIRONMENT' in os.environ:
            self.set('environment', os.getenv('NOTIFY_ENVIRONMENT'))

        if 'NOTIFY_LOG_LEVEL' in os.environ:
            self.set('system.log_level', os.getenv('NOTIFY_LOG_LEVEL').upper())

        if 'NOTIFY_MAX_CONCURRENT' in os.environ:
            try:
                self.set('engine.max_concurrent', int(os.getenv('NOTIFY_MAX_CONCURRENT')))
            except ValueError as e:
                raise ConfigurationError("NOTIFY_MAX_CONCURRENT must be an integer") from e

        if 'NOTIFY_REDIS_URL' in os.environ:
            self.set('storage.history.backend', 'redis')
            self.set('storage.history.redis_url', os.getenv('NOTIFY_REDIS_URL'))

    def _validate_config(self):
        """Validate numeric ranges"""
        positive = [
            'queue.max_size',
            'deduplication.window',
            'deduplication.max_entries',
            'deduplication.cleanup_interval',
            'batch.max_batch_size',
            'batch.processing_interval',
            'batch.max_concurrent',
            'batch.auto_flush_interval',
            'batch.rate_limit',
            'delivery.timeout',
            'engine.max_concurrent',
            'engine.retry_attempts',
            'engine.process_interval',
            'engine.max_queue_size',
        ]

        for key in positive:
            value = self.get(key)
            if value is not None and value <= 0:
                raise ConfigurationError(f"{key} must be positive, got {value}")

        strategy = self.get('deduplication.strategy')
        if strategy is not None:
            try:
                DeduplicationStrategy(strategy)
            except ValueError as e:
                raise ConfigurationError(f"Unknown deduplication strategy: {strategy}") from e

        level = self.get('system.log_level', 'INFO')
        if not isinstance(logging.getLevelName(level), int):
            raise ConfigurationError(f"Unknown log level: {level}")

    def get(self, key: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation
        Example: settings.get('engine.max_concurrent')
        """
        keys = key.split('.')
        value = self._config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value if value is not None else default

    def set(self, key: str, value: Any):
        """
        Set configuration value using dot notation
        Example: settings.set('engine.max_concurrent', 20)
        """
        keys = key.split('.')
        config = self._config

        for k in keys[:-1]:
            if not isinstance(config.get(k), dict):
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    def get_queue_config(self) -> QueueConfig:
        """Get priority queue configuration object"""
        section = self.get('queue', {})
        defaults = QueueConfig()
        return QueueConfig(
            max_size=section.get('max_size', defaults.max_size),
            max_retries=section.get('max_retries', defaults.max_retries),
            retry_base_delay=section.get('retry_base_delay', defaults.retry_base_delay),
            max_retry_delay=section.get('max_retry_delay', defaults.max_retry_delay),
        )

    def get_deduplication_config(self) -> DeduplicationConfig:
        """Get deduplication configuration object"""
        section = self.get('deduplication', {})
        defaults = DeduplicationConfig()
        return DeduplicationConfig(
            strategy=DeduplicationStrategy(section.get('strategy', defaults.strategy.value)),
            window=section.get('window', defaults.window),
            max_entries=section.get('max_entries', defaults.max_entries),
            cleanup_interval=section.get('cleanup_interval', defaults.cleanup_interval),
        )

    def get_batch_config(self) -> BatchConfig:
        """Get batch processor configuration object"""
        section = self.get('batch', {})
        defaults = BatchConfig()
        return BatchConfig(
            max_batch_size=section.get('max_batch_size', defaults.max_batch_size),
            processing_interval=section.get('processing_interval', defaults.processing_interval),
            max_concurrent=section.get('max_concurrent', defaults.max_concurrent),
            auto_flush_interval=section.get('auto_flush_interval', defaults.auto_flush_interval),
            enable_rate_limit=section.get('enable_rate_limit', defaults.enable_rate_limit),
            rate_limit=section.get('rate_limit', defaults.rate_limit),
            run_sync_in_executor=section.get('run_sync_in_executor', defaults.run_sync_in_executor),
        )

    def get_delivery_config(self) -> DeliveryConfig:
        """Get delivery engine configuration object"""
        section = self.get('delivery', {})
        defaults = DeliveryConfig()
        return DeliveryConfig(
            timeout=section.get('timeout', defaults.timeout),
            max_retries=section.get('max_retries', defaults.max_retries),
            retry_delay=section.get('retry_delay', defaults.retry_delay),
            retry_backoff=section.get('retry_backoff', defaults.retry_backoff),
            status_poll_interval=section.get('status_poll_interval', defaults.status_poll_interval),
            max_history=section.get('max_history', defaults.max_history),
            circuit_failure_threshold=section.get('circuit_failure_threshold',
                                                  defaults.circuit_failure_threshold),
            circuit_recovery_timeout=section.get('circuit_recovery_timeout',
                                                 defaults.circuit_recovery_timeout),
        )

    def get_engine_config(self) -> EngineConfig:
        """Get notification engine configuration object"""
        section = self.get('engine', {})
        defaults = EngineConfig()
        return EngineConfig(
            max_concurrent=section.get('max_concurrent', defaults.max_concurrent),
            retry_attempts=section.get('retry_attempts', defaults.retry_attempts),
            retry_delay=section.get('retry_delay', defaults.retry_delay),
            retry_backoff=section.get('retry_backoff', defaults.retry_backoff),
            default_priority=coerce_priority(section.get('default_priority'), defaults.default_priority),
            enable_deduplication=section.get('enable_deduplication', defaults.enable_deduplication),
            process_interval=section.get('process_interval', defaults.process_interval),
            max_queue_size=section.get('max_queue_size', defaults.max_queue_size),
            deduplication=self.get_deduplication_config(),
        )

    def get_history_store_config(self) -> HistoryStoreConfig:
        """Get history store configuration object"""
        section = self.get('storage.history', {})
        defaults = HistoryStoreConfig()
        return HistoryStoreConfig(
            backend=section.get('backend', defaults.backend),
            redis_url=section.get('redis_url', defaults.redis_url),
            key_prefix=section.get('key_prefix', defaults.key_prefix),
            retention_days=section.get('retention_days', defaults.retention_days),
        )

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self._config.get('environment', 'development') == 'development'

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self._config.get('environment', 'development') == 'production'

    def to_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary"""
        return copy.deepcopy(self._config)

    def save(self, file_path: Optional[Path] = None):
        """Save current configuration to file"""
        save_path = file_path or self.config_file
        with open(save_path, 'w') as f:
            yaml.dump(self._config, f, default_flow_style=False, sort_keys=False)
        logger.info(f"Configuration saved to {save_path}")

    def reload(self):
        """Reload configuration from file"""
        self.__init__(self.config_file)
        logger.info("Configuration reloaded")


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Shared settings instance, created on first use"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def get_config(key: str, default: Any = None) -> Any:
    """Quick access to configuration values"""
    return get_settings().get(key, default)
