"""
Logger Utility Module
Provides centralized logging configuration for the notification dispatch pipeline
"""

import json
import logging
import logging.handlers
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import colorlog

from ..config.settings import Settings, get_settings

DEFAULT_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# Per-task context, safe across asyncio tasks
_log_context: ContextVar[Dict[str, Any]] = ContextVar('notification_log_context', default={})


class ContextFilter(logging.Filter):
    """Add contextual information to log records"""

    def filter(self, record):
        """Add context data to log record"""
        extra = _log_context.get()
        record.tenant_id = extra.get('tenant_id', 'N/A')
        record.notification_id = extra.get('notification_id', 'N/A')

        for key, value in extra.items():
            if not hasattr(record, key):
                setattr(record, key, value)

        return True


class JSONFormatter(logging.Formatter):
    """Format logs as JSON for structured logging"""

    _reserved = {
        'name', 'msg', 'args', 'created', 'filename', 'funcName', 'levelname',
        'levelno', 'lineno', 'module', 'msecs', 'message', 'pathname', 'process',
        'processName', 'relativeCreated', 'thread', 'threadName', 'exc_info',
        'exc_text', 'stack_info', 'taskName',
    }

    def format(self, record):
        """Format log record as JSON"""
        log_data = {
            'timestamp': datetime.utcnow().isoformat(),
            'level': record.levelname,
            'logger': record.name,
            'module': record.module,
            'function': record.funcName,
            'line': record.lineno,
            'message': record.getMessage(),
        }

        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
            log_data['traceback'] = ''.join(traceback.format_exception(*record.exc_info))

        for key, value in record.__dict__.items():
            if key not in self._reserved and key not in log_data:
                log_data[key] = value if isinstance(value, (str, int, float, bool, type(None))) else str(value)

        return json.dumps(log_data)


def _create_console_handler(level: int, enable_color: bool) -> logging.Handler:
    """Create console handler with optional color support"""
    console_handler = logging.StreamHandler(sys.stdout)

    if enable_color:
        formatter = colorlog.ColoredFormatter(
            '%(log_color)s%(asctime)s - %(name)s - %(levelname)s - %(message)s%(reset)s',
            datefmt='%Y-%m-%d %H:%M:%S',
            log_colors={
                'DEBUG': 'cyan',
                'INFO': 'green',
                'WARNING': 'yellow',
                'ERROR': 'red',
                'CRITICAL': 'red,bg_white',
            }
        )
    else:
        formatter = logging.Formatter(DEFAULT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')

    console_handler.setFormatter(formatter)
    console_handler.setLevel(level)
    return console_handler


def _create_file_handler(path: Path, level: int, max_bytes: int, backup_count: int,
                         json_format: bool = False) -> logging.Handler:
    """Create rotating file handler"""
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.handlers.RotatingFileHandler(
        path,
        maxBytes=max_bytes,
        backupCount=backup_count
    )

    if json_format:
        file_handler.setFormatter(JSONFormatter())
    else:
        file_handler.setFormatter(logging.Formatter(DEFAULT_FORMAT, datefmt='%Y-%m-%d %H:%M:%S'))

    file_handler.setLevel(level)
    return file_handler


def setup_logging(settings: Optional[Settings] = None) -> logging.Logger:
    """Configure the package logger from settings

    Args:
        settings: Settings to read the ``logging`` section from

    Returns:
        The configured ``notification_dispatch`` logger
    """
    settings = settings or get_settings()
    level = logging.getLevelName(settings.get('system.log_level', 'INFO'))

    root = logging.getLogger('notification_dispatch')
    root.setLevel(level)
    root.handlers = []

    context_filter = ContextFilter()

    if settings.get('logging.enable_console', True):
        handler = _create_console_handler(level, settings.get('logging.enable_color', True))
        handler.addFilter(context_filter)
        root.addHandler(handler)

    log_path = Path(settings.get('logging.file.path', './logs/notification_dispatch.log'))
    max_bytes = settings.get('logging.file.max_bytes', 10485760)
    backup_count = settings.get('logging.file.backup_count', 10)

    if settings.get('logging.enable_file', False):
        handler = _create_file_handler(log_path, level, max_bytes, backup_count)
        handler.addFilter(context_filter)
        root.addHandler(handler)

    if settings.get('logging.enable_json', False):
        handler = _create_file_handler(log_path.with_suffix('.json'), level, max_bytes,
                                       backup_count, json_format=True)
        handler.addFilter(context_filter)
        root.addHandler(handler)

    return root


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger under the package namespace"""
    if name is None:
        name = 'notification_dispatch'
    return logging.getLogger(name)


def add_context(**kwargs):
    """Add contextual information to logs of the current task"""
    current = dict(_log_context.get())
    current.update(kwargs)
    _log_context.set(current)


def clear_context():
    """Clear contextual information"""
    _log_context.set({})


class LogContext:
    """Context manager for temporary log context"""

    def __init__(self, **kwargs):
        self.context_data = kwargs
        self._token = None

    def __enter__(self):
        current = dict(_log_context.get())
        current.update(self.context_data)
        self._token = _log_context.set(current)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        _log_context.reset(self._token)
        return False
