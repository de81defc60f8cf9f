"""
Utilities Module
Logging setup and log context helpers
"""

from .logger import LogContext, add_context, clear_context, get_logger, setup_logging

__all__ = [
    'LogContext',
    'add_context',
    'clear_context',
    'get_logger',
    'setup_logging',
]
