"""
Unit Tests for Logger Utility
Tests for handler setup and per-task log context
"""

import json
import logging
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

import colorlog

from notification_dispatch.utils.logger import (
    ContextFilter,
    JSONFormatter,
    LogContext,
    add_context,
    clear_context,
    setup_logging,
)


def settings_with(values):
    settings = MagicMock()
    settings.get.side_effect = lambda key, default=None: values.get(key, default)
    return settings


class TestSetupLogging(unittest.TestCase):
    """Test cases for setup_logging"""

    def tearDown(self):
        logging.getLogger('notification_dispatch').handlers = []

    def test_console_handler_uses_colorlog(self):
        logger = setup_logging(settings_with({'system.log_level': 'DEBUG'}))

        self.assertEqual(logger.level, logging.DEBUG)
        self.assertEqual(len(logger.handlers), 1)
        self.assertIsInstance(logger.handlers[0].formatter, colorlog.ColoredFormatter)

    def test_file_and_json_handlers(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            log_path = Path(temp_dir) / 'logs' / 'dispatch.log'
            logger = setup_logging(settings_with({
                'logging.enable_console': False,
                'logging.enable_file': True,
                'logging.enable_json': True,
                'logging.file.path': str(log_path),
            }))

            self.assertEqual(len(logger.handlers), 2)
            self.assertIsInstance(logger.handlers[1].formatter, JSONFormatter)
            for handler in logger.handlers:
                handler.close()

    def test_repeat_setup_replaces_handlers(self):
        setup_logging(settings_with({}))
        logger = setup_logging(settings_with({}))

        self.assertEqual(len(logger.handlers), 1)


class TestLogContext(unittest.TestCase):
    """Test cases for contextual fields"""

    def tearDown(self):
        clear_context()

    def record(self):
        record = logging.LogRecord('notification_dispatch', logging.INFO, __file__, 1, 'msg', None, None)
        ContextFilter().filter(record)
        return record

    def test_defaults(self):
        record = self.record()

        self.assertEqual(record.tenant_id, 'N/A')
        self.assertEqual(record.notification_id, 'N/A')

    def test_context_manager_scopes_fields(self):
        with LogContext(tenant_id='tenant-1', notification_id='ntf_1'):
            inside = self.record()

        outside = self.record()
        self.assertEqual(inside.tenant_id, 'tenant-1')
        self.assertEqual(inside.notification_id, 'ntf_1')
        self.assertEqual(outside.tenant_id, 'N/A')

    def test_add_context(self):
        add_context(tenant_id='tenant-2', channel='sms')

        record = self.record()
        self.assertEqual(record.tenant_id, 'tenant-2')
        self.assertEqual(record.channel, 'sms')

    def test_json_formatter(self):
        with LogContext(tenant_id='tenant-3'):
            record = self.record()

        data = json.loads(JSONFormatter().format(record))

        self.assertEqual(data['message'], 'msg')
        self.assertEqual(data['level'], 'INFO')
        self.assertEqual(data['tenant_id'], 'tenant-3')


if __name__ == '__main__':
    unittest.main()
