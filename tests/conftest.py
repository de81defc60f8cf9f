"""
Pytest configuration and shared fixtures for Notification Dispatch tests
"""

import sys
from pathlib import Path

import pytest

# Add source and test helper paths
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))
sys.path.insert(0, str(Path(__file__).parent))

from helpers import FakeClock, RecordingHandler, make_notification  # noqa: E402
from notification_dispatch.models import ChannelType  # noqa: E402


@pytest.fixture
def clock():
    """Controllable wall clock"""
    return FakeClock()


@pytest.fixture
def email_handler():
    return RecordingHandler(ChannelType.EMAIL)


@pytest.fixture
def sample_notification():
    """Notification with one recipient on email"""
    return make_notification()


@pytest.fixture(autouse=True)
def isolate_settings(monkeypatch):
    """Keep environment overrides from leaking into settings tests"""
    for name in ('NOTIFY_CONFIG_FILE', 'NOTIFY_ENVIRONMENT', 'NOTIFY_LOG_LEVEL',
                 'NOTIFY_MAX_CONCURRENT', 'NOTIFY_REDIS_URL'):
        monkeypatch.delenv(name, raising=False)
