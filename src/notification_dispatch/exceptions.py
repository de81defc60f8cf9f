"""
Exception hierarchy for the notification dispatch pipeline
"""


class NotificationError(Exception):
    """Base class for all dispatch errors"""


class ValidationError(NotificationError):
    """Malformed notification request, never enqueued or retried"""


class ChannelNotRegisteredError(ValidationError):
    """A requested channel has no registered handler"""

    def __init__(self, channel):
        self.channel = channel
        super().__init__(f"Channel {getattr(channel, 'value', channel)} is not registered")


class QueueFullError(NotificationError):
    """Queue capacity reached, the caller must back off"""


class DeliveryError(NotificationError):
    """A channel handler reported a failed delivery"""


class DeliveryTimeoutError(DeliveryError):
    """A channel handler did not settle within the attempt timeout"""


class ProcessorNotConfiguredError(NotificationError):
    """BatchProcessor started without a processor callback"""


class EngineStateError(NotificationError):
    """Component started twice or used in the wrong lifecycle state"""


class ConfigurationError(NotificationError):
    """Invalid or unreadable configuration"""
