from .sink import (
    NotificationSink,
    LoggingNotificationSink,
    WebhookNotificationSink,
    fire_and_forget,
)

__all__ = [
    'NotificationSink',
    'LoggingNotificationSink',
    'WebhookNotificationSink',
    'fire_and_forget',
]
