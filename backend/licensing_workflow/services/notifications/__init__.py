from .notifier import InAppNotifier, LoggingNotifier, Notifier
from .outbox import NotificationDispatcher, enqueue_assignment_notification

__all__ = [
    'InAppNotifier',
    'LoggingNotifier',
    'Notifier',
    'NotificationDispatcher',
    'enqueue_assignment_notification',
]
