from .models import NotificationLog
from .notification_log import NotificationLogDB

__all__ = [
    "NotificationLog",
    "NotificationLogDB",
]
