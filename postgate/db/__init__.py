from .models import Notification, NotificationPreference, NotificationTemplate
from .notification_db import NotificationDB

__all__ = [
    "Notification",
    "NotificationPreference",
    "NotificationTemplate",
    "NotificationDB",
]
