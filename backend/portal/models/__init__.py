from portal.models.user import User, UserRole
from portal.models.push_subscription import PushSubscription
from portal.models.notification import (
    DeliveryStatus,
    Notification,
    NotificationPriority,
    NotificationRead,
    NotificationRecipient,
    NotificationType,
    PushDeliveryLog,
    RecipientMode,
)

__all__ = [
    "User",
    "UserRole",
    "PushSubscription",
    "Notification",
    "NotificationRecipient",
    "NotificationRead",
    "PushDeliveryLog",
    "NotificationType",
    "NotificationPriority",
    "RecipientMode",
    "DeliveryStatus",
]
