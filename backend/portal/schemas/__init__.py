from portal.schemas.auth import Token, TokenData, LoginRequest, RefreshRequest, UserOut
from portal.schemas.push import (
    PushSubscribeRequest, PushUnsubscribeRequest, PushSubscribeOut, PushUnsubscribeOut, VapidPublicKeyOut,
    DirectPushRequest, DirectPushOut,
)
from portal.schemas.notification import (
    NotificationCreate, BroadcastCreate, ClientRequestCreate, NotificationOut, NotificationListOut,
    NotificationCreatedOut, MarkReadOut, MarkAllReadOut, DeletedOut, Pagination,
    NotificationStatsOut, SentNotificationOut, SentNotificationListOut,
)

__all__ = [
    "Token", "TokenData", "LoginRequest", "RefreshRequest", "UserOut",
    "PushSubscribeRequest", "PushUnsubscribeRequest", "PushSubscribeOut", "PushUnsubscribeOut",
    "VapidPublicKeyOut", "DirectPushRequest", "DirectPushOut",
    "NotificationCreate", "BroadcastCreate", "ClientRequestCreate",
    "NotificationOut", "NotificationListOut", "NotificationCreatedOut",
    "MarkReadOut", "MarkAllReadOut", "DeletedOut", "Pagination",
    "NotificationStatsOut", "SentNotificationOut", "SentNotificationListOut",
]
