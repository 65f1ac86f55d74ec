import uuid
from datetime import datetime
from typing import Any

from pydantic import Field

from portal.models.notification import NotificationPriority, NotificationType
from portal.schemas.base import CamelModel
from portal.services.notification_store import NotificationView


# ── Requests ─────────────────────────────────────────────────────────────────

class _NotificationContent(CamelModel):
    title: str = Field(max_length=255)
    message: str
    type: NotificationType = NotificationType.INFO
    priority: NotificationPriority = NotificationPriority.MEDIUM
    action_url: str | None = Field(default=None, max_length=1024)
    action_text: str | None = Field(default=None, max_length=100)
    expires_at: datetime | None = None
    related_project: uuid.UUID | None = None

    def draft_fields(self) -> dict[str, Any]:
        """Keyword arguments for NotificationStore.create_targeted / create_broadcast."""
        return {
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "priority": self.priority,
            "action_url": self.action_url,
            "action_text": self.action_text,
            "expires_at": self.expires_at,
            "related_project_id": self.related_project,
        }


class NotificationCreate(_NotificationContent):
    recipients: list[uuid.UUID] = Field(min_length=1)


class BroadcastCreate(_NotificationContent):
    pass


class ClientRequestCreate(CamelModel):
    """A client asking the agency for something; goes to every admin."""
    title: str = Field(max_length=255)
    message: str
    type: NotificationType = NotificationType.MESSAGE
    priority: NotificationPriority = NotificationPriority.MEDIUM
    related_project: uuid.UUID | None = None

    def draft_fields(self) -> dict[str, Any]:
        return {
            "title": self.title,
            "message": self.message,
            "type": self.type,
            "priority": self.priority,
            "related_project_id": self.related_project,
        }


# ── Responses ────────────────────────────────────────────────────────────────

class Pagination(CamelModel):
    page: int
    limit: int
    total: int
    pages: int


class NotificationBaseOut(CamelModel):
    id: uuid.UUID
    title: str
    message: str
    type: str
    priority: str
    recipient_mode: str
    sender_id: uuid.UUID | None
    related_project_id: uuid.UUID | None
    action_url: str | None
    action_text: str | None
    expires_at: datetime | None
    created_at: datetime


class NotificationOut(NotificationBaseOut):
    is_read: bool
    read_at: datetime | None
    is_expired: bool

    @classmethod
    def from_view(cls, view: NotificationView) -> "NotificationOut":
        n = view.notification
        return cls(
            **NotificationBaseOut.model_validate(n).model_dump(),
            is_read=view.read_state.is_read,
            read_at=view.read_state.read_at,
            is_expired=n.is_expired(),
        )


class NotificationListOut(CamelModel):
    notifications: list[NotificationOut]
    unread_count: int
    pagination: Pagination


class NotificationCreatedOut(CamelModel):
    success: bool = True
    notification_id: uuid.UUID
    recipient_count: int


class MarkReadOut(CamelModel):
    success: bool = True
    is_read: bool
    read_at: datetime | None


class MarkAllReadOut(CamelModel):
    success: bool = True
    marked_count: int


class DeletedOut(CamelModel):
    success: bool = True


class TypeCount(CamelModel):
    type: str
    count: int


class PriorityCount(CamelModel):
    priority: str
    count: int


class NotificationStatsOut(CamelModel):
    total: int
    unread: int
    by_type: list[TypeCount]
    by_priority: list[PriorityCount]


class ReadReceiptOut(CamelModel):
    recipient_id: uuid.UUID
    read_at: datetime


class SentNotificationOut(NotificationBaseOut):
    recipient_count: int
    read_by: list[ReadReceiptOut]

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> "SentNotificationOut":
        return cls(
            **NotificationBaseOut.model_validate(entry["notification"]).model_dump(),
            recipient_count=entry["recipientCount"],
            read_by=[ReadReceiptOut.model_validate(r) for r in entry["readBy"]],
        )


class SentNotificationListOut(CamelModel):
    notifications: list[SentNotificationOut]
    pagination: Pagination
