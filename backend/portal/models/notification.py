import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import String, DateTime, ForeignKey, Integer, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from portal.core.database import Base


class NotificationType(str, enum.Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    PROJECT_UPDATE = "project_update"
    PAYMENT = "payment"
    MESSAGE = "message"
    SYSTEM = "system"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class RecipientMode(str, enum.Enum):
    BROADCAST = "broadcast"
    TARGETED = "targeted"


class DeliveryStatus(str, enum.Enum):
    SENT = "sent"
    FAILED = "failed"
    PRUNED = "pruned"
    STALE = "stale"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Notification(Base):
    """Notification content. Immutable after creation; only read receipts accumulate."""

    __tablename__ = "notifications"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    type: Mapped[str] = mapped_column(String(32), default=NotificationType.INFO.value, index=True)
    priority: Mapped[str] = mapped_column(String(16), default=NotificationPriority.MEDIUM.value)
    sender_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    recipient_mode: Mapped[str] = mapped_column(String(16), nullable=False)  # broadcast | targeted
    # Projects live in another subsystem, so no FK here
    related_project_id: Mapped[uuid.UUID | None] = mapped_column(nullable=True)
    action_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    action_text: Mapped[str | None] = mapped_column(String(100), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, index=True)

    recipients: Mapped[list["NotificationRecipient"]] = relationship(
        back_populates="notification",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def is_broadcast(self) -> bool:
        return self.recipient_mode == RecipientMode.BROADCAST.value

    @property
    def recipient_ids(self) -> set[uuid.UUID]:
        return {r.recipient_id for r in self.recipients}

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        expires_at = self.expires_at
        # SQLite hands back naive datetimes
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= (now or _utcnow())


class NotificationRecipient(Base):
    """Explicit addressee of a targeted notification."""

    __tablename__ = "notification_recipients"

    notification_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("notifications.id", ondelete="CASCADE"), primary_key=True
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True
    )

    notification: Mapped["Notification"] = relationship(back_populates="recipients")


class NotificationRead(Base):
    """Read receipt. The composite key makes marking read a set insert."""

    __tablename__ = "notification_reads"

    notification_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("notifications.id", ondelete="CASCADE"), primary_key=True
    )
    recipient_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True
    )
    read_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class PushDeliveryLog(Base):
    """Outcome of one push attempt series for one endpoint."""

    __tablename__ = "push_delivery_log"

    id: Mapped[uuid.UUID] = mapped_column(primary_key=True, default=uuid.uuid4)
    notification_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    owner_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    endpoint: Mapped[str] = mapped_column(Text, nullable=False)

    status: Mapped[str] = mapped_column(String(16), nullable=False)  # sent | failed | pruned | stale
    attempts: Mapped[int] = mapped_column(Integer, default=1)
    status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
