"""
Notification Store – notification records plus per-recipient read receipts.

Addressing:
  targeted  – the recipient appears in notification_recipients
  broadcast – the recipient is a currently active client (resolved at query time)

A notification is unread for a recipient iff it addresses them and no
NotificationRead row exists for the pair. Expired notifications drop out of
the active views but stay stored until an admin deletes them.
"""
from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import and_, delete, exists, func, or_, select

from portal.core.exceptions import NotFoundError, ValidationError
from portal.models.notification import (
    Notification,
    NotificationPriority,
    NotificationRead,
    NotificationRecipient,
    NotificationType,
    RecipientMode,
)
from portal.models.user import User, UserRole
from portal.services.read_state import ReadState, read_state_from

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)


@dataclass
class NotificationDraft:
    title: str
    message: str
    recipient_mode: RecipientMode
    recipient_ids: set[uuid.UUID] = field(default_factory=set)
    type: NotificationType = NotificationType.INFO
    priority: NotificationPriority = NotificationPriority.MEDIUM
    sender_id: uuid.UUID | None = None
    related_project_id: uuid.UUID | None = None
    action_url: str | None = None
    action_text: str | None = None
    expires_at: datetime | None = None


@dataclass
class NotificationView:
    """A notification as seen by one recipient."""
    notification: Notification
    read_state: ReadState

    @property
    def is_read(self) -> bool:
        return self.read_state.is_read


@dataclass
class NotificationPage:
    items: list[NotificationView]
    total: int
    page: int
    limit: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.limit else 0


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken as UTC; SQLite keeps no offset, so everything is stored in UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _not_expired(now: datetime):
    return or_(Notification.expires_at.is_(None), Notification.expires_at > now)


def _active_clients():
    return and_(User.role == UserRole.CLIENT.value, User.is_active.is_(True))


class NotificationStore:

    def __init__(self, db: "AsyncSession"):
        self.db = db

    # ── Create ───────────────────────────────────────────────────────────────

    async def create(self, draft: NotificationDraft) -> Notification:
        """Persists a notification; enforces the recipient_mode / recipient_ids invariant."""
        title = (draft.title or "").strip()
        message = (draft.message or "").strip()
        if not title:
            raise ValidationError("Title is required", {"field": "title"})
        if not message:
            raise ValidationError("Message is required", {"field": "message"})

        mode = RecipientMode(draft.recipient_mode)
        recipient_ids = set(draft.recipient_ids or ())
        if mode is RecipientMode.TARGETED and not recipient_ids:
            raise ValidationError("Targeted notifications need at least one recipient")
        if mode is RecipientMode.BROADCAST and recipient_ids:
            raise ValidationError("Broadcast notifications must not list recipients")

        notification = Notification(
            title=title,
            message=message,
            type=NotificationType(draft.type).value,
            priority=NotificationPriority(draft.priority).value,
            sender_id=draft.sender_id,
            recipient_mode=mode.value,
            related_project_id=draft.related_project_id,
            action_url=draft.action_url or None,
            action_text=draft.action_text or None,
            expires_at=_as_utc(draft.expires_at),
            created_at=_now(),
        )
        notification.recipients = [
            NotificationRecipient(recipient_id=rid) for rid in sorted(recipient_ids, key=str)
        ]
        self.db.add(notification)
        await self.db.flush()
        logger.info(
            "Created %s notification %s (%s recipients)",
            mode.value, notification.id, len(recipient_ids) or "all clients",
        )
        return notification

    async def create_targeted(
        self, recipient_ids: Iterable[uuid.UUID], role: UserRole | None = None, **fields: Any
    ) -> Notification:
        """Addresses the notification to the given users, dropping unknown or inactive ids."""
        valid = await self.filter_valid_recipients(recipient_ids, role=role)
        if not valid:
            raise ValidationError("No valid recipients found")
        draft = NotificationDraft(recipient_mode=RecipientMode.TARGETED, recipient_ids=valid, **fields)
        return await self.create(draft)

    async def create_broadcast(self, **fields: Any) -> Notification:
        """Addresses every active client; refuses when there is nobody to reach."""
        if not await self.broadcast_audience():
            raise ValidationError("No active clients found")
        return await self.create(NotificationDraft(recipient_mode=RecipientMode.BROADCAST, **fields))

    async def filter_valid_recipients(
        self, recipient_ids: Iterable[uuid.UUID], role: UserRole | None = None
    ) -> set[uuid.UUID]:
        """Keeps only ids of existing, active users (optionally of one role)."""
        ids = set(recipient_ids)
        if not ids:
            return set()
        query = select(User.id).where(User.id.in_(ids), User.is_active.is_(True))
        if role is not None:
            query = query.where(User.role == role.value)
        result = await self.db.execute(query)
        return set(result.scalars().all())

    async def admin_ids(self) -> set[uuid.UUID]:
        result = await self.db.execute(
            select(User.id).where(User.role == UserRole.ADMIN.value, User.is_active.is_(True))
        )
        return set(result.scalars().all())

    async def broadcast_audience(self) -> set[uuid.UUID]:
        result = await self.db.execute(select(User.id).where(_active_clients()))
        return set(result.scalars().all())

    async def resolve_recipient_ids(self, notification: Notification) -> set[uuid.UUID]:
        """Who the notification currently addresses."""
        if notification.is_broadcast:
            return await self.broadcast_audience()
        return notification.recipient_ids

    # ── Lookup ───────────────────────────────────────────────────────────────

    async def get(self, notification_id: uuid.UUID) -> Notification | None:
        result = await self.db.execute(
            select(Notification).where(Notification.id == notification_id)
        )
        return result.scalar_one_or_none()

    async def _in_broadcast_audience(self, recipient_id: uuid.UUID) -> bool:
        result = await self.db.execute(
            select(User.id).where(User.id == recipient_id, _active_clients())
        )
        return result.scalar_one_or_none() is not None

    async def _addressed_to(self, recipient_id: uuid.UUID):
        """SQL condition: the notification addresses recipient_id."""
        targeted = exists().where(
            NotificationRecipient.notification_id == Notification.id,
            NotificationRecipient.recipient_id == recipient_id,
        )
        if await self._in_broadcast_audience(recipient_id):
            return or_(Notification.recipient_mode == RecipientMode.BROADCAST.value, targeted)
        return targeted

    async def get_addressable(
        self, notification_id: uuid.UUID, recipient_id: uuid.UUID
    ) -> Notification:
        addressed = await self._addressed_to(recipient_id)
        result = await self.db.execute(
            select(Notification).where(Notification.id == notification_id, addressed)
        )
        notification = result.scalar_one_or_none()
        if notification is None:
            raise NotFoundError("Notification not found")
        return notification

    async def list_for(
        self,
        recipient_id: uuid.UUID,
        type: NotificationType | str | None = None,
        unread_only: bool = False,
        include_expired: bool = False,
        page: int = 1,
        limit: int = 20,
    ) -> NotificationPage:
        """Notifications addressed to recipient_id, newest first, with their read state."""
        now = _now()
        receipt = and_(
            NotificationRead.notification_id == Notification.id,
            NotificationRead.recipient_id == recipient_id,
        )
        conditions = [await self._addressed_to(recipient_id)]
        if type:
            conditions.append(Notification.type == NotificationType(type).value)
        if not include_expired:
            conditions.append(_not_expired(now))
        if unread_only:
            conditions.append(NotificationRead.notification_id.is_(None))

        base = (
            select(Notification, NotificationRead.read_at)
            .outerjoin(NotificationRead, receipt)
            .where(*conditions)
        )
        total = (
            await self.db.execute(select(func.count()).select_from(base.subquery()))
        ).scalar_one()

        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        result = await self.db.execute(
            base.order_by(Notification.created_at.desc(), Notification.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        items = [
            NotificationView(notification=n, read_state=read_state_from(read_at))
            for n, read_at in result.all()
        ]
        return NotificationPage(items=items, total=total, page=page, limit=limit)

    async def unread_count(self, recipient_id: uuid.UUID) -> int:
        """Addressable, unexpired notifications without a receipt from recipient_id."""
        addressed = await self._addressed_to(recipient_id)
        has_receipt = exists().where(
            NotificationRead.notification_id == Notification.id,
            NotificationRead.recipient_id == recipient_id,
        )
        result = await self.db.execute(
            select(func.count(Notification.id)).where(
                addressed, _not_expired(_now()), ~has_receipt
            )
        )
        return result.scalar_one()

    async def read_state(self, notification_id: uuid.UUID, recipient_id: uuid.UUID) -> ReadState:
        result = await self.db.execute(
            select(NotificationRead.read_at).where(
                NotificationRead.notification_id == notification_id,
                NotificationRead.recipient_id == recipient_id,
            )
        )
        return read_state_from(result.scalar_one_or_none())

    # ── Read state ───────────────────────────────────────────────────────────

    async def mark_read(self, notification_id: uuid.UUID, recipient_id: uuid.UUID) -> ReadState:
        """Idempotent: a second call leaves the single receipt (and its read_at) untouched."""
        await self.get_addressable(notification_id, recipient_id)
        await self._insert_receipts([notification_id], recipient_id)
        return await self.read_state(notification_id, recipient_id)

    async def mark_all_read(self, recipient_id: uuid.UUID) -> int:
        """Adds receipts for every addressable unread notification. Safe to retry after partial failure."""
        addressed = await self._addressed_to(recipient_id)
        has_receipt = exists().where(
            NotificationRead.notification_id == Notification.id,
            NotificationRead.recipient_id == recipient_id,
        )
        result = await self.db.execute(
            select(Notification.id).where(addressed, _not_expired(_now()), ~has_receipt)
        )
        ids = list(result.scalars().all())
        await self._insert_receipts(ids, recipient_id)
        return len(ids)

    async def _insert_receipts(
        self, notification_ids: list[uuid.UUID], recipient_id: uuid.UUID
    ) -> None:
        if not notification_ids:
            return
        read_at = _now()
        rows = [
            {"notification_id": nid, "recipient_id": recipient_id, "read_at": read_at}
            for nid in notification_ids
        ]
        dialect = self.db.get_bind().dialect.name
        if dialect in ("sqlite", "postgresql"):
            if dialect == "sqlite":
                from sqlalchemy.dialects.sqlite import insert
            else:
                from sqlalchemy.dialects.postgresql import insert
            stmt = insert(NotificationRead).values(rows).on_conflict_do_nothing(
                index_elements=["notification_id", "recipient_id"]
            )
            await self.db.execute(stmt)
        else:
            existing = await self.db.execute(
                select(NotificationRead.notification_id).where(
                    NotificationRead.recipient_id == recipient_id,
                    NotificationRead.notification_id.in_(notification_ids),
                )
            )
            seen = set(existing.scalars().all())
            self.db.add_all(NotificationRead(**row) for row in rows if row["notification_id"] not in seen)
        await self.db.flush()

    # ── Delete ───────────────────────────────────────────────────────────────

    async def delete(self, notification_id: uuid.UUID) -> None:
        """Hard delete of the notification, its recipient rows and its receipts."""
        notification = await self.get(notification_id)
        if notification is None:
            raise NotFoundError("Notification not found")
        await self.db.execute(
            delete(NotificationRead).where(NotificationRead.notification_id == notification_id)
        )
        await self.db.delete(notification)
        await self.db.flush()
        logger.info("Deleted notification %s", notification_id)

    # ── Admin views ──────────────────────────────────────────────────────────

    async def stats(self) -> dict[str, Any]:
        """Totals for the admin dashboard; ``unread`` counts outstanding (notification, addressee) pairs."""
        now = _now()
        total = (await self.db.execute(select(func.count(Notification.id)))).scalar_one()

        targeted_unread = (
            await self.db.execute(
                select(func.count())
                .select_from(NotificationRecipient)
                .join(Notification, Notification.id == NotificationRecipient.notification_id)
                .outerjoin(
                    NotificationRead,
                    and_(
                        NotificationRead.notification_id == NotificationRecipient.notification_id,
                        NotificationRead.recipient_id == NotificationRecipient.recipient_id,
                    ),
                )
                .where(_not_expired(now), NotificationRead.notification_id.is_(None))
            )
        ).scalar_one()

        live_broadcast = and_(
            Notification.recipient_mode == RecipientMode.BROADCAST.value, _not_expired(now)
        )
        broadcasts = (
            await self.db.execute(select(func.count(Notification.id)).where(live_broadcast))
        ).scalar_one()
        clients = (await self.db.execute(select(func.count(User.id)).where(_active_clients()))).scalar_one()
        broadcast_reads = (
            await self.db.execute(
                select(func.count())
                .select_from(NotificationRead)
                .join(Notification, Notification.id == NotificationRead.notification_id)
                .join(User, User.id == NotificationRead.recipient_id)
                .where(live_broadcast, _active_clients())
            )
        ).scalar_one()

        by_type = await self.db.execute(
            select(Notification.type, func.count(Notification.id))
            .group_by(Notification.type)
            .order_by(func.count(Notification.id).desc())
        )
        by_priority = await self.db.execute(
            select(Notification.priority, func.count(Notification.id))
            .group_by(Notification.priority)
            .order_by(func.count(Notification.id).desc())
        )
        return {
            "total": total,
            "unread": targeted_unread + broadcasts * clients - broadcast_reads,
            "byType": [{"type": t, "count": c} for t, c in by_type.all()],
            "byPriority": [{"priority": p, "count": c} for p, c in by_priority.all()],
        }

    async def list_sent(
        self,
        sender_id: uuid.UUID,
        type: NotificationType | str | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[dict[str, Any]], int]:
        """Notifications sent by an admin with their addressee count and read receipts."""
        conditions = [Notification.sender_id == sender_id]
        if type:
            conditions.append(Notification.type == NotificationType(type).value)
        total = (
            await self.db.execute(select(func.count(Notification.id)).where(*conditions))
        ).scalar_one()

        page = max(page, 1)
        limit = max(min(limit, 100), 1)
        result = await self.db.execute(
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        notifications = list(result.scalars().all())
        if not notifications:
            return [], total

        receipts = await self.db.execute(
            select(NotificationRead.notification_id, NotificationRead.recipient_id, NotificationRead.read_at)
            .where(NotificationRead.notification_id.in_([n.id for n in notifications]))
            .order_by(NotificationRead.read_at)
        )
        read_by: dict[uuid.UUID, list[dict[str, Any]]] = {}
        for nid, rid, read_at in receipts.all():
            read_by.setdefault(nid, []).append({"recipientId": rid, "readAt": read_at})

        audience_size = None
        entries = []
        for n in notifications:
            if n.is_broadcast:
                if audience_size is None:
                    audience_size = len(await self.broadcast_audience())
                recipient_count = audience_size
            else:
                recipient_count = len(n.recipients)
            entries.append({
                "notification": n,
                "recipientCount": recipient_count,
                "readBy": read_by.get(n.id, []),
            })
        return entries, total
