"""
Notifications API – inbox for every user, sending and reporting for admins.

Read state is per recipient; creating a notification stores it and hands the
push fan-out to the background, so senders never wait on push services.
"""
import logging
import uuid

from fastapi import APIRouter, BackgroundTasks, Query, status

from portal.api.deps import DB, AdminUser, ClientUser, CurrentUser
from portal.core.exceptions import PermissionDeniedError
from portal.models.notification import NotificationType
from portal.models.user import UserRole
from portal.schemas.notification import (
    BroadcastCreate,
    ClientRequestCreate,
    DeletedOut,
    MarkAllReadOut,
    MarkReadOut,
    NotificationCreate,
    NotificationCreatedOut,
    NotificationListOut,
    NotificationOut,
    NotificationStatsOut,
    Pagination,
    SentNotificationListOut,
    SentNotificationOut,
)
from portal.services.notification_store import NotificationStore
from portal.tasks.push_tasks import schedule_dispatch

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/notifications", tags=["notifications"])


def _pagination(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, pages=(total + limit - 1) // limit)


# ── Inbox ────────────────────────────────────────────────────────────────────

@router.get("", response_model=NotificationListOut)
async def list_notifications(
    current_user: CurrentUser,
    db: DB,
    type: NotificationType | None = None,
    unread_only: bool = Query(False, alias="unreadOnly"),
    include_expired: bool = Query(False, alias="includeExpired"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    store = NotificationStore(db)
    result = await store.list_for(
        current_user.id,
        type=type,
        unread_only=unread_only,
        include_expired=include_expired,
        page=page,
        limit=limit,
    )
    return NotificationListOut(
        notifications=[NotificationOut.from_view(v) for v in result.items],
        unread_count=await store.unread_count(current_user.id),
        pagination=_pagination(result.page, result.limit, result.total),
    )


@router.put("/read-all", response_model=MarkAllReadOut)
async def mark_all_read(current_user: CurrentUser, db: DB):
    marked = await NotificationStore(db).mark_all_read(current_user.id)
    await db.commit()
    return MarkAllReadOut(marked_count=marked)


@router.put("/{notification_id}/read", response_model=MarkReadOut)
async def mark_read(notification_id: uuid.UUID, current_user: CurrentUser, db: DB):
    state = await NotificationStore(db).mark_read(notification_id, current_user.id)
    await db.commit()
    return MarkReadOut(is_read=state.is_read, read_at=state.read_at)


@router.delete("/{notification_id}", response_model=DeletedOut)
async def delete_notification(notification_id: uuid.UUID, current_user: CurrentUser, db: DB):
    """
    Admins delete any notification. A client only sees notifications addressed
    to them and may delete one only when nobody else receives it.
    """
    store = NotificationStore(db)
    if not current_user.is_admin:
        notification = await store.get_addressable(notification_id, current_user.id)
        if notification.is_broadcast or notification.recipient_ids != {current_user.id}:
            raise PermissionDeniedError("Only the sole recipient can delete this notification")
    await store.delete(notification_id)
    await db.commit()
    return DeletedOut()


# ── Sending ──────────────────────────────────────────────────────────────────

@router.post("", response_model=NotificationCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_notification(
    payload: NotificationCreate,
    background_tasks: BackgroundTasks,
    current_user: AdminUser,
    db: DB,
):
    notification = await NotificationStore(db).create_targeted(
        payload.recipients,
        role=UserRole.CLIENT,
        sender_id=current_user.id,
        **payload.draft_fields(),
    )
    await db.commit()
    schedule_dispatch(background_tasks, notification.id)
    return NotificationCreatedOut(
        notification_id=notification.id,
        recipient_count=len(notification.recipients),
    )


@router.post("/broadcast", response_model=NotificationCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_broadcast(
    payload: BroadcastCreate,
    background_tasks: BackgroundTasks,
    current_user: AdminUser,
    db: DB,
):
    store = NotificationStore(db)
    notification = await store.create_broadcast(sender_id=current_user.id, **payload.draft_fields())
    await db.commit()
    schedule_dispatch(background_tasks, notification.id)
    return NotificationCreatedOut(
        notification_id=notification.id,
        recipient_count=len(await store.broadcast_audience()),
    )


@router.post("/request", response_model=NotificationCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_client_request(
    payload: ClientRequestCreate,
    background_tasks: BackgroundTasks,
    current_user: ClientUser,
    db: DB,
):
    """Client to agency: addressed to every active admin."""
    store = NotificationStore(db)
    notification = await store.create_targeted(
        await store.admin_ids(),
        role=UserRole.ADMIN,
        sender_id=current_user.id,
        **payload.draft_fields(),
    )
    await db.commit()
    schedule_dispatch(background_tasks, notification.id)
    return NotificationCreatedOut(
        notification_id=notification.id,
        recipient_count=len(notification.recipients),
    )


# ── Admin views ──────────────────────────────────────────────────────────────

@router.get("/stats", response_model=NotificationStatsOut)
async def notification_stats(current_user: AdminUser, db: DB):
    return NotificationStatsOut.model_validate(await NotificationStore(db).stats())


@router.get("/sent", response_model=SentNotificationListOut)
async def list_sent(
    current_user: AdminUser,
    db: DB,
    type: NotificationType | None = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    entries, total = await NotificationStore(db).list_sent(current_user.id, type=type, page=page, limit=limit)
    return SentNotificationListOut(
        notifications=[SentNotificationOut.from_entry(e) for e in entries],
        pagination=_pagination(page, limit, total),
    )
