"""
Push subscription API – VAPID key for the browser, subscribe / unsubscribe,
and the admin direct push.
"""
import logging

from fastapi import APIRouter, Request, status

from portal.api.deps import DB, AdminUser, CurrentUser
from portal.core.config import settings
from portal.core.exceptions import ConfigurationError
from portal.schemas.push import (
    DirectPushOut,
    DirectPushRequest,
    DirectPushResult,
    PushSubscribeOut,
    PushSubscribeRequest,
    PushUnsubscribeOut,
    PushUnsubscribeRequest,
    VapidPublicKeyOut,
)
from portal.services.push_dispatcher import PushDispatcher
from portal.services.subscription_registry import SubscriptionRegistry, short_endpoint

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/push", tags=["push"])


@router.get("/vapid-public-key", response_model=VapidPublicKeyOut)
async def get_vapid_public_key():
    """Public application server key for PushManager.subscribe (no JWT needed)."""
    if not settings.VAPID_PUBLIC_KEY:
        raise ConfigurationError("Push notifications are not configured")
    return VapidPublicKeyOut(public_key=settings.VAPID_PUBLIC_KEY)


@router.post("/subscribe", response_model=PushSubscribeOut, status_code=status.HTTP_201_CREATED)
async def subscribe(payload: PushSubscribeRequest, request: Request, current_user: CurrentUser, db: DB):
    if not settings.push_enabled:
        raise ConfigurationError("Push notifications are not configured")

    sub = await SubscriptionRegistry(db).register(
        owner_id=current_user.id,
        endpoint=payload.endpoint,
        p256dh=payload.keys.p256dh,
        auth=payload.keys.auth,
        user_agent=(request.headers.get("user-agent") or "")[:255] or None,
    )
    await db.commit()
    return PushSubscribeOut(subscription_id=sub.id)


@router.delete("/unsubscribe", response_model=PushUnsubscribeOut)
async def unsubscribe(payload: PushUnsubscribeRequest, current_user: CurrentUser, db: DB):
    removed = await SubscriptionRegistry(db).unregister(payload.endpoint, owner_id=current_user.id)
    await db.commit()
    if removed:
        logger.info("User %s unsubscribed a push endpoint", current_user.id)
    return PushUnsubscribeOut(removed=removed)


@router.post("/send", response_model=DirectPushOut)
async def send_direct(payload: DirectPushRequest, current_user: AdminUser, db: DB):
    """Ad-hoc push to every device of one user (admin only); waits for the results."""
    report = await PushDispatcher(db).send_direct(
        payload.user_id, payload.title, payload.body, payload.data
    )
    return DirectPushOut(
        sent=report.sent,
        failed=report.failed + report.pruned + report.stale,
        results=[
            DirectPushResult(
                endpoint=short_endpoint(o.endpoint),
                status=o.status.value,
                attempts=o.attempts,
                status_code=o.status_code,
                error=o.error,
            )
            for o in report.outcomes
        ],
    )
