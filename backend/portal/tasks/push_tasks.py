"""
Background delivery: web push fan-out, then the email channel.

With USE_CELERY the fan-out runs in a Celery worker; otherwise it runs as a
FastAPI background task after the response has been sent. Either way the
sender never waits for, or sees, per-endpoint push results.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timedelta, timezone

from fastapi import BackgroundTasks

from portal.core.config import settings
from portal.core.database import AsyncSessionLocal
from portal.tasks.celery_app import celery_app

logger = logging.getLogger(__name__)


async def run_dispatch(notification_id: uuid.UUID) -> None:
    """Pushes, then emails, one notification; each channel has its own session. Never raises."""
    from portal.services.email_notifier import EmailNotifier
    from portal.services.push_dispatcher import PushDispatcher

    try:
        async with AsyncSessionLocal() as db:
            await PushDispatcher(db).dispatch_by_id(notification_id)
    except Exception:
        logger.exception("Push dispatch for notification %s failed", notification_id)

    try:
        async with AsyncSessionLocal() as db:
            await EmailNotifier(db).notify_by_id(notification_id)
    except Exception:
        logger.exception("Email delivery for notification %s failed", notification_id)


def schedule_dispatch(background_tasks: BackgroundTasks, notification_id: uuid.UUID) -> None:
    if settings.USE_CELERY:
        dispatch_notification.delay(str(notification_id))
    else:
        background_tasks.add_task(run_dispatch, notification_id)


@celery_app.task(name="portal.tasks.push_tasks.dispatch_notification")
def dispatch_notification(notification_id: str):
    asyncio.run(run_dispatch(uuid.UUID(notification_id)))


@celery_app.task(name="portal.tasks.push_tasks.prune_stale_subscriptions")
def prune_stale_subscriptions():
    """Deletes subscriptions marked stale longer than STALE_SUBSCRIPTION_DAYS."""
    return asyncio.run(_prune_stale())


async def _prune_stale() -> int:
    from portal.services.subscription_registry import SubscriptionRegistry

    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.STALE_SUBSCRIPTION_DAYS)
    async with AsyncSessionLocal() as db:
        removed = await SubscriptionRegistry(db).delete_stale_before(cutoff)
        await db.commit()
    logger.info("Removed %d stale push subscriptions", removed)
    return removed
