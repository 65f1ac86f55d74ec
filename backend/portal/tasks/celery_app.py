from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from portal.core.config import settings
from portal.core.logging_config import configure_logging

celery_app = Celery(
    "portal",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
    include=["portal.tasks.push_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # a lost worker must not silently drop a fan-out
    task_acks_late=True,
    beat_schedule={
        # Daily at 03:00: delete subscriptions that stayed stale too long
        "prune-stale-subscriptions": {
            "task": "portal.tasks.push_tasks.prune_stale_subscriptions",
            "schedule": crontab(hour=3, minute=0),
        },
    },
)


@setup_logging.connect
def _configure_worker_logging(**kwargs):
    configure_logging()
