"""
Push Dispatcher – fans a stored notification out to Web Push subscriptions.

Each endpoint is handled on its own: sends run concurrently in worker threads
(pywebpush is blocking), transient failures are retried with exponential
backoff, and nothing one send does can abort another. The database is only
touched after every send has finished, in one sequential bookkeeping pass.

Failure classes:
  404 / 410                  permanent – subscription pruned
  429 / 5xx / network error  transient – retried, then logged as failed
  other 4xx                  failed, not retried
  unusable keys / ECE error  subscription keys unusable – marked stale
  anything else              failed, subscription left alone
"""
from __future__ import annotations

import asyncio
import base64
import json
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

import http_ece
import requests
from cryptography.hazmat.primitives.asymmetric import ec
from pywebpush import WebPushException, webpush
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from portal.core.config import Settings, settings as default_settings
from portal.core.exceptions import ConfigurationError, NotFoundError
from portal.models.notification import DeliveryStatus, Notification, PushDeliveryLog
from portal.models.push_subscription import PushSubscription
from portal.services.notification_store import NotificationStore
from portal.services.subscription_registry import SubscriptionRegistry, short_endpoint

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

DEFAULT_URL = "/notifications"

# (subscription_info, json payload) -> None; raises on failure
SendFunc = Callable[[dict[str, Any], str], None]

PERMANENT = "permanent"
TRANSIENT = "transient"
FAILED = "failed"
STALE = "stale"


class PushSendError(Exception):
    """One failed attempt, already classified."""

    def __init__(self, kind: str, message: str, status_code: int | None = None):
        self.kind = kind
        self.status_code = status_code
        super().__init__(message)

    @property
    def transient(self) -> bool:
        return self.kind == TRANSIENT


class SubscriptionKeyError(ValueError):
    """The stored p256dh / auth keys cannot be used to encrypt a payload."""


def load_subscription_keys(subscription_info: dict[str, Any]) -> tuple[ec.EllipticCurvePublicKey, bytes]:
    """Decodes the subscription keys the way payload encryption will; raises SubscriptionKeyError."""
    keys = subscription_info.get("keys") or {}
    try:
        p256dh = _b64url_decode(keys["p256dh"])
        auth = _b64url_decode(keys["auth"])
        public_key = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256R1(), p256dh)
    except (KeyError, TypeError, ValueError) as exc:
        raise SubscriptionKeyError(f"unusable subscription keys: {exc}") from exc
    if len(auth) != 16:
        raise SubscriptionKeyError(f"auth secret must be 16 bytes, got {len(auth)}")
    return public_key, auth


def _b64url_decode(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def classify(exc: Exception) -> PushSendError:
    if isinstance(exc, PushSendError):
        return exc
    if isinstance(exc, (SubscriptionKeyError, http_ece.ECEException)):
        return PushSendError(STALE, str(exc)[:200])
    if isinstance(exc, WebPushException):
        response = getattr(exc, "response", None)
        code = getattr(response, "status_code", None)
        if code is None:
            return PushSendError(TRANSIENT, str(exc)[:200])
        if code in (404, 410):
            return PushSendError(PERMANENT, str(exc)[:200], code)
        if code == 429 or code >= 500:
            return PushSendError(TRANSIENT, str(exc)[:200], code)
        return PushSendError(FAILED, str(exc)[:200], code)
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return PushSendError(TRANSIENT, str(exc)[:200])
    return PushSendError(FAILED, f"{type(exc).__name__}: {exc}"[:200])


@dataclass
class SendOutcome:
    subscription_id: uuid.UUID
    owner_id: uuid.UUID
    endpoint: str
    status: DeliveryStatus
    attempts: int = 1
    status_code: int | None = None
    error: str | None = None


@dataclass
class DispatchReport:
    notification_id: uuid.UUID | None
    outcomes: list[SendOutcome] = field(default_factory=list)
    skipped_reason: str | None = None

    def _count(self, status: DeliveryStatus) -> int:
        return sum(1 for o in self.outcomes if o.status is status)

    @property
    def sent(self) -> int:
        return self._count(DeliveryStatus.SENT)

    @property
    def failed(self) -> int:
        return self._count(DeliveryStatus.FAILED)

    @property
    def pruned(self) -> int:
        return self._count(DeliveryStatus.PRUNED)

    @property
    def stale(self) -> int:
        return self._count(DeliveryStatus.STALE)


def build_payload(notification: Notification, config: Settings = default_settings) -> dict[str, Any]:
    """Wire payload consumed by the delivery worker (/sw.js)."""
    return {
        "title": notification.title,
        "body": notification.message,
        "icon": config.PUSH_DEFAULT_ICON,
        "badge": config.PUSH_DEFAULT_BADGE,
        "data": {
            "url": notification.action_url or DEFAULT_URL,
            "notificationId": str(notification.id),
            "type": notification.type,
            "priority": notification.priority,
        },
        "actions": [
            {"action": "view", "title": notification.action_text or "View"},
            {"action": "close", "title": "Close"},
        ],
    }


def build_direct_payload(
    title: str, body: str, data: dict[str, Any] | None = None, config: Settings = default_settings
) -> dict[str, Any]:
    return {
        "title": title,
        "body": body,
        "icon": config.PUSH_DEFAULT_ICON,
        "badge": config.PUSH_DEFAULT_BADGE,
        "data": {"url": DEFAULT_URL, **(data or {})},
        "actions": [
            {"action": "view", "title": "View"},
            {"action": "close", "title": "Close"},
        ],
    }


class PushDispatcher:

    def __init__(
        self,
        db: "AsyncSession",
        send: SendFunc | None = None,
        config: Settings = default_settings,
    ):
        self.db = db
        self.config = config
        self.registry = SubscriptionRegistry(db)
        self.store = NotificationStore(db)
        if send is not None:
            self._send = send
        elif config.VAPID_PRIVATE_KEY:
            self._send = self._webpush_send
        else:
            self._send = None

    def _webpush_send(self, subscription_info: dict[str, Any], data: str) -> None:
        load_subscription_keys(subscription_info)
        webpush(
            subscription_info=subscription_info,
            data=data,
            vapid_private_key=self.config.VAPID_PRIVATE_KEY,
            # pywebpush adds aud/exp to the dict it is given
            vapid_claims={"sub": self.config.VAPID_CLAIMS_SUB},
            ttl=self.config.PUSH_TTL_SECONDS,
            timeout=10,
        )

    async def dispatch_by_id(self, notification_id: uuid.UUID) -> DispatchReport:
        notification = await self.store.get(notification_id)
        if notification is None:
            logger.warning("Push dispatch skipped: notification %s no longer exists", notification_id)
            return DispatchReport(notification_id=notification_id, skipped_reason="not_found")
        return await self.dispatch(notification)

    async def dispatch(self, notification: Notification) -> DispatchReport:
        """Sends the notification to every active subscription of its addressees."""
        report = DispatchReport(notification_id=notification.id)
        if self._send is None:
            logger.warning("VAPID_PRIVATE_KEY not configured, push for %s skipped", notification.id)
            report.skipped_reason = "push_disabled"
            return report
        if notification.is_expired():
            logger.info("Notification %s already expired, no push sent", notification.id)
            report.skipped_reason = "expired"
            return report

        owner_ids = await self.store.resolve_recipient_ids(notification)
        subscriptions = await self.registry.list_active(owner_ids)
        if not subscriptions:
            logger.info("No active push subscriptions for notification %s", notification.id)
            return report

        data = json.dumps(build_payload(notification, self.config))
        report.outcomes = await self._fan_out(subscriptions, data)
        await self._record(report)
        logger.info(
            "Push fan-out for %s: %d sent, %d failed, %d pruned, %d stale",
            notification.id, report.sent, report.failed, report.pruned, report.stale,
        )
        return report

    async def send_direct(
        self, owner_id: uuid.UUID, title: str, body: str, data: dict[str, Any] | None = None
    ) -> DispatchReport:
        """Pushes an ad-hoc message to every device of one user; nothing is stored as a notification."""
        if self._send is None:
            raise ConfigurationError("Push notifications are not configured")
        subscriptions = await self.registry.list_active({owner_id})
        if not subscriptions:
            raise NotFoundError("User has no active push subscriptions")

        report = DispatchReport(notification_id=None)
        payload = json.dumps(build_direct_payload(title, body, data, self.config))
        report.outcomes = await self._fan_out(subscriptions, payload)
        await self._record(report)
        logger.info(
            "Direct push to user %s: %d sent, %d failed", owner_id, report.sent, report.failed,
        )
        return report

    async def _fan_out(self, subscriptions: list[PushSubscription], data: str) -> list[SendOutcome]:
        semaphore = asyncio.Semaphore(max(self.config.PUSH_MAX_CONCURRENCY, 1))

        async def bounded(sub: PushSubscription) -> SendOutcome:
            async with semaphore:
                return await self._deliver(sub, data)

        results = await asyncio.gather(
            *(bounded(sub) for sub in subscriptions), return_exceptions=True
        )
        outcomes = []
        for sub, result in zip(subscriptions, results):
            if isinstance(result, BaseException):
                logger.error("Push to %s crashed: %r", short_endpoint(sub.endpoint), result)
                result = SendOutcome(
                    subscription_id=sub.id,
                    owner_id=sub.owner_id,
                    endpoint=sub.endpoint,
                    status=DeliveryStatus.FAILED,
                    error=repr(result)[:200],
                )
            outcomes.append(result)
        return outcomes

    async def _deliver(self, sub: PushSubscription, data: str) -> SendOutcome:
        # Copy what the worker thread needs; ORM objects stay on the event loop
        info = sub.subscription_info()
        outcome = SendOutcome(
            subscription_id=sub.id,
            owner_id=sub.owner_id,
            endpoint=sub.endpoint,
            status=DeliveryStatus.SENT,
        )

        async def attempt_once() -> None:
            try:
                await asyncio.to_thread(self._send, info, data)
            except Exception as exc:
                raise classify(exc) from exc

        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(self.config.PUSH_MAX_ATTEMPTS, 1)),
            wait=wait_exponential(
                multiplier=self.config.PUSH_BACKOFF_SECONDS,
                max=self.config.PUSH_BACKOFF_MAX_SECONDS,
            ),
            retry=retry_if_exception(lambda e: isinstance(e, PushSendError) and e.transient),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    outcome.attempts = attempt.retry_state.attempt_number
                    await attempt_once()
        except PushSendError as err:
            outcome.status_code = err.status_code
            outcome.error = str(err)
            if err.kind == PERMANENT:
                outcome.status = DeliveryStatus.PRUNED
            elif err.kind == STALE:
                outcome.status = DeliveryStatus.STALE
            else:
                outcome.status = DeliveryStatus.FAILED
                logger.warning(
                    "Push to %s failed after %d attempt(s): %s",
                    short_endpoint(sub.endpoint), outcome.attempts, err,
                )
        return outcome

    async def _record(self, report: DispatchReport) -> None:
        for outcome in report.outcomes:
            if outcome.status is DeliveryStatus.PRUNED:
                await self.registry.prune(outcome.endpoint)
            elif outcome.status is DeliveryStatus.STALE:
                logger.warning("Push subscription %s marked stale: %s", short_endpoint(outcome.endpoint), outcome.error)
                await self.registry.mark_stale(outcome.endpoint)
            elif outcome.status is DeliveryStatus.SENT:
                await self.registry.touch(outcome.endpoint)
            if report.notification_id is None:
                continue
            self.db.add(PushDeliveryLog(
                notification_id=report.notification_id,
                owner_id=outcome.owner_id,
                endpoint=outcome.endpoint,
                status=outcome.status.value,
                attempts=outcome.attempts,
                status_code=outcome.status_code,
                error=outcome.error,
            ))
        await self.db.commit()
