"""
Subscription Registry – storage for browser push subscriptions.

One row per device endpoint; the endpoint is the natural key, so registering
the same endpoint again updates the existing row instead of adding one.
No network calls happen here.
"""
from __future__ import annotations

import base64
import binascii
import logging
import re
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import TYPE_CHECKING
from urllib.parse import urlparse

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from portal.core.exceptions import ValidationError
from portal.models.push_subscription import PushSubscription

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

_B64URL_RE = re.compile(r"^[A-Za-z0-9_\-]+={0,2}$")
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


def validate_endpoint(endpoint: str) -> str:
    endpoint = (endpoint or "").strip()
    if not endpoint:
        raise ValidationError("Endpoint is required")
    parsed = urlparse(endpoint)
    if not parsed.netloc or parsed.hostname is None:
        raise ValidationError("Endpoint must be an absolute URL", {"field": "endpoint"})
    # push services are always https; plain http only for local test servers
    if parsed.scheme != "https" and not (
        parsed.scheme == "http" and parsed.hostname in _LOCAL_HOSTS
    ):
        raise ValidationError("Endpoint must use https", {"field": "endpoint"})
    return endpoint


def normalize_key(value: str, field: str) -> str:
    """Returns the key as unpadded base64url; standard base64 input is converted."""
    value = (value or "").strip().replace("+", "-").replace("/", "_")
    if not value or not _B64URL_RE.match(value):
        raise ValidationError(f"{field} must be a non-empty base64url string", {"field": field})
    stripped = value.rstrip("=")
    try:
        decoded = base64.urlsafe_b64decode(stripped + "=" * (-len(stripped) % 4))
    except (binascii.Error, ValueError):
        raise ValidationError(f"{field} is not valid base64url", {"field": field})
    if not decoded:
        raise ValidationError(f"{field} must not be empty", {"field": field})
    return stripped


class SubscriptionRegistry:

    def __init__(self, db: "AsyncSession"):
        self.db = db

    async def get(self, endpoint: str) -> PushSubscription | None:
        result = await self.db.execute(
            select(PushSubscription).where(PushSubscription.endpoint == endpoint)
        )
        return result.scalar_one_or_none()

    async def register(
        self,
        owner_id: uuid.UUID,
        endpoint: str,
        p256dh: str,
        auth: str,
        user_agent: str | None = None,
    ) -> PushSubscription:
        """Validates and upserts a subscription keyed by endpoint."""
        endpoint = validate_endpoint(endpoint)
        p256dh = normalize_key(p256dh, "p256dh")
        auth = normalize_key(auth, "auth")
        now = datetime.now(timezone.utc)

        sub = await self.get(endpoint)
        if sub is None:
            sub = PushSubscription(
                owner_id=owner_id,
                endpoint=endpoint,
                p256dh=p256dh,
                auth=auth,
                user_agent=user_agent,
                is_active=True,
                created_at=now,
                last_used_at=now,
            )
            try:
                # savepoint; a failed insert leaves the caller's pending work intact
                async with self.db.begin_nested():
                    self.db.add(sub)
            except IntegrityError:
                # Concurrent register for the same endpoint won the insert
                sub = await self.get(endpoint)
                if sub is None:
                    raise
            else:
                logger.info("Registered push subscription for owner %s", owner_id)
                return sub

        if sub.owner_id != owner_id:
            logger.info("Push endpoint rebound from owner %s to %s", sub.owner_id, owner_id)
        sub.owner_id = owner_id
        sub.p256dh = p256dh
        sub.auth = auth
        sub.user_agent = user_agent or sub.user_agent
        sub.is_active = True
        sub.last_used_at = now
        await self.db.flush()
        return sub

    async def unregister(self, endpoint: str, owner_id: uuid.UUID | None = None) -> bool:
        """Deletes the subscription; returns False (not an error) if there was none."""
        stmt = delete(PushSubscription).where(PushSubscription.endpoint == endpoint)
        if owner_id is not None:
            stmt = stmt.where(PushSubscription.owner_id == owner_id)
        result = await self.db.execute(stmt)
        await self.db.flush()
        return bool(result.rowcount)

    async def list_active(
        self, owner_ids: Iterable[uuid.UUID] | None = None
    ) -> list[PushSubscription]:
        """Active subscriptions of the given owners, or of everyone when owner_ids is None."""
        query = select(PushSubscription).where(PushSubscription.is_active.is_(True))
        if owner_ids is not None:
            owner_ids = set(owner_ids)
            if not owner_ids:
                return []
            query = query.where(PushSubscription.owner_id.in_(owner_ids))
        result = await self.db.execute(query.order_by(PushSubscription.created_at))
        return list(result.scalars().all())

    async def count_for(self, owner_id: uuid.UUID) -> int:
        result = await self.db.execute(
            select(func.count(PushSubscription.id)).where(
                PushSubscription.owner_id == owner_id,
                PushSubscription.is_active.is_(True),
            )
        )
        return result.scalar_one()

    async def mark_stale(self, endpoint: str) -> None:
        """Excludes the subscription from fan-out until the device registers again."""
        await self.db.execute(
            update(PushSubscription)
            .where(PushSubscription.endpoint == endpoint)
            .values(is_active=False, last_used_at=datetime.now(timezone.utc))
        )
        await self.db.flush()

    async def prune(self, endpoint: str) -> bool:
        """Removes a subscription the push service reported as gone."""
        removed = await self.unregister(endpoint)
        if removed:
            logger.info("Pruned push subscription %s", short_endpoint(endpoint))
        return removed

    async def touch(self, endpoint: str) -> None:
        await self.db.execute(
            update(PushSubscription)
            .where(PushSubscription.endpoint == endpoint)
            .values(last_used_at=datetime.now(timezone.utc))
        )

    async def delete_stale_before(self, cutoff: datetime) -> int:
        result = await self.db.execute(
            delete(PushSubscription).where(
                PushSubscription.is_active.is_(False),
                PushSubscription.last_used_at < cutoff,
            ).execution_options(synchronize_session=False)
        )
        await self.db.flush()
        return result.rowcount or 0


def short_endpoint(endpoint: str, keep: int = 48) -> str:
    """Endpoints are long capability URLs; keep logs readable."""
    return endpoint if len(endpoint) <= keep else endpoint[:keep] + "…"
