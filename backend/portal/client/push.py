"""
Client side of the push opt-in flow: fetch the VAPID key, let the platform
create a subscription for it, then hand the subscription to the server.
The client only counts as subscribed once the server has stored it.
"""
from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

logger = logging.getLogger(__name__)

# public VAPID key -> {"endpoint": ..., "keys": {"p256dh": ..., "auth": ...}}
CreateSubscription = Callable[[str], Awaitable[dict[str, Any]]]


class PushSetupError(Exception):
    """Opt-in or opt-out failed; the message is meant for the user."""


class PushSubscriptionClient:

    def __init__(self, http: httpx.AsyncClient):
        self.http = http
        self.endpoint: str | None = None
        self.is_subscribed = False

    async def fetch_public_key(self) -> str:
        try:
            resp = await self.http.get("/api/push/vapid-public-key")
            resp.raise_for_status()
            public_key = resp.json().get("publicKey")
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Could not load VAPID public key: %s", exc)
            raise PushSetupError("Push notifications are not available right now") from exc
        if not public_key:
            raise PushSetupError("Push notifications are not configured on the server")
        return public_key

    async def subscribe(self, create_subscription: CreateSubscription) -> str:
        """Runs the opt-in flow; returns the endpoint that was stored."""
        public_key = await self.fetch_public_key()
        subscription = await create_subscription(public_key)
        try:
            resp = await self.http.post("/api/push/subscribe", json=subscription)
            resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            message = _server_message(exc.response) or "Failed to subscribe to notifications"
            raise PushSetupError(message) from exc
        except httpx.HTTPError as exc:
            raise PushSetupError("Failed to subscribe to notifications") from exc

        self.endpoint = subscription["endpoint"]
        self.is_subscribed = True
        logger.info("Subscribed to push notifications")
        return self.endpoint

    async def unsubscribe(self) -> None:
        if not self.endpoint:
            return
        try:
            resp = await self.http.request(
                "DELETE", "/api/push/unsubscribe", json={"endpoint": self.endpoint}
            )
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise PushSetupError("Failed to unsubscribe") from exc
        self.endpoint = None
        self.is_subscribed = False


def _server_message(response: httpx.Response) -> str | None:
    try:
        body = response.json()
    except ValueError:
        return None
    if isinstance(body, dict):
        return body.get("message") or (body.get("detail") if isinstance(body.get("detail"), str) else None)
    return None
