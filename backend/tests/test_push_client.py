"""
Tests for PushSubscriptionClient – the client side of the opt-in flow.
"""
import json

import httpx
import pytest

from portal.client.push import PushSetupError, PushSubscriptionClient

SUBSCRIPTION = {
    "endpoint": "https://push.example.org/send/device-1",
    "keys": {"p256dh": "BNcRdreALRFXTkOOUHK1EtK2wtaz5Ry4YfYCA_0QTpQtUbVlUls0VJXg7A8u-Ts1XbjhazAkj7I99e8QcYP7DkM", "auth": "tBHItJI5svbpez7KI4CCXg"},
}


def _client(handler) -> PushSubscriptionClient:
    return PushSubscriptionClient(
        httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://portal.test")
    )


def _server(public_key="BPublicKey", subscribe_status=201, subscribe_body=None):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        if request.url.path == "/api/push/vapid-public-key":
            if public_key is None:
                return httpx.Response(503, json={"success": False, "message": "Push notifications are not configured"})
            return httpx.Response(200, json={"publicKey": public_key})
        if request.url.path == "/api/push/subscribe":
            return httpx.Response(subscribe_status, json=subscribe_body or {"success": True, "subscriptionId": "s1"})
        if request.url.path == "/api/push/unsubscribe":
            return httpx.Response(200, json={"success": True, "removed": True})
        return httpx.Response(404)

    return handler, calls


async def _create_subscription(public_key: str) -> dict:
    assert public_key == "BPublicKey"
    return SUBSCRIPTION


@pytest.mark.asyncio
async def test_subscribe_posts_subscription():
    handler, calls = _server()
    push = _client(handler)

    endpoint = await push.subscribe(_create_subscription)

    assert endpoint == SUBSCRIPTION["endpoint"]
    assert push.is_subscribed is True
    assert json.loads(calls[-1].content) == SUBSCRIPTION


@pytest.mark.asyncio
async def test_missing_vapid_key_aborts_before_creating_subscription():
    handler, calls = _server(public_key=None)
    push = _client(handler)
    created = []

    async def create(public_key):
        created.append(public_key)
        return SUBSCRIPTION

    with pytest.raises(PushSetupError):
        await push.subscribe(create)

    assert created == []
    assert push.is_subscribed is False
    assert [c.url.path for c in calls] == ["/api/push/vapid-public-key"]


@pytest.mark.asyncio
async def test_empty_vapid_key_is_rejected():
    handler, _ = _server(public_key="")
    with pytest.raises(PushSetupError, match="not configured"):
        await _client(handler).fetch_public_key()


@pytest.mark.asyncio
async def test_rejected_subscription_not_marked_subscribed():
    handler, _ = _server(
        subscribe_status=400,
        subscribe_body={"success": False, "message": "Endpoint must use https"},
    )
    push = _client(handler)

    with pytest.raises(PushSetupError, match="Endpoint must use https"):
        await push.subscribe(_create_subscription)

    assert push.is_subscribed is False
    assert push.endpoint is None


@pytest.mark.asyncio
async def test_unsubscribe_resets_state():
    handler, calls = _server()
    push = _client(handler)
    await push.subscribe(_create_subscription)

    await push.unsubscribe()

    assert push.is_subscribed is False
    assert calls[-1].method == "DELETE"
    assert json.loads(calls[-1].content) == {"endpoint": SUBSCRIPTION["endpoint"]}


@pytest.mark.asyncio
async def test_unsubscribe_when_not_subscribed_is_noop():
    handler, calls = _server()
    await _client(handler).unsubscribe()
    assert calls == []
