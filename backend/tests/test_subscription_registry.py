"""
Tests for SubscriptionRegistry – validation, upsert by endpoint, stale handling.
"""
from datetime import datetime, timedelta, timezone

import pytest

from portal.core.exceptions import ValidationError
from portal.models.push_subscription import PushSubscription
from portal.services.subscription_registry import (
    SubscriptionRegistry,
    normalize_key,
    short_endpoint,
    validate_endpoint,
)
from tests.conftest import AUTH, P256DH

ENDPOINT = "https://updates.push.services.mozilla.com/wpush/v2/abc"


# ── Validation ────────────────────────────────────────────────────────────────

def test_validate_endpoint_accepts_https():
    assert validate_endpoint(f"  {ENDPOINT} ") == ENDPOINT


def test_validate_endpoint_allows_http_on_localhost():
    assert validate_endpoint("http://localhost:8080/push/1") == "http://localhost:8080/push/1"


@pytest.mark.parametrize("endpoint", ["", "not a url", "/relative/path", "http://push.example.org/x", "ftp://push.example.org/x"])
def test_validate_endpoint_rejects(endpoint):
    with pytest.raises(ValidationError):
        validate_endpoint(endpoint)


def test_normalize_key_converts_standard_base64():
    assert normalize_key("ab+/cd==", "auth") == "ab-_cd"


@pytest.mark.parametrize("value", ["", "   ", "not base64!", "===="])
def test_normalize_key_rejects(value):
    with pytest.raises(ValidationError):
        normalize_key(value, "p256dh")


def test_short_endpoint():
    assert short_endpoint("https://x") == "https://x"
    assert short_endpoint("https://" + "a" * 100, keep=20).endswith("…")


# ── Register / unregister ─────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_register_creates_subscription(db, client_user):
    registry = SubscriptionRegistry(db)
    sub = await registry.register(client_user.id, ENDPOINT, P256DH, AUTH, user_agent="Firefox")
    await db.commit()

    assert sub.owner_id == client_user.id
    assert sub.is_active
    assert sub.subscription_info() == {"endpoint": ENDPOINT, "keys": {"p256dh": P256DH, "auth": AUTH}}
    assert await registry.count_for(client_user.id) == 1


@pytest.mark.asyncio
async def test_register_same_endpoint_twice_keeps_one_row(db, client_user):
    registry = SubscriptionRegistry(db)
    first = await registry.register(client_user.id, ENDPOINT, P256DH, AUTH)
    second = await registry.register(client_user.id, ENDPOINT, P256DH, "bmV3LWF1dGgtc2VjcmV0")
    await db.commit()

    assert first.id == second.id
    assert second.auth == "bmV3LWF1dGgtc2VjcmV0"
    assert len(await registry.list_active()) == 1


@pytest.mark.asyncio
async def test_register_rebinds_endpoint_to_new_owner(db, client_user, other_client):
    registry = SubscriptionRegistry(db)
    await registry.register(client_user.id, ENDPOINT, P256DH, AUTH)
    sub = await registry.register(other_client.id, ENDPOINT, P256DH, AUTH)
    await db.commit()

    assert sub.owner_id == other_client.id
    assert await registry.count_for(client_user.id) == 0
    assert await registry.count_for(other_client.id) == 1


@pytest.mark.asyncio
async def test_lost_insert_race_keeps_pending_work(db, client_user, other_client, monkeypatch):
    owner_id, other_id = client_user.id, other_client.id
    registry = SubscriptionRegistry(db)
    await registry.register(owner_id, ENDPOINT, P256DH, AUTH)
    await db.commit()
    # flushed but not yet committed in the caller's transaction
    await registry.register(owner_id, ENDPOINT + "/tablet", P256DH, AUTH)

    real_get = registry.get
    lookups = []

    async def get_missing_first(endpoint):
        # the first lookup misses, as if another request inserted right after it
        lookups.append(endpoint)
        return None if len(lookups) == 1 else await real_get(endpoint)

    monkeypatch.setattr(registry, "get", get_missing_first)
    sub = await registry.register(other_id, ENDPOINT, P256DH, AUTH)
    await db.commit()

    assert sub.owner_id == other_id
    assert await registry.count_for(owner_id) == 1
    assert await registry.count_for(other_id) == 1


@pytest.mark.asyncio
async def test_register_invalid_payload_stores_nothing(db, client_user):
    registry = SubscriptionRegistry(db)
    with pytest.raises(ValidationError):
        await registry.register(client_user.id, ENDPOINT, "", AUTH)
    with pytest.raises(ValidationError):
        await registry.register(client_user.id, "http://push.example.org/x", P256DH, AUTH)
    assert await registry.list_active() == []


@pytest.mark.asyncio
async def test_unregister_absent_endpoint_is_noop(db):
    assert await SubscriptionRegistry(db).unregister("https://push.example.org/unknown") is False


@pytest.mark.asyncio
async def test_unregister_only_own_subscription(db, client_user, other_client):
    registry = SubscriptionRegistry(db)
    await registry.register(client_user.id, ENDPOINT, P256DH, AUTH)

    assert await registry.unregister(ENDPOINT, owner_id=other_client.id) is False
    assert await registry.unregister(ENDPOINT, owner_id=client_user.id) is True
    assert await registry.get(ENDPOINT) is None


# ── Listing and stale handling ────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_list_active_filters_owners(db, client_user, other_client):
    registry = SubscriptionRegistry(db)
    await registry.register(client_user.id, ENDPOINT + "/1", P256DH, AUTH)
    await registry.register(other_client.id, ENDPOINT + "/2", P256DH, AUTH)

    assert {s.endpoint for s in await registry.list_active({client_user.id})} == {ENDPOINT + "/1"}
    assert len(await registry.list_active()) == 2
    assert await registry.list_active(set()) == []


@pytest.mark.asyncio
async def test_stale_subscription_excluded_until_reregistered(db, client_user):
    owner_id = client_user.id
    registry = SubscriptionRegistry(db)
    await registry.register(owner_id, ENDPOINT, P256DH, AUTH)
    await registry.mark_stale(ENDPOINT)
    db.expire_all()

    assert await registry.list_active() == []
    assert (await registry.get(ENDPOINT)).is_active is False

    sub = await registry.register(owner_id, ENDPOINT, P256DH, AUTH)
    assert sub.is_active
    assert len(await registry.list_active()) == 1


@pytest.mark.asyncio
async def test_prune_removes_subscription(db, client_user):
    registry = SubscriptionRegistry(db)
    await registry.register(client_user.id, ENDPOINT, P256DH, AUTH)

    assert await registry.prune(ENDPOINT) is True
    assert await registry.prune(ENDPOINT) is False


@pytest.mark.asyncio
async def test_delete_stale_before_keeps_recent_and_active(db, client_user):
    registry = SubscriptionRegistry(db)
    old = datetime.now(timezone.utc) - timedelta(days=40)
    db.add_all([
        PushSubscription(owner_id=client_user.id, endpoint=ENDPOINT + "/old", p256dh=P256DH, auth=AUTH,
                         is_active=False, last_used_at=old),
        PushSubscription(owner_id=client_user.id, endpoint=ENDPOINT + "/recent", p256dh=P256DH, auth=AUTH,
                         is_active=False),
        PushSubscription(owner_id=client_user.id, endpoint=ENDPOINT + "/active", p256dh=P256DH, auth=AUTH,
                         is_active=True, last_used_at=old),
    ])
    await db.commit()

    removed = await registry.delete_stale_before(datetime.now(timezone.utc) - timedelta(days=30))
    await db.commit()

    assert removed == 1
    assert await registry.get(ENDPOINT + "/old") is None
    assert await registry.get(ENDPOINT + "/recent") is not None
    assert await registry.get(ENDPOINT + "/active") is not None
