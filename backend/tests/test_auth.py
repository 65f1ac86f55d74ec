"""
Tests for /api/auth – login, refresh, /me.
"""
import pytest
from tests.conftest import auth_headers


BASE = "/api/auth"


# ── Login ─────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_login_valid(client, admin_user):
    resp = await client.post(f"{BASE}/login", json={
        "email": "admin@test.de",
        "password": "testpass123",
    })
    assert resp.status_code == 200
    data = resp.json()
    assert data["access_token"]
    assert data["refresh_token"]
    assert data["token_type"] == "bearer"


@pytest.mark.asyncio
async def test_login_wrong_password(client, admin_user):
    resp = await client.post(f"{BASE}/login", json={
        "email": "admin@test.de",
        "password": "wrongpassword",
    })
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_login_unknown_email(client):
    resp = await client.post(f"{BASE}/login", json={
        "email": "nobody@test.de",
        "password": "testpass123",
    })
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_login_inactive_user(client, db, client_user):
    client_user.is_active = False
    await db.commit()

    resp = await client.post(f"{BASE}/login", json={
        "email": "client@test.de",
        "password": "testpass123",
    })
    assert resp.status_code == 400


# ── Refresh ───────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_refresh_valid(client, admin_user):
    login = await client.post(f"{BASE}/login", json={
        "email": "admin@test.de",
        "password": "testpass123",
    })
    refresh_token = login.json()["refresh_token"]

    resp = await client.post(f"{BASE}/refresh", json={"refresh_token": refresh_token})
    assert resp.status_code == 200
    assert resp.json()["access_token"]


@pytest.mark.asyncio
async def test_refresh_invalid_token(client):
    resp = await client.post(f"{BASE}/refresh", json={"refresh_token": "invalid.token.here"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_access_token_is_not_a_refresh_token(client, admin_token):
    resp = await client.post(f"{BASE}/refresh", json={"refresh_token": admin_token})
    assert resp.status_code == 401


# ── /me ───────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_me_returns_user_info(client, client_user, client_token):
    resp = await client.get(f"{BASE}/me", headers=auth_headers(client_token))
    assert resp.status_code == 200
    data = resp.json()
    assert data["email"] == "client@test.de"
    assert data["role"] == "client"
    assert data["id"] == str(client_user.id)


@pytest.mark.asyncio
async def test_me_without_token(client):
    resp = await client.get(f"{BASE}/me")
    assert resp.status_code in (401, 403)  # HTTPBearer answers 403 when the header is missing


@pytest.mark.asyncio
async def test_me_with_garbage_token(client):
    resp = await client.get(f"{BASE}/me", headers=auth_headers("not-a-jwt"))
    assert resp.status_code == 401
