"""
Shared pytest fixtures for the portal notification tests.

Uses SQLite in-memory with StaticPool so all sessions share one connection,
meaning data written in one session is visible to others (important for HTTP client tests).
"""
import base64
import uuid
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.pool import StaticPool

import portal.models  # noqa – registers all SQLAlchemy models with Base.metadata
from portal.core.config import settings
from portal.core.database import Base, get_db
from portal.core.security import hash_password, create_access_token
from portal.main import app
from portal.models.user import User, UserRole
from portal.tasks import push_tasks

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

def _browser_p256dh() -> str:
    """A real uncompressed P-256 public key, as a browser subscription carries it."""
    key = ec.generate_private_key(ec.SECP256R1()).public_key()
    raw = key.public_bytes(Encoding.X962, PublicFormat.UncompressedPoint)
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


# Subscription keys (base64url, unpadded)
P256DH = _browser_p256dh()
AUTH = "tBHItJI5svbpez7KI4CCXg"


# ── Shared engine (function-scoped: fresh DB per test) ───────────────────────

@pytest_asyncio.fixture
async def engine():
    """Creates a fresh in-memory SQLite engine per test with a shared connection pool."""
    eng = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,          # single shared connection → all sessions see same data
    )
    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield eng

    async with eng.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await eng.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncSession:
    """Async DB session for direct data inspection inside tests."""
    async with session_factory() as session:
        yield session


# ── HTTP client fixture ───────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def client(session_factory, monkeypatch) -> AsyncClient:
    """
    FastAPI test client with get_db overridden to use the test engine.
    Background push dispatch opens its sessions from the same factory.
    """
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    monkeypatch.setattr(push_tasks, "AsyncSessionLocal", session_factory)
    monkeypatch.setattr(settings, "USE_CELERY", False)
    monkeypatch.setattr(settings, "SENDGRID_API_KEY", "")

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def push_configured(monkeypatch):
    """VAPID keys present; the actual send is replaced per test where needed."""
    monkeypatch.setattr(settings, "VAPID_PUBLIC_KEY", "BEl62iUYgUivxIkv69yViEuiBIa-Ib9-SkvMeAtA3LFgDzkrxZJjSgSnfckjBJuBkr3qBUYIHBQFLXYp5Nksh8U")
    monkeypatch.setattr(settings, "VAPID_PRIVATE_KEY", "test-private-key")


@pytest.fixture
def push_unconfigured(monkeypatch):
    monkeypatch.setattr(settings, "VAPID_PUBLIC_KEY", "")
    monkeypatch.setattr(settings, "VAPID_PRIVATE_KEY", "")


# ── User fixtures ─────────────────────────────────────────────────────────────

async def make_user(db, email: str, role: UserRole, is_active: bool = True) -> User:
    u = User(
        id=uuid.uuid4(),
        email=email,
        name=email.split("@")[0],
        hashed_password=hash_password("testpass123"),
        role=role.value,
        is_active=is_active,
        created_at=datetime.now(timezone.utc),
    )
    db.add(u)
    await db.commit()
    await db.refresh(u)
    return u


@pytest_asyncio.fixture
async def admin_user(db) -> User:
    return await make_user(db, "admin@test.de", UserRole.ADMIN)


@pytest_asyncio.fixture
async def client_user(db) -> User:
    return await make_user(db, "client@test.de", UserRole.CLIENT)


@pytest_asyncio.fixture
async def other_client(db) -> User:
    return await make_user(db, "other@test.de", UserRole.CLIENT)


@pytest.fixture
def admin_token(admin_user) -> str:
    return create_access_token(admin_user.id, admin_user.role)


@pytest.fixture
def client_token(client_user) -> str:
    return create_access_token(client_user.id, client_user.role)


@pytest.fixture
def other_token(other_client) -> str:
    return create_access_token(other_client.id, other_client.role)


# ── Helper ────────────────────────────────────────────────────────────────────

def auth_headers(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def subscription_payload(n: int = 0) -> dict:
    return {
        "endpoint": f"https://fcm.googleapis.com/fcm/send/device-{n}",
        "keys": {"p256dh": P256DH, "auth": AUTH},
    }
