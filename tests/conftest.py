"""Shared test fixtures.

Every test gets its own SQLite database file (aiosqlite) with the schema
created from the ORM metadata. Redis is not initialised unless a test asks
for ``mock_redis``, so rate limiting is skipped and broadcasts are no-ops.
"""

from __future__ import annotations

import itertools
import os
import tempfile
from collections.abc import AsyncGenerator, Awaitable, Callable
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from kcr.accounts.service import create_account
from kcr.auth.jwt import create_access_token, reset_keys
from kcr.config import get_settings
from kcr.database import close_db, get_engine, get_session_factory, init_db
from kcr.db.base import Base
from kcr.db.models import Account, Coupon, CouponCategory, DiscountType, Reason
from kcr.points import ledger
from kcr.rewards.catalog import create_coupon

_code_counter = itertools.count(1)


def _ensure_test_keys() -> None:
    """Generate an RSA key pair for JWT tests and point settings at it."""
    if os.environ.get("KCR_JWT_PRIVATE_KEY_PATH", "").startswith(tempfile.gettempdir()):
        return

    tmpdir = tempfile.mkdtemp(prefix="kcr_test_keys_")
    private_path = os.path.join(tmpdir, "jwt_private.pem")
    public_path = os.path.join(tmpdir, "jwt_public.pem")

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with open(private_path, "wb") as f:
        f.write(key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption(),
        ))
    with open(public_path, "wb") as f:
        f.write(key.public_key().public_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        ))

    os.environ["KCR_JWT_PRIVATE_KEY_PATH"] = private_path
    os.environ["KCR_JWT_PUBLIC_KEY_PATH"] = public_path
    get_settings.cache_clear()
    reset_keys()


@pytest.fixture(autouse=True)
def _test_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    _ensure_test_keys()
    monkeypatch.setenv("KCR_LOG_FORMAT", "console")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest_asyncio.fixture
async def database(tmp_path) -> AsyncGenerator[None, None]:
    """Fresh SQLite database with all tables."""
    await init_db(f"sqlite+aiosqlite:///{tmp_path / 'kcr_test.db'}")
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(database: None) -> AsyncGenerator[AsyncSession, None]:
    """A direct database session for arranging data and asserting on it."""
    async with get_session_factory()() as session:
        yield session


@pytest_asyncio.fixture
async def client(database: None) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client over the ASGI app (lifespan is not run)."""
    from kcr.main import create_app

    app = create_app()
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def mock_redis(monkeypatch: pytest.MonkeyPatch) -> MagicMock:
    """Install a mocked Redis client: counting pipeline, publish and ping."""
    counter = itertools.count(1)
    pipe = MagicMock()
    pipe.execute = AsyncMock(side_effect=lambda: [next(counter), True])

    redis = MagicMock()
    redis.pipeline.return_value = pipe
    redis.publish = AsyncMock(return_value=1)
    redis.ping = AsyncMock(return_value=True)
    monkeypatch.setattr("kcr.redis_client._pool", redis)
    return redis


@pytest.fixture
def auth_headers() -> Callable[..., dict[str, str]]:
    """Factory: bearer headers for an account id, optionally with a role."""

    def _headers(account_id: int, role: str | None = None) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(account_id, role=role)}"}

    return _headers


@pytest.fixture
def make_account(db_session: AsyncSession) -> Callable[..., Awaitable[Account]]:
    """Factory: committed account holding ``balance`` points."""

    async def _make(username: str | None = None, balance: int = 0) -> Account:
        username = username or f"traveler{next(_code_counter)}"
        account = await create_account(db_session, username, welcome_bonus=False)
        if balance > 0:
            await ledger.grant(db_session, account.id, balance, Reason.ADMIN_ADJUSTMENT, description="Test funds")
        await db_session.commit()
        return account

    return _make


@pytest.fixture
def make_coupon(db_session: AsyncSession) -> Callable[..., Awaitable[Coupon]]:
    """Factory: committed coupon valid from yesterday for 30 days, cost 30."""

    async def _make(**overrides) -> Coupon:
        now = datetime.now(timezone.utc)
        fields = {
            "title": "Houseboat dinner",
            "description": "Dinner cruise on the Alleppey backwaters",
            "code": f"KERALA{next(_code_counter)}",
            "discount": "20% off",
            "discount_type": DiscountType.PERCENTAGE,
            "discount_value": 20,
            "points_cost": 30,
            "category": CouponCategory.DINING,
            "partner_name": "Backwater Cruises",
            "valid_from": now - timedelta(days=1),
            "valid_until": now + timedelta(days=30),
        }
        fields.update(overrides)
        coupon = await create_coupon(db_session, **fields)
        await db_session.commit()
        return coupon

    return _make
