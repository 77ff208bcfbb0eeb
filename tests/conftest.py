import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./test.db")

from decimal import Decimal

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker

from cashback_ledger.main import app
from cashback_ledger.core.config import settings
from cashback_ledger.core.database import Base
from cashback_ledger.database_model import account, click, ledger_entry, payout, referral, transaction  # noqa: F401
from cashback_ledger.database_model.store import Store, CashbackType
from cashback_ledger.dependencies.get_db import get_db
from cashback_ledger.services.account_service import AccountService

ACCOUNT_ID = "user-a"
PERCENT_STORE_ID = "store-a"
FIXED_STORE_ID = "store-b"


@pytest_asyncio.fixture
async def test_engine(tmp_path):
    """File-backed database per test so separate sessions see each other's commits."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory):
    """Create a test database session."""
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def fast_retries(monkeypatch):
    monkeypatch.setattr(settings, "retry_backoff_seconds", 0)
    monkeypatch.setattr(settings, "distributed_locks_enabled", False)


@pytest_asyncio.fixture
async def stores(db_session: AsyncSession):
    """A 5% store with a click id placeholder and a flat 25.00 store."""
    db_session.add_all([
        Store(
            id=PERCENT_STORE_ID,
            name="Percent Store",
            affiliate_link="https://track.example.com/aff?store=a&sub={CLICK_ID}",
            cashback_type=CashbackType.PERCENTAGE.value,
            cashback_rate_value=Decimal("5.00"),
            is_active=True
        ),
        Store(
            id=FIXED_STORE_ID,
            name="Flat Store",
            affiliate_link="https://flat.example.com/deal?ref=cb",
            cashback_type=CashbackType.FIXED.value,
            cashback_rate_value=Decimal("25.00"),
            is_active=True
        ),
    ])
    await db_session.commit()
    return PERCENT_STORE_ID, FIXED_STORE_ID


@pytest_asyncio.fixture
async def test_account(db_session: AsyncSession, stores):
    """Create a test account with zero balances."""
    account_service = AccountService(db_session)
    new_account, _ = await account_service.create_or_update_account(
        ACCOUNT_ID,
        email="test@example.com",
        display_name="Test User"
    )
    return new_account


@pytest_asyncio.fixture
async def client(session_factory):
    """Create a test client with a fresh session per request."""
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def account_headers():
    return {"X-Account-Id": ACCOUNT_ID}


@pytest.fixture
def operator_headers():
    return {"X-Operator-Key": settings.operator_api_key}
