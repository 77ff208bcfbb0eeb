from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from .config import settings


class Base(DeclarativeBase):
    pass


def utcnow() -> datetime:
    # Set client-side so the value is loaded on the instance after flush
    return datetime.now(timezone.utc)


engine = create_async_engine(
    settings.async_database_url,
    echo=settings.debug,
    future=True
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False
)


async def init_db() -> None:
    """Create all tables registered on the declarative base."""
    from ..database_model import account, click, ledger_entry, payout, referral, store, transaction  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
