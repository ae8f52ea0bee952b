# langcenter/storage/db.py
from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from langcenter.config import settings

class Base(DeclarativeBase):
    pass

def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(
        url,
        future=True,
        pool_pre_ping=True,
        echo=False,
    )

def make_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

engine = make_engine(settings.db_url)

SessionLocal: async_sessionmaker[AsyncSession] = make_sessionmaker(engine)

async def create_all(bind: AsyncEngine) -> None:
    # models must be imported so their tables are registered on Base.metadata
    import langcenter.storage.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
