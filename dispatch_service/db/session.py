from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from dispatch_service.config import settings


def build_engine(url: str | None = None, **kwargs) -> AsyncEngine:
    """Create the async engine for *url* (defaults to DATABASE_URL)."""
    kwargs.setdefault("echo", settings.db_echo)
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url or settings.database_url, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


engine = build_engine()
SessionLocal = build_session_factory(engine)
