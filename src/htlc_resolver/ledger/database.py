"""Ledger engine and session management."""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, AsyncContextManager, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from htlc_resolver.config import get_settings
from htlc_resolver.ledger.models import Base

SessionScope = Callable[[], AsyncContextManager[AsyncSession]]

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def normalize_url(db_url: str) -> str:
    """Use the aiosqlite driver for plain sqlite URLs."""
    if db_url.startswith("sqlite:///") and "aiosqlite" not in db_url:
        return db_url.replace("sqlite:///", "sqlite+aiosqlite:///")
    return db_url


def _ensure_sqlite_dir(db_url: str) -> None:
    if db_url.startswith("sqlite") and ":memory:" not in db_url:
        path = db_url.split(":///", 1)[-1]
        Path(path).parent.mkdir(parents=True, exist_ok=True)


def get_engine() -> AsyncEngine:
    """Get or create the ledger engine."""
    global _engine
    if _engine is None:
        settings = get_settings()
        db_url = normalize_url(settings.database_url)
        _ensure_sqlite_dir(db_url)
        _engine = create_async_engine(db_url, echo=settings.debug and not settings.is_production)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            bind=get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


def session_scope(factory: async_sessionmaker[AsyncSession]) -> SessionScope:
    """Build a commit-on-success session context from a session factory."""

    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession, None]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    return scope


@asynccontextmanager
async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Session on the configured ledger, committed on success."""
    async with session_scope(get_session_factory())() as session:
        yield session


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
