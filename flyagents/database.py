"""Async engine, session factory and table bootstrap for the machine registry."""

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from flyagents.config import settings

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_async_engine(
    settings.database_url,
    connect_args=_connect_args,
    echo=(settings.env == "development"),
)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Request-scoped session; lifecycle writes commit on their own."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


def _register_models() -> None:
    import flyagents.models  # noqa: F401  (machines, snapshots, secrets on Base.metadata)


async def init_db() -> None:
    """Create the registry tables if they are missing."""
    _register_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_db() -> None:
    """Drop every registry table (tests only)."""
    _register_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
