# nima/core/database.py
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase

from nima.core.config import get_database_url

# Seconds a SQLite writer waits on the file lock. Concurrent ledger writes queue here.
SQLITE_BUSY_TIMEOUT = 30


def make_engine(db_url: str) -> AsyncEngine:
    """SQLite for development and tests, pooled MySQL in production."""
    if db_url.startswith("sqlite"):
        return create_async_engine(
            db_url,
            echo=False,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        )
    return create_async_engine(
        db_url,
        pool_pre_ping=True,
        pool_recycle=3600,
    )


engine = make_engine(get_database_url())

# Background workers open their own sessions from this factory
SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


class Base(DeclarativeBase):
    pass


async def get_db():
    async with SessionLocal() as session:
        yield session


async def init_models(bind=None):
    # Models must be imported so their tables are registered on Base.metadata
    import nima.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
