"""
Database configuration and session management

Pooling is configured per backend:
- PostgreSQL: QueuePool sized from settings, pre-ping enabled
- SQLite (development/tests): NullPool, busy timeout, and BEGIN IMMEDIATE so
  concurrent writers queue on the database lock instead of failing upgrades
"""
from datetime import timezone

from sqlalchemy import DateTime, event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool
from sqlalchemy.types import TypeDecorator

from marketplace.core.config import settings

Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """
    Timezone-aware UTC datetime column.

    SQLite drops tzinfo on the way in, so naive values read back are
    re-tagged as UTC. Aware values are normalized to UTC before storage.
    """
    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def _install_sqlite_transaction_hooks(engine: AsyncEngine) -> None:
    """Take the write lock when the transaction opens, not on first write."""

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pooling appropriate for the backend."""
    if url.startswith("sqlite"):
        engine = create_async_engine(
            url,
            echo=echo,
            poolclass=NullPool,
            connect_args={"timeout": settings.SQLITE_BUSY_TIMEOUT_SECONDS},
        )
        _install_sqlite_transaction_hooks(engine)
        return engine

    if settings.ENVIRONMENT == "production":
        pool_config = {
            "pool_size": settings.DB_POOL_SIZE,
            "max_overflow": settings.DB_MAX_OVERFLOW,
            "pool_recycle": settings.DB_POOL_RECYCLE,
            "pool_pre_ping": True,
        }
    else:
        pool_config = {
            "pool_size": 2,
            "max_overflow": 5,
            "pool_pre_ping": True,
        }

    return create_async_engine(url, echo=echo, **pool_config)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create tables for all registered models (dev/test convenience)."""
    # Register models on Base.metadata
    import marketplace.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

AsyncSessionLocal = build_session_factory(engine)


async def get_db() -> AsyncSession:
    """Dependency for getting async database sessions"""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

