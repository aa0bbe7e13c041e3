"""
Database Module

Async SQLAlchemy engine, session factory and declarative base.
PostgreSQL (asyncpg) in production; any async driver URL works, tests use
SQLite through aiosqlite.
"""

import logging

from datetime import datetime, timezone

import sqlalchemy as sa

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from credit_ledger.core.conf import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all ledger tables."""


class TimeZone(sa.TypeDecorator):
    """Timezone-aware UTC datetime, also on backends that drop tzinfo (SQLite)."""

    impl = sa.DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        value = value.astimezone(timezone.utc)
        if dialect.name == 'sqlite':
            return value.replace(tzinfo=None)
        return value

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


def create_async_engine_and_session(url: str) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create the async engine and session factory for a database URL.

    Args:
        url: SQLAlchemy async URL, e.g. ``postgresql+asyncpg://...``

    Returns:
        Tuple of (engine, session factory)
    """
    engine_kwargs = {
        'echo': settings.DATABASE_ECHO,
        'future': True,
        'pool_pre_ping': True,
    }
    if not url.startswith('sqlite'):
        engine_kwargs['pool_size'] = settings.DATABASE_POOL_SIZE
        engine_kwargs['max_overflow'] = settings.DATABASE_MAX_OVERFLOW

    try:
        engine = create_async_engine(url, **engine_kwargs)
    except Exception as e:
        logger.error(f'[DB] Failed to create database engine: {e}')
        raise

    db_session = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    return engine, db_session


async_engine, async_db_session = create_async_engine_and_session(settings.DATABASE_URL)


async def create_tables(engine: AsyncEngine | None = None) -> None:
    """Create all ledger tables that do not exist yet."""
    import credit_ledger.src.billing.ledger.models  # noqa: F401

    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_tables(engine: AsyncEngine | None = None) -> None:
    """Drop all ledger tables."""
    import credit_ledger.src.billing.ledger.models  # noqa: F401

    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
