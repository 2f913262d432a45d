"""
SQLAlchemy 2.0 Database Configuration

Declarative base, shared mixins and async engine/session construction.
Engines are built explicitly by the caller (see ``bootstrap``) instead of at
import time, so tests can hand every component their own session factory.
"""

from datetime import UTC, datetime
from urllib.parse import quote_plus

import structlog
from sqlalchemy import DateTime, text
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from simdesk.platform.settings import Settings, settings

logger = structlog.get_logger(__name__)

# ==========================================
# Database URLs from settings
# ==========================================


def get_database_url(config: Settings | None = None) -> str:
    """Get the async database URL from settings."""
    config = config or settings
    database = config.database

    if database.url:
        url = database.url
    elif config.is_development and not database.password:
        # In development, use SQLite if PostgreSQL is not configured
        url = "sqlite:///./simdesk_dev.sqlite"
    else:
        username = quote_plus(database.username)
        password = quote_plus(database.password) if database.password else ""
        url = f"postgresql://{username}:{password}@{database.host}:{database.port}/{database.database}"

    # Convert to async driver
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


# ==========================================
# SQLAlchemy 2.0 Declarative Base
# ==========================================


class Base(DeclarativeBase):
    """Base class for all database models using SQLAlchemy 2.0 declarative mapping."""

    pass


class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )


# ==========================================
# Engine and Session Management
# ==========================================


def create_engine_from_settings(config: Settings | None = None) -> AsyncEngine:
    """Create the asynchronous engine."""
    config = config or settings
    url = get_database_url(config)

    if make_url(url).get_backend_name().startswith("sqlite"):
        return create_async_engine(
            url,
            echo=config.database.echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )

    return create_async_engine(
        url,
        echo=config.database.echo,
        pool_size=config.database.pool_size,
        max_overflow=config.database.max_overflow,
        pool_timeout=config.database.pool_timeout,
        pool_recycle=config.database.pool_recycle,
        pool_pre_ping=config.database.pool_pre_ping,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build the session factory every service receives."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


# ==========================================
# Database Initialization
# ==========================================


async def create_all_tables_async(engine: AsyncEngine) -> None:
    """Create all tables in the database asynchronously."""
    # Import models so they register with Base.metadata
    import simdesk.platform.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_health(session_factory: async_sessionmaker[AsyncSession]) -> bool:
    """Check if the database is accessible."""
    try:
        async with session_factory() as session:
            await session.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError as e:
        logger.warning("Database health check failed", error=str(e))
        return False


__all__ = [
    "Base",
    "TimestampMixin",
    "get_database_url",
    "create_engine_from_settings",
    "create_session_factory",
    "create_all_tables_async",
    "check_database_health",
]
