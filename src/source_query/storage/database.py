"""Database setup with SQLAlchemy async support (SQLite for local, Postgres for prod)."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy import JSON as SA_JSON
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, relationship

try:
    # Optional: enables JSONB automatically on Postgres
    from sqlalchemy.dialects.postgresql import JSONB as PG_JSONB
except ImportError:  # pragma: no cover
    PG_JSONB = None


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _json_type():
    """
    Use JSONB on Postgres when available, otherwise JSON.
    Keeps models portable across SQLite/Postgres.
    """
    if PG_JSONB is None:
        return SA_JSON
    return SA_JSON().with_variant(PG_JSONB, "postgresql")


class SourceORM(Base):
    """Sources table - registered URLs and uploaded documents."""

    __tablename__ = "sources"

    id = Column(String, primary_key=True)
    kind = Column(String, nullable=False, default="website")  # "website" | "document"
    origin = Column(Text, nullable=False)
    # sha256 of origin; one source per origin per installation
    origin_hash = Column(String, nullable=False, unique=True)
    title = Column(String, nullable=True)
    description = Column(Text, nullable=True)

    status = Column(String, nullable=False, default="unknown")
    status_detail = Column(_json_type(), nullable=True)
    owner_id = Column(String, nullable=False)

    last_scraped = Column(DateTime(timezone=True), nullable=True)
    embeddings = Column(_json_type(), nullable=True)  # {"count", "last_updated"}

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    content = relationship(
        "ScrapedContentORM",
        back_populates="source",
        cascade="all, delete-orphan",
        uselist=False,
    )

    __table_args__ = (
        Index("idx_sources_owner", "owner_id"),
        Index("idx_sources_status", "status"),
    )


class ScrapedContentORM(Base):
    """Latest extracted content per source (one row per source)."""

    __tablename__ = "scraped_contents"

    source_id = Column(String, ForeignKey("sources.id", ondelete="CASCADE"), primary_key=True)
    owner_id = Column(String, nullable=False)
    url = Column(String, nullable=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False, default="")
    body = Column(Text, nullable=False)
    content_length = Column(Integer, nullable=False, default=0)
    status_code = Column(Integer, nullable=True)
    scraped_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    source = relationship("SourceORM", back_populates="content")

    __table_args__ = (
        Index("idx_scraped_contents_owner", "owner_id"),
    )


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def create_engine_for(db_url: str, debug: bool = False) -> AsyncEngine:
    """Create an async engine with pooling suited to the backend."""
    engine_kwargs = {
        "echo": debug,
    }

    # Pooling options should NOT be forced on SQLite.
    if not _is_sqlite(db_url):
        engine_kwargs.update(
            {
                "pool_pre_ping": True,
                "pool_size": 5,
                "max_overflow": 5,
            }
        )

    return create_async_engine(db_url, **engine_kwargs)


def get_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to *engine*."""
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncIterator[AsyncSession]:
    """Open a short-lived session; background jobs use one per step."""
    async with factory() as session:
        yield session


async def init_database(engine: AsyncEngine):
    """
    Initialize the database, creating tables if they don't exist.

    For production, you may later prefer Alembic migrations.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

