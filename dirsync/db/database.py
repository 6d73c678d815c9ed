"""
Catalog database engine and sessions.

The database catalog keeps its rows in one SQLAlchemy async engine. SQLite
(through aiosqlite) is the default target; any other async driver URL is
passed through unchanged.
"""

import re
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Optional

import logfire
from sqlalchemy import Column, DateTime, Integer, MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base, declared_attr
from sqlalchemy.pool import StaticPool

from dirsync.core.config import settings


metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "pk": "pk_%(table_name)s"
    }
)

Base = declarative_base(metadata=metadata)

_SYNC_SQLITE_PREFIX = "sqlite:///"
_ASYNC_SQLITE_PREFIX = "sqlite+aiosqlite:///"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def async_url(url: str) -> str:
    """Point a plain ``sqlite:///`` URL at the aiosqlite driver."""
    if url.startswith(_SYNC_SQLITE_PREFIX):
        return _ASYNC_SQLITE_PREFIX + url[len(_SYNC_SQLITE_PREFIX):]
    return url


class DatabaseManager:
    """
    Owns the catalog's async engine.

    The engine is created on first use. SQLite databases share a single
    connection, so an in-memory database lives as long as the engine does.
    """

    def __init__(self, database_url: Optional[str] = None, echo: Optional[bool] = None):
        self.url = async_url(database_url or settings.database_url)
        self.echo = settings.database_echo if echo is None else echo
        self._engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    def _connect(self) -> async_sessionmaker:
        if self.is_sqlite:
            options = {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
        else:
            options = {"pool_pre_ping": True}
        self._engine = create_async_engine(self.url, echo=self.echo, **options)
        self._sessions = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            autoflush=False,
            expire_on_commit=False
        )
        logfire.instrument_sqlalchemy(engine=self._engine.sync_engine)
        logfire.debug("Catalog database engine created", sqlite=self.is_sqlite)
        return self._sessions

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._connect()
        return self._engine

    @asynccontextmanager
    async def session_scope(self) -> AsyncIterator[AsyncSession]:
        """
        One transaction against the catalog database.

        Commits when the block exits normally and rolls back when it raises.
        """
        sessions = self._sessions or self._connect()
        async with sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logfire.info("Catalog tables ready", tables=sorted(Base.metadata.tables))

    async def drop_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        logfire.warning("Catalog tables dropped")

    async def dispose(self) -> None:
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logfire.info("Catalog database engine disposed")


class BaseModel(Base):
    """Surrogate key and timestamps shared by persisted rows."""

    __abstract__ = True

    id = Column(Integer, primary_key=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow, nullable=False)

    @declared_attr
    def __tablename__(cls):
        # CatalogEntityRecord -> catalog_entity_record
        return re.sub(r"(?<!^)(?=[A-Z])", "_", cls.__name__).lower()


__all__ = [
    "Base",
    "BaseModel",
    "DatabaseManager",
    "async_url"
]
