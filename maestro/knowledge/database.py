"""Async database connection management for the learning store."""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path

from loguru import logger
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from maestro.knowledge.models import Base


class LearningDatabase:
    """
    Owns the async engine and session maker for one database URL.

    Example:
        >>> db = LearningDatabase("sqlite+aiosqlite:///.maestro/learning.db")
        >>> await db.init()
        >>> async with db.session() as session:
        ...     await session.execute(query)
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.echo = echo
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None

    def get_engine(self) -> AsyncEngine:
        """Get or create the async database engine."""
        if self._engine is None:
            url = make_url(self.url)

            if url.get_backend_name() == "sqlite":
                if url.database and url.database != ":memory:":
                    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
                self._engine = create_async_engine(self.url, echo=self.echo)
            else:
                self._engine = create_async_engine(
                    self.url,
                    echo=self.echo,
                    pool_size=5,
                    max_overflow=10,
                    pool_timeout=30,
                    pool_recycle=3600,
                    pool_pre_ping=True,
                )

            logger.debug(f"Learning database engine created for {url.get_backend_name()}")

        return self._engine

    def get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        """Get or create the async session maker."""
        if self._session_maker is None:
            self._session_maker = async_sessionmaker(
                self.get_engine(),
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )

        return self._session_maker

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session.

        Commits on clean exit and rolls back on error.
        """
        session_maker = self.get_session_maker()

        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init(self) -> None:
        """Create all tables that don't exist yet."""
        async with self.get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.debug("Learning database schema initialized")

    async def close(self) -> None:
        """Close database connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
            logger.debug("Learning database connections closed")
