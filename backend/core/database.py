from sqlalchemy.orm import declarative_base
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
from sqlalchemy import text, Column, DateTime, func, TypeDecorator, CHAR
from sqlalchemy.dialects.postgresql import UUID
import time
import uuid
from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from core.logging import structured_logger
from core.exceptions.api_exceptions import DatabaseException

Base = declarative_base()
CHAR_LENGTH = 255


class GUID(TypeDecorator):
    """Platform-independent GUID type.

    Uses PostgreSQL's UUID type, otherwise uses
    CHAR(36), storing as stringified UUID values with hyphens.
    """
    impl = CHAR

    cache_ok = True

    def load_dialect_impl(self, dialect):
        if dialect.name == 'postgresql':
            return dialect.type_descriptor(UUID())
        else:
            return dialect.type_descriptor(CHAR(36))

    def process_bind_param(self, value, dialect):
        if value is None:
            return value
        return str(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return value
        if not isinstance(value, uuid.UUID):
            return uuid.UUID(value)
        return value


class BaseModel(Base):
    """Base model with UUID primary key and timestamps"""
    __abstract__ = True
    # Server-side timestamps are fetched on flush; an expired attribute would need lazy IO under asyncio
    __mapper_args__ = {"eager_defaults": True}

    id = Column(GUID(), primary_key=True, default=uuid.uuid4, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())


class DatabaseManager:
    """Owns the engine and session factory for the lifetime of the process.

    Built once by the application factory and handed to whatever needs a
    session; nothing reaches for a module-level engine.
    """

    def __init__(
        self,
        database_uri: Optional[str] = None,
        echo: bool = False,
        engine: Optional[AsyncEngine] = None,
    ):
        if engine is None:
            if not database_uri:
                raise DatabaseException(message="Database URI not configured.")
            engine = create_async_engine(
                database_uri,
                echo=echo,
                pool_pre_ping=True,
                pool_recycle=3600,
                pool_size=10,
                max_overflow=20,
                pool_timeout=30
            )
        self.engine = engine
        self.session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        self._connection_failures = 0

    async def create_all(self):
        """Create every table known to the metadata (local/dev and tests only)."""
        import models  # noqa: F401  registers all tables on Base.metadata

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        async with self.session_factory() as session:
            yield session

    async def health_check(self) -> dict:
        """Perform database health check."""
        start_time = time.time()

        try:
            async with self.session_factory() as session:
                result = await session.execute(text("SELECT 1"))
                result.fetchone()

            response_time = (time.time() - start_time) * 1000
            self._connection_failures = 0
            return {"status": "healthy", "response_time_ms": response_time}

        except Exception as e:
            self._connection_failures += 1
            response_time = (time.time() - start_time) * 1000

            structured_logger.error(
                message="Database health check failed",
                metadata={
                    "response_time_ms": response_time,
                    "connection_failures": self._connection_failures,
                    "error_type": type(e).__name__,
                },
                exception=e,
            )

            return {
                "status": "unhealthy",
                "response_time_ms": response_time,
                "connection_failures": self._connection_failures,
                "error": str(e),
            }

    async def dispose(self):
        await self.engine.dispose()
