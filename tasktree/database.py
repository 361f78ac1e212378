"""
Database layer for TaskTree.

Provides the SQLAlchemy ORM model for the task table (the single source of
truth for the hierarchy), async engine/session management, and translation
of store failures into the engine's error taxonomy.
"""

from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import AsyncGenerator, Optional

from sqlalchemy import Boolean, DateTime, Float, Index, Integer, String, Text, event
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.orm.exc import StaleDataError

from tasktree.exceptions import ConflictError, StorageUnavailableError, TaskTreeError
from tasktree.logging_config import get_logger

logger = get_logger(__name__)

# Database path in the user's data directory
_DATA_DIR = Path.home() / ".tasktree"
_DEFAULT_DB_PATH = _DATA_DIR / "tasktree.db"
_DEFAULT_DB_URL = f"sqlite+aiosqlite:///{_DEFAULT_DB_PATH}"


class Base(DeclarativeBase):
    """Base class for all ORM models."""
    pass


class TaskORM(Base):
    """
    SQLAlchemy ORM model for tasks.

    Each row carries its own fields plus the hierarchy metadata maintained
    by the engine: parent reference, level, materialized path, sibling
    order and the aggregate counters over direct children.
    """
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    due_date: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    estimated_duration: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    assignee: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    # Status and progress
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending", index=True)
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    auto_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Hierarchy
    parent_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True, index=True)
    hierarchy_level: Mapped[int] = mapped_column(Integer, nullable=False, default=0, index=True)
    hierarchy_path: Mapped[str] = mapped_column(String(1200), nullable=False, index=True)
    sibling_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Aggregates over direct children
    subtask_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_subtask_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Policies
    completion_behavior: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")
    progress_calculation: Mapped[str] = mapped_column(String(32), nullable=False, default="manual")

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    # Optimistic concurrency; bumped on every UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __table_args__ = (
        Index("ix_tasks_parent_sibling_order", "parent_id", "sibling_order", unique=True),
    )
    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return (
            f"<TaskORM(id={self.id}, title={self.title}, "
            f"level={self.hierarchy_level}, order={self.sibling_order})>"
        )


def _is_lock_error(exc: OperationalError) -> bool:
    message = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
    return "locked" in message or "busy" in message or "could not serialize" in message


def translate_db_error(exc: SQLAlchemyError) -> TaskTreeError:
    """
    Map a SQLAlchemy failure onto the engine's error taxonomy.

    Args:
        exc: Exception raised by SQLAlchemy during flush or commit

    Returns:
        ConflictError for concurrent-modification failures,
        StorageUnavailableError for everything else
    """
    if isinstance(exc, StaleDataError):
        return ConflictError("Task was modified by a concurrent request; retry the operation")
    if isinstance(exc, IntegrityError):
        return ConflictError(
            "Sibling order collided with a concurrent change; retry the operation",
            field="sibling_order",
        )
    if isinstance(exc, OperationalError) and _is_lock_error(exc):
        return ConflictError("Task store is busy with a conflicting transaction; retry the operation")
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return StorageUnavailableError("Connection to the task store was lost")
    return StorageUnavailableError(f"Task store unavailable: {exc.__class__.__name__}")


class DatabaseManager:
    """
    Manages database connections and session lifecycle.

    Handles async engine creation, session management, and database
    initialization for both production and testing scenarios.
    """

    def __init__(self, database_url: str = _DEFAULT_DB_URL, echo: bool = False):
        """
        Initialize database manager with connection URL.

        Args:
            database_url: SQLAlchemy database URL (default: local SQLite file)
            echo: Log every SQL statement
        """
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def _enable_sqlite_transactions(self, engine: AsyncEngine) -> None:
        """
        Let SQLite run real serializable transactions.

        The driver's own transaction handling defers BEGIN until the first
        write; emitting BEGIN ourselves makes the read-then-write sequences of
        reparent/reorder fail with a lock error instead of interleaving.
        """
        @event.listens_for(engine.sync_engine, "connect")
        def _do_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _do_begin(conn):
            conn.exec_driver_sql("BEGIN")

    async def initialize(self) -> None:
        """
        Initialize the database engine and create tables.

        Raises:
            StorageUnavailableError: If the store cannot be reached
        """
        try:
            logger.info(f"Initializing database: {self.database_url}")
            if self.database_url == _DEFAULT_DB_URL:
                _DATA_DIR.mkdir(parents=True, exist_ok=True)

            self.engine = create_async_engine(
                self.database_url,
                echo=self.echo,
            )
            if self.is_sqlite:
                self._enable_sqlite_transactions(self.engine)

            self.session_maker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

            # Create all tables
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

            logger.info("Database initialized successfully")
        except SQLAlchemyError as e:
            logger.error(f"Failed to initialize database: {e}", exc_info=True)
            raise StorageUnavailableError(f"Could not initialize task store: {e}") from e

    async def close(self) -> None:
        """
        Close the database engine and cleanup resources.
        """
        if self.engine:
            logger.info("Closing database connection")
            try:
                await self.engine.dispose()
                self.engine = None
                self.session_maker = None
                logger.info("Database connection closed successfully")
            except Exception as e:
                logger.error(f"Error closing database connection: {e}", exc_info=True)
                raise

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session wrapping exactly one transaction.

        Commits when the block exits normally; rolls back on any error. Store
        failures are re-raised as ConflictError / StorageUnavailableError.
        A cancelled block (timeout) never reaches commit, and closing the
        session discards the open transaction.

        Yields:
            AsyncSession for database operations

        Example:
            async with db_manager.get_session() as session:
                service = TaskService(session)
                await service.create_task(TaskCreate(title="Plan"))
        """
        if not self.session_maker:
            raise RuntimeError("DatabaseManager not initialized. Call initialize() first.")

        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except TaskTreeError:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                logger.error(f"Database session error, rolling back: {e}", exc_info=True)
                await session.rollback()
                raise translate_db_error(e) from e
            except Exception as e:
                logger.error(f"Database session error, rolling back: {e}", exc_info=True)
                await session.rollback()
                raise


# Global database manager instance
_db_manager: Optional[DatabaseManager] = None


def get_database_manager(database_url: str = _DEFAULT_DB_URL) -> DatabaseManager:
    """
    Get or create the global database manager instance.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        DatabaseManager instance
    """
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager(database_url)
    return _db_manager


async def init_database(database_url: str = _DEFAULT_DB_URL) -> DatabaseManager:
    """
    Initialize the database and return the manager instance.

    Convenience function for application startup.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Initialized DatabaseManager instance
    """
    db_manager = get_database_manager(database_url)
    await db_manager.initialize()
    return db_manager
