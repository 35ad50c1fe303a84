"""
Centralized Database Factory - Single Source of Truth
Engine creation, session factory and transactional scopes for all services.
"""

import logging
import re
import threading
from contextlib import contextmanager
from typing import Callable, ContextManager, Generator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import NullPool, StaticPool

from config.config import config

logger = logging.getLogger(__name__)

SessionScope = Callable[[], ContextManager[Session]]


SQLITE_BUSY_TIMEOUT_MS = 30000


def is_sqlite_memory(dsn: str) -> bool:
    return dsn.startswith("sqlite") and (dsn.rstrip("/") == "sqlite:" or ":memory:" in dsn or "mode=memory" in dsn)


def create_db_engine(dsn: str, echo: bool = False, pool_size: int = 10, max_overflow: int = 20) -> Engine:
    """Create an engine with the connection settings used throughout the project."""
    engine_kwargs = {
        "pool_size": pool_size,
        "max_overflow": max_overflow,
        "echo": echo,
        "pool_pre_ping": True,
    }

    # Handle SQLite vs PostgreSQL
    if dsn.startswith("sqlite"):
        # An in-memory database lives in one connection; a file gets one per session
        engine_kwargs.update({
            "poolclass": StaticPool if is_sqlite_memory(dsn) else NullPool,
            "connect_args": {"check_same_thread": False}
        })
        engine_kwargs.pop("pool_size", None)
        engine_kwargs.pop("max_overflow", None)

    engine = create_engine(dsn, **engine_kwargs)
    _setup_connection_events(engine, is_sqlite_memory(dsn))
    return engine


def _setup_connection_events(engine: Engine, in_memory: bool = False) -> None:
    """Setup SQLAlchemy connection event listeners"""

    if engine.dialect.name == "sqlite":
        # Writers queue on the file lock at BEGIN instead of failing on lock upgrade
        begin_statement = "BEGIN" if in_memory else "BEGIN IMMEDIATE"

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            # Let SQLAlchemy emit BEGIN itself so SAVEPOINT works with pysqlite
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.execute(f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}")
            cursor.close()

        @event.listens_for(engine, "begin")
        def do_begin(conn):
            conn.exec_driver_sql(begin_statement)

    elif engine.dialect.name == "postgresql":

        @event.listens_for(engine, "connect")
        def set_postgresql_settings(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("SET timezone TO 'UTC'")
            cursor.close()


@contextmanager
def transactional_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Session with commit on success and rollback on any error."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception as e:
        session.rollback()
        logger.error("Database session error: %s", e)
        raise
    finally:
        session.close()


def make_session_scope(session_factory: sessionmaker) -> SessionScope:
    """Bind a session factory into a zero-argument transactional scope."""

    def scope() -> ContextManager[Session]:
        return transactional_scope(session_factory)

    return scope


class DatabaseFactory:
    """Singleton database factory ensuring single engine/session management"""

    _instance: Optional['DatabaseFactory'] = None
    _lock = threading.Lock()

    def __new__(cls) -> 'DatabaseFactory':
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if hasattr(self, '_initialized') and self._initialized:
            return

        self._engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None
        self._dsn: Optional[str] = None
        self._initialized = False

    def initialize(self, dsn: str | None = None) -> None:
        """Initialize database engine and session factory (idempotent)"""
        if self._initialized:
            logger.debug("Database factory already initialized")
            return

        with self._lock:
            if self._initialized:
                return

            self._dsn = dsn or config.database.dsn
            try:
                self._engine = create_db_engine(
                    self._dsn,
                    echo=config.database.echo,
                    pool_size=config.database.pool_size,
                    max_overflow=config.database.max_overflow,
                )
                self._session_factory = sessionmaker(
                    bind=self._engine,
                    autocommit=False,
                    autoflush=False,
                    expire_on_commit=False
                )
                self._initialized = True
                logger.info("Database factory initialized with DSN: %s", self._mask_dsn(self._dsn))

            except Exception as e:
                logger.error("Failed to initialize database factory: %s", e)
                raise

    @staticmethod
    def _mask_dsn(dsn: str) -> str:
        """Mask password in DSN for logging"""
        return re.sub(r'(://[^:]+:)([^@]+)(@)', r'\1****\3', dsn)

    @property
    def engine(self) -> Engine:
        """Get database engine (lazy initialization)"""
        if not self._initialized:
            self.initialize()
        return self._engine

    @property
    def session_factory(self) -> sessionmaker:
        """Get session factory (lazy initialization)"""
        if not self._initialized:
            self.initialize()
        return self._session_factory

    def get_session(self) -> ContextManager[Session]:
        """Get database session with automatic transaction management"""
        return transactional_scope(self.session_factory)

    def health_check(self) -> bool:
        """Check database connection health"""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error("Database health check failed: %s", e)
            return False

    def create_all_tables(self) -> None:
        """Create all database tables"""
        from .models import Base

        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("All database tables created successfully")
        except Exception as e:
            logger.error("Failed to create database tables: %s", e)
            raise

    def close(self) -> None:
        """Close database connections and reset factory"""
        if self._engine:
            self._engine.dispose()
            logger.info("Database connections closed")

        self._engine = None
        self._session_factory = None
        self._initialized = False


# Global factory instance
_db_factory = DatabaseFactory()


# Public API functions
def get_session() -> ContextManager[Session]:
    """Get database session context manager"""
    return _db_factory.get_session()


def initialize_database(dsn: str | None = None) -> None:
    """Initialize database connection"""
    _db_factory.initialize(dsn)


def create_all_tables() -> None:
    """Create all database tables"""
    _db_factory.create_all_tables()


def health_check() -> bool:
    """Check database health"""
    return _db_factory.health_check()


def close_database() -> None:
    """Close database connections"""
    _db_factory.close()


def setup_database(dsn: str | None = None) -> None:
    """Complete database setup for application startup"""
    logger.info("Setting up database...")

    try:
        initialize_database(dsn)
        create_all_tables()

        if not health_check():
            raise RuntimeError("Database health check failed")

        logger.info("Database setup completed successfully")

    except Exception as e:
        logger.error("Database setup failed: %s", e)
        raise
