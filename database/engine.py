"""
Database Persistence Layer - Core Engine.

============================================================
PURPOSE
============================================================
Owns the SQLAlchemy engine and session factory for one node.

A node may hold more than one Database (tests run a sender and
a receiver side by side), so the engine lives on an instance
instead of module globals. A lazily created default instance
serves the CLI.

Requirements:
- Explicit transaction management
- Hard failures on persistence errors
- Every failure logged before it is re-raised

============================================================
"""

import os
import logging
from typing import Optional, Generator
from contextlib import contextmanager

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError, OperationalError
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from dotenv import load_dotenv

from core.exceptions import PersistenceError

# Load environment variables
load_dotenv()

logger = logging.getLogger(__name__)


DEFAULT_DATABASE_URL = "sqlite:///table_sync.db"


def get_database_url() -> str:
    """Get database URL from environment."""
    url = os.getenv("SYNC_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql+asyncpg"):
        # Convert async URL to sync
        url = url.replace("postgresql+asyncpg", "postgresql")

    if not url:
        url = DEFAULT_DATABASE_URL
        logger.warning(f"SYNC_DATABASE_URL not set, using default: {url}")

    return url


def _redact(url: str) -> str:
    return url.split("@")[-1]


# =============================================================
# DATABASE
# =============================================================

class Database:
    """
    Engine plus session factory for one node.

    Usage:
        db = Database("sqlite:///node.db")
        db.create_all()
        with db.transaction_scope() as session:
            session.add(record)
    """

    def __init__(self, url: Optional[str] = None, echo: bool = False):
        self.url = url or get_database_url()
        self.engine: Engine = self._create_engine(self.url, echo)
        self._session_factory = sessionmaker(
            bind=self.engine,
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
        )
        logger.info(f"Database engine created for: {_redact(self.url)}")

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        kwargs = {"echo": echo, "future": True}

        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs.update(pool_size=10, max_overflow=20, pool_recycle=1800)

        engine = create_engine(url, **kwargs)

        @event.listens_for(engine, "connect")
        def on_connect(dbapi_conn, connection_record):
            logger.debug("Database connection established")

        return engine

    @property
    def dialect(self) -> str:
        """Dialect name, e.g. sqlite or postgresql."""
        return self.engine.dialect.name

    # ---------------------------------------------------------
    # SESSION MANAGEMENT
    # ---------------------------------------------------------

    def get_session(self) -> Session:
        """
        Get a new database session.

        Caller is responsible for committing/closing.
        Prefer session_scope() or transaction_scope().
        """
        return self._session_factory()

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """
        Session with automatic rollback and close, no commit.

        On exception the session is rolled back and the
        exception re-raised unchanged.
        """
        session = self.get_session()
        try:
            yield session
        except Exception as e:
            logger.error(f"Database error, rolling back: {e}")
            session.rollback()
            raise
        finally:
            session.close()

    @contextmanager
    def transaction_scope(self) -> Generator[Session, None, None]:
        """
        Context manager for explicit transaction boundaries.

        Commits only if no exception occurs. SQLAlchemy errors are
        wrapped in PersistenceError; everything else propagates as is.
        """
        session = self.get_session()
        try:
            yield session
            session.commit()
            logger.debug("Database transaction committed successfully")
        except SQLAlchemyError as e:
            logger.error(f"Database transaction failed, rolling back: {e}")
            session.rollback()
            raise PersistenceError(f"Transaction failed: {e}", cause=e) from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ---------------------------------------------------------
    # INITIALIZATION
    # ---------------------------------------------------------

    def verify_connection(self) -> bool:
        """Run SELECT 1. Raises PersistenceError on failure."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1")).fetchone()
            logger.info("Database connection verified successfully")
            return True
        except OperationalError as e:
            logger.error(f"Database connection failed: {e}")
            raise PersistenceError(f"Cannot connect to database: {e}", cause=e) from e

    def create_all(self) -> None:
        """Create the engine's own bookkeeping tables."""
        from database.models import Base

        try:
            Base.metadata.create_all(bind=self.engine)
            logger.info("Sync tables created")
        except SQLAlchemyError as e:
            logger.error(f"Failed to create sync tables: {e}")
            raise PersistenceError(f"Table creation failed: {e}", cause=e) from e

    def dispose(self) -> None:
        self.engine.dispose()


# =============================================================
# DEFAULT INSTANCE
# =============================================================

_default: Optional[Database] = None


def get_database() -> Database:
    """Get the process-wide Database, creating it if necessary."""
    global _default
    if _default is None:
        _default = Database()
    return _default
