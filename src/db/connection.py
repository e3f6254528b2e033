"""Database connection management for MarketSync.

Provides an explicitly constructed ``Database`` object that owns the
SQLAlchemy engine and session factory. Components receive it (or its
session factory) by injection; there is no module-level engine.

Usage:
    from src.db.connection import Database

    db = Database("sqlite:///./marketsync.db")
    db.init()  # Create tables
    with db.session() as session:
        session.query(Connection).all()
    db.dispose()
"""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from typing import Any

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from src.db.models import Base

logger = logging.getLogger(__name__)


# Configuration
def get_database_url(configured: str | None = None) -> str:
    """Resolve the database URL.

    Precedence:
    1. Explicit value from the config file
    2. DATABASE_URL (canonical)
    3. MARKETSYNC_DB_PATH (compat fallback, converted to sqlite URL)
    4. sqlite:///<platform data dir>/marketsync.db
    """
    if configured and configured.strip():
        return configured.strip()

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if database_url:
        return database_url

    db_path = os.environ.get("MARKETSYNC_DB_PATH", "").strip()
    if db_path:
        if db_path.startswith("sqlite:"):
            return db_path
        return f"sqlite:///{db_path}"

    from src.utils.paths import get_default_db_path
    return f"sqlite:///{get_default_db_path()}"


def _set_sqlite_pragma(dbapi_connection: Any, connection_record: Any) -> None:
    """Configure SQLite pragmas for correctness and concurrency.

    Enables:
    - foreign_keys=ON: Referential integrity (disabled by default in SQLite).
    - journal_mode=WAL: Concurrent readers plus a single writer, so the
      scheduler and a manual trigger can overlap.
    - busy_timeout: Writers wait for the lock instead of failing immediately
      when two connections' drains commit at the same time.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA synchronous=NORMAL;")
    cursor.execute("PRAGMA busy_timeout=5000;")
    cursor.close()


class Database:
    """Owns the engine and session factory for one state database.

    Args:
        url: SQLAlchemy database URL.
        echo: Log emitted SQL.
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.engine: Engine = self._create_engine(url, echo)
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

    @staticmethod
    def _create_engine(url: str, echo: bool) -> Engine:
        if not url.startswith("sqlite"):
            return create_engine(url, echo=echo, pool_pre_ping=True)

        kwargs: dict[str, Any] = {
            "connect_args": {"check_same_thread": False},
            "echo": echo,
        }
        # An in-memory database only exists per connection; share one.
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        engine = create_engine(url, **kwargs)
        event.listen(engine, "connect", _set_sqlite_pragma)
        return engine

    def init(self) -> None:
        """Create all tables. Safe to call multiple times."""
        Base.metadata.create_all(bind=self.engine)
        logger.debug("Database schema ensured at %s", self.url)

    def new_session(self) -> Session:
        """Return a bare session; the caller owns commit and close."""
        return self._session_factory()

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """Context manager for one unit of work.

        Commits on success, rolls back on error, always closes.

        Usage:
            with db.session() as session:
                entry = session.get(QueueEntry, entry_id)
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        """Close the engine and dispose of its connection pool."""
        self.engine.dispose()
