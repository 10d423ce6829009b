"""
Database engine and session management.

PostgreSQL in production. sqlite:// URLs are accepted for local runs and
tests; they share a single connection so in-memory databases survive
across sessions and worker threads.
"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import Pool, StaticPool
from contextlib import contextmanager
from typing import Generator
from urllib.parse import urlparse
import os
import time

from position_guard.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: PostgreSQL (or SQLite for local/tests) connection string
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// connection string."
            )

        self.database_url = database_url

        if database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=5,
                max_overflow=5,
                pool_recycle=3600,
                pool_timeout=30,
            )
            _register_pool_events(self.engine.pool)

        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_all(self):
        """Create all tables."""
        # Importing the repository registers every ORM model on Base.metadata
        import position_guard.storage.repository  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def dispose(self):
        self.engine.dispose()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Yields:
            SQLAlchemy Session

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global database instance (initialized on first use)
_db_instance: Database | None = None


def get_db() -> Database:
    """
    Get or create the global database instance.

    Falls back to DATABASE_URL when init_db() was never called.
    """
    global _db_instance
    if _db_instance is None:
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set and init_db() was not called")

        parsed = urlparse(database_url)
        logger.info(
            "DATABASE_CONNECTION_INIT",
            scheme=parsed.scheme,
            host=parsed.hostname or "local",
            database=parsed.path.lstrip("/") or "memory",
            has_password=bool(parsed.password),
        )
        _db_instance = Database(database_url)
        _db_instance.create_all()
    return _db_instance


def init_db(database_url: str) -> Database:
    """
    Initialize database with specific URL.

    Args:
        database_url: Database connection string

    Returns:
        Database instance
    """
    global _db_instance
    _db_instance = Database(database_url)
    _db_instance.create_all()
    return _db_instance


def reset_db() -> None:
    """Dispose the global database instance (tests, shutdown)."""
    global _db_instance
    if _db_instance is not None:
        _db_instance.dispose()
    _db_instance = None


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

_SLOW_CHECKOUT_SECONDS = 1.0


def _register_pool_events(pool: Pool) -> None:
    """Log slow connection checkouts; a starved pool stalls every monitor tick."""

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_conn, connection_record, connection_proxy):
        connection_record.info["checkout_at"] = time.monotonic()

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_conn, connection_record):
        started = connection_record.info.pop("checkout_at", None)
        if started is None:
            return
        held = time.monotonic() - started
        if held > _SLOW_CHECKOUT_SECONDS:
            _pool_logger.warning("POOL_CONNECTION_HELD_LONG", held_ms=round(held * 1000, 1))

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_conn, connection_record, exception):
        _pool_logger.warning("POOL_INVALIDATE", error=str(exception) if exception else None)
