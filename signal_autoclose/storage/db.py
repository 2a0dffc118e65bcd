"""
Database engine and session management.

PostgreSQL in production; SQLite is accepted for local runs and tests.
Includes connection-pool observability via SQLAlchemy pool events.
"""
from sqlalchemy import create_engine, event, DateTime
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import Pool, StaticPool
from sqlalchemy.types import TypeDecorator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Generator, Dict, Any
import time

from signal_autoclose.monitoring.logger import get_logger

_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class UTCDateTime(TypeDecorator):
    """Stores naive UTC, returns timezone-aware UTC."""
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Refusing to store a naive datetime; use UTC-aware values")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect):
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str, echo: bool = False):
        """
        Initialize database connection.

        Args:
            database_url: postgresql:// or sqlite:// connection string
            echo: Log emitted SQL
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// (or sqlite:// for local runs) connection string."
            )

        self.database_url = database_url

        if self.is_sqlite:
            # In-memory SQLite must share one connection across sessions
            kwargs: Dict[str, Any] = {"connect_args": {"check_same_thread": False}}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
            self.engine = create_engine(database_url, echo=echo, **kwargs)
        else:
            self.engine = create_engine(
                database_url,
                echo=echo,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_timeout=30,
            )
            _register_pool_events(self.engine.pool)

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    def pool_status(self) -> Dict[str, Any]:
        """Snapshot of connection-pool metrics; empty for SQLite."""
        if self.is_sqlite:
            return {}
        pool = self.engine.pool
        return {
            "pool_size": pool.size(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
            "checked_in": pool.checkedin(),
        }

    def create_all(self) -> None:
        """Create all tables."""
        # Importing the repository registers every ORM model on Base.metadata
        import signal_autoclose.storage.repository  # noqa: F401
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

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
    Get or create the global database instance from configuration.
    """
    global _db_instance
    if _db_instance is None:
        from signal_autoclose.config.config import load_config
        from urllib.parse import urlparse

        logger = get_logger(__name__)
        config = load_config()
        database_url = config.database.url
        if not database_url:
            raise ValueError("DATABASE_URL is not configured")

        parsed = urlparse(database_url)
        logger.info(
            "DATABASE_CONNECTION_INIT",
            scheme=parsed.scheme,
            host=parsed.hostname or "local",
            database=parsed.path.lstrip("/") or "memory",
            has_password=bool(parsed.password),
        )

        _db_instance = Database(database_url, echo=config.database.echo)
        _db_instance.create_all()
    return _db_instance


def init_db(database_url: str, echo: bool = False) -> Database:
    """
    Initialize the global database with a specific URL and create tables.
    """
    global _db_instance
    _db_instance = Database(database_url, echo=echo)
    _db_instance.create_all()
    return _db_instance


def reset_db() -> None:
    """Forget the global instance (tests)."""
    global _db_instance
    _db_instance = None


# ---------------------------------------------------------------------------
# Connection-pool observability
# ---------------------------------------------------------------------------

def _register_pool_events(pool: Pool) -> None:
    """
    Attach SQLAlchemy pool event listeners for observability.

    Logs ``POOL_CHECKOUT``, ``POOL_CHECKIN`` and ``POOL_INVALIDATE``.
    """

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug(
            "POOL_CHECKOUT",
            pool_size=pool.size(),
            checked_out=pool.checkedout(),
            overflow=pool.overflow(),
        )

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = (
            round((time.monotonic() - checkout_time) * 1000, 1)
            if checkout_time is not None
            else None
        )
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms, checked_out=pool.checkedout())

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning("POOL_INVALIDATE", error=str(exception) if exception else None)

