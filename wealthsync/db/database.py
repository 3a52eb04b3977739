"""SQLAlchemy database configuration and session management."""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from wealthsync.config import get_settings

settings = get_settings()


def build_engine(database_url: str, **kwargs) -> Engine:
    """Create an engine, enabling foreign keys on SQLite.

    Broker connections cascade to their account mappings, and SQLite only
    enforces that when the pragma is set per connection.
    """
    is_sqlite = database_url.startswith("sqlite")
    if is_sqlite:
        kwargs.setdefault("connect_args", {"check_same_thread": False})

    new_engine = create_engine(database_url, echo=False, **kwargs)

    if is_sqlite:
        @event.listens_for(new_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return new_engine


engine = build_engine(settings.database_url)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,  # Sync results are read after the per-account commit
)


@contextmanager
def get_db() -> Generator[Session, None, None]:
    """Context manager for database sessions.

    Usage:
        with get_db() as db:
            db.query(BrokerConnection).all()
    """
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db() -> None:
    """Initialize database tables."""
    from .models import Base

    Base.metadata.create_all(bind=engine)
