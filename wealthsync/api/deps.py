"""FastAPI dependencies."""

from __future__ import annotations

from typing import Generator, Optional

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from wealthsync.db.database import get_db as db_context
from wealthsync.config import get_settings
from wealthsync.core.brokers.runtime import BrokerRuntime, get_runtime
from wealthsync.core.brokers.sync import BrokerSyncService
from wealthsync.core.portfolio.repository import AccountRepository
from wealthsync.db.models import User

settings = get_settings()


def get_db() -> Generator[Session, None, None]:
    """Yield a database session."""
    with db_context() as db:
        yield db


def get_current_user(
    db: Session = Depends(get_db),
    x_api_key: Optional[str] = Header(None),
) -> User:
    """Get the current user.

    WealthSync runs in single-user mode: every request acts as the default
    user. When a global API key is configured, requests must send it in the
    X-API-Key header.

    Returns:
        Default User model
    """
    if settings.api_key and x_api_key != settings.api_key:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
        )
    return AccountRepository(db).get_or_create_default_user()


def get_broker_runtime() -> BrokerRuntime:
    """Process-wide broker runtime (auth registry, clients, orchestrators)."""
    return get_runtime()


def get_sync_service(
    db: Session = Depends(get_db),
    runtime: BrokerRuntime = Depends(get_broker_runtime),
) -> BrokerSyncService:
    return BrokerSyncService(db, runtime)
