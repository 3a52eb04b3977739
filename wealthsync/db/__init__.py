"""Database module."""

from .database import get_db, init_db, build_engine, engine, SessionLocal
from .models import (
    Base,
    User,
    Account,
    Transaction,
    BrokerConnection,
    AccountMapping,
    Holding,
    SyncHistory,
)

__all__ = [
    "get_db",
    "init_db",
    "build_engine",
    "engine",
    "SessionLocal",
    "Base",
    "User",
    "Account",
    "Transaction",
    "BrokerConnection",
    "AccountMapping",
    "Holding",
    "SyncHistory",
]
