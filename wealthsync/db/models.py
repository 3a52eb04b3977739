"""SQLAlchemy ORM models."""

import uuid
from datetime import datetime

from sqlalchemy import (
    Column,
    String,
    Float,
    Integer,
    Boolean,
    DateTime,
    Text,
    LargeBinary,
    ForeignKey,
    UniqueConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


def generate_uuid() -> str:
    """Generate a new UUID string."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Get current UTC timestamp."""
    return datetime.utcnow()


class User(Base):
    """Account owner. The user id also salts the key for stored secrets."""

    __tablename__ = "users"

    id = Column(String, primary_key=True, default=generate_uuid)
    email = Column(String(255), unique=True, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    accounts = relationship("Account", back_populates="user", cascade="all, delete-orphan")
    broker_connections = relationship(
        "BrokerConnection", back_populates="user", cascade="all, delete-orphan"
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class Account(Base):
    """A local account whose balance is tracked over time."""

    __tablename__ = "accounts"

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    name = Column(String(100), nullable=False)
    account_type = Column(String(30), default="investment", nullable=False)
    currency = Column(String(3), default="DKK", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="accounts")
    transactions = relationship(
        "Transaction", back_populates="account", cascade="all, delete-orphan"
    )
    holdings = relationship("Holding", back_populates="account", cascade="all, delete-orphan")

    def __repr__(self) -> str:
        return f"<Account(id={self.id}, name={self.name})>"


class Transaction(Base):
    """Balance-changing entry on a local account."""

    __tablename__ = "transactions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Float, nullable=False)
    balance_after = Column(Float, nullable=False)
    description = Column(String(255), nullable=True)
    transaction_date = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    account = relationship("Account", back_populates="transactions")

    def __repr__(self) -> str:
        return f"<Transaction(id={self.id}, amount={self.amount}, balance_after={self.balance_after})>"


class BrokerConnection(Base):
    """A user's link to one brokerage (at most one per broker type)."""

    __tablename__ = "broker_connections"
    __table_args__ = (
        UniqueConstraint("user_id", "broker_type", name="uq_broker_connection_user_type"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    user_id = Column(String, ForeignKey("users.id"), nullable=False)
    broker_type = Column(String(20), nullable=False)  # 'nordnet' | 'saxo'

    # Nordnet
    country = Column(String(2), nullable=True)  # dk, se, no, fi
    username = Column(String(100), nullable=True)  # MitID user id
    cpr = Column(String(20), nullable=True)

    # Saxo app registration
    app_key = Column(String(100), nullable=True)
    app_secret = Column(String(255), nullable=True)
    redirect_uri = Column(String(255), nullable=True)

    is_active = Column(Boolean, default=True, nullable=False)
    last_sync_at = Column(DateTime, nullable=True)
    last_sync_status = Column(String(20), nullable=True)  # success, error, auth_failed
    last_sync_error = Column(Text, nullable=True)

    # OAuth tokens, AES-GCM encrypted with a per-user key
    access_token_encrypted = Column(LargeBinary, nullable=True)
    access_token_nonce = Column(LargeBinary, nullable=True)
    refresh_token_encrypted = Column(LargeBinary, nullable=True)
    refresh_token_nonce = Column(LargeBinary, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)
    refresh_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    user = relationship("User", back_populates="broker_connections")
    mappings = relationship(
        "AccountMapping", back_populates="connection", cascade="all, delete-orphan"
    )
    sync_history = relationship(
        "SyncHistory",
        primaryjoin="BrokerConnection.id == foreign(SyncHistory.connection_id)",
        back_populates="connection",
        cascade="all, delete-orphan",
    )

    @property
    def has_stored_tokens(self) -> bool:
        """Whether encrypted OAuth tokens are present."""
        return self.access_token_encrypted is not None

    def __repr__(self) -> str:
        return f"<BrokerConnection(id={self.id}, broker={self.broker_type})>"


class AccountMapping(Base):
    """Links an external broker account to a local account."""

    __tablename__ = "account_mappings"
    __table_args__ = (
        UniqueConstraint("connection_id", "external_account_id", name="uq_mapping_external"),
        UniqueConstraint("connection_id", "local_account_id", name="uq_mapping_local"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    connection_id = Column(
        String, ForeignKey("broker_connections.id", ondelete="CASCADE"), nullable=False
    )
    local_account_id = Column(String, ForeignKey("accounts.id"), nullable=False)
    external_account_id = Column(String(100), nullable=False)
    external_account_name = Column(String(255), nullable=True)
    auto_sync = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    connection = relationship("BrokerConnection", back_populates="mappings")
    local_account = relationship("Account")

    def __repr__(self) -> str:
        return (
            f"<AccountMapping(external={self.external_account_id}, "
            f"local={self.local_account_id}, auto_sync={self.auto_sync})>"
        )


class Holding(Base):
    """A position held in a local account, refreshed by broker sync."""

    __tablename__ = "holdings"
    __table_args__ = (
        UniqueConstraint("account_id", "symbol", name="uq_holding_account_symbol"),
    )

    id = Column(String, primary_key=True, default=generate_uuid)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    symbol = Column(String(64), nullable=False)  # ISIN for Nordnet, Uic/symbol for Saxo
    external_id = Column(String(64), nullable=True)
    name = Column(String(255), nullable=True)
    quantity = Column(Float, nullable=False, default=0.0)
    avg_price = Column(Float, nullable=False, default=0.0)
    current_price = Column(Float, nullable=False, default=0.0)
    current_value = Column(Float, nullable=False, default=0.0)
    currency = Column(String(3), nullable=True)
    instrument_type = Column(String(50), nullable=True)
    last_updated = Column(DateTime, default=utcnow, nullable=False)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    account = relationship("Account", back_populates="holdings")

    @property
    def total_cost(self) -> float:
        """Total cost basis for this position."""
        return self.quantity * self.avg_price

    def __repr__(self) -> str:
        return f"<Holding(id={self.id}, symbol={self.symbol}, quantity={self.quantity})>"


class SyncHistory(Base):
    """One sync attempt against a broker connection."""

    __tablename__ = "sync_history"

    id = Column(String, primary_key=True, default=generate_uuid)
    # No foreign key: attempts on a missing connection are recorded too
    connection_id = Column(String, nullable=False, index=True)
    sync_type = Column(String(20), default="full", nullable=False)
    status = Column(String(20), default="started", nullable=False)  # started, success, error
    accounts_synced = Column(Integer, default=0, nullable=False)
    positions_synced = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    started_at = Column(DateTime, default=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)
    duration_ms = Column(Integer, nullable=True)

    # Relationships
    connection = relationship(
        "BrokerConnection",
        primaryjoin="foreign(SyncHistory.connection_id) == BrokerConnection.id",
        back_populates="sync_history",
    )

    @property
    def is_open(self) -> bool:
        """Whether the attempt has not been closed yet."""
        return self.completed_at is None

    def __repr__(self) -> str:
        return f"<SyncHistory(id={self.id}, status={self.status}, accounts={self.accounts_synced})>"
