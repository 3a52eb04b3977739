"""Portfolio repositories: local accounts, holdings and balance transactions."""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from wealthsync.db.models import Account, Holding, Transaction, User, utcnow
from wealthsync.config import get_settings

if TYPE_CHECKING:
    from wealthsync.core.brokers.models import BrokerPosition

settings = get_settings()


class AccountRepository:
    """Repository for local Account operations."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def get_or_create_default_user(self) -> User:
        """Get or create the default user for single-user mode."""
        user = self.db.query(User).filter_by(email=settings.default_user_email).first()
        if not user:
            user = User(email=settings.default_user_email)
            self.db.add(user)
            self.db.flush()  # Get the ID without committing
        return user

    def create(self, user_id: str, name: str, currency: str = "DKK", account_type: str = "investment") -> Account:
        account = Account(user_id=user_id, name=name, currency=currency.upper(), account_type=account_type)
        self.db.add(account)
        self.db.flush()
        return account

    def get_by_id(self, account_id: str, user_id: Optional[str] = None) -> Optional[Account]:
        """Get an account by ID, optionally scoped to its owner."""
        query = self.db.query(Account).filter_by(id=account_id)
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        return query.first()

    def get_by_user(self, user_id: str) -> List[Account]:
        return (
            self.db.query(Account)
            .filter_by(user_id=user_id)
            .order_by(Account.created_at)
            .all()
        )


class HoldingRepository:
    """Repository for Holding operations driven by broker sync."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def get_by_account(self, account_id: str) -> List[Holding]:
        return (
            self.db.query(Holding)
            .filter_by(account_id=account_id)
            .order_by(Holding.symbol)
            .all()
        )

    def get_by_symbol(self, account_id: str, symbol: str) -> Optional[Holding]:
        return self.db.query(Holding).filter_by(account_id=account_id, symbol=symbol).first()

    def upsert(self, account_id: str, position: BrokerPosition, synced_at: datetime) -> Holding:
        """Create or update the holding for (account, symbol).

        Args:
            account_id: Local account ID
            position: Position reported by the broker
            synced_at: Timestamp of the sync pass; marks the holding as current

        Returns:
            The stored holding
        """
        holding = self.get_by_symbol(account_id, position.symbol)
        if holding is None:
            holding = Holding(account_id=account_id, symbol=position.symbol, created_at=utcnow())
            self.db.add(holding)

        holding.external_id = position.external_id
        holding.name = position.name
        holding.quantity = position.quantity
        holding.avg_price = position.avg_price
        holding.current_price = position.current_price
        holding.current_value = position.current_value
        holding.currency = position.currency
        holding.instrument_type = position.instrument_type
        holding.last_updated = synced_at

        self.db.flush()
        return holding

    def delete_stale_holdings(self, account_id: str, synced_at: datetime) -> int:
        """Delete holdings the sync pass at `synced_at` did not touch.

        Returns:
            Number of holdings deleted
        """
        deleted = (
            self.db.query(Holding)
            .filter(Holding.account_id == account_id, Holding.last_updated < synced_at)
            .delete(synchronize_session="fetch")
        )
        self.db.flush()
        return deleted

    def total_value(self, account_id: str) -> float:
        total = (
            self.db.query(func.coalesce(func.sum(Holding.current_value), 0.0))
            .filter(Holding.account_id == account_id)
            .scalar()
        )
        return float(total or 0.0)


class TransactionRepository:
    """Repository for balance transactions on local accounts."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def get_latest_balance(self, account_id: str) -> float:
        """Balance after the most recent transaction, or 0 with none."""
        latest = (
            self.db.query(Transaction)
            .filter_by(account_id=account_id)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
            .first()
        )
        return latest.balance_after if latest else 0.0

    def create(
        self,
        account_id: str,
        amount: float,
        balance_after: float,
        description: str,
        transaction_date: Optional[datetime] = None,
    ) -> Transaction:
        transaction = Transaction(
            account_id=account_id,
            amount=amount,
            balance_after=balance_after,
            description=description,
            transaction_date=transaction_date or utcnow(),
        )
        self.db.add(transaction)
        self.db.flush()
        return transaction

    def get_by_account(self, account_id: str, limit: int = 50) -> List[Transaction]:
        return (
            self.db.query(Transaction)
            .filter_by(account_id=account_id)
            .order_by(Transaction.transaction_date.desc(), Transaction.id.desc())
            .limit(limit)
            .all()
        )
