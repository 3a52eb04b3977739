"""Broker connection, account mapping and sync history repositories."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.orm import Session

from wealthsync.core.brokers.encryption import CredentialEncryptor, EncryptionError
from wealthsync.core.brokers.models import SaxoSession
from wealthsync.db.models import AccountMapping, BrokerConnection, SyncHistory, utcnow

logger = logging.getLogger(__name__)


class BrokerConnectionRepository:
    """Repository for BrokerConnection CRUD operations."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def create(self, user_id: str, broker_type: str, **fields) -> BrokerConnection:
        """Create a connection.

        Args:
            user_id: Owner
            broker_type: 'nordnet' or 'saxo'
            **fields: Any other BrokerConnection column

        Returns:
            Created connection
        """
        connection = BrokerConnection(user_id=user_id, broker_type=broker_type, **fields)
        self.db.add(connection)
        self.db.flush()
        return connection

    def get_by_id(self, connection_id: str) -> Optional[BrokerConnection]:
        """Get a connection by ID."""
        return self.db.query(BrokerConnection).filter_by(id=connection_id).first()

    def get_by_user(self, user_id: str) -> List[BrokerConnection]:
        """Get all connections for a user."""
        return (
            self.db.query(BrokerConnection)
            .filter_by(user_id=user_id)
            .order_by(BrokerConnection.created_at)
            .all()
        )

    def get_active_by_user(self, user_id: str) -> List[BrokerConnection]:
        return (
            self.db.query(BrokerConnection)
            .filter(
                BrokerConnection.user_id == user_id,
                BrokerConnection.is_active == True,  # noqa: E712
            )
            .order_by(BrokerConnection.created_at)
            .all()
        )

    def get_by_user_and_broker(self, user_id: str, broker_type: str) -> Optional[BrokerConnection]:
        return (
            self.db.query(BrokerConnection)
            .filter_by(user_id=user_id, broker_type=broker_type)
            .first()
        )

    def update(self, connection: BrokerConnection, **fields) -> BrokerConnection:
        """Set the given columns; None values are ignored."""
        for key, value in fields.items():
            if value is not None:
                setattr(connection, key, value)
        self.db.flush()
        return connection

    def delete(self, connection: BrokerConnection) -> None:
        """Delete a connection with its mappings and sync history."""
        self.db.delete(connection)
        self.db.flush()

    def update_sync_status(
        self,
        connection_id: str,
        status: str,
        error: Optional[str] = None,
    ) -> Optional[BrokerConnection]:
        """Record the outcome of a sync attempt.

        Args:
            connection_id: Connection ID
            status: 'success', 'error' or 'auth_failed'
            error: Error message (cleared when empty)

        Returns:
            Updated connection or None if not found
        """
        connection = self.get_by_id(connection_id)
        if not connection:
            return None
        connection.last_sync_at = utcnow()
        connection.last_sync_status = status
        connection.last_sync_error = error or None
        self.db.flush()
        return connection

    # Encrypted OAuth tokens

    def store_tokens(
        self,
        connection: BrokerConnection,
        encryptor: CredentialEncryptor,
        session: SaxoSession,
    ) -> None:
        """Encrypt and store a Saxo session's tokens with the owner's key."""
        access, access_nonce = encryptor.encrypt(session.access_token, connection.user_id)
        connection.access_token_encrypted = access
        connection.access_token_nonce = access_nonce
        if session.refresh_token:
            refresh, refresh_nonce = encryptor.encrypt(session.refresh_token, connection.user_id)
            connection.refresh_token_encrypted = refresh
            connection.refresh_token_nonce = refresh_nonce
        else:
            connection.refresh_token_encrypted = None
            connection.refresh_token_nonce = None
        connection.token_expires_at = session.expires_at
        connection.refresh_expires_at = session.refresh_expires_at
        self.db.flush()

    def load_tokens(
        self,
        connection: BrokerConnection,
        encryptor: CredentialEncryptor,
    ) -> Optional[SaxoSession]:
        """Decrypt stored tokens into a session.

        Returns:
            Session, or None if nothing is stored or the tokens no longer decrypt
        """
        if not connection.has_stored_tokens or connection.token_expires_at is None:
            return None
        try:
            access_token = encryptor.decrypt(
                connection.access_token_encrypted, connection.access_token_nonce, connection.user_id
            )
            refresh_token = ""
            if connection.refresh_token_encrypted:
                refresh_token = encryptor.decrypt(
                    connection.refresh_token_encrypted,
                    connection.refresh_token_nonce,
                    connection.user_id,
                )
        except EncryptionError as e:
            logger.warning(f"Stored tokens for connection {connection.id} are unreadable: {e}")
            return None

        return SaxoSession(
            access_token=access_token,
            expires_at=connection.token_expires_at,
            refresh_token=refresh_token,
            refresh_expires_at=connection.refresh_expires_at,
        )

    def clear_tokens(self, connection: BrokerConnection) -> None:
        connection.access_token_encrypted = None
        connection.access_token_nonce = None
        connection.refresh_token_encrypted = None
        connection.refresh_token_nonce = None
        connection.token_expires_at = None
        connection.refresh_expires_at = None
        self.db.flush()


class AccountMappingRepository:
    """Repository for AccountMapping CRUD operations."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def create(
        self,
        connection_id: str,
        local_account_id: str,
        external_account_id: str,
        external_account_name: str = "",
        auto_sync: bool = True,
    ) -> AccountMapping:
        mapping = AccountMapping(
            connection_id=connection_id,
            local_account_id=local_account_id,
            external_account_id=external_account_id,
            external_account_name=external_account_name,
            auto_sync=auto_sync,
        )
        self.db.add(mapping)
        self.db.flush()
        return mapping

    def get_by_connection(self, connection_id: str) -> List[AccountMapping]:
        return (
            self.db.query(AccountMapping)
            .filter_by(connection_id=connection_id)
            .order_by(AccountMapping.created_at)
            .all()
        )

    def get_by_external_id(self, connection_id: str, external_account_id: str) -> Optional[AccountMapping]:
        return (
            self.db.query(AccountMapping)
            .filter_by(connection_id=connection_id, external_account_id=external_account_id)
            .first()
        )

    def get_by_local_account(self, connection_id: str, local_account_id: str) -> Optional[AccountMapping]:
        return (
            self.db.query(AccountMapping)
            .filter_by(connection_id=connection_id, local_account_id=local_account_id)
            .first()
        )

    def get_auto_sync(self, connection_id: str) -> List[AccountMapping]:
        """Mappings that take part in automatic sync."""
        return (
            self.db.query(AccountMapping)
            .filter(
                AccountMapping.connection_id == connection_id,
                AccountMapping.auto_sync == True,  # noqa: E712
            )
            .order_by(AccountMapping.created_at)
            .all()
        )

    def set_auto_sync(self, mapping: AccountMapping, enabled: bool) -> AccountMapping:
        mapping.auto_sync = enabled
        self.db.flush()
        return mapping

    def replace_for_connection(
        self,
        connection_id: str,
        mappings: Iterable[Dict],
    ) -> List[AccountMapping]:
        """Replace every mapping of a connection.

        Args:
            connection_id: Connection ID
            mappings: Dicts with local_account_id, external_account_id and
                optionally external_account_name and auto_sync

        Returns:
            The new mappings
        """
        for existing in self.get_by_connection(connection_id):
            self.db.delete(existing)
        self.db.flush()

        return [
            self.create(
                connection_id=connection_id,
                local_account_id=item["local_account_id"],
                external_account_id=item["external_account_id"],
                external_account_name=item.get("external_account_name") or "",
                auto_sync=item.get("auto_sync", True),
            )
            for item in mappings
        ]

    def delete(self, mapping: AccountMapping) -> None:
        self.db.delete(mapping)
        self.db.flush()


class SyncHistoryRepository:
    """Repository for SyncHistory records. Each record is closed exactly once."""

    def __init__(self, db: Session):
        """Initialize repository with database session."""
        self.db = db

    def start(self, connection_id: str, sync_type: str = "full") -> SyncHistory:
        """Open a 'started' record for a sync attempt."""
        history = SyncHistory(
            connection_id=connection_id,
            sync_type=sync_type,
            status="started",
            started_at=utcnow(),
        )
        self.db.add(history)
        self.db.flush()
        return history

    def complete(self, history: SyncHistory, accounts_synced: int, positions_synced: int) -> SyncHistory:
        """Close a record as successful."""
        history.accounts_synced = accounts_synced
        history.positions_synced = positions_synced
        return self._close(history, "success")

    def fail(self, history: SyncHistory, error_message: str) -> SyncHistory:
        """Close a record as failed."""
        history.error_message = error_message
        return self._close(history, "error")

    def _close(self, history: SyncHistory, status: str) -> SyncHistory:
        if not history.is_open:
            raise ValueError(f"Sync history {history.id} is already closed")
        completed_at = utcnow()
        history.status = status
        history.completed_at = completed_at
        history.duration_ms = _duration_ms(history.started_at, completed_at)
        self.db.flush()
        return history

    def get_by_connection(self, connection_id: str, limit: int = 20) -> List[SyncHistory]:
        """Most recent sync attempts first."""
        return (
            self.db.query(SyncHistory)
            .filter_by(connection_id=connection_id)
            .order_by(SyncHistory.started_at.desc())
            .limit(limit)
            .all()
        )

    def get_latest(self, connection_id: str) -> Optional[SyncHistory]:
        return (
            self.db.query(SyncHistory)
            .filter_by(connection_id=connection_id)
            .order_by(SyncHistory.started_at.desc())
            .first()
        )


def _duration_ms(started_at: datetime, completed_at: datetime) -> int:
    return max(0, int((completed_at - started_at).total_seconds() * 1000))
