"""Broker connection sync service."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from wealthsync.core.brokers.base import BrokerClient
from wealthsync.core.brokers.errors import (
    AuthenticationError,
    BrokerConfigurationError,
    BrokerError,
    ConnectionNotFoundError,
    UnsupportedBrokerError,
)
from wealthsync.core.brokers.models import (
    BrokerType,
    ExternalAccount,
    SUPPORTED_COUNTRIES,
    SyncResult,
)
from wealthsync.core.brokers.repository import (
    AccountMappingRepository,
    BrokerConnectionRepository,
    SyncHistoryRepository,
)
from wealthsync.core.brokers.runtime import BrokerRuntime, get_runtime
from wealthsync.core.portfolio.repository import (
    AccountRepository,
    HoldingRepository,
    TransactionRepository,
)
from wealthsync.db.models import AccountMapping, BrokerConnection, SyncHistory, utcnow

logger = logging.getLogger(__name__)

# Balances closer than half a cent are treated as unchanged
BALANCE_TOLERANCE = 0.005
SAXO_CREDENTIAL_FIELDS = ("app_key", "app_secret", "redirect_uri")


class BrokerSyncService:
    """Service for managing broker connections and syncing their accounts."""

    def __init__(self, db: Session, runtime: Optional[BrokerRuntime] = None):
        self.db = db
        self.runtime = runtime or get_runtime()
        self.connections = BrokerConnectionRepository(db)
        self.mappings = AccountMappingRepository(db)
        self.history = SyncHistoryRepository(db)
        self.accounts = AccountRepository(db)
        self.holdings = HoldingRepository(db)
        self.transactions = TransactionRepository(db)

    # Connections

    def create_connection(self, user_id: str, broker_type: str, **fields: Any) -> BrokerConnection:
        """Create a broker connection after validating its settings.

        Args:
            user_id: Owner
            broker_type: 'nordnet' or 'saxo'
            **fields: country, username, cpr, app_key, app_secret, redirect_uri

        Returns:
            Created connection

        Raises:
            UnsupportedBrokerError: Unknown broker type
            BrokerConfigurationError: Missing or invalid settings, or a
                connection to this broker already exists
        """
        broker_type = (broker_type or "").lower()
        self._validate_settings(broker_type, fields)
        if self.connections.get_by_user_and_broker(user_id, broker_type):
            raise BrokerConfigurationError(f"A {broker_type} connection already exists")

        if fields.get("country"):
            fields["country"] = fields["country"].lower()
        connection = self.connections.create(user_id, broker_type, **fields)
        logger.info(f"Created {broker_type} connection {connection.id}")
        return connection

    def update_connection(self, connection: BrokerConnection, **fields: Any) -> BrokerConnection:
        """Update a connection. Changing Saxo app credentials drops its sessions."""
        merged = {
            key: fields.get(key) if fields.get(key) is not None else getattr(connection, key)
            for key in ("country", "username", "app_key", "app_secret", "redirect_uri")
        }
        self._validate_settings(connection.broker_type, merged)
        if fields.get("country"):
            fields["country"] = fields["country"].lower()

        credentials_changed = any(
            fields.get(key) is not None and fields[key] != getattr(connection, key)
            for key in SAXO_CREDENTIAL_FIELDS
        )
        self.connections.update(connection, **fields)

        if connection.broker_type == BrokerType.SAXO.value and credentials_changed:
            logger.info(f"Saxo credentials changed for connection {connection.id}")
            self.connections.clear_tokens(connection)
            self.runtime.saxo_oauth.invalidate(connection.id)
        return connection

    def delete_connection(self, connection: BrokerConnection) -> None:
        """Delete a connection, its mappings and history, and its sessions."""
        connection_id = connection.id
        self.connections.delete(connection)
        self.runtime.saxo_oauth.invalidate(connection_id)
        logger.info(f"Deleted broker connection {connection_id}")

    @staticmethod
    def _validate_settings(broker_type: str, fields: Dict[str, Any]) -> None:
        if broker_type == BrokerType.NORDNET.value:
            country = (fields.get("country") or "").lower()
            if country not in SUPPORTED_COUNTRIES:
                raise BrokerConfigurationError(
                    f"Country must be one of: {', '.join(SUPPORTED_COUNTRIES)}"
                )
            if not fields.get("username"):
                raise BrokerConfigurationError("MitID user id is required for Nordnet")
        elif broker_type == BrokerType.SAXO.value:
            if not fields.get("app_key"):
                raise BrokerConfigurationError("App key is required for Saxo")
        else:
            raise UnsupportedBrokerError(broker_type)

    def get_connection(self, connection_id: str, user_id: Optional[str] = None) -> BrokerConnection:
        """Get a connection, optionally scoped to its owner.

        Raises:
            ConnectionNotFoundError: No such connection for this user
        """
        connection = self.connections.get_by_id(connection_id)
        if connection is None or (user_id is not None and connection.user_id != user_id):
            raise ConnectionNotFoundError(connection_id)
        return connection

    # Mappings

    def save_mappings(
        self,
        connection: BrokerConnection,
        items: Iterable[Dict[str, Any]],
    ) -> List[AccountMapping]:
        """Replace the account mappings of a connection.

        Raises:
            BrokerConfigurationError: A local account is unknown or mapped twice
        """
        items = list(items)
        seen_local, seen_external = set(), set()
        for item in items:
            local_id = item["local_account_id"]
            external_id = item["external_account_id"]
            if local_id in seen_local or external_id in seen_external:
                raise BrokerConfigurationError("Each account can only be mapped once")
            if self.accounts.get_by_id(local_id, user_id=connection.user_id) is None:
                raise BrokerConfigurationError(f"Unknown local account: {local_id}")
            seen_local.add(local_id)
            seen_external.add(external_id)

        return self.mappings.replace_for_connection(connection.id, items)

    # Sync

    def sync_connection(self, connection_id: str) -> SyncResult:
        """Authenticate and sync every auto-sync account of a connection.

        One account failing does not stop the others; only accounts that
        synced completely are counted.

        Args:
            connection_id: Connection to sync

        Returns:
            SyncResult with counts and per-account errors

        Raises:
            ConnectionNotFoundError: Connection does not exist
            AuthenticationError: Interactive login failed (status auth_failed)
            BrokerError: Any other fatal failure (status error)
        """
        history = self.history.start(connection_id, "full")
        self.db.commit()

        connection = self.connections.get_by_id(connection_id)
        if connection is None:
            error = ConnectionNotFoundError(connection_id)
            logger.error(f"Sync failed: {error}")
            self.history.fail(history, str(error))
            self.db.commit()
            raise error
        logger.info(f"Starting {connection.broker_type} sync for connection {connection.id}")

        try:
            client, session = self._authenticate(connection)
        except AuthenticationError as e:
            self._record_failure(history, connection.id, "auth_failed", f"Authentication failed: {e}")
            raise
        except Exception as e:
            self._record_failure(history, connection.id, "error", str(e))
            raise

        result = SyncResult(success=False, accounts_synced=0, positions_synced=0)
        label = client.display_name

        try:
            targets = [
                (m.local_account_id, m.external_account_id)
                for m in self.mappings.get_auto_sync(connection.id)
            ]
            for local_account_id, external_account_id in targets:
                try:
                    count = self._sync_account(client, session, local_account_id, external_account_id, label)
                    self.db.commit()
                except (BrokerError, SQLAlchemyError) as e:
                    self.db.rollback()
                    logger.error(f"{label} sync failed for account {external_account_id}: {e}")
                    result.errors.append(f"{external_account_id}: {e}")
                    continue
                result.accounts_synced += 1
                result.positions_synced += count

            self.connections.update_sync_status(connection.id, "success")
            self.history.complete(history, result.accounts_synced, result.positions_synced)
            self.db.commit()
        except Exception as e:
            self._record_failure(history, connection.id, "error", str(e))
            raise

        result.success = True
        result.synced_at = history.completed_at
        logger.info(
            f"{label} sync finished for connection {connection.id}: "
            f"{result.accounts_synced}/{len(targets)} accounts, {result.positions_synced} positions"
        )
        return result

    def _sync_account(
        self,
        client: BrokerClient,
        session: Any,
        local_account_id: str,
        external_account_id: str,
        label: str,
    ) -> int:
        """Sync one mapped account. Returns the number of positions."""
        positions = client.get_positions(session, external_account_id)
        logger.info(f"Got {len(positions)} positions for {label} account {external_account_id}")

        try:
            ledgers = client.get_ledgers(session, external_account_id)
        except BrokerError as e:
            logger.warning(
                f"Could not fetch cash for {label} account {external_account_id}, "
                f"continuing without cash: {e}"
            )
            ledgers = []

        sync_time = utcnow()
        positions_value = 0.0
        for position in positions:
            self.holdings.upsert(local_account_id, position, sync_time)
            positions_value += position.current_value
        cash_value = sum(ledger.amount for ledger in ledgers)

        self.holdings.delete_stale_holdings(local_account_id, sync_time)

        total_value = round(positions_value + cash_value, 2)
        logger.info(
            f"{label} account {external_account_id}: positions={positions_value:.2f}, "
            f"cash={cash_value:.2f}, total={total_value:.2f}"
        )

        current_balance = self.transactions.get_latest_balance(local_account_id)
        if (positions or ledgers) and abs(total_value - current_balance) >= BALANCE_TOLERANCE:
            self.transactions.create(
                account_id=local_account_id,
                amount=round(total_value - current_balance, 2),
                balance_after=total_value,
                description=f"{label} sync",
                transaction_date=sync_time,
            )

        return len(positions)

    def _record_failure(self, history: SyncHistory, connection_id: str, status: str, message: str) -> None:
        self.db.rollback()
        logger.error(f"Sync failed for connection {connection_id}: {message}")
        self.history.fail(history, message)
        self.connections.update_sync_status(connection_id, status, message)
        self.db.commit()

    def sync_user(self, user_id: str) -> Dict[str, SyncResult]:
        """Sync every active connection of a user, collecting failures."""
        results = {}
        for connection in self.connections.get_active_by_user(user_id):
            try:
                results[connection.id] = self.sync_connection(connection.id)
            except BrokerError as e:
                results[connection.id] = SyncResult(
                    success=False,
                    accounts_synced=0,
                    positions_synced=0,
                    errors=[str(e)],
                    synced_at=datetime.utcnow(),
                )
        return results

    # Discovery

    def get_external_accounts(self, connection_id: str) -> List[ExternalAccount]:
        """List the broker's accounts for mapping setup, logging in if needed."""
        connection = self.connections.get_by_id(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(connection_id)
        client, session = self._authenticate(connection)
        accounts = client.get_accounts(session)
        logger.info(f"{client.display_name} returned {len(accounts)} accounts for {connection_id}")
        return accounts

    def _authenticate(self, connection: BrokerConnection) -> Tuple[BrokerClient, Any]:
        if connection.broker_type == BrokerType.NORDNET.value:
            client = self.runtime.nordnet_client(connection.country)
            if not connection.username:
                raise BrokerConfigurationError("MitID user id is required for Nordnet")
            session = self.runtime.mitid.authenticate(
                connection.id, connection.country, connection.username
            )
            return client, session

        if connection.broker_type == BrokerType.SAXO.value:
            client = self.runtime.saxo_client()
            session = self.runtime.saxo_oauth.authenticate(connection)
            return client, session

        raise UnsupportedBrokerError(connection.broker_type)


def get_broker_sync_service(db: Session, runtime: Optional[BrokerRuntime] = None) -> BrokerSyncService:
    """Factory function for broker sync service."""
    return BrokerSyncService(db, runtime)
