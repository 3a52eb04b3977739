"""Tests for BrokerSyncService against a real SQLite session."""

from datetime import datetime, timedelta

import pytest
from unittest.mock import MagicMock, Mock

from wealthsync.core.brokers.errors import (
    BrokerAPIError,
    BrokerConfigurationError,
    ConnectionNotFoundError,
    InteractiveAuthFailedError,
    UnsupportedBrokerError,
)
from wealthsync.core.brokers.models import BrokerPosition, CashLedger, ExternalAccount, NordnetSession
from wealthsync.core.brokers.nordnet import NordnetClient
from wealthsync.core.brokers.repository import AccountMappingRepository
from wealthsync.core.brokers.sync import BrokerSyncService
from wealthsync.core.portfolio.repository import HoldingRepository, TransactionRepository
from wealthsync.db.models import BrokerConnection, Holding, SyncHistory, Transaction


def position(symbol, value, quantity=1.0):
    return BrokerPosition(
        symbol=symbol,
        external_id=f"id-{symbol}",
        name=symbol,
        quantity=quantity,
        avg_price=value / quantity,
        current_price=value / quantity,
        current_value=value,
        currency="DKK",
    )


def make_client(name="Nordnet", positions=None, ledgers=None):
    """Broker client double keyed by external account id."""
    client = Mock()
    client.display_name = name
    positions = positions or {}
    ledgers = ledgers or {}

    def get_positions(session, account_id):
        result = positions.get(account_id, [])
        if isinstance(result, Exception):
            raise result
        return result

    def get_ledgers(session, account_id):
        result = ledgers.get(account_id, [])
        if isinstance(result, Exception):
            raise result
        return result

    client.get_positions.side_effect = get_positions
    client.get_ledgers.side_effect = get_ledgers
    return client


def make_runtime(client, session="broker-session"):
    runtime = MagicMock()
    runtime.nordnet_client.return_value = client
    runtime.saxo_client.return_value = client
    runtime.mitid.authenticate.return_value = session
    runtime.saxo_oauth.authenticate.return_value = session
    return runtime


def map_accounts(db, connection, accounts, external_ids):
    repo = AccountMappingRepository(db)
    for account, external_id in zip(accounts, external_ids):
        repo.create(connection.id, account.id, external_id)
    db.commit()


class TestSyncConnection:
    """Tests for BrokerSyncService.sync_connection."""

    def test_syncs_positions_and_cash(self, db, nordnet_connection, make_account):
        """Should store holdings and record the new balance."""
        account = make_account()
        map_accounts(db, nordnet_connection, [account], ["ext-1"])
        client = make_client(
            positions={"ext-1": [position("DK0060534915", 1000.0, 2), position("US0378331005", 250.0)]},
            ledgers={"ext-1": [CashLedger("DKK", 500.0, 500.0)]},
        )
        runtime = make_runtime(client)
        service = BrokerSyncService(db, runtime)

        result = service.sync_connection(nordnet_connection.id)

        assert result.success
        assert result.accounts_synced == 1
        assert result.positions_synced == 2
        assert result.errors == []
        runtime.mitid.authenticate.assert_called_once_with(nordnet_connection.id, "dk", "mitid-user")

        holdings = HoldingRepository(db).get_by_account(account.id)
        assert {h.symbol for h in holdings} == {"DK0060534915", "US0378331005"}

        transactions = db.query(Transaction).all()
        assert len(transactions) == 1
        assert transactions[0].amount == 1750.0
        assert transactions[0].balance_after == 1750.0
        assert transactions[0].description == "Nordnet sync"

        history = db.query(SyncHistory).one()
        assert history.status == "success"
        assert history.accounts_synced == 1
        assert history.positions_synced == 2
        assert nordnet_connection.last_sync_status == "success"
        assert nordnet_connection.last_sync_error is None

    def test_unchanged_balance_adds_no_transaction(self, db, nordnet_connection, make_account):
        """Should only record a transaction when the balance moves."""
        account = make_account()
        map_accounts(db, nordnet_connection, [account], ["ext-1"])
        service = BrokerSyncService(db, make_runtime(make_client(positions={"ext-1": [position("A", 100.0)]})))

        service.sync_connection(nordnet_connection.id)
        service.sync_connection(nordnet_connection.id)

        assert db.query(Transaction).count() == 1
        assert db.query(SyncHistory).count() == 2

    def test_balance_change_records_delta(self, db, nordnet_connection, make_account):
        """Should record the difference from the previous balance."""
        account = make_account()
        map_accounts(db, nordnet_connection, [account], ["ext-1"])
        TransactionRepository(db).create(
            account.id, 1000.0, 1000.0, "Opening balance", datetime.utcnow() - timedelta(days=1)
        )
        db.commit()
        service = BrokerSyncService(db, make_runtime(make_client(positions={"ext-1": [position("A", 1200.456)]})))

        service.sync_connection(nordnet_connection.id)

        latest = TransactionRepository(db).get_by_account(account.id)[0]
        assert latest.amount == pytest.approx(200.46)
        assert latest.balance_after == pytest.approx(1200.46)

    def test_empty_account_adds_no_transaction(self, db, nordnet_connection, make_account):
        account = make_account()
        map_accounts(db, nordnet_connection, [account], ["ext-1"])
        service = BrokerSyncService(db, make_runtime(make_client()))

        result = service.sync_connection(nordnet_connection.id)

        assert result.accounts_synced == 1
        assert db.query(Transaction).count() == 0

    def test_stale_holdings_are_removed(self, db, nordnet_connection, make_account):
        """Should update reported holdings and delete the rest."""
        account = make_account()
        map_accounts(db, nordnet_connection, [account], ["ext-1"])
        earlier = datetime.utcnow() - timedelta(hours=1)
        holdings = HoldingRepository(db)
        holdings.upsert(account.id, position("KEEP", 100.0), earlier)
        holdings.upsert(account.id, position("SOLD", 300.0), earlier)
        db.commit()
        service = BrokerSyncService(db, make_runtime(make_client(positions={"ext-1": [position("KEEP", 120.0)]})))

        service.sync_connection(nordnet_connection.id)

        remaining = holdings.get_by_account(account.id)
        assert [h.symbol for h in remaining] == ["KEEP"]
        assert remaining[0].current_value == 120.0

    def test_failing_account_does_not_stop_others(self, db, nordnet_connection, make_account):
        """Should sync the remaining accounts and count only the successful ones."""
        accounts = [make_account("A"), make_account("B"), make_account("C")]
        map_accounts(db, nordnet_connection, accounts, ["ext-1", "ext-2", "ext-3"])
        client = make_client(positions={
            "ext-1": [position("A1", 10.0)],
            "ext-2": BrokerAPIError("Failed to get positions: status 500", status_code=500),
            "ext-3": [position("C1", 30.0), position("C2", 40.0)],
        })
        service = BrokerSyncService(db, make_runtime(client))

        result = service.sync_connection(nordnet_connection.id)

        assert result.success
        assert result.accounts_synced == 2
        assert result.positions_synced == 3
        assert len(result.errors) == 1
        assert "ext-2" in result.errors[0]
        assert db.query(Holding).filter_by(account_id=accounts[1].id).count() == 0
        assert db.query(Holding).filter_by(account_id=accounts[2].id).count() == 2

        history = db.query(SyncHistory).one()
        assert history.status == "success"
        assert history.accounts_synced == 2

    def test_malformed_broker_payload_fails_only_that_account(self, db, nordnet_connection, make_account):
        """Should count an unreadable positions payload as a per-account error."""
        accounts = [make_account("A"), make_account("B"), make_account("C")]
        map_accounts(db, nordnet_connection, accounts, ["e1", "e2", "e3"])
        payloads = {
            "e1/positions": [{"instrument": {"isin_code": "DK0060534915"}, "qty": 2,
                              "market_value": {"value": 200}, "market_value_acc": {"value": 200}}],
            "e2/positions": {"code": "ERR"},
            "e3/positions": [{"instrument": {"symbol": "NOVO B"}, "qty": 1,
                              "market_value": {"value": 50}, "market_value_acc": {"value": 50}}],
        }

        def get(url, **kwargs):
            response = Mock(status_code=200, text="")
            key = "/".join(url.split("/")[-2:])
            response.json.return_value = payloads.get(key, {"ledgers": []})
            return response

        transport = MagicMock()
        transport.get.side_effect = get
        client = NordnetClient("dk", transport=transport)
        session = NordnetSession(jwt="jwt", ntag="ntag", expires_at=datetime.utcnow() + timedelta(hours=1))
        service = BrokerSyncService(db, make_runtime(client, session=session))

        result = service.sync_connection(nordnet_connection.id)

        assert result.success
        assert result.accounts_synced == 2
        assert result.positions_synced == 2
        assert len(result.errors) == 1
        assert result.errors[0].startswith("e2: Failed to decode positions")
        history = db.query(SyncHistory).one()
        assert history.status == "success"
        assert history.accounts_synced == 2

    def test_ledger_failure_is_not_fatal(self, db, nordnet_connection, make_account):
        """Should sync positions without cash when ledgers fail."""
        account = make_account()
        map_accounts(db, nordnet_connection, [account], ["ext-1"])
        client = make_client(
            positions={"ext-1": [position("A", 100.0)]},
            ledgers={"ext-1": BrokerAPIError("Failed to get ledgers: status 500")},
        )
        service = BrokerSyncService(db, make_runtime(client))

        result = service.sync_connection(nordnet_connection.id)

        assert result.accounts_synced == 1
        assert TransactionRepository(db).get_latest_balance(account.id) == 100.0

    def test_only_auto_sync_mappings(self, db, nordnet_connection, make_account):
        auto, manual = make_account("Auto"), make_account("Manual")
        repo = AccountMappingRepository(db)
        repo.create(nordnet_connection.id, auto.id, "ext-1")
        repo.create(nordnet_connection.id, manual.id, "ext-2", auto_sync=False)
        db.commit()
        client = make_client(positions={"ext-1": [position("A", 1.0)], "ext-2": [position("B", 1.0)]})
        service = BrokerSyncService(db, make_runtime(client))

        result = service.sync_connection(nordnet_connection.id)

        assert result.accounts_synced == 1
        assert [c.args[1] for c in client.get_positions.call_args_list] == ["ext-1"]

    def test_auth_failure_records_one_closed_history(self, db, nordnet_connection, make_account):
        """Should close the history once and mark the connection auth_failed."""
        account = make_account()
        map_accounts(db, nordnet_connection, [account], ["ext-1"])
        runtime = make_runtime(make_client())
        runtime.mitid.authenticate.side_effect = InteractiveAuthFailedError("MitID authentication failed: denied")
        service = BrokerSyncService(db, runtime)

        with pytest.raises(InteractiveAuthFailedError):
            service.sync_connection(nordnet_connection.id)

        history = db.query(SyncHistory).one()
        assert history.status == "error"
        assert history.completed_at is not None
        assert history.error_message.startswith("Authentication failed")
        connection = db.query(BrokerConnection).filter_by(id=nordnet_connection.id).one()
        assert connection.last_sync_status == "auth_failed"
        assert "denied" in connection.last_sync_error

    def test_missing_connection_is_recorded(self, db):
        """Should record the attempt as a closed error before raising."""
        runtime = make_runtime(make_client())
        service = BrokerSyncService(db, runtime)

        with pytest.raises(ConnectionNotFoundError):
            service.sync_connection("missing")

        history = db.query(SyncHistory).one()
        assert history.connection_id == "missing"
        assert history.status == "error"
        assert history.completed_at is not None
        assert "missing" in history.error_message
        runtime.mitid.authenticate.assert_not_called()

    def test_unsupported_broker_type(self, db, user):
        connection = BrokerConnection(user_id=user.id, broker_type="degiro")
        db.add(connection)
        db.commit()
        service = BrokerSyncService(db, make_runtime(make_client()))

        with pytest.raises(UnsupportedBrokerError):
            service.sync_connection(connection.id)

        history = db.query(SyncHistory).one()
        assert history.status == "error"
        assert connection.last_sync_status == "error"

    def test_saxo_uses_oauth_session(self, db, saxo_connection, make_account):
        account = make_account("Saxo")
        map_accounts(db, saxo_connection, [account], ["ak-1"])
        client = make_client(name="Saxo", positions={"ak-1": [position("AAPL:xnas", 500.0)]})
        runtime = make_runtime(client, session="saxo-session")
        service = BrokerSyncService(db, runtime)

        service.sync_connection(saxo_connection.id)

        runtime.saxo_oauth.authenticate.assert_called_once()
        runtime.mitid.authenticate.assert_not_called()
        client.get_positions.assert_called_once_with("saxo-session", "ak-1")
        assert db.query(Transaction).one().description == "Saxo sync"


class TestSyncUser:
    def test_collects_failures_per_connection(self, db, nordnet_connection, saxo_connection):
        runtime = make_runtime(make_client())
        runtime.saxo_oauth.authenticate.side_effect = InteractiveAuthFailedError("no login")
        service = BrokerSyncService(db, runtime)

        results = service.sync_user(nordnet_connection.user_id)

        assert results[nordnet_connection.id].success
        assert not results[saxo_connection.id].success
        assert "no login" in results[saxo_connection.id].errors[0]


class TestConnectionManagement:
    """Tests for creating, updating and mapping connections."""

    def test_create_nordnet_connection(self, db, user):
        service = BrokerSyncService(db, make_runtime(make_client()))

        connection = service.create_connection(user.id, "Nordnet", country="DK", username="mitid-user")

        assert connection.broker_type == "nordnet"
        assert connection.country == "dk"

    def test_create_rejects_bad_settings(self, db, user):
        service = BrokerSyncService(db, make_runtime(make_client()))

        with pytest.raises(BrokerConfigurationError):
            service.create_connection(user.id, "nordnet", country="de", username="u")
        with pytest.raises(BrokerConfigurationError):
            service.create_connection(user.id, "nordnet", country="dk")
        with pytest.raises(BrokerConfigurationError):
            service.create_connection(user.id, "saxo")
        with pytest.raises(UnsupportedBrokerError):
            service.create_connection(user.id, "degiro")

    def test_create_rejects_duplicate(self, db, user, nordnet_connection):
        service = BrokerSyncService(db, make_runtime(make_client()))

        with pytest.raises(BrokerConfigurationError):
            service.create_connection(user.id, "nordnet", country="se", username="other")

    def test_saxo_credential_change_invalidates_sessions(self, db, saxo_connection, encryptor):
        from wealthsync.core.brokers.models import SaxoSession
        from wealthsync.core.brokers.repository import BrokerConnectionRepository

        BrokerConnectionRepository(db).store_tokens(
            saxo_connection,
            encryptor,
            SaxoSession(access_token="a", expires_at=datetime.utcnow() + timedelta(minutes=20)),
        )
        runtime = make_runtime(make_client())
        service = BrokerSyncService(db, runtime)

        service.update_connection(saxo_connection, app_key="new-key")

        assert saxo_connection.app_key == "new-key"
        assert not saxo_connection.has_stored_tokens
        runtime.saxo_oauth.invalidate.assert_called_once_with(saxo_connection.id)

    def test_unrelated_update_keeps_sessions(self, db, saxo_connection):
        runtime = make_runtime(make_client())
        service = BrokerSyncService(db, runtime)

        service.update_connection(saxo_connection, app_key="app-key", is_active=False)

        assert saxo_connection.is_active is False
        runtime.saxo_oauth.invalidate.assert_not_called()

    def test_get_connection_scoped_to_user(self, db, nordnet_connection):
        service = BrokerSyncService(db, make_runtime(make_client()))

        assert service.get_connection(nordnet_connection.id, user_id=nordnet_connection.user_id)
        with pytest.raises(ConnectionNotFoundError):
            service.get_connection(nordnet_connection.id, user_id="someone-else")

    def test_save_mappings_validates(self, db, nordnet_connection, make_account):
        account = make_account()
        service = BrokerSyncService(db, make_runtime(make_client()))

        with pytest.raises(BrokerConfigurationError):
            service.save_mappings(nordnet_connection, [
                {"local_account_id": account.id, "external_account_id": "ext-1"},
                {"local_account_id": account.id, "external_account_id": "ext-2"},
            ])
        with pytest.raises(BrokerConfigurationError):
            service.save_mappings(nordnet_connection, [
                {"local_account_id": "missing", "external_account_id": "ext-1"},
            ])

        mappings = service.save_mappings(nordnet_connection, [
            {"local_account_id": account.id, "external_account_id": "ext-1"},
        ])
        assert len(mappings) == 1

    def test_get_external_accounts(self, db, nordnet_connection):
        client = make_client()
        client.get_accounts.return_value = [ExternalAccount("1", "123", "Depot", "DKK", "ISK")]
        service = BrokerSyncService(db, make_runtime(client))

        accounts = service.get_external_accounts(nordnet_connection.id)

        assert accounts[0].name == "Depot"
        client.get_accounts.assert_called_once_with("broker-session")

    def test_delete_connection(self, db, nordnet_connection):
        runtime = make_runtime(make_client())
        service = BrokerSyncService(db, runtime)

        service.delete_connection(nordnet_connection)

        assert db.query(BrokerConnection).count() == 0
        runtime.saxo_oauth.invalidate.assert_called_once()
