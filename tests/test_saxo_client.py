"""Tests for the Saxo client."""

from datetime import datetime, timedelta

import pytest
from unittest.mock import MagicMock, Mock

from wealthsync.core.brokers.errors import (
    AuthenticationError,
    BrokerAPIError,
    RefreshTokenExpiredError,
)
from wealthsync.core.brokers.models import BrokerPosition, SaxoBalance, SaxoSession
from wealthsync.core.brokers.saxo import (
    API_URL_SIMULATION,
    AUTH_URL_LIVE,
    SaxoClient,
    SaxoPosition,
    estimate_closed_market_values,
)


def make_response(status_code=200, payload=None, text=""):
    response = Mock()
    response.status_code = status_code
    if payload is None:
        response.json.side_effect = ValueError("no json")
    else:
        response.json.return_value = payload
    response.text = text
    return response


def make_client(get_responses=None, post_responses=None, simulation=False):
    transport = MagicMock()
    transport.get.side_effect = get_responses or []
    transport.post.side_effect = post_responses or []
    return SaxoClient(simulation=simulation, transport=transport), transport


def fresh_session(**kwargs):
    defaults = dict(
        access_token="access",
        expires_at=datetime.utcnow() + timedelta(minutes=20),
        refresh_token="refresh",
        refresh_expires_at=datetime.utcnow() + timedelta(hours=1),
        client_key="ck-1",
    )
    defaults.update(kwargs)
    return SaxoSession(**defaults)


def raw_position(uic, amount, open_price, market_value=0.0, asset_type="Stock"):
    return {
        "NetPositionId": f"{uic}__{asset_type}",
        "PositionBase": {"Uic": uic, "AssetType": asset_type, "Amount": amount, "OpenPrice": open_price},
        "PositionView": {
            "CurrentPrice": 0,
            "MarketValue": market_value,
            "MarketValueInBaseCurrency": market_value,
            "ExposureCurrency": "USD",
        },
    }


class TestSaxoTokens:
    """Tests for the token endpoint."""

    def test_authorize_url_depends_on_environment(self):
        live, _ = make_client()
        sim, _ = make_client(simulation=True)

        assert live.authorize_url == AUTH_URL_LIVE + "/authorize"
        assert sim.authorize_url.startswith("https://sim.")
        assert sim.api_url == API_URL_SIMULATION

    def test_login_with_client_secret(self):
        """Should exchange the code using the client secret."""
        client, transport = make_client(post_responses=[make_response(payload={
            "access_token": "at",
            "token_type": "Bearer",
            "expires_in": 1200,
            "refresh_token": "rt",
            "refresh_token_expires_in": 3600,
        })])

        session = client.login(code="code-1", redirect_uri="http://cb", app_key="key", app_secret="secret")

        assert session.access_token == "at"
        assert session.refresh_token == "rt"
        assert session.can_refresh()
        assert not session.needs_refresh()
        form = transport.post.call_args[1]["data"]
        assert form["client_secret"] == "secret"
        assert "code_verifier" not in form

    def test_login_with_pkce(self):
        """Should send the verifier when there is no client secret."""
        client, transport = make_client(post_responses=[make_response(payload={
            "access_token": "at", "expires_in": 1200,
        })])

        client.login(code="code-1", redirect_uri="http://cb", app_key="key", verifier="verifier-1")

        form = transport.post.call_args[1]["data"]
        assert form["code_verifier"] == "verifier-1"
        assert "client_secret" not in form

    def test_login_error_response(self):
        """Should raise AuthenticationError when the exchange is refused."""
        client, _ = make_client(post_responses=[make_response(status_code=400, payload={
            "error": "invalid_request", "error_description": "bad code",
        })])

        with pytest.raises(AuthenticationError, match="invalid_request"):
            client.login(code="bad", redirect_uri="http://cb", app_key="key", app_secret="s")

    def test_refresh_keeps_previous_refresh_token(self):
        """Should reuse the old refresh token when none is returned."""
        previous = fresh_session(expires_at=datetime.utcnow() + timedelta(minutes=1))
        client, _ = make_client(post_responses=[make_response(payload={
            "access_token": "new-access", "expires_in": 1200,
        })])

        refreshed = client.refresh_session(previous, app_key="key")

        assert refreshed.access_token == "new-access"
        assert refreshed.refresh_token == "refresh"
        assert refreshed.refresh_expires_at == previous.refresh_expires_at
        assert refreshed.client_key == "ck-1"

    def test_refresh_without_refresh_token(self):
        """Should refuse to refresh without a usable refresh token."""
        client, transport = make_client()
        session = fresh_session(refresh_token="", refresh_expires_at=None)

        with pytest.raises(RefreshTokenExpiredError):
            client.refresh_session(session, app_key="key")

        transport.post.assert_not_called()

    def test_refresh_invalid_grant(self):
        """Should report a rejected refresh token as expired."""
        client, _ = make_client(post_responses=[make_response(status_code=400, payload={"error": "invalid_grant"})])

        with pytest.raises(RefreshTokenExpiredError):
            client.refresh_session(fresh_session(), app_key="key")


class TestSaxoReads:
    """Tests for portfolio reads."""

    def test_get_accounts_resolves_client_key(self):
        """Should look up the client key once and list accounts."""
        client, transport = make_client(get_responses=[
            make_response(payload={"ClientKey": "ck-9"}),
            make_response(payload={"Data": [
                {"AccountKey": "ak-1", "AccountId": "123/456", "DisplayName": "Main", "Currency": "DKK"},
                {"AccountKey": "ak-2", "AccountId": "123/789", "Currency": "USD"},
            ]}),
        ])
        session = fresh_session(client_key="")

        accounts = client.get_accounts(session)

        assert session.client_key == "ck-9"
        assert [a.id for a in accounts] == ["ak-1", "ak-2"]
        assert accounts[1].name == "123/789"
        assert transport.get.call_args[1]["params"] == {"ClientKey": "ck-9"}

    def test_get_positions_enriches_with_instruments(self):
        """Should use instrument symbol, description and currency."""
        client, _ = make_client(get_responses=[
            make_response(payload={"Data": [raw_position(211, 10, 150.0, market_value=1700.0)]}),
            make_response(payload={"Data": [
                {"Uic": 211, "Symbol": "AAPL:xnas", "Description": "Apple Inc.", "CurrencyCode": "USD"},
            ]}),
        ])

        positions = client.get_positions(fresh_session(), "ak-1")

        assert len(positions) == 1
        assert positions[0].symbol == "AAPL:xnas"
        assert positions[0].name == "Apple Inc."
        assert positions[0].current_value == 1700.0
        assert positions[0].external_id == "211"

    def test_get_positions_without_instrument_details(self):
        """Should fall back to position fields when the lookup fails."""
        client, _ = make_client(get_responses=[
            make_response(payload={"Data": [raw_position(211, -5, 100.0, market_value=480.0)]}),
            make_response(status_code=500, text="error"),
        ])

        positions = client.get_positions(fresh_session(), "ak-1")

        assert positions[0].symbol == "211__Stock"
        assert positions[0].name == "Stock"
        assert positions[0].quantity == 5
        assert positions[0].currency == "USD"

    def test_get_positions_estimates_values_when_market_closed(self):
        """Should spread the balance's positions value by cost share."""
        client, _ = make_client(get_responses=[
            make_response(payload={"Data": [
                raw_position(1, 10, 100.0),
                raw_position(2, 5, 200.0),
            ]}),
            make_response(payload={"Data": []}),
            make_response(payload={
                "CashBalance": 500.0, "TotalValue": 3500.0,
                "NonMarginPositionsValue": 3000.0, "Currency": "DKK",
            }),
        ])

        positions = client.get_positions(fresh_session(), "ak-1")

        assert [p.current_value for p in positions] == [pytest.approx(1500.0), pytest.approx(1500.0)]
        assert positions[0].current_price == pytest.approx(150.0)
        assert positions[1].current_price == pytest.approx(300.0)

    def test_get_ledgers_from_balance(self):
        """Should return the cash balance as one ledger."""
        client, _ = make_client(get_responses=[make_response(payload={
            "CashBalance": 250.5, "TotalValue": 1000.0, "Currency": "DKK",
        })])

        ledgers = client.get_ledgers(fresh_session(), "ak-1")

        assert len(ledgers) == 1
        assert ledgers[0].amount == 250.5
        assert ledgers[0].currency == "DKK"

    def test_non_numeric_uic_is_api_error(self):
        """Should report an unreadable position instead of crashing."""
        bad = raw_position(211, 10, 150.0, market_value=1700.0)
        bad["PositionBase"]["Uic"] = "not-a-number"
        client, _ = make_client(get_responses=[make_response(payload={"Data": [bad]})])

        with pytest.raises(BrokerAPIError, match="Failed to decode positions"):
            client.get_positions(fresh_session(), "ak-1")

    def test_data_must_be_a_list(self):
        client, _ = make_client(get_responses=[make_response(payload={"Data": {"AccountKey": "ak-1"}})])

        with pytest.raises(BrokerAPIError, match="Failed to decode accounts"):
            client.get_accounts(fresh_session())

    def test_list_where_object_expected(self):
        client, _ = make_client(get_responses=[make_response(payload=[{"CashBalance": 1.0}])])

        with pytest.raises(BrokerAPIError, match="expected object, got list"):
            client.get_balance(fresh_session(), "ak-1")

    def test_bad_json_is_api_error(self):
        """Should raise BrokerAPIError for an unreadable body."""
        client, _ = make_client(get_responses=[make_response(payload=None)])

        with pytest.raises(BrokerAPIError):
            client.get_balance(fresh_session(), "ak-1")


class TestMarketValues:
    """Tests for market value fallbacks."""

    def test_best_market_value_fallback_chain(self):
        position = SaxoPosition(
            net_position_id="1", uic=1, asset_type="Stock", amount=-4, open_price=10.0,
            current_price=12.5, market_value=0.0, market_value_in_base=0.0,
            exposure=0.0, exposure_in_base=0.0, exposure_currency="USD",
        )
        assert position.best_market_value() == 50.0

        position.exposure = 48.0
        assert position.best_market_value() == 48.0

        position.market_value_in_base = 300.0
        assert position.best_market_value() == 300.0

    def test_estimate_leaves_valued_positions_alone(self):
        valued = BrokerPosition("A", "1", "A", 10, 100.0, 180.0, 1800.0, "DKK")
        closed = BrokerPosition("B", "2", "B", 10, 100.0, 0.0, 0.0, "DKK")
        balance = SaxoBalance(cash_balance=0.0, total_value=3000.0, positions_value=3000.0, currency="DKK")

        estimate_closed_market_values([valued, closed], balance)

        assert valued.current_value == 1800.0
        assert closed.current_value == pytest.approx(1500.0)

    def test_estimate_uses_total_minus_cash(self):
        closed = BrokerPosition("B", "2", "B", 10, 100.0, 0.0, 0.0, "DKK")
        balance = SaxoBalance(cash_balance=200.0, total_value=1200.0, positions_value=0.0, currency="DKK")

        estimate_closed_market_values([closed], balance)

        assert closed.current_value == pytest.approx(1000.0)

    def test_estimate_without_balance(self):
        closed = BrokerPosition("B", "2", "B", 10, 100.0, 0.0, 0.0, "DKK")

        estimate_closed_market_values([closed], None)

        assert closed.current_value == 0.0
