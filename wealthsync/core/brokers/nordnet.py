"""Nordnet API client.

Nordnet has no public API for retail customers; this client talks to the
same endpoints as the web app. Two kinds of session are supported:
legacy username/password logins (cookies + XSRF token) and MitID logins
obtained through the QR helper (ntag + cookies).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, List, Optional

from wealthsync.config import get_settings
from wealthsync.core.brokers.base import BrokerClient
from wealthsync.core.brokers.errors import (
    AuthenticationError,
    BrokerConfigurationError,
    InvalidCredentialsError,
    truncate,
)
from wealthsync.core.brokers.models import (
    BrokerPosition,
    BrokerType,
    CashLedger,
    ExternalAccount,
    NordnetSession,
    SUPPORTED_COUNTRIES,
)
from wealthsync.core.brokers.transport import RateLimitedTransport

logger = logging.getLogger(__name__)
settings = get_settings()

SESSION_LIFETIME = timedelta(hours=24)
HTML_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


def base_url_for(country: str) -> str:
    """Map a country code to the Nordnet site for that market."""
    country = (country or "").lower()
    if country not in SUPPORTED_COUNTRIES:
        raise BrokerConfigurationError(f"Unsupported Nordnet country: {country or '(empty)'}")
    return f"https://www.nordnet.{country}"


def flexible_float(value: Any) -> float:
    """Read a Nordnet numeric field.

    Fields arrive either as bare numbers or as {"value": N} objects. Anything
    else reads as 0.0 so one odd field never aborts a whole payload.
    """
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, dict):
        inner = value.get("value", 0)
        if isinstance(inner, (int, float)) and not isinstance(inner, bool):
            return float(inner)
    return 0.0


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value)


@dataclass
class AccountInfo:
    """Account summary from /info."""

    account_id: str
    account_value: float
    own_capital: float
    trading_power: float
    currency: str


@dataclass
class Trade:
    """A completed trade."""

    trade_id: str
    instrument_id: str
    isin: str
    name: str
    side: str  # BUY or SELL
    price: float
    volume: float
    amount: float
    commission: float
    currency: str
    traded_at: str


class NordnetClient(BrokerClient):
    """Client for one Nordnet market."""

    def __init__(self, country: str, transport: Optional[RateLimitedTransport] = None):
        self.country = country.lower()
        self.base_url = base_url_for(self.country)
        super().__init__(
            transport
            or RateLimitedTransport(
                min_interval=settings.nordnet_min_request_interval,
                throttle_backoff=settings.nordnet_throttle_backoff,
                timeout=settings.http_timeout_seconds,
            )
        )

    @property
    def broker_type(self) -> BrokerType:
        return BrokerType.NORDNET

    @property
    def display_name(self) -> str:
        return "Nordnet"

    # Legacy login

    def login(self, username: str, password: str) -> NordnetSession:
        """Log in with username and password.

        Three steps: the start page sets TUX-COOKIE, an anonymous login sets
        NOW, and the basic login authenticates. Cookies accumulate on the
        transport's HTTP session between steps.

        Raises:
            InvalidCredentialsError: Broker rejected the credentials
            AuthenticationError: Any step failed to produce its cookie
        """
        jar = self.transport.session.cookies

        self.transport.get(
            f"{self.base_url}/mux/login/start.html?cmpi=start-loggain&state=signin",
            headers={"Accept": HTML_ACCEPT},
        )
        if not jar.get("TUX-COOKIE"):
            raise AuthenticationError("TUX-COOKIE not found in response")

        response = self.transport.post(
            f"{self.base_url}/api/2/login/anonymous",
            headers={"Content-Type": FORM_CONTENT_TYPE},
        )
        if response.status_code != 200:
            raise AuthenticationError(f"Anonymous login failed with status {response.status_code}")
        if not jar.get("NOW"):
            raise AuthenticationError("NOW cookie not found in response")

        response = self.transport.post(
            f"{self.base_url}/api/2/authentication/basic/login",
            headers={"Content-Type": FORM_CONTENT_TYPE},
            data={"username": username, "password": password},
        )
        if response.status_code in (401, 403):
            raise InvalidCredentialsError("Nordnet rejected the username or password")
        if response.status_code != 200:
            logger.error(
                f"Nordnet login failed: status {response.status_code}, body: {truncate(response.text)}"
            )
            raise AuthenticationError(f"Login failed with status {response.status_code}")

        cookies = jar.get_dict()
        xsrf_token = cookies.get("xsrf") or cookies.get("XSRF-TOKEN") or ""
        if not xsrf_token:
            xsrf_token = response.headers.get("X-XSRF-TOKEN", "")

        logger.info(f"Nordnet login succeeded ({self.country})")
        return NordnetSession(
            cookies=cookies,
            xsrf_token=xsrf_token,
            expires_at=datetime.utcnow() + SESSION_LIFETIME,
        )

    # Reads

    def get_accounts(self, session: NordnetSession) -> List[ExternalAccount]:
        data = self._get_json(f"{self.base_url}/api/2/accounts", session, "accounts", expect=list)
        with self._decoding("accounts"):
            return [
                ExternalAccount(
                    id=_as_str(item.get("accid")),
                    account_number=_as_str(item.get("accno")),
                    name=item.get("alias") or "",
                    currency=item.get("currency") or "",
                    type=item.get("type") or "",
                    active=not item.get("is_blocked", False),
                )
                for item in data
            ]

    def get_positions(self, session: NordnetSession, account_id: str) -> List[BrokerPosition]:
        data = self._get_json(
            f"{self.base_url}/api/2/accounts/{account_id}/positions", session, "positions", expect=list
        )
        with self._decoding("positions"):
            positions = [self._parse_position(item) for item in data]
        logger.debug(f"Nordnet returned {len(positions)} positions for account {account_id}")
        return positions

    def get_ledgers(self, session: NordnetSession, account_id: str) -> List[CashLedger]:
        data = self._get_json(
            f"{self.base_url}/api/2/accounts/{account_id}/ledgers", session, "ledgers", expect=dict
        )
        with self._decoding("ledgers"):
            ledgers = [
                CashLedger(
                    currency=item.get("currency") or "",
                    amount=flexible_float(item.get("account_sum")),
                    amount_acc=flexible_float(item.get("account_sum_acc")),
                )
                for item in data.get("ledgers") or []
            ]
        total = data.get("total") or {}
        logger.debug(
            f"Nordnet ledger total for {account_id}: {flexible_float(total):.2f} "
            f"{total.get('currency', '') if isinstance(total, dict) else ''} "
            f"({len(ledgers)} ledgers)"
        )
        return ledgers

    def get_account_info(self, session: NordnetSession, account_id: str) -> AccountInfo:
        data = self._get_json(
            f"{self.base_url}/api/2/accounts/{account_id}/info",
            session,
            "account info",
            expect=(dict, list),
        )
        with self._decoding("account info"):
            # Some markets wrap the single info object in a list
            if isinstance(data, list):
                data = data[0] if data else {}
            return AccountInfo(
                account_id=_as_str(data.get("accid")) or account_id,
                account_value=flexible_float(data.get("account_value")),
                own_capital=flexible_float(data.get("own_capital")),
                trading_power=flexible_float(data.get("trading_power")),
                currency=data.get("account_currency") or "",
            )

    def get_trades(self, session: NordnetSession, account_id: str) -> List[Trade]:
        data = self._get_json(
            f"{self.base_url}/api/2/accounts/{account_id}/trades", session, "trades", expect=list
        )
        with self._decoding("trades"):
            return [
                Trade(
                    trade_id=_as_str(item.get("trade_id")),
                    instrument_id=_as_str(item.get("instrument_id")),
                    isin=item.get("isin") or "",
                    name=item.get("instrument_name") or "",
                    side=item.get("side") or "",
                    price=flexible_float(item.get("price")),
                    volume=flexible_float(item.get("volume")),
                    amount=flexible_float(item.get("amount")),
                    commission=flexible_float(item.get("commission")),
                    currency=item.get("currency") or "",
                    traded_at=_as_str(item.get("traded_at")),
                )
                for item in data
            ]

    @staticmethod
    def _parse_position(item: dict) -> BrokerPosition:
        instrument = item.get("instrument") or {}
        quantity = flexible_float(item.get("qty"))
        market_value = flexible_float(item.get("market_value"))
        return BrokerPosition(
            symbol=instrument.get("isin_code") or instrument.get("symbol") or "",
            external_id=_as_str(instrument.get("instrument_id")),
            name=instrument.get("name") or "",
            quantity=quantity,
            avg_price=flexible_float(item.get("acq_price")),
            current_price=market_value / quantity if quantity else 0.0,
            current_value=flexible_float(item.get("market_value_acc")),
            currency=instrument.get("currency") or "",
            instrument_type=instrument.get("instrument_type") or "",
        )
