"""Saxo Bank OpenAPI client.

Sessions come from the OAuth2 authorization-code flow (see oauth.py); this
module covers the token endpoint and the portfolio reads.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from wealthsync.config import get_settings
from wealthsync.core.brokers.base import BrokerClient
from wealthsync.core.brokers.errors import (
    AuthenticationError,
    BrokerAPIError,
    RefreshTokenExpiredError,
    truncate,
)
from wealthsync.core.brokers.models import (
    BrokerPosition,
    BrokerType,
    CashLedger,
    ExternalAccount,
    SaxoBalance,
    SaxoSession,
)
from wealthsync.core.brokers.transport import RateLimitedTransport

logger = logging.getLogger(__name__)
settings = get_settings()

AUTH_URL_LIVE = "https://live.logonvalidation.net"
AUTH_URL_SIMULATION = "https://sim.logonvalidation.net"
API_URL_LIVE = "https://gateway.saxobank.com/openapi"
API_URL_SIMULATION = "https://gateway.saxobank.com/sim/openapi"
AUTHORIZE_PATH = "/authorize"
TOKEN_PATH = "/token"

FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"


@dataclass
class SaxoPosition:
    """Raw Saxo position with the fields the sync needs."""

    net_position_id: str
    uic: int
    asset_type: str
    amount: float
    open_price: float
    current_price: float
    market_value: float
    market_value_in_base: float
    exposure: float
    exposure_in_base: float
    exposure_currency: str
    status: str = ""

    @property
    def abs_quantity(self) -> float:
        return abs(self.amount)

    def best_market_value(self) -> float:
        """Market value, falling back through the fields Saxo leaves at 0 after hours."""
        for value in (
            self.market_value_in_base,
            self.market_value,
            self.exposure_in_base,
            self.exposure,
        ):
            if value:
                return value
        if self.current_price:
            return self.abs_quantity * self.current_price
        return 0.0


@dataclass
class InstrumentDetails:
    uic: int
    symbol: str
    description: str
    currency: str
    asset_type: str


def _number(value: Any) -> float:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    return 0.0


def _as_text(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _data_items(data: Dict[str, Any]) -> List[Any]:
    """The Data array of a Saxo list response."""
    items = data.get("Data") or []
    if not isinstance(items, list):
        raise TypeError(f"Data is {type(items).__name__}, not a list")
    return items


def estimate_closed_market_values(
    positions: List[BrokerPosition],
    balance: Optional[SaxoBalance],
) -> List[BrokerPosition]:
    """Fill in values for positions Saxo reported as 0 (markets closed).

    The positions value from the balance is spread over the positions in
    proportion to their cost basis. Positions with a reported value are left
    alone.
    """
    if balance is None:
        return positions

    positions_value = balance.positions_value
    if positions_value <= 0 and balance.total_value > 0 and balance.cash_balance >= 0:
        positions_value = balance.total_value - balance.cash_balance
    total_cost = sum(abs(p.quantity) * p.avg_price for p in positions)
    if positions_value <= 0 or total_cost <= 0:
        return positions

    for position in positions:
        if position.current_value:
            continue
        cost = abs(position.quantity) * position.avg_price
        position.current_value = cost / total_cost * positions_value
        if position.quantity:
            position.current_price = position.current_value / abs(position.quantity)
        logger.debug(
            f"Estimated Saxo value for {position.symbol}: {position.current_value:.2f} "
            f"(cost share {cost / total_cost:.4f})"
        )
    return positions


class SaxoClient(BrokerClient):
    """Client for the Saxo OpenAPI (live or simulation)."""

    def __init__(self, simulation: bool = False, transport: Optional[RateLimitedTransport] = None):
        self.simulation = simulation
        self.api_url = API_URL_SIMULATION if simulation else API_URL_LIVE
        self.auth_url = AUTH_URL_SIMULATION if simulation else AUTH_URL_LIVE
        super().__init__(
            transport
            or RateLimitedTransport(
                min_interval=settings.saxo_min_request_interval,
                throttle_backoff=settings.saxo_throttle_backoff,
                timeout=settings.http_timeout_seconds,
            )
        )

    @property
    def broker_type(self) -> BrokerType:
        return BrokerType.SAXO

    @property
    def display_name(self) -> str:
        return "Saxo"

    @property
    def authorize_url(self) -> str:
        return self.auth_url + AUTHORIZE_PATH

    # Tokens

    def login(
        self,
        code: str,
        redirect_uri: str,
        app_key: str,
        app_secret: str = "",
        verifier: str = "",
    ) -> SaxoSession:
        """Exchange an authorization code for tokens.

        Uses the client secret when the app has one, otherwise the PKCE
        verifier.

        Raises:
            AuthenticationError: Token endpoint refused the exchange
        """
        form = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": app_key,
        }
        if app_secret:
            form["client_secret"] = app_secret
        elif verifier:
            form["code_verifier"] = verifier

        logger.info(
            f"Saxo token request ({'client_secret' if app_secret else 'PKCE'} flow), "
            f"client_id={app_key}, redirect_uri={redirect_uri}"
        )
        payload = self._token_request(form, "Token request")
        return self._session_from_tokens(payload)

    def refresh_session(
        self,
        session: SaxoSession,
        app_key: str,
        app_secret: str = "",
    ) -> SaxoSession:
        """Get a new access token with the refresh token.

        Raises:
            RefreshTokenExpiredError: No usable refresh token
        """
        if session is None or not session.can_refresh():
            raise RefreshTokenExpiredError("Saxo refresh token expired; log in again")

        form = {
            "grant_type": "refresh_token",
            "refresh_token": session.refresh_token,
            "client_id": app_key,
        }
        if app_secret:
            form["client_secret"] = app_secret

        try:
            payload = self._token_request(form, "Token refresh")
        except AuthenticationError as e:
            if "invalid_grant" in str(e):
                raise RefreshTokenExpiredError("Saxo refresh token was rejected") from e
            raise

        refreshed = self._session_from_tokens(payload, previous=session)
        logger.info(f"Saxo token refreshed, expires at {refreshed.expires_at}")
        return refreshed

    def _token_request(self, form: Dict[str, str], what: str) -> Dict[str, Any]:
        response = self.transport.post(
            self.auth_url + TOKEN_PATH,
            headers={"Content-Type": FORM_CONTENT_TYPE},
            data=form,
        )
        try:
            payload = response.json()
        except ValueError:
            payload = {}

        if response.status_code >= 400 or payload.get("error"):
            error = payload.get("error") or f"status {response.status_code}"
            description = payload.get("error_description") or ""
            logger.error(f"Saxo {what.lower()} failed: {error}, body: {truncate(response.text)}")
            raise AuthenticationError(f"{what} failed: {error} {description}".strip())

        if not payload.get("access_token"):
            raise AuthenticationError(f"{what} failed: no access token in response")
        return payload

    @staticmethod
    def _session_from_tokens(
        payload: Dict[str, Any],
        previous: Optional[SaxoSession] = None,
    ) -> SaxoSession:
        now = datetime.utcnow()
        refresh_token = payload.get("refresh_token") or ""
        refresh_expires_at = None
        if refresh_token and payload.get("refresh_token_expires_in"):
            refresh_expires_at = now + timedelta(seconds=int(payload["refresh_token_expires_in"]))
        elif previous is not None:
            # Refresh responses may omit a new refresh token
            refresh_token = previous.refresh_token
            refresh_expires_at = previous.refresh_expires_at

        return SaxoSession(
            access_token=payload["access_token"],
            token_type=payload.get("token_type") or "Bearer",
            expires_at=now + timedelta(seconds=int(payload.get("expires_in") or 0)),
            refresh_token=refresh_token,
            refresh_expires_at=refresh_expires_at,
            client_key=previous.client_key if previous is not None else "",
        )

    # Reads

    def get_client_key(self, session: SaxoSession) -> str:
        """Resolve and cache the ClientKey for a session."""
        if not session.client_key:
            data = self._get_json(
                f"{self.api_url}/port/v1/clients/me", session, "client info", expect=dict
            )
            session.client_key = _as_text(data.get("ClientKey"))
            if not session.client_key:
                raise BrokerAPIError("Saxo client info has no ClientKey")
        return session.client_key

    def get_accounts(self, session: SaxoSession) -> List[ExternalAccount]:
        client_key = self.get_client_key(session)
        data = self._get_json(
            f"{self.api_url}/port/v1/accounts",
            session,
            "accounts",
            params={"ClientKey": client_key},
            expect=dict,
        )
        with self._decoding("accounts"):
            return [
                ExternalAccount(
                    id=item.get("AccountKey") or "",
                    account_number=item.get("AccountId") or "",
                    name=item.get("DisplayName") or item.get("AccountId") or "",
                    currency=item.get("Currency") or "",
                    type=item.get("AccountType") or "",
                    active=bool(item.get("Active", True)),
                )
                for item in _data_items(data)
            ]

    def get_raw_positions(self, session: SaxoSession, account_key: str) -> List[SaxoPosition]:
        client_key = self.get_client_key(session)
        data = self._get_json(
            f"{self.api_url}/port/v1/positions",
            session,
            "positions",
            params={"ClientKey": client_key, "AccountKey": account_key},
            expect=dict,
        )
        positions = []
        with self._decoding("positions"):
            for item in _data_items(data):
                base = item.get("PositionBase") or {}
                view = item.get("PositionView") or {}
                positions.append(
                    SaxoPosition(
                        net_position_id=item.get("NetPositionId") or "",
                        uic=int(base.get("Uic") or 0),
                        asset_type=base.get("AssetType") or "",
                        amount=_number(base.get("Amount")),
                        open_price=_number(base.get("OpenPrice")),
                        current_price=_number(view.get("CurrentPrice")),
                        market_value=_number(view.get("MarketValue")),
                        market_value_in_base=_number(view.get("MarketValueInBaseCurrency")),
                        exposure=_number(view.get("Exposure")),
                        exposure_in_base=_number(view.get("ExposureInBaseCurrency")),
                        exposure_currency=view.get("ExposureCurrency") or "",
                        status=base.get("Status") or "",
                    )
                )
        return positions

    def get_instrument_details(
        self,
        session: SaxoSession,
        uics: List[int],
        asset_types: List[str],
    ) -> Dict[int, InstrumentDetails]:
        if not uics:
            return {}
        data = self._get_json(
            f"{self.api_url}/ref/v1/instruments/details",
            session,
            "instrument details",
            params={
                "Uics": ",".join(str(uic) for uic in uics),
                "AssetTypes": ",".join(asset_types),
            },
            expect=dict,
        )
        details = {}
        with self._decoding("instrument details"):
            for item in _data_items(data):
                uic = int(item.get("Uic") or 0)
                details[uic] = InstrumentDetails(
                    uic=uic,
                    symbol=item.get("Symbol") or "",
                    description=item.get("Description") or "",
                    currency=item.get("CurrencyCode") or "",
                    asset_type=item.get("AssetType") or "",
                )
        return details

    def get_positions(self, session: SaxoSession, account_key: str) -> List[BrokerPosition]:
        """Fetch positions enriched with instrument names and symbols.

        A failed instrument lookup is logged; positions then fall back to
        the net position id and asset type.
        """
        raw = self.get_raw_positions(session, account_key)
        if not raw:
            return []

        uics = sorted({p.uic for p in raw})
        asset_types = sorted({p.asset_type for p in raw if p.asset_type})
        try:
            instruments = self.get_instrument_details(session, uics, asset_types)
        except BrokerAPIError as e:
            logger.warning(f"Failed to fetch Saxo instrument details: {e}")
            instruments = {}

        positions = []
        for pos in raw:
            instrument = instruments.get(pos.uic)
            positions.append(
                BrokerPosition(
                    symbol=(instrument.symbol if instrument and instrument.symbol else pos.net_position_id),
                    external_id=str(pos.uic),
                    name=(instrument.description if instrument and instrument.description else pos.asset_type),
                    quantity=pos.abs_quantity,
                    avg_price=pos.open_price,
                    current_price=pos.current_price,
                    current_value=pos.best_market_value(),
                    currency=(instrument.currency if instrument and instrument.currency else pos.exposure_currency),
                    instrument_type=pos.asset_type,
                )
            )

        if any(not p.current_value for p in positions):
            try:
                balance = self.get_balance(session, account_key)
            except BrokerAPIError as e:
                logger.warning(f"Could not fetch Saxo balance to estimate values: {e}")
                balance = None
            estimate_closed_market_values(positions, balance)

        return positions

    def get_balance(self, session: SaxoSession, account_key: str) -> SaxoBalance:
        client_key = self.get_client_key(session)
        data = self._get_json(
            f"{self.api_url}/port/v1/balances",
            session,
            "balance",
            params={"AccountKey": account_key, "ClientKey": client_key},
            expect=dict,
        )
        return SaxoBalance(
            cash_balance=_number(data.get("CashBalance")),
            total_value=_number(data.get("TotalValue")),
            positions_value=_number(data.get("NonMarginPositionsValue")),
            currency=data.get("Currency") or "",
        )

    def get_ledgers(self, session: SaxoSession, account_key: str) -> List[CashLedger]:
        """Cash on the account as a single ledger in the account currency."""
        balance = self.get_balance(session, account_key)
        return [
            CashLedger(
                currency=balance.currency,
                amount=balance.cash_balance,
                amount_acc=balance.cash_balance,
            )
        ]
