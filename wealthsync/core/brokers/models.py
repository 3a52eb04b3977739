"""Broker integration data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, List, Optional


def _utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database stores."""
    return datetime.utcnow()


class BrokerType(str, Enum):
    """Supported broker types."""

    NORDNET = "nordnet"
    SAXO = "saxo"


class AuthStatus(str, Enum):
    """Interactive login states reported to polling clients."""

    NONE = "none"
    INITIALIZING = "initializing"
    QR_READY = "qr_ready"
    PENDING = "pending"
    APPROVED = "approved"
    AUTHENTICATED = "authenticated"
    TIMEOUT = "timeout"
    FAILED = "failed"


SUPPORTED_COUNTRIES = ("dk", "se", "no", "fi")

# Saxo tokens are refreshed this long before they expire
TOKEN_REFRESH_BUFFER = timedelta(minutes=5)


@dataclass
class ExternalAccount:
    """An account as reported by a broker, used to set up mappings."""

    id: str  # accid for Nordnet, AccountKey for Saxo
    account_number: str  # Human-readable number shown by the broker
    name: str
    currency: str
    type: str
    active: bool = True


@dataclass
class BrokerPosition:
    """A position fetched from a broker, normalized across brokers."""

    symbol: str  # ISIN where the broker provides one
    external_id: str
    name: str
    quantity: float
    avg_price: float
    current_price: float
    current_value: float  # In account currency
    currency: str
    instrument_type: str = ""


@dataclass
class CashLedger:
    """Cash held in one currency on a broker account."""

    currency: str
    amount: float  # In the ledger currency
    amount_acc: float  # Converted to account currency


@dataclass
class SaxoBalance:
    """Account balance snapshot from Saxo."""

    cash_balance: float
    total_value: float
    positions_value: float
    currency: str


@dataclass
class SyncResult:
    """Result of syncing a broker connection."""

    success: bool
    accounts_synced: int
    positions_synced: int
    errors: List[str] = field(default_factory=list)
    synced_at: Optional[datetime] = None


@dataclass
class NordnetSession:
    """Authenticated Nordnet session.

    Legacy logins carry cookies plus an XSRF token. MitID logins carry a
    JWT, an ntag header value and the issuing domain, usually with cookies.
    """

    expires_at: datetime
    cookies: Dict[str, str] = field(default_factory=dict)
    xsrf_token: str = ""
    jwt: str = ""
    ntag: str = ""
    domain: str = ""
    locale: str = "da-DK"

    @property
    def is_mitid(self) -> bool:
        return bool(self.jwt)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def auth_headers(self) -> Dict[str, str]:
        if self.is_mitid:
            # The JWT itself is short-lived; API calls rely on ntag + cookies
            return {"ntag": self.ntag, "client-id": "NEXT", "x-locale": self.locale}
        if self.xsrf_token:
            return {"X-XSRF-TOKEN": self.xsrf_token}
        return {}

    def auth_cookies(self) -> Dict[str, str]:
        return dict(self.cookies)


@dataclass
class SaxoSession:
    """OAuth2 session for the Saxo OpenAPI."""

    access_token: str
    expires_at: datetime
    refresh_token: str = ""
    refresh_expires_at: Optional[datetime] = None
    token_type: str = "Bearer"
    client_key: str = ""

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.expires_at

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        """True once the access token is within the refresh buffer of expiry."""
        return (now or _utcnow()) + TOKEN_REFRESH_BUFFER >= self.expires_at

    def can_refresh(self, now: Optional[datetime] = None) -> bool:
        """True while a refresh token exists and has not expired."""
        if not self.refresh_token or self.refresh_expires_at is None:
            return False
        return (now or _utcnow()) < self.refresh_expires_at

    def auth_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}

    def auth_cookies(self) -> Dict[str, str]:
        return {}
