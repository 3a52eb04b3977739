"""Base broker client abstraction."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Tuple, Type, Union

from wealthsync.core.brokers.errors import BrokerAPIError, SessionExpiredError, truncate
from wealthsync.core.brokers.models import (
    BrokerPosition,
    BrokerType,
    CashLedger,
    ExternalAccount,
)
from wealthsync.core.brokers.transport import RateLimitedTransport

logger = logging.getLogger(__name__)

JsonShape = Union[Type, Tuple[Type, ...]]
SHAPE_NAMES = {list: "list", dict: "object"}


class BrokerClient(ABC):
    """Abstract base class for broker API clients.

    Each client implements methods to:
    1. Log in and produce a broker session
    2. List the user's accounts
    3. Fetch positions and cash ledgers for an account

    Every read refuses a missing or expired session before touching the
    network, and turns a 401 from the broker into SessionExpiredError.
    """

    def __init__(self, transport: RateLimitedTransport):
        self.transport = transport

    @property
    @abstractmethod
    def broker_type(self) -> BrokerType:
        """Return the broker type identifier."""
        pass

    @property
    @abstractmethod
    def display_name(self) -> str:
        """Return human-readable broker name."""
        pass

    @abstractmethod
    def login(self, **credentials: Any) -> Any:
        """Authenticate against the broker.

        Returns:
            A broker session usable with the read methods
        """
        pass

    @abstractmethod
    def get_accounts(self, session: Any) -> List[ExternalAccount]:
        """Fetch the accounts visible to a session."""
        pass

    @abstractmethod
    def get_positions(self, session: Any, account_id: str) -> List[BrokerPosition]:
        """Fetch positions for an account.

        Args:
            session: Broker session
            account_id: External account id (accid / AccountKey)

        Returns:
            List of normalized positions
        """
        pass

    @abstractmethod
    def get_ledgers(self, session: Any, account_id: str) -> List[CashLedger]:
        """Fetch cash balances for an account, one entry per currency."""
        pass

    def validate_session(self, session: Any) -> bool:
        """Check whether the broker still accepts a session."""
        if session is None or session.is_expired():
            return False
        try:
            self.get_accounts(session)
        except SessionExpiredError:
            return False
        return True

    def _require_session(self, session: Any) -> None:
        if session is None or session.is_expired():
            raise SessionExpiredError(f"{self.display_name} session expired")

    def _get_json(
        self,
        url: str,
        session: Any,
        what: str,
        params: Optional[Dict[str, Any]] = None,
        expect: Optional[JsonShape] = None,
    ) -> Any:
        """GET a JSON document with the shared status handling.

        Args:
            url: Endpoint URL
            session: Broker session sent as auth
            what: Name of the document for error messages
            params: Query parameters
            expect: Required top-level type(s). A JSON null becomes an empty
                document of that type.

        Raises:
            SessionExpiredError: Missing or expired session, or a 401
            BrokerAPIError: Other status, unreadable body or wrong shape
        """
        self._require_session(session)
        response = self.transport.get(url, auth=session, params=params)

        if response.status_code == 401:
            raise SessionExpiredError(f"{self.display_name} session expired")

        if response.status_code != 200:
            logger.error(
                f"{self.display_name} {what} failed: status {response.status_code}, "
                f"body: {truncate(response.text)}"
            )
            raise BrokerAPIError(
                f"Failed to get {what}: status {response.status_code}",
                status_code=response.status_code,
                body=response.text,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise BrokerAPIError(f"Failed to decode {what}: {e}") from e

        if expect is None:
            return data
        if data is None and isinstance(expect, type):
            return expect()
        if not isinstance(data, expect):
            expected = expect if isinstance(expect, tuple) else (expect,)
            names = " or ".join(SHAPE_NAMES.get(t, t.__name__) for t in expected)
            logger.error(
                f"{self.display_name} {what} has unexpected shape: {truncate(response.text)}"
            )
            raise BrokerAPIError(
                f"Failed to decode {what}: expected {names}, got {type(data).__name__}",
                body=response.text,
            )
        return data

    @contextmanager
    def _decoding(self, what: str) -> Iterator[None]:
        """Turn errors raised while reading a payload into BrokerAPIError."""
        try:
            yield
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.error(f"{self.display_name} {what} could not be parsed: {e}")
            raise BrokerAPIError(f"Failed to decode {what}: {e}") from e
