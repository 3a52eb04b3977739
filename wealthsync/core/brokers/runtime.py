"""Process-level broker wiring.

The runtime owns everything that must outlive a single request: the
interactive auth registry, the orchestrators that use it, the credential
encryptor, and one client per broker market so rate limits are shared.
"""

from __future__ import annotations

import logging
import threading
from contextlib import AbstractContextManager
from functools import lru_cache
from typing import Callable, Dict, Optional

from sqlalchemy.orm import Session

from wealthsync.config import Settings, get_settings
from wealthsync.core.brokers.encryption import CredentialEncryptor
from wealthsync.core.brokers.mitid import (
    MitIDAuthOrchestrator,
    QRAuthenticator,
    SubprocessQRAuthenticator,
)
from wealthsync.core.brokers.models import SaxoSession
from wealthsync.core.brokers.nordnet import NordnetClient
from wealthsync.core.brokers.oauth import SaxoOAuthOrchestrator, TokenStore
from wealthsync.core.brokers.registry import AuthSessionRegistry
from wealthsync.core.brokers.repository import BrokerConnectionRepository
from wealthsync.core.brokers.saxo import SaxoClient
from wealthsync.db.database import get_db

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], AbstractContextManager]


class DatabaseTokenStore(TokenStore):
    """Keeps Saxo tokens encrypted on the connection row.

    Uses its own database session so tokens survive even when the caller's
    transaction is rolled back.
    """

    def __init__(self, encryptor: CredentialEncryptor, session_factory: SessionFactory = get_db):
        self.encryptor = encryptor
        self.session_factory = session_factory

    def _connection(self, db: Session, connection_id: str, user_id: Optional[str] = None):
        connection = BrokerConnectionRepository(db).get_by_id(connection_id)
        if connection is None or (user_id is not None and connection.user_id != user_id):
            return None
        return connection

    def load(self, connection_id: str, user_id: str) -> Optional[SaxoSession]:
        with self.session_factory() as db:
            connection = self._connection(db, connection_id, user_id)
            if connection is None:
                return None
            return BrokerConnectionRepository(db).load_tokens(connection, self.encryptor)

    def save(self, connection_id: str, user_id: str, session: SaxoSession) -> None:
        with self.session_factory() as db:
            connection = self._connection(db, connection_id, user_id)
            if connection is None:
                logger.warning(f"Not storing tokens: connection {connection_id} is gone")
                return
            BrokerConnectionRepository(db).store_tokens(connection, self.encryptor, session)

    def clear(self, connection_id: str) -> None:
        with self.session_factory() as db:
            connection = self._connection(db, connection_id)
            if connection is not None:
                BrokerConnectionRepository(db).clear_tokens(connection)


class BrokerRuntime:
    """Shared broker state for the API, CLI and sync service."""

    def __init__(
        self,
        settings: Settings,
        registry: AuthSessionRegistry,
        encryptor: CredentialEncryptor,
        mitid: MitIDAuthOrchestrator,
        saxo_oauth: Optional[SaxoOAuthOrchestrator] = None,
        nordnet_factory: Callable[[str], NordnetClient] = NordnetClient,
        saxo_client: Optional[SaxoClient] = None,
    ):
        self.settings = settings
        self.registry = registry
        self.encryptor = encryptor
        self.mitid = mitid
        self.saxo_oauth = saxo_oauth
        self._nordnet_factory = nordnet_factory
        self._nordnet_clients: Dict[str, NordnetClient] = {}
        self._saxo_client = saxo_client
        self._lock = threading.Lock()

    def nordnet_client(self, country: str) -> NordnetClient:
        """One client (and rate limiter) per Nordnet market."""
        key = (country or "").lower()
        with self._lock:
            client = self._nordnet_clients.get(key)
            if client is None:
                client = self._nordnet_factory(key)
                self._nordnet_clients[key] = client
            return client

    def saxo_client(self) -> SaxoClient:
        with self._lock:
            if self._saxo_client is None:
                self._saxo_client = SaxoClient(simulation=self.settings.saxo_simulation)
            return self._saxo_client

    def shutdown(self) -> None:
        self.mitid.shutdown()


def create_runtime(
    settings: Optional[Settings] = None,
    authenticator: Optional[QRAuthenticator] = None,
    token_store: Optional[TokenStore] = None,
    session_factory: SessionFactory = get_db,
    nordnet_factory: Callable[[str], NordnetClient] = NordnetClient,
    saxo_client: Optional[SaxoClient] = None,
) -> BrokerRuntime:
    """Build a runtime from settings.

    Args:
        settings: Application settings (defaults to the cached settings)
        authenticator: QR login driver (defaults to the MitID helper subprocess)
        token_store: Saxo token persistence (defaults to encrypted DB storage)
        session_factory: Database session context manager for the token store
        nordnet_factory: Builds the Nordnet client for a country
        saxo_client: Saxo client to use instead of one built from settings
    """
    settings = settings or get_settings()
    registry = AuthSessionRegistry()
    encryptor = CredentialEncryptor(settings.encryption_secret)

    mitid = MitIDAuthOrchestrator(
        registry=registry,
        authenticator=authenticator
        or SubprocessQRAuthenticator(
            script_dir=settings.mitid_script_dir,
            python=settings.mitid_python,
            timeout=settings.mitid_timeout_seconds,
        ),
        work_root=settings.mitid_work_dir,
        timeout=settings.mitid_timeout_seconds,
        grace_seconds=settings.mitid_artifact_grace_seconds,
    )

    runtime = BrokerRuntime(
        settings=settings,
        registry=registry,
        encryptor=encryptor,
        mitid=mitid,
        nordnet_factory=nordnet_factory,
        saxo_client=saxo_client,
    )
    # The orchestrator shares the runtime's Saxo client
    runtime.saxo_oauth = SaxoOAuthOrchestrator(
        registry=registry,
        token_store=token_store or DatabaseTokenStore(encryptor, session_factory),
        client_factory=runtime.saxo_client,
        default_redirect_uri=settings.saxo_redirect_uri,
        timeout=settings.oauth_timeout_seconds,
        pending_timeout=settings.oauth_pending_timeout_seconds,
    )
    return runtime


@lru_cache
def get_runtime() -> BrokerRuntime:
    """Get the process-wide broker runtime."""
    return create_runtime()
