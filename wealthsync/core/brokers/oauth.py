"""Saxo OAuth2 authorization-code flow.

A sync that needs a fresh Saxo login registers a pending exchange and blocks.
The user opens the authorization URL (shown by the UI via the status
endpoint), Saxo redirects to our callback, and the callback completes the
exchange, which wakes the waiting sync.
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Tuple
from urllib.parse import urlencode

from wealthsync.core.brokers.errors import (
    AuthenticationError,
    AuthTimeoutError,
    BrokerAPIError,
    BrokerConfigurationError,
    InteractiveAuthFailedError,
    OAuthStateMismatchError,
)
from wealthsync.core.brokers.models import AuthStatus, SaxoSession
from wealthsync.core.brokers.registry import AuthSessionRegistry, PendingOAuthExchange
from wealthsync.core.brokers.saxo import SaxoClient

logger = logging.getLogger(__name__)

DEFAULT_REDIRECT_URI = "http://localhost:8000/api/brokers/saxo/callback"
DEFAULT_TIMEOUT_SECONDS = 300.0
DEFAULT_PENDING_TIMEOUT_SECONDS = 90.0


def _b64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def generate_state() -> str:
    """Random CSRF state for the authorize request."""
    return _b64url(secrets.token_bytes(16))


def generate_pkce() -> Tuple[str, str]:
    """Return (verifier, S256 challenge)."""
    verifier = _b64url(secrets.token_bytes(32))
    challenge = _b64url(hashlib.sha256(verifier.encode("ascii")).digest())
    return verifier, challenge


class TokenStore(ABC):
    """Persists Saxo sessions between process restarts."""

    @abstractmethod
    def load(self, connection_id: str, user_id: str) -> Optional[SaxoSession]:
        pass

    @abstractmethod
    def save(self, connection_id: str, user_id: str, session: SaxoSession) -> None:
        pass

    @abstractmethod
    def clear(self, connection_id: str) -> None:
        pass


class SaxoOAuthOrchestrator:
    """Issues and caches Saxo sessions per connection."""

    def __init__(
        self,
        registry: AuthSessionRegistry,
        token_store: TokenStore,
        client_factory: Callable[[], SaxoClient],
        default_redirect_uri: str = DEFAULT_REDIRECT_URI,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        pending_timeout: float = DEFAULT_PENDING_TIMEOUT_SECONDS,
    ):
        self.registry = registry
        self.token_store = token_store
        self.client_factory = client_factory
        self.default_redirect_uri = default_redirect_uri
        self.timeout = timeout
        self.pending_timeout = pending_timeout
        self._lock = threading.Lock()
        self._sessions: Dict[str, SaxoSession] = {}
        self._outcomes: Dict[str, AuthStatus] = {}

    # Starting and completing

    def start(self, connection: Any) -> str:
        """Begin (or rejoin) an authorization for a connection.

        Args:
            connection: BrokerConnection row

        Returns:
            The authorization URL the user must open

        Raises:
            BrokerConfigurationError: Connection has no app key or no redirect URI is configured
        """
        return self._start_or_join(connection).auth_url

    def _start_or_join(self, connection: Any) -> PendingOAuthExchange:
        if not connection.app_key:
            raise BrokerConfigurationError("Saxo connection has no app key")
        redirect_uri = connection.redirect_uri or self.default_redirect_uri
        if not redirect_uri:
            raise BrokerConfigurationError("Saxo connection has no redirect URI")
        authorize_url = self.client_factory().authorize_url

        def build() -> PendingOAuthExchange:
            state = generate_state()
            params = {
                "response_type": "code",
                "client_id": connection.app_key,
                "redirect_uri": redirect_uri,
                "state": state,
            }
            verifier = ""
            if not connection.app_secret:
                verifier, challenge = generate_pkce()
                params["code_challenge"] = challenge
                params["code_challenge_method"] = "S256"
            return PendingOAuthExchange(
                connection_id=connection.id,
                user_id=connection.user_id,
                state=state,
                app_key=connection.app_key,
                app_secret=connection.app_secret or "",
                redirect_uri=redirect_uri,
                auth_url=f"{authorize_url}?{urlencode(params)}",
                verifier=verifier,
            )

        pending, created = self.registry.get_or_create_pending(
            connection.id, build, stale_after=self.pending_timeout
        )
        if created:
            with self._lock:
                self._outcomes.pop(connection.id, None)
            flow = "PKCE" if pending.verifier else "client_secret"
            logger.info(f"Started Saxo OAuth ({flow}) for connection {connection.id}")
        return pending

    def complete(
        self,
        state: str,
        code: Optional[str] = None,
        error: Optional[str] = None,
        error_description: str = "",
    ) -> SaxoSession:
        """Finish a pending exchange from the redirect callback.

        Raises:
            OAuthStateMismatchError: No pending exchange has this state
            InteractiveAuthFailedError: Provider error or no code
            AuthenticationError: Token exchange failed
        """
        pending = self.registry.find_pending_by_state(state)
        if pending is None:
            logger.warning("Saxo OAuth callback with unknown state")
            raise OAuthStateMismatchError("Security validation failed, please try again")

        if error:
            message = f"OAuth error: {error} - {error_description}".rstrip(" -")
            self._fail(pending, message)
            raise InteractiveAuthFailedError(message)
        if not code:
            self._fail(pending, "No authorization code received")
            raise InteractiveAuthFailedError("No authorization code received")

        try:
            session = self.client_factory().login(
                code=code,
                redirect_uri=pending.redirect_uri,
                app_key=pending.app_key,
                app_secret=pending.app_secret,
                verifier=pending.verifier,
            )
        except (AuthenticationError, BrokerAPIError) as e:
            self._fail(pending, str(e))
            raise

        with self._lock:
            self._sessions[pending.connection_id] = session
            self._outcomes[pending.connection_id] = AuthStatus.AUTHENTICATED
        pending.session = session
        pending.status = AuthStatus.AUTHENTICATED
        self.registry.remove_pending(pending.connection_id, expected=pending)
        pending.done.set()
        logger.info(
            f"Saxo OAuth completed for connection {pending.connection_id}, "
            f"token expires at {session.expires_at}"
        )

        self._persist(pending.connection_id, pending.user_id, session)
        return session

    def _fail(self, pending: PendingOAuthExchange, message: str) -> None:
        logger.warning(f"Saxo OAuth failed for connection {pending.connection_id}: {message}")
        pending.status = AuthStatus.FAILED
        pending.error = message
        with self._lock:
            self._outcomes[pending.connection_id] = AuthStatus.FAILED
        self.registry.remove_pending(pending.connection_id, expected=pending)
        pending.done.set()

    def _persist(self, connection_id: str, user_id: str, session: SaxoSession) -> None:
        try:
            self.token_store.save(connection_id, user_id, session)
        except Exception:
            # Session stays usable from the in-memory cache
            logger.exception(f"Failed to store Saxo tokens for connection {connection_id}")

    # Sessions

    def authenticate(self, connection: Any, timeout: Optional[float] = None) -> SaxoSession:
        """Return a usable session, waiting for the user to log in if needed.

        Raises:
            AuthTimeoutError: No callback arrived in time
            InteractiveAuthFailedError: Login failed or was superseded
        """
        session = self.get_valid_session(connection)
        if session is not None:
            return session

        pending = self._start_or_join(connection)
        logger.info(f"Waiting for Saxo login on connection {connection.id}: {pending.auth_url}")

        wait_for = self.timeout if timeout is None else timeout
        if not pending.done.wait(wait_for):
            if self.registry.remove_pending(connection.id, expected=pending) is not None:
                pending.status = AuthStatus.TIMEOUT
                pending.error = "Timeout waiting for user to complete login"
                pending.done.set()
            with self._lock:
                self._outcomes[connection.id] = AuthStatus.FAILED
            raise AuthTimeoutError("Timed out waiting for Saxo login")

        if pending.session is None:
            raise InteractiveAuthFailedError(pending.error or "Saxo login failed")
        return pending.session

    def get_valid_session(self, connection: Any) -> Optional[SaxoSession]:
        """Cached or stored session, refreshed when close to expiry."""
        with self._lock:
            session = self._sessions.get(connection.id)
        if session is None:
            session = self.token_store.load(connection.id, connection.user_id)
        if session is None:
            return None

        if not session.needs_refresh():
            with self._lock:
                self._sessions[connection.id] = session
            return session

        if session.can_refresh():
            try:
                refreshed = self.client_factory().refresh_session(
                    session, connection.app_key, connection.app_secret or ""
                )
            except AuthenticationError as e:
                logger.warning(f"Saxo token refresh failed for connection {connection.id}: {e}")
                self.token_store.clear(connection.id)
            else:
                with self._lock:
                    self._sessions[connection.id] = refreshed
                self._persist(connection.id, connection.user_id, refreshed)
                return refreshed

        with self._lock:
            self._sessions.pop(connection.id, None)
        return None

    # Polling

    def get_status(self, connection: Any) -> str:
        """none | pending | authenticated | failed. Reads state only."""
        if self.registry.get_pending(connection.id) is not None:
            return AuthStatus.PENDING.value

        with self._lock:
            session = self._sessions.get(connection.id)
            outcome = self._outcomes.get(connection.id)
        if session is not None and (not session.is_expired() or session.can_refresh()):
            return AuthStatus.AUTHENTICATED.value
        if outcome == AuthStatus.FAILED:
            return AuthStatus.FAILED.value
        if self._has_usable_stored_tokens(connection):
            return AuthStatus.AUTHENTICATED.value
        return AuthStatus.NONE.value

    def get_auth_url(self, connection_id: str) -> str:
        pending = self.registry.get_pending(connection_id)
        return pending.auth_url if pending is not None else ""

    @staticmethod
    def _has_usable_stored_tokens(connection: Any) -> bool:
        if not getattr(connection, "has_stored_tokens", False):
            return False
        now = datetime.utcnow()
        if connection.token_expires_at and connection.token_expires_at > now:
            return True
        return bool(connection.refresh_expires_at and connection.refresh_expires_at > now)

    def invalidate(self, connection_id: str) -> None:
        """Forget cached session, pending exchange and last outcome."""
        with self._lock:
            self._sessions.pop(connection_id, None)
            self._outcomes.pop(connection_id, None)
        pending = self.registry.remove_pending(connection_id)
        if pending is not None:
            pending.status = AuthStatus.FAILED
            pending.error = "Saxo credentials changed"
            pending.done.set()
        logger.info(f"Invalidated Saxo sessions for connection {connection_id}")
