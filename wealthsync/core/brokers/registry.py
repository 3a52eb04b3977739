"""In-memory registry of interactive login attempts.

One registry instance is owned by the broker runtime and shared by the MitID
and OAuth orchestrators. Lookups from polling endpoints take the shared side
of a read/write lock; starting or finishing an attempt takes the exclusive
side.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

from wealthsync.core.brokers.models import AuthStatus, SaxoSession


class ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass
class QRAuthSession:
    """A running MitID QR login."""

    connection_id: str
    work_dir: Path
    started_at: datetime = field(default_factory=datetime.utcnow)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.utcnow()) - self.started_at).total_seconds()


@dataclass
class PendingOAuthExchange:
    """An OAuth authorization waiting for the redirect callback."""

    connection_id: str
    user_id: str
    state: str
    app_key: str
    app_secret: str
    redirect_uri: str
    auth_url: str
    verifier: str = ""  # Empty when the app uses a client secret
    status: AuthStatus = AuthStatus.PENDING
    error: str = ""
    session: Optional[SaxoSession] = None
    started_at: datetime = field(default_factory=datetime.utcnow)
    done: threading.Event = field(default_factory=threading.Event)

    def age_seconds(self, now: Optional[datetime] = None) -> float:
        return ((now or datetime.utcnow()) - self.started_at).total_seconds()


class AuthSessionRegistry:
    """Interactive login attempts keyed by connection id."""

    def __init__(self):
        self._lock = ReadWriteLock()
        self._qr: Dict[str, QRAuthSession] = {}
        self._oauth: Dict[str, PendingOAuthExchange] = {}

    # MitID QR

    def get_qr(self, connection_id: str) -> Optional[QRAuthSession]:
        with self._lock.read():
            return self._qr.get(connection_id)

    def claim_qr(
        self,
        entry: QRAuthSession,
        stale_after: float,
    ) -> Optional[QRAuthSession]:
        """Register a QR login unless a fresh one is already running.

        Returns:
            The running entry that blocked registration, or None on success
        """
        with self._lock.write():
            existing = self._qr.get(entry.connection_id)
            if existing is not None and existing.age_seconds() < stale_after:
                return existing
            self._qr[entry.connection_id] = entry
            return None

    def remove_qr(
        self,
        connection_id: str,
        expected: Optional[QRAuthSession] = None,
    ) -> Optional[QRAuthSession]:
        """Remove a QR login, optionally only if it is still `expected`."""
        with self._lock.write():
            current = self._qr.get(connection_id)
            if current is None or (expected is not None and current is not expected):
                return None
            return self._qr.pop(connection_id)

    # OAuth

    def get_pending(self, connection_id: str) -> Optional[PendingOAuthExchange]:
        with self._lock.read():
            return self._oauth.get(connection_id)

    def find_pending_by_state(self, state: str) -> Optional[PendingOAuthExchange]:
        if not state:
            return None
        with self._lock.read():
            for pending in self._oauth.values():
                if pending.state == state:
                    return pending
        return None

    def get_or_create_pending(
        self,
        connection_id: str,
        factory: Callable[[], PendingOAuthExchange],
        stale_after: float,
    ) -> Tuple[PendingOAuthExchange, bool]:
        """Return the fresh pending exchange for a connection, or create one.

        Returns:
            Tuple of (exchange, created)
        """
        with self._lock.write():
            existing = self._oauth.get(connection_id)
            if (
                existing is not None
                and existing.status == AuthStatus.PENDING
                and existing.age_seconds() < stale_after
            ):
                return existing, False
            if existing is not None:
                existing.status = AuthStatus.FAILED
                existing.error = existing.error or "Superseded by a new login attempt"
                existing.done.set()
            pending = factory()
            self._oauth[connection_id] = pending
            return pending, True

    def remove_pending(
        self,
        connection_id: str,
        expected: Optional[PendingOAuthExchange] = None,
    ) -> Optional[PendingOAuthExchange]:
        """Remove a pending exchange, optionally only if it is still `expected`."""
        with self._lock.write():
            current = self._oauth.get(connection_id)
            if current is None or (expected is not None and current is not expected):
                return None
            return self._oauth.pop(connection_id)
