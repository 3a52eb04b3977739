"""MitID QR login for Nordnet.

The actual MitID protocol runs in an external helper script. While the user
scans the animated QR code, the helper writes artifacts into a per-connection
work directory:

    status          current state, e.g. "qr_ready" or "waiting"
    current_frame   number of the QR frame to show
    qr_frame<N>.png QR frame images

When it finishes it prints one JSON object on stdout:
{"success", "jwt", "ntag", "domain", "cookies", "error"}.
"""

from __future__ import annotations

import json
import logging
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from wealthsync.core.brokers.errors import (
    AuthInProgressError,
    AuthTimeoutError,
    InteractiveAuthFailedError,
    QRNotReadyError,
    truncate,
)
from wealthsync.core.brokers.models import AuthStatus, NordnetSession
from wealthsync.core.brokers.registry import AuthSessionRegistry, QRAuthSession

logger = logging.getLogger(__name__)

SCRIPT_NAME = "mitid_auth.py"
STATUS_FILE = "status"
FRAME_FILE = "current_frame"
SESSION_LIFETIME = timedelta(hours=24)
DEFAULT_TIMEOUT_SECONDS = 120.0
DEFAULT_GRACE_SECONDS = 5.0


def session_from_result(result: Dict[str, Any]) -> NordnetSession:
    """Build a Nordnet session from a successful helper result."""
    cookies = result.get("cookies") or {}
    return NordnetSession(
        jwt=result.get("jwt") or "",
        ntag=result.get("ntag") or "",
        domain=result.get("domain") or "",
        cookies={str(k): str(v) for k, v in cookies.items()},
        expires_at=datetime.utcnow() + SESSION_LIFETIME,
    )


def _decode_result(stdout: str) -> Optional[Dict[str, Any]]:
    """Find the helper's JSON result in its stdout.

    The whole stream is tried first, then the last line, since helpers tend
    to print progress before the result.
    """
    text = stdout.strip()
    if not text:
        return None
    candidates = [text, text.splitlines()[-1].strip()]
    for candidate in candidates:
        try:
            result = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(result, dict):
            return result
    return None


def parse_helper_output(
    stdout: str,
    stderr: str = "",
    timed_out: bool = False,
    returncode: Optional[int] = 0,
) -> NordnetSession:
    """Turn the helper's output into a session or a classified error.

    The JSON result wins even when the helper exited non-zero. Without a
    parsable result, a passed deadline is a timeout and anything else is a
    failure carrying the first 500 characters of output.

    Raises:
        InteractiveAuthFailedError: Helper reported or implied failure
        AuthTimeoutError: Deadline passed with no result
    """
    result = _decode_result(stdout)
    if result is not None:
        if not result.get("success"):
            raise InteractiveAuthFailedError(
                f"MitID authentication failed: {result.get('error') or 'unknown error'}"
            )
        if timed_out:
            raise AuthTimeoutError("MitID approval timed out")
        if not result.get("jwt"):
            raise InteractiveAuthFailedError("MitID authentication failed: no session token returned")
        return session_from_result(result)

    if timed_out:
        raise AuthTimeoutError("MitID approval timed out")

    output = (stdout + stderr).strip()
    if output:
        raise InteractiveAuthFailedError(f"MitID authentication failed: {truncate(output)}")
    raise InteractiveAuthFailedError(
        f"MitID authentication failed: helper exited with status {returncode}"
    )


class QRAuthenticator(ABC):
    """Runs one MitID QR login and returns a Nordnet session."""

    @abstractmethod
    def run(self, country: str, user_id: str, method: str, work_dir: Path) -> NordnetSession:
        """Drive the login, writing QR artifacts into work_dir.

        Raises:
            AuthTimeoutError: User did not approve in time
            InteractiveAuthFailedError: Login failed
        """
        pass


class SubprocessQRAuthenticator(QRAuthenticator):
    """Runs the mitid_auth.py helper under a hard timeout."""

    def __init__(
        self,
        script_dir: str,
        python: str = "python3",
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ):
        self.script_dir = Path(script_dir)
        self.python = python
        self.timeout = timeout

    def python_path(self) -> str:
        """Prefer the helper's own virtualenv, which has its dependencies."""
        venv_python = self.script_dir / "venv" / "bin" / "python3"
        if venv_python.exists():
            return str(venv_python)
        return self.python

    def run(self, country: str, user_id: str, method: str, work_dir: Path) -> NordnetSession:
        command = [
            self.python_path(),
            str(self.script_dir / SCRIPT_NAME),
            "--country", country,
            "--user", user_id,
            "--method", method,
            "--qr-dir", str(work_dir),
        ]
        logger.info(f"Starting MitID helper for country={country} method={method}")

        try:
            completed = subprocess.run(
                command,
                cwd=str(self.script_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"MitID helper killed after {self.timeout:.0f}s")
            return parse_helper_output(
                _as_text(e.stdout), _as_text(e.stderr), timed_out=True, returncode=None
            )
        except OSError as e:
            raise InteractiveAuthFailedError(f"Could not start MitID helper: {e}") from e

        if completed.returncode != 0:
            logger.warning(f"MitID helper exited with status {completed.returncode}")
        return parse_helper_output(
            completed.stdout or "",
            completed.stderr or "",
            returncode=completed.returncode,
        )


def _as_text(output: Any) -> str:
    if output is None:
        return ""
    if isinstance(output, bytes):
        return output.decode("utf-8", errors="replace")
    return output


class MitIDAuthOrchestrator:
    """Coordinates QR logins and answers the polling endpoints.

    The registry entry for an attempt lives only while the helper runs. The
    work directory outlives it by a short grace period so a final poll can
    still read the outcome.
    """

    def __init__(
        self,
        registry: AuthSessionRegistry,
        authenticator: QRAuthenticator,
        work_root: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        grace_seconds: float = DEFAULT_GRACE_SECONDS,
        timer_factory: Callable[..., threading.Timer] = threading.Timer,
    ):
        self.registry = registry
        self.authenticator = authenticator
        self.work_root = Path(work_root)
        self.timeout = timeout
        self.grace_seconds = grace_seconds
        self._timer_factory = timer_factory
        self._timers: Dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()

    def work_dir_for(self, connection_id: str) -> Path:
        return self.work_root / f"mitid_qr_{connection_id}"

    def authenticate(
        self,
        connection_id: str,
        country: str,
        user_id: str,
        method: str = "APP",
    ) -> NordnetSession:
        """Run a QR login for a connection, blocking until it finishes.

        Raises:
            AuthInProgressError: A login for this connection is already running
            AuthTimeoutError: User did not approve in time
            InteractiveAuthFailedError: Login failed
        """
        work_dir = self.work_dir_for(connection_id)
        entry = QRAuthSession(connection_id=connection_id, work_dir=work_dir)

        blocking = self.registry.claim_qr(entry, stale_after=self.timeout)
        if blocking is not None:
            raise AuthInProgressError("MitID login already in progress for this connection")

        self._cancel_cleanup(connection_id)
        shutil.rmtree(work_dir, ignore_errors=True)
        work_dir.mkdir(parents=True, exist_ok=True)

        final_status = AuthStatus.FAILED
        try:
            session = self.authenticator.run(country, user_id, method or "APP", work_dir)
            final_status = AuthStatus.APPROVED
            logger.info(f"MitID login approved for connection {connection_id}")
            return session
        except AuthTimeoutError:
            final_status = AuthStatus.TIMEOUT
            raise
        finally:
            if self.registry.remove_qr(connection_id, expected=entry) is not None:
                self._write_status(work_dir, final_status)
                self._schedule_cleanup(connection_id, work_dir)
            else:
                # A newer attempt took over the connection and owns the work directory
                logger.warning(f"MitID login for connection {connection_id} was superseded")

    def get_status(self, connection_id: str) -> str:
        """Current login state for polling. Never blocks on the helper."""
        work_dir = self._resolve_work_dir(connection_id)
        if work_dir is None:
            return AuthStatus.NONE.value
        try:
            status = (work_dir / STATUS_FILE).read_text().strip()
        except OSError:
            return AuthStatus.INITIALIZING.value
        return status or AuthStatus.INITIALIZING.value

    def get_qr_image(self, connection_id: str) -> Path:
        """Path of the QR frame to display now.

        Raises:
            QRNotReadyError: No attempt, or the helper has not drawn a frame yet
        """
        work_dir = self._resolve_work_dir(connection_id)
        if work_dir is None:
            raise QRNotReadyError("No active MitID session")
        try:
            frame = (work_dir / FRAME_FILE).read_text().strip()
        except OSError as e:
            raise QRNotReadyError("QR code not ready yet") from e
        image = work_dir / f"qr_frame{frame}.png"
        if not frame or not image.is_file():
            raise QRNotReadyError("QR code not ready yet")
        return image

    def _resolve_work_dir(self, connection_id: str) -> Optional[Path]:
        entry = self.registry.get_qr(connection_id)
        if entry is not None:
            return entry.work_dir
        # Finished attempt still inside its grace period
        work_dir = self.work_dir_for(connection_id)
        if work_dir.is_dir():
            return work_dir
        return None

    def _write_status(self, work_dir: Path, status: AuthStatus) -> None:
        try:
            (work_dir / STATUS_FILE).write_text(status.value)
        except OSError as e:
            logger.warning(f"Could not write MitID status to {work_dir}: {e}")

    def _schedule_cleanup(self, connection_id: str, work_dir: Path) -> None:
        def cleanup():
            shutil.rmtree(work_dir, ignore_errors=True)
            with self._timers_lock:
                if self._timers.get(connection_id) is timer:
                    del self._timers[connection_id]

        timer = self._timer_factory(self.grace_seconds, cleanup)
        timer.daemon = True
        with self._timers_lock:
            self._timers[connection_id] = timer
        timer.start()

    def _cancel_cleanup(self, connection_id: str) -> None:
        with self._timers_lock:
            timer = self._timers.pop(connection_id, None)
        if timer is not None:
            timer.cancel()

    def shutdown(self) -> None:
        """Cancel pending cleanups and remove their work directories now."""
        with self._timers_lock:
            timers = dict(self._timers)
            self._timers.clear()
        for connection_id, timer in timers.items():
            timer.cancel()
            shutil.rmtree(self.work_dir_for(connection_id), ignore_errors=True)
