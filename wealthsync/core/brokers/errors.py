"""Broker integration exceptions."""

from __future__ import annotations

from typing import Optional

# Response bodies are cut to this length before logging or storing
MAX_ERROR_BODY = 500


def truncate(text: str, limit: int = MAX_ERROR_BODY) -> str:
    """Cut diagnostic text to a loggable length."""
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class BrokerError(Exception):
    """Base class for broker integration errors."""


# Configuration

class BrokerConfigurationError(BrokerError):
    """Connection is missing settings needed to talk to the broker."""


class UnsupportedBrokerError(BrokerConfigurationError):
    """Broker type has no client implementation."""

    def __init__(self, broker_type: str):
        self.broker_type = broker_type
        super().__init__(f"Unsupported broker type: {broker_type}")


class ConnectionNotFoundError(BrokerError):
    """Broker connection does not exist."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"Broker connection not found: {connection_id}")


# Authentication

class AuthenticationError(BrokerError):
    """Could not obtain a usable broker session."""


class InvalidCredentialsError(AuthenticationError):
    """Broker rejected the supplied credentials."""


class SessionExpiredError(AuthenticationError):
    """Session is missing, expired, or was rejected by the broker."""


class RefreshTokenExpiredError(SessionExpiredError):
    """OAuth refresh token is gone; the user must log in again."""


class AuthTimeoutError(AuthenticationError):
    """Interactive login was not approved in time."""


class InteractiveAuthFailedError(AuthenticationError):
    """Interactive login finished without a session."""


class AuthInProgressError(AuthenticationError):
    """Another interactive login for the same connection is running."""


class OAuthStateMismatchError(AuthenticationError):
    """OAuth callback state matches no pending exchange."""


# Broker API

class BrokerAPIError(BrokerError):
    """Broker API answered with an unexpected status or could not be reached."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        self.status_code = status_code
        self.body = truncate(body)
        super().__init__(message)


class BrokerThrottledError(BrokerAPIError):
    """Broker kept answering 429 after the retry."""

    def __init__(self, url: str):
        super().__init__(f"Rate limited by broker: {url}", status_code=429)


# Interactive polling

class QRNotReadyError(BrokerError):
    """No QR frame has been produced yet."""
