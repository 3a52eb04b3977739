"""Broker integration module for automatic account syncing.

Supports:
- Nordnet (dk, se, no, fi) with MitID QR login
- Saxo Bank OpenAPI with OAuth2 login

Usage:
    from wealthsync.core.brokers import BrokerSyncService, get_runtime

    with get_db() as db:
        service = BrokerSyncService(db, get_runtime())
        result = service.sync_connection(connection_id)
"""

from wealthsync.core.brokers.models import (
    AuthStatus,
    BrokerPosition,
    BrokerType,
    CashLedger,
    ExternalAccount,
    NordnetSession,
    SaxoSession,
    SyncResult,
)
from wealthsync.core.brokers.errors import (
    AuthenticationError,
    BrokerAPIError,
    BrokerConfigurationError,
    BrokerError,
    ConnectionNotFoundError,
    QRNotReadyError,
)
from wealthsync.core.brokers.base import BrokerClient
from wealthsync.core.brokers.nordnet import NordnetClient
from wealthsync.core.brokers.saxo import SaxoClient
from wealthsync.core.brokers.runtime import BrokerRuntime, create_runtime, get_runtime
from wealthsync.core.brokers.sync import BrokerSyncService, get_broker_sync_service

__all__ = [
    # Models
    "AuthStatus",
    "BrokerPosition",
    "BrokerType",
    "CashLedger",
    "ExternalAccount",
    "NordnetSession",
    "SaxoSession",
    "SyncResult",
    # Errors
    "AuthenticationError",
    "BrokerAPIError",
    "BrokerConfigurationError",
    "BrokerError",
    "ConnectionNotFoundError",
    "QRNotReadyError",
    # Clients
    "BrokerClient",
    "NordnetClient",
    "SaxoClient",
    # Runtime and services
    "BrokerRuntime",
    "create_runtime",
    "get_runtime",
    "BrokerSyncService",
    "get_broker_sync_service",
]
