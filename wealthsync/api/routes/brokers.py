"""Broker integration API routes."""

import logging
from datetime import datetime
from html import escape
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import FileResponse, HTMLResponse
from pydantic import BaseModel, Field
from slowapi import Limiter
from slowapi.util import get_remote_address

from wealthsync.api.deps import get_broker_runtime, get_current_user, get_sync_service
from wealthsync.core.brokers.errors import (
    AuthenticationError,
    AuthInProgressError,
    BrokerConfigurationError,
    BrokerError,
    ConnectionNotFoundError,
    OAuthStateMismatchError,
    QRNotReadyError,
)
from wealthsync.core.brokers.models import BrokerType
from wealthsync.core.brokers.runtime import BrokerRuntime
from wealthsync.core.brokers.sync import BrokerSyncService
from wealthsync.db.models import User

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/brokers", tags=["brokers"])

# Sync runs an interactive login, so keep it rare per client
limiter = Limiter(key_func=get_remote_address)


# Request/Response Models

class ConnectionCreate(BaseModel):
    """Request to add a broker connection."""

    broker_type: str
    country: Optional[str] = None
    username: Optional[str] = None
    cpr: Optional[str] = None
    app_key: Optional[str] = None
    app_secret: Optional[str] = None
    redirect_uri: Optional[str] = None


class ConnectionUpdate(BaseModel):
    """Request to change a broker connection. Omitted fields are kept."""

    country: Optional[str] = None
    username: Optional[str] = None
    cpr: Optional[str] = None
    app_key: Optional[str] = None
    app_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    is_active: Optional[bool] = None


class ConnectionResponse(BaseModel):
    """Broker connection response. Secrets are never returned."""

    id: str
    broker_type: str
    country: Optional[str]
    username: Optional[str]
    app_key: Optional[str]
    redirect_uri: Optional[str]
    is_active: bool
    has_stored_tokens: bool
    last_sync_at: Optional[datetime]
    last_sync_status: Optional[str]
    last_sync_error: Optional[str]
    created_at: datetime

    class Config:
        from_attributes = True


class ExternalAccountResponse(BaseModel):
    """Account as reported by the broker."""

    id: str
    account_number: str
    name: str
    currency: str
    type: str
    active: bool


class MappingItem(BaseModel):
    """One external-to-local account mapping."""

    external_account_id: str = Field(..., min_length=1)
    local_account_id: str = Field(..., min_length=1)
    external_account_name: Optional[str] = None
    auto_sync: bool = True


class MappingResponse(MappingItem):
    """Stored account mapping."""

    id: str
    connection_id: str
    created_at: datetime

    class Config:
        from_attributes = True


class SyncResultResponse(BaseModel):
    """Response for a sync run."""

    success: bool
    accounts_synced: int
    positions_synced: int
    errors: List[str]
    synced_at: Optional[datetime]


class SyncHistoryResponse(BaseModel):
    """One sync attempt."""

    id: str
    sync_type: str
    status: str
    accounts_synced: int
    positions_synced: int
    error_message: Optional[str]
    started_at: datetime
    completed_at: Optional[datetime]
    duration_ms: Optional[int]

    class Config:
        from_attributes = True


class AuthStatusResponse(BaseModel):
    """Interactive login state for polling."""

    status: str
    auth_url: Optional[str] = None


def _error_status(error: BrokerError) -> int:
    if isinstance(error, ConnectionNotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(error, BrokerConfigurationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(error, AuthInProgressError):
        return status.HTTP_409_CONFLICT
    if isinstance(error, AuthenticationError):
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_502_BAD_GATEWAY


def _http_error(error: BrokerError, prefix: str = "") -> HTTPException:
    return HTTPException(status_code=_error_status(error), detail=f"{prefix}{error}")


def _get_connection(service: BrokerSyncService, connection_id: str, user: User):
    try:
        return service.get_connection(connection_id, user_id=user.id)
    except ConnectionNotFoundError as e:
        raise _http_error(e)


def _require_broker(connection, broker_type: BrokerType) -> None:
    if connection.broker_type != broker_type.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Connection is not a {broker_type.value} connection",
        )


# Connections

@router.get("/connections", response_model=List[ConnectionResponse])
def list_connections(
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """List broker connections for the current user."""
    return service.connections.get_by_user(user.id)


@router.post("/connections", response_model=ConnectionResponse, status_code=status.HTTP_201_CREATED)
def create_connection(
    payload: ConnectionCreate,
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """Add a Nordnet or Saxo connection."""
    fields = payload.model_dump(exclude={"broker_type"}, exclude_none=True)
    try:
        return service.create_connection(user.id, payload.broker_type, **fields)
    except BrokerConfigurationError as e:
        raise _http_error(e)


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
def get_connection(
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """Get a broker connection."""
    return _get_connection(service, connection_id, user)


@router.patch("/connections/{connection_id}", response_model=ConnectionResponse)
def update_connection(
    connection_id: str,
    payload: ConnectionUpdate,
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """Update a connection. New Saxo credentials require a new login."""
    connection = _get_connection(service, connection_id, user)
    try:
        return service.update_connection(connection, **payload.model_dump(exclude_none=True))
    except BrokerConfigurationError as e:
        raise _http_error(e)


@router.delete("/connections/{connection_id}")
def delete_connection(
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """Delete a connection with its mappings and sync history."""
    connection = _get_connection(service, connection_id, user)
    service.delete_connection(connection)
    return {"status": "deleted", "connection_id": connection_id}


# Accounts and mappings

@router.get("/connections/{connection_id}/external-accounts", response_model=List[ExternalAccountResponse])
def list_external_accounts(
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """List the broker's accounts. May wait for an interactive login."""
    _get_connection(service, connection_id, user)
    try:
        accounts = service.get_external_accounts(connection_id)
    except BrokerError as e:
        raise _http_error(e)
    return [ExternalAccountResponse(**vars(account)) for account in accounts]


@router.get("/connections/{connection_id}/mappings", response_model=List[MappingResponse])
def list_mappings(
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """List account mappings of a connection."""
    _get_connection(service, connection_id, user)
    return service.mappings.get_by_connection(connection_id)


@router.put("/connections/{connection_id}/mappings", response_model=List[MappingResponse])
def save_mappings(
    connection_id: str,
    payload: List[MappingItem],
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """Replace the account mappings of a connection."""
    connection = _get_connection(service, connection_id, user)
    try:
        return service.save_mappings(connection, [item.model_dump() for item in payload])
    except BrokerConfigurationError as e:
        raise _http_error(e)


# Sync

@router.post("/connections/{connection_id}/sync", response_model=SyncResultResponse)
@limiter.limit("10/minute")
def sync_connection(
    request: Request,
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """Sync every auto-sync account of a connection.

    Blocks while the user completes MitID or Saxo login; poll the auth
    status endpoints meanwhile.
    """
    _get_connection(service, connection_id, user)
    try:
        result = service.sync_connection(connection_id)
    except BrokerError as e:
        raise _http_error(e, prefix="Sync failed: ")

    return SyncResultResponse(
        success=result.success,
        accounts_synced=result.accounts_synced,
        positions_synced=result.positions_synced,
        errors=result.errors,
        synced_at=result.synced_at,
    )


@router.get("/connections/{connection_id}/history", response_model=List[SyncHistoryResponse])
def sync_history(
    connection_id: str,
    limit: int = 20,
    service: BrokerSyncService = Depends(get_sync_service),
    user: User = Depends(get_current_user),
):
    """Recent sync attempts, newest first."""
    _get_connection(service, connection_id, user)
    return service.history.get_by_connection(connection_id, limit=limit)


# MitID polling (Nordnet)

@router.get("/connections/{connection_id}/mitid/status", response_model=AuthStatusResponse)
def mitid_status(
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    runtime: BrokerRuntime = Depends(get_broker_runtime),
    user: User = Depends(get_current_user),
):
    """Current MitID login state."""
    connection = _get_connection(service, connection_id, user)
    _require_broker(connection, BrokerType.NORDNET)
    return AuthStatusResponse(status=runtime.mitid.get_status(connection_id))


@router.get("/connections/{connection_id}/mitid/qr")
def mitid_qr(
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    runtime: BrokerRuntime = Depends(get_broker_runtime),
    user: User = Depends(get_current_user),
):
    """Current MitID QR frame as PNG."""
    connection = _get_connection(service, connection_id, user)
    _require_broker(connection, BrokerType.NORDNET)
    try:
        image = runtime.mitid.get_qr_image(connection_id)
    except QRNotReadyError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    return FileResponse(image, media_type="image/png", headers={"Cache-Control": "no-cache"})


# Saxo OAuth

@router.get("/connections/{connection_id}/saxo/status", response_model=AuthStatusResponse)
def saxo_status(
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    runtime: BrokerRuntime = Depends(get_broker_runtime),
    user: User = Depends(get_current_user),
):
    """Current Saxo login state, with the login URL while one is pending."""
    connection = _get_connection(service, connection_id, user)
    _require_broker(connection, BrokerType.SAXO)
    return AuthStatusResponse(
        status=runtime.saxo_oauth.get_status(connection),
        auth_url=runtime.saxo_oauth.get_auth_url(connection_id) or None,
    )


@router.post("/connections/{connection_id}/saxo/start", response_model=AuthStatusResponse)
def saxo_start(
    connection_id: str,
    service: BrokerSyncService = Depends(get_sync_service),
    runtime: BrokerRuntime = Depends(get_broker_runtime),
    user: User = Depends(get_current_user),
):
    """Begin a Saxo login without syncing. Open the returned URL."""
    connection = _get_connection(service, connection_id, user)
    _require_broker(connection, BrokerType.SAXO)
    try:
        auth_url = runtime.saxo_oauth.start(connection)
    except BrokerConfigurationError as e:
        raise _http_error(e)
    return AuthStatusResponse(status=runtime.saxo_oauth.get_status(connection), auth_url=auth_url)


CALLBACK_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title></head>
<body style="font-family: sans-serif; text-align: center; padding-top: 4em;">
<h1>{title}</h1>
<p>{message}</p>
</body>
</html>"""


def _callback_page(title: str, message: str, status_code: int = status.HTTP_200_OK) -> HTMLResponse:
    return HTMLResponse(
        CALLBACK_PAGE.format(title=escape(title), message=escape(message)),
        status_code=status_code,
    )


@router.get("/saxo/callback", response_class=HTMLResponse)
def saxo_callback(
    state: str = "",
    code: Optional[str] = None,
    error: Optional[str] = None,
    error_description: str = "",
    runtime: BrokerRuntime = Depends(get_broker_runtime),
):
    """OAuth redirect target. The state parameter identifies the login."""
    try:
        runtime.saxo_oauth.complete(
            state=state,
            code=code,
            error=error,
            error_description=error_description,
        )
    except OAuthStateMismatchError as e:
        return _callback_page("Login failed", str(e), status.HTTP_400_BAD_REQUEST)
    except BrokerError as e:
        return _callback_page("Login failed", str(e), _error_status(e))

    return _callback_page("Login complete", "You can close this window and return to WealthSync.")
