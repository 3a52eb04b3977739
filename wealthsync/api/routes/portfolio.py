"""Portfolio API routes."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from wealthsync.api.deps import get_db, get_current_user
from wealthsync.core.portfolio.models import AccountCreate, AccountResponse, HoldingResponse
from wealthsync.core.portfolio.repository import (
    AccountRepository,
    HoldingRepository,
    TransactionRepository,
)
from wealthsync.db.models import Account, User

router = APIRouter()


class TransactionResponse(BaseModel):
    """Balance change on a local account."""

    id: int
    amount: float
    balance_after: float
    description: Optional[str]
    transaction_date: datetime

    class Config:
        from_attributes = True


def _account_response(db: Session, account: Account) -> AccountResponse:
    response = AccountResponse.model_validate(account)
    response.balance = TransactionRepository(db).get_latest_balance(account.id)
    return response


def _get_account(db: Session, account_id: str, user: User) -> Account:
    account = AccountRepository(db).get_by_id(account_id, user_id=user.id)
    if not account:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Account not found",
        )
    return account


@router.get("/accounts", response_model=List[AccountResponse])
def list_accounts(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """List local accounts with their current balance."""
    return [_account_response(db, a) for a in AccountRepository(db).get_by_user(user.id)]


@router.post("/accounts", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
def create_account(
    payload: AccountCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Create a local account that broker accounts can be mapped to."""
    account = AccountRepository(db).create(
        user_id=user.id,
        name=payload.name,
        currency=payload.currency,
        account_type=payload.account_type,
    )
    return _account_response(db, account)


@router.get("/accounts/{account_id}/holdings", response_model=List[HoldingResponse])
def list_holdings(
    account_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """List synced holdings of an account."""
    account = _get_account(db, account_id, user)
    return HoldingRepository(db).get_by_account(account.id)


@router.get("/accounts/{account_id}/transactions", response_model=List[TransactionResponse])
def list_transactions(
    account_id: str,
    limit: int = 50,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Balance history of an account, newest first."""
    account = _get_account(db, account_id, user)
    return TransactionRepository(db).get_by_account(account.id, limit=limit)
