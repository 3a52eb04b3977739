"""Local accounts, holdings and balance history."""

from .models import AccountCreate, AccountResponse, HoldingResponse
from .repository import AccountRepository, HoldingRepository, TransactionRepository

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "HoldingResponse",
    "AccountRepository",
    "HoldingRepository",
    "TransactionRepository",
]
