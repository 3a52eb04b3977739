"""Pydantic schemas for portfolio operations."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator


class AccountCreate(BaseModel):
    """Schema for creating a local account."""

    name: str = Field(..., min_length=1, max_length=100)
    currency: str = Field("DKK", min_length=3, max_length=3)
    account_type: str = Field("investment", max_length=30)

    @field_validator("currency")
    @classmethod
    def currency_uppercase(cls, v: str) -> str:
        return v.upper().strip()


class AccountResponse(BaseModel):
    """Schema for account response."""

    id: str
    name: str
    currency: str
    account_type: str
    is_active: bool
    balance: float = 0.0

    class Config:
        from_attributes = True


class HoldingResponse(BaseModel):
    """Schema for a synced holding."""

    id: str
    symbol: str
    external_id: Optional[str]
    name: Optional[str]
    quantity: float
    avg_price: float
    current_price: float
    current_value: float
    currency: Optional[str]
    instrument_type: Optional[str]
    last_updated: datetime

    class Config:
        from_attributes = True
