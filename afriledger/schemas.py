
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from afriledger.models import TransactionStatus, TransactionType
from afriledger.services.identity import is_valid_address, is_valid_phone, is_valid_pin

# Account Schemas
class AccountCreate(BaseModel):
    """
    Onboarding request. The identity key is derived from the phone number.
    """
    phone: str
    name: str = Field(..., min_length=2, max_length=100)
    pin: str

    @field_validator("phone")
    def phone_must_be_e164(cls, v):
        if not is_valid_phone(v):
            raise ValueError("Invalid phone number format")
        return v

    @field_validator("pin")
    def pin_must_be_four_digits(cls, v):
        if not is_valid_pin(v):
            raise ValueError("PIN must be 4 digits")
        return v

class AccountResponse(BaseModel):
    identity_key: str
    phone: str
    name: str
    wallet_address: str
    deposit_wallet_address: Optional[str] = None
    balance: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True

class DepositWalletUpdate(BaseModel):
    deposit_wallet_address: str

    @field_validator("deposit_wallet_address")
    def must_be_address(cls, v):
        if not is_valid_address(v):
            raise ValueError("Invalid wallet address")
        return v

class BalanceResponse(BaseModel):
    """
    Balance in AFRI minor units (18 decimals) and where it was resolved from.
    """
    balance: str
    decimals: int
    symbol: str
    source: str

# Transaction Schemas
class TransferCreate(BaseModel):
    """
    Peer transfer authorised by the sender's PIN. Amount is an integer string of minor units.
    """
    sender_identity: str
    recipient_phone: str
    amount: str
    pin: str

    @field_validator("amount")
    def amount_must_be_positive_integer(cls, v):
        if not v.isdigit() or int(v) <= 0:
            raise ValueError("Invalid amount")
        return v

    @field_validator("pin")
    def pin_must_be_four_digits(cls, v):
        if not is_valid_pin(v):
            raise ValueError("PIN must be 4 digits")
        return v

class TransactionResponse(BaseModel):
    transaction_hash: str
    operation_id: Optional[str] = None
    sender_identity: str
    sender_phone: str
    recipient_identity: Optional[str] = None
    recipient_phone: str
    amount: str
    status: TransactionStatus
    type: TransactionType
    timestamp: datetime
    metadata: Optional[Dict[str, Any]] = Field(default=None, validation_alias="metadata_json")

    class Config:
        from_attributes = True

# Funding Schemas
class FiatFundingCreate(BaseModel):
    identity_key: str
    amount: Decimal = Field(..., gt=0)
    currency: str = "USD"
    method: str
    transaction_hash: Optional[str] = None

class FundingSettlement(BaseModel):
    succeeded: bool = True

# Rates / poller
class ConversionResponse(BaseModel):
    amount: Decimal
    currency: str
    afri_amount: Decimal
    rate: Decimal

class PollerStatusResponse(BaseModel):
    state: str
    running: bool = False
    cursor: Optional[int] = None
    retry_count: int
    max_retries: int
    last_error: Optional[str] = None
    last_tick_at: Optional[float] = None
    stats: Dict[str, int]
