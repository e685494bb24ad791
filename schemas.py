import datetime as dt
from datetime import date
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from models import (
    AccountType,
    RecurringInterval,
    TransactionStatus,
    TransactionType,
)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType = AccountType.current
    opening_balance_cents: int = 0
    is_default: bool = False


class TransactionIn(BaseModel):
    account_id: int
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=200)
    date: date
    category: str = Field(..., min_length=1, max_length=50)
    receipt_url: Optional[str] = None
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None
    status: TransactionStatus = TransactionStatus.completed


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., gt=0)


class PhoneNumberIn(BaseModel):
    phone_number: str = Field(..., pattern=r"^\+91[6-9]\d{9}$")


class ParsedTransaction(BaseModel):
    """Transaction intent extracted from a chat message."""

    model_config = ConfigDict(extra="ignore")

    type: TransactionType
    amount: Decimal = Field(..., gt=0)
    description: str = Field(..., min_length=1, max_length=200)
    category: str = Field(..., min_length=1, max_length=50)
    confidence: Literal["high", "medium", "low"] = "medium"

    @property
    def amount_cents(self) -> int:
        return int((self.amount * 100).to_integral_value())


class ReceiptScan(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    amount: Decimal = Field(..., gt=0)
    date: Optional[dt.date] = None
    description: str = "Receipt scan"
    merchant_name: str = Field(default="Unknown merchant", alias="merchantName")
    category: str = "other-expense"


class UserIn(BaseModel):
    external_id: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=120)
    image_url: Optional[str] = None
