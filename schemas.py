from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import AccountType, CategoryType, TransferType

YEAR_MONTH_PATTERN = r"^\d{4}-(0[1-9]|1[0-2])$"


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    closing_day: Optional[int] = Field(default=None, ge=1, le=28)
    payment_due_day: Optional[int] = Field(default=None, ge=1, le=28)
    credit_limit_cents: Optional[int] = Field(default=None, ge=0)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: CategoryType
    color: Optional[str] = Field(default=None, max_length=7)


class ExpenseIn(BaseModel):
    description: Optional[str] = Field(default=None, max_length=200)
    total_amount_cents: int = Field(..., gt=0, strict=True)
    category_id: int = Field(..., gt=0)
    account_id: int = Field(..., gt=0)
    purchase_date: date
    installments: int = Field(default=1, ge=1, strict=True)


class IncomeIn(BaseModel):
    description: str = Field(..., min_length=1, max_length=200)
    amount_cents: int = Field(..., gt=0, strict=True)
    category_id: int = Field(..., gt=0)
    account_id: int = Field(..., gt=0)
    received_date: date
    received: bool = False
    replenish_category_id: Optional[int] = Field(default=None, gt=0)


class TransferIn(BaseModel):
    from_account_id: Optional[int] = Field(default=None, gt=0)
    to_account_id: Optional[int] = Field(default=None, gt=0)
    amount_cents: int = Field(..., gt=0, strict=True)
    date: date
    type: TransferType
    description: Optional[str] = Field(default=None, max_length=200)


class RefundIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    transaction_id: int = Field(..., gt=0)
    amount_cents: int = Field(..., gt=0, strict=True)
    refund_date: date
    fatura_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    description: Optional[str] = Field(default=None, max_length=200)


class FaturaPaymentIn(BaseModel):
    from_account_id: int = Field(..., gt=0)
    paid_on: Optional[date] = None


class BudgetIn(BaseModel):
    category_id: int = Field(..., gt=0)
    year_month: str = Field(..., pattern=YEAR_MONTH_PATTERN)
    amount_cents: int = Field(..., ge=0, strict=True)
