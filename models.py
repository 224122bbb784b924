from datetime import date, datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit_card = "credit_card"
    cash = "cash"


class TransferType(str, Enum):
    internal_transfer = "internal_transfer"
    deposit = "deposit"
    withdrawal = "withdrawal"
    fatura_payment = "fatura_payment"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[AccountType] = mapped_column(SAEnum(AccountType), nullable=False)
    # Derived from the ledger; only services.sync_account_balance writes it.
    current_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    balance_updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    closing_day: Mapped[Optional[int]] = mapped_column(Integer)
    payment_due_day: Mapped[Optional[int]] = mapped_column(Integer)
    credit_limit_cents: Mapped[Optional[int]] = mapped_column(Integer)

    faturas: Mapped[list["Fatura"]] = relationship(
        "Fatura",
        back_populates="account",
        foreign_keys="Fatura.account_id",
        cascade="all, delete-orphan",
    )

    @property
    def is_credit_card(self) -> bool:
        return self.type == AccountType.credit_card

    __table_args__ = (
        CheckConstraint(
            "closing_day IS NULL OR (closing_day BETWEEN 1 AND 28)",
            name="ck_account_closing_day",
        ),
        CheckConstraint(
            "payment_due_day IS NULL OR (payment_due_day BETWEEN 1 AND 28)",
            name="ck_account_payment_due_day",
        ),
        Index("ix_accounts_user_name", "user_id", "name"),
    )


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    type: Mapped[CategoryType] = mapped_column(SAEnum(CategoryType), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(7))

    __table_args__ = (
        UniqueConstraint("user_id", "type", "name", name="uq_category_user_type_name"),
    )


class Transaction(Base, TimestampMixin):
    """A purchase, split into one or more installment entries."""

    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[Optional[str]] = mapped_column(Text)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    total_installments: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    refunded_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    ignored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    category: Mapped["Category"] = relationship("Category")
    entries: Mapped[list["Entry"]] = relationship(
        "Entry",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="Entry.installment_number",
    )

    __table_args__ = (
        CheckConstraint(
            "total_amount_cents > 0", name="ck_transactions_amount_positive"
        ),
        CheckConstraint(
            "total_installments >= 1", name="ck_transactions_installments_positive"
        ),
        CheckConstraint(
            "refunded_amount_cents >= 0 AND refunded_amount_cents <= total_amount_cents",
            name="ck_transactions_refunded_within_total",
        ),
        Index("ix_transactions_user_category", "user_id", "category_id"),
    )


class Entry(Base, TimestampMixin):
    """One installment of a transaction, charged to one account."""

    __tablename__ = "entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    transaction_id: Mapped[int] = mapped_column(
        ForeignKey("transactions.id", ondelete="CASCADE"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    purchase_date: Mapped[date] = mapped_column(Date, nullable=False)
    fatura_month: Mapped[str] = mapped_column(String(7), nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    installment_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    transaction: Mapped["Transaction"] = relationship(
        "Transaction", back_populates="entries"
    )
    account: Mapped["Account"] = relationship("Account")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_entries_amount_positive"),
        Index("ix_entries_user_account", "user_id", "account_id"),
        Index(
            "ix_entries_user_account_fatura_month",
            "user_id",
            "account_id",
            "fatura_month",
        ),
        Index("ix_entries_user_purchase_date", "user_id", "purchase_date"),
    )


class Income(Base, TimestampMixin):
    __tablename__ = "income"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    description: Mapped[Optional[str]] = mapped_column(Text)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    received_date: Mapped[date] = mapped_column(Date, nullable=False)
    # None while pending; only received income counts towards balances.
    received_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    ignored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    replenish_category_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("categories.id", ondelete="SET NULL")
    )
    refund_of_transaction_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("transactions.id", ondelete="SET NULL")
    )
    fatura_month: Mapped[Optional[str]] = mapped_column(String(7))

    category: Mapped["Category"] = relationship(
        "Category", foreign_keys=[category_id]
    )
    account: Mapped["Account"] = relationship("Account")
    refund_of_transaction: Mapped[Optional["Transaction"]] = relationship(
        "Transaction", foreign_keys=[refund_of_transaction_id]
    )

    @property
    def is_refund(self) -> bool:
        return self.refund_of_transaction_id is not None

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_income_amount_positive"),
        Index("ix_income_user_account", "user_id", "account_id"),
        Index("ix_income_user_refund_of", "user_id", "refund_of_transaction_id"),
        Index("ix_income_user_received_date", "user_id", "received_date"),
    )


class Fatura(Base, TimestampMixin):
    """A credit card statement for one billing month."""

    __tablename__ = "faturas"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    account_id: Mapped[int] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    closing_date: Mapped[date] = mapped_column(Date, nullable=False)
    due_date: Mapped[date] = mapped_column(Date, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    paid_from_account_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("accounts.id")
    )

    account: Mapped["Account"] = relationship(
        "Account", back_populates="faturas", foreign_keys=[account_id]
    )
    paid_from_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[paid_from_account_id]
    )

    __table_args__ = (
        UniqueConstraint("account_id", "year_month", name="uq_fatura_account_month"),
        Index("ix_faturas_user_year_month", "user_id", "year_month"),
    )


class Transfer(Base, TimestampMixin):
    __tablename__ = "transfers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    from_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    date: Mapped[date] = mapped_column(Date, nullable=False)
    type: Mapped[TransferType] = mapped_column(SAEnum(TransferType), nullable=False)
    # Set for fatura payments; such transfers are locked against user edits.
    fatura_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("faturas.id", ondelete="SET NULL")
    )
    description: Mapped[Optional[str]] = mapped_column(Text)
    ignored: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    from_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[from_account_id]
    )
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    fatura: Mapped[Optional["Fatura"]] = relationship("Fatura")

    @property
    def is_locked(self) -> bool:
        return self.fatura_id is not None

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_transfers_amount_positive"),
        CheckConstraint(
            "from_account_id IS NULL OR to_account_id IS NULL "
            "OR from_account_id <> to_account_id",
            name="ck_transfers_distinct_accounts",
        ),
        Index("ix_transfers_user_from", "user_id", "from_account_id"),
        Index("ix_transfers_user_to", "user_id", "to_account_id"),
        Index("ix_transfers_user_fatura", "user_id", "fatura_id"),
    )


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id", ondelete="CASCADE"), nullable=False
    )
    year_month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents >= 0", name="ck_budget_amount_positive"),
        UniqueConstraint(
            "user_id", "category_id", "year_month", name="uq_budget_user_category_month"
        ),
    )
