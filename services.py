from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, selectinload

from balance import BalanceInputs, compute_balance
from database import atomic
from models import (
    Account,
    AccountType,
    Budget,
    Category,
    CategoryType,
    Entry,
    Fatura,
    Income,
    Transaction,
    Transfer,
    TransferType,
)
from periods import (
    add_months,
    fatura_closing_date,
    fatura_month_for,
    fatura_window,
    month_period,
    parse_year_month,
    payment_due_date,
    shift_date_by_months,
    year_month_of,
)
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    ExpenseIn,
    FaturaPaymentIn,
    IncomeIn,
    RefundIn,
    TransferIn,
)


logger = logging.getLogger(__name__)


class InvalidInput(ValueError):
    pass


class RecordNotFound(ValueError):
    pass


class ConstraintViolation(ValueError):
    pass


def get_current_user_id() -> int:
    return 1


def _get_owned(session: Session, model, user_id: int, record_id: int, message: str):
    record = session.get(model, record_id)
    if not record or record.user_id != user_id:
        raise RecordNotFound(message)
    return record


def _check_year_month(year_month: str) -> str:
    try:
        parse_year_month(year_month)
    except ValueError as exc:
        raise InvalidInput(str(exc)) from exc
    return year_month


def _scalar_int(session: Session, stmt) -> int:
    return int(session.execute(stmt).scalar_one() or 0)


# --- balance synchronizer -------------------------------------------------


def account_balance_inputs(
    session: Session, user_id: int, account_id: int
) -> BalanceInputs:
    expenses = _scalar_int(
        session,
        select(func.coalesce(func.sum(Entry.amount_cents), 0))
        .join(Transaction, Entry.transaction_id == Transaction.id)
        .where(
            Entry.user_id == user_id,
            Entry.account_id == account_id,
            Transaction.ignored.is_(False),
        ),
    )
    received_income = _scalar_int(
        session,
        select(func.coalesce(func.sum(Income.amount_cents), 0)).where(
            Income.user_id == user_id,
            Income.account_id == account_id,
            Income.received_at.isnot(None),
            Income.ignored.is_(False),
        ),
    )
    transfers_in = _scalar_int(
        session,
        select(func.coalesce(func.sum(Transfer.amount_cents), 0)).where(
            Transfer.user_id == user_id,
            Transfer.to_account_id == account_id,
            Transfer.ignored.is_(False),
        ),
    )
    transfers_out = _scalar_int(
        session,
        select(func.coalesce(func.sum(Transfer.amount_cents), 0)).where(
            Transfer.user_id == user_id,
            Transfer.from_account_id == account_id,
            Transfer.ignored.is_(False),
        ),
    )
    return BalanceInputs(
        total_expenses=expenses,
        total_received_income=received_income,
        total_transfers_in=transfers_in,
        total_transfers_out=transfers_out,
    )


def sync_account_balance(session: Session, user_id: int, account_id: int) -> int:
    """Recompute an account's cached balance from its ledger rows.

    This is the only code path that writes ``Account.current_balance_cents``.
    It flushes and reads inside the caller's transaction and never commits.
    """
    session.flush()
    account = session.scalar(
        select(Account)
        .where(Account.user_id == user_id, Account.id == account_id)
        .with_for_update()
    )
    if not account:
        raise RecordNotFound("Account not found")
    balance = compute_balance(account_balance_inputs(session, user_id, account_id))
    account.current_balance_cents = balance
    account.balance_updated_at = datetime.utcnow()
    session.flush()
    return balance


# --- fatura aggregator ----------------------------------------------------


def upsert_fatura_total(
    session: Session, user_id: int, account_id: int, year_month: str
) -> Fatura:
    _check_year_month(year_month)
    session.flush()
    account = _get_owned(session, Account, user_id, account_id, "Account not found")
    if not account.is_credit_card:
        raise ConstraintViolation("Faturas only exist for credit card accounts")

    fatura = session.scalar(
        select(Fatura)
        .where(
            Fatura.user_id == user_id,
            Fatura.account_id == account_id,
            Fatura.year_month == year_month,
        )
        .with_for_update()
    )
    if not fatura:
        fatura = Fatura(
            user_id=user_id,
            account_id=account_id,
            year_month=year_month,
            closing_date=fatura_closing_date(year_month, account.closing_day),
            due_date=payment_due_date(
                year_month, account.payment_due_day, account.closing_day
            ),
            total_amount_cents=0,
        )
        session.add(fatura)
        session.flush()

    charged = _scalar_int(
        session,
        select(func.coalesce(func.sum(Entry.amount_cents), 0))
        .join(Transaction, Entry.transaction_id == Transaction.id)
        .where(
            Entry.user_id == user_id,
            Entry.account_id == account_id,
            Entry.fatura_month == year_month,
            Transaction.ignored.is_(False),
        ),
    )
    refunded = _scalar_int(
        session,
        select(func.coalesce(func.sum(Income.amount_cents), 0)).where(
            Income.user_id == user_id,
            Income.account_id == account_id,
            Income.refund_of_transaction_id.isnot(None),
            Income.fatura_month == year_month,
            Income.ignored.is_(False),
        ),
    )
    fatura.total_amount_cents = max(0, charged - refunded)
    session.flush()
    return fatura


# --- change propagation ---------------------------------------------------


@dataclass
class LedgerChanges:
    """Accounts and statements touched by one ledger mutation."""

    accounts: set[int] = field(default_factory=set)
    faturas: set[tuple[int, str]] = field(default_factory=set)

    def touch_account(self, account_id: Optional[int]) -> None:
        if account_id is not None:
            self.accounts.add(account_id)

    def touch_fatura(self, account_id: int, year_month: str) -> None:
        self.faturas.add((account_id, year_month))
        self.accounts.add(account_id)

    def record_entry(self, entry: Entry) -> None:
        self.touch_account(entry.account_id)
        if entry.account.is_credit_card:
            self.touch_fatura(entry.account_id, entry.fatura_month)

    def record_income(self, income: Income) -> None:
        self.touch_account(income.account_id)
        if income.is_refund and income.fatura_month and income.account.is_credit_card:
            self.touch_fatura(income.account_id, income.fatura_month)

    def record_transfer(self, transfer: Transfer) -> None:
        self.touch_account(transfer.from_account_id)
        self.touch_account(transfer.to_account_id)


def apply_ledger_changes(session: Session, user_id: int, changes: LedgerChanges) -> None:
    for account_id, year_month in sorted(changes.faturas):
        upsert_fatura_total(session, user_id, account_id, year_month)
    for account_id in sorted(changes.accounts):
        sync_account_balance(session, user_id, account_id)


# --- installments ---------------------------------------------------------


@dataclass(frozen=True)
class InstallmentPlan:
    installment_number: int
    amount_cents: int
    purchase_date: date
    fatura_month: str
    due_date: date


def plan_installments(
    account: Account, total_amount_cents: int, installments: int, purchase_date: date
) -> list[InstallmentPlan]:
    if installments < 1:
        raise InvalidInput("Installments must be at least 1")
    base = total_amount_cents // installments
    last = total_amount_cents - base * (installments - 1)
    first_month = (
        fatura_month_for(purchase_date, account.closing_day)
        if account.is_credit_card
        else None
    )

    plans: list[InstallmentPlan] = []
    for i in range(installments):
        amount = last if i == installments - 1 else base
        if first_month is not None:
            month = add_months(first_month, i)
            due = payment_due_date(month, account.payment_due_day, account.closing_day)
            # later installments are dated at the start of their statement window
            day = purchase_date if i == 0 else fatura_window(month, account.closing_day).start
        else:
            day = shift_date_by_months(purchase_date, i)
            month = year_month_of(day)
            due = day
        plans.append(
            InstallmentPlan(
                installment_number=i + 1,
                amount_cents=amount,
                purchase_date=day,
                fatura_month=month,
                due_date=due,
            )
        )
    return plans


# --- services -------------------------------------------------------------


class AccountService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.name.asc(), Account.id.asc())
        )
        return self.session.scalars(stmt).all()

    def get(self, account_id: int) -> Account:
        return _get_owned(
            self.session, Account, self.user_id, account_id, "Account not found"
        )

    @staticmethod
    def _validate_billing(data: AccountIn) -> None:
        if data.type == AccountType.credit_card:
            if data.closing_day is None or data.payment_due_day is None:
                raise InvalidInput(
                    "Credit cards need a closing day and a payment due day"
                )
            return
        if (
            data.closing_day is not None
            or data.payment_due_day is not None
            or data.credit_limit_cents is not None
        ):
            raise InvalidInput("Only credit cards have billing settings")

    def create(self, data: AccountIn) -> Account:
        self._validate_billing(data)
        with atomic(self.session):
            account = Account(
                user_id=self.user_id,
                name=data.name.strip(),
                type=data.type,
                current_balance_cents=0,
                closing_day=data.closing_day,
                payment_due_day=data.payment_due_day,
                credit_limit_cents=data.credit_limit_cents,
            )
            self.session.add(account)
        return account

    def update(self, account_id: int, data: AccountIn) -> Account:
        self._validate_billing(data)
        with atomic(self.session):
            account = self.get(account_id)
            if data.type != account.type and self._has_ledger_rows(account.id):
                raise ConstraintViolation(
                    "Cannot change the type of an account with ledger activity"
                )
            account.name = data.name.strip()
            account.type = data.type
            account.closing_day = data.closing_day
            account.payment_due_day = data.payment_due_day
            account.credit_limit_cents = data.credit_limit_cents
        return account

    def delete(self, account_id: int) -> None:
        with atomic(self.session):
            account = self.get(account_id)
            if self._has_ledger_rows(account.id):
                raise ConstraintViolation("Cannot delete an account with ledger activity")
            self.session.delete(account)

    def _has_ledger_rows(self, account_id: int) -> bool:
        checks = [
            select(func.count(Entry.id)).where(
                Entry.user_id == self.user_id, Entry.account_id == account_id
            ),
            select(func.count(Income.id)).where(
                Income.user_id == self.user_id, Income.account_id == account_id
            ),
            select(func.count(Transfer.id)).where(
                Transfer.user_id == self.user_id,
                or_(
                    Transfer.from_account_id == account_id,
                    Transfer.to_account_id == account_id,
                ),
            ),
            select(func.count(Fatura.id)).where(
                Fatura.user_id == self.user_id,
                or_(
                    Fatura.account_id == account_id,
                    Fatura.paid_from_account_id == account_id,
                ),
            ),
        ]
        return any(_scalar_int(self.session, stmt) > 0 for stmt in checks)


class CategoryService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_all(self, type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id)
            .order_by(Category.type.asc(), Category.name.asc())
        )
        if type:
            stmt = stmt.where(Category.type == type)
        return self.session.scalars(stmt).all()

    def create(self, data: CategoryIn) -> Category:
        name = data.name.strip()
        with atomic(self.session):
            existing = self.session.scalar(
                select(Category).where(
                    Category.user_id == self.user_id,
                    Category.type == data.type,
                    func.lower(Category.name) == name.lower(),
                )
            )
            if existing:
                raise ConstraintViolation("Category with this name already exists")
            category = Category(
                user_id=self.user_id, name=name, type=data.type, color=data.color
            )
            self.session.add(category)
        return category

    def rename(self, category_id: int, name: str) -> Category:
        name = name.strip()
        if not name:
            raise InvalidInput("Category name cannot be empty")
        with atomic(self.session):
            category = _get_owned(
                self.session, Category, self.user_id, category_id, "Category not found"
            )
            category.name = name
        return category


def _category_of_type(
    session: Session, user_id: int, category_id: int, type: CategoryType
) -> Category:
    category = _get_owned(session, Category, user_id, category_id, "Category not found")
    if category.type != type:
        raise InvalidInput("Category type mismatch")
    return category


class ExpenseService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction)
            .options(selectinload(Transaction.entries))
            .where(
                Transaction.user_id == self.user_id,
                Transaction.id == transaction_id,
            )
        )
        if not txn:
            raise RecordNotFound("Transaction not found")
        return txn

    def list_for_month(
        self, year_month: str, account_id: Optional[int] = None
    ) -> list[Entry]:
        _check_year_month(year_month)
        stmt = (
            select(Entry)
            .where(Entry.user_id == self.user_id, Entry.fatura_month == year_month)
            .order_by(Entry.purchase_date.desc(), Entry.id.desc())
        )
        if account_id:
            stmt = stmt.where(Entry.account_id == account_id)
        return self.session.scalars(stmt).all()

    def _write_entries(
        self, txn: Transaction, account: Account, data: ExpenseIn, changes: LedgerChanges
    ) -> None:
        plans = plan_installments(
            account, data.total_amount_cents, data.installments, data.purchase_date
        )
        for plan in plans:
            txn.entries.append(
                Entry(
                    user_id=self.user_id,
                    account_id=account.id,
                    amount_cents=plan.amount_cents,
                    purchase_date=plan.purchase_date,
                    fatura_month=plan.fatura_month,
                    due_date=plan.due_date,
                    installment_number=plan.installment_number,
                    paid_at=None,
                )
            )
            changes.touch_account(account.id)
            if account.is_credit_card:
                changes.touch_fatura(account.id, plan.fatura_month)

    def create(self, data: ExpenseIn) -> Transaction:
        with atomic(self.session):
            account = _get_owned(
                self.session, Account, self.user_id, data.account_id, "Account not found"
            )
            category = _category_of_type(
                self.session, self.user_id, data.category_id, CategoryType.expense
            )
            txn = Transaction(
                user_id=self.user_id,
                description=(data.description or "").strip() or category.name,
                total_amount_cents=data.total_amount_cents,
                total_installments=data.installments,
                category_id=category.id,
                refunded_amount_cents=0,
            )
            self.session.add(txn)
            changes = LedgerChanges()
            self._write_entries(txn, account, data, changes)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)
        logger.info(
            f"expense_created: transaction_id={txn.id} account_id={account.id} "
            f"installments={data.installments}"
        )
        return txn

    def update(self, transaction_id: int, data: ExpenseIn) -> Transaction:
        with atomic(self.session):
            txn = self.get(transaction_id)
            account = _get_owned(
                self.session, Account, self.user_id, data.account_id, "Account not found"
            )
            category = _category_of_type(
                self.session, self.user_id, data.category_id, CategoryType.expense
            )
            if data.total_amount_cents < txn.refunded_amount_cents:
                raise ConstraintViolation(
                    "Expense amount cannot be less than refunded total"
                )

            changes = LedgerChanges()
            for entry in txn.entries:
                changes.record_entry(entry)
            txn.entries.clear()
            self.session.flush()

            txn.description = (data.description or "").strip() or category.name
            txn.total_amount_cents = data.total_amount_cents
            txn.total_installments = data.installments
            txn.category_id = category.id
            self._write_entries(txn, account, data, changes)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)
        return txn

    def delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            refunds = _scalar_int(
                self.session,
                select(func.count(Income.id)).where(
                    Income.user_id == self.user_id,
                    Income.refund_of_transaction_id == txn.id,
                ),
            )
            if refunds:
                raise ConstraintViolation(
                    "Cannot delete an expense with refunds; delete the refunds first"
                )
            changes = LedgerChanges()
            for entry in txn.entries:
                changes.record_entry(entry)
            self.session.delete(txn)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)

    def toggle_ignore(self, transaction_id: int) -> bool:
        with atomic(self.session):
            txn = self.get(transaction_id)
            txn.ignored = not txn.ignored
            changes = LedgerChanges()
            for entry in txn.entries:
                changes.record_entry(entry)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)
        return txn.ignored

    def _non_card_entry(self, entry_id: int) -> Entry:
        entry = _get_owned(self.session, Entry, self.user_id, entry_id, "Entry not found")
        if entry.account.is_credit_card:
            raise ConstraintViolation(
                "Credit card entries are settled by paying their fatura"
            )
        return entry

    def mark_entry_paid(
        self, entry_id: int, paid_at: Optional[datetime] = None
    ) -> Entry:
        with atomic(self.session):
            entry = self._non_card_entry(entry_id)
            entry.paid_at = paid_at or datetime.utcnow()
        return entry

    def mark_entry_pending(self, entry_id: int) -> Entry:
        with atomic(self.session):
            entry = self._non_card_entry(entry_id)
            entry.paid_at = None
        return entry


class IncomeService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, income_id: int) -> Income:
        return _get_owned(self.session, Income, self.user_id, income_id, "Income not found")

    def list_for_month(
        self, year_month: str, *, received: Optional[bool] = None
    ) -> list[Income]:
        period = month_period(_check_year_month(year_month))
        stmt = (
            select(Income)
            .where(
                Income.user_id == self.user_id,
                Income.received_date.between(period.start, period.end),
            )
            .order_by(Income.received_date.desc(), Income.id.desc())
        )
        if received is True:
            stmt = stmt.where(Income.received_at.isnot(None))
        elif received is False:
            stmt = stmt.where(Income.received_at.is_(None))
        return self.session.scalars(stmt).all()

    def _validate(self, data: IncomeIn) -> None:
        _get_owned(
            self.session, Account, self.user_id, data.account_id, "Account not found"
        )
        _category_of_type(
            self.session, self.user_id, data.category_id, CategoryType.income
        )
        if data.replenish_category_id is not None:
            _category_of_type(
                self.session,
                self.user_id,
                data.replenish_category_id,
                CategoryType.expense,
            )

    def create(self, data: IncomeIn) -> Income:
        with atomic(self.session):
            self._validate(data)
            income = Income(
                user_id=self.user_id,
                description=data.description.strip(),
                amount_cents=data.amount_cents,
                category_id=data.category_id,
                account_id=data.account_id,
                received_date=data.received_date,
                received_at=datetime.utcnow() if data.received else None,
                replenish_category_id=data.replenish_category_id,
            )
            self.session.add(income)
            self.session.flush()
            changes = LedgerChanges()
            changes.record_income(income)
            apply_ledger_changes(self.session, self.user_id, changes)
        return income

    def update(self, income_id: int, data: IncomeIn) -> Income:
        with atomic(self.session):
            income = self.get(income_id)
            if income.is_refund:
                raise ConstraintViolation(
                    "Refunds cannot be edited; delete and record the refund again"
                )
            self._validate(data)
            changes = LedgerChanges()
            changes.record_income(income)

            income.description = data.description.strip()
            income.amount_cents = data.amount_cents
            income.category_id = data.category_id
            income.account_id = data.account_id
            income.received_date = data.received_date
            income.replenish_category_id = data.replenish_category_id
            if not data.received:
                income.received_at = None
            elif income.received_at is None:
                income.received_at = datetime.utcnow()
            self.session.flush()
            changes.touch_account(income.account_id)
            apply_ledger_changes(self.session, self.user_id, changes)
        return income

    def delete(self, income_id: int) -> None:
        income = self.get(income_id)
        if income.is_refund:
            RefundService(self.session, self.user_id).delete_refund(income_id)
            return
        with atomic(self.session):
            changes = LedgerChanges()
            changes.record_income(income)
            self.session.delete(income)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)

    def mark_received(
        self, income_id: int, received_at: Optional[datetime] = None
    ) -> Income:
        with atomic(self.session):
            income = self.get(income_id)
            income.received_at = received_at or datetime.utcnow()
            changes = LedgerChanges()
            changes.record_income(income)
            apply_ledger_changes(self.session, self.user_id, changes)
        return income

    def mark_pending(self, income_id: int) -> Income:
        with atomic(self.session):
            income = self.get(income_id)
            income.received_at = None
            changes = LedgerChanges()
            changes.record_income(income)
            apply_ledger_changes(self.session, self.user_id, changes)
        return income

    def toggle_ignore(self, income_id: int) -> bool:
        with atomic(self.session):
            income = self.get(income_id)
            income.ignored = not income.ignored
            changes = LedgerChanges()
            changes.record_income(income)
            apply_ledger_changes(self.session, self.user_id, changes)
        return income.ignored


class TransferService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, transfer_id: int) -> Transfer:
        return _get_owned(
            self.session, Transfer, self.user_id, transfer_id, "Transfer not found"
        )

    def list(
        self,
        *,
        account_id: Optional[int] = None,
        year_month: Optional[str] = None,
        type: Optional[TransferType] = None,
    ) -> list[Transfer]:
        stmt = (
            select(Transfer)
            .where(Transfer.user_id == self.user_id)
            .order_by(Transfer.date.desc(), Transfer.id.desc())
        )
        if account_id:
            stmt = stmt.where(
                or_(
                    Transfer.from_account_id == account_id,
                    Transfer.to_account_id == account_id,
                )
            )
        if year_month:
            period = month_period(_check_year_month(year_month))
            stmt = stmt.where(Transfer.date.between(period.start, period.end))
        if type:
            stmt = stmt.where(Transfer.type == type)
        return self.session.scalars(stmt).all()

    @staticmethod
    def _validate_shape(data: TransferIn) -> None:
        if data.type == TransferType.fatura_payment:
            raise ConstraintViolation("Fatura payments are created by paying a fatura")
        if data.type == TransferType.internal_transfer:
            if data.from_account_id is None or data.to_account_id is None:
                raise InvalidInput("Internal transfers need a source and a target account")
            if data.from_account_id == data.to_account_id:
                raise ConstraintViolation("Cannot transfer between the same account")
        elif data.type == TransferType.deposit:
            if data.to_account_id is None or data.from_account_id is not None:
                raise InvalidInput("Deposits need a target account and no source account")
        elif data.type == TransferType.withdrawal:
            if data.from_account_id is None or data.to_account_id is not None:
                raise InvalidInput(
                    "Withdrawals need a source account and no target account"
                )

    def _check_accounts(self, data: TransferIn) -> None:
        for account_id in (data.from_account_id, data.to_account_id):
            if account_id is not None:
                _get_owned(
                    self.session, Account, self.user_id, account_id, "Account not found"
                )

    def _unlocked(self, transfer_id: int) -> Transfer:
        transfer = self.get(transfer_id)
        if transfer.is_locked:
            raise ConstraintViolation(
                "Transfers linked to a fatura cannot be changed; mark the fatura unpaid instead"
            )
        return transfer

    def create(self, data: TransferIn) -> Transfer:
        self._validate_shape(data)
        with atomic(self.session):
            self._check_accounts(data)
            transfer = Transfer(
                user_id=self.user_id,
                from_account_id=data.from_account_id,
                to_account_id=data.to_account_id,
                amount_cents=data.amount_cents,
                date=data.date,
                type=data.type,
                description=(data.description or "").strip() or None,
            )
            self.session.add(transfer)
            self.session.flush()
            changes = LedgerChanges()
            changes.record_transfer(transfer)
            apply_ledger_changes(self.session, self.user_id, changes)
        return transfer

    def update(self, transfer_id: int, data: TransferIn) -> Transfer:
        with atomic(self.session):
            transfer = self._unlocked(transfer_id)
            self._validate_shape(data)
            self._check_accounts(data)
            changes = LedgerChanges()
            changes.record_transfer(transfer)
            transfer.from_account_id = data.from_account_id
            transfer.to_account_id = data.to_account_id
            transfer.amount_cents = data.amount_cents
            transfer.date = data.date
            transfer.type = data.type
            transfer.description = (data.description or "").strip() or None
            self.session.flush()
            changes.record_transfer(transfer)
            apply_ledger_changes(self.session, self.user_id, changes)
        return transfer

    def delete(self, transfer_id: int) -> None:
        with atomic(self.session):
            transfer = self._unlocked(transfer_id)
            changes = LedgerChanges()
            changes.record_transfer(transfer)
            self.session.delete(transfer)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)

    def toggle_ignore(self, transfer_id: int) -> bool:
        with atomic(self.session):
            transfer = self._unlocked(transfer_id)
            transfer.ignored = not transfer.ignored
            changes = LedgerChanges()
            changes.record_transfer(transfer)
            apply_ledger_changes(self.session, self.user_id, changes)
        return transfer.ignored


class FaturaService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def get(self, fatura_id: int) -> Fatura:
        return _get_owned(self.session, Fatura, self.user_id, fatura_id, "Fatura not found")

    def list_for_account(self, account_id: int) -> list[Fatura]:
        stmt = (
            select(Fatura)
            .where(Fatura.user_id == self.user_id, Fatura.account_id == account_id)
            .order_by(Fatura.year_month.desc())
        )
        return self.session.scalars(stmt).all()

    def list_for_month(self, year_month: str) -> list[Fatura]:
        _check_year_month(year_month)
        stmt = (
            select(Fatura)
            .join(Account, Fatura.account_id == Account.id)
            .where(Fatura.user_id == self.user_id, Fatura.year_month == year_month)
            .order_by(Account.name.asc())
        )
        return self.session.scalars(stmt).all()

    def unpaid(self) -> list[Fatura]:
        stmt = (
            select(Fatura)
            .join(Account, Fatura.account_id == Account.id)
            .where(Fatura.user_id == self.user_id, Fatura.paid_at.is_(None))
            .order_by(Fatura.year_month.desc(), Account.name.asc())
        )
        return self.session.scalars(stmt).all()

    def entries(self, fatura: Fatura) -> list[Entry]:
        stmt = (
            select(Entry)
            .where(
                Entry.user_id == self.user_id,
                Entry.account_id == fatura.account_id,
                Entry.fatura_month == fatura.year_month,
            )
            .order_by(Entry.purchase_date.desc(), Entry.id.desc())
        )
        return self.session.scalars(stmt).all()

    def get_with_entries(self, fatura_id: int) -> tuple[Fatura, list[Entry]]:
        fatura = self.get(fatura_id)
        return fatura, self.entries(fatura)

    def recompute(self, account_id: int, year_month: str) -> Fatura:
        with atomic(self.session):
            fatura = upsert_fatura_total(
                self.session, self.user_id, account_id, year_month
            )
        return fatura

    def _mark_entries_paid(self, fatura: Fatura, paid_at: Optional[datetime]) -> None:
        self.session.execute(
            update(Entry)
            .where(
                Entry.user_id == self.user_id,
                Entry.account_id == fatura.account_id,
                Entry.fatura_month == fatura.year_month,
            )
            .values(paid_at=paid_at)
        )

    def _payment_transfer(
        self, fatura: Fatura, from_account_id: int, amount_cents: int, paid_on: date
    ) -> Transfer:
        return Transfer(
            user_id=self.user_id,
            from_account_id=from_account_id,
            to_account_id=fatura.account_id,
            amount_cents=amount_cents,
            date=paid_on,
            type=TransferType.fatura_payment,
            fatura_id=fatura.id,
            description=f"Fatura {fatura.year_month}",
        )

    def pay(self, fatura_id: int, data: FaturaPaymentIn) -> Fatura:
        with atomic(self.session):
            fatura = self.get(fatura_id)
            if fatura.paid_at:
                raise ConstraintViolation("Fatura is already paid")
            source = _get_owned(
                self.session,
                Account,
                self.user_id,
                data.from_account_id,
                "Account not found",
            )
            if source.is_credit_card:
                raise ConstraintViolation("Cannot pay a fatura from a credit card")

            upsert_fatura_total(
                self.session, self.user_id, fatura.account_id, fatura.year_month
            )
            if fatura.total_amount_cents <= 0:
                raise ConstraintViolation("Fatura has nothing to pay")

            paid_at = (
                datetime.combine(data.paid_on, time.min)
                if data.paid_on
                else datetime.utcnow()
            )
            self.session.add(
                self._payment_transfer(
                    fatura, source.id, fatura.total_amount_cents, paid_at.date()
                )
            )
            fatura.paid_at = paid_at
            fatura.paid_from_account_id = source.id
            self._mark_entries_paid(fatura, paid_at)

            changes = LedgerChanges()
            changes.touch_account(source.id)
            changes.touch_account(fatura.account_id)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)
        logger.info(
            f"fatura_paid: fatura_id={fatura.id} from_account_id={source.id} "
            f"amount_cents={fatura.total_amount_cents}"
        )
        return fatura

    def mark_unpaid(self, fatura_id: int) -> Fatura:
        with atomic(self.session):
            fatura = self.get(fatura_id)
            if not fatura.paid_at:
                raise ConstraintViolation("Fatura is not paid")
            changes = LedgerChanges()
            changes.touch_account(fatura.account_id)
            changes.touch_account(fatura.paid_from_account_id)

            payments = self.session.scalars(
                select(Transfer).where(
                    Transfer.user_id == self.user_id,
                    Transfer.fatura_id == fatura.id,
                    Transfer.type == TransferType.fatura_payment,
                )
            ).all()
            for payment in payments:
                changes.record_transfer(payment)
                self.session.delete(payment)

            fatura.paid_at = None
            fatura.paid_from_account_id = None
            self._mark_entries_paid(fatura, None)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)
        return fatura

    def convert_expense_to_payment(self, entry_id: int, fatura_id: int) -> Fatura:
        """Turn an expense that was really a fatura payment into that payment."""
        with atomic(self.session):
            entry = _get_owned(
                self.session, Entry, self.user_id, entry_id, "Entry not found"
            )
            txn = entry.transaction
            source = entry.account
            if source.is_credit_card or txn.total_installments != 1:
                raise ConstraintViolation(
                    "Only single-installment expenses from non-credit accounts "
                    "can become fatura payments"
                )
            if txn.refunded_amount_cents:
                raise ConstraintViolation("Cannot convert an expense with refunds")
            fatura = self.get(fatura_id)
            if fatura.paid_at:
                raise ConstraintViolation("Fatura is already paid")
            if fatura.total_amount_cents != entry.amount_cents:
                raise ConstraintViolation("Expense amount does not match the fatura total")

            paid_at = datetime.combine(entry.purchase_date, time.min)
            self.session.add(
                self._payment_transfer(
                    fatura, source.id, entry.amount_cents, entry.purchase_date
                )
            )
            fatura.paid_at = paid_at
            fatura.paid_from_account_id = source.id
            self._mark_entries_paid(fatura, paid_at)
            self.session.delete(txn)

            changes = LedgerChanges()
            changes.touch_account(source.id)
            changes.touch_account(fatura.account_id)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)
        return fatura

    def backfill_faturas(self) -> dict[str, int]:
        """Create missing statements for every card month that has entries."""
        combos = self.session.execute(
            select(Entry.account_id, Entry.fatura_month)
            .join(Account, Entry.account_id == Account.id)
            .where(
                Entry.user_id == self.user_id,
                Account.type == AccountType.credit_card,
            )
            .distinct()
            .order_by(Entry.account_id, Entry.fatura_month)
        ).all()

        created = 0
        for account_id, year_month in combos:
            exists = self.session.scalar(
                select(Fatura.id).where(
                    Fatura.user_id == self.user_id,
                    Fatura.account_id == account_id,
                    Fatura.year_month == year_month,
                )
            )
            if exists is not None:
                continue
            with atomic(self.session):
                upsert_fatura_total(self.session, self.user_id, account_id, year_month)
            created += 1
        logger.info(f"backfill_faturas: user_id={self.user_id} created={created}")
        return {"created": created}


class RefundService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def list_for_transaction(self, transaction_id: int) -> list[Income]:
        stmt = (
            select(Income)
            .where(
                Income.user_id == self.user_id,
                Income.refund_of_transaction_id == transaction_id,
            )
            .order_by(Income.received_date.asc(), Income.id.asc())
        )
        return self.session.scalars(stmt).all()

    def create_refund(self, data: RefundIn) -> Income:
        with atomic(self.session):
            txn = self.session.scalar(
                select(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.id == data.transaction_id,
                )
                .with_for_update()
            )
            if not txn:
                raise RecordNotFound("Transaction not found")
            first_entry = self.session.scalar(
                select(Entry)
                .where(Entry.user_id == self.user_id, Entry.transaction_id == txn.id)
                .order_by(Entry.installment_number.asc())
                .limit(1)
            )
            if not first_entry:
                raise RecordNotFound("Transaction has no entries")

            remaining = txn.total_amount_cents - txn.refunded_amount_cents
            if data.amount_cents > remaining:
                raise ConstraintViolation(
                    f"Refund amount ({data.amount_cents}) exceeds remaining "
                    f"refundable amount ({remaining})"
                )

            income_category = self.session.scalar(
                select(Category)
                .where(
                    Category.user_id == self.user_id,
                    Category.type == CategoryType.income,
                )
                .order_by(Category.id.asc())
                .limit(1)
            )
            if not income_category:
                raise ConstraintViolation(
                    "No income category found; create an income category first"
                )

            refund = Income(
                user_id=self.user_id,
                description=(data.description or "").strip()
                or f"Refund - {txn.description}",
                amount_cents=data.amount_cents,
                category_id=income_category.id,
                account_id=first_entry.account_id,
                received_date=data.refund_date,
                received_at=None,
                replenish_category_id=txn.category_id,
                refund_of_transaction_id=txn.id,
                fatura_month=data.fatura_month,
            )
            self.session.add(refund)
            txn.refunded_amount_cents = txn.refunded_amount_cents + data.amount_cents
            self.session.flush()

            changes = LedgerChanges()
            changes.record_income(refund)
            apply_ledger_changes(self.session, self.user_id, changes)
        logger.info(
            f"refund_created: transaction_id={txn.id} income_id={refund.id} "
            f"amount_cents={data.amount_cents} refunded_cents={txn.refunded_amount_cents}"
        )
        return refund

    def delete_refund(self, income_id: int) -> None:
        with atomic(self.session):
            refund = _get_owned(
                self.session, Income, self.user_id, income_id, "Income not found"
            )
            if not refund.is_refund:
                raise ConstraintViolation("This income is not a refund")
            txn = self.session.scalar(
                select(Transaction)
                .where(
                    Transaction.user_id == self.user_id,
                    Transaction.id == refund.refund_of_transaction_id,
                )
                .with_for_update()
            )
            if txn:
                txn.refunded_amount_cents = max(
                    0, txn.refunded_amount_cents - refund.amount_cents
                )
            changes = LedgerChanges()
            changes.record_income(refund)
            self.session.delete(refund)
            self.session.flush()
            apply_ledger_changes(self.session, self.user_id, changes)


@dataclass(frozen=True)
class BalanceCheck:
    account_id: int
    cached_cents: int
    computed_cents: int

    @property
    def delta_cents(self) -> int:
        return self.cached_cents - self.computed_cents

    @property
    def consistent(self) -> bool:
        return self.delta_cents == 0


class ReconciliationService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    def check_consistency(self, account_id: int) -> BalanceCheck:
        account = _get_owned(
            self.session, Account, self.user_id, account_id, "Account not found"
        )
        computed = compute_balance(
            account_balance_inputs(self.session, self.user_id, account.id)
        )
        return BalanceCheck(
            account_id=account.id,
            cached_cents=account.current_balance_cents,
            computed_cents=computed,
        )

    def reconcile_balances(self) -> int:
        account_ids = self.session.scalars(
            select(Account.id)
            .where(Account.user_id == self.user_id)
            .order_by(Account.id)
        ).all()
        for account_id in account_ids:
            with atomic(self.session):
                sync_account_balance(self.session, self.user_id, account_id)
        return len(account_ids)

    def backfill_fatura_transfers(self) -> dict[str, int]:
        """Synthesize the payment transfer of every paid fatura that lacks one.

        Each fatura is its own unit of work, so a failure keeps the transfers
        already created and a re-run skips them.
        """
        paid = self.session.scalars(
            select(Fatura)
            .where(
                Fatura.user_id == self.user_id,
                Fatura.paid_at.isnot(None),
                Fatura.paid_from_account_id.isnot(None),
            )
            .order_by(Fatura.id)
        ).all()

        created = 0
        for fatura in paid:
            existing = self.session.scalar(
                select(Transfer.id)
                .where(
                    Transfer.user_id == self.user_id,
                    Transfer.fatura_id == fatura.id,
                    Transfer.type == TransferType.fatura_payment,
                )
                .limit(1)
            )
            if existing is not None:
                continue
            if fatura.total_amount_cents <= 0:
                logger.warning(
                    f"backfill_fatura_transfers: skipped empty fatura_id={fatura.id}"
                )
                continue
            try:
                with atomic(self.session):
                    transfer = Transfer(
                        user_id=self.user_id,
                        from_account_id=fatura.paid_from_account_id,
                        to_account_id=fatura.account_id,
                        amount_cents=fatura.total_amount_cents,
                        date=fatura.paid_at.date(),
                        type=TransferType.fatura_payment,
                        fatura_id=fatura.id,
                        description=f"Fatura {fatura.year_month}",
                    )
                    self.session.add(transfer)
                    self.session.flush()
                    changes = LedgerChanges()
                    changes.record_transfer(transfer)
                    apply_ledger_changes(self.session, self.user_id, changes)
            except Exception:
                logger.exception(
                    f"backfill_fatura_transfers: failed fatura_id={fatura.id} "
                    f"created_so_far={created}"
                )
                raise
            created += 1
        logger.info(
            f"backfill_fatura_transfers: user_id={self.user_id} created={created}"
        )
        return {"created": created}


def _user_ids(session: Session) -> list[int]:
    return session.scalars(
        select(Account.user_id).distinct().order_by(Account.user_id)
    ).all()


def reconcile_all_account_balances(session: Session) -> dict[str, int]:
    users = _user_ids(session)
    accounts = 0
    for user_id in users:
        accounts += ReconciliationService(session, user_id).reconcile_balances()
    logger.info(f"reconcile_balances: users={len(users)} accounts={accounts}")
    return {"users": len(users), "accounts": accounts}


def backfill_all_fatura_transfers(session: Session) -> dict[str, int]:
    created = 0
    for user_id in _user_ids(session):
        result = ReconciliationService(session, user_id).backfill_fatura_transfers()
        created += result["created"]
    return {"created": created}


class BudgetService:
    def __init__(self, session: Session, user_id: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id or get_current_user_id()

    ALERT_THRESHOLDS = (120, 100, 80)

    @dataclass(frozen=True)
    class Progress:
        category_id: int
        category_name: str
        budget_cents: int
        spent_cents: int
        replenished_cents: int
        net_spent_cents: int
        remaining_cents: int
        alert_threshold: Optional[int]

    def list_for_month(self, year_month: str) -> list[Budget]:
        _check_year_month(year_month)
        stmt = (
            select(Budget)
            .options(selectinload(Budget.category))
            .where(Budget.user_id == self.user_id, Budget.year_month == year_month)
            .order_by(Budget.category_id)
        )
        return self.session.scalars(stmt).all()

    def upsert(self, data: BudgetIn) -> Budget:
        with atomic(self.session):
            _category_of_type(
                self.session, self.user_id, data.category_id, CategoryType.expense
            )
            budget = self.session.scalar(
                select(Budget).where(
                    Budget.user_id == self.user_id,
                    Budget.category_id == data.category_id,
                    Budget.year_month == data.year_month,
                )
            )
            if budget:
                budget.amount_cents = data.amount_cents
            else:
                budget = Budget(
                    user_id=self.user_id,
                    category_id=data.category_id,
                    year_month=data.year_month,
                    amount_cents=data.amount_cents,
                )
                self.session.add(budget)
        return budget

    def delete(self, budget_id: int) -> None:
        with atomic(self.session):
            budget = _get_owned(
                self.session, Budget, self.user_id, budget_id, "Budget not found"
            )
            self.session.delete(budget)

    def spent_by_category(self, year_month: str) -> dict[int, int]:
        period = month_period(_check_year_month(year_month))
        stmt = (
            select(
                Transaction.category_id,
                func.coalesce(func.sum(Entry.amount_cents), 0).label("spent"),
            )
            .join(Transaction, Entry.transaction_id == Transaction.id)
            .where(
                Entry.user_id == self.user_id,
                Transaction.ignored.is_(False),
                Entry.purchase_date.between(period.start, period.end),
            )
            .group_by(Transaction.category_id)
        )
        return {row.category_id: int(row.spent or 0) for row in self.session.execute(stmt)}

    def replenished_by_category(self, year_month: str) -> dict[int, int]:
        period = month_period(_check_year_month(year_month))
        stmt = (
            select(
                Income.replenish_category_id,
                func.coalesce(func.sum(Income.amount_cents), 0).label("replenished"),
            )
            .where(
                Income.user_id == self.user_id,
                Income.replenish_category_id.isnot(None),
                Income.ignored.is_(False),
                Income.received_date.between(period.start, period.end),
            )
            .group_by(Income.replenish_category_id)
        )
        return {
            row.replenish_category_id: int(row.replenished or 0)
            for row in self.session.execute(stmt)
        }

    @classmethod
    def _alert_threshold(cls, net_spent: int, budget: int) -> Optional[int]:
        if budget <= 0:
            return cls.ALERT_THRESHOLDS[0] if net_spent > 0 else None
        for threshold in cls.ALERT_THRESHOLDS:
            if net_spent * 100 >= threshold * budget:
                return threshold
        return None

    def progress_for_month(self, year_month: str) -> list[BudgetService.Progress]:
        spent = self.spent_by_category(year_month)
        replenished = self.replenished_by_category(year_month)
        progress: list[BudgetService.Progress] = []
        for budget in self.list_for_month(year_month):
            gross = spent.get(budget.category_id, 0)
            back = replenished.get(budget.category_id, 0)
            net = max(0, gross - back)
            progress.append(
                BudgetService.Progress(
                    category_id=budget.category_id,
                    category_name=budget.category.name,
                    budget_cents=budget.amount_cents,
                    spent_cents=gross,
                    replenished_cents=back,
                    net_spent_cents=net,
                    remaining_cents=budget.amount_cents - net,
                    alert_threshold=self._alert_threshold(net, budget.amount_cents),
                )
            )
        return progress
