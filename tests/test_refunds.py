from datetime import date

import pytest

from pydantic import ValidationError
from sqlalchemy import select

import services
from models import Category, CategoryType, Fatura, Income
from schemas import ExpenseIn, IncomeIn, RefundIn
from services import (
    ConstraintViolation,
    ExpenseService,
    IncomeService,
    RecordNotFound,
    RefundService,
)


def make_expense(session, books, amount=5_000, account=None, day=date(2025, 3, 10)):
    return ExpenseService(session).create(
        ExpenseIn(
            description="Flight",
            total_amount_cents=amount,
            category_id=books.travel.id,
            account_id=(account or books.checking).id,
            purchase_date=day,
        )
    )


def refund_in(txn, amount, fatura_month="2025-03"):
    return RefundIn(
        transaction_id=txn.id,
        amount_cents=amount,
        refund_date=date(2025, 3, 28),
        fatura_month=fatura_month,
    )


def test_refund_row_shape(session, books) -> None:
    txn = make_expense(session, books)
    refund = RefundService(session).create_refund(refund_in(txn, 1_200))

    assert refund.is_refund
    assert refund.refund_of_transaction_id == txn.id
    assert refund.received_at is None
    assert refund.replenish_category_id == books.travel.id
    assert refund.category_id == books.salary.id
    assert refund.account_id == books.checking.id
    assert refund.fatura_month == "2025-03"
    assert refund.description == "Refund - Flight"


def test_refund_of_exact_remaining_then_one_cent_more(session, books) -> None:
    txn = make_expense(session, books, amount=5_000)
    refunds = RefundService(session)
    refunds.create_refund(refund_in(txn, 2_000))

    last = refunds.create_refund(refund_in(txn, 3_000))
    assert txn.refunded_amount_cents == 5_000

    with pytest.raises(ConstraintViolation):
        refunds.create_refund(refund_in(txn, 1))
    assert txn.refunded_amount_cents == 5_000

    refunds.delete_refund(last.id)
    assert txn.refunded_amount_cents == 2_000


def test_delete_refund_never_goes_below_zero(session, books) -> None:
    txn = make_expense(session, books, amount=1_000)
    refund = RefundService(session).create_refund(refund_in(txn, 600))
    txn.refunded_amount_cents = 100
    session.commit()

    RefundService(session).delete_refund(refund.id)
    assert txn.refunded_amount_cents == 0


def test_refund_counts_towards_balance_once_received(session, books) -> None:
    txn = make_expense(session, books, amount=3_000)
    refund = RefundService(session).create_refund(refund_in(txn, 1_000))
    assert books.checking.current_balance_cents == -3_000

    IncomeService(session).mark_received(refund.id)
    assert books.checking.current_balance_cents == -2_000

    IncomeService(session).delete(refund.id)
    assert books.checking.current_balance_cents == -3_000
    assert txn.refunded_amount_cents == 0


def test_card_refund_reduces_the_target_statement(session, books) -> None:
    txn = make_expense(session, books, amount=10_000, account=books.card)
    refund = RefundService(session).create_refund(refund_in(txn, 2_500))

    fatura = session.scalar(
        select(Fatura).where(
            Fatura.account_id == books.card.id, Fatura.year_month == "2025-03"
        )
    )
    assert fatura.total_amount_cents == 7_500
    assert books.card.current_balance_cents == -10_000

    IncomeService(session).mark_received(refund.id)
    assert books.card.current_balance_cents == -7_500

    RefundService(session).delete_refund(refund.id)
    assert fatura.total_amount_cents == 10_000


def test_refund_credited_to_a_later_statement(session, books) -> None:
    txn = make_expense(session, books, amount=4_000, account=books.card)
    RefundService(session).create_refund(refund_in(txn, 4_000, fatura_month="2025-05"))

    statements = {
        f.year_month: f.total_amount_cents
        for f in session.scalars(select(Fatura).where(Fatura.account_id == books.card.id))
    }
    assert statements == {"2025-03": 4_000, "2025-05": 0}


def test_refund_needs_an_income_category(session, books) -> None:
    txn = make_expense(session, books)
    session.delete(session.get(Category, books.salary.id))
    session.commit()
    with pytest.raises(ConstraintViolation):
        RefundService(session).create_refund(refund_in(txn, 100))
    assert txn.refunded_amount_cents == 0


def test_refund_of_unknown_transaction(session, books) -> None:
    with pytest.raises(RecordNotFound):
        RefundService(session).create_refund(
            RefundIn(
                transaction_id=404,
                amount_cents=100,
                refund_date=date(2025, 3, 1),
                fatura_month="2025-03",
            )
        )


@pytest.mark.parametrize(
    "field,value",
    [
        ("amount_cents", 0),
        ("amount_cents", -5),
        ("amount_cents", 12.5),
        ("amount_cents", "100"),
        ("refund_date", "2025-02-30"),
        ("fatura_month", "2025-3"),
        ("fatura_month", "2025-13"),
    ],
)
def test_malformed_refund_input_is_rejected(field, value) -> None:
    payload = {
        "transaction_id": 1,
        "amount_cents": 100,
        "refund_date": date(2025, 3, 1),
        "fatura_month": "2025-03",
    }
    payload[field] = value
    with pytest.raises(ValidationError):
        RefundIn(**payload)


def test_expense_with_refunds_is_protected(session, books) -> None:
    txn = make_expense(session, books, amount=2_000)
    RefundService(session).create_refund(refund_in(txn, 1_500))
    expenses = ExpenseService(session)

    with pytest.raises(ConstraintViolation):
        expenses.delete(txn.id)
    with pytest.raises(ConstraintViolation):
        expenses.update(
            txn.id,
            ExpenseIn(
                total_amount_cents=1_000,
                category_id=books.travel.id,
                account_id=books.checking.id,
                purchase_date=date(2025, 3, 10),
            ),
        )


def test_refund_income_cannot_be_edited_directly(session, books) -> None:
    txn = make_expense(session, books)
    refund = RefundService(session).create_refund(refund_in(txn, 100))
    with pytest.raises(ConstraintViolation):
        IncomeService(session).update(
            refund.id,
            IncomeIn(
                description="Edited",
                amount_cents=5_000,
                category_id=books.salary.id,
                account_id=books.checking.id,
                received_date=date(2025, 3, 28),
            ),
        )
    assert session.get(Income, refund.id).amount_cents == 100


def _fail_balance_sync(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(services, "sync_account_balance", boom)


def _card_statement(session, books) -> Fatura:
    return session.scalar(
        select(Fatura).where(
            Fatura.account_id == books.card.id, Fatura.year_month == "2025-03"
        )
    )


def test_failed_refund_create_rolls_back_everything(session, books, monkeypatch) -> None:
    txn = make_expense(session, books, amount=5_000, account=books.card)
    _fail_balance_sync(monkeypatch)

    with pytest.raises(RuntimeError):
        RefundService(session).create_refund(refund_in(txn, 2_000))

    assert session.scalars(select(Income)).all() == []
    session.refresh(txn)
    assert txn.refunded_amount_cents == 0
    assert _card_statement(session, books).total_amount_cents == 5_000


def test_failed_refund_delete_rolls_back_everything(session, books, monkeypatch) -> None:
    txn = make_expense(session, books, amount=5_000, account=books.card)
    refund = RefundService(session).create_refund(refund_in(txn, 2_000))
    assert _card_statement(session, books).total_amount_cents == 3_000
    _fail_balance_sync(monkeypatch)

    with pytest.raises(RuntimeError):
        RefundService(session).delete_refund(refund.id)

    assert session.get(Income, refund.id) is not None
    session.refresh(txn)
    assert txn.refunded_amount_cents == 2_000
    assert _card_statement(session, books).total_amount_cents == 3_000
