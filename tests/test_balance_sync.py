import random
from datetime import date

import pytest
from sqlalchemy import func, select

import services
from models import Account, Transaction, TransferType
from schemas import ExpenseIn, IncomeIn, RefundIn, TransferIn
from services import (
    ExpenseService,
    IncomeService,
    ReconciliationService,
    RefundService,
    TransferService,
    reconcile_all_account_balances,
    sync_account_balance,
)


def expense(books, amount, account=None, day=date(2025, 3, 10), installments=1):
    return ExpenseIn(
        description="Groceries",
        total_amount_cents=amount,
        category_id=books.food.id,
        account_id=(account or books.checking).id,
        purchase_date=day,
        installments=installments,
    )


def income(books, amount, received=True, account=None):
    return IncomeIn(
        description="Salary",
        amount_cents=amount,
        category_id=books.salary.id,
        account_id=(account or books.checking).id,
        received_date=date(2025, 3, 5),
        received=received,
    )


def test_end_to_end_balance_scenario(session, books) -> None:
    checking = books.checking
    assert checking.current_balance_cents == 0

    IncomeService(session).create(income(books, 10_000))
    assert checking.current_balance_cents == 10_000

    txn = ExpenseService(session).create(expense(books, 3_000))
    assert checking.current_balance_cents == 7_000

    TransferService(session).create(
        TransferIn(
            from_account_id=checking.id,
            to_account_id=books.savings.id,
            amount_cents=2_000,
            date=date(2025, 3, 11),
            type=TransferType.internal_transfer,
        )
    )
    assert checking.current_balance_cents == 5_000
    assert books.savings.current_balance_cents == 2_000

    refund = RefundService(session).create_refund(
        RefundIn(
            transaction_id=txn.id,
            amount_cents=1_000,
            refund_date=date(2025, 3, 12),
            fatura_month="2025-03",
        )
    )
    assert txn.refunded_amount_cents == 1_000
    assert checking.current_balance_cents == 5_000

    IncomeService(session).mark_received(refund.id)
    assert checking.current_balance_cents == 6_000


def test_sync_is_idempotent(session, books) -> None:
    IncomeService(session).create(income(books, 4_200))
    ExpenseService(session).create(expense(books, 1_234))
    first = sync_account_balance(session, 1, books.checking.id)
    second = sync_account_balance(session, 1, books.checking.id)
    assert first == second == 2_966


def test_pending_income_is_excluded_but_unpaid_expenses_count(session, books) -> None:
    incomes = IncomeService(session)
    pending = incomes.create(income(books, 5_000, received=False))
    ExpenseService(session).create(expense(books, 800))
    assert books.checking.current_balance_cents == -800

    incomes.mark_received(pending.id)
    assert books.checking.current_balance_cents == 4_200
    incomes.mark_pending(pending.id)
    assert books.checking.current_balance_cents == -800


def test_moving_an_expense_resyncs_both_accounts(session, books) -> None:
    expenses = ExpenseService(session)
    txn = expenses.create(expense(books, 1_500))
    assert books.checking.current_balance_cents == -1_500

    expenses.update(txn.id, expense(books, 1_500, account=books.savings))
    assert books.checking.current_balance_cents == 0
    assert books.savings.current_balance_cents == -1_500


def test_ignored_rows_do_not_count(session, books) -> None:
    expenses = ExpenseService(session)
    txn = expenses.create(expense(books, 900))
    transfer = TransferService(session).create(
        TransferIn(
            to_account_id=books.checking.id,
            amount_cents=300,
            date=date(2025, 3, 1),
            type=TransferType.deposit,
        )
    )
    assert books.checking.current_balance_cents == -600

    assert expenses.toggle_ignore(txn.id) is True
    assert books.checking.current_balance_cents == 300
    assert TransferService(session).toggle_ignore(transfer.id) is True
    assert books.checking.current_balance_cents == 0
    assert expenses.toggle_ignore(txn.id) is False
    assert books.checking.current_balance_cents == -900


def test_failed_sync_rolls_back_the_whole_mutation(session, books, monkeypatch) -> None:
    def boom(*args, **kwargs):
        raise RuntimeError("database went away")

    monkeypatch.setattr(services, "sync_account_balance", boom)
    with pytest.raises(RuntimeError):
        ExpenseService(session).create(expense(books, 700))

    assert session.scalar(select(func.count(Transaction.id))) == 0
    session.refresh(books.checking)
    assert books.checking.current_balance_cents == 0


def test_drift_is_detected_and_repaired(session, books) -> None:
    IncomeService(session).create(income(books, 1_000))
    account = session.get(Account, books.checking.id)
    account.current_balance_cents = 999_999
    session.commit()

    check = ReconciliationService(session).check_consistency(account.id)
    assert not check.consistent
    assert check.computed_cents == 1_000
    assert check.delta_cents == 998_999

    result = reconcile_all_account_balances(session)
    assert result == {"users": 1, "accounts": 3}
    assert ReconciliationService(session).check_consistency(account.id).consistent


def _random_step(rng, session, books, state) -> None:
    accounts = [books.checking, books.savings, books.card]
    expenses = ExpenseService(session)
    incomes = IncomeService(session)
    op = rng.choice(
        ["expense", "expense", "income", "transfer", "refund", "ignore", "receive",
         "delete_refund", "update_expense", "delete_expense"]
    )
    if op == "expense" or not state["transactions"]:
        txn = expenses.create(
            expense(
                books,
                rng.randint(1, 50_000),
                account=rng.choice(accounts),
                day=date(2025, rng.randint(1, 12), rng.randint(1, 28)),
                installments=rng.choice([1, 1, 2, 3, 12]),
            )
        )
        state["transactions"].append(txn.id)
    elif op == "income":
        created = incomes.create(
            income(
                books,
                rng.randint(1, 80_000),
                received=rng.random() < 0.7,
                account=rng.choice(accounts[:2]),
            )
        )
        state["incomes"].append(created.id)
    elif op == "transfer":
        source, target = rng.sample(accounts, 2)
        TransferService(session).create(
            TransferIn(
                from_account_id=source.id,
                to_account_id=target.id,
                amount_cents=rng.randint(1, 20_000),
                date=date(2025, rng.randint(1, 12), 1),
                type=TransferType.internal_transfer,
            )
        )
    elif op == "refund":
        txn = expenses.get(rng.choice(state["transactions"]))
        remaining = txn.total_amount_cents - txn.refunded_amount_cents
        if remaining > 0:
            refund = RefundService(session).create_refund(
                RefundIn(
                    transaction_id=txn.id,
                    amount_cents=rng.randint(1, remaining),
                    refund_date=date(2025, 6, 1),
                    fatura_month=txn.entries[0].fatura_month,
                )
            )
            state["incomes"].append(refund.id)
    elif op == "ignore":
        expenses.toggle_ignore(rng.choice(state["transactions"]))
    elif op == "receive" and state["incomes"]:
        income_id = rng.choice(state["incomes"])
        if rng.random() < 0.5:
            incomes.mark_received(income_id)
        else:
            incomes.mark_pending(income_id)
    elif op == "delete_refund":
        refunds = [i for i in state["incomes"] if incomes.get(i).is_refund]
        if refunds:
            income_id = rng.choice(refunds)
            RefundService(session).delete_refund(income_id)
            state["incomes"].remove(income_id)
    elif op == "update_expense":
        txn = expenses.get(rng.choice(state["transactions"]))
        expenses.update(
            txn.id,
            expense(
                books,
                txn.refunded_amount_cents + rng.randint(1, 10_000),
                account=rng.choice(accounts),
                installments=rng.choice([1, 2, 4]),
            ),
        )
    elif op == "delete_expense":
        txn_id = rng.choice(state["transactions"])
        if not RefundService(session).list_for_transaction(txn_id):
            expenses.delete(txn_id)
            state["transactions"].remove(txn_id)


@pytest.mark.parametrize("seed", [1, 7, 42, 2025])
def test_random_operation_sequences_never_drift(session, books, seed) -> None:
    rng = random.Random(seed)
    state = {"transactions": [], "incomes": []}
    checker = ReconciliationService(session)
    for _ in range(60):
        _random_step(rng, session, books, state)
        for account in (books.checking, books.savings, books.card):
            check = checker.check_consistency(account.id)
            assert check.consistent, (seed, check)
