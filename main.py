from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from config import get_settings
from database import SessionLocal
from models import Account, Category, Entry, Fatura, Income, Transaction, Transfer
from periods import current_year_month
from scheduler import SchedulerManager
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
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ConstraintViolation,
    ExpenseService,
    FaturaService,
    IncomeService,
    RecordNotFound,
    ReconciliationService,
    RefundService,
    TransferService,
    reconcile_all_account_balances,
)

app = FastAPI(title="Contas")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


scheduler_manager = SchedulerManager()


@app.on_event("startup")
def startup_event():
    if get_settings().scheduler_enabled:
        scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    scheduler_manager.stop()


@app.exception_handler(RequestValidationError)
def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400, content={"detail": jsonable_encoder(exc.errors())}
    )


def http_error(exc: ValueError) -> HTTPException:
    if isinstance(exc, RecordNotFound):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConstraintViolation):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def account_json(account: Account) -> dict:
    return {
        "id": account.id,
        "name": account.name,
        "type": account.type.value,
        "current_balance_cents": account.current_balance_cents,
        "balance_updated_at": _iso(account.balance_updated_at),
        "closing_day": account.closing_day,
        "payment_due_day": account.payment_due_day,
        "credit_limit_cents": account.credit_limit_cents,
    }


def category_json(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "type": category.type.value,
        "color": category.color,
    }


def entry_json(entry: Entry) -> dict:
    return {
        "id": entry.id,
        "transaction_id": entry.transaction_id,
        "account_id": entry.account_id,
        "amount_cents": entry.amount_cents,
        "purchase_date": entry.purchase_date.isoformat(),
        "fatura_month": entry.fatura_month,
        "due_date": entry.due_date.isoformat(),
        "paid_at": _iso(entry.paid_at),
        "installment_number": entry.installment_number,
    }


def transaction_json(txn: Transaction) -> dict:
    return {
        "id": txn.id,
        "description": txn.description,
        "total_amount_cents": txn.total_amount_cents,
        "total_installments": txn.total_installments,
        "category_id": txn.category_id,
        "refunded_amount_cents": txn.refunded_amount_cents,
        "ignored": txn.ignored,
        "entries": [entry_json(entry) for entry in txn.entries],
    }


def income_json(income: Income) -> dict:
    return {
        "id": income.id,
        "description": income.description,
        "amount_cents": income.amount_cents,
        "category_id": income.category_id,
        "account_id": income.account_id,
        "received_date": income.received_date.isoformat(),
        "received_at": _iso(income.received_at),
        "ignored": income.ignored,
        "replenish_category_id": income.replenish_category_id,
        "refund_of_transaction_id": income.refund_of_transaction_id,
        "fatura_month": income.fatura_month,
    }


def transfer_json(transfer: Transfer) -> dict:
    return {
        "id": transfer.id,
        "from_account_id": transfer.from_account_id,
        "to_account_id": transfer.to_account_id,
        "amount_cents": transfer.amount_cents,
        "date": transfer.date.isoformat(),
        "type": transfer.type.value,
        "fatura_id": transfer.fatura_id,
        "description": transfer.description,
        "ignored": transfer.ignored,
        "locked": transfer.is_locked,
    }


def fatura_json(fatura: Fatura) -> dict:
    return {
        "id": fatura.id,
        "account_id": fatura.account_id,
        "year_month": fatura.year_month,
        "closing_date": fatura.closing_date.isoformat(),
        "due_date": fatura.due_date.isoformat(),
        "total_amount_cents": fatura.total_amount_cents,
        "paid_at": _iso(fatura.paid_at),
        "paid_from_account_id": fatura.paid_from_account_id,
    }


# Accounts


@app.get("/api/accounts")
def api_accounts(db: Session = Depends(get_db)):
    return [account_json(account) for account in AccountService(db).list_all()]


@app.post("/api/accounts")
def api_create_account(payload: AccountIn, db: Session = Depends(get_db)):
    try:
        account = AccountService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_json(account)


@app.put("/api/accounts/{account_id}")
def api_update_account(
    account_id: int, payload: AccountIn, db: Session = Depends(get_db)
):
    try:
        account = AccountService(db).update(account_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return account_json(account)


@app.delete("/api/accounts/{account_id}")
def api_delete_account(account_id: int, db: Session = Depends(get_db)):
    try:
        AccountService(db).delete(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": account_id}


@app.get("/api/accounts/{account_id}/consistency")
def api_account_consistency(account_id: int, db: Session = Depends(get_db)):
    try:
        check = ReconciliationService(db).check_consistency(account_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "account_id": check.account_id,
        "cached_cents": check.cached_cents,
        "computed_cents": check.computed_cents,
        "delta_cents": check.delta_cents,
        "consistent": check.consistent,
    }


@app.get("/api/accounts/{account_id}/faturas")
def api_account_faturas(account_id: int, db: Session = Depends(get_db)):
    return [fatura_json(f) for f in FaturaService(db).list_for_account(account_id)]


# Categories


@app.get("/api/categories")
def api_categories(db: Session = Depends(get_db)):
    return [category_json(category) for category in CategoryService(db).list_all()]


@app.post("/api/categories")
def api_create_category(payload: CategoryIn, db: Session = Depends(get_db)):
    try:
        category = CategoryService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return category_json(category)


# Expenses


@app.get("/api/expenses")
def api_expenses(
    month: Optional[str] = None,
    account_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        entries = ExpenseService(db).list_for_month(
            month or current_year_month(), account_id
        )
    except ValueError as exc:
        raise http_error(exc) from exc
    return [entry_json(entry) for entry in entries]


@app.post("/api/expenses")
def api_create_expense(payload: ExpenseIn, db: Session = Depends(get_db)):
    try:
        txn = ExpenseService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_json(txn)


@app.put("/api/expenses/{transaction_id}")
def api_update_expense(
    transaction_id: int, payload: ExpenseIn, db: Session = Depends(get_db)
):
    try:
        txn = ExpenseService(db).update(transaction_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transaction_json(txn)


@app.delete("/api/expenses/{transaction_id}")
def api_delete_expense(transaction_id: int, db: Session = Depends(get_db)):
    try:
        ExpenseService(db).delete(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": transaction_id}


@app.post("/api/entries/{entry_id}/paid")
def api_entry_paid(entry_id: int, db: Session = Depends(get_db)):
    try:
        entry = ExpenseService(db).mark_entry_paid(entry_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return entry_json(entry)


@app.post("/api/entries/{entry_id}/pending")
def api_entry_pending(entry_id: int, db: Session = Depends(get_db)):
    try:
        entry = ExpenseService(db).mark_entry_pending(entry_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return entry_json(entry)


@app.post("/api/expenses/{transaction_id}/ignore")
def api_toggle_expense_ignore(transaction_id: int, db: Session = Depends(get_db)):
    try:
        ignored = ExpenseService(db).toggle_ignore(transaction_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"id": transaction_id, "ignored": ignored}


# Income


@app.get("/api/income")
def api_income(month: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        items = IncomeService(db).list_for_month(month or current_year_month())
    except ValueError as exc:
        raise http_error(exc) from exc
    return [income_json(income) for income in items]


@app.post("/api/income")
def api_create_income(payload: IncomeIn, db: Session = Depends(get_db)):
    try:
        income = IncomeService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return income_json(income)


@app.put("/api/income/{income_id}")
def api_update_income(income_id: int, payload: IncomeIn, db: Session = Depends(get_db)):
    try:
        income = IncomeService(db).update(income_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return income_json(income)


@app.delete("/api/income/{income_id}")
def api_delete_income(income_id: int, db: Session = Depends(get_db)):
    try:
        IncomeService(db).delete(income_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": income_id}


@app.post("/api/income/{income_id}/received")
def api_income_received(income_id: int, db: Session = Depends(get_db)):
    try:
        income = IncomeService(db).mark_received(income_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return income_json(income)


@app.post("/api/income/{income_id}/pending")
def api_income_pending(income_id: int, db: Session = Depends(get_db)):
    try:
        income = IncomeService(db).mark_pending(income_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return income_json(income)


# Transfers


@app.get("/api/transfers")
def api_transfers(
    account_id: Optional[int] = None,
    month: Optional[str] = None,
    db: Session = Depends(get_db),
):
    try:
        transfers = TransferService(db).list(account_id=account_id, year_month=month)
    except ValueError as exc:
        raise http_error(exc) from exc
    return [transfer_json(transfer) for transfer in transfers]


@app.post("/api/transfers")
def api_create_transfer(payload: TransferIn, db: Session = Depends(get_db)):
    try:
        transfer = TransferService(db).create(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transfer_json(transfer)


@app.put("/api/transfers/{transfer_id}")
def api_update_transfer(
    transfer_id: int, payload: TransferIn, db: Session = Depends(get_db)
):
    try:
        transfer = TransferService(db).update(transfer_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return transfer_json(transfer)


@app.delete("/api/transfers/{transfer_id}")
def api_delete_transfer(transfer_id: int, db: Session = Depends(get_db)):
    try:
        TransferService(db).delete(transfer_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": transfer_id}


@app.post("/api/transfers/{transfer_id}/ignore")
def api_toggle_transfer_ignore(transfer_id: int, db: Session = Depends(get_db)):
    try:
        ignored = TransferService(db).toggle_ignore(transfer_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"id": transfer_id, "ignored": ignored}


# Refunds


@app.post("/api/refunds")
def api_create_refund(payload: RefundIn, db: Session = Depends(get_db)):
    try:
        refund = RefundService(db).create_refund(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return income_json(refund)


@app.delete("/api/refunds/{income_id}")
def api_delete_refund(income_id: int, db: Session = Depends(get_db)):
    try:
        RefundService(db).delete_refund(income_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {"deleted": income_id}


# Faturas


@app.get("/api/faturas")
def api_faturas(month: Optional[str] = None, db: Session = Depends(get_db)):
    service = FaturaService(db)
    try:
        faturas = service.list_for_month(month) if month else service.unpaid()
    except ValueError as exc:
        raise http_error(exc) from exc
    return [fatura_json(fatura) for fatura in faturas]


@app.get("/api/faturas/{fatura_id}")
def api_fatura_detail(fatura_id: int, db: Session = Depends(get_db)):
    try:
        fatura, entries = FaturaService(db).get_with_entries(fatura_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    data = fatura_json(fatura)
    data["entries"] = [entry_json(entry) for entry in entries]
    return data


@app.post("/api/faturas/{fatura_id}/pay")
def api_pay_fatura(
    fatura_id: int, payload: FaturaPaymentIn, db: Session = Depends(get_db)
):
    try:
        fatura = FaturaService(db).pay(fatura_id, payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return fatura_json(fatura)


@app.post("/api/accounts/{account_id}/faturas/{year_month}/recompute")
def api_recompute_fatura(account_id: int, year_month: str, db: Session = Depends(get_db)):
    try:
        fatura = FaturaService(db).recompute(account_id, year_month)
    except ValueError as exc:
        raise http_error(exc) from exc
    return fatura_json(fatura)


@app.post("/api/faturas/{fatura_id}/unpay")
def api_unpay_fatura(fatura_id: int, db: Session = Depends(get_db)):
    try:
        fatura = FaturaService(db).mark_unpaid(fatura_id)
    except ValueError as exc:
        raise http_error(exc) from exc
    return fatura_json(fatura)


# Budgets


@app.put("/api/budgets")
def api_upsert_budget(payload: BudgetIn, db: Session = Depends(get_db)):
    try:
        budget = BudgetService(db).upsert(payload)
    except ValueError as exc:
        raise http_error(exc) from exc
    return {
        "id": budget.id,
        "category_id": budget.category_id,
        "year_month": budget.year_month,
        "amount_cents": budget.amount_cents,
    }


@app.get("/api/budgets/progress")
def api_budget_progress(month: Optional[str] = None, db: Session = Depends(get_db)):
    try:
        progress = BudgetService(db).progress_for_month(month or current_year_month())
    except ValueError as exc:
        raise http_error(exc) from exc
    return [
        {
            "category_id": item.category_id,
            "category": item.category_name,
            "budget_cents": item.budget_cents,
            "spent_cents": item.spent_cents,
            "replenished_cents": item.replenished_cents,
            "net_spent_cents": item.net_spent_cents,
            "remaining_cents": item.remaining_cents,
            "alert_threshold": item.alert_threshold,
        }
        for item in progress
    ]


# Maintenance


@app.post("/api/admin/backfill-faturas")
def api_backfill_faturas(db: Session = Depends(get_db)):
    return FaturaService(db).backfill_faturas()


@app.post("/api/admin/backfill-fatura-transfers")
def api_backfill_fatura_transfers(db: Session = Depends(get_db)):
    return ReconciliationService(db).backfill_fatura_transfers()


@app.post("/api/admin/reconcile-balances")
def api_reconcile_balances(db: Session = Depends(get_db)):
    return reconcile_all_account_balances(db)


@app.get("/healthz")
def healthz():
    return {"status": "ok", "date": date.today().isoformat()}
