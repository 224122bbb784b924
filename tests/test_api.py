import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from main import app, get_db


@pytest.fixture
def client():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestingSession = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def override_get_db():
        db = TestingSession()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    # not entered as a context manager, so the scheduler never starts
    yield TestClient(app)
    app.dependency_overrides.clear()


def _setup(client):
    checking = client.post("/api/accounts", json={"name": "Checking", "type": "checking"}).json()
    card = client.post(
        "/api/accounts",
        json={"name": "Card", "type": "credit_card", "closing_day": 15, "payment_due_day": 22},
    ).json()
    food = client.post("/api/categories", json={"name": "Food", "type": "expense"}).json()
    salary = client.post("/api/categories", json={"name": "Salary", "type": "income"}).json()
    return checking, card, food, salary


def test_statement_payment_flow(client) -> None:
    checking, card, food, _salary = _setup(client)
    response = client.post(
        "/api/expenses",
        json={
            "total_amount_cents": 2_000,
            "category_id": food["id"],
            "account_id": card["id"],
            "purchase_date": "2025-03-14",
        },
    )
    assert response.status_code == 200
    assert response.json()["entries"][0]["fatura_month"] == "2025-03"

    [fatura] = client.get("/api/faturas", params={"month": "2025-03"}).json()
    assert fatura["total_amount_cents"] == 2_000
    assert fatura["due_date"] == "2025-03-22"

    paid = client.post(
        f"/api/faturas/{fatura['id']}/pay",
        json={"from_account_id": checking["id"], "paid_on": "2025-03-25"},
    )
    assert paid.status_code == 200

    [transfer] = client.get("/api/transfers").json()
    assert transfer["locked"] is True
    assert client.delete(f"/api/transfers/{transfer['id']}").status_code == 409

    accounts = {a["name"]: a for a in client.get("/api/accounts").json()}
    assert accounts["Checking"]["current_balance_cents"] == -2_000
    assert accounts["Card"]["current_balance_cents"] == 0

    consistency = client.get(f"/api/accounts/{checking['id']}/consistency").json()
    assert consistency["consistent"] is True


def test_refund_errors_map_to_status_codes(client) -> None:
    checking, _card, food, _salary = _setup(client)
    txn = client.post(
        "/api/expenses",
        json={
            "total_amount_cents": 500,
            "category_id": food["id"],
            "account_id": checking["id"],
            "purchase_date": "2025-03-01",
        },
    ).json()

    body = {
        "transaction_id": txn["id"],
        "amount_cents": 500,
        "refund_date": "2025-03-02",
        "fatura_month": "2025-03",
    }
    assert client.post("/api/refunds", json=body).status_code == 200
    assert client.post("/api/refunds", json={**body, "amount_cents": 1}).status_code == 409
    assert client.post("/api/refunds", json={**body, "amount_cents": 1.5}).status_code == 400
    assert client.post("/api/refunds", json={**body, "transaction_id": 999}).status_code == 404


def test_maintenance_endpoints(client) -> None:
    _setup(client)
    assert client.post("/api/admin/backfill-fatura-transfers").json() == {"created": 0}
    assert client.post("/api/admin/backfill-faturas").json() == {"created": 0}
    assert client.post("/api/admin/reconcile-balances").json() == {"users": 1, "accounts": 2}
