from dataclasses import dataclass

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from database import Base
from models import Account, AccountType, Category, CategoryType
from schemas import AccountIn, CategoryIn
from services import AccountService, CategoryService


def make_session() -> Session:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


@dataclass
class Books:
    checking: Account
    savings: Account
    card: Account
    food: Category
    travel: Category
    salary: Category


@pytest.fixture
def session():
    session = make_session()
    yield session
    session.close()


@pytest.fixture
def books(session) -> Books:
    accounts = AccountService(session)
    categories = CategoryService(session)
    return Books(
        checking=accounts.create(AccountIn(name="Checking", type=AccountType.checking)),
        savings=accounts.create(AccountIn(name="Savings", type=AccountType.savings)),
        card=accounts.create(
            AccountIn(
                name="Card",
                type=AccountType.credit_card,
                closing_day=15,
                payment_due_day=22,
            )
        ),
        food=categories.create(CategoryIn(name="Food", type=CategoryType.expense)),
        travel=categories.create(CategoryIn(name="Travel", type=CategoryType.expense)),
        salary=categories.create(CategoryIn(name="Salary", type=CategoryType.income)),
    )
