from datetime import date, datetime

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Account, Transaction, TransactionType, User
from schemas import AccountIn, BudgetIn, TransactionIn
from services import (
    AccountDeletionError,
    AccountService,
    BudgetService,
    TransactionService,
    UserService,
)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session) -> User:
    return UserService(session).get_or_create("user_1", email="kiran@example.com", name="Kiran")


def defaults(session, user_id: int) -> list[str]:
    return [
        a.name
        for a in session.scalars(
            select(Account).where(Account.user_id == user_id, Account.is_default.is_(True))
        )
    ]


def test_first_account_is_always_default():
    session = make_session()
    user = make_user(session)
    service = AccountService(session, user.id)

    first = service.create(AccountIn(name="Wallet", is_default=False))
    second = service.create(AccountIn(name="Savings"))

    assert first.is_default is True
    assert second.is_default is False
    assert defaults(session, user.id) == ["Wallet"]


def test_new_default_replaces_previous():
    session = make_session()
    user = make_user(session)
    service = AccountService(session, user.id)
    service.create(AccountIn(name="Wallet"))
    service.create(AccountIn(name="Bank", is_default=True))
    assert defaults(session, user.id) == ["Bank"]

    wallet = session.scalar(select(Account).where(Account.name == "Wallet"))
    service.set_default(wallet.id)
    assert defaults(session, user.id) == ["Wallet"]


def test_cannot_delete_only_account():
    session = make_session()
    user = make_user(session)
    service = AccountService(session, user.id)
    account = service.create(AccountIn(name="Wallet"))

    with pytest.raises(AccountDeletionError):
        service.delete(account.id)
    assert session.get(Account, account.id) is not None


def test_deleting_default_promotes_oldest_and_removes_transactions():
    session = make_session()
    user = make_user(session)
    service = AccountService(session, user.id)
    wallet = service.create(AccountIn(name="Wallet"))
    bank = service.create(AccountIn(name="Bank"))
    service.create(AccountIn(name="Cash"))
    TransactionService(session, user.id).create(
        TransactionIn(
            account_id=wallet.id,
            type=TransactionType.expense,
            amount_cents=1_000,
            date=date(2025, 1, 5),
            category="food",
        )
    )

    service.delete(wallet.id)

    assert session.get(Account, wallet.id) is None
    assert session.scalars(select(Transaction)).all() == []
    assert defaults(session, user.id) == [bank.name]


def test_foreign_account_is_not_found():
    session = make_session()
    owner = make_user(session)
    intruder = UserService(session).get_or_create("user_2", email="x@example.com")
    account = AccountService(session, owner.id).create(AccountIn(name="Wallet"))

    with pytest.raises(ValueError, match="Account not found"):
        AccountService(session, intruder.id).get(account.id)


def test_user_get_or_create_and_phone_registration():
    session = make_session()
    users = UserService(session)
    user = users.get_or_create("user_1", email="kiran@example.com", name="  ")
    assert users.get_or_create("user_1", email="other@example.com").id == user.id
    assert user.name == "User"
    assert user.has_real_phone is False

    assert users.update_phone(user.id, "+919876543210") is True
    assert users.update_phone(user.id, "+919876543211") is False
    assert users.find_by_phone("+919876543211").id == user.id


def test_budget_upsert_and_current_spend():
    session = make_session()
    user = make_user(session)
    account = AccountService(session, user.id).create(AccountIn(name="Wallet"))
    budgets = BudgetService(session, user.id)

    assert budgets.get() is None
    budgets.upsert(BudgetIn(amount_cents=50_000))
    budget = budgets.upsert(BudgetIn(amount_cents=60_000))
    assert budget.amount_cents == 60_000

    txns = TransactionService(session, user.id)
    for day, amount in ((date(2025, 4, 2), 1_500), (date(2025, 3, 30), 9_999)):
        txns.create(
            TransactionIn(
                account_id=account.id,
                type=TransactionType.expense,
                amount_cents=amount,
                date=day,
                category="food",
            )
        )

    summary = budgets.current(now=datetime(2025, 4, 15, 10, 0))
    assert summary.budget.id == budget.id
    assert summary.current_expenses == 1_500
