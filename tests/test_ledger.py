from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from ledger import BalanceLedger, LedgerWriteError, signed_amount
from models import RecurringInterval, TransactionType, User
from schemas import AccountIn, TransactionIn
from services import AccountService, TransactionService


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session) -> User:
    user = User(external_id="user_1", email="ravi@example.com", name="Ravi")
    session.add(user)
    session.commit()
    return user


def expense(account_id: int, amount_cents: int, **overrides) -> TransactionIn:
    fields = dict(
        account_id=account_id,
        type=TransactionType.expense,
        amount_cents=amount_cents,
        description="Groceries",
        date=date(2025, 3, 10),
        category="groceries",
    )
    fields.update(overrides)
    return TransactionIn(**fields)


def test_signed_amount():
    assert signed_amount(TransactionType.expense, 200) == -200
    assert signed_amount(TransactionType.income, 200) == 200


def test_create_then_edit_adjusts_by_difference():
    session = make_session()
    user = make_user(session)
    account = AccountService(session, user.id).create(
        AccountIn(name="Main", opening_balance_cents=100_000)
    )
    txns = TransactionService(session, user.id)

    txn = txns.create(expense(account.id, 20_000))
    session.refresh(account)
    assert account.balance_cents == 80_000

    txns.update(txn.id, expense(account.id, 30_000))
    session.refresh(account)
    assert account.balance_cents == 70_000

    txns.update(txn.id, expense(account.id, 30_000, type=TransactionType.income))
    session.refresh(account)
    assert account.balance_cents == 130_000


def test_balance_matches_computed_after_every_operation():
    session = make_session()
    user = make_user(session)
    accounts = AccountService(session, user.id)
    main = accounts.create(AccountIn(name="Main", opening_balance_cents=5_000))
    savings = accounts.create(AccountIn(name="Savings"))
    txns = TransactionService(session, user.id)
    ledger = BalanceLedger(session)

    def assert_invariant():
        for account in (main, savings):
            session.refresh(account)
            assert account.balance_cents == ledger.computed_balance(account.id)

    a = txns.create(expense(main.id, 1_250))
    b = txns.create(expense(main.id, 40_000, type=TransactionType.income, category="salary"))
    c = txns.create(expense(savings.id, 999))
    assert_invariant()

    txns.update(a.id, expense(savings.id, 2_000))
    assert_invariant()

    changes = txns.bulk_delete([b.id, c.id])
    assert changes == {main.id: -40_000, savings.id: 999}
    assert_invariant()

    session.refresh(main)
    session.refresh(savings)
    assert main.balance_cents == 5_000
    assert savings.balance_cents == -2_000


def test_bulk_delete_ignores_other_users_transactions():
    session = make_session()
    owner = make_user(session)
    other = User(external_id="user_2", email="meera@example.com", name="Meera")
    session.add(other)
    session.commit()
    account = AccountService(session, owner.id).create(AccountIn(name="Main"))
    txn = TransactionService(session, owner.id).create(expense(account.id, 500))

    assert TransactionService(session, other.id).bulk_delete([txn.id]) == {}
    session.refresh(account)
    assert account.balance_cents == -500


def test_recurring_without_interval_is_rejected():
    session = make_session()
    user = make_user(session)
    account = AccountService(session, user.id).create(AccountIn(name="Main"))

    with pytest.raises(ValueError):
        TransactionService(session, user.id).create(expense(account.id, 500, is_recurring=True))

    txn = TransactionService(session, user.id).create(
        expense(
            account.id,
            500,
            is_recurring=True,
            recurring_interval=RecurringInterval.monthly,
            date=date(2024, 1, 31),
        )
    )
    assert txn.next_recurring_date == date(2024, 2, 29)


def test_unknown_account_is_rejected_without_writes():
    session = make_session()
    user = make_user(session)
    account = AccountService(session, user.id).create(AccountIn(name="Main"))

    with pytest.raises(ValueError, match="Account not found"):
        TransactionService(session, user.id).create(expense(account.id + 100, 500))
    with pytest.raises(ValueError, match="Account not found"):
        BalanceLedger(session).apply_delta(account.id + 100, 10)


def test_atomic_rolls_back_and_wraps_database_errors():
    session = make_session()
    user = make_user(session)
    account = AccountService(session, user.id).create(AccountIn(name="Main"))
    ledger = BalanceLedger(session)

    with pytest.raises(LedgerWriteError):
        with ledger.atomic():
            ledger.apply_delta(account.id, -700)
            session.add(User(external_id="user_1", email="dupe@example.com"))
            session.flush()

    session.refresh(account)
    assert account.balance_cents == 0
