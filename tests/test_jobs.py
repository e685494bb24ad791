from datetime import date, datetime

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from database import Base
from insights import MONTHLY_FALLBACK, InsightGenerator
from jobs import JobRunner
from models import (
    Account,
    AccountType,
    Budget,
    RecurringInterval,
    Transaction,
    TransactionType,
    User,
)
from notifications import SendResult
from recurrence import RecurringJob


def make_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


class FakeMailer:
    def __init__(self, failing=()):
        self.failing = set(failing)
        self.sent = []

    def send_email(self, to, subject, html):
        if to in self.failing:
            return SendResult(success=False, error="mailbox unavailable")
        self.sent.append((to, subject, html))
        return SendResult(success=True)


class FakeMessenger:
    def __init__(self):
        self.sent = []

    def send_message(self, to, body):
        self.sent.append((to, body))
        return SendResult(success=True)


def seed(factory):
    with factory() as session:
        good = User(
            external_id="u1", email="good@example.com", name="Good", phone_number="+919811111111"
        )
        bad = User(external_id="u2", email="bad@example.com", name="Bad")
        session.add_all([bad, good])
        session.flush()
        accounts = []
        for user in (bad, good):
            account = Account(
                user_id=user.id,
                name="Main",
                type=AccountType.current,
                balance_cents=50_000,
                opening_balance_cents=50_000,
                is_default=True,
            )
            session.add(account)
            accounts.append(account)
        session.flush()
        for user, account in zip((bad, good), accounts):
            session.add(
                Transaction(
                    user_id=user.id,
                    account_id=account.id,
                    type=TransactionType.expense,
                    amount_cents=12_000,
                    description="Internet",
                    date=date(2025, 6, 5),
                    occurred_at=datetime(2025, 6, 5, 9, 0),
                    category="utilities",
                    is_recurring=True,
                    recurring_interval=RecurringInterval.monthly,
                    next_recurring_date=date(2025, 7, 5),
                )
            )
        session.commit()
        return [good.id, bad.id]


def make_runner(factory, mailer=None, messenger=None, dispatch=None):
    return JobRunner(
        factory,
        mailer or FakeMailer(),
        messenger,
        InsightGenerator(None),
        dispatch=dispatch,
    )


def test_monthly_reports_continue_after_one_user_fails():
    factory = make_factory()
    seed(factory)
    mailer = FakeMailer(failing={"bad@example.com"})
    messenger = FakeMessenger()

    summary = make_runner(factory, mailer, messenger).generate_monthly_reports(date(2025, 7, 1))

    assert summary == {"processed": 1, "failed": 1}
    to, subject, html = mailer.sent[0]
    assert to == "good@example.com"
    assert subject == "Your Monthly Financial Report - June 2025"
    assert "₹120.00" in html
    assert MONTHLY_FALLBACK[0] in html
    assert messenger.sent[0][0] == "+919811111111"
    assert "Monthly Report - June 2025" in messenger.sent[0][1]


def test_weekly_insights_cover_previous_seven_days():
    factory = make_factory()
    seed(factory)
    mailer = FakeMailer()

    summary = make_runner(factory, mailer).generate_weekly_insights(date(2025, 6, 9))

    assert summary == {"processed": 2, "failed": 0}
    subjects = {subject for _, subject, _ in mailer.sent}
    assert subjects == {"Your Weekly Financial Summary"}
    assert all("₹120.00" in html for _, _, html in mailer.sent)
    assert all("week of jun 02, 2025" in html for _, _, html in mailer.sent)


def test_recurring_trigger_dispatches_due_batch():
    factory = make_factory()
    seed(factory)
    batches = []

    summary = make_runner(factory, dispatch=batches.append).trigger_recurring_transactions(
        datetime(2025, 7, 5, 0, 0)
    )

    assert summary == {"triggered": 2}
    assert len(batches) == 1
    assert all(isinstance(job, RecurringJob) for job in batches[0])


def test_recurring_processing_is_idempotent():
    factory = make_factory()
    seed(factory)
    runner = make_runner(factory)
    now = datetime(2025, 7, 5, 0, 0)

    assert runner.trigger_recurring_transactions(now) == {"triggered": 2}
    assert runner.trigger_recurring_transactions(now) == {"triggered": 0}

    with factory() as session:
        job = RecurringJob(transaction_id=1, user_id=session.get(Transaction, 1).user_id)
    assert runner.process_recurring_transaction(job, now) is False

    with factory() as session:
        spawned = session.scalars(
            select(Transaction).where(Transaction.origin_transaction_id.is_not(None))
        ).all()
        assert len(spawned) == 2
        balances = [a.balance_cents for a in session.scalars(select(Account))]
        assert balances == [38_000, 38_000]


def test_budget_alert_job_summarises():
    factory = make_factory()
    good_id, _ = seed(factory)
    with factory() as session:
        session.add(Budget(user_id=good_id, amount_cents=10_000))
        session.commit()
    mailer = FakeMailer()

    summary = make_runner(factory, mailer).check_budget_alerts(datetime(2025, 6, 20, 12, 0))

    assert summary == {"checked": 1, "alerts_sent": 1, "failed": 0}
    assert mailer.sent[0][0] == "good@example.com"
