from datetime import date, datetime

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from budget_alerts import BudgetAlertEvaluator, is_new_month
from database import Base
from models import Account, AccountType, Budget, Transaction, TransactionType, User
from notifications import SendResult


NOW = datetime(2025, 6, 20, 6, 0)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


class FakeMailer:
    def __init__(self, success=True):
        self.success = success
        self.sent = []

    def send_email(self, to, subject, html):
        self.sent.append((to, subject, html))
        return SendResult(success=self.success, error=None if self.success else "smtp down")


class FakeMessenger:
    def __init__(self):
        self.sent = []

    def send_message(self, to, body):
        self.sent.append((to, body))
        return SendResult(success=True, info="SM123")


def seed(session, *, spent=85_000, last_alert_sent=None, default=True, phone="+0000000000"):
    user = User(external_id="u1", email="neha@example.com", name="Neha", phone_number=phone)
    session.add(user)
    session.flush()
    account = Account(
        user_id=user.id, name="Everyday", type=AccountType.current, is_default=default
    )
    session.add(account)
    session.flush()
    session.add(
        Transaction(
            user_id=user.id,
            account_id=account.id,
            type=TransactionType.expense,
            amount_cents=spent,
            date=date(2025, 6, 5),
            occurred_at=datetime(2025, 6, 5, 12, 0),
            category="shopping",
        )
    )
    budget = Budget(user_id=user.id, amount_cents=100_000, last_alert_sent=last_alert_sent)
    session.add(budget)
    session.commit()
    return user, account, budget


def test_is_new_month():
    assert is_new_month(datetime(2025, 5, 31, 23, 0), NOW)
    assert is_new_month(datetime(2024, 12, 1), datetime(2025, 1, 1))
    assert not is_new_month(datetime(2025, 6, 1), NOW)


def test_alert_sent_when_last_alert_was_last_month():
    session = make_session()
    _, _, budget = seed(session, last_alert_sent=datetime(2025, 5, 28, 6, 0))
    mailer = FakeMailer()

    sent = BudgetAlertEvaluator(session, mailer).evaluate(budget, NOW)

    assert sent is True
    assert len(mailer.sent) == 1
    to, subject, html = mailer.sent[0]
    assert to == "neha@example.com"
    assert subject == "Budget Alert for Everyday"
    assert "85.0%" in html
    session.refresh(budget)
    assert budget.last_alert_sent == NOW


def test_no_second_alert_in_same_month():
    session = make_session()
    _, _, budget = seed(session, last_alert_sent=datetime(2025, 6, 2, 6, 0))
    mailer = FakeMailer()

    assert BudgetAlertEvaluator(session, mailer).evaluate(budget, NOW) is False
    assert mailer.sent == []
    session.refresh(budget)
    assert budget.last_alert_sent == datetime(2025, 6, 2, 6, 0)


def test_below_threshold_and_missing_default_account_are_skipped():
    session = make_session()
    _, _, budget = seed(session, spent=79_000)
    mailer = FakeMailer()
    assert BudgetAlertEvaluator(session, mailer).evaluate(budget, NOW) is False

    session = make_session()
    _, _, budget = seed(session, default=False)
    assert BudgetAlertEvaluator(session, mailer).evaluate(budget, NOW) is False
    assert mailer.sent == []


def test_failed_delivery_leaves_timestamp_for_retry():
    session = make_session()
    _, _, budget = seed(session)

    assert BudgetAlertEvaluator(session, FakeMailer(success=False)).evaluate(budget, NOW) is False
    session.refresh(budget)
    assert budget.last_alert_sent is None


def test_whatsapp_sent_for_registered_phone():
    session = make_session()
    seed(session, phone="+919812345678")
    messenger = FakeMessenger()

    summary = BudgetAlertEvaluator(session, FakeMailer(), messenger).evaluate_all(NOW)

    assert summary == {"checked": 1, "alerts_sent": 1, "failed": 0}
    assert messenger.sent[0][0] == "+919812345678"
    assert "85.0%" in messenger.sent[0][1]
