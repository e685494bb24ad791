from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session, joinedload

from database import local_now
from emails import render_email
from models import Account, Budget, Transaction, TransactionType, User
from notifications import Mailer, Messenger
from periods import month_bounds


logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 80.0


def is_new_month(last_alert: datetime, now: datetime) -> bool:
    return (last_alert.year, last_alert.month) < (now.year, now.month)


@dataclass(frozen=True)
class BudgetUsage:
    budget_id: int
    account_name: str
    budget_amount: int
    total_expenses: int

    @property
    def percentage_used(self) -> float:
        return self.total_expenses / self.budget_amount * 100


class BudgetAlertEvaluator:
    def __init__(
        self,
        session: Session,
        mailer: Mailer,
        messenger: Optional[Messenger] = None,
        *,
        threshold: float = DEFAULT_THRESHOLD,
        currency_symbol: str = "₹",
    ) -> None:
        self.session = session
        self.mailer = mailer
        self.messenger = messenger
        self.threshold = threshold
        self.currency_symbol = currency_symbol

    def default_account(self, user_id: int) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(Account.user_id == user_id, Account.is_default.is_(True))
        )

    def usage(self, budget: Budget, account: Account, now: datetime) -> BudgetUsage:
        start, end = month_bounds(now.date())
        spent = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == budget.user_id,
                Transaction.account_id == account.id,
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
            )
        ).scalar_one()
        return BudgetUsage(
            budget_id=budget.id,
            account_name=account.name,
            budget_amount=budget.amount_cents,
            total_expenses=int(spent or 0),
        )

    def evaluate(self, budget: Budget, now: Optional[datetime] = None) -> bool:
        """Send this month's alert for ``budget`` if it is due; True when sent."""
        now = now or local_now()
        if budget.amount_cents <= 0:
            logger.warning(f"budget_alert_skip: budget_id={budget.id} reason=non_positive_amount")
            return False
        account = self.default_account(budget.user_id)
        if account is None:
            logger.info(f"budget_alert_skip: budget_id={budget.id} reason=no_default_account")
            return False

        usage = self.usage(budget, account, now)
        if usage.percentage_used < self.threshold:
            return False
        if budget.last_alert_sent is not None and not is_new_month(
            budget.last_alert_sent, now
        ):
            return False

        if not self._notify(budget.user, usage):
            return False
        budget.last_alert_sent = now
        self.session.commit()
        logger.info(
            f"budget_alert_sent: budget_id={budget.id} "
            f"percentage_used={usage.percentage_used:.1f}"
        )
        return True

    def evaluate_all(self, now: Optional[datetime] = None) -> dict[str, int]:
        now = now or local_now()
        budgets = self.session.scalars(
            select(Budget).options(joinedload(Budget.user)).order_by(Budget.id)
        ).all()
        sent = 0
        failed = 0
        for budget in budgets:
            try:
                if self.evaluate(budget, now):
                    sent += 1
            except Exception:
                self.session.rollback()
                failed += 1
                logger.exception(f"budget_alert_failed: budget_id={budget.id}")
        return {"checked": len(budgets), "alerts_sent": sent, "failed": failed}

    def _notify(self, user: User, usage: BudgetUsage) -> bool:
        html = render_email(
            "budget-alert",
            user_name=user.name,
            currency_symbol=self.currency_symbol,
            percentage_used=usage.percentage_used,
            budget_amount=usage.budget_amount,
            total_expenses=usage.total_expenses,
            account_name=usage.account_name,
        )
        result = self.mailer.send_email(
            user.email, f"Budget Alert for {usage.account_name}", html
        )
        delivered = result.success

        if self.messenger is not None and user.has_real_phone:
            text = (
                f"⚠️ *Budget Alert*\n\n"
                f"You've used {usage.percentage_used:.1f}% of your monthly budget "
                f"on {usage.account_name}."
            )
            delivered = self.messenger.send_message(user.phone_number, text).success or delivered
        return delivered
