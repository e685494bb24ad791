from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from database import local_now
from ledger import BalanceLedger
from models import RecurringInterval, Transaction, TransactionStatus


logger = logging.getLogger(__name__)

RECURRING_SUFFIX = " (Recurring)"


@dataclass(frozen=True)
class RecurringJob:
    transaction_id: int
    user_id: int

    @property
    def key(self) -> str:
        return f"recurring:{self.transaction_id}:{self.user_id}"


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    day = min(base.day, days_in_month(year, month))
    return date(year, month, day)


def calculate_next_date(from_date: date, interval: RecurringInterval) -> date:
    if interval == RecurringInterval.daily:
        return from_date + timedelta(days=1)
    if interval == RecurringInterval.weekly:
        return from_date + timedelta(weeks=1)
    if interval == RecurringInterval.monthly:
        return _add_months(from_date, 1)
    if interval == RecurringInterval.yearly:
        return _add_months(from_date, 12)
    raise ValueError(f"Unsupported recurring interval: {interval}")


def is_due(txn: Transaction, now: datetime) -> bool:
    if txn.last_processed is None:
        return True
    if txn.next_recurring_date is None:
        return False
    return txn.next_recurring_date <= now.date()


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session
        self.ledger = BalanceLedger(session)

    def find_due(self, now: Optional[datetime] = None) -> list[RecurringJob]:
        now = now or local_now()
        stmt = (
            select(Transaction.id, Transaction.user_id)
            .where(
                Transaction.is_recurring.is_(True),
                Transaction.status == TransactionStatus.completed,
                or_(
                    Transaction.last_processed.is_(None),
                    Transaction.next_recurring_date <= now.date(),
                ),
            )
            .order_by(Transaction.user_id, Transaction.id)
        )
        return [
            RecurringJob(transaction_id=row.id, user_id=row.user_id)
            for row in self.session.execute(stmt)
        ]

    def process(
        self, transaction_id: int, user_id: int, now: Optional[datetime] = None
    ) -> Optional[Transaction]:
        now = now or local_now()
        template = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == user_id,
            )
        )
        if not template or not template.is_recurring:
            return None
        if template.status != TransactionStatus.completed:
            return None
        if not is_due(template, now):
            return None
        if template.recurring_interval is None:
            logger.warning(
                f"recurring_skip: transaction_id={template.id} reason=missing_interval"
            )
            return None

        with self.ledger.atomic():
            spawned = Transaction(
                user_id=template.user_id,
                account_id=template.account_id,
                type=template.type,
                amount_cents=template.amount_cents,
                description=f"{template.description or template.category}{RECURRING_SUFFIX}",
                date=now.date(),
                occurred_at=now,
                category=template.category,
                is_recurring=False,
                status=TransactionStatus.completed,
                origin_transaction_id=template.id,
            )
            self.ledger.record(spawned)
            template.last_processed = now
            template.next_recurring_date = calculate_next_date(
                now.date(), template.recurring_interval
            )
        logger.info(
            f"recurring_posted: template_id={template.id} transaction_id={spawned.id} "
            f"next={template.next_recurring_date.isoformat()}"
        )
        return spawned
