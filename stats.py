from dataclasses import dataclass, field

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models import Transaction, TransactionType
from periods import Period


@dataclass(frozen=True)
class PeriodStats:
    total_income: int = 0
    total_expenses: int = 0
    by_category: dict[str, int] = field(default_factory=dict)
    transaction_count: int = 0

    @property
    def net(self) -> int:
        return self.total_income - self.total_expenses

    def top_categories(self, limit: int = 3) -> list[tuple[str, int]]:
        items = sorted(self.by_category.items(), key=lambda x: x[1], reverse=True)
        return items[:limit]


def aggregate_stats(session: Session, user_id: int, period: Period) -> PeriodStats:
    """Income, expense and per-category expense totals (cents) within ``period``.

    Both ends of the period are inclusive. Only expenses are broken down by
    category.
    """
    stmt = (
        select(
            Transaction.type,
            Transaction.category,
            func.coalesce(func.sum(Transaction.amount_cents), 0).label("total"),
            func.count(Transaction.id).label("count"),
        )
        .where(
            Transaction.user_id == user_id,
            Transaction.date.between(period.start, period.end),
        )
        .group_by(Transaction.type, Transaction.category)
    )

    total_income = 0
    total_expenses = 0
    count = 0
    by_category: dict[str, int] = {}
    for row in session.execute(stmt):
        amount = int(row.total or 0)
        count += int(row.count or 0)
        if row.type == TransactionType.expense:
            total_expenses += amount
            by_category[row.category] = by_category.get(row.category, 0) + amount
        else:
            total_income += amount

    return PeriodStats(
        total_income=total_income,
        total_expenses=total_expenses,
        by_category=by_category,
        transaction_count=count,
    )
