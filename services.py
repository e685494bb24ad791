from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session, joinedload

from database import local_now
from ledger import BalanceLedger
from models import (
    PLACEHOLDER_PHONE,
    Account,
    Budget,
    Transaction,
    TransactionType,
    User,
)
from periods import current_month
from recurrence import calculate_next_date
from schemas import AccountIn, BudgetIn, TransactionIn


class AccountDeletionError(ValueError):
    pass


@dataclass
class BudgetSummary:
    budget: Optional[Budget]
    current_expenses: int


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, user_id: int) -> User:
        user = self.session.get(User, user_id)
        if not user:
            raise ValueError("User not found")
        return user

    def get_or_create(
        self,
        external_id: str,
        *,
        email: str,
        name: Optional[str] = None,
        image_url: Optional[str] = None,
    ) -> User:
        user = self.session.scalar(select(User).where(User.external_id == external_id))
        if user:
            return user
        user = User(
            external_id=external_id,
            email=email,
            name=(name or "").strip() or "User",
            image_url=image_url,
            phone_number=PLACEHOLDER_PHONE,
        )
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def find_by_phone(self, phone: str) -> Optional[User]:
        return self.session.scalar(
            select(User).where(User.phone_number == phone).order_by(User.id).limit(1)
        )

    def update_phone(self, user_id: int, phone_number: str) -> bool:
        """Store the number; True when it replaced the placeholder."""
        user = self.get(user_id)
        was_placeholder = not user.has_real_phone
        user.phone_number = phone_number
        self.session.commit()
        return was_placeholder and user.has_real_phone


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return self.session.scalars(stmt).all()

    def transaction_counts(self) -> dict[int, int]:
        stmt = (
            select(Transaction.account_id, func.count(Transaction.id))
            .where(Transaction.user_id == self.user_id)
            .group_by(Transaction.account_id)
        )
        return {row[0]: int(row[1]) for row in self.session.execute(stmt)}

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise ValueError("Account not found")
        return account

    def default_account(self) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id, Account.is_default.is_(True)
            )
        )

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
        )

    def create(self, data: AccountIn) -> Account:
        has_accounts = (
            self.session.scalar(
                select(func.count(Account.id)).where(Account.user_id == self.user_id)
            )
            or 0
        ) > 0
        # The first account is always the default, whatever the caller asked for.
        should_be_default = True if not has_accounts else data.is_default
        if should_be_default:
            self._clear_default()

        account = Account(
            user_id=self.user_id,
            name=data.name,
            type=data.type,
            balance_cents=data.opening_balance_cents,
            opening_balance_cents=data.opening_balance_cents,
            is_default=should_be_default,
        )
        self.session.add(account)
        self.session.commit()
        self.session.refresh(account)
        return account

    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        self._clear_default()
        self.session.flush()
        account.is_default = True
        self.session.commit()
        self.session.refresh(account)
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        total_accounts = int(
            self.session.scalar(
                select(func.count(Account.id)).where(Account.user_id == self.user_id)
            )
            or 0
        )
        if total_accounts == 1:
            raise AccountDeletionError(
                "Cannot delete the only account. Create another account first."
            )

        was_default = account.is_default
        with BalanceLedger(self.session).atomic():
            for txn in self.session.scalars(
                select(Transaction).where(
                    Transaction.account_id == account.id,
                    Transaction.user_id == self.user_id,
                )
            ).all():
                self.session.delete(txn)
            self.session.flush()
            self.session.delete(account)
            self.session.flush()
            if was_default:
                remaining = self.session.scalar(
                    select(Account)
                    .where(Account.user_id == self.user_id)
                    .order_by(Account.created_at, Account.id)
                    .limit(1)
                )
                if remaining:
                    remaining.is_default = True


def _next_date_after_edit(data: TransactionIn, existing: Optional[Transaction]) -> date:
    if existing is None:
        return calculate_next_date(data.date, data.recurring_interval)
    unchanged = (
        existing.is_recurring
        and existing.recurring_interval == data.recurring_interval
        and existing.date == data.date
        and existing.next_recurring_date is not None
    )
    if unchanged:
        return existing.next_recurring_date
    base = data.date
    # Never schedule on or before the last posted occurrence.
    if existing.last_processed is not None:
        base = max(base, existing.last_processed.date())
    return calculate_next_date(base, data.recurring_interval)


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.ledger = BalanceLedger(session)

    def _account(self, account_id: int) -> Account:
        return AccountService(self.session, self.user_id).get(account_id)

    @staticmethod
    def _recurrence_fields(
        data: TransactionIn, existing: Optional[Transaction] = None
    ) -> dict[str, object]:
        if data.is_recurring and data.recurring_interval is None:
            raise ValueError("Recurring transactions need an interval")
        if not data.is_recurring:
            return {
                "is_recurring": False,
                "recurring_interval": None,
                "next_recurring_date": None,
            }
        return {
            "is_recurring": True,
            "recurring_interval": data.recurring_interval,
            "next_recurring_date": _next_date_after_edit(data, existing),
        }

    def create(self, data: TransactionIn, *, occurred_at: Optional[datetime] = None) -> Transaction:
        account = self._account(data.account_id)
        recurrence = self._recurrence_fields(data)
        txn = Transaction(
            user_id=self.user_id,
            account_id=account.id,
            type=data.type,
            amount_cents=data.amount_cents,
            description=data.description,
            date=data.date,
            occurred_at=occurred_at or datetime.combine(data.date, time(12, 0)),
            category=data.category,
            receipt_url=data.receipt_url,
            status=data.status,
            **recurrence,
        )
        with self.ledger.atomic():
            self.ledger.record(txn)
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
            )
        )
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        account = self._account(data.account_id)
        recurrence = self._recurrence_fields(data, txn)
        with self.ledger.atomic():
            self.ledger.revise(
                txn,
                type=data.type,
                amount_cents=data.amount_cents,
                account_id=account.id,
                description=data.description,
                date=data.date,
                category=data.category,
                receipt_url=data.receipt_url,
                status=data.status,
                **recurrence,
            )
        self.session.refresh(txn)
        return txn

    def list(
        self,
        *,
        account_id: Optional[int] = None,
        type: Optional[TransactionType] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        if type is not None:
            stmt = stmt.where(Transaction.type == type)
        return self.session.scalars(stmt).all()

    def recent(self, limit: int = 5, *, type: Optional[TransactionType] = None) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.created_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        if type is not None:
            stmt = stmt.where(Transaction.type == type)
        return self.session.scalars(stmt).all()

    def bulk_delete(self, transaction_ids: list[int]) -> dict[int, int]:
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.id.in_(transaction_ids),
                Transaction.user_id == self.user_id,
            )
        ).all()
        if not txns:
            return {}
        with self.ledger.atomic():
            changes = self.ledger.remove(txns)
        return changes


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    def upsert(self, data: BudgetIn) -> Budget:
        budget = self.get()
        if budget is None:
            budget = Budget(user_id=self.user_id, amount_cents=data.amount_cents)
            self.session.add(budget)
        else:
            budget.amount_cents = data.amount_cents
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def current(self, account_id: Optional[int] = None, *, now: Optional[datetime] = None) -> BudgetSummary:
        """The budget plus this month's expenses, optionally for one account."""
        period = current_month((now or local_now()).date())
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.type == TransactionType.expense,
            Transaction.date.between(period.start, period.end),
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        spent = int(self.session.execute(stmt).scalar_one() or 0)
        return BudgetSummary(budget=self.get(), current_expenses=spent)
