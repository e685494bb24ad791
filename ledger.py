from __future__ import annotations

import logging
from collections import defaultdict
from contextlib import contextmanager
from typing import Iterable, Iterator, Optional

from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from models import Account, Transaction, TransactionType


logger = logging.getLogger(__name__)


class LedgerWriteError(RuntimeError):
    """A balance/transaction write failed and was rolled back; safe to retry."""


def signed_amount(txn_type: TransactionType, amount_cents: int) -> int:
    if txn_type == TransactionType.expense:
        return -amount_cents
    return amount_cents


class BalanceLedger:
    """Keeps account balances in step with the transactions written against them.

    Every mutation here only flushes; the surrounding ``atomic()`` block owns the
    commit so that the balance increment and the transaction row land together.
    """

    def __init__(self, session: Session) -> None:
        self.session = session

    @contextmanager
    def atomic(self) -> Iterator[Session]:
        try:
            yield self.session
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            logger.warning(f"ledger_rollback: error={exc.__class__.__name__}")
            raise LedgerWriteError("Balance update failed; nothing was written") from exc
        except Exception:
            self.session.rollback()
            raise

    def apply_delta(self, account_id: int, delta_cents: int) -> None:
        if delta_cents == 0:
            return
        result = self.session.execute(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta_cents)
            .execution_options(synchronize_session="fetch")
        )
        if result.rowcount == 0:
            raise ValueError("Account not found")

    def record(self, txn: Transaction) -> Transaction:
        self.session.add(txn)
        self.session.flush()
        self.apply_delta(txn.account_id, signed_amount(txn.type, txn.amount_cents))
        return txn

    def revise(
        self,
        txn: Transaction,
        *,
        type: Optional[TransactionType] = None,
        amount_cents: Optional[int] = None,
        account_id: Optional[int] = None,
        **fields: object,
    ) -> Transaction:
        old_account_id = txn.account_id
        old_signed = signed_amount(txn.type, txn.amount_cents)

        if type is not None:
            txn.type = type
        if amount_cents is not None:
            txn.amount_cents = amount_cents
        if account_id is not None:
            txn.account_id = account_id
        for name, value in fields.items():
            setattr(txn, name, value)
        self.session.flush()

        new_signed = signed_amount(txn.type, txn.amount_cents)
        if txn.account_id == old_account_id:
            self.apply_delta(txn.account_id, new_signed - old_signed)
        else:
            self.apply_delta(old_account_id, -old_signed)
            self.apply_delta(txn.account_id, new_signed)
        return txn

    def remove(self, txns: Iterable[Transaction]) -> dict[int, int]:
        changes: dict[int, int] = defaultdict(int)
        for txn in txns:
            changes[txn.account_id] -= signed_amount(txn.type, txn.amount_cents)
            self.session.delete(txn)
        self.session.flush()
        for account_id, delta in changes.items():
            self.apply_delta(account_id, delta)
        return dict(changes)

    def computed_balance(self, account_id: int) -> int:
        account = self.session.get(Account, account_id)
        if not account:
            raise ValueError("Account not found")
        signed = case(
            (Transaction.type == TransactionType.expense, -Transaction.amount_cents),
            else_=Transaction.amount_cents,
        )
        total = self.session.execute(
            select(func.coalesce(func.sum(signed), 0)).where(
                Transaction.account_id == account_id
            )
        ).scalar_one()
        return account.opening_balance_cents + int(total or 0)
