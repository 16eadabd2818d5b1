from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from server.creditmeter.billing.costing import parse_amount, round_credits
from server.creditmeter.billing.errors import AccountNotFound, InsufficientCredits, InvalidAmount
from server.creditmeter.core.models import (
    CREDIT_QUANTUM,
    MAX_CREDIT_AMOUNT,
    Account,
    CreditTransaction,
    TransactionKind,
)

logger = logging.getLogger(__name__)

_CREDIT_KINDS = {TransactionKind.purchase.value, TransactionKind.adjustment.value}
_DEBIT_KINDS = {TransactionKind.usage_debit.value, TransactionKind.adjustment.value}


def _now_utc() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass(frozen=True)
class LedgerEntry:
    transaction_id: str
    user_id: str
    amount: Decimal
    kind: str
    balance: Decimal


@dataclass(frozen=True)
class ReconcileResult:
    user_id: str
    balance: Decimal
    transaction_sum: Decimal
    transaction_count: int

    @property
    def ok(self) -> bool:
        return self.balance == self.transaction_sum

    @property
    def difference(self) -> Decimal:
        return self.balance - self.transaction_sum


class CreditLedger:
    """Per-user balances plus the append-only transaction log behind them.

    Every method takes the caller's session; the caller owns the transaction
    boundary. Mutations lock the account row first, so they must run inside
    a write transaction (see ``BillingService``).
    """

    def __init__(self, *, allow_overdraft: bool = False, clock: Callable[[], dt.datetime] = _now_utc) -> None:
        self.allow_overdraft = allow_overdraft
        self._clock = clock

    def _lock_account(self, db: Session, user_id: str, *, create: bool) -> Account | None:
        stmt = (
            select(Account)
            .where(Account.user_id == user_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = db.scalar(stmt)
        if account is not None or not create:
            return account

        now = self._clock()
        try:
            with db.begin_nested():
                account = Account(user_id=user_id, balance=Decimal("0"), created_at=now, updated_at=now)
                db.add(account)
                db.flush()
        except IntegrityError:
            # Created by a concurrent request between the SELECT and the INSERT.
            account = db.scalar(stmt)
            if account is None:
                raise
        return account

    def _append(
        self,
        db: Session,
        *,
        account: Account,
        amount: Decimal,
        kind: str,
        description: str,
    ) -> CreditTransaction:
        balance = round_credits(account.balance + amount)
        if abs(balance) > MAX_CREDIT_AMOUNT:
            raise InvalidAmount("Resulting balance is too large.")
        now = self._clock()
        account.balance = balance
        account.updated_at = now

        txn = CreditTransaction(
            user_id=account.user_id,
            amount=amount,
            kind=kind,
            description=description,
            balance_after=account.balance,
            created_at=now,
        )
        db.add(txn)
        db.flush()
        return txn

    def credit(
        self,
        db: Session,
        *,
        user_id: str,
        amount,
        description: str,
        kind: str = TransactionKind.purchase.value,
    ) -> LedgerEntry:
        if kind not in _CREDIT_KINDS:
            raise ValueError(f"Unsupported credit kind: {kind!r}")
        value = parse_amount(amount)
        account = self._lock_account(db, user_id, create=True)
        txn = self._append(db, account=account, amount=value, kind=kind, description=description)
        logger.info("Credited %s to %s (%s); balance %s", value, user_id, kind, account.balance)
        return LedgerEntry(
            transaction_id=txn.id,
            user_id=user_id,
            amount=txn.amount,
            kind=kind,
            balance=account.balance,
        )

    def debit(
        self,
        db: Session,
        *,
        user_id: str,
        amount,
        description: str,
        kind: str = TransactionKind.usage_debit.value,
    ) -> LedgerEntry:
        if kind not in _DEBIT_KINDS:
            raise ValueError(f"Unsupported debit kind: {kind!r}")
        value = parse_amount(amount)
        account = self._lock_account(db, user_id, create=True)
        if not self.allow_overdraft and account.balance - value < 0:
            raise InsufficientCredits(balance=account.balance, required=value)
        txn = self._append(db, account=account, amount=-value, kind=kind, description=description)
        logger.debug("Debited %s from %s (%s); balance %s", value, user_id, kind, account.balance)
        return LedgerEntry(
            transaction_id=txn.id,
            user_id=user_id,
            amount=txn.amount,
            kind=kind,
            balance=account.balance,
        )

    def get_balance(self, db: Session, *, user_id: str) -> Decimal:
        balance = db.scalar(select(Account.balance).where(Account.user_id == user_id))
        return balance if balance is not None else Decimal("0").quantize(CREDIT_QUANTUM)

    def get_account(self, db: Session, *, user_id: str) -> Account:
        account = db.scalar(select(Account).where(Account.user_id == user_id))
        if account is None:
            raise AccountNotFound(user_id)
        return account

    def initialize(self, db: Session, *, user_id: str, signup_credits: Decimal) -> tuple[Account, bool]:
        account = self._lock_account(db, user_id, create=False)
        if account is not None:
            return account, False
        account = self._lock_account(db, user_id, create=True)
        if signup_credits and signup_credits > 0:
            self._append(
                db,
                account=account,
                amount=round_credits(signup_credits),
                kind=TransactionKind.adjustment.value,
                description="Signup credits",
            )
        return account, True

    def set_limits(
        self,
        db: Session,
        *,
        user_id: str,
        daily_limit: Decimal | None,
        monthly_limit: Decimal | None,
    ) -> Account:
        for name, value in (("daily_limit", daily_limit), ("monthly_limit", monthly_limit)):
            if value is not None and value < 0:
                raise InvalidAmount(f"{name} must be >= 0.")
            if value is not None and value > MAX_CREDIT_AMOUNT:
                raise InvalidAmount(f"{name} is too large.")
        account = self._lock_account(db, user_id, create=True)
        account.daily_limit = round_credits(daily_limit) if daily_limit is not None else None
        account.monthly_limit = round_credits(monthly_limit) if monthly_limit is not None else None
        account.updated_at = self._clock()
        db.flush()
        return account

    def reconcile(self, db: Session, *, user_id: str) -> ReconcileResult:
        account = self.get_account(db, user_id=user_id)
        total, count = db.execute(
            select(
                func.coalesce(func.sum(CreditTransaction.amount), 0),
                func.count(CreditTransaction.id),
            ).where(CreditTransaction.user_id == user_id)
        ).one()
        result = ReconcileResult(
            user_id=user_id,
            balance=account.balance,
            transaction_sum=round_credits(Decimal(total)),
            transaction_count=int(count or 0),
        )
        if not result.ok:
            logger.error(
                "Ledger mismatch for %s: balance=%s transactions=%s (difference %s)",
                user_id,
                result.balance,
                result.transaction_sum,
                result.difference,
            )
        return result

    def reconcile_all(self, db: Session) -> list[ReconcileResult]:
        user_ids = db.execute(select(Account.user_id).order_by(Account.user_id)).scalars().all()
        return [self.reconcile(db, user_id=user_id) for user_id in user_ids]
