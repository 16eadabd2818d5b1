from __future__ import annotations

import datetime as dt
import math
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import desc, func, select
from sqlalchemy.orm import Session

from server.creditmeter.billing.costing import format_credits, round_credits
from server.creditmeter.billing.errors import InvalidQuery
from server.creditmeter.core.models import Account, CreditTransaction, TransactionKind, UsageRecord, UsageStatus

_ZERO = Decimal("0")


def _now_utc() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _iso(ts: dt.datetime | None) -> str | None:
    if ts is None:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=dt.UTC)
    return ts.isoformat()


def effective_limit(account_limit: Decimal | None, default: Decimal | None) -> Decimal | None:
    return account_limit if account_limit is not None else default


def start_of_day(now: dt.datetime) -> dt.datetime:
    return now.replace(hour=0, minute=0, second=0, microsecond=0)


def start_of_month(now: dt.datetime) -> dt.datetime:
    return start_of_day(now).replace(day=1)


def _charged_cost():
    return func.sum(UsageRecord.total_cost).filter(UsageRecord.status != UsageStatus.uncollectible.value)


def _uncollectible_cost():
    return func.sum(UsageRecord.total_cost).filter(UsageRecord.status == UsageStatus.uncollectible.value)


@dataclass(frozen=True)
class UsageStats:
    total_input_tokens: int
    total_output_tokens: int
    total_tokens: int
    total_cost: Decimal
    record_count: int
    uncollectible_cost: Decimal = Decimal("0")

    def to_dict(self) -> dict:
        return {
            "total_input_tokens": self.total_input_tokens,
            "total_output_tokens": self.total_output_tokens,
            "total_tokens": self.total_tokens,
            "total_cost": format_credits(self.total_cost),
            "record_count": self.record_count,
            "uncollectible_cost": format_credits(self.uncollectible_cost),
        }


@dataclass(frozen=True)
class ModelUsage:
    provider: str
    model_name: str
    stats: UsageStats

    def to_dict(self) -> dict:
        return {"provider": self.provider, "model_name": self.model_name, **self.stats.to_dict()}


@dataclass(frozen=True)
class Pagination:
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.limit

    def to_dict(self) -> dict:
        return {"page": self.page, "limit": self.limit, "total": self.total, "pages": self.pages}


@dataclass(frozen=True)
class UsagePage:
    records: list[dict]
    summary: UsageStats
    pagination: Pagination

    def to_dict(self) -> dict:
        return {
            "usage": self.records,
            "summary": self.summary.to_dict(),
            "pagination": self.pagination.to_dict(),
        }


@dataclass(frozen=True)
class TransactionPage:
    transactions: list[dict]
    pagination: Pagination

    def to_dict(self) -> dict:
        return {"transactions": self.transactions, "pagination": self.pagination.to_dict()}


@dataclass(frozen=True)
class BillingInfo:
    user_id: str
    balance: Decimal
    account_exists: bool
    daily_limit: Decimal | None
    monthly_limit: Decimal | None
    spent_today: Decimal
    spent_this_month: Decimal
    updated_at: dt.datetime | None
    window_days: int
    recent_usage: UsageStats

    def to_dict(self) -> dict:
        return {
            "user_id": self.user_id,
            "balance": format_credits(self.balance),
            "account_exists": self.account_exists,
            "daily_limit": format_credits(self.daily_limit) if self.daily_limit is not None else None,
            "monthly_limit": format_credits(self.monthly_limit) if self.monthly_limit is not None else None,
            "spent_today": format_credits(self.spent_today),
            "spent_this_month": format_credits(self.spent_this_month),
            "updated_at": _iso(self.updated_at),
            "window_days": self.window_days,
            "recent_usage": self.recent_usage.to_dict(),
        }


def usage_record_to_dict(record: UsageRecord) -> dict:
    return {
        "id": record.id,
        "provider": record.provider,
        "model_name": record.model_name,
        "input_tokens": record.input_tokens,
        "output_tokens": record.output_tokens,
        "total_tokens": record.total_tokens,
        "input_cost": format_credits(record.input_cost),
        "output_cost": format_credits(record.output_cost),
        "total_cost": format_credits(record.total_cost),
        "status": record.status,
        "pricing_source": record.pricing_source,
        "conversation_id": record.conversation_id,
        "endpoint": record.endpoint,
        "created_at": _iso(record.created_at),
    }


def transaction_to_dict(txn: CreditTransaction) -> dict:
    return {
        "id": txn.id,
        "kind": txn.kind,
        "amount": format_credits(txn.amount),
        "balance_after": format_credits(txn.balance_after),
        "description": txn.description,
        "created_at": _iso(txn.created_at),
    }


def _check_window(window_days: int) -> int:
    if isinstance(window_days, bool) or not isinstance(window_days, int) or window_days < 1:
        raise InvalidQuery("days must be a positive integer.")
    return window_days


def _check_page(page: int, limit: int, *, max_limit: int) -> tuple[int, int]:
    if isinstance(page, bool) or not isinstance(page, int) or page < 1:
        raise InvalidQuery("page must be >= 1.")
    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1 or limit > max_limit:
        raise InvalidQuery(f"limit must be between 1 and {max_limit}.")
    return page, limit


class BillingAggregator:
    """Read-only views over the ledger and the usage table."""

    def __init__(
        self,
        *,
        default_window_days: int = 30,
        max_page_size: int = 100,
        default_daily_limit: Decimal | None = None,
        default_monthly_limit: Decimal | None = None,
        clock: Callable[[], dt.datetime] = _now_utc,
    ) -> None:
        self.default_window_days = default_window_days
        self.max_page_size = max_page_size
        self.default_daily_limit = default_daily_limit
        self.default_monthly_limit = default_monthly_limit
        self._clock = clock

    def _window_start(self, window_days: int) -> dt.datetime:
        return self._clock() - dt.timedelta(days=_check_window(window_days))

    def _usage_filter(self, user_id: str, window_days: int):
        return (UsageRecord.user_id == user_id, UsageRecord.created_at >= self._window_start(window_days))

    def get_user_usage_stats(self, db: Session, *, user_id: str, window_days: int) -> UsageStats:
        return self._stats(db, self._usage_filter(user_id, window_days))

    def _stats(self, db: Session, filters) -> UsageStats:
        row = db.execute(
            select(
                func.coalesce(func.sum(UsageRecord.input_tokens), 0),
                func.coalesce(func.sum(UsageRecord.output_tokens), 0),
                func.coalesce(func.sum(UsageRecord.total_tokens), 0),
                func.coalesce(_charged_cost(), 0),
                func.count(UsageRecord.id),
                func.coalesce(_uncollectible_cost(), 0),
            ).where(*filters)
        ).one()
        return UsageStats(
            total_input_tokens=int(row[0]),
            total_output_tokens=int(row[1]),
            total_tokens=int(row[2]),
            total_cost=round_credits(Decimal(row[3])),
            record_count=int(row[4]),
            uncollectible_cost=round_credits(Decimal(row[5])),
        )

    def get_usage_breakdown(self, db: Session, *, user_id: str, window_days: int) -> list[ModelUsage]:
        rows = db.execute(
            select(
                UsageRecord.provider,
                UsageRecord.model_name,
                func.sum(UsageRecord.input_tokens),
                func.sum(UsageRecord.output_tokens),
                func.sum(UsageRecord.total_tokens),
                _charged_cost(),
                func.count(UsageRecord.id),
                _uncollectible_cost(),
            )
            .where(*self._usage_filter(user_id, window_days))
            .group_by(UsageRecord.provider, UsageRecord.model_name)
            .order_by(UsageRecord.provider, UsageRecord.model_name)
        ).all()
        return [
            ModelUsage(
                provider=row[0],
                model_name=row[1],
                stats=UsageStats(
                    total_input_tokens=int(row[2] or 0),
                    total_output_tokens=int(row[3] or 0),
                    total_tokens=int(row[4] or 0),
                    total_cost=round_credits(Decimal(row[5] or 0)),
                    record_count=int(row[6] or 0),
                    uncollectible_cost=round_credits(Decimal(row[7] or 0)),
                ),
            )
            for row in rows
        ]

    def list_usage(self, db: Session, *, user_id: str, window_days: int, page: int, limit: int) -> UsagePage:
        page, limit = _check_page(page, limit, max_limit=self.max_page_size)
        filters = self._usage_filter(user_id, window_days)

        summary = self._stats(db, filters)
        pagination = Pagination(page=page, limit=limit, total=summary.record_count)
        records = (
            db.execute(
                select(UsageRecord)
                .where(*filters)
                .order_by(desc(UsageRecord.created_at), desc(UsageRecord.id))
                .offset(pagination.offset)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return UsagePage(
            records=[usage_record_to_dict(r) for r in records],
            summary=summary,
            pagination=pagination,
        )

    def list_transactions(self, db: Session, *, user_id: str, page: int, limit: int) -> TransactionPage:
        page, limit = _check_page(page, limit, max_limit=self.max_page_size)
        total = db.scalar(select(func.count(CreditTransaction.id)).where(CreditTransaction.user_id == user_id)) or 0
        pagination = Pagination(page=page, limit=limit, total=int(total))
        transactions = (
            db.execute(
                select(CreditTransaction)
                .where(CreditTransaction.user_id == user_id)
                .order_by(desc(CreditTransaction.created_at), desc(CreditTransaction.id))
                .offset(pagination.offset)
                .limit(limit)
            )
            .scalars()
            .all()
        )
        return TransactionPage(transactions=[transaction_to_dict(t) for t in transactions], pagination=pagination)

    def spent_since(self, db: Session, *, user_id: str, since: dt.datetime) -> Decimal:
        total = db.scalar(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
                CreditTransaction.user_id == user_id,
                CreditTransaction.kind == TransactionKind.usage_debit.value,
                CreditTransaction.created_at >= since,
            )
        )
        return round_credits(_ZERO - Decimal(total or 0))

    def get_user_billing_info(self, db: Session, *, user_id: str, window_days: int | None = None) -> BillingInfo:
        window_days = window_days or self.default_window_days
        now = self._clock()
        account = db.scalar(select(Account).where(Account.user_id == user_id))
        return BillingInfo(
            user_id=user_id,
            balance=account.balance if account else round_credits(_ZERO),
            account_exists=account is not None,
            daily_limit=effective_limit(account.daily_limit if account else None, self.default_daily_limit),
            monthly_limit=effective_limit(account.monthly_limit if account else None, self.default_monthly_limit),
            spent_today=self.spent_since(db, user_id=user_id, since=start_of_day(now)),
            spent_this_month=self.spent_since(db, user_id=user_id, since=start_of_month(now)),
            updated_at=account.updated_at if account else None,
            window_days=window_days,
            recent_usage=self.get_user_usage_stats(db, user_id=user_id, window_days=window_days),
        )
