from __future__ import annotations

import datetime as dt
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from server.creditmeter.billing.costing import format_credits, round_credits
from server.creditmeter.billing.reporting import BillingAggregator, effective_limit, start_of_day, start_of_month
from server.creditmeter.core.models import Account


def _now_utc() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass(frozen=True)
class LimitCheck:
    can_proceed: bool
    reason: str | None
    required_cost: Decimal
    balance: Decimal

    def to_dict(self) -> dict:
        return {
            "can_proceed": self.can_proceed,
            "reason": self.reason,
            "estimated_cost": format_credits(self.required_cost),
            "balance": format_credits(self.balance),
        }


class SpendLimiter:
    """Pre-flight check run before a completion is started.

    Spend is summed from usage debits since the start of the current UTC day
    and month, so there are no running counters to reset.
    """

    def __init__(
        self,
        *,
        aggregator: BillingAggregator,
        allow_overdraft: bool,
        default_daily_limit: Decimal | None = None,
        default_monthly_limit: Decimal | None = None,
        clock: Callable[[], dt.datetime] = _now_utc,
    ) -> None:
        self._aggregator = aggregator
        self._allow_overdraft = allow_overdraft
        self._default_daily_limit = default_daily_limit
        self._default_monthly_limit = default_monthly_limit
        self._clock = clock

    def check(self, db: Session, *, user_id: str, required_cost: Decimal) -> LimitCheck:
        required_cost = round_credits(required_cost)
        account = db.scalar(select(Account).where(Account.user_id == user_id))
        balance = account.balance if account else round_credits(Decimal("0"))

        def result(reason: str | None) -> LimitCheck:
            return LimitCheck(
                can_proceed=reason is None,
                reason=reason,
                required_cost=required_cost,
                balance=balance,
            )

        if not self._allow_overdraft and balance < required_cost:
            return result("Insufficient credits")

        now = self._clock()
        monthly_limit = effective_limit(account.monthly_limit if account else None, self._default_monthly_limit)
        if monthly_limit is not None:
            spent = self._aggregator.spent_since(db, user_id=user_id, since=start_of_month(now))
            if spent + required_cost > monthly_limit:
                return result("Monthly limit exceeded")

        daily_limit = effective_limit(account.daily_limit if account else None, self._default_daily_limit)
        if daily_limit is not None:
            spent = self._aggregator.spent_since(db, user_id=user_id, since=start_of_day(now))
            if spent + required_cost > daily_limit:
                return result("Daily limit exceeded")

        return result(None)
