from __future__ import annotations

import datetime as dt
import logging
import time
from collections.abc import Callable, Iterable
from decimal import Decimal
from typing import TypeVar

from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from server.creditmeter.billing.costing import CostResult, estimate_input_tokens
from server.creditmeter.billing.errors import BillingError, InternalError
from server.creditmeter.billing.ledger import CreditLedger, LedgerEntry, ReconcileResult
from server.creditmeter.billing.limits import LimitCheck, SpendLimiter
from server.creditmeter.billing.pricing import PricingResolver
from server.creditmeter.billing.reporting import (
    BillingAggregator,
    BillingInfo,
    ModelUsage,
    TransactionPage,
    UsagePage,
    UsageStats,
)
from server.creditmeter.billing.usage import UsageEvent, UsageRecorder
from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import session_scope
from server.creditmeter.core.models import Account, PricingRule, TransactionKind, UsageRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now_utc() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _message_texts(messages: Iterable) -> list[str]:
    texts: list[str] = []
    for message in messages or []:
        if isinstance(message, dict):
            content = message.get("content")
        else:
            content = message
        if isinstance(content, str):
            texts.append(content)
    return texts


class BillingService:
    """Entry point used by the web layer and the admin CLI.

    Each public method runs in its own database transaction. Writes take the
    account lock, are retried on transient ``OperationalError`` and roll back
    completely on any failure.
    """

    def __init__(self, settings: Settings, *, clock: Callable[[], dt.datetime] | None = None) -> None:
        clock = clock or _now_utc
        self.settings = settings
        self.resolver = PricingResolver(clock=clock)
        self.ledger = CreditLedger(allow_overdraft=settings.allow_overdraft, clock=clock)
        self.recorder = UsageRecorder(settings=settings, resolver=self.resolver, ledger=self.ledger, clock=clock)
        self.aggregator = BillingAggregator(
            default_window_days=settings.usage_window_days,
            max_page_size=settings.usage_max_page_size,
            default_daily_limit=settings.default_daily_limit,
            default_monthly_limit=settings.default_monthly_limit,
            clock=clock,
        )
        self.limiter = SpendLimiter(
            aggregator=self.aggregator,
            allow_overdraft=settings.allow_overdraft,
            default_daily_limit=settings.default_daily_limit,
            default_monthly_limit=settings.default_monthly_limit,
            clock=clock,
        )

    def _write(self, fn: Callable[[Session], T]) -> T:
        attempts = self.settings.db_retry_attempts
        for attempt in range(attempts):
            try:
                with session_scope(self.settings, write=True) as db:
                    return fn(db)
            except BillingError:
                raise
            except OperationalError as exc:
                if attempt + 1 >= attempts:
                    logger.error("Billing write failed after %d attempts: %s", attempts, exc)
                    raise InternalError() from exc
                delay = self.settings.db_retry_backoff_seconds * (2**attempt)
                logger.warning("Billing write failed (attempt %d/%d); retrying in %.2fs.", attempt + 1, attempts, delay)
                time.sleep(delay)
            except SQLAlchemyError as exc:
                logger.exception("Billing write failed")
                raise InternalError() from exc
        raise InternalError()

    def _read(self, fn: Callable[[Session], T]) -> T:
        try:
            with session_scope(self.settings) as db:
                return fn(db)
        except BillingError:
            raise
        except SQLAlchemyError as exc:
            logger.exception("Billing read failed")
            raise InternalError() from exc

    # Ledger

    def credit(
        self,
        user_id: str,
        amount,
        *,
        description: str | None = None,
        kind: str = TransactionKind.purchase.value,
    ) -> LedgerEntry:
        return self._write(
            lambda db: self.ledger.credit(
                db,
                user_id=user_id,
                amount=amount,
                description=description or "Credit purchase",
                kind=kind,
            )
        )

    def debit(
        self,
        user_id: str,
        amount,
        *,
        description: str,
        kind: str = TransactionKind.usage_debit.value,
    ) -> LedgerEntry:
        return self._write(
            lambda db: self.ledger.debit(db, user_id=user_id, amount=amount, description=description, kind=kind)
        )

    def get_balance(self, user_id: str) -> Decimal:
        return self._read(lambda db: self.ledger.get_balance(db, user_id=user_id))

    def initialize_account(self, user_id: str) -> bool:
        """Create the account with the signup grant; returns False if it already existed."""

        def run(db: Session) -> bool:
            _account, created = self.ledger.initialize(
                db, user_id=user_id, signup_credits=self.settings.signup_credits
            )
            return created

        return self._write(run)

    def set_limits(
        self,
        user_id: str,
        *,
        daily_limit: Decimal | None,
        monthly_limit: Decimal | None,
    ) -> Account:
        return self._write(
            lambda db: self.ledger.set_limits(
                db, user_id=user_id, daily_limit=daily_limit, monthly_limit=monthly_limit
            )
        )

    def reconcile(self, user_id: str) -> ReconcileResult:
        return self._read(lambda db: self.ledger.reconcile(db, user_id=user_id))

    def reconcile_all(self) -> list[ReconcileResult]:
        return self._read(self.ledger.reconcile_all)

    # Usage

    def record_usage(
        self,
        user_id: str,
        *,
        provider: str,
        model_name: str,
        input_tokens: int,
        output_tokens: int,
        conversation_id: str | None = None,
        endpoint: str | None = None,
        request_duration_ms: int | None = None,
    ) -> UsageRecord:
        event = UsageEvent(
            user_id=user_id,
            provider=provider,
            model_name=model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            conversation_id=conversation_id,
            endpoint=endpoint,
            request_duration_ms=request_duration_ms,
        )
        return self._write(lambda db: self.recorder.record(db, event))

    def estimate_cost(self, provider: str, model_name: str, *, input_tokens: int, output_tokens: int) -> CostResult:
        return self._read(
            lambda db: self.recorder.estimate(
                db, provider, model_name, input_tokens=input_tokens, output_tokens=output_tokens
            )
        )

    def check_usage_limit(
        self,
        user_id: str,
        *,
        provider: str,
        model_name: str,
        input_tokens: int | None = None,
        output_tokens: int | None = None,
        messages: Iterable | None = None,
    ) -> LimitCheck:
        if input_tokens is None:
            input_tokens = estimate_input_tokens(_message_texts(messages or []))
        if output_tokens is None:
            output_tokens = self.settings.estimate_output_tokens

        def run(db: Session) -> LimitCheck:
            cost = self.recorder.estimate(
                db, provider, model_name, input_tokens=input_tokens, output_tokens=output_tokens
            )
            return self.limiter.check(db, user_id=user_id, required_cost=cost.total_cost)

        return self._read(run)

    # Pricing

    def resolve_pricing(self, provider: str, model_name: str) -> PricingRule:
        return self._read(lambda db: self.resolver.resolve(db, provider, model_name))

    def list_pricing_rules(self) -> list[PricingRule]:
        return self._read(self.resolver.list_active)

    def publish_pricing_rule(
        self,
        *,
        provider: str,
        model_name: str,
        input_token_price: Decimal,
        output_token_price: Decimal,
        base_price: Decimal | None = None,
        effective_from: dt.datetime | None = None,
    ) -> PricingRule:
        return self._write(
            lambda db: self.resolver.publish(
                db,
                provider=provider,
                model_name=model_name,
                input_token_price=input_token_price,
                output_token_price=output_token_price,
                base_price=base_price,
                effective_from=effective_from,
            )
        )

    def seed_default_pricing(self) -> list[PricingRule]:
        return self._write(self.resolver.seed_defaults)

    # Reporting

    def get_user_billing_info(self, user_id: str, *, window_days: int | None = None) -> BillingInfo:
        return self._read(
            lambda db: self.aggregator.get_user_billing_info(db, user_id=user_id, window_days=window_days)
        )

    def get_user_usage_stats(self, user_id: str, *, window_days: int | None = None) -> UsageStats:
        window_days = window_days or self.settings.usage_window_days
        return self._read(
            lambda db: self.aggregator.get_user_usage_stats(db, user_id=user_id, window_days=window_days)
        )

    def get_usage_breakdown(self, user_id: str, *, window_days: int | None = None) -> list[ModelUsage]:
        window_days = window_days or self.settings.usage_window_days
        return self._read(
            lambda db: self.aggregator.get_usage_breakdown(db, user_id=user_id, window_days=window_days)
        )

    def list_usage(
        self,
        user_id: str,
        *,
        window_days: int | None = None,
        page: int = 1,
        limit: int | None = None,
    ) -> UsagePage:
        window_days = window_days if window_days is not None else self.settings.usage_window_days
        limit = limit if limit is not None else self.settings.usage_page_size
        return self._read(
            lambda db: self.aggregator.list_usage(
                db, user_id=user_id, window_days=window_days, page=page, limit=limit
            )
        )

    def list_transactions(self, user_id: str, *, page: int = 1, limit: int | None = None) -> TransactionPage:
        limit = limit if limit is not None else self.settings.usage_page_size
        return self._read(
            lambda db: self.aggregator.list_transactions(db, user_id=user_id, page=page, limit=limit)
        )
