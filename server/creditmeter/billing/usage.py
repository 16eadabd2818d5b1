from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass

from sqlalchemy.orm import Session

from server.creditmeter.billing.costing import CostResult, PriceQuote, compute_cost, validate_token_count
from server.creditmeter.billing.errors import (
    InsufficientCredits,
    InvalidUsage,
    PricingRuleNotFound,
    PricingUnavailable,
)
from server.creditmeter.billing.ledger import CreditLedger
from server.creditmeter.billing.pricing import PricingResolver
from server.creditmeter.core.config import Settings
from server.creditmeter.core.models import TransactionKind, UsageRecord, UsageStatus

logger = logging.getLogger(__name__)


def _now_utc() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass(frozen=True)
class UsageEvent:
    user_id: str
    provider: str
    model_name: str
    input_tokens: int
    output_tokens: int
    conversation_id: str | None = None
    endpoint: str | None = None
    request_duration_ms: int | None = None


class UsageRecorder:
    """Turns one completion into a priced usage record and its matching debit.

    ``record`` must run inside a single write transaction: the debit and the
    usage row commit together or not at all.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        resolver: PricingResolver,
        ledger: CreditLedger,
        clock: Callable[[], dt.datetime] = _now_utc,
    ) -> None:
        self._settings = settings
        self._resolver = resolver
        self._ledger = ledger
        self._clock = clock

    def quote(self, db: Session, provider: str, model_name: str) -> PriceQuote:
        try:
            return PriceQuote.from_rule(self._resolver.resolve(db, provider, model_name))
        except PricingRuleNotFound as exc:
            policy = self._settings.pricing_fallback
            if policy == "zero":
                logger.warning("No pricing rule for %s/%s; charging zero.", provider, model_name)
                return PriceQuote.zero()
            if policy == "default":
                logger.warning("No pricing rule for %s/%s; using default rates.", provider, model_name)
                return PriceQuote(
                    input_token_price=self._settings.default_input_price,
                    output_token_price=self._settings.default_output_price,
                    base_price=self._settings.default_base_price,
                    source="fallback-default",
                )
            raise PricingUnavailable(f"Pricing is not available for {provider}/{model_name}.") from exc

    def estimate(self, db: Session, provider: str, model_name: str, *, input_tokens: int, output_tokens: int) -> CostResult:
        quote = self.quote(db, provider, model_name)
        return compute_cost(quote=quote, input_tokens=input_tokens, output_tokens=output_tokens)

    def record(self, db: Session, event: UsageEvent) -> UsageRecord:
        input_tokens = validate_token_count(event.input_tokens, name="input_tokens")
        output_tokens = validate_token_count(event.output_tokens, name="output_tokens")
        provider = (event.provider or "").strip()
        model_name = (event.model_name or "").strip()
        if not provider or not model_name:
            raise InvalidUsage("provider and model_name are required.")

        quote = self.quote(db, provider, model_name)
        cost = compute_cost(quote=quote, input_tokens=input_tokens, output_tokens=output_tokens)

        status = UsageStatus.free.value
        transaction_id: str | None = None
        if cost.total_cost > 0:
            try:
                entry = self._ledger.debit(
                    db,
                    user_id=event.user_id,
                    amount=cost.total_cost,
                    description=f"usage: {provider}/{model_name}",
                    kind=TransactionKind.usage_debit.value,
                )
            except InsufficientCredits:
                if self._settings.insufficient_credits_policy != "uncollectible":
                    raise
                logger.warning(
                    "Insufficient credits for %s; recording %s/%s usage (%s) as uncollectible.",
                    event.user_id,
                    provider,
                    model_name,
                    cost.total_cost,
                )
                status = UsageStatus.uncollectible.value
            else:
                status = UsageStatus.charged.value
                transaction_id = entry.transaction_id

        record = UsageRecord(
            user_id=event.user_id,
            provider=provider,
            model_name=model_name,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            total_tokens=input_tokens + output_tokens,
            input_cost=cost.input_cost,
            output_cost=cost.output_cost,
            total_cost=cost.total_cost,
            status=status,
            pricing_rule_id=quote.rule_id,
            pricing_source=quote.source,
            transaction_id=transaction_id,
            conversation_id=event.conversation_id,
            endpoint=event.endpoint,
            request_duration_ms=event.request_duration_ms,
            created_at=self._clock(),
        )
        db.add(record)
        db.flush()
        return record

