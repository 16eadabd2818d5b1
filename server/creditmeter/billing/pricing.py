from __future__ import annotations

import datetime as dt
import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import desc, or_, select, update
from sqlalchemy.orm import Session

from server.creditmeter.billing.errors import InvalidAmount, PricingRuleNotFound
from server.creditmeter.core.models import MAX_PRICE, PRICE_SCALE, PricingRule

logger = logging.getLogger(__name__)

_PRICE_QUANTUM = Decimal(1).scaleb(-PRICE_SCALE)


@dataclass(frozen=True)
class DefaultRule:
    provider: str
    model_name: str
    input_token_price: Decimal
    output_token_price: Decimal
    base_price: Decimal | None = None


DEFAULT_PRICING_RULES: tuple[DefaultRule, ...] = (
    DefaultRule("deepseek", "deepseek-chat", Decimal("0.0014"), Decimal("0.0028")),
    DefaultRule("deepseek", "deepseek-coder", Decimal("0.0014"), Decimal("0.0028")),
    DefaultRule("openai", "gpt-4o", Decimal("0.03"), Decimal("0.06")),
    DefaultRule("openai", "gpt-4o-mini", Decimal("0.0015"), Decimal("0.006")),
    DefaultRule("anthropic", "claude-3-5-sonnet", Decimal("0.015"), Decimal("0.075")),
)


def _now_utc() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


def _as_utc(value: dt.datetime) -> dt.datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.UTC)
    return value.astimezone(dt.UTC)


def _normalize_key(provider: str, model_name: str) -> tuple[str, str]:
    return (provider or "").strip(), (model_name or "").strip()


def _check_price(value: Decimal | None, *, name: str, nullable: bool = False) -> Decimal | None:
    if value is None:
        if nullable:
            return None
        raise InvalidAmount(f"{name} is required.")
    if isinstance(value, float):
        raise InvalidAmount(f"{name} must be a decimal, not a float.")
    value = Decimal(value)
    if not value.is_finite() or value < 0:
        raise InvalidAmount(f"{name} must be >= 0.")
    if value > MAX_PRICE:
        raise InvalidAmount(f"{name} is too large.")
    return value


class PricingResolver:
    def __init__(self, *, clock: Callable[[], dt.datetime] = _now_utc) -> None:
        self._clock = clock

    def _candidates(self, db: Session, provider: str, model_name: str, *, at: dt.datetime) -> list[PricingRule]:
        stmt = (
            select(PricingRule)
            .where(
                PricingRule.provider == provider,
                PricingRule.model_name == model_name,
                PricingRule.is_active.is_(True),
                PricingRule.effective_from <= at,
                or_(PricingRule.effective_to.is_(None), PricingRule.effective_to > at),
            )
            .order_by(desc(PricingRule.created_at), desc(PricingRule.id))
        )
        return list(db.execute(stmt).scalars().all())

    def resolve(self, db: Session, provider: str, model_name: str) -> PricingRule:
        provider, model_name = _normalize_key(provider, model_name)
        rules = self._candidates(db, provider, model_name, at=self._clock())
        if not rules:
            raise PricingRuleNotFound(provider, model_name)
        chosen = rules[0]
        if len(rules) > 1:
            logger.warning(
                "Pricing configuration anomaly: %d active rules for %s/%s; using rule %s (created %s).",
                len(rules),
                provider,
                model_name,
                chosen.id,
                chosen.created_at.isoformat(),
            )
        return chosen

    def list_active(self, db: Session) -> list[PricingRule]:
        stmt = (
            select(PricingRule)
            .where(PricingRule.is_active.is_(True))
            .order_by(PricingRule.provider, PricingRule.model_name, desc(PricingRule.created_at))
        )
        return list(db.execute(stmt).scalars().all())

    def publish(
        self,
        db: Session,
        *,
        provider: str,
        model_name: str,
        input_token_price: Decimal,
        output_token_price: Decimal,
        base_price: Decimal | None = None,
        effective_from: dt.datetime | None = None,
    ) -> PricingRule:
        """Create the new active rule for a key, deactivating the ones it supersedes."""
        provider, model_name = _normalize_key(provider, model_name)
        if not provider or not model_name:
            raise InvalidAmount("provider and model_name are required.")
        input_token_price = _check_price(input_token_price, name="input_token_price")
        output_token_price = _check_price(output_token_price, name="output_token_price")
        base_price = _check_price(base_price, name="base_price", nullable=True)

        now = self._clock()
        starts_at = _as_utc(effective_from) if effective_from else now
        key = (
            PricingRule.provider == provider,
            PricingRule.model_name == model_name,
            PricingRule.is_active.is_(True),
        )

        # Future rules queued to start at or after the new one would never apply.
        dropped = db.execute(
            update(PricingRule)
            .where(*key, PricingRule.effective_from >= starts_at, PricingRule.effective_from > now)
            .values(is_active=False)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        if dropped:
            logger.warning(
                "Deactivated %d queued pricing rule(s) for %s/%s starting at or after %s.",
                dropped,
                provider,
                model_name,
                starts_at.isoformat(),
            )

        superseded = db.execute(
            update(PricingRule)
            .where(
                *key,
                PricingRule.effective_from < starts_at,
                or_(PricingRule.effective_to.is_(None), PricingRule.effective_to > starts_at),
            )
            .values(effective_to=starts_at)
            .execution_options(synchronize_session="fetch")
        ).rowcount
        # A future-dated rule leaves the current one active until it takes over.
        if starts_at <= now:
            db.execute(
                update(PricingRule)
                .where(*key)
                .values(is_active=False)
                .execution_options(synchronize_session="fetch")
            )

        rule = PricingRule(
            provider=provider,
            model_name=model_name,
            input_token_price=input_token_price,
            output_token_price=output_token_price,
            base_price=base_price,
            is_active=True,
            effective_from=starts_at,
            created_at=now,
        )
        db.add(rule)
        db.flush()
        logger.info(
            "Published pricing rule %s for %s/%s (superseded %d).",
            rule.id,
            provider,
            model_name,
            superseded or 0,
        )
        return rule

    def seed_defaults(self, db: Session, rules: tuple[DefaultRule, ...] = DEFAULT_PRICING_RULES) -> list[PricingRule]:
        created: list[PricingRule] = []
        now = self._clock()
        for default in rules:
            existing = db.scalar(
                select(PricingRule.id)
                .where(
                    PricingRule.provider == default.provider,
                    PricingRule.model_name == default.model_name,
                    PricingRule.is_active.is_(True),
                )
                .limit(1)
            )
            if existing:
                logger.info("Pricing rule already exists for %s/%s", default.provider, default.model_name)
                continue
            rule = PricingRule(
                provider=default.provider,
                model_name=default.model_name,
                input_token_price=default.input_token_price,
                output_token_price=default.output_token_price,
                base_price=default.base_price,
                is_active=True,
                effective_from=now,
                created_at=now,
            )
            db.add(rule)
            created.append(rule)
            logger.info("Created pricing rule for %s/%s", default.provider, default.model_name)
        db.flush()
        return created


def _price_str(value: Decimal | None) -> str | None:
    return None if value is None else format(value.quantize(_PRICE_QUANTUM), "f")


def rule_to_dict(rule: PricingRule) -> dict:
    return {
        "id": rule.id,
        "provider": rule.provider,
        "model_name": rule.model_name,
        "input_token_price": _price_str(rule.input_token_price),
        "output_token_price": _price_str(rule.output_token_price),
        "base_price": _price_str(rule.base_price),
        "is_active": rule.is_active,
        "effective_from": rule.effective_from.isoformat() if rule.effective_from else None,
        "effective_to": rule.effective_to.isoformat() if rule.effective_to else None,
    }
