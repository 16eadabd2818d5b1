from __future__ import annotations

import math
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from server.creditmeter.billing.errors import InvalidAmount, InvalidUsage
from server.creditmeter.core.models import CREDIT_QUANTUM, MAX_CREDIT_AMOUNT, MAX_TOKEN_COUNT, PricingRule

TOKENS_PER_PRICE_UNIT = Decimal(1000)
_ZERO = Decimal("0")


@dataclass(frozen=True)
class PriceQuote:
    """Unit prices captured at charge time (per 1000 tokens)."""

    input_token_price: Decimal
    output_token_price: Decimal
    base_price: Decimal | None
    source: str
    rule_id: str | None = None

    @classmethod
    def from_rule(cls, rule: PricingRule) -> "PriceQuote":
        return cls(
            input_token_price=rule.input_token_price,
            output_token_price=rule.output_token_price,
            base_price=rule.base_price,
            source="rule",
            rule_id=rule.id,
        )

    @classmethod
    def zero(cls) -> "PriceQuote":
        return cls(input_token_price=_ZERO, output_token_price=_ZERO, base_price=None, source="fallback-zero")


@dataclass(frozen=True)
class CostResult:
    input_cost: Decimal
    output_cost: Decimal
    total_cost: Decimal


def round_credits(value: Decimal) -> Decimal:
    return value.quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)


def format_credits(value: Decimal | None) -> str:
    return f"{round_credits(value if value is not None else _ZERO)}"


def parse_amount(raw) -> Decimal:
    """Parse a caller-supplied credit amount into a positive ledger amount."""
    if raw is None or isinstance(raw, bool):
        raise InvalidAmount("Invalid amount.")
    try:
        value = Decimal(str(raw).strip())
    except Exception as e:
        raise InvalidAmount("Invalid amount.") from e
    if not value.is_finite():
        raise InvalidAmount("Invalid amount.")
    if abs(value) > MAX_CREDIT_AMOUNT:
        raise InvalidAmount("Amount is too large.")
    value = round_credits(value)
    if value <= 0:
        raise InvalidAmount()
    return value


def validate_token_count(value, *, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidUsage(f"{name} must be an integer.")
    if value < 0:
        raise InvalidUsage(f"{name} must be >= 0.")
    if value > MAX_TOKEN_COUNT:
        raise InvalidUsage(f"{name} is too large.")
    return value


def compute_cost(*, quote: PriceQuote, input_tokens: int, output_tokens: int) -> CostResult:
    input_tokens = validate_token_count(input_tokens, name="input_tokens")
    output_tokens = validate_token_count(output_tokens, name="output_tokens")

    # Prices are per 1000 tokens; round once, on the total.
    raw_input = Decimal(input_tokens) * quote.input_token_price / TOKENS_PER_PRICE_UNIT
    raw_output = Decimal(output_tokens) * quote.output_token_price / TOKENS_PER_PRICE_UNIT
    base = quote.base_price if quote.base_price is not None else _ZERO
    total = round_credits(raw_input + raw_output + base)
    if total > MAX_CREDIT_AMOUNT:
        raise InvalidUsage("Usage cost is too large.")

    return CostResult(
        input_cost=round_credits(raw_input),
        output_cost=round_credits(raw_output),
        total_cost=total,
    )


def estimate_input_tokens(texts: Iterable[str]) -> int:
    chars = sum(len(text or "") for text in texts)
    return math.ceil(chars / 4)
