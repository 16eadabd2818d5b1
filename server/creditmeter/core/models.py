from __future__ import annotations

import datetime as dt
import uuid
from decimal import ROUND_HALF_UP, Decimal
from enum import Enum

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from server.creditmeter.core.db import Base

CREDIT_SCALE = 6
PRICE_SCALE = 10
CREDIT_QUANTUM = Decimal(1).scaleb(-CREDIT_SCALE)
# Largest magnitudes a signed 64-bit FixedDecimal column can hold.
MAX_CREDIT_AMOUNT = Decimal(2**63 - 1).scaleb(-CREDIT_SCALE)
MAX_PRICE = Decimal(2**63 - 1).scaleb(-PRICE_SCALE)
MAX_TOKEN_COUNT = 2**31 - 1


def _uuid() -> str:
    return uuid.uuid4().hex


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


class FixedDecimal(TypeDecorator):
    """Exact decimal stored as an integer count of ``10**-scale`` units.

    SQLite has no exact numeric type, so amounts never pass through a float on
    the way in or out. ``SUM()`` over these columns stays an integer sum and is
    converted back with the same scale.
    """

    impl = BigInteger
    cache_ok = True

    def __init__(self, scale: int) -> None:
        super().__init__()
        self.scale = scale
        self._factor = Decimal(10) ** scale
        self._quantum = Decimal(1).scaleb(-scale)

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if isinstance(value, float):
            raise TypeError("FixedDecimal columns do not accept float values")
        units = (Decimal(value) * self._factor).quantize(Decimal(1), rounding=ROUND_HALF_UP)
        return int(units)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return (Decimal(int(value)) / self._factor).quantize(self._quantum)


class TransactionKind(str, Enum):
    purchase = "purchase"
    usage_debit = "usage-debit"
    adjustment = "adjustment"


class UsageStatus(str, Enum):
    charged = "charged"
    free = "free"
    uncollectible = "uncollectible"


class Account(Base):
    __tablename__ = "billing_accounts"

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    balance: Mapped[Decimal] = mapped_column(FixedDecimal(CREDIT_SCALE), default=Decimal("0"))
    daily_limit: Mapped[Decimal | None] = mapped_column(FixedDecimal(CREDIT_SCALE), nullable=True)
    monthly_limit: Mapped[Decimal | None] = mapped_column(FixedDecimal(CREDIT_SCALE), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_now)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_now)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (Index("ix_credit_transactions_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(128), ForeignKey("billing_accounts.user_id"), index=True)
    amount: Mapped[Decimal] = mapped_column(FixedDecimal(CREDIT_SCALE))
    kind: Mapped[str] = mapped_column(String(16), index=True)
    description: Mapped[str] = mapped_column(Text, default="")
    balance_after: Mapped[Decimal] = mapped_column(FixedDecimal(CREDIT_SCALE))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_now)


class PricingRule(Base):
    __tablename__ = "pricing_rules"
    __table_args__ = (Index("ix_pricing_rules_lookup", "provider", "model_name", "is_active"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    provider: Mapped[str] = mapped_column(String(64))
    model_name: Mapped[str] = mapped_column(String(128))
    input_token_price: Mapped[Decimal] = mapped_column(FixedDecimal(PRICE_SCALE))
    output_token_price: Mapped[Decimal] = mapped_column(FixedDecimal(PRICE_SCALE))
    base_price: Mapped[Decimal | None] = mapped_column(FixedDecimal(PRICE_SCALE), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    effective_from: Mapped[dt.datetime] = mapped_column(DateTime, default=_now)
    effective_to: Mapped[dt.datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_now)


class UsageRecord(Base):
    __tablename__ = "usage_records"
    __table_args__ = (Index("ix_usage_records_user_created", "user_id", "created_at"),)

    id: Mapped[str] = mapped_column(String(32), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(128), index=True)
    provider: Mapped[str] = mapped_column(String(64))
    model_name: Mapped[str] = mapped_column(String(128))
    input_tokens: Mapped[int] = mapped_column(Integer, default=0)
    output_tokens: Mapped[int] = mapped_column(Integer, default=0)
    total_tokens: Mapped[int] = mapped_column(Integer, default=0)
    input_cost: Mapped[Decimal] = mapped_column(FixedDecimal(CREDIT_SCALE), default=Decimal("0"))
    output_cost: Mapped[Decimal] = mapped_column(FixedDecimal(CREDIT_SCALE), default=Decimal("0"))
    total_cost: Mapped[Decimal] = mapped_column(FixedDecimal(CREDIT_SCALE), default=Decimal("0"))
    status: Mapped[str] = mapped_column(String(16), default=UsageStatus.charged.value, index=True)

    pricing_rule_id: Mapped[str | None] = mapped_column(String(32), nullable=True)
    pricing_source: Mapped[str] = mapped_column(String(32), default="rule")
    transaction_id: Mapped[str | None] = mapped_column(
        String(32), ForeignKey("credit_transactions.id"), nullable=True, unique=True
    )

    conversation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    endpoint: Mapped[str | None] = mapped_column(String(255), nullable=True)
    request_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[dt.datetime] = mapped_column(DateTime, default=_now)
