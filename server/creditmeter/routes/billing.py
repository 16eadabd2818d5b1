from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from server.creditmeter.billing.errors import InvalidQuery
from server.creditmeter.billing.service import BillingService
from server.creditmeter.core.config import Settings
from server.creditmeter.core.rate_limit import enforce_rate_limit
from server.creditmeter.core.security import require_user_id

router = APIRouter(prefix="/billing")


class CreditRequest(BaseModel):
    # Left untyped so malformed amounts surface as InvalidAmount (400), not a schema error.
    amount: Any = None
    description: str | None = None


class CheckRequest(BaseModel):
    provider: str
    model: str
    input_tokens: Any = None
    output_tokens: Any = None
    messages: list[Any] | None = None


def get_billing(request: Request) -> BillingService:
    return request.app.state.billing


def _rate_limit(request: Request) -> None:
    settings: Settings = request.app.state.settings
    enforce_rate_limit(
        request,
        settings=settings,
        key="billing-api",
        limit=settings.rate_limit_api,
        window_seconds=settings.rate_limit_window_seconds,
    )


def _int_param(raw: str | None, *, name: str, default: int) -> int:
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as e:
        raise InvalidQuery(f"{name} must be an integer.") from e


@router.post("/credits")
def add_credits(
    request: Request,
    body: CreditRequest,
    user_id: str = Depends(require_user_id),
    billing: BillingService = Depends(get_billing),
):
    _rate_limit(request)
    entry = billing.credit(user_id, body.amount, description=(body.description or "").strip() or None)
    info = billing.get_user_billing_info(user_id)
    return {
        "message": "Credits added successfully",
        "transaction_id": entry.transaction_id,
        "billing": info.to_dict(),
    }


@router.get("/info")
def billing_info(
    request: Request,
    user_id: str = Depends(require_user_id),
    billing: BillingService = Depends(get_billing),
):
    _rate_limit(request)
    info = billing.get_user_billing_info(user_id)
    breakdown = billing.get_usage_breakdown(user_id, window_days=info.window_days)
    return {
        "billing": info.to_dict(),
        "usage": {
            "summary": info.recent_usage.to_dict(),
            "breakdown": [item.to_dict() for item in breakdown],
        },
    }


@router.get("/usage")
def usage_history(
    request: Request,
    days: str | None = None,
    page: str | None = None,
    limit: str | None = None,
    user_id: str = Depends(require_user_id),
    billing: BillingService = Depends(get_billing),
):
    _rate_limit(request)
    settings: Settings = request.app.state.settings
    result = billing.list_usage(
        user_id,
        window_days=_int_param(days, name="days", default=settings.usage_window_days),
        page=_int_param(page, name="page", default=1),
        limit=_int_param(limit, name="limit", default=settings.usage_page_size),
    )
    return result.to_dict()


@router.get("/transactions")
def transaction_history(
    request: Request,
    page: str | None = None,
    limit: str | None = None,
    user_id: str = Depends(require_user_id),
    billing: BillingService = Depends(get_billing),
):
    _rate_limit(request)
    settings: Settings = request.app.state.settings
    result = billing.list_transactions(
        user_id,
        page=_int_param(page, name="page", default=1),
        limit=_int_param(limit, name="limit", default=settings.usage_page_size),
    )
    return result.to_dict()


@router.post("/check")
def check_usage(
    request: Request,
    body: CheckRequest,
    user_id: str = Depends(require_user_id),
    billing: BillingService = Depends(get_billing),
):
    _rate_limit(request)
    check = billing.check_usage_limit(
        user_id,
        provider=body.provider,
        model_name=body.model,
        input_tokens=body.input_tokens,
        output_tokens=body.output_tokens,
        messages=body.messages,
    )
    return check.to_dict()
