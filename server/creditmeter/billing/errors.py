from __future__ import annotations


class BillingError(Exception):
    """Base class for ledger failures surfaced to callers.

    ``status_code`` is the HTTP status the web layer answers with and
    ``retryable`` tells clients whether trying again later can succeed.
    """

    code = "billing_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.default_message())
        self.message = str(self)

    @classmethod
    def default_message(cls) -> str:
        return "Billing request failed."

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code, "retryable": self.retryable}


class InvalidAmount(BillingError):
    code = "invalid_amount"

    @classmethod
    def default_message(cls) -> str:
        return "Amount must be greater than zero."


class InvalidUsage(BillingError):
    code = "invalid_usage"

    @classmethod
    def default_message(cls) -> str:
        return "Token counts must be non-negative integers."


class InsufficientCredits(BillingError):
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, message: str | None = None, *, balance=None, required=None) -> None:
        super().__init__(message)
        self.balance = balance
        self.required = required

    @classmethod
    def default_message(cls) -> str:
        return "Insufficient credits."


class PricingRuleNotFound(BillingError):
    code = "pricing_rule_not_found"
    status_code = 404

    def __init__(self, provider: str, model_name: str) -> None:
        super().__init__(f"No active pricing rule for {provider}/{model_name}.")
        self.provider = provider
        self.model_name = model_name


class PricingUnavailable(BillingError):
    code = "pricing_unavailable"
    status_code = 422

    @classmethod
    def default_message(cls) -> str:
        return "Pricing is not available for this model."


class AccountNotFound(BillingError):
    code = "account_not_found"
    status_code = 404

    def __init__(self, user_id: str) -> None:
        super().__init__("Billing account not found.")
        self.user_id = user_id


class InternalError(BillingError):
    code = "internal_error"
    status_code = 503
    retryable = True

    @classmethod
    def default_message(cls) -> str:
        return "Billing is temporarily unavailable. Try again later."


class InvalidQuery(BillingError):
    code = "invalid_query"

    @classmethod
    def default_message(cls) -> str:
        return "Invalid query parameters."
