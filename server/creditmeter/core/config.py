from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name)
    if value is None:
        return default
    value = value.strip()
    return value if value else default


def _env_int(name: str, default: int, *, min_value: int | None = None, max_value: int | None = None) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except Exception as e:
            raise ValueError(f"Invalid integer value for {name}: {raw!r}") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value} (got {value})")
    if max_value is not None and value > max_value:
        raise ValueError(f"{name} must be <= {max_value} (got {value})")
    return value


def _env_float(name: str, default: float, *, min_value: float | None = None, max_value: float | None = None) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        value = float(default)
    else:
        try:
            value = float(raw)
        except Exception as e:
            raise ValueError(f"Invalid float value for {name}: {raw!r}") from e
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value} (got {value})")
    if max_value is not None and value > max_value:
        raise ValueError(f"{name} must be <= {max_value} (got {value})")
    return value


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "y", "on"}:
        return True
    if value in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {raw!r}")


def _env_decimal(name: str, default: str | None, *, min_value: Decimal | None = None) -> Decimal | None:
    # Money settings are parsed straight from the string form; never via float.
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        if default is None:
            return None
        raw = default
    try:
        value = Decimal(raw.strip())
    except InvalidOperation as e:
        raise ValueError(f"Invalid decimal value for {name}: {raw!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid decimal value for {name}: {raw!r}")
    if min_value is not None and value < min_value:
        raise ValueError(f"{name} must be >= {min_value} (got {value})")
    return value


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    value = _env_str(name, default).lower()
    if value not in choices:
        options = ", ".join(repr(c) for c in sorted(choices))
        raise ValueError(f"{name} must be one of {options} (got {value!r}).")
    return value


@dataclass(frozen=True)
class Settings:
    db_url: str
    log_level: str
    max_body_mb: int
    trust_proxy: bool
    user_header: str

    allow_overdraft: bool
    pricing_fallback: str
    default_input_price: Decimal
    default_output_price: Decimal
    default_base_price: Decimal | None
    insufficient_credits_policy: str
    signup_credits: Decimal
    default_daily_limit: Decimal | None
    default_monthly_limit: Decimal | None

    usage_window_days: int
    usage_page_size: int
    usage_max_page_size: int
    estimate_output_tokens: int

    db_retry_attempts: int
    db_retry_backoff_seconds: float

    rate_limit_enabled: bool
    rate_limit_window_seconds: int
    rate_limit_api: int

    @classmethod
    def from_env(cls) -> "Settings":
        db_url = _env_str("CREDITMETER_DB_URL", "sqlite:///./data/creditmeter.db")
        log_level = _env_str("CREDITMETER_LOG_LEVEL", "INFO")
        max_body_mb = _env_int("CREDITMETER_MAX_BODY_MB", 1, min_value=1, max_value=100)
        trust_proxy = _env_bool("CREDITMETER_TRUST_PROXY", False)
        user_header = _env_str("CREDITMETER_USER_HEADER", "x-user-id").lower()

        allow_overdraft = _env_bool("CREDITMETER_ALLOW_OVERDRAFT", False)
        pricing_fallback = _env_choice("CREDITMETER_PRICING_FALLBACK", "reject", {"reject", "zero", "default"})
        default_input_price = _env_decimal("CREDITMETER_DEFAULT_INPUT_PRICE", "0", min_value=Decimal("0"))
        default_output_price = _env_decimal("CREDITMETER_DEFAULT_OUTPUT_PRICE", "0", min_value=Decimal("0"))
        default_base_price = _env_decimal("CREDITMETER_DEFAULT_BASE_PRICE", None, min_value=Decimal("0"))
        if pricing_fallback == "default" and not (default_input_price or default_output_price or default_base_price):
            raise ValueError(
                "CREDITMETER_PRICING_FALLBACK=default requires CREDITMETER_DEFAULT_INPUT_PRICE, "
                "CREDITMETER_DEFAULT_OUTPUT_PRICE or CREDITMETER_DEFAULT_BASE_PRICE."
            )
        insufficient_credits_policy = _env_choice(
            "CREDITMETER_INSUFFICIENT_CREDITS_POLICY", "reject", {"reject", "uncollectible"}
        )
        signup_credits = _env_decimal("CREDITMETER_SIGNUP_CREDITS", "0", min_value=Decimal("0"))
        default_daily_limit = _env_decimal("CREDITMETER_DEFAULT_DAILY_LIMIT", None, min_value=Decimal("0"))
        default_monthly_limit = _env_decimal("CREDITMETER_DEFAULT_MONTHLY_LIMIT", None, min_value=Decimal("0"))

        usage_window_days = _env_int("CREDITMETER_USAGE_WINDOW_DAYS", 30, min_value=1, max_value=3650)
        usage_max_page_size = _env_int("CREDITMETER_USAGE_MAX_PAGE_SIZE", 100, min_value=1, max_value=1000)
        usage_page_size = _env_int("CREDITMETER_USAGE_PAGE_SIZE", 20, min_value=1, max_value=usage_max_page_size)
        estimate_output_tokens = _env_int("CREDITMETER_ESTIMATE_OUTPUT_TOKENS", 1000, min_value=0, max_value=1_000_000)

        db_retry_attempts = _env_int("CREDITMETER_DB_RETRY_ATTEMPTS", 3, min_value=1, max_value=10)
        db_retry_backoff_seconds = _env_float(
            "CREDITMETER_DB_RETRY_BACKOFF_SECONDS", 0.05, min_value=0.0, max_value=5.0
        )

        rate_limit_enabled = _env_bool("CREDITMETER_RATE_LIMIT_ENABLED", True)
        rate_limit_window_seconds = _env_int("CREDITMETER_RATE_LIMIT_WINDOW_SECONDS", 60, min_value=1, max_value=3600)
        rate_limit_api = _env_int("CREDITMETER_RATE_LIMIT_API", 120, min_value=1, max_value=5000)

        return cls(
            db_url=db_url,
            log_level=log_level,
            max_body_mb=max_body_mb,
            trust_proxy=trust_proxy,
            user_header=user_header,
            allow_overdraft=allow_overdraft,
            pricing_fallback=pricing_fallback,
            default_input_price=default_input_price,
            default_output_price=default_output_price,
            default_base_price=default_base_price,
            insufficient_credits_policy=insufficient_credits_policy,
            signup_credits=signup_credits,
            default_daily_limit=default_daily_limit,
            default_monthly_limit=default_monthly_limit,
            usage_window_days=usage_window_days,
            usage_page_size=usage_page_size,
            usage_max_page_size=usage_max_page_size,
            estimate_output_tokens=estimate_output_tokens,
            db_retry_attempts=db_retry_attempts,
            db_retry_backoff_seconds=db_retry_backoff_seconds,
            rate_limit_enabled=rate_limit_enabled,
            rate_limit_window_seconds=rate_limit_window_seconds,
            rate_limit_api=rate_limit_api,
        )
