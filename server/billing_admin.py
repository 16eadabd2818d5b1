from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
from decimal import Decimal, InvalidOperation

from dotenv import load_dotenv

from server.creditmeter.billing.costing import format_credits
from server.creditmeter.billing.errors import BillingError
from server.creditmeter.billing.pricing import rule_to_dict
from server.creditmeter.billing.service import BillingService
from server.creditmeter.core.cli import add_runtime_args, apply_runtime_overrides
from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db
from server.creditmeter.core.models import TransactionKind


def _decimal_arg(raw: str) -> Decimal:
    try:
        value = Decimal(raw)
    except InvalidOperation as e:
        raise argparse.ArgumentTypeError(f"not a decimal: {raw!r}") from e
    if not value.is_finite():
        raise argparse.ArgumentTypeError(f"not a decimal: {raw!r}")
    return value


def _datetime_arg(raw: str) -> dt.datetime:
    try:
        value = dt.datetime.fromisoformat(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"not an ISO-8601 timestamp: {raw!r}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.UTC)
    return value


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Billing ledger administration.")
    add_runtime_args(parser)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("seed-pricing", help="Create the built-in pricing rules for keys that have none.")
    sub.add_parser("list-prices", help="Print the active pricing rules.")

    price = sub.add_parser("set-price", help="Publish a new pricing rule (prices per 1000 tokens).")
    price.add_argument("provider")
    price.add_argument("model_name")
    price.add_argument("input_price", type=_decimal_arg)
    price.add_argument("output_price", type=_decimal_arg)
    price.add_argument("--base-price", type=_decimal_arg, default=None, help="Flat fee per request.")
    price.add_argument("--effective-from", type=_datetime_arg, default=None, help="ISO-8601 start time.")

    grant = sub.add_parser("grant", help="Credit a user's balance.")
    grant.add_argument("user_id")
    grant.add_argument("amount")
    grant.add_argument("--description", default="Manual grant")
    grant.add_argument(
        "--kind",
        choices=[TransactionKind.purchase.value, TransactionKind.adjustment.value],
        default=TransactionKind.adjustment.value,
    )

    limits = sub.add_parser("set-limits", help="Set a user's daily and monthly spend limits.")
    limits.add_argument("user_id")
    limits.add_argument("--daily", type=_decimal_arg, default=None)
    limits.add_argument("--monthly", type=_decimal_arg, default=None)

    rec = sub.add_parser("reconcile", help="Compare balances with their transaction sums.")
    rec.add_argument("--user", default=None, help="Only this user id.")

    return parser


def _print(payload) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


def run(args: argparse.Namespace, billing: BillingService) -> int:
    if args.command == "seed-pricing":
        created = billing.seed_default_pricing()
        _print({"created": [rule_to_dict(rule) for rule in created]})
        return 0

    if args.command == "list-prices":
        _print({"rules": [rule_to_dict(rule) for rule in billing.list_pricing_rules()]})
        return 0

    if args.command == "set-price":
        rule = billing.publish_pricing_rule(
            provider=args.provider,
            model_name=args.model_name,
            input_token_price=args.input_price,
            output_token_price=args.output_price,
            base_price=args.base_price,
            effective_from=args.effective_from,
        )
        _print(rule_to_dict(rule))
        return 0

    if args.command == "grant":
        entry = billing.credit(args.user_id, args.amount, description=args.description, kind=args.kind)
        _print(
            {
                "user_id": entry.user_id,
                "transaction_id": entry.transaction_id,
                "amount": format_credits(entry.amount),
                "balance": format_credits(entry.balance),
            }
        )
        return 0

    if args.command == "set-limits":
        account = billing.set_limits(args.user_id, daily_limit=args.daily, monthly_limit=args.monthly)
        _print(
            {
                "user_id": account.user_id,
                "daily_limit": format_credits(account.daily_limit) if account.daily_limit is not None else None,
                "monthly_limit": format_credits(account.monthly_limit) if account.monthly_limit is not None else None,
            }
        )
        return 0

    if args.command == "reconcile":
        results = [billing.reconcile(args.user)] if args.user else billing.reconcile_all()
        _print(
            {
                "accounts": [
                    {
                        "user_id": r.user_id,
                        "ok": r.ok,
                        "balance": format_credits(r.balance),
                        "transaction_sum": format_credits(r.transaction_sum),
                        "transaction_count": r.transaction_count,
                    }
                    for r in results
                ],
                "mismatches": sum(1 for r in results if not r.ok),
            }
        )
        return 0 if all(r.ok for r in results) else 1

    print(f"unknown command: {args.command}")
    return 2


def main(argv: list[str] | None = None) -> int:
    load_dotenv()
    args = _parser().parse_args(argv)
    apply_runtime_overrides(args)
    settings = Settings.from_env()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    init_db(settings)
    try:
        return run(args, BillingService(settings))
    except BillingError as exc:
        print(f"error: {exc.message}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
