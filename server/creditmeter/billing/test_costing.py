import unittest
from decimal import Decimal

from server.creditmeter.billing.costing import (
    PriceQuote,
    compute_cost,
    estimate_input_tokens,
    format_credits,
    parse_amount,
)
from server.creditmeter.billing.errors import InvalidAmount, InvalidUsage


def _quote(input_price: str, output_price: str, base_price: str | None = None) -> PriceQuote:
    return PriceQuote(
        input_token_price=Decimal(input_price),
        output_token_price=Decimal(output_price),
        base_price=Decimal(base_price) if base_price is not None else None,
        source="rule",
    )


class TestComputeCost(unittest.TestCase):
    def test_prices_are_per_thousand_tokens(self):
        cost = compute_cost(quote=_quote("0.0014", "0.0028"), input_tokens=1000, output_tokens=500)
        self.assertEqual(cost.input_cost, Decimal("0.001400"))
        self.assertEqual(cost.output_cost, Decimal("0.001400"))
        self.assertEqual(cost.total_cost, Decimal("0.002800"))

    def test_base_price_is_added_once(self):
        cost = compute_cost(quote=_quote("0.03", "0.06", "0.01"), input_tokens=2000, output_tokens=1000)
        self.assertEqual(cost.total_cost, Decimal("0.130000"))

    def test_total_is_rounded_once_half_up(self):
        # 1 * 0.0015 / 1000 = 0.0000015 for each side; rounding the parts first would give 0.000004.
        cost = compute_cost(quote=_quote("0.0015", "0.0015"), input_tokens=1, output_tokens=1)
        self.assertEqual(cost.total_cost, Decimal("0.000003"))

        cost = compute_cost(quote=_quote("0.0005", "0"), input_tokens=1, output_tokens=0)
        self.assertEqual(cost.total_cost, Decimal("0.000001"))

    def test_zero_tokens_cost_nothing(self):
        cost = compute_cost(quote=_quote("0.03", "0.06"), input_tokens=0, output_tokens=0)
        self.assertEqual(cost.total_cost, Decimal("0"))

    def test_negative_or_non_integer_tokens_are_rejected(self):
        with self.assertRaises(InvalidUsage):
            compute_cost(quote=_quote("0.03", "0.06"), input_tokens=-1, output_tokens=0)
        with self.assertRaises(InvalidUsage):
            compute_cost(quote=_quote("0.03", "0.06"), input_tokens=10, output_tokens=1.5)
        with self.assertRaises(InvalidUsage):
            compute_cost(quote=_quote("0.03", "0.06"), input_tokens=True, output_tokens=0)

    def test_oversized_usage_is_rejected(self):
        with self.assertRaises(InvalidUsage):
            compute_cost(quote=_quote("0.03", "0.06"), input_tokens=2**31, output_tokens=0)
        with self.assertRaises(InvalidUsage):
            compute_cost(quote=_quote("900000000", "0"), input_tokens=2**31 - 1, output_tokens=0)


class TestParseAmount(unittest.TestCase):
    def test_valid_amounts(self):
        self.assertEqual(parse_amount("12.34"), Decimal("12.340000"))
        self.assertEqual(parse_amount(5), Decimal("5.000000"))
        self.assertEqual(parse_amount("0.0000005"), Decimal("0.000001"))

    def test_invalid_amounts(self):
        for raw in (None, "", "abc", "-1", 0, "0.0000004", "NaN", "Infinity", True):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidAmount):
                    parse_amount(raw)

    def test_amounts_beyond_ledger_range(self):
        self.assertEqual(parse_amount("9223372036854.775807"), Decimal("9223372036854.775807"))
        for raw in ("9223372036854.775808", 1e20, "1e30", "-1e40"):
            with self.subTest(raw=raw):
                with self.assertRaises(InvalidAmount):
                    parse_amount(raw)


class TestHelpers(unittest.TestCase):
    def test_format_credits(self):
        self.assertEqual(format_credits(Decimal("99.9972")), "99.997200")
        self.assertEqual(format_credits(None), "0.000000")

    def test_estimate_input_tokens_rounds_up(self):
        self.assertEqual(estimate_input_tokens([]), 0)
        self.assertEqual(estimate_input_tokens(["abcd"]), 1)
        self.assertEqual(estimate_input_tokens(["abcde", "xyz"]), 2)


if __name__ == "__main__":
    unittest.main()
