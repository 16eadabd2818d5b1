import logging
import tempfile
import unittest
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

from sqlalchemy import func, select

from server.creditmeter.billing.errors import InsufficientCredits, InvalidUsage, PricingUnavailable
from server.creditmeter.billing.service import BillingService
from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db, session_scope
from server.creditmeter.core.models import CreditTransaction, UsageRecord


class TestUsageRecorder(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = replace(
            Settings.from_env(),
            db_url=f"sqlite:///{Path(self._tmp.name) / 'usage.db'}",
            allow_overdraft=False,
            pricing_fallback="reject",
            insufficient_credits_policy="reject",
        )
        init_db(self.settings)
        self.billing = BillingService(self.settings)
        self.billing.publish_pricing_rule(
            provider="deepseek",
            model_name="deepseek-chat",
            input_token_price=Decimal("0.0014"),
            output_token_price=Decimal("0.0028"),
        )

    def _service(self, **overrides) -> BillingService:
        return BillingService(replace(self.settings, **overrides))

    def _usage_count(self) -> int:
        with session_scope(self.settings) as db:
            return db.scalar(select(func.count(UsageRecord.id)))

    def test_usage_is_priced_and_debited(self):
        self.billing.credit("u1", "100.00")
        record = self.billing.record_usage(
            "u1",
            provider="deepseek",
            model_name="deepseek-chat",
            input_tokens=1000,
            output_tokens=500,
            conversation_id="conv-1",
            endpoint="/chat",
        )

        self.assertEqual(record.total_tokens, 1500)
        self.assertEqual(record.total_cost, Decimal("0.002800"))
        self.assertEqual(record.status, "charged")
        self.assertEqual(record.pricing_source, "rule")
        self.assertIsNotNone(record.pricing_rule_id)
        self.assertEqual(self.billing.get_balance("u1"), Decimal("99.997200"))

        with session_scope(self.settings) as db:
            txn = db.get(CreditTransaction, record.transaction_id)
            self.assertEqual(txn.kind, "usage-debit")
            self.assertEqual(txn.amount, Decimal("-0.002800"))
            self.assertEqual(txn.description, "usage: deepseek/deepseek-chat")
        self.assertTrue(self.billing.reconcile("u1").ok)

    def test_historical_cost_survives_price_change(self):
        self.billing.credit("u1", "10")
        first = self.billing.record_usage(
            "u1", provider="deepseek", model_name="deepseek-chat", input_tokens=1000, output_tokens=0
        )
        self.billing.publish_pricing_rule(
            provider="deepseek",
            model_name="deepseek-chat",
            input_token_price=Decimal("1"),
            output_token_price=Decimal("1"),
        )

        page = self.billing.list_usage("u1")
        stored = {row["id"]: row for row in page.records}
        self.assertEqual(stored[first.id]["total_cost"], "0.001400")

    def test_insufficient_credits_rolls_back_everything(self):
        self.billing.credit("u1", "0.001")
        with self.assertRaises(InsufficientCredits):
            self.billing.record_usage(
                "u1", provider="deepseek", model_name="deepseek-chat", input_tokens=1000, output_tokens=500
            )
        self.assertEqual(self._usage_count(), 0)
        self.assertEqual(self.billing.get_balance("u1"), Decimal("0.001000"))

    def test_uncollectible_policy_keeps_the_record(self):
        billing = self._service(insufficient_credits_policy="uncollectible")
        with self.assertLogs("server.creditmeter.billing.usage", level=logging.WARNING):
            record = billing.record_usage(
                "u1", provider="deepseek", model_name="deepseek-chat", input_tokens=1000, output_tokens=500
            )
        self.assertEqual(record.status, "uncollectible")
        self.assertIsNone(record.transaction_id)
        self.assertEqual(record.total_cost, Decimal("0.002800"))
        self.assertEqual(billing.get_balance("u1"), Decimal("0"))

    def test_uncollectible_usage_is_reported_apart_from_charged_cost(self):
        billing = self._service(insufficient_credits_policy="uncollectible")
        with self.assertLogs("server.creditmeter.billing.usage", level=logging.WARNING):
            billing.record_usage(
                "u1", provider="deepseek", model_name="deepseek-chat", input_tokens=1000, output_tokens=500
            )
        billing.credit("u1", "1")
        billing.record_usage(
            "u1", provider="deepseek", model_name="deepseek-chat", input_tokens=1000, output_tokens=500
        )

        stats = billing.get_user_usage_stats("u1")
        self.assertEqual(stats.record_count, 2)
        self.assertEqual(stats.total_cost, Decimal("0.002800"))
        self.assertEqual(stats.uncollectible_cost, Decimal("0.002800"))
        self.assertEqual(stats.to_dict()["uncollectible_cost"], "0.002800")

        (model,) = billing.get_usage_breakdown("u1")
        self.assertEqual(model.stats.total_cost, Decimal("0.002800"))
        self.assertEqual(model.stats.uncollectible_cost, Decimal("0.002800"))

    def test_missing_pricing_rejects_by_default(self):
        self.billing.credit("u1", "10")
        with self.assertRaises(PricingUnavailable):
            self.billing.record_usage("u1", provider="acme", model_name="mystery", input_tokens=10, output_tokens=10)
        self.assertEqual(self._usage_count(), 0)

    def test_zero_fallback_records_free_usage(self):
        billing = self._service(pricing_fallback="zero")
        with self.assertLogs("server.creditmeter.billing.usage", level=logging.WARNING):
            record = billing.record_usage("u1", provider="acme", model_name="mystery", input_tokens=10, output_tokens=10)
        self.assertEqual(record.status, "free")
        self.assertEqual(record.pricing_source, "fallback-zero")
        self.assertEqual(record.total_cost, Decimal("0"))
        self.assertIsNone(record.transaction_id)
        self.assertEqual(billing.list_transactions("u1").pagination.total, 0)

    def test_default_fallback_charges_configured_rates(self):
        billing = self._service(
            pricing_fallback="default",
            default_input_price=Decimal("0.01"),
            default_output_price=Decimal("0.02"),
            default_base_price=Decimal("0.001"),
        )
        billing.credit("u1", "1")
        record = billing.record_usage("u1", provider="acme", model_name="mystery", input_tokens=1000, output_tokens=1000)
        self.assertEqual(record.pricing_source, "fallback-default")
        self.assertEqual(record.total_cost, Decimal("0.031000"))
        self.assertEqual(billing.get_balance("u1"), Decimal("0.969000"))

    def test_zero_tokens_are_free(self):
        record = self.billing.record_usage(
            "u1", provider="deepseek", model_name="deepseek-chat", input_tokens=0, output_tokens=0
        )
        self.assertEqual(record.status, "free")
        self.assertIsNone(record.transaction_id)

    def test_invalid_events_are_rejected(self):
        with self.assertRaises(InvalidUsage):
            self.billing.record_usage("u1", provider="deepseek", model_name="deepseek-chat", input_tokens=-1, output_tokens=0)
        with self.assertRaises(InvalidUsage):
            self.billing.record_usage("u1", provider=" ", model_name="deepseek-chat", input_tokens=1, output_tokens=0)
        self.assertEqual(self._usage_count(), 0)

    def test_estimate_cost_uses_active_rule(self):
        cost = self.billing.estimate_cost("deepseek", "deepseek-chat", input_tokens=1000, output_tokens=500)
        self.assertEqual(cost.total_cost, Decimal("0.002800"))


if __name__ == "__main__":
    unittest.main()
