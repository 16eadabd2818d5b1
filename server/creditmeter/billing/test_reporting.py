import datetime as dt
import tempfile
import unittest
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

from server.creditmeter.billing.errors import InvalidQuery
from server.creditmeter.billing.service import BillingService
from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db

T0 = dt.datetime(2026, 3, 15, 12, 0, tzinfo=dt.UTC)


class _Clock:
    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now


class TestBillingAggregator(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = replace(
            Settings.from_env(),
            db_url=f"sqlite:///{Path(self._tmp.name) / 'reporting.db'}",
            allow_overdraft=False,
            usage_window_days=30,
            usage_page_size=20,
            usage_max_page_size=100,
            default_daily_limit=None,
            default_monthly_limit=None,
        )
        init_db(self.settings)
        self.clock = _Clock(T0 - dt.timedelta(days=40))
        self.billing = BillingService(self.settings, clock=self.clock)

        for provider, model_name in (("deepseek", "deepseek-chat"), ("openai", "gpt-4o-mini")):
            self.billing.publish_pricing_rule(
                provider=provider,
                model_name=model_name,
                input_token_price=Decimal("1"),
                output_token_price=Decimal("0"),
            )
        self.billing.credit("u1", "100")

        # Two records outside the 30 day window.
        for _ in range(2):
            self.clock.now += dt.timedelta(minutes=1)
            self._record()

        self.record_ids: list[str] = []
        for i in range(45):
            self.clock.now = T0 - dt.timedelta(hours=2) + dt.timedelta(minutes=i)
            model = ("openai", "gpt-4o-mini") if i % 3 == 0 else ("deepseek", "deepseek-chat")
            self.record_ids.append(self._record(*model).id)
        self.clock.now = T0

    def _record(self, provider: str = "deepseek", model_name: str = "deepseek-chat"):
        return self.billing.record_usage(
            "u1", provider=provider, model_name=model_name, input_tokens=1000, output_tokens=250
        )

    def test_second_page_of_usage(self):
        page = self.billing.list_usage("u1", window_days=30, page=2, limit=20)

        newest_first = list(reversed(self.record_ids))
        self.assertEqual([row["id"] for row in page.records], newest_first[20:40])
        self.assertEqual(page.pagination.to_dict(), {"page": 2, "limit": 20, "total": 45, "pages": 3})
        self.assertEqual(page.summary.record_count, 45)
        self.assertEqual(page.summary.total_cost, Decimal("45.000000"))
        self.assertEqual(page.summary.total_tokens, 45 * 1250)

    def test_pages_cover_every_record_once(self):
        seen: list[str] = []
        for number in range(1, 4):
            seen.extend(row["id"] for row in self.billing.list_usage("u1", page=number, limit=20).records)
        self.assertEqual(len(seen), 45)
        self.assertEqual(set(seen), set(self.record_ids))

        past_end = self.billing.list_usage("u1", page=4, limit=20)
        self.assertEqual(past_end.records, [])
        self.assertEqual(past_end.pagination.total, 45)

    def test_usage_stats_respect_the_window(self):
        self.assertEqual(self.billing.get_user_usage_stats("u1", window_days=30).record_count, 45)
        self.assertEqual(self.billing.get_user_usage_stats("u1", window_days=60).record_count, 47)

        stats = self.billing.get_user_usage_stats("u1", window_days=1)
        self.assertEqual(stats.total_input_tokens, 45_000)
        self.assertEqual(stats.total_output_tokens, 45 * 250)

    def test_breakdown_groups_by_model(self):
        breakdown = self.billing.get_usage_breakdown("u1", window_days=30)
        self.assertEqual(
            [(m.provider, m.model_name, m.stats.record_count) for m in breakdown],
            [("deepseek", "deepseek-chat", 30), ("openai", "gpt-4o-mini", 15)],
        )
        self.assertEqual(breakdown[1].to_dict()["total_cost"], "15.000000")

    def test_billing_info(self):
        info = self.billing.get_user_billing_info("u1").to_dict()
        self.assertEqual(info["balance"], "53.000000")
        self.assertTrue(info["account_exists"])
        self.assertEqual(info["spent_today"], "45.000000")
        self.assertEqual(info["spent_this_month"], "45.000000")
        self.assertIsNone(info["daily_limit"])
        self.assertEqual(info["recent_usage"]["record_count"], 45)
        self.assertEqual(info["window_days"], 30)

    def test_transactions_are_paginated_newest_first(self):
        page = self.billing.list_transactions("u1", page=1, limit=10).to_dict()
        self.assertEqual(page["pagination"], {"page": 1, "limit": 10, "total": 48, "pages": 5})
        self.assertEqual(page["transactions"][0]["kind"], "usage-debit")
        self.assertEqual(page["transactions"][0]["balance_after"], "53.000000")

        last = self.billing.list_transactions("u1", page=5, limit=10).to_dict()
        self.assertEqual(last["transactions"][-1]["kind"], "purchase")

    def test_invalid_queries(self):
        for kwargs in ({"page": 0}, {"limit": 0}, {"limit": 101}, {"window_days": 0}, {"window_days": -3}):
            with self.subTest(**kwargs):
                with self.assertRaises(InvalidQuery):
                    self.billing.list_usage("u1", **kwargs)


if __name__ == "__main__":
    unittest.main()
