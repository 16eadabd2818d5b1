import datetime as dt
import logging
import tempfile
import unittest
from dataclasses import replace
from decimal import Decimal
from pathlib import Path

from server.creditmeter.billing.errors import InvalidAmount, PricingRuleNotFound
from server.creditmeter.billing.pricing import DEFAULT_PRICING_RULES, PricingResolver
from server.creditmeter.core.config import Settings
from server.creditmeter.core.db import init_db, session_scope
from server.creditmeter.core.models import PricingRule

T0 = dt.datetime(2026, 3, 1, 12, 0, tzinfo=dt.UTC)


class _Clock:
    def __init__(self, now: dt.datetime) -> None:
        self.now = now

    def __call__(self) -> dt.datetime:
        return self.now


class TestPricingResolver(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.settings = replace(Settings.from_env(), db_url=f"sqlite:///{Path(self._tmp.name) / 'pricing.db'}")
        init_db(self.settings)
        self.clock = _Clock(T0)
        self.resolver = PricingResolver(clock=self.clock)

    def _add_rule(self, db, *, created_at: dt.datetime, input_price: str, **overrides) -> PricingRule:
        rule = PricingRule(
            provider=overrides.pop("provider", "openai"),
            model_name=overrides.pop("model_name", "gpt-4o"),
            input_token_price=Decimal(input_price),
            output_token_price=Decimal("0.06"),
            is_active=overrides.pop("is_active", True),
            effective_from=overrides.pop("effective_from", T0 - dt.timedelta(days=30)),
            created_at=created_at,
            **overrides,
        )
        db.add(rule)
        db.flush()
        return rule

    def test_conflicting_active_rules_resolve_to_latest_created(self):
        with session_scope(self.settings, write=True) as db:
            self._add_rule(db, created_at=T0 - dt.timedelta(days=2), input_price="0.03")
            newer = self._add_rule(db, created_at=T0 - dt.timedelta(days=1), input_price="0.025")

        with self.assertLogs("server.creditmeter.billing.pricing", level=logging.WARNING) as logs:
            with session_scope(self.settings) as db:
                first = self.resolver.resolve(db, "openai", "gpt-4o")
                second = self.resolver.resolve(db, "openai", "gpt-4o")

        self.assertEqual(first.id, newer.id)
        self.assertEqual(second.id, newer.id)
        self.assertEqual(first.input_token_price, Decimal("0.0250000000"))
        self.assertTrue(any("anomaly" in line for line in logs.output))

    def test_missing_rule_raises(self):
        with session_scope(self.settings) as db:
            with self.assertRaises(PricingRuleNotFound) as ctx:
                self.resolver.resolve(db, "openai", "gpt-unknown")
        self.assertEqual(ctx.exception.model_name, "gpt-unknown")

    def test_inactive_and_out_of_window_rules_are_ignored(self):
        with session_scope(self.settings, write=True) as db:
            self._add_rule(db, created_at=T0, input_price="0.01", is_active=False)
            self._add_rule(db, created_at=T0, input_price="0.02", effective_from=T0 + dt.timedelta(hours=1))
            self._add_rule(db, created_at=T0, input_price="0.03", effective_to=T0)

        with session_scope(self.settings) as db:
            with self.assertRaises(PricingRuleNotFound):
                self.resolver.resolve(db, "openai", "gpt-4o")

        self.clock.now = T0 + dt.timedelta(hours=2)
        with session_scope(self.settings) as db:
            rule = self.resolver.resolve(db, "openai", "gpt-4o")
        self.assertEqual(rule.input_token_price, Decimal("0.0200000000"))

    def test_publish_supersedes_the_active_rule(self):
        with session_scope(self.settings, write=True) as db:
            old = self.resolver.publish(
                db,
                provider="openai",
                model_name="gpt-4o",
                input_token_price=Decimal("0.03"),
                output_token_price=Decimal("0.06"),
            )

        self.clock.now = T0 + dt.timedelta(minutes=5)
        with session_scope(self.settings, write=True) as db:
            new = self.resolver.publish(
                db,
                provider="openai",
                model_name="gpt-4o",
                input_token_price=Decimal("0.025"),
                output_token_price=Decimal("0.05"),
                base_price=Decimal("0.001"),
            )

        with self.assertNoLogs("server.creditmeter.billing.pricing", level=logging.WARNING):
            with session_scope(self.settings) as db:
                resolved = self.resolver.resolve(db, "openai", "gpt-4o")
                stored_old = db.get(PricingRule, old.id)
                self.assertFalse(stored_old.is_active)
                self.assertIsNotNone(stored_old.effective_to)
        self.assertEqual(resolved.id, new.id)
        self.assertEqual(resolved.base_price, Decimal("0.0010000000"))

    def test_future_rule_takes_over_at_its_start(self):
        with session_scope(self.settings, write=True) as db:
            current = self.resolver.publish(
                db,
                provider="openai",
                model_name="gpt-4o",
                input_token_price=Decimal("0.03"),
                output_token_price=Decimal("0.06"),
            )
            future = self.resolver.publish(
                db,
                provider="openai",
                model_name="gpt-4o",
                input_token_price=Decimal("0.02"),
                output_token_price=Decimal("0.04"),
                effective_from=T0 + dt.timedelta(days=1),
            )

        with session_scope(self.settings) as db:
            self.assertEqual(self.resolver.resolve(db, "openai", "gpt-4o").id, current.id)

        self.clock.now = T0 + dt.timedelta(days=1)
        with session_scope(self.settings) as db:
            self.assertEqual(self.resolver.resolve(db, "openai", "gpt-4o").id, future.id)

    def test_publishing_earlier_future_rule_drops_later_queued_one(self):
        with session_scope(self.settings, write=True) as db:
            current = self.resolver.publish(
                db,
                provider="openai",
                model_name="gpt-4o",
                input_token_price=Decimal("0.03"),
                output_token_price=Decimal("0.06"),
            )
            later = self.resolver.publish(
                db,
                provider="openai",
                model_name="gpt-4o",
                input_token_price=Decimal("0.01"),
                output_token_price=Decimal("0.02"),
                effective_from=T0 + dt.timedelta(days=10),
            )

        with self.assertLogs("server.creditmeter.billing.pricing", level=logging.WARNING) as logs:
            with session_scope(self.settings, write=True) as db:
                sooner = self.resolver.publish(
                    db,
                    provider="openai",
                    model_name="gpt-4o",
                    input_token_price=Decimal("0.02"),
                    output_token_price=Decimal("0.04"),
                    effective_from=T0 + dt.timedelta(days=5),
                )
        self.assertTrue(any("queued" in line for line in logs.output))

        with session_scope(self.settings) as db:
            self.assertFalse(db.get(PricingRule, later.id).is_active)
            active_ids = {rule.id for rule in self.resolver.list_active(db)}
        self.assertEqual(active_ids, {current.id, sooner.id})

        expected = {1: current.id, 6: sooner.id, 11: sooner.id}
        for days, rule_id in expected.items():
            self.clock.now = T0 + dt.timedelta(days=days)
            with session_scope(self.settings) as db:
                self.assertEqual(self.resolver.resolve(db, "openai", "gpt-4o").id, rule_id, days)

    def test_republishing_at_the_same_instant_replaces_the_rule(self):
        with session_scope(self.settings, write=True) as db:
            first = self.resolver.publish(
                db,
                provider="openai",
                model_name="gpt-4o",
                input_token_price=Decimal("0.03"),
                output_token_price=Decimal("0.06"),
            )
            second = self.resolver.publish(
                db,
                provider="openai",
                model_name="gpt-4o",
                input_token_price=Decimal("0.02"),
                output_token_price=Decimal("0.04"),
            )

        with self.assertNoLogs("server.creditmeter.billing.pricing", level=logging.WARNING):
            with session_scope(self.settings) as db:
                self.assertFalse(db.get(PricingRule, first.id).is_active)
                self.assertEqual(self.resolver.resolve(db, "openai", "gpt-4o").id, second.id)

    def test_publish_rejects_prices_beyond_storage_range(self):
        with session_scope(self.settings, write=True) as db:
            with self.assertRaises(InvalidAmount):
                self.resolver.publish(
                    db,
                    provider="openai",
                    model_name="gpt-4o",
                    input_token_price=Decimal("1e12"),
                    output_token_price=Decimal("0.06"),
                )

    def test_publish_rejects_negative_prices(self):
        with session_scope(self.settings, write=True) as db:
            with self.assertRaises(InvalidAmount):
                self.resolver.publish(
                    db,
                    provider="openai",
                    model_name="gpt-4o",
                    input_token_price=Decimal("-0.01"),
                    output_token_price=Decimal("0.06"),
                )

    def test_seed_defaults_only_fills_missing_keys(self):
        with session_scope(self.settings, write=True) as db:
            self._add_rule(db, created_at=T0, input_price="0.05")
            created = self.resolver.seed_defaults(db)

        self.assertEqual(len(created), len(DEFAULT_PRICING_RULES) - 1)

        with session_scope(self.settings, write=True) as db:
            self.assertEqual(self.resolver.seed_defaults(db), [])
            active = self.resolver.list_active(db)
            gpt4o = self.resolver.resolve(db, "openai", "gpt-4o")

        self.assertEqual(len(active), len(DEFAULT_PRICING_RULES))
        self.assertEqual(gpt4o.input_token_price, Decimal("0.0500000000"))


if __name__ == "__main__":
    unittest.main()
