from __future__ import annotations

__all__ = [
    "BillingService",
    "CreditLedger",
    "PricingResolver",
    "UsageRecorder",
    "BillingAggregator",
    "SpendLimiter",
    "compute_cost",
]

from server.creditmeter.billing.service import BillingService
from server.creditmeter.billing.ledger import CreditLedger
from server.creditmeter.billing.pricing import PricingResolver
from server.creditmeter.billing.usage import UsageRecorder
from server.creditmeter.billing.reporting import BillingAggregator
from server.creditmeter.billing.limits import SpendLimiter
from server.creditmeter.billing.costing import compute_cost
