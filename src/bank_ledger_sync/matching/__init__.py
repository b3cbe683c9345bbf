"""Matching engine, settlement passes and transfer detection."""

from .engine import ReconciliationEngine
from .settlement import CreditCardSettlementMatcher
from .strategies import (
    SettlementPass,
    ReferenceSettlement,
    BillingCycleSettlement,
    StaticRuleSettlement,
)
from .transfers import TransferPairMatcher

__all__ = [
    "ReconciliationEngine",
    "CreditCardSettlementMatcher",
    "SettlementPass",
    "ReferenceSettlement",
    "BillingCycleSettlement",
    "StaticRuleSettlement",
    "TransferPairMatcher",
]
