"""Entitlements domain models and services."""

from .models import AccessLimitation, EntitlementDecision, FallbackBehavior, Feature
from .rules import FEATURE_RULES, plan_grants
from .service import EntitlementResolver, PlanLookup, SubscriptionLookup

__all__ = [
    "AccessLimitation",
    "EntitlementDecision",
    "EntitlementResolver",
    "FEATURE_RULES",
    "FallbackBehavior",
    "Feature",
    "PlanLookup",
    "SubscriptionLookup",
    "plan_grants",
]
