"""Feature rules evaluated against a plan's feature map."""
from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

from ..subscriptions.models import Plan, PlanType
from .models import Feature


def _user_limit(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def _more_users_than(limit: int) -> Callable[[Mapping[str, Any], Plan], bool]:
    def rule(features: Mapping[str, Any], plan: Plan) -> bool:
        users = features.get("users")
        if users == "unlimited":
            return True
        count = _user_limit(users)
        return count is not None and count > limit

    return rule


FEATURE_RULES: Dict[Feature, Callable[[Mapping[str, Any], Plan], bool]] = {
    Feature.ADVANCED_ANALYTICS: lambda f, plan: f.get("analytics") in ("advanced", "premium"),
    Feature.PREMIUM_ANALYTICS: lambda f, plan: f.get("analytics") == "premium",
    Feature.REAL_TIME_ANALYTICS: lambda f, plan: f.get("analytics") in ("advanced", "premium"),
    Feature.UNLIMITED_USERS: _more_users_than(20),
    Feature.USER_ROLES: lambda f, plan: f.get("users") != "up to 5",
    Feature.TEAM_MANAGEMENT: _more_users_than(10),
    Feature.PRIORITY_SUPPORT: lambda f, plan: f.get("support") in ("priority", "24/7 dedicated"),
    Feature.DEDICATED_SUPPORT: lambda f, plan: f.get("support") == "24/7 dedicated",
    Feature.PHONE_SUPPORT: lambda f, plan: f.get("support") != "email",
    Feature.API_ACCESS: lambda f, plan: f.get("api_access") is True or plan.plan_type != PlanType.MONTHLY,
    Feature.CUSTOM_BRANDING: lambda f, plan: f.get("customization") == "full" or f.get("custom_branding") is True,
    Feature.WHITE_LABEL: lambda f, plan: f.get("customization") == "full",
    Feature.INTEGRATIONS: lambda f, plan: f.get("integrations") is True or plan.plan_type != PlanType.MONTHLY,
    Feature.UNLIMITED_TABLES: lambda f, plan: f.get("tables") == "unlimited",
    Feature.MULTI_LOCATION: lambda f, plan: f.get("multi_location") is True or f.get("customization") == "full",
    Feature.ADVANCED_REPORTING: lambda f, plan: f.get("analytics") != "basic",
    Feature.DATA_EXPORT: lambda f, plan: f.get("data_export") is True or plan.plan_type != PlanType.MONTHLY,
    Feature.BULK_OPERATIONS: lambda f, plan: f.get("bulk_operations") is True or plan.plan_type == PlanType.CUSTOM,
}


def plan_grants(plan: Plan, feature: str, *, strict: bool = False) -> bool:
    """Return whether ``plan`` includes ``feature``.

    Known features use their rule. Unknown names fall back to the truthiness
    of the matching feature-map entry, and are otherwise allowed unless
    ``strict`` is set.
    """

    features = plan.features or {}
    try:
        known = Feature(feature)
    except ValueError:
        if feature in features:
            return bool(features[feature])
        return not strict
    return FEATURE_RULES[known](features, plan)


__all__ = ["FEATURE_RULES", "plan_grants"]
