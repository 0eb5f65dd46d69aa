"""Domain models for feature entitlement decisions."""
from __future__ import annotations

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict

from ..subscriptions.models import SubscriptionStatus


class Feature(str, Enum):
    """Features with an explicit rule over the plan feature map."""

    ADVANCED_ANALYTICS = "advanced_analytics"
    PREMIUM_ANALYTICS = "premium_analytics"
    REAL_TIME_ANALYTICS = "real_time_analytics"
    UNLIMITED_USERS = "unlimited_users"
    USER_ROLES = "user_roles"
    TEAM_MANAGEMENT = "team_management"
    PRIORITY_SUPPORT = "priority_support"
    DEDICATED_SUPPORT = "dedicated_support"
    PHONE_SUPPORT = "phone_support"
    API_ACCESS = "api_access"
    CUSTOM_BRANDING = "custom_branding"
    WHITE_LABEL = "white_label"
    INTEGRATIONS = "integrations"
    UNLIMITED_TABLES = "unlimited_tables"
    MULTI_LOCATION = "multi_location"
    ADVANCED_REPORTING = "advanced_reporting"
    DATA_EXPORT = "data_export"
    BULK_OPERATIONS = "bulk_operations"


class FallbackBehavior(str, Enum):
    """What a checkpoint does when the feature is unavailable."""

    BLOCK = "block"
    LIMIT = "limit"
    DEGRADE = "degrade"

    @property
    def blocks(self) -> bool:
        return self == FallbackBehavior.BLOCK


class AccessLimitation(str, Enum):
    """Why a feature was not granted in full."""

    SUBSCRIPTION_REQUIRED = "subscription_required"
    PLAN_UPGRADE_REQUIRED = "plan_upgrade_required"


class EntitlementDecision(BaseModel):
    """Answer to "may this owner use feature X, and how"."""

    feature: str
    allowed: bool
    degraded: bool = False
    fallback: FallbackBehavior = FallbackBehavior.BLOCK
    limitation: Optional[AccessLimitation] = None
    subscription_id: Optional[str] = None
    subscription_status: Optional[SubscriptionStatus] = None
    plan_id: Optional[str] = None
    plan_name: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @property
    def has_full_access(self) -> bool:
        return self.allowed and not self.degraded


__all__ = ["AccessLimitation", "EntitlementDecision", "FallbackBehavior", "Feature"]
