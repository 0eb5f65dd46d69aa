"""Resolves feature entitlements from committed subscription state."""
from __future__ import annotations

import logging
from typing import Optional, Protocol, Union

from ..subscriptions.models import Owner, Plan, Subscription
from .models import AccessLimitation, EntitlementDecision, FallbackBehavior, Feature
from .rules import plan_grants

logger = logging.getLogger(__name__)


class SubscriptionLookup(Protocol):
    """Read access to an owner's most recent subscription."""

    def latest_for_owner(self, owner: Owner) -> Optional[Subscription]:
        ...


class PlanLookup(Protocol):
    """Read access to plans."""

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...


class EntitlementResolver:
    """Answers feature checks; never mutates subscriptions."""

    def __init__(self, subscriptions: SubscriptionLookup, plans: PlanLookup) -> None:
        self._subscriptions = subscriptions
        self._plans = plans

    def resolve(
        self,
        owner: Optional[Owner],
        feature: Union[Feature, str],
        *,
        fallback: FallbackBehavior = FallbackBehavior.BLOCK,
        strict: bool = False,
    ) -> EntitlementDecision:
        feature_name = feature.value if isinstance(feature, Feature) else str(feature)

        subscription = self._subscriptions.latest_for_owner(owner) if owner else None
        if subscription is None or not subscription.is_live:
            return self._unavailable(
                feature_name,
                fallback,
                AccessLimitation.SUBSCRIPTION_REQUIRED,
                subscription=subscription,
            )

        plan = self._plans.get_plan(subscription.plan_id)
        if plan is None:
            logger.warning(
                "Subscription references a missing plan",
                extra={"subscription_id": subscription.subscription_id, "plan_id": subscription.plan_id},
            )
            return self._unavailable(
                feature_name,
                fallback,
                AccessLimitation.PLAN_UPGRADE_REQUIRED,
                subscription=subscription,
            )

        if not plan_grants(plan, feature_name, strict=strict):
            return self._unavailable(
                feature_name,
                fallback,
                AccessLimitation.PLAN_UPGRADE_REQUIRED,
                subscription=subscription,
                plan=plan,
            )

        logger.debug(
            "Feature access granted",
            extra={"feature": feature_name, "subscription_id": subscription.subscription_id},
        )
        return EntitlementDecision(
            feature=feature_name,
            allowed=True,
            fallback=fallback,
            subscription_id=subscription.subscription_id,
            subscription_status=subscription.status,
            plan_id=plan.plan_id,
            plan_name=plan.name,
        )

    @staticmethod
    def _unavailable(
        feature: str,
        fallback: FallbackBehavior,
        limitation: AccessLimitation,
        *,
        subscription: Optional[Subscription] = None,
        plan: Optional[Plan] = None,
    ) -> EntitlementDecision:
        return EntitlementDecision(
            feature=feature,
            allowed=not fallback.blocks,
            degraded=not fallback.blocks,
            fallback=fallback,
            limitation=limitation,
            subscription_id=subscription.subscription_id if subscription else None,
            subscription_status=subscription.status if subscription else None,
            plan_id=plan.plan_id if plan else (subscription.plan_id if subscription else None),
            plan_name=plan.name if plan else None,
        )


__all__ = ["EntitlementResolver", "PlanLookup", "SubscriptionLookup"]
