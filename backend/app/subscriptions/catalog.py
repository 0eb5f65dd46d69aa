"""Plan catalog: administrator-managed subscription plans."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Mapping, Optional, Protocol, Sequence
from uuid import uuid4

from .errors import ConflictError, NotFoundError, SubscriptionValidationError
from .models import FINANCIAL_PLAN_FIELDS, Plan, PlanStatus, PlanType

logger = logging.getLogger(__name__)


class PlanRepository(Protocol):
    """Persistence operations required by the plan catalog."""

    def save_plan(self, plan: Plan) -> Plan:
        ...

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        ...

    def list_plans(self) -> Sequence[Plan]:
        ...

    def delete_plan(self, plan_id: str) -> bool:
        ...

    def is_plan_referenced(self, plan_id: str, *, live_only: bool) -> bool:
        ...


DEFAULT_PLANS: Sequence[Dict[str, Any]] = (
    {
        "name": "Monthly Plan",
        "description": "Basic monthly subscription plan",
        "price": Decimal("29.99"),
        "plan_type": PlanType.MONTHLY,
        "duration_days": 30,
        "trial_days": 15,
        "is_public": True,
        "features": {
            "tables": "unlimited",
            "users": "up to 10",
            "support": "email",
            "analytics": "basic",
        },
    },
    {
        "name": "Yearly Plan",
        "description": "Premium yearly subscription with discount",
        "price": Decimal("299.99"),
        "plan_type": PlanType.YEARLY,
        "duration_days": 365,
        "trial_days": 15,
        "is_public": True,
        "features": {
            "tables": "unlimited",
            "users": "up to 20",
            "support": "priority",
            "analytics": "advanced",
        },
    },
    {
        "name": "Enterprise Plan",
        "description": "Custom enterprise subscription",
        "price": Decimal("0"),
        "plan_type": PlanType.CUSTOM,
        "duration_days": 30,
        "trial_days": 15,
        "is_public": False,
        "features": {
            "tables": "unlimited",
            "users": "unlimited",
            "support": "24/7 dedicated",
            "analytics": "premium",
            "customization": "full",
        },
    },
)


_EDITABLE_PLAN_FIELDS = frozenset(Plan.model_fields) - {"plan_id", "created_at", "updated_at"}


class PlanCatalog:
    """Reads and edits plans while protecting plans that subscriptions rely on."""

    def __init__(
        self,
        repository: PlanRepository,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def create_plan(self, **fields: Any) -> Plan:
        now = self._clock()
        try:
            plan = Plan(plan_id=f"plan_{uuid4().hex}", created_at=now, updated_at=now, **fields)
        except ValueError as exc:
            raise SubscriptionValidationError(f"Invalid plan: {exc}") from exc
        stored = self._repository.save_plan(plan)
        logger.info("Plan created", extra={"plan_id": stored.plan_id, "plan_name": stored.name})
        return stored

    def get_plan(self, plan_id: str) -> Plan:
        plan = self._repository.get_plan(plan_id)
        if plan is None:
            raise NotFoundError(f"Subscription plan with ID {plan_id} not found")
        return plan

    def list_public_plans(self) -> list[Plan]:
        plans = [plan for plan in self._repository.list_plans() if plan.is_public and plan.is_active]
        return sorted(plans, key=lambda plan: plan.price)

    def list_all_plans(self) -> list[Plan]:
        return sorted(self._repository.list_plans(), key=lambda plan: plan.price)

    def update_plan(self, plan_id: str, changes: Mapping[str, Any]) -> Plan:
        """Apply ``changes`` to a plan.

        Financial fields (price, type, duration, trial length) are frozen while
        a live subscription references the plan.
        """

        plan = self.get_plan(plan_id)
        unknown = set(changes) - _EDITABLE_PLAN_FIELDS
        if unknown:
            raise SubscriptionValidationError(f"Unsupported plan fields: {sorted(unknown)}")

        financial_changes = {
            name
            for name in FINANCIAL_PLAN_FIELDS & set(changes)
            if getattr(plan, name) != changes[name]
        }
        if financial_changes and self._repository.is_plan_referenced(plan_id, live_only=True):
            raise ConflictError(
                "Plan is referenced by a live subscription",
                detail={"fields": sorted(financial_changes)},
            )

        try:
            updated = Plan.model_validate(
                {**plan.model_dump(), **dict(changes), "updated_at": self._clock()}
            )
        except ValueError as exc:
            raise SubscriptionValidationError(f"Invalid plan: {exc}") from exc
        return self._repository.save_plan(updated)

    def deactivate_plan(self, plan_id: str) -> Plan:
        return self.update_plan(plan_id, {"status": PlanStatus.INACTIVE})

    def delete_plan(self, plan_id: str) -> None:
        self.get_plan(plan_id)
        if self._repository.is_plan_referenced(plan_id, live_only=False):
            raise ConflictError("Plan is referenced by a subscription and cannot be deleted")
        self._repository.delete_plan(plan_id)
        logger.info("Plan deleted", extra={"plan_id": plan_id})

    def seed_default_plans(self) -> list[Plan]:
        """Create the default plans when the catalog is empty."""

        if self._repository.list_plans():
            return []
        created = [self.create_plan(**dict(definition)) for definition in DEFAULT_PLANS]
        logger.info("Seeded default plans", extra={"plan_count": len(created)})
        return created


__all__ = ["DEFAULT_PLANS", "PlanCatalog", "PlanRepository"]
