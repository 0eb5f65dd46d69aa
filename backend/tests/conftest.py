from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import pytest

from backend.app.subscriptions import (
    InMemoryPlanRepository,
    InMemorySubscriptionRepository,
    NotificationKind,
    Owner,
    PaymentProviderName,
    Plan,
    PlanCatalog,
    PlanType,
    RenewalScheduler,
    SubscriptionStateMachine,
    build_gateway_registry,
)


START = datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc)


class MutableClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> datetime:
        self.now = self.now + timedelta(**delta)
        return self.now


class RecordingNotifier:
    def __init__(self) -> None:
        self.sent: List[Tuple[str, NotificationKind, Dict[str, Any]]] = []

    def send(self, recipient: str, kind: NotificationKind, params: Mapping[str, Any]) -> None:
        self.sent.append((recipient, kind, dict(params)))

    def kinds(self) -> List[NotificationKind]:
        return [kind for _recipient, kind, _params in self.sent]


STRIPE_SUCCESS = {"id": "pi_ok", "object": "payment_intent", "status": "succeeded"}
STRIPE_DECLINED = {
    "id": "pi_declined",
    "object": "payment_intent",
    "status": "requires_payment_method",
    "last_payment_error": {"message": "Your card was declined."},
}


class ScriptedChargeClient:
    """Replays queued provider responses; raises queued exceptions."""

    def __init__(self, default: Optional[Dict[str, Any]] = None) -> None:
        self.default = default or STRIPE_SUCCESS
        self.responses: List[Any] = []
        self.calls: List[Tuple[PaymentProviderName, Dict[str, Any]]] = []
        self.before_charge: Optional[Callable[[], None]] = None

    def charge(self, provider: PaymentProviderName, payload: Mapping[str, Any]) -> Mapping[str, Any]:
        self.calls.append((provider, dict(payload)))
        if self.before_charge is not None:
            self.before_charge()
        response = self.responses.pop(0) if self.responses else self.default
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def subscription_repository() -> InMemorySubscriptionRepository:
    return InMemorySubscriptionRepository()


@pytest.fixture
def plan_repository(subscription_repository) -> InMemoryPlanRepository:
    return InMemoryPlanRepository(subscriptions=subscription_repository)


@pytest.fixture
def catalog(plan_repository, clock) -> PlanCatalog:
    return PlanCatalog(plan_repository, clock=clock)


@pytest.fixture
def monthly_plan(catalog) -> Plan:
    return catalog.create_plan(
        name="Monthly Plan",
        price=Decimal("29.99"),
        plan_type=PlanType.MONTHLY,
        duration_days=30,
        trial_days=15,
        features={"tables": "unlimited", "users": "up to 10", "support": "email", "analytics": "basic"},
    )


@pytest.fixture
def yearly_plan(catalog) -> Plan:
    return catalog.create_plan(
        name="Yearly Plan",
        price=Decimal("299.99"),
        plan_type=PlanType.YEARLY,
        duration_days=365,
        trial_days=15,
        features={"tables": "unlimited", "users": "up to 20", "support": "priority", "analytics": "advanced"},
    )


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def state_machine(subscription_repository, catalog, notifier, clock) -> SubscriptionStateMachine:
    return SubscriptionStateMachine(subscription_repository, catalog, notifier, clock=clock)


@pytest.fixture
def charge_client() -> ScriptedChargeClient:
    return ScriptedChargeClient()


@pytest.fixture
def gateways(charge_client):
    registry = build_gateway_registry(charge_client, timeout_seconds=5.0)
    yield registry
    registry.close()


@pytest.fixture
def scheduler(state_machine, subscription_repository, gateways) -> RenewalScheduler:
    return RenewalScheduler(state_machine, subscription_repository, gateways)


@pytest.fixture
def owner() -> Owner:
    return Owner(user_id="42", tenant_id="tenant-1")


@pytest.fixture
def active_subscription(state_machine, owner, monthly_plan):
    return state_machine.create_subscription(
        owner,
        monthly_plan.plan_id,
        payment_provider=PaymentProviderName.STRIPE,
        provider_confirmed=True,
        external_subscription_id="sub_ext_1",
        payment_method_ref="pm_card_1",
        customer_ref="cus_1",
    )
