from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from types import SimpleNamespace
from typing import Any, Dict, List, Tuple

import pytest
from fastapi import FastAPI, HTTPException
from fastapi.testclient import TestClient

from backend.app.entitlements import FallbackBehavior
from backend.app.routes import subscriptions as subscription_routes
from backend.app.schemas.subscriptions import (
    CancelSubscriptionRequest,
    CustomPlanRequest,
    PlanCreateRequest,
    PlanUpdateRequest,
    SubscribeRequest,
)
from backend.app.services import subscriptions as subscription_services
from backend.app.subscriptions import NotificationKind, PaymentProviderName, SubscriptionStatus


@pytest.fixture
def memory_services(monkeypatch):
    monkeypatch.setenv("SUBSCRIPTION_STORAGE", "memory")
    monkeypatch.setenv("WEBHOOK_TEST_ENDPOINT_ENABLED", "true")
    monkeypatch.setenv("ADMIN_EMAIL", "billing@bistro.example")
    monkeypatch.delenv("STRIPE_WEBHOOK_SECRET", raising=False)
    subscription_services.reset_subscription_services()
    subscription_services.prepare_subscription_storage()
    yield subscription_services
    monkeypatch.undo()
    subscription_services.reset_subscription_services()


@pytest.fixture
def plans(memory_services) -> Dict[str, str]:
    catalog = memory_services.get_plan_catalog()
    return {plan.name: plan.plan_id for plan in catalog.list_all_plans()}


@pytest.fixture
def user():
    return SimpleNamespace(id=42, tenant_id="tenant-1", role="user", email="chef@bistro.example")


@pytest.fixture
def admin():
    return SimpleNamespace(id=1, tenant_id="hq", role="admin", email="ops@bistro.example")


@pytest.fixture
def client(memory_services):
    app = FastAPI()
    app.include_router(subscription_routes.router)
    return TestClient(app)


def test_list_plans_returns_public_plans_by_price(memory_services):
    response = subscription_routes.list_plans()

    assert [plan.name for plan in response.plans] == ["Monthly Plan", "Yearly Plan"]
    assert response.plans[0].price == Decimal("29.99")


def test_admin_plan_listing_requires_admin(memory_services, user, admin):
    with pytest.raises(HTTPException) as exc:
        subscription_routes.list_all_plans(current_user=user)
    assert exc.value.status_code == 403

    response = subscription_routes.list_all_plans(current_user=admin)
    assert len(response.plans) == 3


def test_start_trial_and_read_back(memory_services, plans, user):
    created = subscription_routes.start_trial(plans["Monthly Plan"], current_user=user)

    assert created.status == SubscriptionStatus.TRIAL
    assert created.user_id == "42"
    assert created.tenant_id == "tenant-1"

    mine = subscription_routes.get_my_subscription(current_user=user)
    assert mine.id == created.id

    fetched = subscription_routes.get_subscription(created.id, current_user=user)
    assert fetched.plan_id == plans["Monthly Plan"]


def test_me_without_subscription_returns_none(memory_services, user):
    assert subscription_routes.get_my_subscription(current_user=user) is None


def test_subscribe_creates_pending_subscription(memory_services, plans, user):
    payload = SubscribeRequest(
        planId=plans["Yearly Plan"],
        paymentProvider=PaymentProviderName.STRIPE,
        currency="EUR",
        externalSubscriptionId="sub_ext_55",
        paymentMethodRef="pm_card_55",
    )

    created = subscription_routes.subscribe(payload, current_user=user)

    assert created.status == SubscriptionStatus.PENDING
    assert created.currency == "eur"
    assert created.amount == Decimal("299.99")
    assert created.payment_provider == PaymentProviderName.STRIPE


def test_second_open_subscription_conflicts(memory_services, plans, user):
    subscription_routes.start_trial(plans["Monthly Plan"], current_user=user)

    with pytest.raises(HTTPException) as exc:
        subscription_routes.subscribe(SubscribeRequest(planId=plans["Yearly Plan"]), current_user=user)

    assert exc.value.status_code == 409
    assert exc.value.detail["error"] == "conflict"


def test_unknown_plan_is_a_validation_error(memory_services, user):
    with pytest.raises(HTTPException) as exc:
        subscription_routes.start_trial("plan_missing", current_user=user)

    assert exc.value.status_code == 400


def test_subscription_visible_to_owner_and_admin_only(memory_services, plans, user, admin):
    created = subscription_routes.start_trial(plans["Monthly Plan"], current_user=user)
    stranger = SimpleNamespace(id=77, tenant_id="tenant-7", role="user")

    with pytest.raises(HTTPException) as exc:
        subscription_routes.get_subscription(created.id, current_user=stranger)
    assert exc.value.status_code == 403

    same_id_other_tenant = SimpleNamespace(id=42, tenant_id="tenant-2", role="user")
    with pytest.raises(HTTPException) as cross_tenant:
        subscription_routes.get_subscription(created.id, current_user=same_id_other_tenant)
    assert cross_tenant.value.status_code == 403

    assert subscription_routes.get_subscription(created.id, current_user=admin).id == created.id

    with pytest.raises(HTTPException) as missing:
        subscription_routes.get_subscription("sub_missing", current_user=admin)
    assert missing.value.status_code == 404


def test_cancel_subscription(memory_services, plans, user):
    created = subscription_routes.start_trial(plans["Monthly Plan"], current_user=user)

    canceled = subscription_routes.cancel_subscription(
        created.id,
        CancelSubscriptionRequest(reason="switching providers"),
        current_user=user,
    )

    assert canceled.status == SubscriptionStatus.CANCELED
    assert canceled.canceled_at is not None
    assert canceled.auto_renew is False


def test_plan_management_requires_admin(memory_services, user, admin):
    payload = PlanCreateRequest(name="Food Truck", price=Decimal("14.99"), durationDays=30, trialDays=7)

    with pytest.raises(HTTPException) as exc:
        subscription_routes.create_plan(payload, current_user=user)
    assert exc.value.status_code == 403

    created = subscription_routes.create_plan(payload, current_user=admin)
    assert created.trial_days == 7

    updated = subscription_routes.update_plan(
        created.id,
        PlanUpdateRequest(description="Single truck, single menu"),
        current_user=admin,
    )
    assert updated.description == "Single truck, single menu"
    assert updated.price == Decimal("14.99")

    response = subscription_routes.delete_plan(created.id, current_user=admin)
    assert response.status_code == 204

    with pytest.raises(HTTPException) as missing:
        subscription_routes.get_plan(created.id)
    assert missing.value.status_code == 404


def test_entitlement_check_reports_limitation(memory_services, plans, user):
    blocked = subscription_routes.check_entitlement(
        "advanced_analytics",
        fallback=FallbackBehavior.BLOCK,
        strict=False,
        current_user=user,
    )
    assert blocked.allowed is False
    assert blocked.limitation == "subscription_required"

    subscription_routes.start_trial(plans["Yearly Plan"], current_user=user)
    granted = subscription_routes.check_entitlement(
        "advanced_analytics",
        fallback=FallbackBehavior.BLOCK,
        strict=False,
        current_user=user,
    )
    assert granted.allowed is True
    assert granted.plan_name == "Yearly Plan"
    assert granted.subscription_status == SubscriptionStatus.TRIAL


def test_manual_renewal_requires_admin_and_eligible_subscription(memory_services, plans, user, admin):
    created = subscription_routes.start_trial(plans["Monthly Plan"], current_user=user)

    with pytest.raises(HTTPException) as forbidden:
        subscription_routes.trigger_renewal(created.id, current_user=user)
    assert forbidden.value.status_code == 403

    with pytest.raises(HTTPException) as conflict:
        subscription_routes.trigger_renewal(created.id, current_user=admin)
    assert conflict.value.status_code == 409


def test_payment_health_for_admin(memory_services, plans, user, admin):
    subscription_routes.start_trial(plans["Monthly Plan"], current_user=user)

    report = subscription_routes.payment_health(current_user=admin)

    assert report.counts["trial"] == 1
    assert report.health_score == 100.0


def test_custom_plan_request_goes_to_admin_address(memory_services, user, monkeypatch):
    sent: List[Tuple[str, NotificationKind, Dict[str, Any]]] = []

    class Recorder:
        def send(self, recipient, kind, params):
            sent.append((recipient, kind, dict(params)))

    monkeypatch.setattr(subscription_services, "get_subscription_notifier", lambda: Recorder())

    response = subscription_routes.request_custom_plan(
        CustomPlanRequest(details={"locations": 12, "pos_terminals": 40}),
        current_user=user,
    )

    assert response.received is True
    recipient, kind, params = sent[0]
    assert recipient == "billing@bistro.example"
    assert kind == NotificationKind.CUSTOM_PLAN_REQUEST
    assert params["user_email"] == "chef@bistro.example"
    assert json.loads(params["details"]) == {"locations": 12, "pos_terminals": 40}


def test_test_webhook_endpoint_activates_subscription(client, memory_services, plans, user):
    created = subscription_routes.subscribe(SubscribeRequest(planId=plans["Monthly Plan"]), current_user=user)
    body = {
        "id": "test-evt-1",
        "type": "test.subscription.payment_succeeded",
        "subscription_id": created.id,
    }

    response = client.post(
        "/api/subscriptions/webhooks/test",
        content=json.dumps(body),
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 200
    assert response.json() == {"received": True}
    stored = memory_services.get_subscription_repository().get_subscription(created.id)
    assert stored.status == SubscriptionStatus.ACTIVE


def test_unsigned_stripe_webhook_is_rejected(client):
    response = client.post(
        "/api/subscriptions/webhooks/stripe",
        content=json.dumps({"id": "evt_1", "type": "invoice.payment_succeeded"}),
        headers={"Content-Type": "application/json"},
    )

    assert response.status_code == 400
    assert response.json()["detail"]["error"] == "invalid_signature"


def test_unknown_webhook_source_is_rejected(client):
    response = client.post("/api/subscriptions/webhooks/square", content=b"{}")

    assert response.status_code == 422


def test_webhook_processing_failure_asks_provider_to_retry(client, memory_services, monkeypatch):
    ingestor = memory_services.get_webhook_ingestor()

    def failing_ingest(source, raw_body, headers):
        raise RuntimeError("database unavailable")

    monkeypatch.setattr(ingestor, "ingest", failing_ingest)

    response = client.post("/api/subscriptions/webhooks/test", content=b"{}")

    assert response.status_code == 500
    assert response.json()["detail"] == "Webhook processing failed"


def test_disabled_test_webhook_returns_not_found(memory_services, monkeypatch):
    monkeypatch.setenv("WEBHOOK_TEST_ENDPOINT_ENABLED", "false")
    memory_services.reset_subscription_services()
    app = FastAPI()
    app.include_router(subscription_routes.router)

    response = TestClient(app).post("/api/subscriptions/webhooks/test", content=b"{}")

    assert response.status_code == 404


def test_webhook_ingest_runs_outside_event_loop(client, memory_services, monkeypatch):
    ingestor = memory_services.get_webhook_ingestor()
    loop_running: List[bool] = []

    def recording_ingest(source, raw_body, headers):
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            loop_running.append(False)
        else:
            loop_running.append(True)

    monkeypatch.setattr(ingestor, "ingest", recording_ingest)

    response = client.post("/api/subscriptions/webhooks/test", content=b"{}")

    assert response.status_code == 200
    assert loop_running == [False]
