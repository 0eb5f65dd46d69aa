from __future__ import annotations

from types import SimpleNamespace

import pytest
from fastapi import HTTPException

from backend.app.entitlements import (
    AccessLimitation,
    EntitlementDecision,
    EntitlementResolver,
    FallbackBehavior,
    Feature,
)
from backend.app.feature_gates import FeatureGateError, assert_feature, require_feature


@pytest.fixture
def resolver(subscription_repository, plan_repository) -> EntitlementResolver:
    return EntitlementResolver(subscription_repository, plan_repository)


def test_assert_feature_passes_allowed_decision():
    decision = EntitlementDecision(feature="data_export", allowed=True)

    assert assert_feature(decision) is decision


def test_assert_feature_raises_for_missing_subscription():
    decision = EntitlementDecision(
        feature="data_export",
        allowed=False,
        limitation=AccessLimitation.SUBSCRIPTION_REQUIRED,
    )

    with pytest.raises(FeatureGateError) as exc:
        assert_feature(decision)

    assert exc.value.code == "subscription_required"
    assert exc.value.payload["feature"] == "data_export"


def test_upgrade_error_names_current_plan():
    decision = EntitlementDecision(
        feature="white_label",
        allowed=False,
        limitation=AccessLimitation.PLAN_UPGRADE_REQUIRED,
        plan_name="Monthly Plan",
    )

    error = FeatureGateError.from_decision(decision)

    assert error.code == "plan_upgrade_required"
    assert error.payload["current_plan"] == "Monthly Plan"
    assert "not available in your current plan" in error.message


def test_feature_gate_error_converts_to_http_exception():
    error = FeatureGateError(code="subscription_required", message="subscribe first")
    http_exc = error.to_http_exception()

    assert http_exc.status_code == 403
    assert http_exc.detail["error"] == "subscription_required"


def test_require_feature_dependency_blocks_without_subscription(resolver):
    dependency = require_feature(Feature.DATA_EXPORT)
    user = SimpleNamespace(id=42, tenant_id="tenant-1", role="user")

    with pytest.raises(HTTPException) as exc:
        dependency(current_user=user, resolver=resolver)

    assert exc.value.status_code == 403
    assert exc.value.detail["limitation"] == "subscription_required"


def test_require_feature_dependency_allows_live_subscription(resolver, active_subscription):
    dependency = require_feature(Feature.UNLIMITED_TABLES)
    user = SimpleNamespace(id=42, tenant_id="tenant-1", role="user")

    decision = dependency(current_user=user, resolver=resolver)

    assert decision.allowed is True
    assert decision.subscription_id == active_subscription.subscription_id


def test_require_feature_with_degrade_fallback_returns_degraded_decision(resolver):
    dependency = require_feature(Feature.ADVANCED_ANALYTICS, fallback=FallbackBehavior.DEGRADE)
    user = SimpleNamespace(id=7, tenant_id=None, role="user")

    decision = dependency(current_user=user, resolver=resolver)

    assert decision.degraded is True
