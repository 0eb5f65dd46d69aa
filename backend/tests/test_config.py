from __future__ import annotations

from datetime import timedelta

import pytest

from backend.app.subscriptions import BillingPolicy, load_subscription_config


def test_defaults_match_billing_policy_defaults():
    config = load_subscription_config({})

    assert config.storage == "postgres"
    assert config.scheduler_enabled is True
    assert config.test_webhook_enabled is False
    assert config.paypal_api_base == "https://api-m.paypal.com"
    assert config.billing_policy() == BillingPolicy()


def test_environment_overrides():
    config = load_subscription_config(
        {
            "SUBSCRIPTION_STORAGE": "Memory",
            "SUBSCRIPTION_MAX_RETRY_ATTEMPTS": "4",
            "SUBSCRIPTION_RETRY_DELAYS_DAYS": "2, 4",
            "SUBSCRIPTION_GRACE_PERIOD_DAYS": "5",
            "SUBSCRIPTION_NOTIFICATION_LEAD_DAYS": "1,14",
            "WEBHOOK_TEST_ENDPOINT_ENABLED": "yes",
            "SUBSCRIPTION_SCHEDULER_ENABLED": "off",
            "PAYPAL_API_BASE": "https://api-m.sandbox.paypal.com/",
            "STRIPE_WEBHOOK_SECRET": "whsec_live",
            "ADMIN_EMAIL": "owner@bistro.example",
        }
    )

    policy = config.billing_policy()
    assert config.storage == "memory"
    assert config.test_webhook_enabled is True
    assert config.scheduler_enabled is False
    assert config.paypal_api_base == "https://api-m.sandbox.paypal.com"
    assert config.stripe_webhook_secret == "whsec_live"
    assert config.admin_email == "owner@bistro.example"
    assert policy.max_retry_attempts == 4
    assert policy.retry_delays_days == (2, 4)
    assert policy.grace_period == timedelta(days=5)
    assert policy.notification_lead_days == (1, 14)


def test_invalid_values_raise():
    with pytest.raises(ValueError):
        load_subscription_config({"SUBSCRIPTION_STORAGE": "redis"})
    with pytest.raises(ValueError):
        load_subscription_config({"SUBSCRIPTION_GRACE_PERIOD_DAYS": "three"})
    with pytest.raises(ValueError):
        load_subscription_config({"SUBSCRIPTION_RETRY_DELAYS_DAYS": "1,x"})


def test_retry_delay_reuses_last_table_entry():
    policy = BillingPolicy()

    assert policy.retry_delay(1) == timedelta(days=1)
    assert policy.retry_delay(2) == timedelta(days=3)
    assert policy.retry_delay(3) == timedelta(days=7)
    assert policy.retry_delay(6) == timedelta(days=7)
    assert policy.retries_exhausted(3) is True
    assert policy.retries_exhausted(2) is False


def test_policy_rejects_nonsensical_values():
    with pytest.raises(ValueError):
        BillingPolicy(max_retry_attempts=0)
    with pytest.raises(ValueError):
        BillingPolicy(retry_delays_days=())
    with pytest.raises(ValueError):
        BillingPolicy(charge_timeout_seconds=0)
