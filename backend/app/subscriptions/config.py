"""Subscription engine configuration helpers."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Mapping, Optional, Tuple
import os

from .policy import BillingPolicy


@dataclass(frozen=True)
class SubscriptionConfig:
    """Configuration for billing policy, webhooks and storage."""

    stripe_webhook_secret: Optional[str]
    iyzico_webhook_secret: Optional[str]
    paypal_webhook_id: Optional[str]
    paypal_client_id: Optional[str]
    paypal_client_secret: Optional[str]
    paypal_api_base: str
    max_retry_attempts: int
    retry_delays_days: Tuple[int, ...]
    grace_period_days: int
    notification_lead_days: Tuple[int, ...]
    trial_notice_days: int
    charge_timeout_seconds: float
    webhook_dedup_window_seconds: int
    test_webhook_enabled: bool
    storage: str
    scheduler_enabled: bool
    admin_email: Optional[str]

    def billing_policy(self) -> BillingPolicy:
        return BillingPolicy(
            max_retry_attempts=self.max_retry_attempts,
            retry_delays_days=self.retry_delays_days,
            grace_period_days=self.grace_period_days,
            notification_lead_days=self.notification_lead_days,
            trial_notice_days=self.trial_notice_days,
            charge_timeout_seconds=self.charge_timeout_seconds,
        )


def _to_bool(value: Optional[str], *, default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    return default


def _to_int(value: Optional[str], *, default: int) -> int:
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected integer value, got {value!r}") from exc


def _to_float(value: Optional[str], *, default: float) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Expected float value, got {value!r}") from exc


def _to_int_tuple(value: Optional[str], *, default: Tuple[int, ...]) -> Tuple[int, ...]:
    if value is None or not value.strip():
        return default
    try:
        return tuple(int(part) for part in value.split(",") if part.strip())
    except ValueError as exc:
        raise ValueError(f"Expected comma-separated integers, got {value!r}") from exc


def load_subscription_config(env: Optional[Mapping[str, str]] = None) -> SubscriptionConfig:
    """Load :class:`SubscriptionConfig` from environment variables."""

    env_mapping = os.environ if env is None else env

    storage = (env_mapping.get("SUBSCRIPTION_STORAGE") or "postgres").strip().lower()
    if storage not in {"postgres", "memory"}:
        raise ValueError(f"SUBSCRIPTION_STORAGE must be 'postgres' or 'memory', got {storage!r}")

    return SubscriptionConfig(
        stripe_webhook_secret=env_mapping.get("STRIPE_WEBHOOK_SECRET") or None,
        iyzico_webhook_secret=env_mapping.get("IYZICO_WEBHOOK_SECRET") or None,
        paypal_webhook_id=env_mapping.get("PAYPAL_WEBHOOK_ID") or None,
        paypal_client_id=env_mapping.get("PAYPAL_CLIENT_ID") or None,
        paypal_client_secret=env_mapping.get("PAYPAL_CLIENT_SECRET") or None,
        paypal_api_base=(env_mapping.get("PAYPAL_API_BASE") or "https://api-m.paypal.com").rstrip("/"),
        max_retry_attempts=max(1, _to_int(env_mapping.get("SUBSCRIPTION_MAX_RETRY_ATTEMPTS"), default=3)),
        retry_delays_days=_to_int_tuple(env_mapping.get("SUBSCRIPTION_RETRY_DELAYS_DAYS"), default=(1, 3, 7)),
        grace_period_days=max(0, _to_int(env_mapping.get("SUBSCRIPTION_GRACE_PERIOD_DAYS"), default=3)),
        notification_lead_days=_to_int_tuple(
            env_mapping.get("SUBSCRIPTION_NOTIFICATION_LEAD_DAYS"), default=(3, 7)
        ),
        trial_notice_days=max(0, _to_int(env_mapping.get("SUBSCRIPTION_TRIAL_NOTICE_DAYS"), default=3)),
        charge_timeout_seconds=_to_float(env_mapping.get("PROVIDER_CHARGE_TIMEOUT_SECONDS"), default=30.0),
        webhook_dedup_window_seconds=max(
            0, _to_int(env_mapping.get("WEBHOOK_DEDUP_WINDOW_SECONDS"), default=86400)
        ),
        test_webhook_enabled=_to_bool(env_mapping.get("WEBHOOK_TEST_ENDPOINT_ENABLED"), default=False),
        storage=storage,
        scheduler_enabled=_to_bool(env_mapping.get("SUBSCRIPTION_SCHEDULER_ENABLED"), default=True),
        admin_email=env_mapping.get("ADMIN_EMAIL") or None,
    )


__all__ = ["SubscriptionConfig", "load_subscription_config"]
