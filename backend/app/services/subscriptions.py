"""Application wiring for the subscription engine."""
from __future__ import annotations

import json
import logging
from functools import lru_cache
from typing import Any, Mapping, Optional, Tuple, Union

from ..entitlements import EntitlementResolver
from ..subscriptions import (
    GatewayRegistry,
    InMemoryPlanRepository,
    InMemorySubscriptionRepository,
    InMemoryWebhookEventLog,
    NotificationKind,
    Owner,
    PayPalVerificationClient,
    PlanCatalog,
    RenewalScheduler,
    SubscriptionConfig,
    SubscriptionNotifier,
    SubscriptionStateMachine,
    WebhookIngestor,
    build_gateway_registry,
    build_verifiers,
    load_subscription_config,
)
from ..subscriptions.repository import PostgresPlanRepository, PostgresSubscriptionRepository


logger = logging.getLogger("subscriptions")

PlanStore = Union[InMemoryPlanRepository, PostgresPlanRepository]
SubscriptionStore = Union[InMemorySubscriptionRepository, PostgresSubscriptionRepository]

DEFAULT_ADMIN_EMAIL = "admin@restaurant-management.com"


class LoggingSubscriptionNotifier:
    """Notifier that records subscription notifications to the application logger.

    Template rendering and delivery live outside this service; the log line
    carries everything a mail worker needs to pick the message up.
    """

    def send(self, recipient: str, kind: NotificationKind, params: Mapping[str, Any]) -> None:
        logger.info(
            "Subscription notification %s recipient=%s params=%s",
            kind.value,
            recipient,
            dict(params),
        )


def owner_from_user(user: Any) -> Owner:
    """Build the subscription owner for an authenticated user.

    Users without a tenant act as their own tenant.
    """

    user_id = str(user.id)
    tenant_id = getattr(user, "tenant_id", None)
    return Owner(user_id=user_id, tenant_id=str(tenant_id) if tenant_id is not None else user_id)


def is_subscription_admin(user: Any) -> bool:
    return getattr(user, "role", None) == "admin"


@lru_cache(maxsize=1)
def get_subscription_config() -> SubscriptionConfig:
    return load_subscription_config()


@lru_cache(maxsize=1)
def _get_repositories() -> Tuple[PlanStore, SubscriptionStore]:
    config = get_subscription_config()
    if config.storage == "memory":
        subscriptions = InMemorySubscriptionRepository()
        plans = InMemoryPlanRepository(subscriptions=subscriptions)
        logger.info("Using in-memory subscription storage")
        return plans, subscriptions
    return PostgresPlanRepository(), PostgresSubscriptionRepository()


def get_plan_repository() -> PlanStore:
    return _get_repositories()[0]


def get_subscription_repository() -> SubscriptionStore:
    return _get_repositories()[1]


@lru_cache(maxsize=1)
def get_plan_catalog() -> PlanCatalog:
    return PlanCatalog(get_plan_repository())


@lru_cache(maxsize=1)
def get_subscription_notifier() -> SubscriptionNotifier:
    return LoggingSubscriptionNotifier()


@lru_cache(maxsize=1)
def get_state_machine() -> SubscriptionStateMachine:
    config = get_subscription_config()
    return SubscriptionStateMachine(
        get_subscription_repository(),
        get_plan_catalog(),
        get_subscription_notifier(),
        policy=config.billing_policy(),
    )


@lru_cache(maxsize=1)
def get_gateway_registry() -> GatewayRegistry:
    config = get_subscription_config()
    return build_gateway_registry(timeout_seconds=config.charge_timeout_seconds)


@lru_cache(maxsize=1)
def get_renewal_scheduler() -> RenewalScheduler:
    return RenewalScheduler(get_state_machine(), get_subscription_repository(), get_gateway_registry())


@lru_cache(maxsize=1)
def get_webhook_ingestor() -> WebhookIngestor:
    config = get_subscription_config()
    paypal_client = PayPalVerificationClient(
        config.paypal_client_id,
        config.paypal_client_secret,
        api_base=config.paypal_api_base,
    )
    verifiers = build_verifiers(
        stripe_secret=config.stripe_webhook_secret,
        iyzico_secret=config.iyzico_webhook_secret,
        paypal_webhook_id=config.paypal_webhook_id,
        paypal_client=paypal_client,
    )
    return WebhookIngestor(
        get_state_machine(),
        get_subscription_repository(),
        verifiers,
        event_log=InMemoryWebhookEventLog(window_seconds=config.webhook_dedup_window_seconds),
        test_endpoint_enabled=config.test_webhook_enabled,
    )


@lru_cache(maxsize=1)
def get_entitlement_resolver() -> EntitlementResolver:
    return EntitlementResolver(get_subscription_repository(), get_plan_repository())


def request_custom_plan(user: Any, details: Mapping[str, Any]) -> str:
    """Forward a custom plan enquiry to the administrator address.

    Delivery failures are logged; the enquiry is still acknowledged.
    """

    config = get_subscription_config()
    recipient = config.admin_email or DEFAULT_ADMIN_EMAIL
    params = {
        "user_id": str(user.id),
        "user_email": getattr(user, "email", None),
        "details": json.dumps(dict(details), indent=2, default=str),
    }
    try:
        get_subscription_notifier().send(recipient, NotificationKind.CUSTOM_PLAN_REQUEST, params)
    except Exception:
        logger.exception("Failed to send custom plan request", extra={"user_id": str(user.id)})
    else:
        logger.info("Custom plan request sent to admin", extra={"user_id": str(user.id)})
    return recipient


def prepare_subscription_storage(*, seed_plans: bool = True) -> Optional[int]:
    """Create tables when needed and seed the default plans into an empty catalog."""

    plans = get_plan_repository()
    subscriptions = get_subscription_repository()
    for store in (plans, subscriptions):
        ensure_schema = getattr(store, "ensure_schema", None)
        if ensure_schema is not None:
            ensure_schema()
    if not seed_plans:
        return None
    return len(get_plan_catalog().seed_default_plans())


def reset_subscription_services() -> None:
    """Drop cached wiring so the next call rebuilds it from configuration."""

    if get_gateway_registry.cache_info().currsize:
        get_gateway_registry().close()
    for cached in (
        get_entitlement_resolver,
        get_webhook_ingestor,
        get_renewal_scheduler,
        get_gateway_registry,
        get_state_machine,
        get_subscription_notifier,
        get_plan_catalog,
        _get_repositories,
        get_subscription_config,
    ):
        cached.cache_clear()


__all__ = [
    "LoggingSubscriptionNotifier",
    "get_entitlement_resolver",
    "get_gateway_registry",
    "get_plan_catalog",
    "get_plan_repository",
    "get_renewal_scheduler",
    "get_state_machine",
    "get_subscription_config",
    "get_subscription_notifier",
    "get_subscription_repository",
    "get_webhook_ingestor",
    "is_subscription_admin",
    "owner_from_user",
    "prepare_subscription_storage",
    "request_custom_plan",
    "reset_subscription_services",
]
