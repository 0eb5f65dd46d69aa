"""Subscription billing lifecycle: plans, state machine, renewals and webhooks."""

from .catalog import DEFAULT_PLANS, PlanCatalog, PlanRepository
from .config import SubscriptionConfig, load_subscription_config
from .errors import (
    ConflictError,
    NotFoundError,
    ProviderError,
    SignatureError,
    SubscriptionError,
    SubscriptionValidationError,
)
from .gateways import (
    ChargeClient,
    GatewayRegistry,
    IyzicoGateway,
    ManualGateway,
    ProviderGateway,
    SandboxChargeClient,
    StripeGateway,
    build_gateway_registry,
)
from .memory import InMemoryPlanRepository, InMemorySubscriptionRepository
from .models import (
    ApplyResult,
    LIVE_STATUSES,
    LifecycleEvent,
    LifecycleTrigger,
    NotificationKind,
    OPEN_STATUSES,
    Owner,
    PaymentProviderName,
    Plan,
    PlanStatus,
    PlanType,
    RenewalRequest,
    RenewalResult,
    RetryBookkeeping,
    Subscription,
    SubscriptionStatus,
    TERMINAL_STATUSES,
    WebhookEvent,
    WebhookSource,
)
from .policy import DEFAULT_POLICY, BillingPolicy
from .scheduler import RenewalScheduler, SweepSummary
from .state_machine import (
    SubscriptionNotifier,
    SubscriptionRepository,
    SubscriptionStateMachine,
)
from .webhooks import (
    InMemoryWebhookEventLog,
    PayPalVerificationClient,
    WebhookIngestor,
    WebhookOutcome,
    build_verifiers,
)

__all__ = [
    "ApplyResult",
    "BillingPolicy",
    "ChargeClient",
    "ConflictError",
    "DEFAULT_PLANS",
    "DEFAULT_POLICY",
    "GatewayRegistry",
    "InMemoryPlanRepository",
    "InMemorySubscriptionRepository",
    "InMemoryWebhookEventLog",
    "IyzicoGateway",
    "LIVE_STATUSES",
    "LifecycleEvent",
    "LifecycleTrigger",
    "ManualGateway",
    "NotFoundError",
    "NotificationKind",
    "OPEN_STATUSES",
    "Owner",
    "PayPalVerificationClient",
    "PaymentProviderName",
    "Plan",
    "PlanCatalog",
    "PlanRepository",
    "PlanStatus",
    "PlanType",
    "ProviderError",
    "ProviderGateway",
    "RenewalRequest",
    "RenewalResult",
    "RenewalScheduler",
    "RetryBookkeeping",
    "SandboxChargeClient",
    "SignatureError",
    "StripeGateway",
    "Subscription",
    "SubscriptionConfig",
    "SubscriptionError",
    "SubscriptionNotifier",
    "SubscriptionRepository",
    "SubscriptionStateMachine",
    "SubscriptionStatus",
    "SubscriptionValidationError",
    "SweepSummary",
    "TERMINAL_STATUSES",
    "WebhookEvent",
    "WebhookIngestor",
    "WebhookOutcome",
    "WebhookSource",
    "build_gateway_registry",
    "build_verifiers",
    "load_subscription_config",
]
