"""Domain models for the subscription billing lifecycle."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PlanType(str, Enum):
    """Billing cadence of a subscription plan."""

    MONTHLY = "monthly"
    YEARLY = "yearly"
    CUSTOM = "custom"


class PlanStatus(str, Enum):
    """Whether a plan can be subscribed to."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class SubscriptionStatus(str, Enum):
    """Lifecycle state for subscriptions."""

    PENDING = "pending"
    TRIAL = "trial"
    ACTIVE = "active"
    FAILED = "failed"
    CANCELED = "canceled"
    EXPIRED = "expired"

    @property
    def is_live(self) -> bool:
        return self in LIVE_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


LIVE_STATUSES = frozenset(
    {SubscriptionStatus.TRIAL, SubscriptionStatus.ACTIVE, SubscriptionStatus.FAILED}
)
TERMINAL_STATUSES = frozenset({SubscriptionStatus.CANCELED, SubscriptionStatus.EXPIRED})
# Statuses that block a new subscription for the same owner.
OPEN_STATUSES = LIVE_STATUSES | {SubscriptionStatus.PENDING}


class PaymentProviderName(str, Enum):
    """External payment providers a subscription can be billed through."""

    STRIPE = "stripe"
    IYZICO = "iyzico"
    MANUAL = "manual"


class WebhookSource(str, Enum):
    """Origins of inbound webhook notifications."""

    STRIPE = "stripe"
    IYZICO = "iyzico"
    PAYPAL = "paypal"
    TEST = "test"


class Owner(BaseModel):
    """Identity owning a subscription: a user inside a tenant."""

    user_id: str
    tenant_id: str

    model_config = ConfigDict(frozen=True)

    @property
    def key(self) -> str:
        return f"{self.tenant_id}:{self.user_id}"


class Plan(BaseModel):
    """A subscription plan offered by the catalog."""

    plan_id: str
    name: str
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    plan_type: PlanType = PlanType.MONTHLY
    duration_days: int = Field(default=30, ge=1)
    trial_days: int = Field(default=15, ge=0)
    features: Dict[str, Any] = Field(default_factory=dict)
    status: PlanStatus = PlanStatus.ACTIVE
    is_public: bool = True
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @property
    def is_active(self) -> bool:
        return self.status == PlanStatus.ACTIVE


# Plan fields that may not change while a live subscription references the plan.
FINANCIAL_PLAN_FIELDS = frozenset({"price", "plan_type", "duration_days", "trial_days"})


class RetryBookkeeping(BaseModel):
    """Retry accounting for failed renewal charges."""

    attempts: int = Field(default=0, ge=0)
    next_retry_date: Optional[datetime] = None
    last_error: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class Subscription(BaseModel):
    """A subscription record as persisted by the repository."""

    subscription_id: str
    user_id: str
    tenant_id: str
    plan_id: str
    status: SubscriptionStatus
    start_date: datetime
    end_date: datetime
    canceled_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    auto_renew: bool = False
    external_subscription_id: Optional[str] = None
    payment_provider: PaymentProviderName = PaymentProviderName.MANUAL
    amount: Decimal = Field(default=Decimal("0"), ge=0)
    currency: str = "usd"
    payment_method_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    last_payment_date: Optional[datetime] = None
    next_payment_date: Optional[datetime] = None
    retry: RetryBookkeeping = Field(default_factory=RetryBookkeeping)
    last_provider_payload: Optional[Dict[str, Any]] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    @field_validator("currency")
    @classmethod
    def _lower_currency(cls, value: str) -> str:
        return value.lower()

    @model_validator(mode="after")
    def _canceled_at_matches_status(self) -> "Subscription":
        is_canceled = self.status == SubscriptionStatus.CANCELED
        if is_canceled != (self.canceled_at is not None):
            raise ValueError("canceled_at must be set if and only if status is canceled")
        return self

    @property
    def owner(self) -> Owner:
        return Owner(user_id=self.user_id, tenant_id=self.tenant_id)

    @property
    def is_live(self) -> bool:
        return self.status.is_live

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class LifecycleTrigger(str, Enum):
    """Internal triggers consumed by the subscription state machine."""

    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    TRIAL_EXPIRED = "trial_expired"
    GRACE_EXPIRED = "grace_expired"
    CANCEL = "cancel"
    PROVIDER_STATUS = "provider_status"
    PAYMENT_SUCCEEDED = "payment_succeeded"
    PAYMENT_FAILED = "payment_failed"
    TRIAL_WILL_END = "trial_will_end"


class LifecycleEvent(BaseModel):
    """A trigger plus the data needed to apply it."""

    trigger: LifecycleTrigger
    target_status: Optional[SubscriptionStatus] = None
    provider_payment_id: Optional[str] = None
    error: Optional[str] = None
    external_subscription_id: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="after")
    def _status_trigger_has_target(self) -> "LifecycleEvent":
        if self.trigger == LifecycleTrigger.PROVIDER_STATUS and self.target_status is None:
            raise ValueError("provider_status events require a target_status")
        return self


class RenewalRequest(BaseModel):
    """Provider-agnostic renewal charge request."""

    subscription_id: str
    amount: Decimal
    currency: str
    payment_method_ref: Optional[str] = None
    customer_ref: Optional[str] = None

    model_config = ConfigDict(frozen=True)


class RenewalResult(BaseModel):
    """Structured outcome of a renewal charge; gateways never raise."""

    success: bool
    provider_payment_id: Optional[str] = None
    error: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)

    @classmethod
    def failed(cls, error: str, payload: Optional[Dict[str, Any]] = None) -> "RenewalResult":
        return cls(success=False, error=error, payload=payload or {})


class WebhookEvent(BaseModel):
    """A verified inbound webhook delivery, kept only for deduplication."""

    source: WebhookSource
    event_id: str
    event_type: str
    payload: Dict[str, Any]
    received_at: datetime = Field(default_factory=_utcnow)

    model_config = ConfigDict(frozen=True)

    @property
    def idempotency_key(self) -> str:
        return f"{self.source.value}:{self.event_id}"


class NotificationKind(str, Enum):
    """Template kinds handed to the notification sender."""

    TRIAL_STARTED = "trial_started"
    TRIAL_ENDING = "trial_ending"
    TRIAL_EXPIRED = "trial_expired"
    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    SUBSCRIPTION_ACTIVATED = "subscription_activated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    SUBSCRIPTION_EXPIRED = "subscription_expired"
    RENEWAL_SUCCEEDED = "renewal_succeeded"
    RENEWAL_FAILED = "renewal_failed"
    UPCOMING_RENEWAL = "upcoming_renewal"
    CUSTOM_PLAN_REQUEST = "custom_plan_request"


class ApplyResult(BaseModel):
    """Outcome of a state machine ``apply`` call."""

    subscription: Subscription
    applied: bool
    previous_status: SubscriptionStatus

    model_config = ConfigDict(frozen=True)

    @property
    def status_changed(self) -> bool:
        return self.applied and self.previous_status != self.subscription.status


__all__ = [
    "ApplyResult",
    "FINANCIAL_PLAN_FIELDS",
    "LIVE_STATUSES",
    "LifecycleEvent",
    "LifecycleTrigger",
    "NotificationKind",
    "OPEN_STATUSES",
    "Owner",
    "PaymentProviderName",
    "Plan",
    "PlanStatus",
    "PlanType",
    "RenewalRequest",
    "RenewalResult",
    "RetryBookkeeping",
    "Subscription",
    "SubscriptionStatus",
    "TERMINAL_STATUSES",
    "WebhookEvent",
    "WebhookSource",
]
