"""API schemas for subscription endpoints."""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..entitlements import EntitlementDecision
from ..subscriptions import (
    PaymentProviderName,
    Plan,
    PlanStatus,
    PlanType,
    Subscription,
    SubscriptionStatus,
)


class PlanCreateRequest(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    price: Decimal = Field(ge=0)
    plan_type: PlanType = Field(alias="type", default=PlanType.MONTHLY)
    duration_days: int = Field(alias="durationDays", default=30, ge=1)
    trial_days: int = Field(alias="trialDays", default=15, ge=0)
    features: Dict[str, Any] = Field(default_factory=dict)
    status: PlanStatus = PlanStatus.ACTIVE
    is_public: bool = Field(alias="isPublic", default=True)

    model_config = ConfigDict(populate_by_name=True)

    def to_fields(self) -> Dict[str, Any]:
        return self.model_dump()


class PlanUpdateRequest(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    plan_type: Optional[PlanType] = Field(alias="type", default=None)
    duration_days: Optional[int] = Field(alias="durationDays", default=None, ge=1)
    trial_days: Optional[int] = Field(alias="trialDays", default=None, ge=0)
    features: Optional[Dict[str, Any]] = None
    status: Optional[PlanStatus] = None
    is_public: Optional[bool] = Field(alias="isPublic", default=None)

    model_config = ConfigDict(populate_by_name=True)

    def to_changes(self) -> Dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class PlanResponse(BaseModel):
    id: str
    name: str
    description: Optional[str] = None
    price: Decimal
    plan_type: PlanType = Field(alias="type")
    duration_days: int = Field(alias="durationDays")
    trial_days: int = Field(alias="trialDays")
    features: Dict[str, Any]
    status: PlanStatus
    is_public: bool = Field(alias="isPublic")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_plan(cls, plan: Plan) -> "PlanResponse":
        return cls(
            id=plan.plan_id,
            name=plan.name,
            description=plan.description,
            price=plan.price,
            plan_type=plan.plan_type,
            duration_days=plan.duration_days,
            trial_days=plan.trial_days,
            features=dict(plan.features),
            status=plan.status,
            is_public=plan.is_public,
            created_at=plan.created_at,
            updated_at=plan.updated_at,
        )


class PlanListResponse(BaseModel):
    plans: List[PlanResponse]

    @classmethod
    def from_plans(cls, plans: List[Plan]) -> "PlanListResponse":
        return cls(plans=[PlanResponse.from_plan(plan) for plan in plans])


class SubscribeRequest(BaseModel):
    plan_id: str = Field(alias="planId", min_length=1)
    payment_provider: PaymentProviderName = Field(alias="paymentProvider", default=PaymentProviderName.MANUAL)
    currency: str = Field(default="usd", min_length=3, max_length=3)
    auto_renew: bool = Field(alias="autoRenew", default=True)
    external_subscription_id: Optional[str] = Field(alias="externalSubscriptionId", default=None)
    payment_method_ref: Optional[str] = Field(alias="paymentMethodRef", default=None)
    customer_ref: Optional[str] = Field(alias="customerRef", default=None)

    model_config = ConfigDict(populate_by_name=True)


class SubscriptionResponse(BaseModel):
    id: str
    user_id: str = Field(alias="userId")
    tenant_id: str = Field(alias="tenantId")
    plan_id: str = Field(alias="planId")
    status: SubscriptionStatus
    start_date: datetime = Field(alias="startDate")
    end_date: datetime = Field(alias="endDate")
    canceled_at: Optional[datetime] = Field(alias="canceledAt", default=None)
    ended_at: Optional[datetime] = Field(alias="endedAt", default=None)
    auto_renew: bool = Field(alias="autoRenew")
    payment_provider: PaymentProviderName = Field(alias="paymentProvider")
    amount: Decimal
    currency: str
    last_payment_date: Optional[datetime] = Field(alias="lastPaymentDate", default=None)
    next_payment_date: Optional[datetime] = Field(alias="nextPaymentDate", default=None)
    retry_attempts: int = Field(alias="retryAttempts", default=0)
    next_retry_date: Optional[datetime] = Field(alias="nextRetryDate", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            id=subscription.subscription_id,
            user_id=subscription.user_id,
            tenant_id=subscription.tenant_id,
            plan_id=subscription.plan_id,
            status=subscription.status,
            start_date=subscription.start_date,
            end_date=subscription.end_date,
            canceled_at=subscription.canceled_at,
            ended_at=subscription.ended_at,
            auto_renew=subscription.auto_renew,
            payment_provider=subscription.payment_provider,
            amount=subscription.amount,
            currency=subscription.currency,
            last_payment_date=subscription.last_payment_date,
            next_payment_date=subscription.next_payment_date,
            retry_attempts=subscription.retry.attempts,
            next_retry_date=subscription.retry.next_retry_date,
        )


class CancelSubscriptionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class CustomPlanRequest(BaseModel):
    details: Dict[str, Any] = Field(default_factory=dict)


class CustomPlanRequestResponse(BaseModel):
    received: bool = True


class EntitlementResponse(BaseModel):
    feature: str
    allowed: bool
    degraded: bool
    limitation: Optional[str] = None
    plan_name: Optional[str] = Field(alias="planName", default=None)
    subscription_status: Optional[SubscriptionStatus] = Field(alias="subscriptionStatus", default=None)

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_decision(cls, decision: EntitlementDecision) -> "EntitlementResponse":
        return cls(
            feature=decision.feature,
            allowed=decision.allowed,
            degraded=decision.degraded,
            limitation=decision.limitation.value if decision.limitation else None,
            plan_name=decision.plan_name,
            subscription_status=decision.subscription_status,
        )


class RenewalResponse(BaseModel):
    subscription: SubscriptionResponse
    applied: bool
    previous_status: SubscriptionStatus = Field(alias="previousStatus")

    model_config = ConfigDict(populate_by_name=True)


class PaymentHealthResponse(BaseModel):
    counts: Dict[str, int]
    active: int
    failed: int
    expired: int
    health_score: float = Field(alias="healthScore")

    model_config = ConfigDict(populate_by_name=True)


class WebhookAck(BaseModel):
    received: bool = True
