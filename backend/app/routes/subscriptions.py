"""API routes exposing subscription plans, lifecycle operations and provider webhooks."""
from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from functools import lru_cache
from typing import Any, Callable, Iterator, Optional

from fastapi import APIRouter, Cookie, Depends, HTTPException, Query, Request, Response, status
from fastapi.concurrency import run_in_threadpool

from ..entitlements import FallbackBehavior
from ..schemas.subscriptions import (
    CancelSubscriptionRequest,
    CustomPlanRequest,
    CustomPlanRequestResponse,
    EntitlementResponse,
    PaymentHealthResponse,
    PlanCreateRequest,
    PlanListResponse,
    PlanResponse,
    PlanUpdateRequest,
    RenewalResponse,
    SubscribeRequest,
    SubscriptionResponse,
    WebhookAck,
)
from ..services import subscriptions as subscription_services
from ..subscriptions import NotFoundError, Subscription, SubscriptionError, WebhookSource

logger = logging.getLogger("subscriptions")


def _resolve_get_current_user() -> Callable[..., Any]:  # pragma: no cover
    try:
        from backend.main import get_current_user as resolved
    except ModuleNotFoundError as exc:
        if exc.name != "backend":
            raise
        from ...main import get_current_user as resolved  # type: ignore[no-redef]
    return resolved


@lru_cache(maxsize=1)
def _get_current_user_callable() -> Callable[..., Any]:
    return _resolve_get_current_user()


_SESSION_COOKIE_NAME = os.getenv("SESSION_COOKIE_NAME", "session")


def _get_current_user(
    session_token: Optional[str] = Cookie(None, alias=_SESSION_COOKIE_NAME),
):
    resolved = _get_current_user_callable()
    return resolved(session_token=session_token)


@contextmanager
def _http_errors() -> Iterator[None]:
    try:
        yield
    except SubscriptionError as exc:
        raise exc.to_http_exception() from exc


def _require_admin(current_user: Any) -> None:
    if not subscription_services.is_subscription_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Administrator access required")


def _owned_subscription(subscription_id: str, current_user: Any) -> Subscription:
    subscription = subscription_services.get_subscription_repository().get_subscription(subscription_id)
    if subscription is None:
        raise NotFoundError(f"Subscription with ID {subscription_id} not found").to_http_exception()
    owner = subscription_services.owner_from_user(current_user)
    is_owner = subscription.user_id == owner.user_id and subscription.tenant_id == owner.tenant_id
    if not is_owner and not subscription_services.is_subscription_admin(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Cannot access another user's subscription")
    return subscription


router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])


# Plans -----------------------------------------------------------------
@router.get("/plans", response_model=PlanListResponse)
def list_plans() -> PlanListResponse:
    catalog = subscription_services.get_plan_catalog()
    return PlanListResponse.from_plans(catalog.list_public_plans())


@router.get("/plans/admin", response_model=PlanListResponse)
def list_all_plans(*, current_user=Depends(_get_current_user)) -> PlanListResponse:
    _require_admin(current_user)
    catalog = subscription_services.get_plan_catalog()
    return PlanListResponse.from_plans(catalog.list_all_plans())


@router.get("/plans/{plan_id}", response_model=PlanResponse)
def get_plan(plan_id: str) -> PlanResponse:
    with _http_errors():
        plan = subscription_services.get_plan_catalog().get_plan(plan_id)
    return PlanResponse.from_plan(plan)


@router.post("/plans", response_model=PlanResponse, status_code=status.HTTP_201_CREATED)
def create_plan(payload: PlanCreateRequest, *, current_user=Depends(_get_current_user)) -> PlanResponse:
    _require_admin(current_user)
    with _http_errors():
        plan = subscription_services.get_plan_catalog().create_plan(**payload.to_fields())
    return PlanResponse.from_plan(plan)


@router.patch("/plans/{plan_id}", response_model=PlanResponse)
def update_plan(
    plan_id: str,
    payload: PlanUpdateRequest,
    *,
    current_user=Depends(_get_current_user),
) -> PlanResponse:
    _require_admin(current_user)
    with _http_errors():
        plan = subscription_services.get_plan_catalog().update_plan(plan_id, payload.to_changes())
    return PlanResponse.from_plan(plan)


@router.delete("/plans/{plan_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_plan(plan_id: str, *, current_user=Depends(_get_current_user)) -> Response:
    _require_admin(current_user)
    with _http_errors():
        subscription_services.get_plan_catalog().delete_plan(plan_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Subscriptions ---------------------------------------------------------
@router.post("/", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def subscribe(payload: SubscribeRequest, *, current_user=Depends(_get_current_user)) -> SubscriptionResponse:
    state_machine = subscription_services.get_state_machine()
    with _http_errors():
        subscription = state_machine.create_subscription(
            subscription_services.owner_from_user(current_user),
            payload.plan_id,
            payment_provider=payload.payment_provider,
            auto_renew=payload.auto_renew,
            currency=payload.currency,
            external_subscription_id=payload.external_subscription_id,
            payment_method_ref=payload.payment_method_ref,
            customer_ref=payload.customer_ref,
        )
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/trial/{plan_id}", response_model=SubscriptionResponse, status_code=status.HTTP_201_CREATED)
def start_trial(plan_id: str, *, current_user=Depends(_get_current_user)) -> SubscriptionResponse:
    state_machine = subscription_services.get_state_machine()
    with _http_errors():
        subscription = state_machine.start_trial(subscription_services.owner_from_user(current_user), plan_id)
    return SubscriptionResponse.from_subscription(subscription)


@router.get("/me", response_model=Optional[SubscriptionResponse])
def get_my_subscription(*, current_user=Depends(_get_current_user)) -> Optional[SubscriptionResponse]:
    repository = subscription_services.get_subscription_repository()
    subscription = repository.latest_for_owner(subscription_services.owner_from_user(current_user))
    if subscription is None:
        return None
    return SubscriptionResponse.from_subscription(subscription)


@router.post("/custom-request", response_model=CustomPlanRequestResponse)
def request_custom_plan(
    payload: CustomPlanRequest,
    *,
    current_user=Depends(_get_current_user),
) -> CustomPlanRequestResponse:
    subscription_services.request_custom_plan(current_user, payload.details)
    return CustomPlanRequestResponse()


@router.get("/entitlements/{feature}", response_model=EntitlementResponse)
def check_entitlement(
    feature: str,
    fallback: FallbackBehavior = Query(default=FallbackBehavior.BLOCK),
    strict: bool = Query(default=False),
    *,
    current_user=Depends(_get_current_user),
) -> EntitlementResponse:
    resolver = subscription_services.get_entitlement_resolver()
    decision = resolver.resolve(
        subscription_services.owner_from_user(current_user),
        feature,
        fallback=fallback,
        strict=strict,
    )
    return EntitlementResponse.from_decision(decision)


@router.get("/health", response_model=PaymentHealthResponse)
def payment_health(*, current_user=Depends(_get_current_user)) -> PaymentHealthResponse:
    _require_admin(current_user)
    report = subscription_services.get_renewal_scheduler().payment_health()
    return PaymentHealthResponse(**report)


# Webhooks --------------------------------------------------------------
@router.post("/webhooks/{source}", response_model=WebhookAck)
async def receive_webhook(source: WebhookSource, request: Request) -> WebhookAck:
    raw_body = await request.body()
    ingestor = subscription_services.get_webhook_ingestor()
    try:
        await run_in_threadpool(ingestor.ingest, source, raw_body, dict(request.headers))
    except SubscriptionError as exc:
        raise exc.to_http_exception() from exc
    except Exception as exc:
        logger.exception("Webhook processing failed", extra={"source": source.value})
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed",
        ) from exc
    return WebhookAck()


# Single subscription ---------------------------------------------------
@router.get("/{subscription_id}", response_model=SubscriptionResponse)
def get_subscription(subscription_id: str, *, current_user=Depends(_get_current_user)) -> SubscriptionResponse:
    return SubscriptionResponse.from_subscription(_owned_subscription(subscription_id, current_user))


@router.post("/{subscription_id}/cancel", response_model=SubscriptionResponse)
def cancel_subscription(
    subscription_id: str,
    payload: Optional[CancelSubscriptionRequest] = None,
    *,
    current_user=Depends(_get_current_user),
) -> SubscriptionResponse:
    _owned_subscription(subscription_id, current_user)
    state_machine = subscription_services.get_state_machine()
    with _http_errors():
        result = state_machine.cancel(subscription_id, reason=payload.reason if payload else None)
    return SubscriptionResponse.from_subscription(result.subscription)


@router.post("/{subscription_id}/renew", response_model=RenewalResponse)
def trigger_renewal(subscription_id: str, *, current_user=Depends(_get_current_user)) -> RenewalResponse:
    _require_admin(current_user)
    with _http_errors():
        result = subscription_services.get_renewal_scheduler().trigger_renewal(subscription_id)
    return RenewalResponse(
        subscription=SubscriptionResponse.from_subscription(result.subscription),
        applied=result.applied,
        previous_status=result.previous_status,
    )
