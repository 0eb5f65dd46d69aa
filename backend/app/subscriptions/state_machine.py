"""Subscription state machine: the only writer of subscription status."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import (
    Any,
    Callable,
    ContextManager,
    Dict,
    Mapping,
    Optional,
    Protocol,
    Sequence,
)
from uuid import uuid4

from .catalog import PlanCatalog
from .errors import ConflictError, NotFoundError, SubscriptionValidationError
from .models import (
    ApplyResult,
    LifecycleEvent,
    LifecycleTrigger,
    NotificationKind,
    Owner,
    PaymentProviderName,
    Plan,
    RetryBookkeeping,
    Subscription,
    SubscriptionStatus,
)
from .policy import DEFAULT_POLICY, BillingPolicy

logger = logging.getLogger(__name__)


class SubscriptionTransaction(Protocol):
    """Serialized view of one subscription, held while a transition is applied."""

    subscription: Optional[Subscription]

    def has_key(self, idempotency_key: str) -> bool:
        ...

    def record_key(self, idempotency_key: str) -> bool:
        """Record ``idempotency_key``; return ``False`` if it was already present."""

    def save(self, subscription: Subscription) -> Subscription:
        ...


class OwnerTransaction(Protocol):
    """Serialized view of one owner's subscriptions, used for creation."""

    def find_open(self) -> Optional[Subscription]:
        ...

    def insert(self, subscription: Subscription) -> Subscription:
        ...


class SubscriptionRepository(Protocol):
    """Persistence operations required by the engine."""

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        ...

    def latest_for_owner(self, owner: Owner) -> Optional[Subscription]:
        ...

    def find_by_external_id(
        self, provider: str, external_subscription_id: str
    ) -> Optional[Subscription]:
        ...

    def list_due_for_renewal(self, *, due_before: datetime) -> Sequence[Subscription]:
        ...

    def list_due_for_retry(self, *, now: datetime, max_attempts: int) -> Sequence[Subscription]:
        ...

    def list_past_grace(self, *, cutoff: datetime) -> Sequence[Subscription]:
        ...

    def list_expired_trials(self, *, now: datetime) -> Sequence[Subscription]:
        ...

    def list_trials_ending_between(self, *, start: datetime, end: datetime) -> Sequence[Subscription]:
        ...

    def list_renewing_between(self, *, start: datetime, end: datetime) -> Sequence[Subscription]:
        ...

    def count_by_status(self) -> Mapping[SubscriptionStatus, int]:
        ...

    def lock_subscription(self, subscription_id: str) -> ContextManager[SubscriptionTransaction]:
        ...

    def lock_owner(self, owner: Owner) -> ContextManager[OwnerTransaction]:
        ...


class SubscriptionNotifier(Protocol):
    """Sends templated notifications; rendering and delivery live elsewhere."""

    def send(self, recipient: str, kind: NotificationKind, params: Mapping[str, Any]) -> None:
        ...


# Source statuses each trigger may act on.
_ALLOWED_SOURCES: Dict[LifecycleTrigger, frozenset] = {
    LifecycleTrigger.RENEWAL_SUCCEEDED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.FAILED}),
    LifecycleTrigger.RENEWAL_FAILED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.FAILED}),
    LifecycleTrigger.TRIAL_EXPIRED: frozenset({SubscriptionStatus.TRIAL}),
    LifecycleTrigger.GRACE_EXPIRED: frozenset({SubscriptionStatus.ACTIVE, SubscriptionStatus.FAILED}),
    LifecycleTrigger.CANCEL: frozenset(
        {
            SubscriptionStatus.PENDING,
            SubscriptionStatus.TRIAL,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.FAILED,
        }
    ),
    LifecycleTrigger.PROVIDER_STATUS: frozenset(
        {
            SubscriptionStatus.PENDING,
            SubscriptionStatus.TRIAL,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.FAILED,
        }
    ),
    LifecycleTrigger.PAYMENT_SUCCEEDED: frozenset(
        {
            SubscriptionStatus.PENDING,
            SubscriptionStatus.TRIAL,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.FAILED,
        }
    ),
    LifecycleTrigger.PAYMENT_FAILED: frozenset(
        {
            SubscriptionStatus.PENDING,
            SubscriptionStatus.TRIAL,
            SubscriptionStatus.ACTIVE,
            SubscriptionStatus.FAILED,
        }
    ),
    LifecycleTrigger.TRIAL_WILL_END: frozenset({SubscriptionStatus.TRIAL}),
}


class SubscriptionStateMachine:
    """Owns every subscription status transition and its invariants."""

    def __init__(
        self,
        repository: SubscriptionRepository,
        catalog: PlanCatalog,
        notifier: SubscriptionNotifier,
        *,
        policy: BillingPolicy = DEFAULT_POLICY,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._repository = repository
        self._catalog = catalog
        self._notifier = notifier
        self._policy = policy
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def policy(self) -> BillingPolicy:
        return self._policy

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------
    def start_trial(self, owner: Owner, plan_id: str) -> Subscription:
        plan = self._subscribable_plan(plan_id)
        now = self._clock()
        subscription = Subscription(
            subscription_id=f"sub_{uuid4().hex}",
            user_id=owner.user_id,
            tenant_id=owner.tenant_id,
            plan_id=plan.plan_id,
            status=SubscriptionStatus.TRIAL,
            start_date=now,
            end_date=now + timedelta(days=plan.trial_days),
            auto_renew=False,
            amount=Decimal("0"),
            currency="usd",
            created_at=now,
            updated_at=now,
        )
        stored = self._insert_for_owner(owner, subscription)
        logger.info(
            "Trial started",
            extra={"subscription_id": stored.subscription_id, "plan_id": plan.plan_id},
        )
        self._notify(
            stored,
            NotificationKind.TRIAL_STARTED,
            {"plan_name": plan.name, "trial_end": stored.end_date.isoformat()},
        )
        return stored

    def create_subscription(
        self,
        owner: Owner,
        plan_id: str,
        *,
        payment_provider: PaymentProviderName = PaymentProviderName.MANUAL,
        provider_confirmed: bool = False,
        auto_renew: bool = True,
        currency: str = "usd",
        external_subscription_id: Optional[str] = None,
        payment_method_ref: Optional[str] = None,
        customer_ref: Optional[str] = None,
        provider_payload: Optional[Dict[str, Any]] = None,
    ) -> Subscription:
        plan = self._subscribable_plan(plan_id)
        if not currency or len(currency) != 3:
            raise SubscriptionValidationError("currency must be a 3-letter code")

        now = self._clock()
        period_end = now + timedelta(days=plan.duration_days)
        status = SubscriptionStatus.ACTIVE if provider_confirmed else SubscriptionStatus.PENDING
        subscription = Subscription(
            subscription_id=f"sub_{uuid4().hex}",
            user_id=owner.user_id,
            tenant_id=owner.tenant_id,
            plan_id=plan.plan_id,
            status=status,
            start_date=now,
            end_date=period_end,
            auto_renew=auto_renew,
            external_subscription_id=external_subscription_id,
            payment_provider=payment_provider,
            amount=plan.price,
            currency=currency,
            payment_method_ref=payment_method_ref,
            customer_ref=customer_ref,
            last_payment_date=now if provider_confirmed else None,
            next_payment_date=period_end if provider_confirmed else None,
            last_provider_payload=provider_payload,
            created_at=now,
            updated_at=now,
        )
        stored = self._insert_for_owner(owner, subscription)
        logger.info(
            "Subscription created",
            extra={
                "subscription_id": stored.subscription_id,
                "plan_id": plan.plan_id,
                "status": stored.status.value,
                "payment_provider": payment_provider.value,
            },
        )
        self._notify(
            stored,
            NotificationKind.SUBSCRIPTION_CONFIRMED,
            {
                "plan_name": plan.name,
                "amount": str(stored.amount),
                "currency": stored.currency,
                "end_date": stored.end_date.isoformat(),
                "status": stored.status.value,
            },
        )
        return stored

    def cancel(self, subscription_id: str, *, reason: Optional[str] = None) -> ApplyResult:
        """Cancel a subscription on behalf of its owner or an administrator."""

        return self.apply(
            subscription_id,
            LifecycleEvent(trigger=LifecycleTrigger.CANCEL, reason=reason),
            idempotency_key=f"cancel:{subscription_id}",
        )

    def claim_attempt(
        self,
        subscription_id: str,
        idempotency_key: str,
        eligible: Callable[[Subscription], bool],
    ) -> Optional[Subscription]:
        """Reserve a charge attempt for ``idempotency_key``.

        Returns the subscription when the caller may charge it, ``None`` when
        the attempt was already claimed or applied or the record no longer
        qualifies. The lock is released before the caller talks to a provider.
        """

        with self._repository.lock_subscription(subscription_id) as tx:
            current = tx.subscription
            if current is None or current.is_terminal:
                return None
            if tx.has_key(idempotency_key) or not eligible(current):
                return None
            if not tx.record_key(f"claim:{idempotency_key}"):
                return None
            return current

    def notify_once(
        self,
        subscription_id: str,
        idempotency_key: str,
        kind: NotificationKind,
        params: Mapping[str, Any],
    ) -> bool:
        """Send a reminder that is not a transition, at most once per key."""

        with self._repository.lock_subscription(subscription_id) as tx:
            current = tx.subscription
            if current is None or current.is_terminal:
                return False
            if not tx.record_key(idempotency_key):
                return False
        self._notify(current, kind, params)
        return True

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------
    def apply(
        self,
        subscription_id: str,
        event: LifecycleEvent,
        idempotency_key: str,
    ) -> ApplyResult:
        """Apply ``event`` at most once per ``idempotency_key``.

        Repeated keys, terminal subscriptions and triggers whose guard does not
        hold leave the record untouched and return it with ``applied=False``.
        """

        if not idempotency_key:
            raise SubscriptionValidationError("idempotency_key is required")

        with self._repository.lock_subscription(subscription_id) as tx:
            current = tx.subscription
            if current is None:
                raise NotFoundError(f"Subscription with ID {subscription_id} not found")

            if tx.has_key(idempotency_key):
                logger.info(
                    "Idempotency key already applied",
                    extra={"subscription_id": subscription_id, "idempotency_key": idempotency_key},
                )
                return ApplyResult(subscription=current, applied=False, previous_status=current.status)

            updated = self._transition(current, event)
            if updated is None:
                logger.info(
                    "Transition ignored",
                    extra={
                        "subscription_id": subscription_id,
                        "trigger": event.trigger.value,
                        "status": current.status.value,
                    },
                )
                return ApplyResult(subscription=current, applied=False, previous_status=current.status)

            tx.record_key(idempotency_key)
            stored = tx.save(updated)
            notice_pending = True
            if event.trigger == LifecycleTrigger.TRIAL_WILL_END:
                notice_pending = tx.record_key(trial_ending_key(stored))

        logger.info(
            "Subscription transition applied",
            extra={
                "subscription_id": subscription_id,
                "trigger": event.trigger.value,
                "from_status": current.status.value,
                "to_status": stored.status.value,
                "idempotency_key": idempotency_key,
            },
        )
        if notice_pending:
            self._notify_transition(current, stored, event)
        return ApplyResult(subscription=stored, applied=True, previous_status=current.status)

    def _transition(self, current: Subscription, event: LifecycleEvent) -> Optional[Subscription]:
        if current.is_terminal:
            return None
        if current.status not in _ALLOWED_SOURCES[event.trigger]:
            return None

        now = self._clock()
        trigger = event.trigger

        if trigger in (LifecycleTrigger.RENEWAL_SUCCEEDED, LifecycleTrigger.RENEWAL_FAILED):
            if current.status == SubscriptionStatus.ACTIVE and not current.auto_renew:
                return None
            if current.status == SubscriptionStatus.FAILED and self._policy.retries_exhausted(
                current.retry.attempts
            ):
                return None
            if trigger == LifecycleTrigger.RENEWAL_SUCCEEDED:
                return self._paid(current, now, event)
            return self._payment_failed(current, now, event)

        if trigger == LifecycleTrigger.PAYMENT_SUCCEEDED:
            return self._paid(current, now, event)

        if trigger == LifecycleTrigger.PAYMENT_FAILED:
            if current.status == SubscriptionStatus.FAILED and self._policy.retries_exhausted(
                current.retry.attempts
            ):
                return self._with_payload(current, now, event)
            return self._payment_failed(current, now, event)

        if trigger == LifecycleTrigger.TRIAL_EXPIRED:
            if current.end_date >= now:
                return None
            return self._expired(current, now)

        if trigger == LifecycleTrigger.GRACE_EXPIRED:
            if current.next_payment_date is None:
                return None
            if now - current.next_payment_date <= self._policy.grace_period:
                return None
            return self._expired(current, now)

        if trigger == LifecycleTrigger.CANCEL:
            return self._canceled(current, now, event)

        if trigger == LifecycleTrigger.PROVIDER_STATUS:
            return self._provider_status(current, now, event)

        if trigger == LifecycleTrigger.TRIAL_WILL_END:
            return self._with_payload(current, now, event)

        return None  # pragma: no cover - every trigger handled above

    def _paid(self, current: Subscription, now: datetime, event: LifecycleEvent) -> Subscription:
        plan = self._catalog.get_plan(current.plan_id)
        next_payment = now + timedelta(days=plan.duration_days)
        payload = event.payload if event.payload is not None else current.last_provider_payload
        return current.model_copy(
            update={
                "status": SubscriptionStatus.ACTIVE,
                "last_payment_date": now,
                "next_payment_date": next_payment,
                "end_date": next_payment,
                "retry": RetryBookkeeping(),
                "last_provider_payload": payload,
                "updated_at": now,
            }
        )

    def _payment_failed(self, current: Subscription, now: datetime, event: LifecycleEvent) -> Subscription:
        attempts = current.retry.attempts + 1 if current.status == SubscriptionStatus.FAILED else 1
        payload = event.payload if event.payload is not None else current.last_provider_payload
        return current.model_copy(
            update={
                "status": SubscriptionStatus.FAILED,
                "retry": RetryBookkeeping(
                    attempts=attempts,
                    next_retry_date=now + self._policy.retry_delay(attempts),
                    last_error=event.error or "payment failed",
                ),
                "last_provider_payload": payload,
                "updated_at": now,
            }
        )

    def _expired(self, current: Subscription, now: datetime) -> Subscription:
        return current.model_copy(
            update={
                "status": SubscriptionStatus.EXPIRED,
                "auto_renew": False,
                "ended_at": now,
                "updated_at": now,
            }
        )

    def _canceled(self, current: Subscription, now: datetime, event: LifecycleEvent) -> Subscription:
        payload = event.payload if event.payload is not None else current.last_provider_payload
        return current.model_copy(
            update={
                "status": SubscriptionStatus.CANCELED,
                "canceled_at": now,
                "ended_at": now,
                "auto_renew": False,
                "last_provider_payload": payload,
                "updated_at": now,
            }
        )

    def _with_payload(self, current: Subscription, now: datetime, event: LifecycleEvent) -> Subscription:
        if event.payload is None:
            return current.model_copy(update={"updated_at": now})
        return current.model_copy(update={"last_provider_payload": event.payload, "updated_at": now})

    def _provider_status(self, current: Subscription, now: datetime, event: LifecycleEvent) -> Subscription:
        target = event.target_status
        if target == SubscriptionStatus.CANCELED:
            return self._canceled(current, now, event)
        if target == SubscriptionStatus.EXPIRED:
            expired = self._expired(current, now)
            return self._with_payload(expired, now, event)
        if target == SubscriptionStatus.FAILED and current.status != SubscriptionStatus.FAILED:
            reported = event.model_copy(
                update={"error": event.error or "provider reported a failed payment"}
            )
            return self._payment_failed(current, now, reported)

        update: Dict[str, Any] = {"status": target, "updated_at": now}
        if event.payload is not None:
            update["last_provider_payload"] = event.payload
        if target == SubscriptionStatus.ACTIVE:
            due = current.next_payment_date
            if current.status == SubscriptionStatus.FAILED or due is None or due <= now:
                # The provider collected the payment; start a new period so sweeps do not charge again.
                return self._paid(current, now, event)
        return current.model_copy(update=update)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _subscribable_plan(self, plan_id: str) -> Plan:
        try:
            plan = self._catalog.get_plan(plan_id)
        except NotFoundError as exc:
            raise SubscriptionValidationError(str(exc)) from exc
        if not plan.is_active:
            raise SubscriptionValidationError(f"Subscription plan {plan_id} is not active")
        return plan

    def _insert_for_owner(self, owner: Owner, subscription: Subscription) -> Subscription:
        with self._repository.lock_owner(owner) as tx:
            existing = tx.find_open()
            if existing is not None:
                raise ConflictError(
                    "Owner already has an open subscription",
                    detail={"subscription_id": existing.subscription_id},
                )
            return tx.insert(subscription)

    def _notify_transition(
        self,
        previous: Subscription,
        current: Subscription,
        event: LifecycleEvent,
    ) -> None:
        kind = _notification_for(previous, current, event)
        if kind is None:
            return
        params: Dict[str, Any] = {
            "plan_id": current.plan_id,
            "status": current.status.value,
            "amount": str(current.amount),
            "currency": current.currency,
        }
        try:
            params["plan_name"] = self._catalog.get_plan(current.plan_id).name
        except NotFoundError:
            params["plan_name"] = "Subscription"
        if kind in (NotificationKind.RENEWAL_SUCCEEDED, NotificationKind.SUBSCRIPTION_ACTIVATED):
            params["next_payment_date"] = _isoformat(current.next_payment_date)
        elif kind == NotificationKind.RENEWAL_FAILED:
            params["attempt"] = current.retry.attempts
            params["max_attempts"] = self._policy.max_retry_attempts
            params["next_retry_date"] = _isoformat(current.retry.next_retry_date)
        elif kind == NotificationKind.TRIAL_ENDING:
            params["trial_end"] = current.end_date.isoformat()
            params["days_left"] = max((current.end_date - self._clock()).days, 0)
        self._notify(current, kind, params)

    def _notify(self, subscription: Subscription, kind: NotificationKind, params: Mapping[str, Any]) -> None:
        try:
            self._notifier.send(subscription.user_id, kind, params)
        except Exception:
            logger.exception(
                "Failed to send subscription notification",
                extra={"subscription_id": subscription.subscription_id, "kind": kind.value},
            )


def _notification_for(
    previous: Subscription,
    current: Subscription,
    event: LifecycleEvent,
) -> Optional[NotificationKind]:
    if event.trigger == LifecycleTrigger.TRIAL_WILL_END:
        return NotificationKind.TRIAL_ENDING
    if current.status == SubscriptionStatus.CANCELED:
        return NotificationKind.SUBSCRIPTION_CANCELED
    if current.status == SubscriptionStatus.EXPIRED:
        if previous.status == SubscriptionStatus.TRIAL:
            return NotificationKind.TRIAL_EXPIRED
        return NotificationKind.SUBSCRIPTION_EXPIRED
    if current.status == SubscriptionStatus.FAILED and event.trigger in (
        LifecycleTrigger.RENEWAL_FAILED,
        LifecycleTrigger.PAYMENT_FAILED,
        LifecycleTrigger.PROVIDER_STATUS,
    ):
        if current.retry.attempts == previous.retry.attempts and previous.status == SubscriptionStatus.FAILED:
            return None
        return NotificationKind.RENEWAL_FAILED
    if current.status == SubscriptionStatus.ACTIVE:
        if event.trigger in (LifecycleTrigger.RENEWAL_SUCCEEDED, LifecycleTrigger.PAYMENT_SUCCEEDED):
            if previous.status in (SubscriptionStatus.PENDING, SubscriptionStatus.TRIAL):
                return NotificationKind.SUBSCRIPTION_ACTIVATED
            return NotificationKind.RENEWAL_SUCCEEDED
        if previous.status != SubscriptionStatus.ACTIVE:
            return NotificationKind.SUBSCRIPTION_ACTIVATED
    return None


def trial_ending_key(subscription: Subscription) -> str:
    """Dedup key shared by every trial-ending notice for one trial end date."""

    return f"trial-ending:{subscription.end_date.date().isoformat()}:{subscription.subscription_id}"


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


__all__ = [
    "OwnerTransaction",
    "SubscriptionNotifier",
    "SubscriptionRepository",
    "SubscriptionStateMachine",
    "SubscriptionTransaction",
    "trial_ending_key",
]
