"""In-memory repositories used by tests and the ``memory`` storage mode."""
from __future__ import annotations

from collections import defaultdict
from contextlib import contextmanager
from datetime import datetime
from threading import Lock
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Set

from .models import (
    LIVE_STATUSES,
    OPEN_STATUSES,
    Owner,
    Plan,
    Subscription,
    SubscriptionStatus,
)


class _LockTable:
    """Hands out one lock per key, created on first use."""

    def __init__(self) -> None:
        self._guard = Lock()
        self._locks: Dict[str, Lock] = {}

    def get(self, key: str) -> Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = Lock()
                self._locks[key] = lock
            return lock


class _MemorySubscriptionTransaction:
    def __init__(self, repository: "InMemorySubscriptionRepository", subscription_id: str) -> None:
        self._repository = repository
        self._subscription_id = subscription_id
        self.subscription = repository.get_subscription(subscription_id)

    def has_key(self, idempotency_key: str) -> bool:
        with self._repository._data_lock:
            return idempotency_key in self._repository._applied_keys[self._subscription_id]

    def record_key(self, idempotency_key: str) -> bool:
        with self._repository._data_lock:
            keys = self._repository._applied_keys[self._subscription_id]
            if idempotency_key in keys:
                return False
            keys.add(idempotency_key)
            return True

    def save(self, subscription: Subscription) -> Subscription:
        if subscription.subscription_id != self._subscription_id:
            raise ValueError("Transaction cannot save a different subscription")
        with self._repository._data_lock:
            self._repository._subscriptions[self._subscription_id] = subscription
        self.subscription = subscription
        return subscription


class _MemoryOwnerTransaction:
    def __init__(self, repository: "InMemorySubscriptionRepository", owner: Owner) -> None:
        self._repository = repository
        self._owner = owner

    def find_open(self) -> Optional[Subscription]:
        for subscription in self._repository._owned_by(self._owner):
            if subscription.status in OPEN_STATUSES:
                return subscription
        return None

    def insert(self, subscription: Subscription) -> Subscription:
        with self._repository._data_lock:
            if subscription.subscription_id in self._repository._subscriptions:
                raise ValueError(f"Subscription {subscription.subscription_id} already exists")
            self._repository._subscriptions[subscription.subscription_id] = subscription
        return subscription


class InMemorySubscriptionRepository:
    """Thread-safe subscription store with per-row and per-owner locks."""

    def __init__(self, subscriptions: Sequence[Subscription] = ()) -> None:
        self._data_lock = Lock()
        self._subscriptions: Dict[str, Subscription] = {
            subscription.subscription_id: subscription for subscription in subscriptions
        }
        self._applied_keys: Dict[str, Set[str]] = defaultdict(set)
        self._row_locks = _LockTable()
        self._owner_locks = _LockTable()

    def _snapshot(self) -> List[Subscription]:
        with self._data_lock:
            return list(self._subscriptions.values())

    def _owned_by(self, owner: Owner) -> List[Subscription]:
        return [
            subscription
            for subscription in self._snapshot()
            if subscription.user_id == owner.user_id and subscription.tenant_id == owner.tenant_id
        ]

    def get_subscription(self, subscription_id: str) -> Optional[Subscription]:
        with self._data_lock:
            return self._subscriptions.get(subscription_id)

    def latest_for_owner(self, owner: Owner) -> Optional[Subscription]:
        owned = self._owned_by(owner)
        if not owned:
            return None
        return max(owned, key=lambda subscription: subscription.created_at)

    def find_by_external_id(
        self, provider: str, external_subscription_id: str
    ) -> Optional[Subscription]:
        for subscription in self._snapshot():
            if subscription.external_subscription_id != external_subscription_id:
                continue
            if provider and subscription.payment_provider.value != provider:
                continue
            return subscription
        return None

    def list_due_for_renewal(self, *, due_before: datetime) -> Sequence[Subscription]:
        return [
            subscription
            for subscription in self._snapshot()
            if subscription.status == SubscriptionStatus.ACTIVE
            and subscription.auto_renew
            and subscription.next_payment_date is not None
            and subscription.next_payment_date <= due_before
        ]

    def list_due_for_retry(self, *, now: datetime, max_attempts: int) -> Sequence[Subscription]:
        return [
            subscription
            for subscription in self._snapshot()
            if subscription.status == SubscriptionStatus.FAILED
            and subscription.auto_renew
            and subscription.retry.next_retry_date is not None
            and subscription.retry.next_retry_date <= now
            and subscription.retry.attempts < max_attempts
        ]

    def list_past_grace(self, *, cutoff: datetime) -> Sequence[Subscription]:
        return [
            subscription
            for subscription in self._snapshot()
            if subscription.status in (SubscriptionStatus.ACTIVE, SubscriptionStatus.FAILED)
            and subscription.next_payment_date is not None
            and subscription.next_payment_date < cutoff
        ]

    def list_expired_trials(self, *, now: datetime) -> Sequence[Subscription]:
        return [
            subscription
            for subscription in self._snapshot()
            if subscription.status == SubscriptionStatus.TRIAL and subscription.end_date < now
        ]

    def list_trials_ending_between(self, *, start: datetime, end: datetime) -> Sequence[Subscription]:
        return [
            subscription
            for subscription in self._snapshot()
            if subscription.status == SubscriptionStatus.TRIAL and start <= subscription.end_date <= end
        ]

    def list_renewing_between(self, *, start: datetime, end: datetime) -> Sequence[Subscription]:
        return [
            subscription
            for subscription in self._snapshot()
            if subscription.status == SubscriptionStatus.ACTIVE
            and subscription.auto_renew
            and subscription.next_payment_date is not None
            and start <= subscription.next_payment_date < end
        ]

    def count_by_status(self) -> Mapping[SubscriptionStatus, int]:
        counts = {status: 0 for status in SubscriptionStatus}
        for subscription in self._snapshot():
            counts[subscription.status] += 1
        return counts

    def is_plan_referenced(self, plan_id: str, *, live_only: bool) -> bool:
        for subscription in self._snapshot():
            if subscription.plan_id != plan_id:
                continue
            if not live_only or subscription.status in LIVE_STATUSES:
                return True
        return False

    @contextmanager
    def lock_subscription(self, subscription_id: str) -> Iterator[_MemorySubscriptionTransaction]:
        with self._row_locks.get(subscription_id):
            yield _MemorySubscriptionTransaction(self, subscription_id)

    @contextmanager
    def lock_owner(self, owner: Owner) -> Iterator[_MemoryOwnerTransaction]:
        with self._owner_locks.get(owner.key):
            yield _MemoryOwnerTransaction(self, owner)


class InMemoryPlanRepository:
    """Plan store; reference checks are delegated to the subscription store."""

    def __init__(
        self,
        plans: Sequence[Plan] = (),
        *,
        subscriptions: Optional[InMemorySubscriptionRepository] = None,
    ) -> None:
        self._lock = Lock()
        self._plans: Dict[str, Plan] = {plan.plan_id: plan for plan in plans}
        self._subscriptions = subscriptions

    def save_plan(self, plan: Plan) -> Plan:
        with self._lock:
            self._plans[plan.plan_id] = plan
        return plan

    def get_plan(self, plan_id: str) -> Optional[Plan]:
        with self._lock:
            return self._plans.get(plan_id)

    def list_plans(self) -> Sequence[Plan]:
        with self._lock:
            return list(self._plans.values())

    def delete_plan(self, plan_id: str) -> bool:
        with self._lock:
            return self._plans.pop(plan_id, None) is not None

    def is_plan_referenced(self, plan_id: str, *, live_only: bool) -> bool:
        if self._subscriptions is None:
            return False
        return self._subscriptions.is_plan_referenced(plan_id, live_only=live_only)


__all__ = ["InMemoryPlanRepository", "InMemorySubscriptionRepository"]
