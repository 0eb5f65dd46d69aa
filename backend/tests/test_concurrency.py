from __future__ import annotations

import threading
import time
from typing import Any, Callable, List

import pytest

from backend.app.subscriptions import (
    ConflictError,
    LifecycleEvent,
    LifecycleTrigger,
    NotificationKind,
    SubscriptionStatus,
)
from backend.app.subscriptions import memory as memory_module


def _run_together(*calls: Callable[[], Any]) -> List[Any]:
    """Start every call on its own thread at the same moment; return results or raised errors."""

    barrier = threading.Barrier(len(calls))
    outcomes: List[Any] = [None] * len(calls)

    def worker(index: int, call: Callable[[], Any]) -> None:
        barrier.wait()
        try:
            outcomes[index] = call()
        except Exception as exc:
            outcomes[index] = exc

    threads = [threading.Thread(target=worker, args=(index, call)) for index, call in enumerate(calls)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)
        assert not thread.is_alive()
    return outcomes


@pytest.fixture
def slow_transactions(monkeypatch):
    """Hold the in-memory locks a little longer so racing threads overlap."""

    original_find_open = memory_module._MemoryOwnerTransaction.find_open
    original_save = memory_module._MemorySubscriptionTransaction.save

    def slow_find_open(self):
        found = original_find_open(self)
        time.sleep(0.05)
        return found

    def slow_save(self, subscription):
        time.sleep(0.05)
        return original_save(self, subscription)

    monkeypatch.setattr(memory_module._MemoryOwnerTransaction, "find_open", slow_find_open)
    monkeypatch.setattr(memory_module._MemorySubscriptionTransaction, "save", slow_save)


def test_simultaneous_creates_leave_one_open_subscription(
    slow_transactions, state_machine, owner, monthly_plan, yearly_plan, subscription_repository
):
    outcomes = _run_together(
        lambda: state_machine.start_trial(owner, monthly_plan.plan_id),
        lambda: state_machine.create_subscription(owner, yearly_plan.plan_id),
    )

    created = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
    conflicts = [outcome for outcome in outcomes if isinstance(outcome, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 1
    assert subscription_repository.latest_for_owner(owner).subscription_id == created[0].subscription_id


def test_racing_cancel_and_payment_failure_end_canceled(
    slow_transactions, state_machine, active_subscription, subscription_repository, notifier
):
    subscription_id = active_subscription.subscription_id
    failure = LifecycleEvent(trigger=LifecycleTrigger.PAYMENT_FAILED, error="card declined")

    outcomes = _run_together(
        lambda: state_machine.cancel(subscription_id),
        lambda: state_machine.apply(subscription_id, failure, idempotency_key="stripe:evt_failed"),
    )

    assert not any(isinstance(outcome, Exception) for outcome in outcomes)
    stored = subscription_repository.get_subscription(subscription_id)
    assert stored.status == SubscriptionStatus.CANCELED
    assert stored.canceled_at is not None
    assert notifier.kinds().count(NotificationKind.SUBSCRIPTION_CANCELED) == 1


def test_concurrent_duplicate_deliveries_apply_once(
    slow_transactions, state_machine, active_subscription, notifier
):
    subscription_id = active_subscription.subscription_id
    cancel = LifecycleEvent(trigger=LifecycleTrigger.CANCEL, reason="closing the location")

    outcomes = _run_together(
        *[
            (lambda: state_machine.apply(subscription_id, cancel, idempotency_key="iyzico:evt_cancel"))
            for _ in range(4)
        ]
    )

    assert sum(1 for outcome in outcomes if outcome.applied) == 1
    assert {outcome.subscription.status for outcome in outcomes} == {SubscriptionStatus.CANCELED}
    assert notifier.kinds().count(NotificationKind.SUBSCRIPTION_CANCELED) == 1
