"""Time-driven sweeps that push subscriptions through the state machine."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta
from typing import Any, Callable, Dict

from .errors import ConflictError, NotFoundError
from .gateways import GatewayRegistry
from .models import (
    ApplyResult,
    LifecycleEvent,
    LifecycleTrigger,
    NotificationKind,
    RenewalRequest,
    RenewalResult,
    Subscription,
    SubscriptionStatus,
)
from .state_machine import SubscriptionRepository, SubscriptionStateMachine, trial_ending_key

logger = logging.getLogger(__name__)


@dataclass
class SweepSummary:
    """Counts reported by a single sweep run."""

    sweep: str
    run_at: datetime
    selected: int = 0
    applied: int = 0
    skipped: int = 0
    failed: int = 0
    errors: Dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "sweep": self.sweep,
            "run_at": self.run_at.isoformat(),
            "selected": self.selected,
            "applied": self.applied,
            "skipped": self.skipped,
            "failed": self.failed,
        }


def _run_key(sweep: str, now: datetime, subscription_id: str) -> str:
    return f"{sweep}:{now.date().isoformat()}:{subscription_id}"


def _start_of_day(value: datetime) -> datetime:
    return datetime.combine(value.date(), time.min, tzinfo=value.tzinfo)


class RenewalScheduler:
    """Runs renewal, retry, expiration and reminder sweeps.

    Every sweep is safe to re-run: transitions are keyed by sweep name, run
    date and subscription id, and charges are claimed under the subscription
    lock before the provider is called.
    """

    def __init__(
        self,
        state_machine: SubscriptionStateMachine,
        repository: SubscriptionRepository,
        gateways: GatewayRegistry,
    ) -> None:
        self._state_machine = state_machine
        self._repository = repository
        self._gateways = gateways
        self._policy = state_machine.policy

    # ------------------------------------------------------------------
    # Charging sweeps
    # ------------------------------------------------------------------
    def run_renewal_sweep(self) -> SweepSummary:
        now = self._state_machine.now()
        due_before = now + timedelta(days=1)
        summary = SweepSummary(sweep="renewal", run_at=now)

        def eligible(subscription: Subscription) -> bool:
            return (
                subscription.status == SubscriptionStatus.ACTIVE
                and subscription.auto_renew
                and subscription.next_payment_date is not None
                and subscription.next_payment_date <= due_before
            )

        for subscription in self._repository.list_due_for_renewal(due_before=due_before):
            summary.selected += 1
            key = _run_key("renewal", now, subscription.subscription_id)
            self._charge_item(summary, subscription.subscription_id, key, eligible)
        self._log_summary(summary)
        return summary

    def run_retry_sweep(self) -> SweepSummary:
        now = self._state_machine.now()
        summary = SweepSummary(sweep="retry", run_at=now)
        max_attempts = self._policy.max_retry_attempts

        def eligible(subscription: Subscription) -> bool:
            return (
                subscription.status == SubscriptionStatus.FAILED
                and subscription.auto_renew
                and subscription.retry.next_retry_date is not None
                and subscription.retry.next_retry_date <= now
                and subscription.retry.attempts < max_attempts
            )

        for subscription in self._repository.list_due_for_retry(now=now, max_attempts=max_attempts):
            summary.selected += 1
            key = _run_key("retry", now, subscription.subscription_id)
            self._charge_item(summary, subscription.subscription_id, key, eligible)
        self._log_summary(summary)
        return summary

    def trigger_renewal(self, subscription_id: str) -> ApplyResult:
        """Administrator-initiated renewal attempt outside the daily cadence."""

        if self._repository.get_subscription(subscription_id) is None:
            raise NotFoundError(f"Subscription with ID {subscription_id} not found")
        now = self._state_machine.now()
        key = f"manual:{now.isoformat()}:{subscription_id}"
        claimed = self._state_machine.claim_attempt(
            subscription_id,
            key,
            lambda subscription: subscription.status
            in (SubscriptionStatus.ACTIVE, SubscriptionStatus.FAILED),
        )
        if claimed is None:
            raise ConflictError("Subscription is not eligible for renewal")
        logger.info("Manual renewal triggered", extra={"subscription_id": subscription_id})
        return self._charge_and_apply(claimed, key)

    def _charge_item(
        self,
        summary: SweepSummary,
        subscription_id: str,
        key: str,
        eligible: Callable[[Subscription], bool],
    ) -> None:
        try:
            claimed = self._state_machine.claim_attempt(subscription_id, key, eligible)
            if claimed is None:
                summary.skipped += 1
                return
            result = self._charge_and_apply(claimed, key)
        except Exception as exc:
            summary.failed += 1
            summary.errors[subscription_id] = type(exc).__name__
            logger.exception(
                "Sweep item failed",
                extra={"sweep": summary.sweep, "subscription_id": subscription_id},
            )
            return
        if result.applied:
            summary.applied += 1
        else:
            summary.skipped += 1

    def _charge_and_apply(self, subscription: Subscription, key: str) -> ApplyResult:
        outcome = self._charge(subscription)
        if outcome.success:
            event = LifecycleEvent(
                trigger=LifecycleTrigger.RENEWAL_SUCCEEDED,
                provider_payment_id=outcome.provider_payment_id,
                payload=outcome.payload or None,
            )
        else:
            event = LifecycleEvent(
                trigger=LifecycleTrigger.RENEWAL_FAILED,
                error=outcome.error,
                payload=outcome.payload or None,
            )
        return self._state_machine.apply(subscription.subscription_id, event, idempotency_key=key)

    def _charge(self, subscription: Subscription) -> RenewalResult:
        try:
            gateway = self._gateways.for_provider(subscription.payment_provider)
        except LookupError as exc:
            return RenewalResult.failed(str(exc))
        request = RenewalRequest(
            subscription_id=subscription.subscription_id,
            amount=subscription.amount,
            currency=subscription.currency,
            payment_method_ref=subscription.payment_method_ref,
            customer_ref=subscription.customer_ref,
        )
        result = gateway.renew(request)
        logger.info(
            "Renewal charge %s",
            "succeeded" if result.success else "failed",
            extra={
                "subscription_id": subscription.subscription_id,
                "provider": subscription.payment_provider.value,
                "provider_payment_id": result.provider_payment_id,
            },
        )
        return result

    # ------------------------------------------------------------------
    # Expiry sweeps
    # ------------------------------------------------------------------
    def run_expiration_sweep(self) -> SweepSummary:
        now = self._state_machine.now()
        summary = SweepSummary(sweep="expiration", run_at=now)
        cutoff = now - self._policy.grace_period
        event = LifecycleEvent(trigger=LifecycleTrigger.GRACE_EXPIRED)
        for subscription in self._repository.list_past_grace(cutoff=cutoff):
            summary.selected += 1
            key = _run_key("expiration", now, subscription.subscription_id)
            self._apply_item(summary, subscription.subscription_id, event, key)
        self._log_summary(summary)
        return summary

    def run_trial_expiry_sweep(self) -> SweepSummary:
        now = self._state_machine.now()
        summary = SweepSummary(sweep="trial-expiry", run_at=now)
        event = LifecycleEvent(trigger=LifecycleTrigger.TRIAL_EXPIRED)
        for subscription in self._repository.list_expired_trials(now=now):
            summary.selected += 1
            key = _run_key("trial-expiry", now, subscription.subscription_id)
            self._apply_item(summary, subscription.subscription_id, event, key)
        self._log_summary(summary)
        return summary

    def _apply_item(
        self,
        summary: SweepSummary,
        subscription_id: str,
        event: LifecycleEvent,
        key: str,
    ) -> None:
        try:
            result = self._state_machine.apply(subscription_id, event, idempotency_key=key)
        except Exception as exc:
            summary.failed += 1
            summary.errors[subscription_id] = type(exc).__name__
            logger.exception(
                "Sweep item failed",
                extra={"sweep": summary.sweep, "subscription_id": subscription_id},
            )
            return
        if result.applied:
            summary.applied += 1
        else:
            summary.skipped += 1

    # ------------------------------------------------------------------
    # Reminder sweeps
    # ------------------------------------------------------------------
    def run_renewal_reminder_sweep(self) -> SweepSummary:
        now = self._state_machine.now()
        summary = SweepSummary(sweep="renewal-reminder", run_at=now)
        today = _start_of_day(now)
        for lead_days in self._policy.notification_lead_days:
            window_start = today + timedelta(days=lead_days)
            window_end = window_start + timedelta(days=1)
            for subscription in self._repository.list_renewing_between(start=window_start, end=window_end):
                summary.selected += 1
                renewal_date = subscription.next_payment_date.date().isoformat()
                key = f"reminder:{lead_days}:{renewal_date}:{subscription.subscription_id}"
                params = {
                    "plan_id": subscription.plan_id,
                    "days_until_renewal": lead_days,
                    "renewal_date": subscription.next_payment_date.isoformat(),
                    "amount": str(subscription.amount),
                    "currency": subscription.currency,
                }
                self._notify_item(
                    summary, subscription.subscription_id, key, NotificationKind.UPCOMING_RENEWAL, params
                )
        self._log_summary(summary)
        return summary

    def run_trial_ending_sweep(self) -> SweepSummary:
        now = self._state_machine.now()
        summary = SweepSummary(sweep="trial-ending", run_at=now)
        until = now + timedelta(days=self._policy.trial_notice_days)
        for subscription in self._repository.list_trials_ending_between(start=now, end=until):
            summary.selected += 1
            trial_end = subscription.end_date
            key = trial_ending_key(subscription)
            params = {
                "plan_id": subscription.plan_id,
                "trial_end": trial_end.isoformat(),
                "days_left": max((trial_end - now).days, 0),
            }
            self._notify_item(
                summary, subscription.subscription_id, key, NotificationKind.TRIAL_ENDING, params
            )
        self._log_summary(summary)
        return summary

    def _notify_item(
        self,
        summary: SweepSummary,
        subscription_id: str,
        key: str,
        kind: NotificationKind,
        params: Dict[str, Any],
    ) -> None:
        try:
            sent = self._state_machine.notify_once(subscription_id, key, kind, params)
        except Exception as exc:
            summary.failed += 1
            summary.errors[subscription_id] = type(exc).__name__
            logger.exception(
                "Sweep item failed",
                extra={"sweep": summary.sweep, "subscription_id": subscription_id},
            )
            return
        if sent:
            summary.applied += 1
        else:
            summary.skipped += 1

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------
    def payment_health(self) -> Dict[str, Any]:
        counts = self._repository.count_by_status()
        active = counts.get(SubscriptionStatus.ACTIVE, 0)
        failed = counts.get(SubscriptionStatus.FAILED, 0)
        expired = counts.get(SubscriptionStatus.EXPIRED, 0)
        denominator = active + failed + expired
        health_score = round(active / denominator * 100, 2) if denominator else 100.0
        return {
            "counts": {status.value: counts.get(status, 0) for status in SubscriptionStatus},
            "active": active,
            "failed": failed,
            "expired": expired,
            "health_score": health_score,
        }

    def run_all(self) -> Dict[str, SweepSummary]:
        """Run every sweep once in daily order."""

        summaries: Dict[str, SweepSummary] = {}
        for sweep in (
            self.run_trial_expiry_sweep,
            self.run_renewal_sweep,
            self.run_retry_sweep,
            self.run_expiration_sweep,
            self.run_trial_ending_sweep,
            self.run_renewal_reminder_sweep,
        ):
            summary = sweep()
            summaries[summary.sweep] = summary
        return summaries

    @staticmethod
    def _log_summary(summary: SweepSummary) -> None:
        logger.info(
            "Sweep %s finished: selected=%s applied=%s skipped=%s failed=%s",
            summary.sweep,
            summary.selected,
            summary.applied,
            summary.skipped,
            summary.failed,
        )


def next_run_at(now: datetime, hour: int, minute: int = 0) -> datetime:
    """Next UTC wall-clock occurrence of ``hour:minute`` strictly after ``now``."""

    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


__all__ = ["RenewalScheduler", "SweepSummary", "next_run_at"]
