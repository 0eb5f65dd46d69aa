"""Retry, grace-period and reminder policy shared by the engine."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import Tuple


@dataclass(frozen=True)
class BillingPolicy:
    """Immutable billing constants handed to the state machine and scheduler."""

    max_retry_attempts: int = 3
    retry_delays_days: Tuple[int, ...] = (1, 3, 7)
    grace_period_days: int = 3
    notification_lead_days: Tuple[int, ...] = (3, 7)
    trial_notice_days: int = 3
    charge_timeout_seconds: float = 30.0

    def __post_init__(self) -> None:
        if self.max_retry_attempts < 1:
            raise ValueError("max_retry_attempts must be >= 1")
        if not self.retry_delays_days or any(days < 1 for days in self.retry_delays_days):
            raise ValueError("retry_delays_days must contain positive day counts")
        if self.grace_period_days < 0:
            raise ValueError("grace_period_days must be >= 0")
        if any(days < 1 for days in self.notification_lead_days):
            raise ValueError("notification_lead_days must contain positive day counts")
        if self.charge_timeout_seconds <= 0:
            raise ValueError("charge_timeout_seconds must be > 0")

    def retry_delay(self, attempt: int) -> timedelta:
        """Delay before the retry that follows failed attempt number ``attempt``.

        Attempts are 1-based; attempts past the end of the delay table reuse
        the last entry.
        """

        index = min(max(attempt, 1), len(self.retry_delays_days)) - 1
        return timedelta(days=self.retry_delays_days[index])

    @property
    def grace_period(self) -> timedelta:
        return timedelta(days=self.grace_period_days)

    def retries_exhausted(self, attempts: int) -> bool:
        return attempts >= self.max_retry_attempts


DEFAULT_POLICY = BillingPolicy()


__all__ = ["BillingPolicy", "DEFAULT_POLICY"]
