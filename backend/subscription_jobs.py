"""Scheduler integration for the daily subscription sweeps."""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from threading import Event, Lock, Thread
from typing import Callable, Dict, Optional, Tuple

from backend.app.services.subscriptions import get_renewal_scheduler
from backend.app.subscriptions import RenewalScheduler, SweepSummary
from backend.app.subscriptions.scheduler import next_run_at

logger = logging.getLogger(__name__)

# sweep name -> (UTC hour, scheduler method name)
SWEEP_SCHEDULE: Dict[str, Tuple[int, str]] = {
    "trial-expiry": (0, "run_trial_expiry_sweep"),
    "renewal": (2, "run_renewal_sweep"),
    "retry": (3, "run_retry_sweep"),
    "expiration": (4, "run_expiration_sweep"),
    "trial-ending": (8, "run_trial_ending_sweep"),
    "renewal-reminder": (10, "run_renewal_reminder_sweep"),
}

_scheduler_lock = Lock()
_workers: Dict[str, "_SweepWorker"] = {}


def _empty_metrics() -> Dict[str, object]:
    return {
        "runs": 0,
        "applied": 0,
        "failed_items": 0,
        "failures": 0,
        "last_run_at": None,
        "last_success_at": None,
        "last_error": None,
    }


_SWEEP_METRICS: Dict[str, Dict[str, object]] = {name: _empty_metrics() for name in SWEEP_SCHEDULE}
_metrics_lock = Lock()


def _record_run_start(sweep: str, started_at: datetime) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[sweep]
        metrics["runs"] = int(metrics.get("runs", 0)) + 1
        metrics["last_run_at"] = started_at


def _record_run_success(sweep: str, completed_at: datetime, summary: SweepSummary) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[sweep]
        metrics["applied"] = int(metrics.get("applied", 0)) + summary.applied
        metrics["failed_items"] = int(metrics.get("failed_items", 0)) + summary.failed
        metrics["last_success_at"] = completed_at
        metrics["last_error"] = None


def _record_run_failure(sweep: str, error: Exception) -> None:
    with _metrics_lock:
        metrics = _SWEEP_METRICS[sweep]
        metrics["failures"] = int(metrics.get("failures", 0)) + 1
        metrics["last_error"] = f"{type(error).__name__}: {error}"


def run_sweep_job(
    sweep: str,
    *,
    scheduler: Optional[RenewalScheduler] = None,
    now: Optional[datetime] = None,
) -> SweepSummary:
    """Run one named sweep and record its metrics."""

    if sweep not in SWEEP_SCHEDULE:
        raise ValueError(f"Unknown subscription sweep: {sweep}")
    current_time = now or datetime.now(timezone.utc)
    if current_time.tzinfo is None:
        current_time = current_time.replace(tzinfo=timezone.utc)

    runner = scheduler or get_renewal_scheduler()
    method: Callable[[], SweepSummary] = getattr(runner, SWEEP_SCHEDULE[sweep][1])

    _record_run_start(sweep, current_time)
    try:
        summary = method()
    except Exception as exc:
        _record_run_failure(sweep, exc)
        logger.exception("Subscription sweep failed", extra={"sweep": sweep})
        raise
    _record_run_success(sweep, current_time, summary)
    logger.info(
        "Subscription sweep job completed",
        extra={
            "sweep": sweep,
            "selected": summary.selected,
            "applied": summary.applied,
            "failed": summary.failed,
        },
    )
    return summary


class _SweepWorker(Thread):
    def __init__(self, sweep: str, *, hour: int):
        super().__init__(daemon=True, name=f"subscription-sweep-{sweep}")
        self.sweep = sweep
        self._hour = hour
        self._stop_event = Event()

    def stop(self) -> None:
        self._stop_event.set()

    def _seconds_until_next_run(self) -> float:
        now = datetime.now(timezone.utc)
        return max((next_run_at(now, self._hour) - now).total_seconds(), 0.0)

    def run(self) -> None:  # pragma: no cover - thread execution
        while not self._stop_event.wait(self._seconds_until_next_run()):
            try:
                run_sweep_job(self.sweep)
            except Exception:
                # Failures are logged and counted inside run_sweep_job.
                continue


def start_subscription_scheduler() -> None:
    with _scheduler_lock:
        if _workers:
            return
        for sweep, (hour, _method) in SWEEP_SCHEDULE.items():
            _workers[sweep] = _SweepWorker(sweep, hour=hour)
        for worker in _workers.values():
            worker.start()
        logger.info(
            "Subscription scheduler started",
            extra={"sweeps": {sweep: f"{hour:02d}:00 UTC" for sweep, (hour, _m) in SWEEP_SCHEDULE.items()}},
        )


def shutdown_subscription_scheduler() -> None:
    with _scheduler_lock:
        workers = list(_workers.values())
        for worker in workers:
            worker.stop()
        for worker in workers:
            worker.join(timeout=1.0)
        _workers.clear()
        logger.info("Subscription scheduler stopped")


def get_subscription_job_metrics() -> Dict[str, Dict[str, object]]:
    with _metrics_lock:
        snapshot: Dict[str, Dict[str, object]] = {}
        for key, value in _SWEEP_METRICS.items():
            snapshot[key] = {
                **value,
                "last_run_at": value["last_run_at"].isoformat() if value.get("last_run_at") else None,
                "last_success_at": value["last_success_at"].isoformat() if value.get("last_success_at") else None,
            }
        return snapshot


def _reset_metrics_for_testing() -> None:  # pragma: no cover - used in tests only
    with _metrics_lock:
        for metrics in _SWEEP_METRICS.values():
            metrics.update(_empty_metrics())


__all__ = [
    "SWEEP_SCHEDULE",
    "get_subscription_job_metrics",
    "run_sweep_job",
    "shutdown_subscription_scheduler",
    "start_subscription_scheduler",
]
