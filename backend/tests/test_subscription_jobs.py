from datetime import datetime, timezone

import pytest

from backend import subscription_jobs
from backend.app.subscriptions import SweepSummary


class FakeScheduler:
    def __init__(self, summary=None, error=None):
        self.summary = summary
        self.error = error
        self.calls = 0

    def run_renewal_sweep(self):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.summary


def test_run_sweep_job_updates_metrics():
    subscription_jobs._reset_metrics_for_testing()
    run_time = datetime(2024, 8, 1, 2, tzinfo=timezone.utc)
    summary = SweepSummary(sweep="renewal", run_at=run_time, selected=4, applied=3, failed=1)
    scheduler = FakeScheduler(summary=summary)

    result = subscription_jobs.run_sweep_job("renewal", scheduler=scheduler, now=run_time)

    assert result is summary
    assert scheduler.calls == 1
    metrics = subscription_jobs.get_subscription_job_metrics()["renewal"]
    assert metrics["runs"] == 1
    assert metrics["applied"] == 3
    assert metrics["failed_items"] == 1
    assert metrics["failures"] == 0
    assert metrics["last_run_at"] == run_time.isoformat()
    assert metrics["last_success_at"] == run_time.isoformat()
    assert metrics["last_error"] is None


def test_run_sweep_job_records_failure_and_reraises():
    subscription_jobs._reset_metrics_for_testing()
    scheduler = FakeScheduler(error=RuntimeError("database unavailable"))

    with pytest.raises(RuntimeError):
        subscription_jobs.run_sweep_job("renewal", scheduler=scheduler)

    metrics = subscription_jobs.get_subscription_job_metrics()["renewal"]
    assert metrics["runs"] == 1
    assert metrics["failures"] == 1
    assert metrics["last_success_at"] is None
    assert metrics["last_error"] == "RuntimeError: database unavailable"


def test_run_sweep_job_rejects_unknown_sweep():
    with pytest.raises(ValueError):
        subscription_jobs.run_sweep_job("weekly-digest", scheduler=FakeScheduler())


def test_naive_run_time_is_treated_as_utc():
    subscription_jobs._reset_metrics_for_testing()
    naive = datetime(2024, 8, 1, 2)
    summary = SweepSummary(sweep="renewal", run_at=naive)

    subscription_jobs.run_sweep_job("renewal", scheduler=FakeScheduler(summary=summary), now=naive)

    metrics = subscription_jobs.get_subscription_job_metrics()["renewal"]
    assert metrics["last_run_at"] == naive.replace(tzinfo=timezone.utc).isoformat()


def test_every_scheduled_sweep_maps_to_a_scheduler_method(scheduler):
    for sweep, (hour, method) in subscription_jobs.SWEEP_SCHEDULE.items():
        assert 0 <= hour < 24
        assert callable(getattr(scheduler, method))
        assert subscription_jobs.run_sweep_job(sweep, scheduler=scheduler).sweep == sweep
