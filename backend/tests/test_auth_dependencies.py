import pathlib
import sys
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from fastapi import HTTPException


ROOT = pathlib.Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import backend.main as backend_main


def test_get_current_user_missing_cookie_is_unauthorized():
    with pytest.raises(HTTPException) as exc:
        backend_main.get_current_user(None)

    assert exc.value.status_code == 401


def test_get_current_user_invalid_token_is_unauthorized():
    with pytest.raises(HTTPException) as exc:
        backend_main.get_current_user("not-a-valid-token")

    assert exc.value.status_code == 401


def test_expired_token_never_reaches_the_database(monkeypatch):
    expired_token = backend_main.create_access_token(
        subject="42", expires_delta=timedelta(minutes=-5)
    )

    def _unexpected_get_user_by_id(_uid: int):
        raise AssertionError("get_user_by_id should not be called for expired tokens")

    monkeypatch.setattr(backend_main, "get_user_by_id", _unexpected_get_user_by_id)

    assert backend_main.resolve_user_from_session_token(expired_token) is None
    with pytest.raises(HTTPException):
        backend_main.get_current_user(expired_token)


def test_get_current_user_valid_token_returns_user(monkeypatch):
    user = backend_main.UserOut(
        id=123,
        username="alice",
        role="manager",
        tenant_id="5f0c6b7e-3a57-4a39-9d3c-1c2f7a0e9b11",
        created_utc=datetime.now(timezone.utc),
    )

    monkeypatch.setattr(backend_main, "get_user_by_id", lambda uid: user if uid == 123 else None)

    token = backend_main.create_access_token(subject=str(user.id))

    assert backend_main.get_current_user(token) is user


def test_token_for_deleted_user_is_unauthorized(monkeypatch):
    monkeypatch.setattr(backend_main, "get_user_by_id", lambda uid: None)
    token = backend_main.create_access_token(subject="999")

    with pytest.raises(HTTPException) as exc:
        backend_main.get_current_user(token)

    assert exc.value.status_code == 401


def test_job_metrics_endpoint_is_admin_only():
    with pytest.raises(HTTPException) as exc:
        backend_main.read_subscription_job_metrics(current_user=SimpleNamespace(id=5, role="manager"))
    assert exc.value.status_code == 403

    metrics = backend_main.read_subscription_job_metrics(current_user=SimpleNamespace(id=1, role="admin"))
    assert set(metrics) == {
        "trial-expiry",
        "renewal",
        "retry",
        "expiration",
        "trial-ending",
        "renewal-reminder",
    }
