"""API tests for the account security endpoints."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from dentarad.api.audit import AuditAction
from dentarad.security import session as session_module
from dentarad.security.session import SessionTracker
from fixtures.database import result_with_rows


@pytest.fixture(autouse=True)
def fresh_session_tracker(monkeypatch):
    monkeypatch.setattr(session_module, "_tracker", SessionTracker())


def test_password_strength(client):
    response = client.post("/api/v1/auth/password-strength", json={"password": "Vivid!Harbor7Lantern"})

    body = response.json()
    assert body["valid"] is True
    assert body["label"] == "Strong"


def test_login_check_rejects_bad_email(client):
    response = client.post("/api/v1/auth/login-check", json={"email": "not an email"})

    assert response.status_code == 400


def test_locked_account(client, mock_db_session):
    unlock_at = datetime.now(timezone.utc) + timedelta(minutes=14, seconds=30)
    mock_db_session.execute = AsyncMock(
        return_value=result_with_rows([{"locked": True, "unlock_at": unlock_at, "attempts": 5}])
    )

    response = client.post("/api/v1/auth/login-check", json={"email": " Front@Clinic.test "})

    assert response.json() == {"allowed": False, "lockout_minutes": 15, "attempts": 5}
    assert mock_db_session.execute.await_args.args[1] == {"p_email": "front@clinic.test"}


def test_failed_login_is_recorded_and_audited(client, mock_db_session, monkeypatch):
    audit = AsyncMock()
    monkeypatch.setattr("dentarad.api.auth.log_audit_event", audit)

    response = client.post(
        "/api/v1/auth/login-attempt",
        json={"email": "front@clinic.test", "successful": False},
        headers={"X-Forwarded-For": "203.0.113.9, 10.0.0.1"},
    )

    assert response.status_code == 204
    params = mock_db_session.execute.await_args.args[1]
    assert params["p_email"] == "front@clinic.test"
    assert params["p_ip_address"] == "203.0.113.9"
    assert audit.await_args.args[0] == AuditAction.FAILED_LOGIN


def test_csrf_requires_login(client):
    assert client.get("/api/v1/auth/csrf").status_code == 401


def test_session_touch(client, clinic_headers):
    response = client.post("/api/v1/auth/session/touch", headers=clinic_headers)

    assert response.json()["state"] == "active"
    assert response.json()["seconds_remaining"] == SessionTracker().timeout_seconds
