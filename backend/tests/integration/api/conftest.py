"""Fixtures for API tests: the FastAPI app with its database and audit writer mocked."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from dentarad.api import middleware
from dentarad.cases.constants import UserRole
from dentarad.db import get_db
from fixtures.auth import CLINIC_ID, bearer


@pytest.fixture
def app(mock_db_session):
    from main import app

    async def override_get_db():
        yield mock_db_session

    app.dependency_overrides[get_db] = override_get_db
    yield app
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def audit_writer():
    """Audit entries written by the middleware, captured instead of stored."""
    with patch("dentarad.api.audit.log_audit_entry", new=AsyncMock()) as writer:
        yield writer


@pytest.fixture(autouse=True)
def fresh_rate_limiter(monkeypatch):
    monkeypatch.setattr(middleware, "_rate_limiter", None)


@pytest.fixture
def client(app) -> TestClient:
    return TestClient(app)


@pytest.fixture
def clinic_headers() -> dict[str, str]:
    return bearer(UserRole.CLINIC, CLINIC_ID, user_id="clinic-user")


@pytest.fixture
def reporter_headers() -> dict[str, str]:
    return bearer(UserRole.REPORTER, user_id="reporter-user")


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return bearer(UserRole.ADMIN, user_id="admin-user")
