"""Shared pytest fixtures for DentaRad tests."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from dentarad.cases.models import Case
from dentarad.config import get_settings
from fixtures.database import Savepoint, case_row, result_with_rows
from fixtures.dicom import make_dicom


@pytest.fixture
def dicom_bytes() -> bytes:
    return make_dicom()


@pytest.fixture
def small_uploads_allowed(monkeypatch):
    """Lift the minimum upload size so tiny in-memory archives pass."""
    monkeypatch.setattr(get_settings(), "upload_min_bytes", 0)


@pytest.fixture
def mock_db_session():
    """Mock database session for testing without actual DB."""
    session = AsyncMock()
    session.execute = AsyncMock(return_value=result_with_rows([]))
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.savepoint = Savepoint()
    session.begin_nested = MagicMock(return_value=session.savepoint)
    return session


@pytest.fixture
def sample_case() -> Case:
    return Case(**case_row())
