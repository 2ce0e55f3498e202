"""API tests for case listing, access control and downloads."""

from unittest.mock import AsyncMock, MagicMock
from uuid import UUID

import pytest

from dentarad.api.audit import AuditAction
from dentarad.api.cases import get_case_manager, get_download_service
from dentarad.cases.constants import CaseStatus
from dentarad.cases.manager import CaseManager
from dentarad.cases.models import Case
from dentarad.uploads.downloads import CaseDownload
from fixtures.auth import CLINIC_ID, OTHER_CLINIC_ID
from fixtures.database import case_row, result_with_rows


@pytest.fixture
def manager(app):
    manager = MagicMock()
    app.dependency_overrides[get_case_manager] = lambda: manager
    return manager


@pytest.fixture
def downloads(app):
    service = MagicMock()
    app.dependency_overrides[get_download_service] = lambda: service
    return service


def own_case(**overrides) -> Case:
    return Case(**case_row(clinic_id=CLINIC_ID, **overrides))


class TestListCases:
    def test_clinic_listing(self, client, manager, clinic_headers):
        manager.list_cases_for_user = AsyncMock(return_value=([own_case()], 1))

        response = client.get("/api/v1/cases?status=uploaded&limit=10", headers=clinic_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        item = body["items"][0]
        assert item["status_label"] == "Uploaded"
        assert item["title"] == "00012 - DOE, JANE"
        user = manager.list_cases_for_user.await_args.args[0]
        assert user.clinic_id == CLINIC_ID
        assert manager.list_cases_for_user.await_args.kwargs["status"] == CaseStatus.UPLOADED

    def test_limit_is_bounded(self, client, manager, clinic_headers):
        response = client.get("/api/v1/cases?limit=1000", headers=clinic_headers)

        assert response.status_code == 422

    def test_counts_are_scoped_to_clinic(self, client, manager, clinic_headers, admin_headers):
        manager.dashboard_counts = AsyncMock(return_value={"uploaded": 3})

        client.get("/api/v1/cases/stats/counts", headers=clinic_headers)
        assert manager.dashboard_counts.await_args.args == (CLINIC_ID,)

        client.get("/api/v1/cases/stats/counts", headers=admin_headers)
        assert manager.dashboard_counts.await_args.args == (None,)

    def test_income_is_admin_only(self, client, manager, reporter_headers):
        response = client.get("/api/v1/cases/stats/income", headers=reporter_headers)

        assert response.status_code == 403
        assert response.json()["error"] == "Role required: admin"


class TestSingleCase:
    def test_view_is_audited(self, client, manager, clinic_headers, audit_writer):
        case = own_case()
        manager.get_case = AsyncMock(return_value=case)

        response = client.get(f"/api/v1/cases/{case.id}", headers=clinic_headers)

        assert response.status_code == 200
        assert response.json()["folder_name"] == "JANE_DOE_00001"
        entry = audit_writer.await_args.args[0]
        assert entry.action == AuditAction.VIEW_CASE
        assert entry.resource_id == str(case.id)

    def test_other_clinic(self, client, manager, clinic_headers):
        case = Case(**case_row(clinic_id=OTHER_CLINIC_ID))
        manager.get_case = AsyncMock(return_value=case)

        response = client.get(f"/api/v1/cases/{case.id}", headers=clinic_headers)

        assert response.status_code == 403

    def test_missing_case(self, client, manager, reporter_headers):
        manager.get_case = AsyncMock(return_value=None)

        response = client.get("/api/v1/cases/6f1c2a9e-0d3b-4c57-9a55-0c1f2f7b8e01", headers=reporter_headers)

        assert response.status_code == 404
        assert response.json()["error_code"] == "NOT_FOUND"

    def test_status_change_needs_staff(self, client, manager, clinic_headers, reporter_headers):
        case = own_case(status="in_progress")
        manager.get_case = AsyncMock(return_value=own_case())
        manager.update_status = AsyncMock(return_value=case)
        url = f"/api/v1/cases/{case.id}/status"

        assert client.patch(url, json={"status": "in_progress"}, headers=clinic_headers).status_code == 403

        response = client.patch(url, json={"status": "in_progress"}, headers=reporter_headers)
        assert response.status_code == 200
        assert response.json()["status_label"] == "In Progress"
        manager.update_status.assert_awaited_once_with(case.id, CaseStatus.IN_PROGRESS)

    def test_illegal_transition_is_rejected(self, app, client, mock_db_session, reporter_headers):
        app.dependency_overrides[get_case_manager] = lambda: CaseManager(session=mock_db_session)
        row = case_row(status="uploaded")
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        response = client.patch(
            f"/api/v1/cases/{row['id']}/status", json={"status": "awaiting_payment"}, headers=reporter_headers
        )

        assert response.status_code == 400
        assert response.json()["error_code"] == "VALIDATION_ERROR"
        assert "uploaded to awaiting_payment" in response.json()["error"]
        assert not any("UPDATE cases" in str(c.args[0]) for c in mock_db_session.execute.call_args_list)

    def test_status_change_on_missing_case(self, client, manager, reporter_headers):
        manager.get_case = AsyncMock(return_value=None)
        manager.update_status = AsyncMock()

        response = client.patch(
            "/api/v1/cases/6f1c2a9e-0d3b-4c57-9a55-0c1f2f7b8e01/status",
            json={"status": "in_progress"},
            headers=reporter_headers,
        )

        assert response.status_code == 404
        manager.update_status.assert_not_awaited()

    def test_notes_on_missing_case(self, client, manager, reporter_headers):
        manager.get_case = AsyncMock(return_value=None)

        response = client.patch(
            "/api/v1/cases/6f1c2a9e-0d3b-4c57-9a55-0c1f2f7b8e01/notes",
            json={"reporter_notes": "Check apex"},
            headers=reporter_headers,
        )

        assert response.status_code == 404

    def test_bulk_delete(self, client, manager, clinic_headers, admin_headers):
        manager.delete_cases = AsyncMock(return_value=2)
        ids = ["6f1c2a9e-0d3b-4c57-9a55-0c1f2f7b8e01", "6f1c2a9e-0d3b-4c57-9a55-0c1f2f7b8e02"]

        forbidden = client.request("DELETE", "/api/v1/cases", json={"case_ids": ids}, headers=clinic_headers)
        assert forbidden.status_code == 403

        response = client.request("DELETE", "/api/v1/cases", json={"case_ids": ids}, headers=admin_headers)
        assert response.json() == {"deleted": 2}
        assert manager.delete_cases.await_args.args[0] == [UUID(i) for i in ids]


class TestDownloads:
    def test_pregenerated_bundle_redirects(self, client, manager, downloads, clinic_headers):
        case = own_case()
        manager.get_case = AsyncMock(return_value=case)
        downloads.build_case_download = AsyncMock(
            return_value=CaseDownload(filename="JANE_DOE_00001_complete.zip", url="https://signed.example/zip")
        )

        response = client.get(f"/api/v1/cases/{case.id}/download", headers=clinic_headers, follow_redirects=False)

        assert response.status_code == 307
        assert response.headers["location"] == "https://signed.example/zip"

    def test_bundle_streamed(self, client, manager, downloads, clinic_headers):
        case = own_case()
        manager.get_case = AsyncMock(return_value=case)
        downloads.build_case_download = AsyncMock(
            return_value=CaseDownload(filename="JANE_DOE_00001_complete.zip", content=b"PK\x03\x04")
        )

        response = client.get(f"/api/v1/cases/{case.id}/download", headers=clinic_headers)

        assert response.status_code == 200
        assert response.headers["content-type"] == "application/zip"
        assert 'filename="JANE_DOE_00001_complete.zip"' in response.headers["content-disposition"]
        assert response.content == b"PK\x03\x04"

    def test_report_link(self, client, downloads, clinic_headers):
        downloads.get_report_download_link = AsyncMock(
            return_value={"download_url": "https://dl.dropbox.test/r.pdf", "filename": "2026-03-04_report.pdf"}
        )

        response = client.get(
            "/api/v1/cases/6f1c2a9e-0d3b-4c57-9a55-0c1f2f7b8e01/report-link", headers=clinic_headers
        )

        assert response.json()["filename"] == "2026-03-04_report.pdf"
