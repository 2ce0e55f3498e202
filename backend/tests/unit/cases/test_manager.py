"""Unit tests for CaseManager against a mocked session."""

from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest
from botocore.exceptions import ClientError

from dentarad.cases.constants import CaseStatus, FieldOfView, UserRole
from dentarad.cases.manager import CaseManager
from dentarad.cases.models import CreateCaseRequest
from fixtures.database import case_row, result_with_rows


def _sql(call) -> str:
    return str(call.args[0])


class TestListCases:
    @pytest.mark.asyncio
    async def test_filters_and_pagination(self, mock_db_session):
        row = case_row()
        mock_db_session.execute = AsyncMock(
            side_effect=[result_with_rows([], scalar=1), result_with_rows([row])]
        )
        manager = CaseManager(session=mock_db_session)

        cases, total = await manager.list_cases(
            clinic_id=row["clinic_id"],
            status=CaseStatus.UPLOADED,
            search="  doe ",
            limit=10,
            offset=20,
        )

        assert total == 1
        assert [case.id for case in cases] == [row["id"]]
        count_call, list_call = mock_db_session.execute.call_args_list
        assert "COUNT(*)" in _sql(count_call)
        assert "c.clinic_id = :clinic_id" in _sql(list_call)
        params = list_call.args[1]
        assert params["search"] == "%doe%"
        assert params["status"] == "uploaded"
        assert params["limit"] == 10 and params["offset"] == 20

    @pytest.mark.asyncio
    async def test_clinic_user_is_scoped_to_own_clinic(self, mock_db_session):
        manager = CaseManager(session=mock_db_session)
        manager.list_cases = AsyncMock(return_value=([], 0))
        user = MagicMock(role=UserRole.CLINIC, clinic_id="clinic-1")

        await manager.list_cases_for_user(user, clinic_id="someone-else")

        manager.list_cases.assert_awaited_once_with(clinic_id="clinic-1")

    @pytest.mark.asyncio
    async def test_admin_sees_all_clinics(self, mock_db_session):
        manager = CaseManager(session=mock_db_session)
        manager.list_cases = AsyncMock(return_value=([], 0))
        user = MagicMock(role=UserRole.ADMIN, clinic_id=None)

        await manager.list_cases_for_user(user, status="uploaded")

        manager.list_cases.assert_awaited_once_with(status="uploaded")


class TestGetCase:
    @pytest.mark.asyncio
    async def test_missing_case(self, mock_db_session):
        manager = CaseManager(session=mock_db_session)
        assert await manager.get_case(uuid4()) is None

    @pytest.mark.asyncio
    async def test_dashboard_counts_include_empty_statuses(self, mock_db_session):
        mock_db_session.execute = AsyncMock(
            return_value=result_with_rows([{"status": "uploaded", "count": 3}])
        )
        counts = await CaseManager(session=mock_db_session).dashboard_counts()

        assert counts["uploaded"] == 3
        assert counts["report_ready"] == 0
        assert set(counts) == {status.value for status in CaseStatus}


class TestCreateCase:
    @pytest.mark.asyncio
    async def test_insert_sets_folder_paths(self, mock_db_session):
        row = case_row()
        insert_result = MagicMock()
        insert_result.scalar_one.return_value = row["id"]
        mock_db_session.execute = AsyncMock(side_effect=[insert_result, result_with_rows([row])])
        request = CreateCaseRequest(
            patient_name="Jane Doe",
            clinical_question="Implant planning",
            field_of_view=FieldOfView.UP_TO_5X5,
        )

        case = await CaseManager(session=mock_db_session).create_case(
            str(row["clinic_id"]), request, folder_name="JANE_DOE_00001", estimated_cost=125.0
        )

        assert case.id == row["id"]
        params = mock_db_session.execute.call_args_list[0].args[1]
        assert params["status"] == "uploaded"
        assert params["dropbox_scan_path"] == "/uploads/JANE_DOE_00001/"
        assert params["dropbox_report_path"] == "/reports/JANE_DOE_00001/"


class TestUpdateStatus:
    @pytest.mark.asyncio
    async def test_report_ready_stamps_completion(self, mock_db_session):
        row = case_row(status="in_progress")
        mock_db_session.execute = AsyncMock(
            side_effect=[result_with_rows([row]), result_with_rows([])]
        )

        case = await CaseManager(session=mock_db_session).update_status(
            row["id"], CaseStatus.REPORT_READY
        )

        assert case.status == "report_ready"
        update_sql = _sql(mock_db_session.execute.call_args_list[1])
        assert "completed_at = :now" in update_sql

    @pytest.mark.asyncio
    async def test_same_status_is_a_no_op(self, mock_db_session):
        row = case_row(status="uploaded")
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        case = await CaseManager(session=mock_db_session).update_status(
            row["id"], CaseStatus.UPLOADED
        )

        assert case.status == "uploaded"
        assert mock_db_session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_illegal_move_raises(self, mock_db_session):
        row = case_row(status="uploaded")
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        with pytest.raises(ValueError, match="Cannot change case status"):
            await CaseManager(session=mock_db_session).update_status(
                row["id"], CaseStatus.AWAITING_PAYMENT
            )

    @pytest.mark.asyncio
    async def test_unknown_case_raises(self, mock_db_session):
        with pytest.raises(ValueError, match="not found"):
            await CaseManager(session=mock_db_session).update_status(uuid4(), CaseStatus.IN_PROGRESS)


class TestNotesAndDeletion:
    @pytest.mark.asyncio
    async def test_identical_notes_are_not_written(self, mock_db_session):
        row = case_row(reporter_notes="Check sinus")
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        changed = await CaseManager(session=mock_db_session).update_notes(row["id"], "Check sinus")

        assert changed is False
        assert mock_db_session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_empty_id_list_deletes_nothing(self, mock_db_session):
        assert await CaseManager(session=mock_db_session).delete_cases([]) == 0
        mock_db_session.execute.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_block_deletion(self, mock_db_session):
        case_id = uuid4()
        mock_db_session.execute = AsyncMock(
            side_effect=[
                result_with_rows([{"id": case_id, "folder_name": "JANE_DOE_00001"}]),
                result_with_rows([]),
                result_with_rows([{"id": case_id}]),
            ]
        )
        storage = MagicMock()
        storage.list_files.side_effect = ClientError(
            {"Error": {"Code": "500", "Message": "boom"}}, "ListObjectsV2"
        )

        deleted = await CaseManager(session=mock_db_session, storage=storage).delete_cases([case_id])

        assert deleted == 1
        storage.list_files.assert_called_once()
