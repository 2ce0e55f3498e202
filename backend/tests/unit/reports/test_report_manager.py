"""Unit tests for ReportManager."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from uuid import uuid4

import pytest

from dentarad.api import AuthorizationError, NotFoundError
from dentarad.api.auth import User
from dentarad.cases.constants import UserRole
from dentarad.notifications.email import EmailError
from dentarad.reports.manager import ReportManager, signature_hash
from fixtures.database import case_row, result_with_rows

SIGNED_AT = datetime(2026, 3, 3, 14, 5, tzinfo=timezone.utc)
REPORTER = User(id=str(uuid4()), email="dr@dentarad.com", role=UserRole.REPORTER)


def report_row(**overrides) -> dict:
    row = {
        "id": uuid4(),
        "case_id": uuid4(),
        "clinical_history": "Implant planning",
        "report_content": "<p>FINDINGS: ok</p>",
        "version": 1,
        "is_superseded": False,
        "can_reopen": True,
    }
    row.update(overrides)
    return row


def _manager(session, storage=None, notifications=None) -> ReportManager:
    return ReportManager(session=session, storage=storage or MagicMock(), notifications=notifications)


class TestSignatureHash:
    def test_deterministic_and_content_bound(self):
        first = signature_hash("<p>ok</p>", "user-1", SIGNED_AT)
        assert first == signature_hash("<p>ok</p>", "user-1", SIGNED_AT)
        assert len(first) == 64
        assert first != signature_hash("<p>ok!</p>", "user-1", SIGNED_AT)
        assert first != signature_hash("<p>ok</p>", "user-2", SIGNED_AT)


class TestSaveReport:
    @pytest.mark.asyncio
    async def test_signed_report_is_read_only(self, mock_db_session):
        row = report_row(signed_at=SIGNED_AT)
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        with pytest.raises(ValueError, match="Signed reports cannot be edited"):
            await _manager(mock_db_session).save_report(row["id"], "a", "b")

    @pytest.mark.asyncio
    async def test_identical_text_is_not_saved(self, mock_db_session):
        row = report_row()
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        saved = await _manager(mock_db_session).save_report(
            row["id"], row["clinical_history"], row["report_content"]
        )

        assert saved is False
        assert mock_db_session.execute.await_count == 1

    @pytest.mark.asyncio
    async def test_changed_text_is_saved(self, mock_db_session):
        row = report_row()
        mock_db_session.execute = AsyncMock(side_effect=[result_with_rows([row]), result_with_rows([])])

        assert await _manager(mock_db_session).save_report(row["id"], "History", "<p>New</p>")
        params = mock_db_session.execute.await_args_list[1].args[1]
        assert params["report_content"] == "<p>New</p>"

    @pytest.mark.asyncio
    async def test_missing_report(self, mock_db_session):
        with pytest.raises(NotFoundError):
            await _manager(mock_db_session).save_report(uuid4(), "a", "b")


class TestVersions:
    @pytest.mark.asyncio
    async def test_new_version_via_database_function(self, mock_db_session):
        original = report_row(signed_at=SIGNED_AT)
        new_id = uuid4()
        new_row = report_row(id=new_id, case_id=original["case_id"], version=2, supersedes=original["id"])
        mock_db_session.execute = AsyncMock(
            side_effect=[
                result_with_rows([original]),
                result_with_rows([{"create_report_version": new_id}]),
                result_with_rows([]),
                result_with_rows([new_row]),
            ]
        )

        report = await _manager(mock_db_session).create_report_version(original["id"], "Amend findings")

        assert report.id == new_id
        assert report.version == 2
        rpc_params = mock_db_session.execute.await_args_list[1].args[1]
        assert rpc_params == {"p_original_report_id": str(original["id"]), "p_new_version_number": 2}
        assert mock_db_session.execute.await_args_list[2].args[1]["reason"] == "Amend findings"

    @pytest.mark.asyncio
    async def test_locked_report_cannot_be_reopened(self, mock_db_session):
        row = report_row(can_reopen=False)
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        with pytest.raises(ValueError, match="cannot be reopened"):
            await _manager(mock_db_session).create_report_version(row["id"], "Amend")


class TestSigning:
    @pytest.mark.asyncio
    async def test_sign_records_hash_and_audit(self, mock_db_session):
        row = report_row()
        signed_row = dict(row, signed_at=SIGNED_AT, signed_by=REPORTER.id, signatory_name="Dr Smith")
        mock_db_session.execute = AsyncMock(
            side_effect=[result_with_rows([row]), result_with_rows([signed_row]), result_with_rows([])]
        )

        with patch("dentarad.reports.manager.log_audit_entry", new=AsyncMock()) as audit:
            report = await _manager(mock_db_session).sign_report(row["id"], REPORTER, "Dr Smith", "BDS")

        assert report.is_signed
        update = mock_db_session.execute.await_args_list[1].args[1]
        assert update["signature_hash"] == signature_hash(row["report_content"], REPORTER.id, update["signed_at"])
        assert len(update["token"]) == 64
        audit_insert = mock_db_session.execute.await_args_list[2]
        assert "signature_audit" in str(audit_insert.args[0])
        assert audit.await_args.args[0].details == {"signatory_name": "Dr Smith"}

    @pytest.mark.asyncio
    async def test_cannot_sign_twice(self, mock_db_session):
        row = report_row(signed_at=SIGNED_AT)
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        with pytest.raises(ValueError, match="already signed"):
            await _manager(mock_db_session).sign_report(row["id"], REPORTER, "Dr Smith")

    @pytest.mark.asyncio
    async def test_verify_signature(self, mock_db_session):
        content = "<p>FINDINGS: ok</p>"
        row = report_row(
            report_content=content,
            signed_at=SIGNED_AT,
            signed_by=REPORTER.id,
            signature_hash=signature_hash(content, REPORTER.id, SIGNED_AT),
        )
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))
        assert (await _manager(mock_db_session).verify_signature(row["id"])).valid

        tampered = dict(row, report_content="<p>FINDINGS: fracture</p>")
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([tampered]))
        assert not (await _manager(mock_db_session).verify_signature(row["id"])).valid

    @pytest.mark.asyncio
    async def test_unsigned_report_does_not_verify(self, mock_db_session):
        row = report_row()
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))
        assert not (await _manager(mock_db_session).verify_signature(row["id"])).valid


class TestImages:
    @pytest.mark.asyncio
    async def test_unsupported_image_type(self, mock_db_session):
        row = report_row()
        mock_db_session.execute = AsyncMock(return_value=result_with_rows([row]))

        with pytest.raises(ValueError, match="Unsupported image type"):
            await _manager(mock_db_session).add_report_image(row["id"], "scan.tiff", b"data")

    @pytest.mark.asyncio
    async def test_image_is_stored_under_case_and_report(self, mock_db_session):
        row = report_row()
        image_id = uuid4()
        storage = MagicMock()
        storage.generate_presigned_url.return_value = "https://signed.example/img"
        mock_db_session.execute = AsyncMock(
            side_effect=[
                result_with_rows([row]),
                result_with_rows([{"id": image_id, "report_id": row["id"], "storage_path": "k", "position": 0}]),
            ]
        )

        image = await _manager(mock_db_session, storage=storage).add_report_image(row["id"], "Axial.PNG", b"png")

        bucket, key, data, content_type = storage.upload_file.call_args.args
        assert key.startswith(f"{row['case_id']}/{row['id']}/") and key.endswith(".png")
        assert content_type == "image/png"
        assert image.image_url == "https://signed.example/img"


class TestFinalizeAndComplete:
    @pytest.mark.asyncio
    async def test_finalize_stores_pdf_in_case_folder(self, mock_db_session):
        case = case_row(folder_name="JANE_DOE_00001")
        report = report_row(case_id=case["id"])
        finalized = dict(report, pdf_generated=True, pdf_storage_path="JANE_DOE_00001/report.pdf")
        mock_db_session.execute = AsyncMock(
            side_effect=[
                result_with_rows([report]),
                result_with_rows([case]),
                result_with_rows([]),
                result_with_rows([finalized]),
            ]
        )
        storage = MagicMock()

        result = await _manager(mock_db_session, storage=storage).finalize_report(report["id"])

        assert result.pdf_generated
        bucket, key, pdf, content_type = storage.upload_file.call_args.args
        assert key == "JANE_DOE_00001/report.pdf"
        assert pdf.startswith(b"%PDF")

    @pytest.mark.asyncio
    async def test_clinic_users_cannot_complete(self, mock_db_session):
        clinic_user = User(id="u1", role=UserRole.CLINIC, clinic_id="c1")
        with pytest.raises(AuthorizationError):
            await _manager(mock_db_session).complete_case_report(clinic_user, uuid4())

    @pytest.mark.asyncio
    async def test_complete_creates_report_and_survives_email_failure(self, mock_db_session):
        case = case_row(status="in_progress")
        mock_db_session.execute = AsyncMock(
            side_effect=[
                result_with_rows([case]),
                result_with_rows([case]),
                result_with_rows([]),
                result_with_rows([]),
                result_with_rows([]),
            ]
        )
        notifications = MagicMock()
        notifications.send_report_ready = AsyncMock(side_effect=EmailError("down"))

        result = await _manager(mock_db_session, notifications=notifications).complete_case_report(
            REPORTER, case["id"], "FINDINGS: ok"
        )

        assert result.status == "report_ready"
        insert = mock_db_session.execute.await_args_list[4]
        assert "INSERT INTO reports" in str(insert.args[0])
        assert insert.args[1]["content"] == "FINDINGS: ok"
        notifications.send_report_ready.assert_awaited_once()
