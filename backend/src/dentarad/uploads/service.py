"""Scan upload orchestration.

An upload happens in steps: the clinic submits the case form and gets a
ticket (``prepare_case_upload``), then sends the zip (``upload_scan``),
after which the case is mirrored to Dropbox (``sync_case_to_dropbox``).
If the browser gives up half way, ``cleanup_failed_upload`` removes what
was created.
"""

import asyncio
import json
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..api import NotFoundError, ValidationError
from ..api.audit import AuditAction, AuditResourceType, log_audit_event
from ..cases.constants import FieldOfView
from ..cases.manager import CaseManager
from ..cases.models import Case, CreateCaseRequest
from ..db import use_session
from ..logging import log_upload_progress
from ..pacs.orthanc import get_orthanc_client, iter_dicom_members
from ..security.sanitization import sanitize_patient_name
from ..storage import StorageClient, TransferMeter, get_storage
from .dropbox import DropboxClient, DropboxError, get_dropbox_client
from .naming import generate_folder_name, sanitize_form_data
from .rate_limit import UploadRateLimiter
from .validation import ZipValidationResult, validate_dicom_zip, validate_upload_size

logger = logging.getLogger(__name__)

DROPBOX_TOKEN_TTL = 14400
MB = 1024 * 1024


class UploadTicket(BaseModel):
    """What the client needs to send the scan for a freshly created case."""

    case_id: UUID
    folder_name: str
    simple_id: int | None = None
    upload_path: str
    report_path: str
    estimated_cost: Decimal | None = None
    dropbox_token: str | None = None


class UploadProgress(BaseModel):
    case_id: str
    percentage: int
    uploaded_mb: float
    total_mb: float
    speed_mbps: float
    eta_seconds: int | None = None


class DropboxUploadTarget(BaseModel):
    access_token: str
    dropbox_path: str
    dropbox_base_path: str
    expires_in: int = DROPBOX_TOKEN_TTL


class UploadService:
    def __init__(
        self,
        session: AsyncSession | None = None,
        storage: StorageClient | None = None,
        dropbox: DropboxClient | None = None,
    ):
        self._session = session
        self._storage = storage
        self._dropbox = dropbox

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = get_storage()
        return self._storage

    @property
    def dropbox(self) -> DropboxClient:
        if self._dropbox is None:
            self._dropbox = get_dropbox_client()
        return self._dropbox

    # =========================================================================
    # Preparing a case
    # =========================================================================

    async def prepare_case_upload(
        self,
        user,
        form: CreateCaseRequest,
        clinic_id: str | None = None,
    ) -> UploadTicket:
        """Create the case row for an upload and hand back a ticket.

        Clinic users always upload for their own clinic; staff name the
        clinic explicitly.

        Raises:
            ValidationError: If the form or declared file size is unacceptable
            RateLimitError: If the clinic or user quota is exhausted
        """
        clinic_id = clinic_id if user.is_staff() else user.clinic_id
        if not clinic_id:
            raise ValidationError("Missing required field: clinic_id")

        if form.file_size is not None:
            size_error = validate_upload_size(form.file_size)
            if size_error:
                raise ValidationError(size_error)

        limiter = UploadRateLimiter(self._session)
        await limiter.check_clinic(clinic_id)
        await limiter.check_user(user.id)

        try:
            patient_name = sanitize_patient_name(form.patient_name)
        except ValueError as e:
            raise ValidationError(str(e))

        cleaned = sanitize_form_data(form.model_dump())
        request = form.model_copy(
            update={
                "patient_name": patient_name,
                "patient_internal_id": cleaned["patient_internal_id"] or None,
                "clinical_question": cleaned["clinical_question"],
                "special_instructions": cleaned["special_instructions"],
            }
        )

        async with use_session(self._session) as session:
            # Serialises folder numbering for one patient until the transaction ends.
            await session.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"case_folder:{patient_name}"},
            )
            result = await session.execute(
                text("SELECT folder_name FROM cases WHERE patient_name = :patient_name"),
                {"patient_name": patient_name},
            )
            folder_name = generate_folder_name(patient_name, [row.folder_name for row in result.fetchall()])
            price = await self.fetch_price(request.field_of_view, session=session)
            case = await CaseManager(session=session, storage=self._storage).create_case(
                clinic_id, request, folder_name, estimated_cost=price
            )

        dropbox_token = None
        try:
            dropbox_token = await self.dropbox.get_access_token()
        except DropboxError as e:
            logger.warning(f"No Dropbox token for case {case.id}: {e}")

        logger.info(f"Prepared upload for case {case.id} in {folder_name}")
        return UploadTicket(
            case_id=case.id,
            folder_name=folder_name,
            simple_id=case.simple_id,
            upload_path=f"/uploads/{folder_name}/scan.zip",
            report_path=f"/reports/{folder_name}/",
            estimated_cost=price,
            dropbox_token=dropbox_token,
        )

    async def fetch_price(
        self,
        field_of_view: FieldOfView | str,
        session: AsyncSession | None = None,
    ) -> Decimal | None:
        """Current price for a field of view, or None if none is set."""
        async with use_session(session or self._session) as db:
            result = await db.execute(
                text("""
                SELECT price FROM pricing_rules
                WHERE field_of_view = :fov AND effective_to IS NULL
                ORDER BY effective_from DESC
                LIMIT 1
                """),
                {"fov": FieldOfView(field_of_view).value},
            )
            row = result.fetchone()
        return Decimal(str(row.price)) if row is not None else None

    # =========================================================================
    # Sending the scan
    # =========================================================================

    async def upload_scan(
        self,
        user,
        case_id: UUID | str,
        file_path: str | Path,
        file_name: str | None = None,
        progress_cb: Callable[[UploadProgress], None] | None = None,
    ) -> ZipValidationResult:
        """Validate a scan zip and store it as ``{folder}/scan.zip``.

        Raises:
            NotFoundError: If the case does not exist
            ValidationError: If the zip fails validation
        """
        case = await self._get_case(case_id)
        path = Path(file_path)

        validation = await asyncio.to_thread(validate_dicom_zip, path, file_name or path.name)
        if not validation.valid:
            raise ValidationError(validation.error)

        total_bytes = path.stat().st_size
        meter = TransferMeter(total_bytes)
        last_reported = -1

        def _on_progress(uploaded: int, total: int) -> None:
            nonlocal last_reported
            progress = UploadProgress(case_id=str(case.id), **meter.measure(uploaded))
            if progress.percentage == last_reported:
                return
            last_reported = progress.percentage
            log_upload_progress(
                str(case.id), progress.percentage, progress.uploaded_mb, progress.total_mb, "storage"
            )
            if progress_cb:
                progress_cb(progress)

        key = f"{case.folder_name}/scan.zip"

        def _send() -> None:
            with path.open("rb") as fileobj:
                self.storage.upload_fileobj_resumable(
                    self.storage.scans_bucket,
                    key,
                    fileobj,
                    total_bytes,
                    on_progress=_on_progress,
                )

        await asyncio.to_thread(_send)

        async with use_session(self._session) as session:
            await session.execute(
                text("UPDATE cases SET file_path = :key, updated_at = :now WHERE id = :id"),
                {"id": str(case.id), "key": key, "now": datetime.now(timezone.utc)},
            )
        await UploadRateLimiter(self._session).record(user.id, total_bytes)
        await log_audit_event(
            AuditAction.CREATE_CASE,
            AuditResourceType.CASE,
            str(case.id),
            details={"folder_name": case.folder_name, "size": total_bytes},
            user_id=user.id,
            session=self._session,
        )

        logger.info(f"Stored scan for case {case.id} ({total_bytes} bytes)")
        return validation

    # =========================================================================
    # Dropbox
    # =========================================================================

    async def sync_case_to_dropbox(self, case_id: UUID | str) -> dict[str, str]:
        """Mirror a case to Dropbox for the reporter.

        The case folder gets the stored scan, ``metadata.json`` and
        ``referral-info.txt``. The reports folder is created with a
        ``README.txt`` describing where the finished PDF goes. Scans of
        150 MB and more go up through a chunked upload session.

        Raises:
            NotFoundError: If the case does not exist
            DropboxError: If a Dropbox call fails
        """
        case = await self._get_case(case_id)
        folder = self.dropbox.case_folder(case.folder_name)
        reports_folder = (case.dropbox_report_path or f"/reports/{case.folder_name}/").rstrip("/")

        await self.dropbox.create_folder(folder)
        await self.dropbox.create_folder(reports_folder)

        result = {"dropbox_scan_path": f"{folder}/", "metadata_path": f"{folder}/metadata.json"}

        if case.file_path:
            data = await asyncio.to_thread(
                self.storage.download_file, self.storage.scans_bucket, case.file_path
            )
            total_mb = round(len(data) / MB, 1)

            def _on_progress(progress: dict[str, int]) -> None:
                log_upload_progress(
                    str(case.id), progress["percentage"], round(progress["loaded"] / MB, 1), total_mb, "dropbox"
                )

            result["scan_path"] = f"{folder}/scan.zip"
            await self.dropbox.upload(result["scan_path"], data, progress_cb=_on_progress)

        await self.dropbox.upload(
            result["metadata_path"], json.dumps(case_metadata(case), indent=2).encode()
        )
        await self.dropbox.upload(f"{folder}/referral-info.txt", referral_text(case, reports_folder).encode())
        await self.dropbox.upload(f"{reports_folder}/README.txt", reports_readme(case).encode())

        async with use_session(self._session) as session:
            await session.execute(
                text("""
                UPDATE cases
                SET dropbox_scan_path = :path, synced_to_dropbox = TRUE, synced_at = :now
                WHERE id = :id
                """),
                {"id": str(case.id), "path": f"{folder}/", "now": datetime.now(timezone.utc)},
            )

        logger.info(f"Synced case {case.id} to Dropbox at {folder}")
        return result

    async def get_dropbox_upload_target(
        self,
        case_id: UUID | str,
        patient_id: str,
        file_name: str,
    ) -> DropboxUploadTarget:
        """Where the browser should upload a file straight to Dropbox."""
        if not patient_id or not file_name:
            raise ValidationError("Missing required fields: caseId, fileName, or patientId")
        token = await self.dropbox.get_access_token()
        base_path = f"{self.dropbox.cases_root}/{patient_id}_{case_id}"
        return DropboxUploadTarget(
            access_token=token,
            dropbox_path=f"{base_path}/{file_name}",
            dropbox_base_path=base_path,
        )

    async def pending_dropbox_syncs(self, limit: int = 20) -> list[str]:
        """Cases with a stored scan that have not reached Dropbox yet."""
        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                SELECT id FROM cases
                WHERE synced_to_dropbox = FALSE AND file_path IS NOT NULL
                ORDER BY created_at ASC
                LIMIT :limit
                """),
                {"limit": limit},
            )
            return [str(row.id) for row in result.fetchall()]

    # =========================================================================
    # PACS
    # =========================================================================

    async def push_to_pacs(self, case_id: UUID | str, orthanc=None) -> dict[str, Any]:
        """Send the DICOM files of a stored scan to Orthanc.

        Returns:
            Orthanc study id, StudyInstanceUID and number of instances sent
        """
        case = await self._get_case(case_id)
        orthanc = orthanc or get_orthanc_client()
        archive = await asyncio.to_thread(
            self.storage.download_file, self.storage.scans_bucket, f"{case.folder_name}/scan.zip"
        )

        study_id = None
        sent = 0
        for content in iter_dicom_members(archive):
            result = await orthanc.upload_instance(content)
            study_id = study_id or result.get("ParentStudy")
            sent += 1

        if study_id is None:
            raise ValueError(f"No DICOM instances accepted for case {case_id}")

        study = await orthanc.get_study_tags(study_id)
        study_uid = study.get("MainDicomTags", {}).get("StudyInstanceUID")
        async with use_session(self._session) as session:
            await session.execute(
                text("UPDATE cases SET orthanc_study_id = :study_id, study_instance_uid = :uid WHERE id = :id"),
                {"id": str(case.id), "study_id": study_id, "uid": study_uid},
            )

        logger.info(f"Pushed {sent} instances of case {case.id} to PACS")
        return {"orthanc_study_id": study_id, "study_instance_uid": study_uid, "instances": sent}

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def cleanup_failed_upload(self, user, case_id: UUID | str, request=None) -> dict[str, bool]:
        """Remove everything an abandoned upload created.

        Every step is best effort; the result says which ones succeeded.
        """
        results = {"dropbox_cleaned": False, "storage_cleaned": False, "database_cleaned": False}

        await log_audit_event(
            AuditAction.DELETE_CASE,
            AuditResourceType.CASE,
            str(case_id),
            details={"reason": "upload_failed_rollback"},
            user_id=user.id,
            request=request,
            session=self._session,
        )

        manager = CaseManager(session=self._session, storage=self._storage)
        case = await manager.get_case(case_id)
        if case is None:
            return results
        if not user.can_access_clinic(str(case.clinic_id)):
            raise NotFoundError("Case", case_id)

        try:
            for path in (case.dropbox_scan_path, case.dropbox_report_path):
                if path:
                    await self.dropbox.delete(path)
            results["dropbox_cleaned"] = True
        except DropboxError as e:
            logger.warning(f"Dropbox cleanup failed for case {case_id}: {e}")

        try:
            keys = await asyncio.to_thread(
                self.storage.list_files, self.storage.scans_bucket, f"{case.folder_name}/"
            )
            await asyncio.to_thread(self.storage.delete_files, self.storage.scans_bucket, keys)
            results["storage_cleaned"] = True
        except (BotoCoreError, ClientError) as e:
            logger.warning(f"Storage cleanup failed for case {case_id}: {e}")

        async with use_session(self._session) as session:
            result = await session.execute(
                text("DELETE FROM cases WHERE id = :id RETURNING id"),
                {"id": str(case_id)},
            )
            results["database_cleaned"] = result.fetchone() is not None

        logger.info(f"Cleaned failed upload for case {case_id}: {results}")
        return results

    async def _get_case(self, case_id: UUID | str) -> Case:
        case = await CaseManager(session=self._session, storage=self._storage).get_case(case_id)
        if case is None:
            raise NotFoundError("Case", case_id)
        return case


def case_metadata(case: Case) -> dict[str, Any]:
    """The metadata.json written next to a case's files in Dropbox."""
    return {
        "caseId": str(case.id),
        "patientName": case.patient_name,
        "patientDOB": case.patient_dob.isoformat() if case.patient_dob else None,
        "patientInternalId": case.patient_internal_id,
        "clinicId": str(case.clinic_id),
        "clinicName": case.clinic_name,
        "clinicalQuestion": case.clinical_question,
        "fieldOfView": case.field_of_view,
        "urgency": case.urgency,
        "status": case.status,
        "uploadedAt": case.upload_date.isoformat() if case.upload_date else None,
    }


def referral_text(case: Case, reports_folder: str) -> str:
    """The referral-info.txt a reporter reads before opening the scan."""
    dob = case.patient_dob.isoformat() if case.patient_dob else "Not provided"
    return "\n".join(
        [
            "DentaRad Case Referral",
            "======================",
            "",
            f"Patient: {case.patient_name}",
            f"Patient ID: {case.patient_internal_id or 'Not provided'}",
            f"DOB: {dob}",
            f"Clinic: {case.clinic_name or 'Unknown'}",
            f"Case ID: {case.id}",
            f"Folder: {case.folder_name}",
            "",
            "Clinical question:",
            case.clinical_question,
            "",
            f"Urgency: {case.urgency}",
            f"Field of view: {case.field_of_view}",
            "",
            "Instructions for the reporter:",
            "1. Review the DICOM files in scan.zip",
            "2. Write and export the report as PDF",
            f"3. Upload it to {reports_folder}/ as YYYY-MM-DD_report.pdf",
            "4. Mark the case complete in DentaRad",
            "",
        ]
    )


def reports_readme(case: Case) -> str:
    """README.txt for a case's reports folder. Only reporters see it."""
    return "\n".join(
        [
            "DentaRad Reports Folder",
            "=======================",
            "",
            f"Folder: {case.folder_name}",
            f"Patient: {case.patient_name}",
            f"Case ID: {case.id}",
            "",
            "File names:",
            "- First report: YYYY-MM-DD_report.pdf",
            "- Revisions: YYYY-MM-DD_report_v2.pdf",
            "",
            "Clinical question:",
            case.clinical_question,
            "",
        ]
    )
