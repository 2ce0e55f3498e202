"""Report authoring, versioning, signing and finalisation.

A case has one current report. Reopening a signed report creates a new
version through the ``create_report_version`` database function, which
marks the previous row superseded.
"""

import asyncio
import secrets
from datetime import datetime, timezone
from pathlib import PurePath
from uuid import UUID, uuid4

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..api import AuthorizationError, NotFoundError
from ..api.audit import AuditAction, AuditEntry, AuditResourceType, log_audit_entry
from ..cases.constants import CaseStatus
from ..cases.manager import CaseManager
from ..cases.models import Case
from ..db import call_rpc, use_session
from ..logging import get_context_logger, log_report_event
from ..notifications.email import EmailError
from ..notifications.service import NotificationService
from ..storage import SIGNED_URL_TTL, StorageClient, compute_content_hash, get_storage
from .models import CaseWithReport, Report, ReportImage, SignatureVerification
from .pdf import render_report_pdf

logger = get_context_logger(__name__)

IMAGE_CONTENT_TYPES = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def signature_hash(content: str | None, signer_id: str, signed_at: datetime) -> str:
    """SHA-256 over the signed content, the signer and the signing time."""
    payload = f"{content or ''}|{signer_id}|{signed_at.isoformat()}"
    return compute_content_hash(payload.encode("utf-8"))


class ReportManager:
    """Reads and writes reports and their images."""

    def __init__(
        self,
        session: AsyncSession | None = None,
        storage: StorageClient | None = None,
        notifications: NotificationService | None = None,
    ):
        self._session = session
        self._storage = storage
        self._notifications = notifications
        self.cases = CaseManager(session=session, storage=storage)

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = get_storage()
        return self._storage

    @property
    def notifications(self) -> NotificationService:
        if self._notifications is None:
            self._notifications = NotificationService(session=self._session)
        return self._notifications

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_report(self, report_id: UUID | str) -> Report | None:
        async with use_session(self._session) as session:
            result = await session.execute(
                text("SELECT * FROM reports WHERE id = :id"),
                {"id": str(report_id)},
            )
            row = result.fetchone()
            return Report(**dict(row._mapping)) if row is not None else None

    async def _require_report(self, report_id: UUID | str) -> Report:
        report = await self.get_report(report_id)
        if report is None:
            raise NotFoundError("Report", report_id)
        return report

    async def current_report(self, case_id: UUID | str) -> Report | None:
        """The version of the case's report that is not superseded."""
        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                SELECT * FROM reports
                WHERE case_id = :case_id AND is_superseded = FALSE
                ORDER BY version DESC
                LIMIT 1
                """),
                {"case_id": str(case_id)},
            )
            row = result.fetchone()
            return Report(**dict(row._mapping)) if row is not None else None

    async def fetch_case_with_report(self, case_id: UUID | str) -> CaseWithReport:
        """A case and its current report, if one was started.

        Raises:
            NotFoundError: If the case does not exist
        """
        case = await self.cases.get_case(case_id)
        if case is None:
            raise NotFoundError("Case", case_id)
        return CaseWithReport(case=case, report=await self.current_report(case_id))

    async def version_history(self, case_id: UUID | str) -> list[Report]:
        """Every version of a case's report, newest first."""
        async with use_session(self._session) as session:
            result = await session.execute(
                text("SELECT * FROM reports WHERE case_id = :case_id ORDER BY version DESC"),
                {"case_id": str(case_id)},
            )
            return [Report(**dict(row._mapping)) for row in result.fetchall()]

    # =========================================================================
    # Authoring
    # =========================================================================

    async def create_report(self, case_id: UUID | str, clinical_question: str | None) -> Report:
        """Start a report for a case, seeded with the clinical question."""
        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                INSERT INTO reports (
                    case_id, clinical_history, report_content, version,
                    is_superseded, is_latest, can_reopen
                ) VALUES (
                    :case_id, :clinical_history, '', 1, FALSE, TRUE, TRUE
                )
                RETURNING *
                """),
                {"case_id": str(case_id), "clinical_history": clinical_question or ""},
            )
            report = Report(**dict(result.fetchone()._mapping))

        log_report_event(str(report.id), str(case_id), "created")
        return report

    async def save_report(
        self,
        report_id: UUID | str,
        clinical_history: str,
        report_content: str,
    ) -> bool:
        """Autosave report text.

        Returns:
            True if the report changed, False if the text was identical

        Raises:
            NotFoundError: If the report does not exist
            ValueError: If the report has been signed
        """
        report = await self._require_report(report_id)
        if report.is_signed:
            raise ValueError("Signed reports cannot be edited; create a new version instead")

        if (report.clinical_history or "") == (clinical_history or "") and (
            report.report_content or ""
        ) == (report_content or ""):
            return False

        async with use_session(self._session) as session:
            await session.execute(
                text("""
                UPDATE reports
                SET clinical_history = :clinical_history,
                    report_content = :report_content,
                    last_saved_at = :now
                WHERE id = :id
                """),
                {
                    "id": str(report_id),
                    "clinical_history": clinical_history,
                    "report_content": report_content,
                    "now": datetime.now(timezone.utc),
                },
            )

        log_report_event(str(report_id), str(report.case_id), "saved")
        return True

    async def create_report_version(self, report_id: UUID | str, reason: str) -> Report:
        """Reopen a report as a new version.

        Raises:
            NotFoundError: If the report does not exist
            ValueError: If the report cannot be reopened
        """
        report = await self._require_report(report_id)
        if not report.can_reopen:
            raise ValueError("This report cannot be reopened")

        async with use_session(self._session) as session:
            rows = await call_rpc(
                session,
                "create_report_version",
                p_original_report_id=str(report_id),
                p_new_version_number=report.version + 1,
            )
            new_id = next(iter(rows[0].values())) if rows else None
            if new_id is None:
                raise ValueError(f"Could not create a new version of report {report_id}")
            await session.execute(
                text("UPDATE reports SET reopen_reason = :reason WHERE id = :id"),
                {"id": str(new_id), "reason": reason},
            )
            result = await session.execute(
                text("SELECT * FROM reports WHERE id = :id"),
                {"id": str(new_id)},
            )
            new_report = Report(**dict(result.fetchone()._mapping))

        log_report_event(
            str(new_report.id),
            str(report.case_id),
            "versioned",
            supersedes=str(report_id),
            version=new_report.version,
        )
        return new_report

    # =========================================================================
    # Images
    # =========================================================================

    async def fetch_report_images(self, report_id: UUID | str) -> list[ReportImage]:
        """Images attached to a report with freshly signed URLs."""
        async with use_session(self._session) as session:
            result = await session.execute(
                text("SELECT * FROM report_images WHERE report_id = :id ORDER BY position ASC"),
                {"id": str(report_id)},
            )
            images = [ReportImage(**dict(row._mapping)) for row in result.fetchall()]

        bucket = self.storage.report_images_bucket
        for image in images:
            image.image_url = await asyncio.to_thread(
                self.storage.generate_presigned_url, bucket, image.storage_path, SIGNED_URL_TTL
            )
        return images

    async def add_report_image(
        self,
        report_id: UUID | str,
        file_name: str,
        data: bytes,
        caption: str | None = None,
    ) -> ReportImage:
        """Store an image and append it to the report."""
        report = await self._require_report(report_id)
        suffix = PurePath(file_name).suffix.lower()
        content_type = IMAGE_CONTENT_TYPES.get(suffix)
        if content_type is None:
            raise ValueError(f"Unsupported image type: {suffix or file_name}")

        key = f"{report.case_id}/{report_id}/{uuid4().hex}{suffix}"
        bucket = self.storage.report_images_bucket
        await asyncio.to_thread(self.storage.upload_file, bucket, key, data, content_type)

        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                INSERT INTO report_images (report_id, storage_path, caption, position)
                VALUES (
                    :report_id, :storage_path, :caption,
                    (SELECT COALESCE(MAX(position) + 1, 0) FROM report_images WHERE report_id = :report_id)
                )
                RETURNING *
                """),
                {"report_id": str(report_id), "storage_path": key, "caption": caption},
            )
            image = ReportImage(**dict(result.fetchone()._mapping))

        image.image_url = await asyncio.to_thread(
            self.storage.generate_presigned_url, bucket, key, SIGNED_URL_TTL
        )
        return image

    async def _load_image_bytes(self, images: list[ReportImage]) -> list[tuple[ReportImage, bytes]]:
        bucket = self.storage.report_images_bucket
        loaded = []
        for image in images:
            try:
                content = await asyncio.to_thread(self.storage.download_file, bucket, image.storage_path)
            except (BotoCoreError, ClientError) as e:
                logger.warning(f"Skipping report image {image.id}: {e}")
                continue
            loaded.append((image, content))
        return loaded

    # =========================================================================
    # Signing and finalisation
    # =========================================================================

    async def sign_report(
        self,
        report_id: UUID | str,
        user,
        signatory_name: str,
        credentials: str | None = None,
    ) -> Report:
        """Electronically sign a report.

        Raises:
            NotFoundError: If the report does not exist
            ValueError: If the report is already signed
        """
        report = await self._require_report(report_id)
        if report.is_signed:
            raise ValueError("Report is already signed")

        signed_at = datetime.now(timezone.utc)
        digest = signature_hash(report.report_content, user.id, signed_at)
        token = secrets.token_hex(32)

        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                UPDATE reports
                SET signed_at = :signed_at,
                    signed_by = :signed_by,
                    signatory_name = :signatory_name,
                    signatory_credentials = :credentials,
                    signature_hash = :signature_hash,
                    verification_token = :token
                WHERE id = :id
                RETURNING *
                """),
                {
                    "id": str(report_id),
                    "signed_at": signed_at,
                    "signed_by": user.id,
                    "signatory_name": signatory_name,
                    "credentials": credentials,
                    "signature_hash": digest,
                    "token": token,
                },
            )
            signed = Report(**dict(result.fetchone()._mapping))
            await session.execute(
                text("""
                INSERT INTO signature_audit (report_id, signer_id, signature_hash, signed_at)
                VALUES (:report_id, :signer_id, :signature_hash, :signed_at)
                """),
                {
                    "report_id": str(report_id),
                    "signer_id": user.id,
                    "signature_hash": digest,
                    "signed_at": signed_at,
                },
            )

        await log_audit_entry(
            AuditEntry(
                action=AuditAction.SIGN_REPORT,
                user_id=user.id,
                resource_type=AuditResourceType.REPORT,
                resource_id=str(report_id),
                details={"signatory_name": signatory_name},
            ),
            session=self._session,
        )
        log_report_event(str(report_id), str(report.case_id), "signed", signed_by=user.id)
        return signed

    async def verify_signature(self, report_id: UUID | str) -> SignatureVerification:
        """Recompute a report's signature hash and compare it to the stored one."""
        report = await self._require_report(report_id)
        if not report.is_signed or not report.signature_hash or report.signed_by is None:
            return SignatureVerification(report_id=report.id, valid=False)

        expected = signature_hash(report.report_content, str(report.signed_by), report.signed_at)
        return SignatureVerification(
            report_id=report.id,
            valid=secrets.compare_digest(expected, report.signature_hash),
            signed_at=report.signed_at,
            signatory_name=report.signatory_name,
        )

    async def finalize_report(self, report_id: UUID | str) -> Report:
        """Render the report PDF and store it as ``{folder}/report.pdf``.

        Raises:
            NotFoundError: If the report or its case does not exist
        """
        report = await self._require_report(report_id)
        case = await self.cases.get_case(report.case_id)
        if case is None:
            raise NotFoundError("Case", report.case_id)

        images = await self._load_image_bytes(await self.fetch_report_images(report_id))
        pdf = await asyncio.to_thread(render_report_pdf, case, report, images)

        folder = case.folder_name or str(case.id)
        key = f"{folder}/report.pdf"
        await asyncio.to_thread(
            self.storage.upload_file, self.storage.reports_bucket, key, pdf, "application/pdf"
        )

        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                UPDATE reports
                SET finalized_at = :now, pdf_generated = TRUE, pdf_storage_path = :path
                WHERE id = :id
                RETURNING *
                """),
                {"id": str(report_id), "now": datetime.now(timezone.utc), "path": key},
            )
            finalized = Report(**dict(result.fetchone()._mapping))

        log_report_event(str(report_id), str(case.id), "finalized", pdf_bytes=len(pdf))
        return finalized

    async def complete_case_report(self, user, case_id: UUID | str, report_text: str | None = None) -> Case:
        """Mark a case's report ready and tell the clinic.

        Raises:
            AuthorizationError: If the user is not an admin or reporter
            NotFoundError: If the case does not exist
            ValueError: If the case cannot move to ``report_ready``
        """
        if not user.is_staff():
            raise AuthorizationError("Only admins and reporters can complete reports")

        case = await self.cases.get_case(case_id)
        if case is None:
            raise NotFoundError("Case", case_id)

        case = await self.cases.update_status(case_id, CaseStatus.REPORT_READY)
        now = datetime.now(timezone.utc)

        existing = await self.current_report(case_id)
        async with use_session(self._session) as session:
            if existing is None:
                await session.execute(
                    text("""
                    INSERT INTO reports (
                        case_id, clinical_history, report_content, version,
                        is_superseded, is_latest, can_reopen, completed_at
                    ) VALUES (
                        :case_id, :clinical_history, :content, 1, FALSE, TRUE, TRUE, :now
                    )
                    """),
                    {
                        "case_id": str(case_id),
                        "clinical_history": case.clinical_question,
                        "content": report_text or "",
                        "now": now,
                    },
                )
            else:
                assignments = "completed_at = :now, is_latest = TRUE"
                params = {"id": str(existing.id), "now": now}
                if report_text is not None and not existing.is_signed:
                    assignments += ", report_content = :content"
                    params["content"] = report_text
                await session.execute(
                    text(f"UPDATE reports SET {assignments} WHERE id = :id"),
                    params,
                )

        try:
            await self.notifications.send_report_ready(case)
        except EmailError as e:
            logger.warning(f"Report-ready email for case {case_id} failed: {e}")

        return case
