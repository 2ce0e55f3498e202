"""Case and report downloads.

A case bundle is a zip of the scan files plus the report PDF. Bundles for
reported cases are pregenerated by the worker; when none is ready the zip
is assembled on demand.
"""

import asyncio
import io
import logging
import re
import zipfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..api import APIError, NotFoundError
from ..cases.constants import CaseStatus
from ..cases.manager import CaseManager
from ..db import use_session
from ..storage import StorageClient, get_storage
from .dropbox import DropboxClient, DropboxError, get_dropbox_client

logger = logging.getLogger(__name__)

REPORT_FILE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}_report.*\.pdf$")
REPORT_LINK_TTL = timedelta(hours=4)
BUNDLE_URL_TTL = 3600


@dataclass
class CaseDownload:
    """A case bundle, either as a presigned URL or as zip bytes."""

    filename: str
    url: str | None = None
    content: bytes | None = None


def bundle_name(folder_name: str) -> str:
    return f"{folder_name}_complete.zip"


class DownloadService:
    def __init__(
        self,
        session: AsyncSession | None = None,
        storage: StorageClient | None = None,
        dropbox: DropboxClient | None = None,
    ):
        self._session = session
        self._storage = storage
        self._dropbox = dropbox
        self.cases = CaseManager(session=session, storage=storage)

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

    def assemble_bundle(self, folder_name: str) -> bytes:
        """Zip every scan object of a case, plus its report PDF when present.

        Scan files go under ``scan/``; the report sits at the top level.
        """
        storage = self.storage
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=1) as archive:
            for key in storage.list_files(storage.scans_bucket, prefix=f"{folder_name}/"):
                name = key[len(folder_name) + 1:]
                if not name:
                    continue
                archive.writestr(f"scan/{name}", storage.download_file(storage.scans_bucket, key))

            report_key = f"{folder_name}/report.pdf"
            if storage.file_exists(storage.reports_bucket, report_key):
                archive.writestr("report.pdf", storage.download_file(storage.reports_bucket, report_key))
        return buffer.getvalue()

    async def build_case_download(self, case_id: UUID | str) -> CaseDownload:
        """Get the download bundle for a case.

        Raises:
            NotFoundError: If the case does not exist
        """
        case = await self.cases.get_case(case_id)
        if case is None:
            raise NotFoundError("Case", case_id)

        filename = bundle_name(case.folder_name)
        if case.zip_generation_status == "completed" and case.pregenerated_zip_path:
            url = self.storage.generate_presigned_url(
                self.storage.downloads_bucket,
                case.pregenerated_zip_path,
                expiration=BUNDLE_URL_TTL,
                download_name=filename,
            )
            return CaseDownload(filename=filename, url=url)

        logger.info(f"No pregenerated bundle for case {case_id}, assembling on demand")
        content = await asyncio.to_thread(self.assemble_bundle, case.folder_name)
        return CaseDownload(filename=filename, content=content)

    async def pregenerate_case_zip(self, case_id: UUID | str) -> str:
        """Write the bundle of a case to the downloads bucket.

        Returns:
            Object key of the bundle

        Raises:
            ValueError: If the case does not exist or has no scan files
        """
        case = await self.cases.get_case(case_id)
        if case is None:
            raise ValueError(f"Case {case_id} not found")

        await self._set_zip_status(case_id, "processing")
        key = bundle_name(case.folder_name)
        try:
            if not self.storage.list_files(self.storage.scans_bucket, prefix=f"{case.folder_name}/"):
                raise ValueError("No files found for case")
            content = await asyncio.to_thread(self.assemble_bundle, case.folder_name)
            await asyncio.to_thread(
                self.storage.upload_file,
                self.storage.downloads_bucket,
                key,
                content,
                "application/zip",
            )
        except (ValueError, BotoCoreError, ClientError):
            await self._set_zip_status(case_id, "failed")
            raise

        await self._set_zip_status(case_id, "completed", key)
        logger.info(f"Pregenerated bundle for case {case_id} ({len(content)} bytes)")
        return key

    async def _set_zip_status(self, case_id: UUID | str, status: str, path: str | None = None) -> None:
        async with use_session(self._session) as session:
            if path is None:
                await session.execute(
                    text("UPDATE cases SET zip_generation_status = :status WHERE id = :id"),
                    {"id": str(case_id), "status": status},
                )
            else:
                await session.execute(
                    text("""
                    UPDATE cases
                    SET zip_generation_status = :status, pregenerated_zip_path = :path
                    WHERE id = :id
                    """),
                    {"id": str(case_id), "status": status, "path": path},
                )

    async def get_report_download_link(self, user, case_id: UUID | str) -> dict[str, Any]:
        """Create a temporary Dropbox link to the latest report PDF of a case.

        Raises:
            APIError: FORBIDDEN, REPORT_NOT_READY, REPORT_NOT_FOUND or
                DOWNLOAD_LINK_FAILED
        """
        case = await self.cases.get_case(case_id)
        if case is None:
            raise APIError(404, "REPORT_NOT_FOUND", "Case not found")

        if not user.can_access_clinic(str(case.clinic_id)):
            raise APIError(403, "FORBIDDEN", "Forbidden - cannot access other clinic's reports")

        if case.status != CaseStatus.REPORT_READY.value:
            raise APIError(400, "REPORT_NOT_READY", "Report not yet available")

        folder = (case.dropbox_report_path or f"/reports/{case.folder_name}/").rstrip("/")
        try:
            entries = await self.dropbox.list_folder(folder)
            reports = sorted(
                (
                    entry for entry in entries
                    if entry.get(".tag") == "file" and REPORT_FILE_RE.match(entry.get("name", ""))
                ),
                key=lambda entry: entry["name"],
                reverse=True,
            )
            if not reports:
                raise APIError(404, "REPORT_NOT_FOUND", "No report file found in Dropbox folder")

            latest = reports[0]
            link = await self.dropbox.get_temporary_link(latest["path_display"])
        except DropboxError as e:
            logger.error(f"Report link for case {case_id} failed: {e}")
            raise APIError(500, "DOWNLOAD_LINK_FAILED", str(e))

        return {
            "download_url": link,
            "filename": latest["name"],
            "file_size": latest.get("size"),
            "expires_at": (datetime.now(timezone.utc) + REPORT_LINK_TTL).isoformat(),
        }

    async def cases_needing_bundles(self, limit: int = 20) -> list[str]:
        """Reported cases without a usable pregenerated bundle."""
        async with use_session(self._session) as session:
            result = await session.execute(
                text("""
                SELECT id FROM cases
                WHERE status = :status
                  AND (zip_generation_status IS NULL OR zip_generation_status = 'failed')
                ORDER BY completed_at ASC NULLS LAST
                LIMIT :limit
                """),
                {"status": CaseStatus.REPORT_READY.value, "limit": limit},
            )
            return [str(row.id) for row in result.fetchall()]
