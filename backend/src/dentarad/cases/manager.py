"""Case lifecycle management.

The CaseManager owns reads and writes of the ``cases`` table: listing for
the dashboards, status moves, reporter notes, bulk deletion and the
income statistics shown to admins.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import call_rpc, use_session
from ..logging import log_case_event
from ..storage import StorageClient, get_storage
from .constants import CaseStatus, UserRole, Urgency, validate_transition
from .models import Case, CreateCaseRequest, IncomeStats

logger = logging.getLogger(__name__)

CASE_SELECT = """
    SELECT c.*, cl.name AS clinic_name, cl.contact_email AS clinic_email
    FROM cases c
    LEFT JOIN clinics cl ON cl.id = c.clinic_id
"""


class CaseManager:
    """Reads and updates cases.

    Every method opens its own session unless one was injected, in which
    case the caller owns the transaction.
    """

    def __init__(
        self,
        session: AsyncSession | None = None,
        storage: StorageClient | None = None,
    ):
        self._session = session
        self._storage = storage

    @property
    def storage(self) -> StorageClient:
        if self._storage is None:
            self._storage = get_storage()
        return self._storage

    @asynccontextmanager
    async def _get_session(self) -> AsyncGenerator[AsyncSession, None]:
        async with use_session(self._session) as session:
            yield session

    @staticmethod
    def _row_to_case(row: Any) -> Case:
        return Case(**dict(row._mapping))

    # =========================================================================
    # Queries
    # =========================================================================

    async def list_cases(
        self,
        clinic_id: str | None = None,
        status: CaseStatus | None = None,
        urgency: Urgency | None = None,
        search: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Case], int]:
        """List cases, most recent upload first.

        Args:
            clinic_id: Restrict to one clinic (always set for clinic users)
            status: Filter by status
            urgency: Filter by urgency
            search: Case-insensitive match on patient name, folder or patient id
            limit: Maximum results to return
            offset: Offset for pagination

        Returns:
            Tuple of (cases, total count)
        """
        async with self._get_session() as session:
            query = CASE_SELECT + " WHERE 1=1"
            params: dict[str, Any] = {}

            if clinic_id:
                query += " AND c.clinic_id = :clinic_id"
                params["clinic_id"] = str(clinic_id)
            if status:
                query += " AND c.status = :status"
                params["status"] = CaseStatus(status).value
            if urgency:
                query += " AND c.urgency = :urgency"
                params["urgency"] = Urgency(urgency).value
            if search:
                query += (
                    " AND (c.patient_name ILIKE :search"
                    " OR c.folder_name ILIKE :search"
                    " OR c.patient_internal_id ILIKE :search)"
                )
                params["search"] = f"%{search.strip()}%"

            count_result = await session.execute(
                text(f"SELECT COUNT(*) FROM ({query}) AS subquery"),
                params,
            )
            total = count_result.scalar() or 0

            query += " ORDER BY c.upload_date DESC NULLS LAST LIMIT :limit OFFSET :offset"
            params["limit"] = limit
            params["offset"] = offset

            result = await session.execute(text(query), params)
            return [self._row_to_case(row) for row in result.fetchall()], total

    async def list_cases_for_user(self, user, **filters: Any) -> tuple[list[Case], int]:
        """List cases visible to ``user``. Clinic users only see their clinic."""
        if user.role == UserRole.CLINIC:
            filters["clinic_id"] = user.clinic_id
        return await self.list_cases(**filters)

    async def get_case(self, case_id: UUID | str) -> Case | None:
        """Get a case by ID, with its clinic's name."""
        async with self._get_session() as session:
            result = await session.execute(
                text(CASE_SELECT + " WHERE c.id = :id"),
                {"id": str(case_id)},
            )
            row = result.fetchone()
            return self._row_to_case(row) if row is not None else None

    async def dashboard_counts(self, clinic_id: str | None = None) -> dict[str, int]:
        """Number of cases in each status."""
        async with self._get_session() as session:
            query = "SELECT status, COUNT(*) AS count FROM cases"
            params: dict[str, Any] = {}
            if clinic_id:
                query += " WHERE clinic_id = :clinic_id"
                params["clinic_id"] = str(clinic_id)
            query += " GROUP BY status"
            result = await session.execute(text(query), params)
            counts = {status.value: 0 for status in CaseStatus}
            for row in result.fetchall():
                counts[row.status] = row.count
            return counts

    async def income_stats(self) -> IncomeStats:
        """Weekly and monthly income from the stored statistics functions."""
        async with self._get_session() as session:
            weekly = await call_rpc(session, "get_weekly_income_stats")
            monthly = await call_rpc(session, "get_monthly_income_stats")
            return IncomeStats(weekly=weekly, monthly=monthly)

    # =========================================================================
    # Mutations
    # =========================================================================

    async def create_case(
        self,
        clinic_id: str,
        request: CreateCaseRequest,
        folder_name: str,
        estimated_cost: float | None = None,
    ) -> Case:
        """Insert a new case in ``uploaded`` status."""
        async with self._get_session() as session:
            result = await session.execute(
                text("""
                INSERT INTO cases (
                    clinic_id, patient_name, patient_first_name, patient_last_name,
                    patient_dob, patient_internal_id, clinical_question,
                    special_instructions, urgency, field_of_view, status,
                    folder_name, estimated_cost, upload_date,
                    dropbox_scan_path, dropbox_report_path
                ) VALUES (
                    :clinic_id, :patient_name, :patient_first_name, :patient_last_name,
                    :patient_dob, :patient_internal_id, :clinical_question,
                    :special_instructions, :urgency, :field_of_view, :status,
                    :folder_name, :estimated_cost, :upload_date,
                    :dropbox_scan_path, :dropbox_report_path
                )
                RETURNING id
                """),
                {
                    "clinic_id": str(clinic_id),
                    "patient_name": request.patient_name,
                    "patient_first_name": request.patient_first_name,
                    "patient_last_name": request.patient_last_name,
                    "patient_dob": request.patient_dob,
                    "patient_internal_id": request.patient_internal_id,
                    "clinical_question": request.clinical_question,
                    "special_instructions": request.special_instructions,
                    "urgency": request.urgency,
                    "field_of_view": request.field_of_view,
                    "status": CaseStatus.UPLOADED.value,
                    "folder_name": folder_name,
                    "estimated_cost": estimated_cost,
                    "upload_date": datetime.now(timezone.utc),
                    "dropbox_scan_path": f"/uploads/{folder_name}/",
                    "dropbox_report_path": f"/reports/{folder_name}/",
                },
            )
            case_id = result.scalar_one()
            result = await session.execute(
                text(CASE_SELECT + " WHERE c.id = :id"),
                {"id": str(case_id)},
            )
            case = self._row_to_case(result.fetchone())

        log_case_event(str(case.id), "created", folder_name=folder_name, urgency=case.urgency)
        return case

    async def update_status(self, case_id: UUID | str, status: CaseStatus) -> Case:
        """Move a case to a new status.

        Moving to ``report_ready`` stamps ``completed_at``. Setting the
        status a case already has changes nothing.

        Raises:
            ValueError: If the case does not exist or the move is not allowed
        """
        case = await self.get_case(case_id)
        if case is None:
            raise ValueError(f"Case {case_id} not found")

        if not validate_transition(case.status, status):
            return case

        target = CaseStatus(status)
        assignments = "status = :status, updated_at = :now"
        if target == CaseStatus.REPORT_READY:
            assignments += ", completed_at = :now"
        async with self._get_session() as session:
            await session.execute(
                text(f"UPDATE cases SET {assignments} WHERE id = :id"),
                {"id": str(case_id), "status": target.value, "now": datetime.now(timezone.utc)},
            )

        log_case_event(str(case_id), "status_changed", old_status=case.status, new_status=target.value)
        case.status = target.value
        return case

    async def update_notes(self, case_id: UUID | str, reporter_notes: str) -> bool:
        """Save reporter notes.

        Returns:
            True if the notes changed, False if they were already identical

        Raises:
            ValueError: If the case does not exist
        """
        case = await self.get_case(case_id)
        if case is None:
            raise ValueError(f"Case {case_id} not found")

        if (case.reporter_notes or "") == (reporter_notes or ""):
            return False

        async with self._get_session() as session:
            await session.execute(
                text("UPDATE cases SET reporter_notes = :notes, updated_at = :now WHERE id = :id"),
                {"id": str(case_id), "notes": reporter_notes, "now": datetime.now(timezone.utc)},
            )
        return True

    async def delete_cases(self, case_ids: list[UUID | str]) -> int:
        """Delete cases and, best effort, their stored files.

        Storage failures are logged and skipped; the rows are deleted
        regardless.

        Returns:
            Number of case rows deleted
        """
        ids = [str(case_id) for case_id in case_ids]
        if not ids:
            return 0

        async with self._get_session() as session:
            result = await session.execute(
                text("SELECT id, folder_name FROM cases WHERE id = ANY(:ids)"),
                {"ids": ids},
            )
            folders = [row.folder_name for row in result.fetchall() if row.folder_name]

            await session.execute(
                text("DELETE FROM reports WHERE case_id = ANY(:ids)"),
                {"ids": ids},
            )
            result = await session.execute(
                text("DELETE FROM cases WHERE id = ANY(:ids) RETURNING id"),
                {"ids": ids},
            )
            deleted = len(result.fetchall())

        for folder in folders:
            self._delete_case_files(folder)

        for case_id in ids:
            log_case_event(case_id, "deleted")
        return deleted

    def _delete_case_files(self, folder: str) -> None:
        storage = self.storage
        try:
            scan_keys = storage.list_files(storage.scans_bucket, prefix=f"{folder}/")
            storage.delete_files(storage.scans_bucket, scan_keys)
            storage.delete_file(storage.reports_bucket, f"{folder}/report.pdf")
            storage.delete_file(storage.downloads_bucket, f"{folder}_complete.zip")
        except (BotoCoreError, ClientError) as e:
            # The case rows are already gone; orphaned files are acceptable.
            logger.warning(f"Storage cleanup failed for {folder}: {e}")


_case_manager: CaseManager | None = None


def get_case_manager() -> CaseManager:
    """Get the case manager singleton."""
    global _case_manager
    if _case_manager is None:
        _case_manager = CaseManager()
    return _case_manager
