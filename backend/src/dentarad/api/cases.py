"""API endpoints for cases.

Clinic users see and download their own clinic's cases; admins and
reporters see all of them.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from ..cases.constants import CaseStatus, Urgency
from ..cases.manager import CaseManager
from ..cases.models import (
    BulkDeleteRequest,
    Case,
    CaseListResponse,
    CaseNotesUpdate,
    CaseResponse,
    CaseStatusUpdate,
    IncomeStats,
)
from ..db import get_db
from ..uploads.downloads import DownloadService
from . import AuthorizationError, NotFoundError, ValidationError
from .auth import AdminUser, CurrentUser, StaffUser

router = APIRouter(prefix="/cases", tags=["cases"])


def get_case_manager(session: AsyncSession = Depends(get_db)) -> CaseManager:
    return CaseManager(session=session)


def get_download_service(session: AsyncSession = Depends(get_db)) -> DownloadService:
    return DownloadService(session=session)


async def load_case(manager: CaseManager, user, case_id: UUID) -> Case:
    """Fetch a case the user is allowed to see, or raise 404/403."""
    case = await manager.get_case(case_id)
    if case is None:
        raise NotFoundError("Case", case_id)
    if not user.can_access_clinic(str(case.clinic_id)):
        raise AuthorizationError("You do not have access to this case")
    return case


@router.get("", response_model=CaseListResponse)
async def list_cases(
    user: CurrentUser,
    status: CaseStatus | None = None,
    urgency: Urgency | None = None,
    search: str | None = Query(default=None, max_length=200),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    manager: CaseManager = Depends(get_case_manager),
) -> CaseListResponse:
    """List cases, newest upload first."""
    cases, total = await manager.list_cases_for_user(
        user,
        status=status,
        urgency=urgency,
        search=search,
        limit=limit,
        offset=offset,
    )
    return CaseListResponse(
        items=[CaseResponse.from_case(case) for case in cases],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.get("/stats/income", response_model=IncomeStats)
async def income_stats(
    user: AdminUser,
    manager: CaseManager = Depends(get_case_manager),
) -> IncomeStats:
    return await manager.income_stats()


@router.get("/stats/counts")
async def status_counts(
    user: CurrentUser,
    manager: CaseManager = Depends(get_case_manager),
) -> dict[str, int]:
    """Case counts per status for the dashboard."""
    clinic_id = None if user.is_staff() else user.clinic_id
    return await manager.dashboard_counts(clinic_id)


@router.delete("")
async def bulk_delete_cases(
    body: BulkDeleteRequest,
    user: AdminUser,
    manager: CaseManager = Depends(get_case_manager),
) -> dict[str, int]:
    """Delete several cases and their files."""
    deleted = await manager.delete_cases(body.case_ids)
    return {"deleted": deleted}


@router.get("/{case_id}", response_model=CaseResponse)
async def get_case(
    case_id: UUID,
    user: CurrentUser,
    manager: CaseManager = Depends(get_case_manager),
) -> CaseResponse:
    case = await load_case(manager, user, case_id)
    return CaseResponse.from_case(case)


@router.patch("/{case_id}/status", response_model=CaseResponse)
async def update_case_status(
    case_id: UUID,
    body: CaseStatusUpdate,
    user: StaffUser,
    manager: CaseManager = Depends(get_case_manager),
) -> CaseResponse:
    """Move a case to a new status."""
    await load_case(manager, user, case_id)
    try:
        case = await manager.update_status(case_id, body.status)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return CaseResponse.from_case(case)


@router.patch("/{case_id}/notes")
async def update_case_notes(
    case_id: UUID,
    body: CaseNotesUpdate,
    user: StaffUser,
    manager: CaseManager = Depends(get_case_manager),
) -> dict[str, bool]:
    await load_case(manager, user, case_id)
    try:
        changed = await manager.update_notes(case_id, body.reporter_notes)
    except ValueError as e:
        raise ValidationError(str(e)) from e
    return {"updated": changed}


@router.get("/{case_id}/download")
async def download_case(
    case_id: UUID,
    user: CurrentUser,
    manager: CaseManager = Depends(get_case_manager),
    downloads: DownloadService = Depends(get_download_service),
) -> Response:
    """Download the scan bundle of a case.

    Redirects to the pregenerated bundle when there is one, otherwise
    streams a zip built on the fly.
    """
    await load_case(manager, user, case_id)
    download = await downloads.build_case_download(case_id)
    if download.url:
        return RedirectResponse(download.url, status_code=307)
    if download.content is None:
        raise ValidationError("No files found for case")
    return Response(
        content=download.content,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="{download.filename}"'},
    )


@router.get("/{case_id}/report-link")
async def report_download_link(
    case_id: UUID,
    user: CurrentUser,
    downloads: DownloadService = Depends(get_download_service),
) -> dict:
    """Temporary link to the latest report PDF in Dropbox."""
    return await downloads.get_report_download_link(user, case_id)
