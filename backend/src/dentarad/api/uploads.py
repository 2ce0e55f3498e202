"""API endpoints for scan uploads.

An upload is two calls: ``/uploads/prepare`` creates the case and its
folder, then the zip is sent to ``/uploads/{case_id}/scan``. A client that
gives up part way calls ``DELETE /uploads/{case_id}`` to roll back.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from uuid import UUID

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, File, Query, Request, UploadFile
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..cases.constants import FieldOfView
from ..cases.models import CreateCaseRequest
from ..db import get_db
from ..pacs.orthanc import OrthancError
from ..security.sanitization import sanitize_filename
from ..uploads.dropbox import DropboxError
from ..uploads.service import DropboxUploadTarget, UploadService, UploadTicket
from ..uploads.validation import ZipValidationResult, validate_dicom_zip
from . import AuthorizationError, ExternalServiceError, NotFoundError
from .auth import CurrentUser, StaffUser

router = APIRouter(prefix="/uploads", tags=["uploads"])

COPY_BUFFER_SIZE = 1024 * 1024


class PrepareUploadRequest(CreateCaseRequest):
    clinic_id: UUID | None = Field(default=None, description="Required when staff upload for a clinic")


class DropboxTargetRequest(BaseModel):
    case_id: UUID
    patient_id: str = Field(..., min_length=1, max_length=100)
    file_name: str = Field(..., min_length=1, max_length=255)


def get_upload_service(session: AsyncSession = Depends(get_db)) -> UploadService:
    return UploadService(session=session)


async def _check_case_access(service: UploadService, user, case_id: UUID) -> None:
    case = await service._get_case(case_id)
    if not user.can_access_clinic(str(case.clinic_id)):
        raise AuthorizationError("You do not have access to this case")


def _spool_to_disk(upload: UploadFile) -> Path:
    suffix = Path(upload.filename or "scan.zip").suffix or ".zip"
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as target:
        upload.file.seek(0)
        shutil.copyfileobj(upload.file, target, COPY_BUFFER_SIZE)
        return Path(target.name)


@router.post("/prepare", response_model=UploadTicket, status_code=201)
async def prepare_upload(
    body: PrepareUploadRequest,
    user: CurrentUser,
    service: UploadService = Depends(get_upload_service),
) -> UploadTicket:
    """Create the case for a new scan and reserve its folder."""
    form = CreateCaseRequest(**body.model_dump(exclude={"clinic_id"}))
    clinic_id = str(body.clinic_id) if body.clinic_id else None
    return await service.prepare_case_upload(user, form, clinic_id=clinic_id)


@router.post("/validate", response_model=ZipValidationResult)
async def validate_upload(
    user: CurrentUser,
    file: UploadFile = File(...),
) -> ZipValidationResult:
    """Check a scan archive without storing it."""
    name = sanitize_filename(file.filename) or "upload.zip"
    return await asyncio.to_thread(validate_dicom_zip, file.file, name)


@router.post("/{case_id}/scan", response_model=ZipValidationResult)
async def upload_scan(
    case_id: UUID,
    user: CurrentUser,
    file: UploadFile = File(...),
    service: UploadService = Depends(get_upload_service),
) -> ZipValidationResult:
    """Validate and store the scan zip of a prepared case."""
    await _check_case_access(service, user, case_id)
    path = await asyncio.to_thread(_spool_to_disk, file)
    try:
        return await service.upload_scan(user, case_id, path, file_name=sanitize_filename(file.filename))
    finally:
        path.unlink(missing_ok=True)


@router.post("/{case_id}/sync-dropbox")
async def sync_to_dropbox(
    case_id: UUID,
    user: StaffUser,
    service: UploadService = Depends(get_upload_service),
) -> dict[str, str]:
    try:
        return await service.sync_case_to_dropbox(case_id)
    except DropboxError as e:
        raise ExternalServiceError("Dropbox", str(e))
    except (BotoCoreError, ClientError) as e:
        raise ExternalServiceError("Storage", f"Could not read the stored scan: {e}")


@router.post("/{case_id}/pacs")
async def push_to_pacs(
    case_id: UUID,
    user: StaffUser,
    service: UploadService = Depends(get_upload_service),
) -> dict:
    """Send a stored scan to the PACS."""
    try:
        return await service.push_to_pacs(case_id)
    except OrthancError as e:
        raise ExternalServiceError("Orthanc", str(e))


@router.get("/price")
async def get_price(
    user: CurrentUser,
    field_of_view: FieldOfView = Query(...),
    service: UploadService = Depends(get_upload_service),
) -> dict:
    """Current price for a field of view."""
    price = await service.fetch_price(field_of_view)
    if price is None:
        raise NotFoundError("Price", field_of_view.value)
    return {"field_of_view": field_of_view.value, "price": price}


@router.post("/dropbox-target", response_model=DropboxUploadTarget)
async def dropbox_upload_target(
    body: DropboxTargetRequest,
    user: CurrentUser,
    service: UploadService = Depends(get_upload_service),
) -> DropboxUploadTarget:
    """Short-lived credentials for a direct browser upload to Dropbox."""
    await _check_case_access(service, user, body.case_id)
    try:
        return await service.get_dropbox_upload_target(
            body.case_id, body.patient_id, sanitize_filename(body.file_name)
        )
    except DropboxError as e:
        raise ExternalServiceError("Dropbox", str(e))


@router.delete("/{case_id}")
async def cleanup_failed_upload(
    case_id: UUID,
    user: CurrentUser,
    request: Request,
    service: UploadService = Depends(get_upload_service),
) -> dict[str, bool]:
    """Roll back a case whose upload failed."""
    return await service.cleanup_failed_upload(user, case_id, request=request)
