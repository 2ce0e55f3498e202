"""API endpoints for the Orthanc PACS and the OHIF viewer.

The DICOMweb proxy lets the browser viewer reach Orthanc without holding
its credentials.
"""

from typing import Any

import httpx
from fastapi import APIRouter, Depends, Query, Request, Response

from ..pacs.orthanc import OrthancClient, OrthancError, get_orthanc_client
from . import ExternalServiceError, NotFoundError
from .auth import CurrentUser, StaffUser

router = APIRouter(prefix="/pacs", tags=["pacs"])

PROXIED_RESPONSE_HEADERS = ("content-type", "cache-control")


@router.get("/status")
async def pacs_status(
    user: StaffUser,
    orthanc: OrthancClient = Depends(get_orthanc_client),
) -> dict[str, Any]:
    return await orthanc.check_connection()


@router.get("/studies")
async def list_studies(
    user: StaffUser,
    limit: int = Query(default=10, ge=1, le=100),
    orthanc: OrthancClient = Depends(get_orthanc_client),
) -> dict[str, Any]:
    try:
        return await orthanc.list_studies(limit)
    except (OrthancError, httpx.HTTPError) as e:
        raise ExternalServiceError("Orthanc", str(e))


@router.get("/studies/{study_uid}")
async def get_study(
    study_uid: str,
    user: CurrentUser,
    orthanc: OrthancClient = Depends(get_orthanc_client),
) -> dict[str, Any]:
    try:
        study = await orthanc.get_study(study_uid)
    except (OrthancError, httpx.HTTPError) as e:
        raise ExternalServiceError("Orthanc", str(e))
    if study is None:
        raise NotFoundError("Study", study_uid)
    return study


@router.get("/studies/{study_uid}/verify")
async def verify_study(
    study_uid: str,
    user: CurrentUser,
    orthanc: OrthancClient = Depends(get_orthanc_client),
) -> dict[str, Any]:
    return {"study_instance_uid": study_uid, "exists": await orthanc.verify_study(study_uid)}


@router.get("/studies/{study_uid}/viewer")
async def viewer_url(
    study_uid: str,
    user: CurrentUser,
    orthanc: OrthancClient = Depends(get_orthanc_client),
) -> dict[str, str]:
    return {"viewer_url": orthanc.get_viewer_url(study_uid)}


@router.api_route("/dicom-web/{path:path}", methods=["GET", "POST"])
async def dicomweb_proxy(
    path: str,
    request: Request,
    user: CurrentUser,
    orthanc: OrthancClient = Depends(get_orthanc_client),
) -> Response:
    """Forward QIDO-RS, WADO-RS and STOW-RS requests to Orthanc."""
    body = await request.body() if request.method == "POST" else None
    try:
        upstream = await orthanc.dicomweb(
            request.method,
            path,
            query=request.url.query,
            body=body,
            headers={key.lower(): value for key, value in request.headers.items()},
        )
    except httpx.HTTPError as e:
        raise ExternalServiceError("Orthanc", str(e))

    headers = {
        key: value
        for key, value in upstream.headers.items()
        if key.lower() in PROXIED_RESPONSE_HEADERS
    }
    return Response(content=upstream.content, status_code=upstream.status_code, headers=headers)
