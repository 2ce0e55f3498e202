"""API endpoints for CBCT report templates."""

from uuid import UUID

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..cases.manager import CaseManager
from ..db import get_db
from ..reports.models import ReportTemplate
from ..reports.templates import TemplateService, render_template
from . import NotFoundError
from .auth import StaffUser

router = APIRouter(prefix="/templates", tags=["templates"])


class RenderTemplateRequest(BaseModel):
    case_id: UUID


class TemplateUsageRequest(BaseModel):
    case_id: UUID | None = None


def get_template_service(session: AsyncSession = Depends(get_db)) -> TemplateService:
    return TemplateService(session=session)


@router.get("", response_model=list[ReportTemplate])
async def list_templates(
    user: StaffUser,
    category: str | None = Query(default=None, max_length=100),
    service: TemplateService = Depends(get_template_service),
) -> list[ReportTemplate]:
    return await service.fetch_templates(category)


@router.get("/categories", response_model=list[str])
async def template_categories(
    user: StaffUser,
    service: TemplateService = Depends(get_template_service),
) -> list[str]:
    return await service.get_categories()


@router.get("/suggest", response_model=ReportTemplate | None)
async def suggest_template(
    user: StaffUser,
    clinical_question: str = Query(..., max_length=5000),
    service: TemplateService = Depends(get_template_service),
) -> ReportTemplate | None:
    """The default template matching the clinical question, if any."""
    return await service.suggest_template(clinical_question)


@router.post("/{template_id}/render")
async def render_for_case(
    template_id: UUID,
    body: RenderTemplateRequest,
    user: StaffUser,
    session: AsyncSession = Depends(get_db),
    service: TemplateService = Depends(get_template_service),
) -> dict[str, str]:
    """Fill a template with a case's details."""
    template = await service.get_template(template_id)
    if template is None:
        raise NotFoundError("Template", template_id)
    case = await CaseManager(session=session).get_case(body.case_id)
    if case is None:
        raise NotFoundError("Case", body.case_id)

    return render_template(template, case.model_dump())


@router.post("/{template_id}/usage", status_code=204)
async def record_template_usage(
    template_id: UUID,
    body: TemplateUsageRequest,
    user: StaffUser,
    service: TemplateService = Depends(get_template_service),
) -> None:
    await service.track_usage(template_id, user.id, body.case_id)
