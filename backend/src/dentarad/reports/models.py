"""Pydantic models for reports, report images and templates."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field

from ..cases.models import Case


class Report(BaseModel):
    """One version of a case report.

    Only one version per case has ``is_superseded = false``; older
    versions are kept for the history view.
    """

    id: UUID
    case_id: UUID
    clinical_history: str | None = None
    report_content: str | None = None

    version: int = 1
    is_superseded: bool = False
    is_latest: bool = True
    can_reopen: bool = True
    supersedes: UUID | None = None
    reopen_reason: str | None = None

    signed_at: datetime | None = None
    signed_by: UUID | None = None
    signatory_name: str | None = None
    signatory_credentials: str | None = None
    signature_hash: str | None = None
    verification_token: str | None = None

    pdf_generated: bool = False
    pdf_storage_path: str | None = None

    last_saved_at: datetime | None = None
    finalized_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_signed(self) -> bool:
        return self.signed_at is not None


class ReportImage(BaseModel):
    id: UUID
    report_id: UUID
    storage_path: str
    image_url: str | None = None
    caption: str | None = None
    position: int = 0
    created_at: datetime | None = None


class CaseWithReport(BaseModel):
    case: Case
    report: Report | None = None


class ReportTemplate(BaseModel):
    """A CBCT report template for one indication category."""

    id: UUID
    name: str
    indication_category: str
    description: str | None = None
    is_default: bool = False
    clinical_history_template: str | None = None
    imaging_technique_template: str | None = None
    findings_template: str = ""
    impression_template: str = ""
    recommendations_template: str | None = None
    usage_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None


# =============================================================================
# Requests
# =============================================================================


class CreateReportRequest(BaseModel):
    case_id: UUID


class SaveReportRequest(BaseModel):
    clinical_history: str = Field(default="", max_length=20000)
    report_content: str = Field(default="", max_length=200000)


class NewVersionRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class SignReportRequest(BaseModel):
    signatory_name: str = Field(..., min_length=1, max_length=200)
    credentials: str | None = Field(default=None, max_length=200)


class CompleteReportRequest(BaseModel):
    case_id: UUID
    report_text: str | None = None


class DraftReportRequest(BaseModel):
    case_id: UUID
    dictation: str = Field(..., min_length=1, max_length=50000)
    report_style: Literal["concise", "detailed"] = "detailed"


class SignatureVerification(BaseModel):
    report_id: UUID
    valid: bool
    signed_at: datetime | None = None
    signatory_name: str | None = None
